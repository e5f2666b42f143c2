from __future__ import annotations

import os
from dataclasses import dataclass


def _env_str(name: str, default: str | None = None) -> str | None:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip()


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "y", "on"}


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


@dataclass(frozen=True)
class Settings:
    # Storage
    data_dir: str = _env_str("MCF_DATA_DIR", "data")
    # When the manager runs inside a container, bind mounts must use the host's view of data_dir.
    host_data_dir: str | None = _env_str("MCF_HOST_DATA_DIR")
    db_path: str | None = _env_str("MCF_DB_PATH")

    # Routing
    base_domain: str | None = _env_str("BASE_DOMAIN")
    mc_subdomain_prefix: str = _env_str("MC_SUBDOMAIN_PREFIX", "mc")
    docker_network: str = _env_str("MCF_DOCKER_NETWORK", "minecraft-manager_default")
    router_container: str = _env_str("MCF_ROUTER_CONTAINER", "mc-router")
    router_reload: str = _env_str("MCF_ROUTER_RELOAD", "signal")  # signal|restart

    # Lifecycle timing
    stop_timeout_s: int = _env_int("MCF_STOP_TIMEOUT_S", 30)
    kill_timeout_s: int = _env_int("MCF_KILL_TIMEOUT_S", 10)
    restart_wait_s: int = _env_int("MCF_RESTART_WAIT_S", 30)
    poll_interval_s: int = _env_int("MCF_POLL_INTERVAL_S", 1)

    # Logs
    log_tail_lines: int = _env_int("MCF_LOG_TAIL_LINES", 50)
    log_buffer_lines: int = _env_int("MCF_LOG_BUFFER_LINES", 1000)

    # Server image
    online_mode: bool = _env_bool("MCF_ONLINE_MODE", True)
    curseforge_api_key: str | None = _env_str("CURSEFORGE_API_KEY")

    @property
    def servers_dir(self) -> str:
        return os.path.join(self.data_dir, "servers")

    @property
    def config_file(self) -> str:
        return os.path.join(self.data_dir, "servers-config.json")

    @property
    def router_dir(self) -> str:
        return os.path.join(self.data_dir, "mc-router")

    @property
    def journal_path(self) -> str:
        return self.db_path or os.path.join(self.data_dir, "mcfleet.db")

    @property
    def mc_domain(self) -> str | None:
        if not self.base_domain:
            return None
        return f"{self.mc_subdomain_prefix}.{self.base_domain}"

    def server_dir(self, workload_id: str) -> str:
        return os.path.join(self.servers_dir, workload_id)

    def server_data_dir(self, workload_id: str) -> str:
        return os.path.join(self.server_dir(workload_id), "minecraft-server")

    def host_server_data_dir(self, workload_id: str) -> str:
        """Path Docker should bind-mount for a workload's /data."""
        local = os.path.abspath(self.server_data_dir(workload_id))
        if not self.host_data_dir:
            return local
        rel = os.path.relpath(local, os.path.abspath(self.data_dir))
        return os.path.join(self.host_data_dir, rel)


settings = Settings()
