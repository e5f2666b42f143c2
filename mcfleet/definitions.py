from __future__ import annotations

import hashlib
import json
import os
from dataclasses import dataclass, field
from typing import Any

import yaml

from .errors import ConfigGenerationError, StoreIOError
from .models import MINECRAFT_PORT, Workload
from .naming import server_subdomain
from .settings import Settings
from .store import atomic_write_text


DOCKER_IMAGES = {
    "8": "itzg/minecraft-server:java8",
    "11": "itzg/minecraft-server:java11",
    "17": "itzg/minecraft-server:java17",
    "21": "itzg/minecraft-server:java21",
}
DEFAULT_JAVA_VERSION = "21"

SERVER_TYPES = {
    "vanilla": "VANILLA",
    "paper": "PAPER",
    "spigot": "SPIGOT",
    "fabric": "FABRIC",
    "forge": "FORGE",
    "purpur": "PURPUR",
    "velocity": "VELOCITY",
    "waterfall": "WATERFALL",
}
DEFAULT_SERVER_TYPE = "paper"

COMPOSE_SERVICE = "minecraft-server"
COMPOSE_FILE = "docker-compose.yml"
CONTAINER_DATA_PATH = "/data"

# Label carrying the definition fingerprint; a stopped container with a stale
# fingerprint is recreated on the next start.
DEFINITION_LABEL = "mcfleet.definition"


def container_name(workload_id: str) -> str:
    return f"minecraft-server-{workload_id}"


def docker_image(java_version: str | int | None) -> str:
    return DOCKER_IMAGES.get(str(java_version or "").strip(), DOCKER_IMAGES[DEFAULT_JAVA_VERSION])


def server_type_value(server_type: str | None) -> str:
    return SERVER_TYPES.get((server_type or "").strip().lower(), SERVER_TYPES[DEFAULT_SERVER_TYPE])


@dataclass(frozen=True)
class ContainerDefinition:
    name: str
    image: str
    network: str
    environment: dict[str, str] = field(default_factory=dict)
    expose: list[int] = field(default_factory=list)
    published_ports: dict[str, int] = field(default_factory=dict)  # "24454/udp" -> host port
    volumes: dict[str, str] = field(default_factory=dict)  # host path -> container path
    labels: dict[str, str] = field(default_factory=dict)
    restart: str = "unless-stopped"

    def fingerprint(self) -> str:
        blob = json.dumps(self.to_compose(), sort_keys=True).encode("utf-8")
        return hashlib.sha256(blob).hexdigest()[:16]

    def to_compose(self) -> dict[str, Any]:
        svc: dict[str, Any] = {
            "image": self.image,
            "container_name": self.name,
            "expose": [str(p) for p in self.expose],
        }
        if self.published_ports:
            svc["ports"] = [f"{host}:{container}" for container, host in self.published_ports.items()]
        svc["volumes"] = [f"{host}:{container}" for host, container in self.volumes.items()]
        svc["environment"] = [f"{k}={v}" for k, v in self.environment.items()]
        svc["networks"] = [self.network]
        svc["restart"] = self.restart
        svc["labels"] = dict(self.labels)
        svc["stdin_open"] = True
        return {
            "services": {COMPOSE_SERVICE: svc},
            "networks": {self.network: {"external": True}},
        }

    @classmethod
    def from_compose(cls, doc: dict[str, Any]) -> ContainerDefinition:
        svc = doc["services"][COMPOSE_SERVICE]
        published: dict[str, int] = {}
        for entry in svc.get("ports") or []:
            host, _, container = str(entry).partition(":")
            published[container] = int(host)
        volumes: dict[str, str] = {}
        for entry in svc.get("volumes") or []:
            host, _, container = str(entry).rpartition(":")
            volumes[host] = container
        env: dict[str, str] = {}
        for entry in svc.get("environment") or []:
            key, _, value = str(entry).partition("=")
            env[key] = value
        networks = svc.get("networks") or []
        return cls(
            name=svc["container_name"],
            image=svc["image"],
            network=networks[0] if networks else "",
            environment=env,
            expose=[int(p) for p in svc.get("expose") or []],
            published_ports=published,
            volumes=volumes,
            labels={str(k): str(v) for k, v in (svc.get("labels") or {}).items()},
            restart=svc.get("restart", "unless-stopped"),
        )

    def run_kwargs(self) -> dict[str, Any]:
        """Keyword arguments for docker-py ``containers.create``."""
        labels = dict(self.labels)
        labels[DEFINITION_LABEL] = self.fingerprint()
        kwargs: dict[str, Any] = {
            "image": self.image,
            "name": self.name,
            "environment": dict(self.environment),
            "labels": labels,
            "volumes": {host: {"bind": container, "mode": "rw"} for host, container in self.volumes.items()},
            "network": self.network,
            "restart_policy": {"Name": self.restart},
            "stdin_open": True,
        }
        if self.published_ports:
            kwargs["ports"] = dict(self.published_ports)
        return kwargs


def _traefik_labels(router: str, host: str, port: int, enable_ssl: bool) -> dict[str, str]:
    rule = f"Host(`{host}`)"
    if enable_ssl:
        return {
            "traefik.enable": "true",
            f"traefik.http.routers.{router}-http.rule": rule,
            f"traefik.http.routers.{router}-http.entrypoints": "web",
            f"traefik.http.routers.{router}-http.middlewares": f"{router}-redirect",
            f"traefik.http.middlewares.{router}-redirect.redirectscheme.scheme": "https",
            f"traefik.http.middlewares.{router}-redirect.redirectscheme.permanent": "true",
            f"traefik.http.routers.{router}.rule": rule,
            f"traefik.http.routers.{router}.entrypoints": "websecure",
            f"traefik.http.routers.{router}.tls": "true",
            f"traefik.http.routers.{router}.tls.certresolver": "letsencrypt",
            f"traefik.http.services.{router}.loadbalancer.server.port": str(port),
        }
    return {
        "traefik.enable": "true",
        f"traefik.http.routers.{router}.rule": rule,
        f"traefik.http.routers.{router}.entrypoints": "web",
        f"traefik.http.services.{router}.loadbalancer.server.port": str(port),
    }


def _environment(workload: Workload, settings: Settings) -> dict[str, str]:
    version = workload.runtime.minecraft_version or "LATEST"
    if version.lower() in {"latest", "snapshot"}:
        version = version.upper()
    env = {
        "EULA": "TRUE",
        "VERSION": version,
        "SERVER_PORT": str(MINECRAFT_PORT),
        "MEMORY": f"{workload.resources.max_memory_mb}M",
        "INIT_MEMORY": f"{workload.resources.min_memory_mb}M",
        "MAX_MEMORY": f"{workload.resources.max_memory_mb}M",
        "ONLINE_MODE": "TRUE" if settings.online_mode else "FALSE",
        "CREATE_CONSOLE_IN_PIPE": "true",
    }
    modpack = workload.modpack
    if modpack is not None and modpack.source == "modrinth":
        env["TYPE"] = "MODRINTH"
        env["MODRINTH_MODPACK"] = modpack.slug
    elif modpack is not None and modpack.source == "curseforge":
        env["TYPE"] = "AUTO_CURSEFORGE"
        env["CF_SLUG"] = modpack.slug
        if settings.curseforge_api_key:
            env["CF_API_KEY"] = settings.curseforge_api_key
    else:
        env["TYPE"] = server_type_value(workload.runtime.server_type)
    return env


def generate(workload: Workload, settings: Settings) -> ContainerDefinition:
    """Build the container definition for a workload.

    Pure in (workload, settings). Services with a subdomain prefix are routed
    by Traefik at ``{prefix}-{subdomain}.{base_domain}``; the others are
    published straight on the host as UDP.
    """
    if not settings.base_domain:
        raise ConfigGenerationError("BASE_DOMAIN is not configured; set it in the environment.")

    subdomain = server_subdomain(workload)
    server_domain = f"{subdomain}.{settings.mc_subdomain_prefix}.{settings.base_domain}"

    expose = [MINECRAFT_PORT]
    published: dict[str, int] = {}
    labels = {
        "minecraft.server.id": workload.id,
        "minecraft.server.name": workload.name or "unnamed",
        "minecraft.server.domain": server_domain,
    }
    for service_name, svc in workload.services.items():
        expose.append(svc.port)
        if svc.subdomain:
            host = f"{svc.subdomain}-{subdomain}.{settings.base_domain}"
            labels.update(_traefik_labels(f"{workload.id}-{service_name}", host, svc.port, svc.enable_ssl))
        else:
            published[f"{svc.port}/udp"] = svc.port

    return ContainerDefinition(
        name=container_name(workload.id),
        image=docker_image(workload.runtime.java_version),
        network=settings.docker_network,
        environment=_environment(workload, settings),
        expose=expose,
        published_ports=published,
        volumes={settings.host_server_data_dir(workload.id): CONTAINER_DATA_PATH},
        labels=labels,
    )


def definition_path(settings: Settings, workload_id: str) -> str:
    return os.path.join(settings.server_dir(workload_id), COMPOSE_FILE)


def write_definition(settings: Settings, workload_id: str, definition: ContainerDefinition) -> str:
    """Persist the definition as a Compose file next to the server's data directory."""
    os.makedirs(settings.server_data_dir(workload_id), exist_ok=True)
    path = definition_path(settings, workload_id)
    atomic_write_text(path, yaml.safe_dump(definition.to_compose(), sort_keys=False, default_flow_style=False))
    return path


def load_definition(settings: Settings, workload_id: str) -> ContainerDefinition | None:
    path = definition_path(settings, workload_id)
    if not os.path.exists(path):
        return None
    try:
        with open(path, encoding="utf-8") as fh:
            doc = yaml.safe_load(fh)
        return ContainerDefinition.from_compose(doc)
    except (OSError, yaml.YAMLError) as e:
        raise StoreIOError(f"Cannot read {path}: {e}") from e
    except (AttributeError, KeyError, TypeError, ValueError) as e:
        raise StoreIOError(f"Corrupt container definition in {path}: {e}") from e
