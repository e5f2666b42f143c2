from __future__ import annotations

import json
import os
from dataclasses import dataclass
from threading import Lock
from typing import Callable

import docker
import requests
import yaml
from docker.errors import DockerException

from .db import log_event
from .definitions import container_name
from .errors import ConfigGenerationError
from .models import MINECRAFT_PORT, Workload
from .naming import server_subdomain
from .settings import Settings
from .store import atomic_write_text


ROUTES_FILE = "routes.json"
OVERRIDE_FILE = "docker-compose.override.yml"


@dataclass(frozen=True)
class RouteEntry:
    hostname: str
    backend: str


def build_route_table(workloads: list[Workload], settings: Settings) -> list[RouteEntry]:
    """One entry per workload: ``<subdomain>.<mc domain>`` -> ``minecraft-server-<id>:25565``."""
    if not settings.base_domain:
        raise ConfigGenerationError("BASE_DOMAIN is not configured; set it in the environment.")
    return [
        RouteEntry(
            hostname=f"{server_subdomain(w)}.{settings.mc_domain}",
            backend=f"{container_name(w.id)}:{MINECRAFT_PORT}",
        )
        for w in workloads
    ]


def mapping_string(entries: list[RouteEntry]) -> str:
    """The MAPPING environment value understood by mc-router."""
    return ",".join(f"{e.hostname}={e.backend}" for e in entries)


class RouteSynchronizer:
    """Publishes the mc-router route table and asks the router to reload it.

    The table is rebuilt from every workload on each call; nothing is diffed.
    Failures are journaled and reported through the return value, never raised,
    so they cannot fail the operation that triggered the resync.
    """

    def __init__(self, settings: Settings, client_factory: Callable[[], docker.DockerClient] = docker.from_env):
        self.settings = settings
        self._client_factory = client_factory
        self._client_obj: docker.DockerClient | None = None
        self._client_lock = Lock()
        self.last_table: list[RouteEntry] = []

    def _client(self) -> docker.DockerClient:
        with self._client_lock:
            if self._client_obj is None:
                self._client_obj = self._client_factory()
            return self._client_obj

    @property
    def routes_path(self) -> str:
        return os.path.join(self.settings.router_dir, ROUTES_FILE)

    @property
    def override_path(self) -> str:
        return os.path.join(self.settings.router_dir, OVERRIDE_FILE)

    def resync(self, workloads: list[Workload]) -> bool:
        try:
            entries = build_route_table(workloads, self.settings)
            self._publish(entries)
        except (ConfigGenerationError, OSError, yaml.YAMLError) as e:
            log_event("ERROR", f"Route table not published: {e}")
            return False
        self.last_table = entries

        try:
            self._reload()
        except (DockerException, requests.exceptions.RequestException) as e:
            log_event("WARN", f"Router '{self.settings.router_container}' not reloaded: {e}")
            return False

        log_event("INFO", f"Route table published ({len(entries)} servers) and router reloaded.")
        return True

    def _publish(self, entries: list[RouteEntry]) -> None:
        routes = {
            "default-server": None,
            "mappings": {e.hostname: e.backend for e in entries},
        }
        atomic_write_text(self.routes_path, json.dumps(routes, indent=2) + "\n")

        override = {"services": {self.settings.router_container: {"environment": {"MAPPING": mapping_string(entries)}}}}
        atomic_write_text(self.override_path, yaml.safe_dump(override, sort_keys=False))

    def _reload(self) -> None:
        router = self._client().containers.get(self.settings.router_container)
        if self.settings.router_reload == "restart":
            router.restart()
        else:
            router.kill(signal="SIGHUP")
