from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any


MINECRAFT_PORT = 25565

# Subdomain prefixes for services stored in the legacy "name: port" form.
# None means the service is not HTTP and gets a raw host port instead.
LEGACY_SERVICE_PREFIXES: dict[str, str | None] = {
    "voicechat": None,
    "bluemap": "bluemap",
    "dynmap": "dynmap",
    "squaremap": "map",
    "plan": "plan",
    "geyser": None,
}

MODPACK_SOURCES = ("modrinth", "curseforge")


def utc_now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


@dataclass(frozen=True)
class RuntimeSelector:
    server_type: str = "paper"
    minecraft_version: str = "latest"
    java_version: str = "21"


@dataclass(frozen=True)
class Resources:
    min_memory_mb: int = 1024
    max_memory_mb: int = 2048


@dataclass(frozen=True)
class ServiceSpec:
    port: int
    subdomain: str | None = None  # prefix; set => HTTP-routed through the proxy
    description: str | None = None
    enable_ssl: bool = False

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"port": self.port, "subdomain": self.subdomain, "enableSsl": self.enable_ssl}
        if self.description is not None:
            out["description"] = self.description
        return out


@dataclass(frozen=True)
class ModpackRef:
    source: str
    slug: str
    name: str | None = None
    project_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"source": self.source, "slug": self.slug, "name": self.name, "projectId": self.project_id}

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> ModpackRef:
        project_id = raw.get("projectId", raw.get("id"))
        return cls(
            source=str(raw.get("source") or ""),
            slug=str(raw.get("slug") or ""),
            name=raw.get("name"),
            project_id=str(project_id) if project_id is not None else None,
        )


def _legacy_key(service_name: str) -> str:
    return re.sub(r"[^a-z0-9]", "", service_name.lower())


def parse_service(service_name: str, raw: Any) -> ServiceSpec | None:
    """Normalize one service entry to ServiceSpec.

    Older documents store a bare port number; those take their prefix from
    LEGACY_SERVICE_PREFIXES. Entries without a usable port are dropped.
    """
    if isinstance(raw, ServiceSpec):
        return raw
    if isinstance(raw, bool):
        return None
    if isinstance(raw, int):
        if raw <= 0:
            return None
        return ServiceSpec(port=raw, subdomain=LEGACY_SERVICE_PREFIXES.get(_legacy_key(service_name)))
    if isinstance(raw, dict):
        port = raw.get("port")
        if isinstance(port, str) and port.isdigit():
            port = int(port)
        if not isinstance(port, int) or isinstance(port, bool) or port <= 0:
            return None
        return ServiceSpec(
            port=port,
            subdomain=raw.get("subdomain") or None,
            description=raw.get("description"),
            enable_ssl=bool(raw.get("enableSsl", False)),
        )
    return None


def parse_services(raw: Any) -> dict[str, ServiceSpec]:
    if not isinstance(raw, dict):
        return {}
    out: dict[str, ServiceSpec] = {}
    for name, value in raw.items():
        svc = parse_service(str(name), value)
        if svc is not None:
            out[str(name)] = svc
    return out


@dataclass(frozen=True)
class Workload:
    """Persisted descriptor of one game server.

    The on-disk document keeps the field names the web UI has always used
    (javaVersion, maxRam, additionalPorts, ...); to_dict/from_dict translate.
    """

    id: str
    name: str
    subdomain: str
    runtime: RuntimeSelector = field(default_factory=RuntimeSelector)
    resources: Resources = field(default_factory=Resources)
    services: dict[str, ServiceSpec] = field(default_factory=dict)
    modpack: ModpackRef | None = None
    created_at: str = field(default_factory=utc_now)
    port: int = MINECRAFT_PORT

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "id": self.id,
            "name": self.name,
            "subdomain": self.subdomain,
            "javaVersion": self.runtime.java_version,
            "serverType": self.runtime.server_type,
            "minecraftVersion": self.runtime.minecraft_version,
            "maxRam": self.resources.max_memory_mb,
            "minRam": self.resources.min_memory_mb,
            "port": self.port,
            "additionalPorts": {name: svc.to_dict() for name, svc in self.services.items()},
            "createdAt": self.created_at,
        }
        if self.modpack is not None:
            out["modpack"] = self.modpack.to_dict()
        return out

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> Workload:
        if not isinstance(raw, dict) or not raw.get("id"):
            raise ValueError(f"Invalid workload record: {raw!r}")
        modpack_raw = raw.get("modpack")
        return cls(
            id=str(raw["id"]),
            name=str(raw.get("name") or ""),
            subdomain=str(raw.get("subdomain") or ""),
            runtime=RuntimeSelector(
                server_type=str(raw.get("serverType") or "paper"),
                minecraft_version=str(raw.get("minecraftVersion") or "latest"),
                java_version=str(raw.get("javaVersion") or "21"),
            ),
            resources=Resources(
                min_memory_mb=int(raw.get("minRam") or 1024),
                max_memory_mb=int(raw.get("maxRam") or 2048),
            ),
            services=parse_services(raw.get("additionalPorts")),
            modpack=ModpackRef.from_dict(modpack_raw) if isinstance(modpack_raw, dict) else None,
            created_at=str(raw.get("createdAt") or utc_now()),
            port=int(raw.get("port") or MINECRAFT_PORT),
        )
