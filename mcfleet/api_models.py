from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field


class ServicePortConfig(BaseModel):
    port: int = Field(..., ge=1, le=65535)
    subdomain: str | None = Field(None, description="Prefix; when set the port is HTTP-routed through the proxy")
    description: str | None = None
    enableSsl: bool = False


class ModpackRequest(BaseModel):
    source: str = Field(..., description="modrinth|curseforge")
    slug: str = Field(..., min_length=1)
    name: str | None = None
    projectId: str | None = None


class CreateServerRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=50)
    subdomain: str | None = Field(None, description="DNS label; derived from the name when omitted")
    javaVersion: str | int = "21"
    serverType: str = "paper"
    minecraftVersion: str = "latest"
    maxRam: int = Field(2048, ge=1)
    minRam: int = Field(1024, ge=1)
    additionalPorts: dict[str, int | ServicePortConfig] = Field(default_factory=dict)
    modpack: ModpackRequest | None = None


class UpdateServerRequest(BaseModel):
    name: str | None = Field(None, min_length=1, max_length=50)
    subdomain: str | None = None
    javaVersion: str | int | None = None
    serverType: str | None = None
    minecraftVersion: str | None = None
    maxRam: int | None = Field(None, ge=1)
    minRam: int | None = Field(None, ge=1)
    additionalPorts: dict[str, int | ServicePortConfig] | None = None
    modpack: ModpackRequest | None = None

    def to_changes(self) -> dict[str, Any]:
        """Only the fields the caller actually sent, keyed the way the controller expects."""
        sent = self.model_fields_set
        mapping = {
            "name": "name",
            "subdomain": "subdomain",
            "javaVersion": "java_version",
            "serverType": "server_type",
            "minecraftVersion": "minecraft_version",
            "maxRam": "max_memory_mb",
            "minRam": "min_memory_mb",
        }
        changes: dict[str, Any] = {target: getattr(self, field) for field, target in mapping.items() if field in sent}
        if "additionalPorts" in sent:
            changes["services"] = ports_payload(self.additionalPorts or {})
        if "modpack" in sent:
            changes["modpack"] = self.modpack.model_dump() if self.modpack is not None else None
        return changes


class CommandRequest(BaseModel):
    command: str = Field(..., min_length=1)


class CompressRequest(BaseModel):
    path: str = Field("", description="Path relative to the server data directory")
    name: str | None = Field(None, description="Archive file name; defaults to <basename>.zip")


class ExtractRequest(BaseModel):
    path: str = Field(..., min_length=1)
    destination: str | None = None


def ports_payload(ports: dict[str, int | ServicePortConfig]) -> dict[str, Any]:
    return {name: value.model_dump() if isinstance(value, ServicePortConfig) else value for name, value in ports.items()}
