from __future__ import annotations

import os
import shutil
import time
import uuid
from dataclasses import replace
from typing import Any, Callable

from . import db
from .definitions import ContainerDefinition, definition_path, generate, write_definition
from .docker_ops import ContainerDriver
from .errors import (
    DuplicateSubdomainError,
    FleetError,
    NotRunningError,
    StoreIOError,
    ValidationError,
    WorkloadNotFound,
    WorkloadNotFoundError,
)
from .events import EventBus
from .models import MINECRAFT_PORT, MODPACK_SOURCES, ModpackRef, Resources, RuntimeSelector, ServiceSpec, Workload, parse_service
from .naming import is_valid_subdomain, normalize, server_subdomain
from .routes import RouteSynchronizer
from .runtime import RuntimeState, WorkloadStatus
from .settings import Settings
from .store import WorkloadStore


MIN_NAME_LENGTH = 1
MAX_NAME_LENGTH = 50
MAX_LOG_LINES = 5000

# A change to any of these regenerates the definition and resyncs the route table.
ROUTED_FIELDS = ("name", "subdomain", "services", "runtime", "modpack")

UPDATABLE_FIELDS = frozenset(
    {
        "name",
        "subdomain",
        "server_type",
        "minecraft_version",
        "java_version",
        "min_memory_mb",
        "max_memory_mb",
        "services",
        "modpack",
    }
)


def _validate_name(name: Any) -> str:
    if not isinstance(name, str) or len(name.strip()) < MIN_NAME_LENGTH:
        raise ValidationError("Server name is required.")
    if len(name) > MAX_NAME_LENGTH:
        raise ValidationError(f"Server name must be at most {MAX_NAME_LENGTH} characters.")
    return name


def _resolve_subdomain(subdomain: str | None, name: str) -> str:
    value = normalize(subdomain) if subdomain else normalize(name)
    if not value:
        raise ValidationError("Subdomain is empty; use letters or digits in the name or subdomain.")
    if not is_valid_subdomain(value):
        raise ValidationError(f"Invalid subdomain '{value}' (lowercase letters, digits and '-', max 63 chars).")
    return value


def _validate_resources(resources: Resources) -> None:
    if resources.min_memory_mb <= 0 or resources.max_memory_mb <= 0:
        raise ValidationError("Memory limits must be positive.")
    if resources.min_memory_mb > resources.max_memory_mb:
        raise ValidationError(
            f"minRam ({resources.min_memory_mb}M) must not exceed maxRam ({resources.max_memory_mb}M)."
        )


def _coerce_services(raw: Any) -> dict[str, ServiceSpec]:
    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise ValidationError("additionalPorts must be an object keyed by service name.")
    out: dict[str, ServiceSpec] = {}
    for name, value in raw.items():
        svc = parse_service(str(name), value)
        if svc is None:
            raise ValidationError(f"Service '{name}' has no valid port.")
        out[str(name)] = svc
    return out


def _validate_services(services: dict[str, ServiceSpec]) -> None:
    used = {MINECRAFT_PORT: "minecraft"}
    for name, svc in services.items():
        if not 1 <= svc.port <= 65535:
            raise ValidationError(f"Service '{name}' port {svc.port} is out of range.")
        if svc.port in used:
            raise ValidationError(f"Service '{name}' port {svc.port} is already used by '{used[svc.port]}'.")
        used[svc.port] = name
        if svc.subdomain is not None and not is_valid_subdomain(svc.subdomain):
            raise ValidationError(f"Service '{name}' has an invalid subdomain prefix '{svc.subdomain}'.")


def _coerce_modpack(raw: Any) -> ModpackRef | None:
    if raw is None:
        return None
    modpack = raw if isinstance(raw, ModpackRef) else ModpackRef.from_dict(raw) if isinstance(raw, dict) else None
    if modpack is None:
        raise ValidationError("modpack must be an object.")
    if modpack.source not in MODPACK_SOURCES:
        raise ValidationError(f"Unknown modpack source '{modpack.source}' (expected one of {', '.join(MODPACK_SOURCES)}).")
    if not modpack.slug:
        raise ValidationError("Modpack slug is required.")
    return modpack


def _check_unique(subdomain: str, workloads: list[Workload], exclude_id: str | None = None) -> None:
    for w in workloads:
        if w.id != exclude_id and server_subdomain(w) == subdomain:
            raise DuplicateSubdomainError(f"Subdomain '{subdomain}' is already used by server '{w.name}'.")


def describe(workload: Workload, status: WorkloadStatus) -> dict[str, Any]:
    return {**workload.to_dict(), "status": status.value}


class LifecycleController:
    """Turns operator intents into store, definition, Docker and routing steps.

    Intents for one workload are serialized by its lock; different workloads
    proceed in parallel. Driver failures during create/start are raised to the
    caller. Failures during stop/kill/delete are journaled and the operation
    carries on, leaving the workload recorded as stopped (or gone).
    """

    def __init__(
        self,
        settings: Settings,
        store: WorkloadStore,
        driver: ContainerDriver,
        routes: RouteSynchronizer,
        bus: EventBus,
        state: RuntimeState | None = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.settings = settings
        self.store = store
        self.driver = driver
        self.routes = routes
        self.bus = bus
        self.state = state or RuntimeState()
        self._sleep = sleep
        self._clock = clock

    # ---- setup

    def initialize(self) -> None:
        """Create data directories, load the store and publish the route table once."""
        os.makedirs(self.settings.servers_dir, exist_ok=True)
        workloads = self.store.read_all()
        self._resync(workloads)
        db.log_event("INFO", f"Server manager initialized with {len(workloads)} servers")

    def regenerate_all(self) -> int:
        workloads = self.store.read_all()
        for w in workloads:
            self._write_definition(w.id, generate(w, self.settings))
        return len(workloads)

    def resync_routes(self) -> bool:
        return self._resync()

    # ---- queries

    def list_workloads(self) -> list[tuple[Workload, WorkloadStatus]]:
        return [(w, self._current_status(w.id)) for w in self.store.read_all()]

    def get(self, workload_id: str) -> Workload:
        workload = self.store.get(workload_id)
        if workload is None:
            raise WorkloadNotFoundError(f"Server '{workload_id}' not found.")
        return workload

    def get_status(self, workload_id: str) -> WorkloadStatus:
        self.get(workload_id)
        return self._current_status(workload_id)

    def reconcile_status(self, workload_id: str) -> WorkloadStatus:
        """Drop any recorded conservative status and ask Docker again."""
        self.state.unsettle(workload_id)
        return self.get_status(workload_id)

    def get_logs(self, workload_id: str, lines: int = 500) -> list[str]:
        self.get(workload_id)
        return self.driver.fetch_logs(workload_id, max(1, min(int(lines), MAX_LOG_LINES)))

    # ---- intents

    def create(
        self,
        name: str,
        subdomain: str | None = None,
        runtime: RuntimeSelector | None = None,
        resources: Resources | None = None,
        services: dict[str, Any] | None = None,
        modpack: ModpackRef | dict[str, Any] | None = None,
    ) -> Workload:
        name = _validate_name(name)
        resolved = _resolve_subdomain(subdomain, name)
        resources = resources or Resources()
        _validate_resources(resources)
        svc = _coerce_services(services)
        _validate_services(svc)

        workload = Workload(
            id=str(uuid.uuid4()),
            name=name,
            subdomain=resolved,
            runtime=runtime or RuntimeSelector(),
            resources=resources,
            services=svc,
            modpack=_coerce_modpack(modpack),
        )
        # Generated before anything is written: a missing BASE_DOMAIN leaves no trace.
        definition = generate(workload, self.settings)

        try:
            with self.store.mutate() as items:
                _check_unique(resolved, items)
                self._write_definition(workload.id, definition)
                items.append(workload)
        except FleetError:
            shutil.rmtree(self.settings.server_dir(workload.id), ignore_errors=True)
            raise

        db.log_event("INFO", f"Created server '{name}' at {resolved}", workload_id=workload.id)
        self.bus.publish_status(workload.id, WorkloadStatus.STOPPED.value)
        self._resync(items)
        return workload

    def start(self, workload_id: str) -> None:
        with self.state.lock_for(workload_id):
            workload = self.get(workload_id)
            self._begin(workload_id, WorkloadStatus.STARTING)
            ok = False
            try:
                if not os.path.exists(definition_path(self.settings, workload_id)):
                    self._write_definition(workload_id, generate(workload, self.settings))
                was_running = self.driver.is_running(workload_id)
                self.driver.ensure_definition_applied(workload_id)
                try:
                    self.driver.start(workload_id)
                    self.driver.tail_logs(workload_id, lambda line: self.bus.publish_log(workload_id, line))
                except FleetError:
                    if not was_running:
                        self._roll_back_start(workload_id)
                    raise
                ok = True
            finally:
                self._end(workload_id, WorkloadStatus.RUNNING if ok else None)
            db.log_event("INFO", "Server started", workload_id=workload_id)

    def stop(self, workload_id: str) -> None:
        with self.state.lock_for(workload_id):
            self.get(workload_id)
            self._begin(workload_id, WorkloadStatus.STOPPING)
            clean = False
            try:
                self.driver.stop(workload_id, timeout=self.settings.stop_timeout_s)
                clean = True
            except WorkloadNotFound:
                clean = True
            except FleetError as e:
                db.log_event("WARN", f"Stop did not complete ({e.message}); recording as stopped.", workload_id=workload_id)
            finally:
                self.driver.stop_tail(workload_id)
                if not clean:
                    self.state.settle(workload_id, WorkloadStatus.STOPPED)
                self._end(workload_id, WorkloadStatus.STOPPED)
            db.log_event("INFO", "Server stopped", workload_id=workload_id)

    def kill(self, workload_id: str) -> None:
        with self.state.lock_for(workload_id):
            self.get(workload_id)
            self._begin(workload_id, WorkloadStatus.KILLING)
            clean = False
            try:
                self.driver.kill(workload_id)
                clean = True
            except FleetError as e:
                db.log_event("WARN", f"Kill did not complete ({e.message}); recording as stopped.", workload_id=workload_id)
            finally:
                self.driver.stop_tail(workload_id)
                if not clean:
                    self.state.settle(workload_id, WorkloadStatus.STOPPED)
                self._end(workload_id, WorkloadStatus.STOPPED)
            db.log_event("INFO", "Server killed", workload_id=workload_id)

    def restart(self, workload_id: str) -> None:
        with self.state.lock_for(workload_id):
            self.stop(workload_id)
            if not self._wait_until_stopped(workload_id):
                db.log_event(
                    "WARN",
                    f"Container still running {self.settings.restart_wait_s}s after stop; starting anyway.",
                    workload_id=workload_id,
                )
            self.start(workload_id)

    def reconfigure(self, workload_id: str, changes: dict[str, Any]) -> Workload:
        """Merge ``changes`` into the descriptor. A running container keeps its old settings until restarted."""
        unknown = set(changes) - UPDATABLE_FIELDS
        if unknown:
            raise ValidationError(f"Unknown fields: {', '.join(sorted(unknown))}.")

        with self.state.lock_for(workload_id):
            with self.store.mutate() as items:
                index = next((i for i, w in enumerate(items) if w.id == workload_id), None)
                if index is None:
                    raise WorkloadNotFoundError(f"Server '{workload_id}' not found.")
                old = items[index]
                new = self._merge(old, changes)
                _check_unique(server_subdomain(new), items, exclude_id=workload_id)

                changed = [f for f in ROUTED_FIELDS if getattr(old, f) != getattr(new, f)]
                if changed or old.resources != new.resources:
                    self._write_definition(workload_id, generate(new, self.settings))
                items[index] = new

            if changed:
                db.log_event("INFO", f"Reconfigured ({', '.join(changed)}); restart to apply.", workload_id=workload_id)
                self._resync(items)
            return new

    def set_modpack(
        self, workload_id: str, source: str, slug: str, name: str | None = None, project_id: str | None = None
    ) -> Workload:
        return self.reconfigure(
            workload_id, {"modpack": ModpackRef(source=source, slug=slug, name=name, project_id=project_id)}
        )

    def clear_modpack(self, workload_id: str) -> Workload:
        return self.reconfigure(workload_id, {"modpack": None})

    def delete(self, workload_id: str) -> bool:
        """Remove container, descriptor, route and data. Returns False if the server was already gone."""
        with self.state.lock_for(workload_id):
            workload = self.store.get(workload_id)
            if workload is None:
                return False
            self._begin(workload_id, WorkloadStatus.DELETING)
            try:
                try:
                    self.driver.destroy(workload_id)
                except FleetError as e:
                    db.log_event(
                        "WARN", f"Container removal failed ({e.message}); deleting the record anyway.", workload_id=workload_id
                    )
                self.driver.stop_tail(workload_id)

                with self.store.mutate() as items:
                    items[:] = [w for w in items if w.id != workload_id]
                self._resync(items)
                self._remove_data(workload_id)
            finally:
                self.state.forget(workload_id)

        self.bus.publish_deleted(workload_id)
        db.log_event("INFO", f"Server '{workload.name}' deleted", workload_id=workload_id)
        return True

    def send_command(self, workload_id: str, text: str) -> None:
        if not isinstance(text, str) or not text.strip():
            raise ValidationError("Command is empty.")
        with self.state.lock_for(workload_id):
            self.get(workload_id)
            if self._current_status(workload_id) is not WorkloadStatus.RUNNING:
                raise NotRunningError(f"Server '{workload_id}' is not running.")
            self.driver.send_command(workload_id, text.strip())

    # ---- internals

    def _current_status(self, workload_id: str) -> WorkloadStatus:
        overlay = self.state.overlay(workload_id)
        if overlay is not None:
            return overlay
        return WorkloadStatus.RUNNING if self.driver.is_running(workload_id) else WorkloadStatus.STOPPED

    def _begin(self, workload_id: str, status: WorkloadStatus) -> None:
        self.state.begin(workload_id, status)
        self.bus.publish_status(workload_id, status.value)

    def _end(self, workload_id: str, status: WorkloadStatus | None = None) -> None:
        self.state.end(workload_id)
        self.bus.publish_status(workload_id, (status or self._current_status(workload_id)).value)

    def _roll_back_start(self, workload_id: str) -> None:
        """Stop a container brought up by a start that then failed."""
        self.driver.stop_tail(workload_id)
        try:
            self.driver.stop(workload_id, timeout=self.settings.kill_timeout_s)
        except FleetError as e:
            db.log_event("WARN", f"Could not stop container after failed start: {e.message}", workload_id=workload_id)

    def _wait_until_stopped(self, workload_id: str) -> bool:
        deadline = self._clock() + self.settings.restart_wait_s
        while self.driver.is_running(workload_id):
            if self._clock() >= deadline:
                return False
            self._sleep(self.settings.poll_interval_s)
        return True

    def _merge(self, old: Workload, changes: dict[str, Any]) -> Workload:
        name = _validate_name(changes["name"]) if "name" in changes else old.name
        subdomain = _resolve_subdomain(changes["subdomain"], name) if "subdomain" in changes else old.subdomain

        runtime = replace(
            old.runtime,
            **{
                k: str(changes[k])
                for k in ("server_type", "minecraft_version", "java_version")
                if changes.get(k) is not None
            },
        )
        resources = replace(
            old.resources,
            **{k: int(changes[k]) for k in ("min_memory_mb", "max_memory_mb") if changes.get(k) is not None},
        )
        _validate_resources(resources)

        services = old.services
        if "services" in changes:
            services = _coerce_services(changes["services"])
            _validate_services(services)

        modpack = _coerce_modpack(changes["modpack"]) if "modpack" in changes else old.modpack

        return replace(
            old, name=name, subdomain=subdomain, runtime=runtime, resources=resources, services=services, modpack=modpack
        )

    def _write_definition(self, workload_id: str, definition: ContainerDefinition) -> None:
        try:
            write_definition(self.settings, workload_id, definition)
        except OSError as e:
            raise StoreIOError(f"Cannot write container definition for '{workload_id}': {e}") from e

    def _remove_data(self, workload_id: str) -> None:
        path = self.settings.server_dir(workload_id)
        if not os.path.exists(path):
            return
        try:
            shutil.rmtree(path)
        except OSError as e:
            raise StoreIOError(f"Cannot remove data of '{workload_id}': {e}") from e

    def _resync(self, workloads: list[Workload] | None = None) -> bool:
        if workloads is None:
            workloads = self.store.read_all()
        ok = self.routes.resync(workloads)
        if not ok:
            db.log_event("WARN", "Route table out of date; retry with a manual resync.")
        return ok
