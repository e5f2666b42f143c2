from __future__ import annotations

from contextlib import contextmanager
from threading import Lock
from typing import Callable, Iterator

import docker
import requests
from docker.errors import APIError, DockerException, NotFound

from .db import log_event
from .definitions import DEFINITION_LABEL, container_name, load_definition
from .errors import CommandDeliveryError, OperationTimedOut, RuntimeUnavailable, WorkloadNotFound
from .logstream import LogTail
from .settings import Settings


CONSOLE_COMMAND = "mc-send-to-console"
CONSOLE_USER = "1000"


def _default_client() -> docker.DockerClient:
    return docker.from_env()


class ContainerDriver:
    """Docker lifecycle commands for workload containers.

    Containers are named ``minecraft-server-<id>`` and created from the
    Compose artifact written by the definition generator. The driver also
    owns the live log tails, at most one per workload.
    """

    def __init__(self, settings: Settings, client_factory: Callable[[], docker.DockerClient] = _default_client):
        self.settings = settings
        self._client_factory = client_factory
        self._client_obj: docker.DockerClient | None = None
        self._client_lock = Lock()
        self._tails: dict[str, LogTail] = {}
        self._tails_lock = Lock()

    def _client(self) -> docker.DockerClient:
        with self._client_lock:
            if self._client_obj is None:
                try:
                    self._client_obj = self._client_factory()
                except DockerException as e:
                    raise RuntimeUnavailable(f"Docker is not available: {e}") from e
            return self._client_obj

    @contextmanager
    def _translate(self, workload_id: str, action: str) -> Iterator[None]:
        try:
            yield
        except NotFound as e:
            raise WorkloadNotFound(f"No container for server '{workload_id}' ({action}).") from e
        except requests.exceptions.ReadTimeout as e:
            raise OperationTimedOut(f"Docker did not answer in time during {action} of '{workload_id}'.") from e
        except (DockerException, requests.exceptions.RequestException) as e:
            raise RuntimeUnavailable(f"Docker {action} failed for '{workload_id}': {e}") from e

    def _ensure_network(self, client: docker.DockerClient) -> None:
        try:
            client.networks.get(self.settings.docker_network)
        except NotFound:
            client.networks.create(self.settings.docker_network, driver="bridge")
            log_event("INFO", f"Created docker network '{self.settings.docker_network}'.")

    def ensure_definition_applied(self, workload_id: str) -> None:
        """Create and start the container from the current definition unless one is running.

        A stopped container whose definition fingerprint is stale is replaced,
        so changes saved by reconfigure take effect on the next start.
        """
        definition = load_definition(self.settings, workload_id)
        if definition is None:
            raise WorkloadNotFound(f"No container definition for server '{workload_id}'.")

        with self._translate(workload_id, "create"):
            client = self._client()
            try:
                container = client.containers.get(definition.name)
            except NotFound:
                container = None

            if container is not None:
                if container.status == "running":
                    return
                if container.labels.get(DEFINITION_LABEL) == definition.fingerprint():
                    container.start()
                    return
                log_event("INFO", "Definition changed; recreating container.", workload_id=workload_id)
                container.remove(force=True)

            self._ensure_network(client)
            container = client.containers.create(**definition.run_kwargs())
            container.start()
            log_event("INFO", f"Created container {definition.name} from image {definition.image}", workload_id=workload_id)

    def start(self, workload_id: str) -> None:
        with self._translate(workload_id, "start"):
            client = self._client()
            container = client.containers.get(container_name(workload_id))
            container.start()
            self._ensure_network(client)
            network = client.networks.get(self.settings.docker_network)
            try:
                network.connect(container)
            except APIError as e:
                message = str(e)
                if isinstance(e, NotFound) or not ("already exists" in message or "already connected" in message):
                    raise

    def stop(self, workload_id: str, timeout: int | None = None) -> None:
        timeout = self.settings.stop_timeout_s if timeout is None else timeout
        with self._translate(workload_id, "stop"):
            container = self._client().containers.get(container_name(workload_id))
            container.stop(timeout=timeout)

    def kill(self, workload_id: str) -> None:
        with self._translate(workload_id, "kill"):
            try:
                container = self._client().containers.get(container_name(workload_id))
            except NotFound:
                return
            if container.status != "running":
                return
            try:
                container.kill()
            except NotFound:
                return
            except APIError as e:
                # Exited between the status check and the kill.
                if e.status_code == 409 or "is not running" in str(e):
                    return
                raise

    def destroy(self, workload_id: str) -> None:
        """Stop and remove the container with its anonymous volumes. Missing container is fine."""
        self.stop_tail(workload_id)
        with self._translate(workload_id, "destroy"):
            try:
                container = self._client().containers.get(container_name(workload_id))
            except NotFound:
                return
            if container.status == "running":
                container.stop(timeout=self.settings.kill_timeout_s)
            try:
                container.remove(v=True, force=True)
            except NotFound:
                return

    def send_command(self, workload_id: str, text: str) -> None:
        with self._translate(workload_id, "exec"):
            try:
                container = self._client().containers.get(container_name(workload_id))
            except NotFound as e:
                raise CommandDeliveryError(f"Server '{workload_id}' has no container.") from e
            if container.status != "running":
                raise CommandDeliveryError(f"Server '{workload_id}' is not running.")
            exit_code, output = container.exec_run([CONSOLE_COMMAND, text], user=CONSOLE_USER)
            if exit_code != 0:
                detail = (output or b"").decode("utf-8", errors="replace").strip()
                raise CommandDeliveryError(f"Console rejected the command (exit {exit_code}): {detail}")

    def is_running(self, workload_id: str) -> bool:
        try:
            container = self._client().containers.get(container_name(workload_id))
            return container.status == "running"
        except (DockerException, requests.exceptions.RequestException, RuntimeUnavailable):
            return False

    def fetch_logs(self, workload_id: str, max_lines: int = 500) -> list[str]:
        with self._translate(workload_id, "logs"):
            try:
                container = self._client().containers.get(container_name(workload_id))
            except NotFound:
                return []
            raw = container.logs(tail=max_lines, stdout=True, stderr=True)
        text = raw.decode("utf-8", errors="replace") if isinstance(raw, bytes) else str(raw)
        return [line for line in text.splitlines() if line.strip()]

    def tail_logs(self, workload_id: str, on_line: Callable[[str], None]) -> LogTail:
        """Follow the container output (last ``log_tail_lines`` lines, then live)."""
        self.stop_tail(workload_id)
        with self._translate(workload_id, "logs"):
            container = self._client().containers.get(container_name(workload_id))
            stream = container.logs(stream=True, follow=True, stdout=True, stderr=True, tail=self.settings.log_tail_lines)
        tail = LogTail(workload_id, stream, on_line, max_buffer=self.settings.log_buffer_lines, on_close=self._forget)
        with self._tails_lock:
            self._tails[workload_id] = tail
        return tail.start()

    def stop_tail(self, workload_id: str) -> None:
        with self._tails_lock:
            tail = self._tails.pop(workload_id, None)
        if tail is not None:
            tail.cancel()

    def active_tail(self, workload_id: str) -> LogTail | None:
        with self._tails_lock:
            return self._tails.get(workload_id)

    def _forget(self, tail: LogTail) -> None:
        with self._tails_lock:
            if self._tails.get(tail.workload_id) is tail:
                del self._tails[tail.workload_id]
