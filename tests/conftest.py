import os as _os
import sys

import pytest

# Ensure project root is importable (so `import mcfleet` / `import main` work without installing)
_project_root = _os.path.dirname(_os.path.dirname(__file__))
if _project_root not in sys.path:
    sys.path.insert(0, _project_root)

from docker.errors import NotFound  # noqa: E402

from mcfleet import db  # noqa: E402
from mcfleet.controller import LifecycleController  # noqa: E402
from mcfleet.errors import WorkloadNotFound  # noqa: E402
from mcfleet.events import EventBus  # noqa: E402
from mcfleet.routes import RouteSynchronizer  # noqa: E402
from mcfleet.settings import Settings  # noqa: E402
from mcfleet.store import WorkloadStore  # noqa: E402


# ---- fake docker-py client (shape of docker.DockerClient used by the code)


class FakeContainer:
    def __init__(self, client, name, labels=None, status="created", **kwargs):
        self.client = client
        self.name = name
        self.labels = dict(labels or {})
        self.status = status
        self.kwargs = kwargs
        self.calls = []
        self.exec_result = (0, b"")
        self.log_bytes = b""
        self.log_stream = None
        self.kill_error = None

    def start(self):
        self.calls.append("start")
        self.status = "running"

    def stop(self, timeout=None):
        self.calls.append(("stop", timeout))
        self.status = "exited"

    def kill(self, signal=None):
        self.calls.append(("kill", signal))
        if self.kill_error is not None:
            raise self.kill_error
        if signal is None:
            self.status = "exited"

    def restart(self):
        self.calls.append("restart")
        self.status = "running"

    def remove(self, v=False, force=False):
        self.calls.append(("remove", v, force))
        self.client.removed.append(self.name)
        self.client.container_map.pop(self.name, None)

    def exec_run(self, cmd, user=None):
        self.calls.append(("exec", list(cmd), user))
        return self.exec_result

    def logs(self, stream=False, follow=False, stdout=True, stderr=True, tail="all"):
        self.calls.append(("logs", stream, tail))
        if stream:
            return iter(self.log_stream or [])
        return self.log_bytes


class FakeContainers:
    def __init__(self, client):
        self.client = client

    def get(self, name):
        if self.client.get_error is not None:
            raise self.client.get_error
        try:
            return self.client.container_map[name]
        except KeyError:
            raise NotFound(f"No such container: {name}")

    def create(self, **kwargs):
        name = kwargs.pop("name")
        labels = kwargs.pop("labels", {})
        container = FakeContainer(self.client, name, labels=labels, **kwargs)
        self.client.container_map[name] = container
        self.client.created.append(name)
        return container


class FakeNetwork:
    def __init__(self, name):
        self.name = name
        self.connected = []
        self.connect_error = None

    def connect(self, container):
        if self.connect_error is not None:
            raise self.connect_error
        self.connected.append(container.name)


class FakeNetworks:
    def __init__(self, client):
        self.client = client

    def get(self, name):
        try:
            return self.client.network_map[name]
        except KeyError:
            raise NotFound(f"network {name} not found")

    def create(self, name, driver=None):
        network = FakeNetwork(name)
        self.client.network_map[name] = network
        return network


class FakeDockerClient:
    def __init__(self):
        self.container_map = {}
        self.network_map = {}
        self.created = []
        self.removed = []
        self.get_error = None
        self.containers = FakeContainers(self)
        self.networks = FakeNetworks(self)

    def add_container(self, name, status="running", labels=None):
        container = FakeContainer(self, name, labels=labels, status=status)
        self.container_map[name] = container
        return container


# ---- fake container driver for controller tests


class FakeDriver:
    """Records lifecycle calls; ``fail[action] = exc`` makes that action raise."""

    def __init__(self):
        self.containers = set()
        self.running = set()
        self.calls = []
        self.fail = {}
        self.commands = []
        self.logs = {}
        self.tails = {}
        self.stays_running = False

    def _call(self, action, workload_id):
        self.calls.append((action, workload_id))
        exc = self.fail.get(action)
        if exc is not None:
            raise exc

    def ensure_definition_applied(self, workload_id):
        self._call("apply", workload_id)
        self.containers.add(workload_id)
        self.running.add(workload_id)

    def start(self, workload_id):
        self._call("start", workload_id)
        if workload_id not in self.containers:
            raise WorkloadNotFound(f"no container for {workload_id}")
        self.running.add(workload_id)

    def stop(self, workload_id, timeout=None):
        self._call("stop", workload_id)
        if workload_id not in self.containers:
            raise WorkloadNotFound(f"no container for {workload_id}")
        if not self.stays_running:
            self.running.discard(workload_id)

    def kill(self, workload_id):
        self._call("kill", workload_id)
        self.running.discard(workload_id)

    def destroy(self, workload_id):
        self._call("destroy", workload_id)
        self.containers.discard(workload_id)
        self.running.discard(workload_id)

    def send_command(self, workload_id, text):
        self._call("command", workload_id)
        self.commands.append((workload_id, text))

    def is_running(self, workload_id):
        return workload_id in self.running

    def fetch_logs(self, workload_id, max_lines=500):
        return self.logs.get(workload_id, [])[-max_lines:]

    def tail_logs(self, workload_id, on_line):
        self._call("tail", workload_id)
        self.tails[workload_id] = on_line

    def stop_tail(self, workload_id):
        self.tails.pop(workload_id, None)


# ---- fixtures


@pytest.fixture(autouse=True)
def journal(tmp_path, monkeypatch):
    """Every test gets its own event journal."""
    monkeypatch.setattr(db, "_db_path", None)
    db.init_db(str(tmp_path / "journal.db"))
    yield


@pytest.fixture
def settings(tmp_path):
    return Settings(
        data_dir=str(tmp_path / "data"),
        host_data_dir=None,
        db_path=str(tmp_path / "journal.db"),
        base_domain="example.com",
        restart_wait_s=0,
        poll_interval_s=0,
        curseforge_api_key=None,
    )


@pytest.fixture
def docker_client():
    client = FakeDockerClient()
    client.add_container("mc-router")
    return client


@pytest.fixture
def bus():
    return EventBus(queue_size=1000)


@pytest.fixture
def store(settings):
    return WorkloadStore(settings.config_file)


@pytest.fixture
def routes(settings, docker_client):
    return RouteSynchronizer(settings, client_factory=lambda: docker_client)


@pytest.fixture
def driver():
    return FakeDriver()


@pytest.fixture
def controller(settings, store, driver, routes, bus):
    ctl = LifecycleController(settings, store, driver, routes, bus)
    ctl.initialize()
    return ctl

