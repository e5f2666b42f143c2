import dataclasses
import os
import time

import pytest
from fastapi.testclient import TestClient

from main import create_app
from mcfleet.controller import LifecycleController
from mcfleet.errors import OperationTimedOut


@pytest.fixture
def client(controller):
    with TestClient(create_app(controller=controller)) as c:
        yield c


def _create(client, name="Survival", **extra):
    r = client.post("/servers", json={"name": name, **extra})
    assert r.status_code == 201, r.text
    return r.json()


def test_create_and_list(client):
    body = _create(
        client,
        javaVersion=17,
        serverType="fabric",
        additionalPorts={"bluemap": {"port": 8100, "subdomain": "bluemap", "enableSsl": True}, "voice_chat": 24454},
    )

    assert body["subdomain"] == "survival"
    assert body["status"] == "stopped"
    assert body["javaVersion"] == "17"
    assert body["serverType"] == "fabric"
    assert body["additionalPorts"]["bluemap"]["enableSsl"] is True
    assert body["additionalPorts"]["voice_chat"] == {"port": 24454, "subdomain": None, "enableSsl": False}

    listed = client.get("/servers").json()
    assert [s["id"] for s in listed] == [body["id"]]


def test_errors_use_kind_and_message(client):
    _create(client)

    r = client.post("/servers", json={"name": "survival"})
    assert r.status_code == 409
    assert r.json()["kind"] == "duplicate_subdomain"

    r = client.post("/servers", json={"subdomain": "x"})
    assert r.status_code == 400
    assert r.json()["kind"] == "validation"
    assert "name" in r.json()["message"]

    r = client.get("/servers/nope")
    assert r.status_code == 404
    assert r.json() == {"kind": "workload_not_found", "message": "Server 'nope' not found."}


def test_lifecycle_endpoints(client, driver):
    sid = _create(client)["id"]

    r = client.post(f"/servers/{sid}/command", json={"command": "list"})
    assert r.status_code == 409
    assert r.json()["kind"] == "not_running"

    assert client.post(f"/servers/{sid}/start").json() == {"id": sid, "status": "running"}
    assert client.post(f"/servers/{sid}/command", json={"command": "say hi"}).status_code == 200
    assert driver.commands == [(sid, "say hi")]

    driver.logs[sid] = ["a", "b", "c"]
    assert client.get(f"/servers/{sid}/logs", params={"lines": 2}).json()["lines"] == ["b", "c"]

    assert client.post(f"/servers/{sid}/restart").json()["status"] == "running"
    assert client.post(f"/servers/{sid}/stop").json()["status"] == "stopped"
    assert client.post(f"/servers/{sid}/kill").json()["status"] == "stopped"


def test_status_reconcile_after_timed_out_stop(client, driver):
    sid = _create(client)["id"]
    client.post(f"/servers/{sid}/start")
    driver.fail["stop"] = OperationTimedOut("stop timed out")

    assert client.post(f"/servers/{sid}/stop").json()["status"] == "stopped"
    assert client.get(f"/servers/{sid}/status").json() == {"id": sid, "status": "stopped"}

    r = client.get(f"/servers/{sid}/status", params={"reconcile": "true"})
    assert r.json() == {"id": sid, "status": "running"}
    assert client.get(f"/servers/{sid}").json()["status"] == "running"

    assert client.get("/servers/nope/status", params={"reconcile": "true"}).status_code == 404


def test_update_server(client, routes):
    sid = _create(client)["id"]

    r = client.put(f"/servers/{sid}", json={"subdomain": "smp", "maxRam": 4096})
    assert r.status_code == 200
    assert r.json()["subdomain"] == "smp"
    assert r.json()["maxRam"] == 4096
    assert [e.hostname for e in routes.last_table] == ["smp.mc.example.com"]

    r = client.put(f"/servers/{sid}", json={"minRam": 8192})
    assert r.status_code == 400


def test_modpack_endpoints(client):
    sid = _create(client)["id"]
    assert client.get(f"/servers/{sid}/modpack").json()["modpack"] is None

    r = client.post(f"/servers/{sid}/modpack", json={"source": "modrinth", "slug": "cobblemon", "projectId": "MdwFAVRL"})
    assert r.json()["modpack"] == {"source": "modrinth", "slug": "cobblemon", "name": None, "projectId": "MdwFAVRL"}
    assert client.get(f"/servers/{sid}").json()["modpack"]["slug"] == "cobblemon"

    r = client.post(f"/servers/{sid}/modpack", json={"source": "ftb", "slug": "x"})
    assert r.status_code == 400

    assert client.delete(f"/servers/{sid}/modpack").json()["modpack"] is None
    assert "modpack" not in client.get(f"/servers/{sid}").json()


def test_delete_is_idempotent(client):
    sid = _create(client)["id"]
    assert client.delete(f"/servers/{sid}").json() == {"id": sid, "deleted": True}
    assert client.delete(f"/servers/{sid}").json() == {"id": sid, "deleted": False}
    assert client.get(f"/servers/{sid}").status_code == 404


def test_archive_jobs(client, settings):
    sid = _create(client)["id"]
    with open(os.path.join(settings.server_data_dir(sid), "server.properties"), "w") as fh:
        fh.write("motd=hi\n")

    r = client.post(f"/servers/{sid}/archive", json={"path": "server.properties"})
    assert r.status_code == 202
    job_id = r.json()["jobId"]

    deadline = time.monotonic() + 5
    body = client.get(f"/servers/{sid}/archive/{job_id}").json()
    while body["status"] == "running" and time.monotonic() < deadline:
        time.sleep(0.01)
        body = client.get(f"/servers/{sid}/archive/{job_id}").json()
    assert body["status"] == "completed"
    assert body["filename"] == "server.properties.zip"

    other = _create(client, name="Creative")["id"]
    assert client.get(f"/servers/{other}/archive/{job_id}").status_code == 404

    r = client.put(f"/servers/{sid}/archive", json={"path": "../../escape.zip"})
    assert r.status_code == 400


def test_config_events_and_resync(client):
    assert client.get("/config").json() == {"baseDomain": "example.com", "mcDomain": "mc.example.com"}

    sid = _create(client)["id"]
    events = client.get("/events", params={"workload_id": sid}).json()
    assert any("Created server" in e["message"] for e in events)

    assert client.post("/routes/resync").json() == {"ok": True}


def test_config_without_base_domain(settings, store, driver, routes, bus):
    bare = LifecycleController(dataclasses.replace(settings, base_domain=None), store, driver, routes, bus)
    with TestClient(create_app(controller=bare)) as c:
        r = c.get("/config")
    assert r.status_code == 500
    assert r.json()["kind"] == "config_generation"
