import dataclasses
import json

import pytest
import yaml
from docker.errors import NotFound

from mcfleet import db
from mcfleet.errors import ConfigGenerationError
from mcfleet.models import Workload
from mcfleet.routes import RouteEntry, RouteSynchronizer, build_route_table, mapping_string


WORKLOADS = [
    Workload(id="a1", name="Survival", subdomain="survival"),
    Workload(id="b2", name="Creative World", subdomain=""),
]


def test_route_table_has_one_entry_per_workload(settings):
    table = build_route_table(WORKLOADS, settings)

    assert table == [
        RouteEntry("survival.mc.example.com", "minecraft-server-a1:25565"),
        RouteEntry("creative-world.mc.example.com", "minecraft-server-b2:25565"),
    ]
    assert mapping_string(table) == (
        "survival.mc.example.com=minecraft-server-a1:25565,creative-world.mc.example.com=minecraft-server-b2:25565"
    )


def test_route_table_requires_base_domain(settings):
    with pytest.raises(ConfigGenerationError):
        build_route_table(WORKLOADS, dataclasses.replace(settings, base_domain=None))


def test_resync_publishes_artifacts_and_signals_router(routes, docker_client):
    assert routes.resync(WORKLOADS) is True

    with open(routes.routes_path, encoding="utf-8") as fh:
        doc = json.load(fh)
    assert doc == {
        "default-server": None,
        "mappings": {
            "survival.mc.example.com": "minecraft-server-a1:25565",
            "creative-world.mc.example.com": "minecraft-server-b2:25565",
        },
    }
    with open(routes.override_path, encoding="utf-8") as fh:
        override = yaml.safe_load(fh)
    assert override["services"]["mc-router"]["environment"]["MAPPING"].startswith("survival.mc.example.com=")

    assert docker_client.container_map["mc-router"].calls == [("kill", "SIGHUP")]
    assert len(routes.last_table) == 2


def test_resync_with_no_workloads_clears_mappings(routes):
    assert routes.resync([]) is True
    with open(routes.routes_path, encoding="utf-8") as fh:
        assert json.load(fh)["mappings"] == {}


def test_restart_reload_mode(settings, docker_client):
    sync = RouteSynchronizer(dataclasses.replace(settings, router_reload="restart"), client_factory=lambda: docker_client)
    assert sync.resync(WORKLOADS) is True
    assert docker_client.container_map["mc-router"].calls == ["restart"]


def test_missing_router_is_reported_not_raised(routes, docker_client):
    del docker_client.container_map["mc-router"]

    assert routes.resync(WORKLOADS) is False
    # the table is still written so a later router start picks it up
    with open(routes.routes_path, encoding="utf-8") as fh:
        assert len(json.load(fh)["mappings"]) == 2
    assert any(e["level"] == "WARN" for e in db.latest_events(5))


def test_missing_base_domain_is_reported_not_raised(settings, docker_client):
    sync = RouteSynchronizer(dataclasses.replace(settings, base_domain=None), client_factory=lambda: docker_client)
    assert sync.resync(WORKLOADS) is False
    assert docker_client.container_map["mc-router"].calls == []


def test_unreachable_docker_is_reported(settings):
    def boom():
        raise NotFound("no daemon")

    assert RouteSynchronizer(settings, client_factory=boom).resync(WORKLOADS) is False


def test_docker_client_is_reused_across_resyncs(settings, docker_client):
    made = []

    def factory():
        made.append(docker_client)
        return docker_client

    sync = RouteSynchronizer(settings, client_factory=factory)
    assert sync.resync(WORKLOADS) is True
    assert sync.resync(WORKLOADS[:1]) is True

    assert len(made) == 1
    assert docker_client.container_map["mc-router"].calls == [("kill", "SIGHUP"), ("kill", "SIGHUP")]
