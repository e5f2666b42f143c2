from __future__ import annotations

import argparse
import json
import sys

import requests


def _print(obj) -> None:
    print(json.dumps(obj, indent=2, ensure_ascii=False))


def _ports(values: list[str]) -> dict[str, dict]:
    """Parse ``name=port[:prefix[:ssl]]`` entries into additionalPorts."""
    out: dict[str, dict] = {}
    for value in values:
        name, _, rest = value.partition("=")
        parts = rest.split(":")
        if not name or not parts[0].isdigit():
            raise SystemExit(f"invalid --port '{value}', expected name=port[:prefix[:ssl]]")
        entry: dict = {"port": int(parts[0])}
        if len(parts) > 1 and parts[1]:
            entry["subdomain"] = parts[1]
        if len(parts) > 2:
            entry["enableSsl"] = parts[2].lower() in {"1", "true", "yes", "ssl"}
        out[name] = entry
    return out


def _regenerate() -> int:
    from mcfleet.controller import LifecycleController
    from mcfleet.docker_ops import ContainerDriver
    from mcfleet.events import EventBus
    from mcfleet.routes import RouteSynchronizer
    from mcfleet.settings import settings
    from mcfleet.store import WorkloadStore

    controller = LifecycleController(
        settings, WorkloadStore(settings.config_file), ContainerDriver(settings), RouteSynchronizer(settings), EventBus()
    )
    count = controller.regenerate_all()
    _print({"regenerated": count, "routesSynced": controller.resync_routes()})
    return 0


def main(argv: list[str] | None = None) -> int:
    p = argparse.ArgumentParser(description="Minecraft fleet manager CLI")
    p.add_argument("--api", default="http://localhost:8000", help="API base URL")
    sub = p.add_subparsers(dest="cmd", required=True)

    sub.add_parser("list", help="List servers with status")

    s_create = sub.add_parser("create", help="Create a server")
    s_create.add_argument("--name", required=True)
    s_create.add_argument("--subdomain")
    s_create.add_argument("--java-version", default="21")
    s_create.add_argument("--server-type", default="paper")
    s_create.add_argument("--minecraft-version", default="latest")
    s_create.add_argument("--max-ram", type=int, default=2048)
    s_create.add_argument("--min-ram", type=int, default=1024)
    s_create.add_argument("--port", action="append", default=[], help="name=port[:prefix[:ssl]], repeatable")
    s_create.add_argument("--modpack-source", choices=["modrinth", "curseforge"])
    s_create.add_argument("--modpack-slug")

    s_status = sub.add_parser("status", help="Show a server's status")
    s_status.add_argument("id")
    s_status.add_argument("--reconcile", action="store_true", help="Re-check the container instead of a recorded stop")

    for name in ("start", "stop", "kill", "restart", "delete"):
        s = sub.add_parser(name, help=f"{name.capitalize()} a server")
        s.add_argument("id")

    s_cmd = sub.add_parser("command", help="Send a console command")
    s_cmd.add_argument("id")
    s_cmd.add_argument("text", nargs="+")

    s_logs = sub.add_parser("logs", help="Show recent log lines")
    s_logs.add_argument("id")
    s_logs.add_argument("--lines", type=int, default=100)

    s_ev = sub.add_parser("events", help="Show journal events")
    s_ev.add_argument("--limit", type=int, default=20)
    s_ev.add_argument("--server")

    sub.add_parser("resync", help="Rebuild and publish the route table")
    sub.add_parser("regenerate", help="Regenerate every container definition (local, no API)")

    args = p.parse_args(argv)

    if args.cmd == "regenerate":
        return _regenerate()

    base = args.api.rstrip("/")

    if args.cmd == "list":
        _print(requests.get(f"{base}/servers", timeout=10).json())
        return 0

    if args.cmd == "events":
        params = {"limit": args.limit}
        if args.server:
            params["workload_id"] = args.server
        _print(requests.get(f"{base}/events", params=params, timeout=10).json())
        return 0

    if args.cmd == "create":
        payload = {
            "name": args.name,
            "javaVersion": args.java_version,
            "serverType": args.server_type,
            "minecraftVersion": args.minecraft_version,
            "maxRam": args.max_ram,
            "minRam": args.min_ram,
            "additionalPorts": _ports(args.port),
        }
        if args.subdomain:
            payload["subdomain"] = args.subdomain
        if args.modpack_source and args.modpack_slug:
            payload["modpack"] = {"source": args.modpack_source, "slug": args.modpack_slug}
        r = requests.post(f"{base}/servers", json=payload, timeout=30)
        _print(r.json())
        return 0 if r.ok else 1

    if args.cmd == "status":
        params = {"reconcile": "true"} if args.reconcile else {}
        r = requests.get(f"{base}/servers/{args.id}/status", params=params, timeout=10)
        _print(r.json())
        return 0 if r.ok else 1

    if args.cmd in ("start", "stop", "kill", "restart"):
        # stop/restart wait on the game server's graceful shutdown
        r = requests.post(f"{base}/servers/{args.id}/{args.cmd}", timeout=120)
        _print(r.json())
        return 0 if r.ok else 1

    if args.cmd == "delete":
        r = requests.delete(f"{base}/servers/{args.id}", timeout=120)
        _print(r.json())
        return 0 if r.ok else 1

    if args.cmd == "command":
        r = requests.post(f"{base}/servers/{args.id}/command", json={"command": " ".join(args.text)}, timeout=30)
        _print(r.json())
        return 0 if r.ok else 1

    if args.cmd == "logs":
        r = requests.get(f"{base}/servers/{args.id}/logs", params={"lines": args.lines}, timeout=30)
        if not r.ok:
            _print(r.json())
            return 1
        for line in r.json()["lines"]:
            print(line)
        return 0

    if args.cmd == "resync":
        r = requests.post(f"{base}/routes/resync", timeout=30)
        _print(r.json())
        return 0 if r.ok and r.json().get("ok") else 1

    return 2


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
