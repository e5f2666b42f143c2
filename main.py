from __future__ import annotations

import json
import logging
import os
from typing import Iterator

from fastapi import FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, StreamingResponse

from mcfleet import db
from mcfleet.api_models import (
    CommandRequest,
    CompressRequest,
    CreateServerRequest,
    ExtractRequest,
    ModpackRequest,
    UpdateServerRequest,
    ports_payload,
)
from mcfleet.archives import submit_compress, submit_extract
from mcfleet.controller import LifecycleController, describe
from mcfleet.docker_ops import ContainerDriver
from mcfleet.errors import ConfigGenerationError, FleetError, JobNotFoundError
from mcfleet.events import EventBus
from mcfleet.jobs import JobManager
from mcfleet.models import Resources, RuntimeSelector
from mcfleet.routes import RouteSynchronizer
from mcfleet.settings import Settings, settings as default_settings
from mcfleet.store import WorkloadStore


SSE_KEEPALIVE_S = 15.0


def build_controller(settings: Settings, bus: EventBus | None = None) -> LifecycleController:
    return LifecycleController(
        settings,
        WorkloadStore(settings.config_file),
        ContainerDriver(settings),
        RouteSynchronizer(settings),
        bus or EventBus(settings.log_buffer_lines),
    )


def sse_stream(bus: EventBus, keepalive_s: float = SSE_KEEPALIVE_S) -> Iterator[str]:
    """Server-Sent Events for one subscriber, with a comment line when idle."""
    sub = bus.subscribe()
    try:
        while True:
            event = sub.get(timeout=keepalive_s)
            if event is None:
                if sub.closed:
                    return
                yield ": keepalive\n\n"
                continue
            yield f"event: {event['type']}\ndata: {json.dumps(event)}\n\n"
    finally:
        sub.close()


def create_app(
    settings: Settings | None = None,
    controller: LifecycleController | None = None,
    jobs: JobManager | None = None,
) -> FastAPI:
    if controller is None:
        controller = build_controller(settings or default_settings)
    settings = settings or controller.settings
    jobs = jobs or JobManager(controller.bus)

    app = FastAPI(title="Minecraft Fleet Manager", version="0.1.0")
    app.state.controller = controller
    app.state.jobs = jobs

    @app.on_event("startup")
    def startup() -> None:
        db.init_db(settings.journal_path)
        controller.initialize()

    @app.exception_handler(FleetError)
    async def fleet_error_handler(_request: Request, exc: FleetError) -> JSONResponse:
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.exception_handler(RequestValidationError)
    async def request_error_handler(_request: Request, exc: RequestValidationError) -> JSONResponse:
        details = "; ".join(
            f"{'.'.join(str(p) for p in err.get('loc', ()) if p != 'body')}: {err.get('msg')}" for err in exc.errors()
        )
        return JSONResponse(status_code=400, content={"kind": "validation", "message": details})

    def _status(workload_id: str) -> dict:
        return {"id": workload_id, "status": controller.get_status(workload_id).value}

    # ---- servers

    @app.get("/servers")
    def list_servers():
        return [describe(w, status) for w, status in controller.list_workloads()]

    @app.post("/servers", status_code=201)
    def create_server(req: CreateServerRequest):
        workload = controller.create(
            name=req.name,
            subdomain=req.subdomain,
            runtime=RuntimeSelector(
                server_type=req.serverType,
                minecraft_version=req.minecraftVersion,
                java_version=str(req.javaVersion),
            ),
            resources=Resources(min_memory_mb=req.minRam, max_memory_mb=req.maxRam),
            services=ports_payload(req.additionalPorts),
            modpack=req.modpack.model_dump() if req.modpack is not None else None,
        )
        return describe(workload, controller.get_status(workload.id))

    @app.get("/servers/{workload_id}")
    def get_server(workload_id: str):
        workload = controller.get(workload_id)
        return describe(workload, controller.get_status(workload_id))

    @app.put("/servers/{workload_id}")
    def update_server(workload_id: str, req: UpdateServerRequest):
        workload = controller.reconfigure(workload_id, req.to_changes())
        return describe(workload, controller.get_status(workload_id))

    @app.delete("/servers/{workload_id}")
    def delete_server(workload_id: str):
        return {"id": workload_id, "deleted": controller.delete(workload_id)}

    # ---- lifecycle

    @app.get("/servers/{workload_id}/status")
    def server_status(workload_id: str, reconcile: bool = False):
        """``reconcile=true`` drops a stopped status recorded after a failed stop and asks Docker again."""
        if reconcile:
            return {"id": workload_id, "status": controller.reconcile_status(workload_id).value}
        return _status(workload_id)

    @app.post("/servers/{workload_id}/start")
    def start_server(workload_id: str):
        controller.start(workload_id)
        return _status(workload_id)

    @app.post("/servers/{workload_id}/stop")
    def stop_server(workload_id: str):
        controller.stop(workload_id)
        return _status(workload_id)

    @app.post("/servers/{workload_id}/kill")
    def kill_server(workload_id: str):
        controller.kill(workload_id)
        return _status(workload_id)

    @app.post("/servers/{workload_id}/restart")
    def restart_server(workload_id: str):
        controller.restart(workload_id)
        return _status(workload_id)

    @app.post("/servers/{workload_id}/command")
    def send_command(workload_id: str, req: CommandRequest):
        controller.send_command(workload_id, req.command)
        return {"id": workload_id, "sent": req.command}

    @app.get("/servers/{workload_id}/logs")
    def get_logs(workload_id: str, lines: int = Query(500, ge=1, le=5000)):
        return {"id": workload_id, "lines": controller.get_logs(workload_id, lines)}

    # ---- modpack

    @app.get("/servers/{workload_id}/modpack")
    def get_modpack(workload_id: str):
        modpack = controller.get(workload_id).modpack
        return {"id": workload_id, "modpack": modpack.to_dict() if modpack else None}

    @app.post("/servers/{workload_id}/modpack")
    def set_modpack(workload_id: str, req: ModpackRequest):
        workload = controller.set_modpack(workload_id, req.source, req.slug, name=req.name, project_id=req.projectId)
        return {"id": workload_id, "modpack": workload.modpack.to_dict() if workload.modpack else None}

    @app.delete("/servers/{workload_id}/modpack")
    def clear_modpack(workload_id: str):
        controller.clear_modpack(workload_id)
        return {"id": workload_id, "modpack": None}

    # ---- archives

    @app.post("/servers/{workload_id}/archive", status_code=202)
    def compress_files(workload_id: str, req: CompressRequest):
        controller.get(workload_id)
        return submit_compress(jobs, settings, workload_id, req.path, req.name).to_dict()

    @app.put("/servers/{workload_id}/archive", status_code=202)
    def extract_archive(workload_id: str, req: ExtractRequest):
        controller.get(workload_id)
        return submit_extract(jobs, settings, workload_id, req.path, req.destination).to_dict()

    @app.get("/servers/{workload_id}/archive/{job_id}")
    def get_job(workload_id: str, job_id: str):
        job = jobs.get(job_id)
        if job.workload_id != workload_id:
            raise JobNotFoundError(f"Unknown job '{job_id}' for server '{workload_id}'.")
        return job.to_dict()

    # ---- fleet

    @app.get("/config")
    def get_config():
        if not settings.base_domain:
            raise ConfigGenerationError("BASE_DOMAIN is not configured.")
        return {"baseDomain": settings.base_domain, "mcDomain": settings.mc_domain}

    @app.get("/events")
    def events(limit: int = Query(50, ge=1, le=1000), workload_id: str | None = None):
        return db.latest_events(limit, workload_id)

    @app.get("/events/stream")
    def events_stream():
        return StreamingResponse(sse_stream(controller.bus), media_type="text/event-stream")

    @app.post("/routes/resync")
    def resync_routes():
        return {"ok": controller.resync_routes()}

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    uvicorn.run(app, host=os.getenv("MCF_HOST", "0.0.0.0"), port=int(os.getenv("MCF_PORT", "8000")))
