"""vw-relay HTTP API: relay job control plus the status WebSocket.

Endpoints:
  GET  /healthz                        → ok
  POST /api/v1/outputs/{id}/start      → start the relay job, returns its endpoint
  POST /api/v1/outputs/{id}/stop       → stop the relay job (no-op if not running)
  POST /api/v1/outputs/stop-all        → stop every running relay job
  GET  /api/v1/outputs/active          → ids of jobs with a live process
  GET  /api/v1/outputs/{id}/pipeline   → pipeline description + rendered command, nothing started
  WS   /ws                             → snapshots and lifecycle events

Env: RELAY_* (see relay.config.Settings)
"""
from __future__ import annotations

import argparse
import asyncio
import json
import logging
from contextlib import asynccontextmanager
from typing import Any, Optional

import uvicorn
from fastapi import APIRouter, FastAPI, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse, PlainTextResponse

from .broadcaster import StatusBroadcaster, Subscription
from .config import Settings, load_settings
from .database import PgStore
from .errors import RelayError
from .models import PipelinePreview, StartResponse, StopResponse
from .pipelines import publish_path
from .ports import PortAllocator
from .supervisor import Launcher, Supervisor, describe_job

LOG = logging.getLogger("relay.api")

router = APIRouter()


def _setup_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _supervisor(request: Request) -> Supervisor:
    return request.app.state.supervisor


@router.get("/healthz", response_class=PlainTextResponse)
def healthz() -> str:
    return "ok"


@router.post("/api/v1/outputs/stop-all")
async def stop_all_outputs(request: Request) -> dict[str, Any]:
    stopped = await _supervisor(request).stop_all()
    return {"stopped": stopped}


@router.get("/api/v1/outputs/active")
def active_outputs(request: Request) -> dict[str, Any]:
    return {"active": sorted(_supervisor(request).active_job_ids())}


@router.post("/api/v1/outputs/{job_id}/start", response_model=StartResponse)
async def start_output(job_id: int, request: Request) -> StartResponse:
    endpoint = await _supervisor(request).start(job_id)
    return StartResponse(id=job_id, endpoint_url=endpoint.url, port=endpoint.port)


@router.post("/api/v1/outputs/{job_id}/stop", response_model=StopResponse)
async def stop_output(job_id: int, request: Request) -> StopResponse:
    stopped = await _supervisor(request).stop(job_id)
    return StopResponse(id=job_id, stopped=stopped)


@router.get("/api/v1/outputs/{job_id}/pipeline", response_model=PipelinePreview)
async def preview_output(job_id: int, request: Request) -> PipelinePreview:
    sup = _supervisor(request)
    job = await sup.store.get_job(job_id)
    mappings = await sup.store.get_mappings(job_id)
    description = describe_job(job, mappings)
    if job.output_port and sup.is_live(job_id):
        url = sup.publish_url(job, job.output_port)
    else:
        url = f"rtsp://{sup.settings.output_host}:<port>/{publish_path(job.name)}"
    description = description.with_publish_url(url)
    spec = sup.render(description)
    return PipelinePreview(
        id=job_id,
        engine=sup.settings.engine,
        description=description.to_dict(),
        command=spec.pretty,
    )


# ── Observer channel ─────────────────────────────────────────────────────

async def _pump_out(ws: WebSocket, sub: Subscription) -> None:
    while True:
        msg = await sub.get()
        if msg is None:
            return
        await ws.send_text(json.dumps(msg))


async def _pump_in(ws: WebSocket, sub: Subscription) -> None:
    while True:
        raw = await ws.receive_text()
        try:
            data = json.loads(raw)
        except ValueError:
            sub.offer({"type": "error", "message": "Invalid JSON"})
            continue
        kind = data.get("type") if isinstance(data, dict) else None
        if kind == "ping":
            sub.offer({"type": "pong"})
        else:
            sub.offer({"type": "error", "message": "Unknown message type"})


@router.websocket("/ws")
async def observer_socket(ws: WebSocket) -> None:
    broadcaster: StatusBroadcaster = ws.app.state.broadcaster
    await ws.accept()
    sub = broadcaster.subscribe()
    sub.offer({"type": "connected", "message": "WebSocket connected"})
    try:
        sub.offer(await broadcaster.snapshot())
    except Exception:
        LOG.exception("initial snapshot failed")

    sender = asyncio.create_task(_pump_out(ws, sub))
    receiver = asyncio.create_task(_pump_in(ws, sub))
    tasks = [sender, receiver]
    try:
        done, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        for t in pending:
            t.cancel()
        for t in done:
            exc = t.exception()
            if exc is not None and not isinstance(exc, WebSocketDisconnect):
                LOG.warning("observer connection ended: %s", exc)
        if sender in done and sender.exception() is None:
            # Subscription was dropped for falling behind; the client can reconnect.
            await ws.close(code=1013)
    finally:
        for t in tasks:
            t.cancel()
        broadcaster.unsubscribe(sub)


# ── App factory ──────────────────────────────────────────────────────────

def create_app(
    settings: Optional[Settings] = None,
    store: Any = None,
    *,
    launcher: Optional[Launcher] = None,
) -> FastAPI:
    settings = settings or Settings()
    store = store if store is not None else PgStore(settings)
    broadcaster = StatusBroadcaster(
        store,
        interval_s=settings.snapshot_interval_s,
        queue_size=settings.observer_queue_size,
    )
    supervisor = Supervisor(
        store,
        PortAllocator(settings.base_port, settings.port_count),
        broadcaster,
        settings,
        launcher=launcher,
    )

    @asynccontextmanager
    async def _lifespan(app: FastAPI):
        await store.open()
        await store.reset_stale_jobs()
        broadcaster.start()
        LOG.info(
            "relay ready (engine=%s, ports %d-%d)",
            settings.engine, settings.base_port, settings.last_port,
        )
        try:
            yield
        finally:
            stopped = await supervisor.stop_all()
            if stopped:
                LOG.info("stopped %d relay job(s) on shutdown", len(stopped))
            await broadcaster.stop()
            await store.close()

    app = FastAPI(title=settings.service_name, version="0.1.0", lifespan=_lifespan)
    app.state.settings = settings
    app.state.store = store
    app.state.broadcaster = broadcaster
    app.state.supervisor = supervisor

    @app.exception_handler(RelayError)
    async def _relay_error_handler(_: Request, exc: RelayError) -> JSONResponse:
        return JSONResponse(
            status_code=exc.status_code,
            content={"detail": str(exc), "error": type(exc).__name__, "phase": exc.phase},
        )

    app.include_router(router)
    return app


def main() -> int:
    ap = argparse.ArgumentParser(description="Multi-source video relay service")
    ap.add_argument("--config", default=None, help="YAML file with Settings overrides")
    ap.add_argument("--log-level", default=None)
    args = ap.parse_args()

    settings = load_settings(args.config)
    level = args.log_level or settings.log_level
    _setup_logging(level)

    uvicorn.run(create_app(settings), host=settings.api_host, port=settings.api_port, log_level=level.lower())
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
