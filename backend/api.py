"""FastAPI backend for the perception -> state -> decision pipeline."""
from __future__ import annotations

import logging
import os
import re
import time
from contextlib import asynccontextmanager
from queue import Queue
from typing import Any, Optional

from fastapi import Body, FastAPI, Header, HTTPException, Request, Response, WebSocket
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel
from starlette.websockets import WebSocketDisconnect

from common.exceptions import ConfigError
from common.settings import NON_PERSISTED_FIELDS, PipelineSettings, load_settings
from cv.frames import SUPPORTED_FORMATS, encode_png
from cv.types import RawFrame
from db.init_db import init_db
from db.store import SettingsStore
from orchestrator import (
    PipelineAlreadyRunningError,
    PipelineConfig,
    PipelineNotFoundError,
    PipelineOrchestrator,
    ResourceLimitExceededError,
)
from streaming.exceptions import ProtocolViolation, TransportError
from streaming.publisher import StatePublisher
from streaming.sessions import SessionManager, SessionState, WebSocketTransport

logger = logging.getLogger(__name__)

DEFAULT_STREAM_ID = os.getenv("DEFAULT_STREAM_ID", "default")
DEFAULT_SOURCE_URL = os.getenv("DEFAULT_SOURCE_URL", "")
CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "http://localhost:5173").split(",") if o.strip()]
STREAM_ID_PATTERN = re.compile(r"^[A-Za-z0-9_-]{1,64}$")

settings: PipelineSettings | None = None
store: SettingsStore | None = None
orchestrator: PipelineOrchestrator | None = None
sessions: SessionManager | None = None


class PipelineStartRequest(BaseModel):
    source_url: Optional[str] = None
    loop: bool = True


@asynccontextmanager
async def lifespan(_: FastAPI):
    global settings, store, orchestrator, sessions

    init_db()
    store = SettingsStore()
    # ConfigError here is fatal: the service must not start on bad configuration.
    settings = load_settings(store.load_overrides())

    handoff: Queue = Queue(maxsize=settings.handoff_queue_capacity)
    publisher = StatePublisher(settings.redis_url) if settings.redis_url else None
    sessions = SessionManager(
        handoff,
        capacity=settings.session_queue_capacity,
        publisher=publisher,
        on_open=store.record_session_open,
        on_close=store.record_session_close,
    )
    sessions.start()

    orchestrator = PipelineOrchestrator(settings, handoff)
    orchestrator.start_monitoring()

    if DEFAULT_SOURCE_URL:
        try:
            orchestrator.start_pipeline(
                PipelineConfig(stream_id=DEFAULT_STREAM_ID, source_url=DEFAULT_SOURCE_URL, loop=True)
            )
        except (PipelineAlreadyRunningError, ResourceLimitExceededError):
            pass

    yield

    if orchestrator:
        orchestrator.shutdown()
        orchestrator = None
    if sessions:
        await sessions.shutdown()
        sessions = None


app = FastAPI(
    title="Perception Pipeline API",
    description="Frame ingestion, pipeline control and state streaming",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "X-Sequence-Id"],
)


def _require_stream_id(stream_id: str) -> None:
    if not STREAM_ID_PATTERN.fullmatch(stream_id):
        raise HTTPException(status_code=400, detail="Invalid stream_id")


def _require_orchestrator() -> PipelineOrchestrator:
    if not orchestrator:
        raise HTTPException(status_code=503, detail="Orchestrator not initialized")
    return orchestrator


@app.get("/")
def read_root():
    return {
        "status": "ok",
        "message": "Perception pipeline API is running",
        "endpoints": {
            "pipelines": "/api/pipelines",
            "frames": "/api/pipelines/{stream_id}/frames",
            "snapshot": "/api/pipelines/{stream_id}/snapshot.png",
            "settings": "/api/settings",
            "sessions": "/api/sessions",
            "state_ws": "/api/state/ws/{stream_id}",
            "health": "/health",
        },
    }


@app.get("/health")
def health_check():
    if not orchestrator or not sessions:
        raise HTTPException(status_code=503, detail="Service not initialized")
    pipelines = orchestrator.list_pipelines()
    return {
        "status": "ok",
        "pipelines": len(pipelines),
        "degraded": [p["stream_id"] for p in pipelines if p["status"] == "degraded"],
        "sessions": len(sessions.sessions),
        "redis_mirror": sessions.publisher is not None,
    }


# ---------- Pipelines ----------

@app.get("/api/pipelines")
async def list_pipelines():
    orch = _require_orchestrator()
    return {"pipelines": orch.list_pipelines(), "max_pipelines": orch.max_pipelines}


@app.post("/api/pipelines/{stream_id}/start", status_code=201)
async def start_pipeline(stream_id: str, request: PipelineStartRequest | None = None):
    _require_stream_id(stream_id)
    orch = _require_orchestrator()
    request = request or PipelineStartRequest()

    config = PipelineConfig(stream_id=stream_id, source_url=request.source_url or None, loop=request.loop)
    try:
        handle = orch.start_pipeline(config)
    except PipelineAlreadyRunningError as exc:
        raise HTTPException(status_code=409, detail=str(exc))
    except ResourceLimitExceededError as exc:
        raise HTTPException(status_code=503, detail=str(exc))
    except ConfigError as exc:
        logger.error("Pipeline '%s' failed to start: %s", stream_id, exc)
        raise HTTPException(status_code=500, detail=str(exc))

    return {**handle.to_dict(), "status": "started"}


@app.delete("/api/pipelines/{stream_id}", status_code=204)
async def stop_pipeline(stream_id: str):
    _require_stream_id(stream_id)
    orch = _require_orchestrator()
    try:
        orch.stop_pipeline(stream_id)
    except PipelineNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc))


@app.post("/api/pipelines/{stream_id}/resume")
async def resume_pipeline(stream_id: str):
    _require_stream_id(stream_id)
    orch = _require_orchestrator()
    try:
        resumed = orch.resume_pipeline(stream_id)
    except PipelineNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    if not resumed:
        raise HTTPException(status_code=409, detail=f"Pipeline '{stream_id}' is not degraded")
    return {"status": "resumed", "stream_id": stream_id}


@app.post("/api/pipelines/{stream_id}/frames", status_code=202)
async def push_frame(
    stream_id: str,
    request: Request,
    pixel_format: str = "encoded",
    width: Optional[int] = None,
    height: Optional[int] = None,
    x_sequence_id: Optional[int] = Header(None),
):
    _require_stream_id(stream_id)
    orch = _require_orchestrator()
    if pixel_format not in SUPPORTED_FORMATS:
        raise HTTPException(status_code=400, detail=f"Unsupported pixel_format '{pixel_format}'")
    body = await request.body()
    if not body:
        raise HTTPException(status_code=400, detail="Empty frame body")

    try:
        handle = orch.get_pipeline(stream_id)
    except PipelineNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc))

    sequence_id = x_sequence_id if x_sequence_id is not None else handle.next_sequence_id()
    raw = RawFrame(
        data=body,
        sequence_id=sequence_id,
        timestamp=time.time(),
        pixel_format=pixel_format,
        width=width,
        height=height,
    )
    accepted = handle.submit(raw)
    return {"accepted": accepted, "sequence_id": sequence_id}


@app.get("/api/pipelines/{stream_id}/snapshot.png")
async def pipeline_snapshot(stream_id: str):
    _require_stream_id(stream_id)
    orch = _require_orchestrator()
    try:
        handle = orch.get_pipeline(stream_id)
    except PipelineNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc))

    pipeline = handle.worker.pipeline
    png = encode_png(pipeline.debug_frame if pipeline else None)
    if png is None:
        raise HTTPException(status_code=404, detail="No retained frame (enable retain_debug_frame)")
    return Response(content=png, media_type="image/png")


# ---------- Settings and sessions ----------

@app.get("/api/settings")
async def get_settings():
    if settings is None:
        raise HTTPException(status_code=503, detail="Settings not loaded")
    return settings.model_dump(mode="json")


@app.put("/api/settings")
async def update_settings(changes: dict[str, Any] = Body(...)):
    global settings
    orch = _require_orchestrator()
    if settings is None or store is None or sessions is None:
        raise HTTPException(status_code=503, detail="Settings not loaded")

    blocked = sorted(set(changes) & NON_PERSISTED_FIELDS)
    if blocked:
        raise HTTPException(status_code=400, detail=f"Cannot change bootstrap settings: {', '.join(blocked)}")
    try:
        updated = settings.with_updates(changes)
    except ConfigError as exc:
        raise HTTPException(status_code=422, detail=str(exc))

    persistable = updated.persistable()
    changed = store.save_overrides({key: persistable[key] for key in changes})
    settings = updated
    orch.update_settings(updated)
    sessions.capacity = updated.session_queue_capacity
    return {"changed": changed, "settings": updated.model_dump(mode="json")}


@app.get("/api/sessions")
async def list_sessions(limit: int = 50):
    if store is None or sessions is None:
        raise HTTPException(status_code=503, detail="Sessions not initialized")
    return {
        "active": [session.to_dict() for session in sessions.sessions.values()],
        "recent": store.recent_sessions(limit=limit),
    }


# ---------- State websocket ----------

@app.websocket("/api/state/ws/{stream_id}")
async def websocket_state(websocket: WebSocket, stream_id: str):
    if not STREAM_ID_PATTERN.fullmatch(stream_id):
        await websocket.close(code=1008, reason="invalid_stream_id")
        return

    await websocket.accept()

    if not orchestrator or not sessions:
        await websocket.send_json({"type": "error", "message": "Service unavailable"})
        await websocket.close(code=1011)
        return

    try:
        orchestrator.get_pipeline(stream_id)
    except PipelineNotFoundError:
        await websocket.send_json({"type": "error", "message": f"Pipeline '{stream_id}' not found"})
        await websocket.close(code=1008)
        return

    session = await sessions.connect(WebSocketTransport(websocket), stream_id)
    try:
        while session.state in (SessionState.CONNECTING, SessionState.ACTIVE):
            raw = await websocket.receive_text()
            await sessions.handle_control(session, raw)
        await sessions.wait_drained(session)
    except ProtocolViolation as exc:
        logger.warning("Session %s protocol violation: %s", session.session_id, exc)
        try:
            await session.transport.send_json({"type": "error", "message": str(exc)})
        except TransportError:
            pass
        await sessions.disconnect(session, code=1008)
    except TransportError as exc:
        logger.warning("Session %s transport failed: %s", session.session_id, exc)
        await sessions.disconnect(session, code=1011)
    except WebSocketDisconnect:
        pass
    finally:
        await sessions.disconnect(session)


if __name__ == "__main__":
    import uvicorn

    logging.basicConfig(
        level=os.getenv("LOG_LEVEL", "INFO"),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
    uvicorn.run(app, host="0.0.0.0", port=8000, workers=1, loop="asyncio")
