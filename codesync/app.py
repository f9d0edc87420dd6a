"""FastAPI application: health and room REST routes, WebSocket mount."""

from __future__ import annotations

import logging
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from fastapi import FastAPI, Request, WebSocket, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from codesync.config import Settings
from codesync.reaper import Reaper
from codesync.rooms import RoomRegistry
from codesync.sandbox import ExecutionSandbox
from codesync.ws import SessionGateway

logger = logging.getLogger(__name__)


class HealthResponse(BaseModel):
    status: str
    roomCount: int
    connectionCount: int
    uptime: float


class RoomInfo(BaseModel):
    id: str
    participantCount: int
    language: str
    createdAt: datetime
    lastActivity: datetime


def _utc(ts: float) -> datetime:
    return datetime.fromtimestamp(ts, tz=timezone.utc)


def create_app(
    settings: Settings | None = None,
    registry: RoomRegistry | None = None,
    sandbox: ExecutionSandbox | None = None,
) -> FastAPI:
    """Build the app with its own registry, sandbox, gateway and reaper."""
    settings = settings or Settings.from_env()
    registry = registry if registry is not None else RoomRegistry()
    sandbox = sandbox or ExecutionSandbox.from_settings(settings)
    gateway = SessionGateway(registry, sandbox)
    reaper = Reaper(
        registry,
        interval_seconds=settings.sweep_interval_seconds,
        max_idle_seconds=settings.room_max_idle_seconds,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Start background tasks on startup and clean them up on shutdown."""
        app.state.started_at = time.monotonic()
        reaper.start()
        try:
            yield
        finally:
            await reaper.stop()
            await gateway.cancel_runs()

    app = FastAPI(title="CodeSync", lifespan=lifespan)
    app.state.settings = settings
    app.state.registry = registry
    app.state.sandbox = sandbox
    app.state.gateway = gateway
    app.state.reaper = reaper
    app.state.started_at = time.monotonic()

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"] if settings.allow_any_origin else settings.allowed_origins,
        allow_credentials=not settings.allow_any_origin,
        allow_methods=["GET"],
        allow_headers=["*"],
    )

    # --- REST API ---

    async def health(request: Request) -> HealthResponse:
        return HealthResponse(
            status="healthy",
            roomCount=len(registry),
            connectionCount=gateway.connection_count,
            uptime=round(time.monotonic() - request.app.state.started_at, 3),
        )

    async def room_info(room_id: str):
        room = registry.get(room_id)
        if not room:
            return JSONResponse({"error": "Room not found"}, status_code=404)
        return RoomInfo(
            id=room.id,
            participantCount=len(room.participants),
            language=room.language,
            createdAt=_utc(room.created_at),
            lastActivity=_utc(room.last_activity),
        )

    # The bundled client polls /api/health; both prefixes serve the same data.
    for prefix in ("", "/api"):
        app.add_api_route(
            f"{prefix}/health", health, methods=["GET"], response_model=HealthResponse
        )
        app.add_api_route(
            f"{prefix}/rooms/{{room_id}}",
            room_info,
            methods=["GET"],
            response_model=RoomInfo,
            responses={404: {"description": "Room not found"}},
        )

    # --- WebSocket ---

    @app.websocket("/ws")
    async def ws_endpoint(ws: WebSocket):
        origin = ws.headers.get("origin")
        if not settings.origin_allowed(origin):
            logger.warning("Rejected WebSocket from disallowed origin %s", origin)
            await ws.close(code=status.WS_1008_POLICY_VIOLATION)
            return
        await gateway.serve(ws)

    return app
