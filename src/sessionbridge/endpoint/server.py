"""FastAPI HTTP server for the session broker.

Control plane::

    POST   /session/create          <- {"kind": "local", "target": "/bin/bash", "label": "..."}
    POST   /session/{id}/exec       <- {"command": "...", "timeout": 5000}
    POST   /session/{id}/cancel
    POST   /sessions/exec-all       <- {"command": "...", "sessionIds": [...]}
    POST   /sessions/cancel-all
    GET    /session/{id}
    GET    /sessions
    PATCH  /session/{id}            <- {"label": "..."}
    DELETE /session/{id}
    DELETE /sessions/all
    GET    /health

Live interaction: WebSocket ``/session/{id}/stream`` (see ``stream.py``).
Timeouts and durations on the wire are in milliseconds.
"""

from __future__ import annotations

import functools
import logging
import time
from contextlib import asynccontextmanager
from typing import AsyncIterator

import uvicorn
from fastapi import FastAPI, Request, WebSocket
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from sessionbridge.adapters import create_adapter
from sessionbridge.adapters.base import AdapterError
from sessionbridge.broker.errors import BrokerError, SessionNotFound
from sessionbridge.broker.executor import CommandExecutor
from sessionbridge.broker.reaper import IdleReaper
from sessionbridge.broker.registry import AdapterFactory, SessionRegistry
from sessionbridge.config.settings import Settings, load_settings
from sessionbridge.domain.models import Credentials, SessionKind
from sessionbridge.endpoint.stream import StreamConnection, error_message
from sessionbridge.utils.logging import setup_logging

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class _Request(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class CreateSessionRequest(_Request):
    kind: SessionKind | None = Field(default=None, description="local or remote")
    target: str | None = Field(default=None, description="Shell path or remote host")
    computer: str | None = Field(default=None, description="Remote host (legacy name for target)")
    label: str | None = Field(default=None)
    credentials: Credentials | None = Field(default=None)

    def resolved_kind(self) -> SessionKind:
        if self.kind is not None:
            return self.kind
        return SessionKind.REMOTE if self.computer else SessionKind.LOCAL


class ExecRequest(_Request):
    command: str = Field(min_length=1)
    timeout: int | None = Field(default=None, gt=0, description="Timeout in milliseconds")


class ExecAllRequest(ExecRequest):
    session_ids: list[str] | None = Field(default=None)


class RenameRequest(_Request):
    label: str = Field(min_length=1)


def _seconds(timeout_ms: int | None) -> float | None:
    return timeout_ms / 1000 if timeout_ms else None


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------


def create_app(
    settings: Settings | None = None,
    registry: SessionRegistry | None = None,
    adapter_factory: AdapterFactory | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        settings: Service configuration. Defaults to ``Settings()``.
        registry: Optional pre-built registry (for testing).
        adapter_factory: Optional adapter factory (for testing); ignored
            when ``registry`` is given.
    """
    settings = settings or Settings()
    limits = settings.sessions

    if registry is None:
        registry = SessionRegistry(
            adapter_factory=adapter_factory or functools.partial(create_adapter, settings),
            default_local_target=settings.local.shell_command,
            buffer_max_chars=limits.buffer_max_chars,
            buffer_keep_chars=limits.buffer_keep_chars,
        )
    executor = CommandExecutor(registry, default_timeout=limits.default_timeout)
    reaper = IdleReaper(registry, idle_timeout=limits.idle_timeout, interval=limits.reap_interval)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        reaper.start()
        logger.info(
            "%s ready for concurrent session management on port %d",
            settings.server.service_name, settings.server.port,
        )
        yield
        await reaper.stop()
        await registry.close_all()
        logger.info("%s stopped", settings.server.service_name)

    app = FastAPI(
        title="sessionbridge",
        description="Concurrent shell session broker",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.registry = registry
    app.state.executor = executor
    app.state.reaper = reaper
    app.state.started_at = time.time()

    @app.exception_handler(BrokerError)
    async def broker_error(request: Request, exc: BrokerError) -> JSONResponse:
        return JSONResponse(
            status_code=exc.status_code,
            content={"success": False, "error": str(exc), "sessionId": exc.session_id or None},
        )

    @app.exception_handler(AdapterError)
    async def adapter_error(request: Request, exc: AdapterError) -> JSONResponse:
        logger.error("Adapter failure on %s: %s", request.url.path, exc)
        return JSONResponse(
            status_code=exc.status_code,
            content={"success": False, "error": str(exc), "errorType": type(exc).__name__},
        )

    @app.get("/health")
    async def health_check() -> dict:
        return {
            "service": settings.server.service_name,
            "status": "healthy",
            "port": settings.server.port,
            "uptime": round(time.time() - app.state.started_at, 3),
            "activeSessions": len(registry),
        }

    # -------------------------------------------------------------------
    # Single session
    # -------------------------------------------------------------------

    @app.post("/session/create")
    async def create_session(request: CreateSessionRequest) -> dict:
        session = await registry.create(
            kind=request.resolved_kind(),
            target=request.target or request.computer,
            label=request.label,
            credentials=request.credentials,
        )
        return {
            "success": True,
            "sessionId": session.id,
            "kind": session.kind.value,
            "target": session.target,
            "computer": session.target,
            "label": session.label,
            "message": "Session created",
        }

    @app.post("/session/{session_id}/exec")
    async def exec_command(session_id: str, request: ExecRequest):
        result = await executor.execute(session_id, request.command, _seconds(request.timeout))
        body = result.to_response()
        if not result.success:
            return JSONResponse(status_code=500, content=body)
        return body

    @app.post("/session/{session_id}/cancel")
    async def cancel_command(session_id: str) -> dict:
        cmd = executor.cancel(session_id)
        return {"success": True, "accepted": True, "sessionId": session_id, "command": cmd.text}

    @app.get("/session/{session_id}")
    async def get_session(session_id: str) -> dict:
        return registry.get(session_id).info().model_dump(by_alias=True, mode="json")

    @app.patch("/session/{session_id}")
    async def rename_session(session_id: str, request: RenameRequest) -> dict:
        session = registry.rename(session_id, request.label)
        return {"success": True, "sessionId": session.id, "label": session.label}

    @app.delete("/session/{session_id}")
    async def close_session(session_id: str) -> dict:
        await registry.close(session_id)
        return {"success": True, "message": "Session closed", "sessionId": session_id}

    # -------------------------------------------------------------------
    # All sessions
    # -------------------------------------------------------------------

    @app.get("/sessions")
    async def list_sessions() -> dict:
        sessions = [info.model_dump(by_alias=True, mode="json") for info in registry.list()]
        return {
            "sessions": sessions,
            "count": len(sessions),
            "totalCommands": registry.total_commands,
        }

    @app.post("/sessions/exec-all")
    async def exec_all(request: ExecAllRequest) -> dict:
        results = await executor.execute_many(
            request.command, request.session_ids, _seconds(request.timeout)
        )
        return {"results": results, "count": len(results)}

    @app.post("/sessions/cancel-all")
    async def cancel_all() -> dict:
        cancelled = executor.cancel_all()
        return {"success": True, "cancelled": cancelled, "count": len(cancelled)}

    @app.delete("/sessions/all")
    async def close_all() -> dict:
        closed = await registry.close_all()
        return {"success": True, "closed": closed, "count": len(closed)}

    # -------------------------------------------------------------------
    # Live stream
    # -------------------------------------------------------------------

    @app.websocket("/session/{session_id}/stream")
    async def session_stream(websocket: WebSocket, session_id: str) -> None:
        await websocket.accept()
        try:
            session = registry.get(session_id)
        except SessionNotFound as e:
            await websocket.send_json(error_message(str(e)))
            await websocket.close(code=4404)
            return
        connection = StreamConnection(
            websocket, session, executor, max_pending=limits.observer_queue_size
        )
        await connection.serve()

    return app


def main() -> None:
    """Entry point for running the server standalone."""
    settings = load_settings()
    setup_logging(settings.logging)
    app = create_app(settings)
    uvicorn.run(app, host=settings.server.host, port=settings.server.port)


if __name__ == "__main__":
    main()
