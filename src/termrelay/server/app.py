"""FastAPI application exposing the session surface.

REST routes manage sessions and accept input; the ``/ws`` endpoint
carries the streaming message protocol (attach, output, replay).
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Annotated, AsyncIterator

import uvicorn
from fastapi import Depends, FastAPI, Query, Request, Response, WebSocket, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, model_validator

from termrelay import __version__
from termrelay.config.settings import Settings, StorageConfig
from termrelay.connection.auth import Authenticator, build_authenticator
from termrelay.connection.manager import ConnectionManager
from termrelay.domain.errors import TermRelayError, Unauthorized
from termrelay.domain.models import (
    CommandRecord,
    OutputChunk,
    SessionConfig,
    SessionSummary,
    ShellKind,
)
from termrelay.security.filter import SecurityFilter
from termrelay.server.websocket import WebSocketTransport
from termrelay.sessions.orchestrator import SessionOrchestrator
from termrelay.shell.factory import available_shell_kinds
from termrelay.storage.base import SessionStore
from termrelay.storage.memory import InMemorySessionStore
from termrelay.storage.sqlite import SQLiteSessionStore

logger = logging.getLogger(__name__)

# Close code for a rejected WebSocket handshake
WS_UNAUTHORIZED = 4401

ERROR_STATUS: dict[str, int] = {
    "session_not_found": status.HTTP_404_NOT_FOUND,
    "unauthorized": status.HTTP_401_UNAUTHORIZED,
    "shell_write_failed": status.HTTP_409_CONFLICT,
    "resize_failed": status.HTTP_409_CONFLICT,
    "shell_unavailable": 422,
    "invalid_message": 422,
    "session_limit_reached": status.HTTP_429_TOO_MANY_REQUESTS,
    "spawn_failed": status.HTTP_500_INTERNAL_SERVER_ERROR,
    "persistence_error": status.HTTP_503_SERVICE_UNAVAILABLE,
    "transport_error": status.HTTP_503_SERVICE_UNAVAILABLE,
}

# Key name to terminal input mapping
KEY_MAP = {
    "Enter": "\r",
    "Return": "\r",
    "Tab": "\t",
    "Space": " ",
    "Backspace": "\x7f",
    "Delete": "\x1b[3~",
    "Escape": "\x1b",
    "Up": "\x1b[A",
    "Down": "\x1b[B",
    "Right": "\x1b[C",
    "Left": "\x1b[D",
    "Home": "\x1b[H",
    "End": "\x1b[F",
    "PageUp": "\x1b[5~",
    "PageDown": "\x1b[6~",
}


class CommandRequest(BaseModel):
    command: str = Field(description="Command line; a newline is appended")


class InputRequest(BaseModel):
    """Raw text, a named key, or a ctrl combination (``ctrl=True``)."""

    data: str | None = Field(default=None, description="Text written as-is")
    key: str | None = Field(default=None, description="Key name (e.g., 'Enter', 'Up', 'c')")
    ctrl: bool = Field(default=False, description="Send key as a control character")

    @model_validator(mode="after")
    def _one_of(self) -> InputRequest:
        if (self.data is None) == (self.key is None):
            raise ValueError("Exactly one of 'data' or 'key' is required")
        return self

    def to_terminal_input(self) -> str:
        if self.data is not None:
            return self.data
        assert self.key is not None
        if self.ctrl:
            key = self.key.lower()
            if len(key) == 1 and "a" <= key <= "z":
                return chr(ord(key) - ord("a") + 1)
            raise ValueError(f"Unsupported ctrl combination: ctrl+{self.key}")
        if self.key in KEY_MAP:
            return KEY_MAP[self.key]
        if len(self.key) == 1:
            return self.key
        raise ValueError(f"Unknown key: {self.key}")


class ResizeRequest(BaseModel):
    rows: int = Field(gt=0, le=1000)
    cols: int = Field(gt=0, le=1000)


class HealthStatus(BaseModel):
    status: str = "ok"
    version: str = __version__
    sessions: int = 0


def build_store(config: StorageConfig) -> SessionStore:
    if config.backend == "sqlite":
        return SQLiteSessionStore(config.sqlite_path, suppress_redacted=config.suppress_redacted)
    return InMemorySessionStore(
        max_chunks_per_session=config.max_chunks_per_session,
        suppress_redacted=config.suppress_redacted,
    )


def _bearer_token(authorization: str | None) -> str | None:
    if authorization and authorization.lower().startswith("bearer "):
        return authorization[7:].strip() or None
    return None


async def current_user(request: Request, token: str | None = Query(default=None)) -> str | None:
    """Authenticate a REST request by bearer header or ``token`` query."""
    auth: Authenticator = request.app.state.authenticator
    presented = _bearer_token(request.headers.get("authorization")) or token
    result = await auth.authenticate(presented)
    if not result.authorized:
        raise Unauthorized(f"Not authorized: {result.reason or 'rejected'}")
    return result.user_id


CurrentUser = Annotated[str | None, Depends(current_user)]


def create_app(
    settings: Settings | None = None,
    orchestrator: SessionOrchestrator | None = None,
    store: SessionStore | None = None,
    authenticator: Authenticator | None = None,
    security_filter: SecurityFilter | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Any collaborator not passed in is built from ``settings``.
    """
    settings = settings or Settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        # Startup
        orch: SessionOrchestrator = app.state.orchestrator
        connections: ConnectionManager = app.state.connections
        await orch.start()
        if settings.sessions.restore_on_startup:
            await orch.restore_sessions()
        await connections.start()
        logger.info("termrelay server started")
        yield
        # Shutdown
        await connections.stop()
        await orch.shutdown()
        if orch.store is not None:
            await orch.store.close()
        logger.info("termrelay server stopped")

    app = FastAPI(
        title="termrelay",
        description="Remote interactive shell relay",
        version=__version__,
        lifespan=lifespan,
    )
    if settings.server.cors_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=settings.server.cors_origins,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    if orchestrator is None:
        orchestrator = SessionOrchestrator.from_settings(
            settings,
            store=store if store is not None else build_store(settings.storage),
            security_filter=security_filter or SecurityFilter.from_config(settings.security),
        )
    app.state.settings = settings
    app.state.orchestrator = orchestrator
    app.state.connections = ConnectionManager(
        orchestrator, health_check_interval=settings.sessions.health_check_interval
    )
    app.state.authenticator = authenticator or build_authenticator(settings.auth)

    @app.exception_handler(TermRelayError)
    async def relay_error_handler(request: Request, exc: TermRelayError) -> JSONResponse:
        code = ERROR_STATUS.get(exc.code, status.HTTP_500_INTERNAL_SERVER_ERROR)
        if code >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
        return JSONResponse(status_code=code, content={"code": exc.code, "message": exc.message})

    def owned(session_id: str, user: str | None) -> None:
        app.state.connections.authorize(session_id, user)

    def summary(session_id: str) -> SessionSummary:
        orch: SessionOrchestrator = app.state.orchestrator
        return SessionSummary.from_session(
            orch.get_session(session_id), app.state.connections.state(session_id)
        )

    @app.get("/health")
    async def health_check() -> HealthStatus:
        return HealthStatus(sessions=len(app.state.orchestrator.list_active_sessions()))

    @app.get("/shells")
    async def list_shells(user: CurrentUser) -> list[ShellKind]:
        return available_shell_kinds()

    @app.post("/sessions", status_code=status.HTTP_201_CREATED)
    async def create_session(config: SessionConfig, user: CurrentUser) -> SessionSummary:
        session = await app.state.orchestrator.create_session(config, owner=user)
        return summary(session.session_id)

    @app.get("/sessions")
    async def list_sessions(user: CurrentUser) -> list[SessionSummary]:
        return [
            SessionSummary.from_session(s, app.state.connections.state(s.session_id))
            for s in app.state.orchestrator.list_active_sessions()
            if user is None or s.owner is None or s.owner == user
        ]

    @app.get("/sessions/{session_id}")
    async def get_session(session_id: str, user: CurrentUser) -> SessionSummary:
        owned(session_id, user)
        return summary(session_id)

    @app.delete("/sessions/{session_id}", status_code=status.HTTP_204_NO_CONTENT)
    async def delete_session(session_id: str, user: CurrentUser) -> Response:
        owned(session_id, user)
        await app.state.orchestrator.terminate_session(session_id)
        return Response(status_code=status.HTTP_204_NO_CONTENT)

    @app.post("/sessions/{session_id}/commands", status_code=status.HTTP_202_ACCEPTED)
    async def execute_command(session_id: str, request: CommandRequest, user: CurrentUser) -> CommandRecord:
        owned(session_id, user)
        return await app.state.orchestrator.execute_command(session_id, request.command)

    @app.get("/sessions/{session_id}/commands")
    async def list_commands(session_id: str, user: CurrentUser) -> list[CommandRecord]:
        owned(session_id, user)
        return await app.state.orchestrator.get_commands(session_id)

    @app.post("/sessions/{session_id}/input", status_code=status.HTTP_204_NO_CONTENT)
    async def send_input(session_id: str, request: InputRequest, user: CurrentUser) -> Response:
        owned(session_id, user)
        try:
            data = request.to_terminal_input()
        except ValueError as e:
            return JSONResponse(
                status_code=422,
                content={"code": "invalid_message", "message": str(e)},
            )
        await app.state.orchestrator.send_input(session_id, data)
        return Response(status_code=status.HTTP_204_NO_CONTENT)

    @app.post("/sessions/{session_id}/resize")
    async def resize_session(session_id: str, request: ResizeRequest, user: CurrentUser) -> SessionSummary:
        owned(session_id, user)
        await app.state.orchestrator.resize(session_id, request.rows, request.cols)
        return summary(session_id)

    @app.get("/sessions/{session_id}/output")
    async def get_output(
        session_id: str,
        user: CurrentUser,
        after: int = Query(default=0, ge=0, description="Return chunks after this sequence"),
    ) -> list[OutputChunk]:
        owned(session_id, user)
        return await app.state.orchestrator.replay(session_id, after)

    @app.websocket("/ws")
    async def websocket_endpoint(websocket: WebSocket, token: str | None = None) -> None:
        auth: Authenticator = websocket.app.state.authenticator
        presented = _bearer_token(websocket.headers.get("authorization")) or token
        result = await auth.authenticate(presented)
        if not result.authorized:
            logger.warning("Rejected WebSocket from %s: %s", websocket.client, result.reason)
            await websocket.close(code=WS_UNAUTHORIZED, reason="unauthorized")
            return
        await websocket.accept()
        transport = WebSocketTransport(websocket)
        try:
            await websocket.app.state.connections.serve(transport, result.user_id)
        finally:
            await transport.close()

    return app


def main(settings: Settings | None = None) -> None:
    """Entry point for running the server standalone."""
    settings = settings or Settings()
    app = create_app(settings)
    uvicorn.run(app, host=settings.server.host, port=settings.server.port, log_config=None)


if __name__ == "__main__":
    main()
