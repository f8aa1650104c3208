"""HTTP client for the termrelay session API."""

from __future__ import annotations

import logging
from typing import Any

import httpx
from pydantic import TypeAdapter

from termrelay.domain.errors import TermRelayError, TransportError, error_from_code
from termrelay.domain.models import (
    CommandRecord,
    OutputChunk,
    SessionConfig,
    SessionSummary,
    ShellKind,
)

logger = logging.getLogger(__name__)

_SUMMARIES = TypeAdapter(list[SessionSummary])
_CHUNKS = TypeAdapter(list[OutputChunk])
_COMMANDS = TypeAdapter(list[CommandRecord])
_KINDS = TypeAdapter(list[ShellKind])


class RelayClient:
    """Talks to a termrelay server's REST surface.

    Server errors come back as the matching ``TermRelayError`` subclass;
    network failures as ``TransportError``.

    Example usage::

        async with RelayClient("http://127.0.0.1:8765", token="...") as client:
            session = await client.create_session(SessionConfig(name="build"))
            await client.execute_command(session.session_id, "make")
    """

    def __init__(
        self,
        base_url: str = "http://127.0.0.1:8765",
        token: str | None = None,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._token = token
        self._timeout = timeout
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    @property
    def base_url(self) -> str:
        return self._base_url

    async def connect(self) -> None:
        """Create the HTTP client and verify server connectivity."""
        headers = {"Authorization": f"Bearer {self._token}"} if self._token else {}
        self._client = httpx.AsyncClient(
            base_url=self._base_url,
            timeout=self._timeout,
            headers=headers,
            transport=self._transport,
        )
        try:
            await self._request("GET", "/health")
            logger.info("Connected to termrelay at %s", self._base_url)
        except TermRelayError:
            await self._client.aclose()
            self._client = None
            raise

    async def disconnect(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
            logger.info("Disconnected from termrelay")

    async def __aenter__(self) -> RelayClient:
        await self.connect()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.disconnect()

    async def health(self) -> dict[str, Any]:
        return (await self._request("GET", "/health")).json()

    async def list_shells(self) -> list[ShellKind]:
        return _KINDS.validate_python((await self._request("GET", "/shells")).json())

    async def create_session(self, config: SessionConfig | None = None) -> SessionSummary:
        payload = (config or SessionConfig()).model_dump(mode="json")
        resp = await self._request("POST", "/sessions", json=payload)
        return SessionSummary.model_validate(resp.json())

    async def list_sessions(self) -> list[SessionSummary]:
        return _SUMMARIES.validate_python((await self._request("GET", "/sessions")).json())

    async def get_session(self, session_id: str) -> SessionSummary:
        resp = await self._request("GET", f"/sessions/{session_id}", session_id=session_id)
        return SessionSummary.model_validate(resp.json())

    async def terminate_session(self, session_id: str) -> None:
        await self._request("DELETE", f"/sessions/{session_id}", session_id=session_id)

    async def execute_command(self, session_id: str, command: str) -> CommandRecord:
        resp = await self._request(
            "POST", f"/sessions/{session_id}/commands",
            json={"command": command}, session_id=session_id,
        )
        return CommandRecord.model_validate(resp.json())

    async def list_commands(self, session_id: str) -> list[CommandRecord]:
        resp = await self._request("GET", f"/sessions/{session_id}/commands", session_id=session_id)
        return _COMMANDS.validate_python(resp.json())

    async def send_input(self, session_id: str, data: str) -> None:
        await self._request(
            "POST", f"/sessions/{session_id}/input", json={"data": data}, session_id=session_id
        )

    async def send_key(self, session_id: str, key: str, ctrl: bool = False) -> None:
        await self._request(
            "POST", f"/sessions/{session_id}/input",
            json={"key": key, "ctrl": ctrl}, session_id=session_id,
        )

    async def resize(self, session_id: str, rows: int, cols: int) -> SessionSummary:
        resp = await self._request(
            "POST", f"/sessions/{session_id}/resize",
            json={"rows": rows, "cols": cols}, session_id=session_id,
        )
        return SessionSummary.model_validate(resp.json())

    async def get_output(self, session_id: str, after: int = 0) -> list[OutputChunk]:
        resp = await self._request(
            "GET", f"/sessions/{session_id}/output",
            params={"after": after}, session_id=session_id,
        )
        return _CHUNKS.validate_python(resp.json())

    async def _request(
        self,
        method: str,
        path: str,
        session_id: str | None = None,
        **kwargs: Any,
    ) -> httpx.Response:
        if self._client is None:
            raise TransportError("Not connected to termrelay server")
        try:
            resp = await self._client.request(method, path, **kwargs)
        except httpx.HTTPError as e:
            raise TransportError(f"HTTP request to {path} failed: {e}") from e
        if resp.is_error:
            raise self._error_from_response(resp, session_id)
        return resp

    @staticmethod
    def _error_from_response(resp: httpx.Response, session_id: str | None) -> TermRelayError:
        try:
            body = resp.json()
        except ValueError:
            body = {}
        if isinstance(body, dict) and "code" in body:
            return error_from_code(body["code"], body.get("message", ""), session_id)
        # FastAPI request validation errors
        return error_from_code(
            "invalid_message" if resp.status_code == 422 else "internal_error",
            f"Server returned HTTP {resp.status_code}",
            session_id,
        )
