"""WebSocket transport for the connection manager."""

from __future__ import annotations

import asyncio
import logging

from fastapi import WebSocket, WebSocketDisconnect
from pydantic import BaseModel

from termrelay.connection.transport import Transport, parse_client_message
from termrelay.domain.errors import TransportError
from termrelay.domain.models import ClientMessage

logger = logging.getLogger(__name__)


class WebSocketTransport(Transport):
    """JSON text frames over an accepted FastAPI WebSocket.

    Sends are serialized because output delivery for several sessions
    and replies to client messages share one socket.
    """

    def __init__(self, websocket: WebSocket) -> None:
        self._websocket = websocket
        self._send_lock = asyncio.Lock()
        self._closed = False

    @property
    def name(self) -> str:
        client = self._websocket.client
        return f"ws://{client.host}:{client.port}" if client else super().name

    @property
    def closed(self) -> bool:
        return self._closed

    async def send(self, message: BaseModel) -> None:
        if self._closed:
            raise TransportError("Connection is closed")
        payload = message.model_dump_json()
        try:
            async with self._send_lock:
                await self._websocket.send_text(payload)
        except (WebSocketDisconnect, RuntimeError, OSError) as e:
            self._closed = True
            raise TransportError(f"Send failed: {type(e).__name__}") from e

    async def receive(self) -> ClientMessage:
        if self._closed:
            raise TransportError("Connection is closed")
        try:
            raw = await self._websocket.receive_text()
        except (WebSocketDisconnect, RuntimeError, OSError) as e:
            self._closed = True
            raise TransportError("Connection closed by client") from e
        return parse_client_message(raw)

    async def close(self, code: int = 1000, reason: str = "") -> None:
        if self._closed:
            return
        self._closed = True
        try:
            await self._websocket.close(code=code, reason=reason)
        except (RuntimeError, OSError) as e:
            logger.debug("WebSocket already closed: %s", e)
