"""Reconnecting WebSocket stream for one session.

Keeps track of the last sequence it has seen and, after a dropped
connection, reconnects with capped exponential backoff and re-attaches
with that sequence so the server replays exactly what was missed.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Callable
from typing import Any
from urllib.parse import urlencode, urlsplit, urlunsplit

import websockets
from pydantic import BaseModel, TypeAdapter, ValidationError
from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    stop_never,
    wait_exponential,
)
from websockets.exceptions import ConnectionClosed

from termrelay.config.settings import ClientConfig
from termrelay.domain.errors import ProtocolError, TransportError
from termrelay.domain.models import (
    AttachedMessage,
    AttachMessage,
    DetachMessage,
    ErrorMessage,
    ExecuteCommandMessage,
    InputMessage,
    OutputMessage,
    ProcessEndedMessage,
    ProcessRestartedMessage,
    ResizeMessage,
    ServerMessage,
)

logger = logging.getLogger(__name__)

_SERVER_MESSAGE: TypeAdapter[ServerMessage] = TypeAdapter(ServerMessage)

# Connection failures worth another attempt; handshake rejections are not
RETRYABLE = (OSError, asyncio.TimeoutError, ConnectionClosed)


def websocket_url(base_url: str, token: str | None = None) -> str:
    """``http(s)://host`` -> ``ws(s)://host/ws?token=...``."""
    parts = urlsplit(base_url.rstrip("/"))
    scheme = {"http": "ws", "https": "wss"}.get(parts.scheme, parts.scheme)
    query = urlencode({"token": token}) if token else ""
    return urlunsplit((scheme, parts.netloc, parts.path + "/ws", query, ""))


def parse_server_message(raw: str | bytes) -> ServerMessage:
    try:
        return _SERVER_MESSAGE.validate_json(raw)
    except ValidationError as e:
        raise ProtocolError(f"Unrecognized server message: {e.error_count()} error(s)") from e


class SessionStream:
    """Attaches to one session and yields its server messages forever.

    Iteration ends once the server reports the session gone, or after
    ``close()``.

    Example usage::

        async with SessionStream("http://127.0.0.1:8765", session_id) as stream:
            await stream.execute_command("ls")
            async for message in stream:
                print(message)
    """

    def __init__(
        self,
        base_url: str,
        session_id: str,
        token: str | None = None,
        last_seen_sequence: int | None = None,
        initial_delay: float = 0.5,
        max_delay: float = 30.0,
        max_attempts: int | None = None,
        connect: Callable[..., Any] = websockets.connect,
    ) -> None:
        self.session_id = session_id
        self._url = websocket_url(base_url, token)
        self._last_seen = last_seen_sequence
        self._initial_delay = initial_delay
        self._max_delay = max_delay
        self._max_attempts = max_attempts
        self._connect = connect
        self._ws: Any = None
        self._closed = False
        self.reconnects = 0

    @classmethod
    def from_config(cls, config: ClientConfig, session_id: str, **kwargs: Any) -> SessionStream:
        return cls(
            config.base_url,
            session_id,
            token=config.token.get_secret_value() or None,
            initial_delay=config.reconnect_initial_delay,
            max_delay=config.reconnect_max_delay,
            max_attempts=config.reconnect_max_attempts,
            **kwargs,
        )

    @property
    def last_seen_sequence(self) -> int | None:
        return self._last_seen

    def _retrying(self) -> AsyncRetrying:
        return AsyncRetrying(
            retry=retry_if_exception_type(RETRYABLE),
            wait=wait_exponential(multiplier=self._initial_delay, max=self._max_delay),
            stop=stop_after_attempt(self._max_attempts) if self._max_attempts else stop_never,
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )

    async def connect(self) -> None:
        """Open the socket and attach, retrying with backoff.

        Raises:
            TransportError: If no connection could be made.
        """
        try:
            async for attempt in self._retrying():
                with attempt:
                    await self._open()
        except Exception as e:
            raise TransportError(f"Could not connect to {self.session_id}: {e}") from e

    async def _open(self) -> None:
        ws = await self._connect(self._url)
        try:
            await ws.send(
                AttachMessage(
                    session_id=self.session_id, last_seen_sequence=self._last_seen
                ).model_dump_json()
            )
        except BaseException:
            await ws.close()
            raise
        self._ws = ws
        logger.info("Attached to session %s after sequence %s", self.session_id, self._last_seen)

    async def close(self) -> None:
        self._closed = True
        if self._ws is not None:
            try:
                await self._ws.send(DetachMessage(session_id=self.session_id).model_dump_json())
            except ConnectionClosed:
                pass
            await self._ws.close()
            self._ws = None

    async def __aenter__(self) -> SessionStream:
        await self.connect()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()

    async def send(self, message: BaseModel) -> None:
        if self._ws is None:
            raise TransportError("Stream is not connected")
        try:
            await self._ws.send(message.model_dump_json())
        except ConnectionClosed as e:
            raise TransportError("Connection lost while sending") from e

    async def execute_command(self, command: str) -> None:
        await self.send(ExecuteCommandMessage(session_id=self.session_id, command=command))

    async def send_input(self, data: str) -> None:
        await self.send(InputMessage(session_id=self.session_id, data=data))

    async def resize(self, rows: int, cols: int) -> None:
        await self.send(ResizeMessage(session_id=self.session_id, rows=rows, cols=cols))

    def __aiter__(self) -> AsyncIterator[ServerMessage]:
        return self.messages()

    async def messages(self) -> AsyncIterator[ServerMessage]:
        """Server messages for this session, surviving reconnects."""
        while not self._closed:
            if self._ws is None:
                await self.connect()
            try:
                raw = await self._ws.recv()
            except ConnectionClosed:
                if self._closed:
                    return
                logger.warning("Connection to session %s lost; reconnecting", self.session_id)
                self._ws = None
                self.reconnects += 1
                continue
            try:
                message = parse_server_message(raw)
            except ProtocolError as e:
                logger.warning("Ignoring message: %s", e.message)
                continue

            if isinstance(message, (OutputMessage, ProcessEndedMessage, ProcessRestartedMessage)):
                if self._last_seen is not None and message.sequence <= self._last_seen:
                    continue
                self._last_seen = message.sequence
            elif isinstance(message, AttachedMessage) and self._last_seen is None:
                # Baseline for the next reattach when attached "from now on"
                self._last_seen = message.sequence
            elif isinstance(message, ErrorMessage) and message.session_id not in (None, self.session_id):
                continue
            yield message
            if isinstance(message, ErrorMessage) and message.code == "session_not_found":
                return
