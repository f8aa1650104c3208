"""Transport contract between the connection manager and a client.

A transport is an ordered, reliable, message-oriented channel. The
server provides a WebSocket implementation; tests use in-memory fakes.
"""

from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from typing import Any

from pydantic import BaseModel, TypeAdapter, ValidationError

from termrelay.domain.errors import ProtocolError
from termrelay.domain.models import ClientMessage

logger = logging.getLogger(__name__)

_CLIENT_MESSAGE: TypeAdapter[ClientMessage] = TypeAdapter(ClientMessage)


def parse_client_message(raw: str | bytes | dict[str, Any]) -> ClientMessage:
    """Validate one inbound message.

    Raises:
        ProtocolError: If it is not JSON or not a known message.
    """
    try:
        data = json.loads(raw) if isinstance(raw, (str, bytes)) else raw
    except ValueError as e:
        raise ProtocolError("Message is not valid JSON") from e
    if not isinstance(data, dict):
        raise ProtocolError("Message must be a JSON object")
    try:
        return _CLIENT_MESSAGE.validate_python(data)
    except ValidationError as e:
        first = e.errors()[0] if e.errors() else {}
        where = ".".join(str(p) for p in first.get("loc", ()))
        detail = first.get("msg", "invalid")
        raise ProtocolError(
            f"Invalid message: {where}: {detail}" if where else f"Invalid message: {detail}",
            session_id=data.get("session_id") if isinstance(data.get("session_id"), str) else None,
        ) from e


class Transport(ABC):
    """One client connection, possibly carrying several sessions."""

    @abstractmethod
    async def send(self, message: BaseModel) -> None:
        """Send one server message.

        Raises:
            TransportError: If the connection is gone.
        """
        ...

    @abstractmethod
    async def receive(self) -> ClientMessage:
        """Wait for the next client message.

        Raises:
            TransportError: If the connection closed.
            ProtocolError: If the message was malformed; the connection
                remains usable.
        """
        ...

    @abstractmethod
    async def close(self, code: int = 1000, reason: str = "") -> None:
        ...

    @property
    def name(self) -> str:
        return f"{type(self).__name__}@{id(self):x}"
