"""HTTP and WebSocket surface for termrelay."""

from termrelay.server.app import create_app
from termrelay.server.websocket import WebSocketTransport

__all__ = ["WebSocketTransport", "create_app"]
