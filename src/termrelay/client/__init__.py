"""Client side: REST API client and reconnecting session stream."""

from termrelay.client.rest import RelayClient
from termrelay.client.stream import SessionStream, websocket_url

__all__ = ["RelayClient", "SessionStream", "websocket_url"]
