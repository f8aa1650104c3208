"""Transport binding, reattach replay, recovery and authentication."""

from termrelay.connection.auth import (
    AllowAllAuthenticator,
    Authenticator,
    AuthResult,
    StaticTokenAuthenticator,
    build_authenticator,
)
from termrelay.connection.manager import ConnectionBinding, ConnectionManager
from termrelay.connection.transport import Transport, parse_client_message

__all__ = [
    "AllowAllAuthenticator",
    "AuthResult",
    "Authenticator",
    "ConnectionBinding",
    "ConnectionManager",
    "StaticTokenAuthenticator",
    "Transport",
    "build_authenticator",
    "parse_client_message",
]
