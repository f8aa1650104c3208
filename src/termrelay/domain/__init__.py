"""Domain models and the error taxonomy for termrelay."""

from termrelay.domain.errors import (
    PersistenceError,
    ProtocolError,
    ResizeError,
    SessionLimitReached,
    SessionNotFound,
    ShellUnavailable,
    ShellWriteError,
    SpawnError,
    TermRelayError,
    TransportError,
    Unauthorized,
    error_from_code,
)
from termrelay.domain.models import (
    ChunkKind,
    ClientMessage,
    CommandRecord,
    ConnectionState,
    OutputChunk,
    ServerMessage,
    Session,
    SessionConfig,
    SessionStatus,
    SessionSummary,
    ShellFamily,
    ShellKind,
)

__all__ = [
    "ChunkKind",
    "ClientMessage",
    "CommandRecord",
    "ConnectionState",
    "OutputChunk",
    "PersistenceError",
    "ProtocolError",
    "ResizeError",
    "ServerMessage",
    "Session",
    "SessionConfig",
    "SessionLimitReached",
    "SessionNotFound",
    "SessionStatus",
    "SessionSummary",
    "ShellFamily",
    "ShellKind",
    "ShellUnavailable",
    "ShellWriteError",
    "SpawnError",
    "TermRelayError",
    "TransportError",
    "Unauthorized",
    "error_from_code",
]
