"""Error taxonomy shared by every termrelay component.

Each error carries a stable ``code`` that is safe to send to clients.
The ``message`` is human readable and must never contain stack traces
or host file paths.
"""

from __future__ import annotations


class TermRelayError(Exception):
    """Base class for all termrelay errors."""

    code = "internal_error"

    def __init__(self, message: str, session_id: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.session_id = session_id


class SpawnError(TermRelayError):
    """A shell process could not be started."""

    code = "spawn_failed"


class ShellUnavailable(SpawnError):
    """The requested shell kind does not exist on this host."""

    code = "shell_unavailable"

    def __init__(self, message: str, shell_kind: str | None = None) -> None:
        super().__init__(message)
        self.shell_kind = shell_kind


class SessionNotFound(TermRelayError):
    code = "session_not_found"

    def __init__(self, session_id: str) -> None:
        super().__init__(f"Session {session_id} not found", session_id=session_id)


class SessionLimitReached(TermRelayError):
    code = "session_limit_reached"


class ShellWriteError(TermRelayError):
    """Input could not be delivered to the shell (usually: process dead)."""

    code = "shell_write_failed"


class ResizeError(TermRelayError):
    code = "resize_failed"


class TransportError(TermRelayError):
    """The client transport failed. Never fatal to the session."""

    code = "transport_error"


class PersistenceError(TermRelayError):
    """The storage collaborator failed. Logged and swallowed by callers."""

    code = "persistence_error"


class ProtocolError(TermRelayError):
    """A client message was malformed or not understood."""

    code = "invalid_message"


class Unauthorized(TermRelayError):
    code = "unauthorized"


ERRORS_BY_CODE: dict[str, type[TermRelayError]] = {
    cls.code: cls
    for cls in (
        TermRelayError,
        SpawnError,
        ShellUnavailable,
        SessionNotFound,
        SessionLimitReached,
        ShellWriteError,
        ResizeError,
        TransportError,
        PersistenceError,
        ProtocolError,
        Unauthorized,
    )
}


def error_from_code(code: str, message: str, session_id: str | None = None) -> TermRelayError:
    """Rebuild the error a server reported as ``{"code", "message"}``."""
    cls = ERRORS_BY_CODE.get(code, TermRelayError)
    if cls is SessionNotFound:
        return SessionNotFound(session_id or "")
    error = cls(message)
    error.session_id = session_id
    return error
