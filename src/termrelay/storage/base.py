"""Abstract base class for session persistence.

The core depends on this contract only. Backends raise
``PersistenceError`` for storage failures; the pipeline and orchestrator
log and swallow those so the interactive path keeps working with
degraded durability.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections.abc import Sequence

from termrelay.domain.models import CommandRecord, OutputChunk, Session

logger = logging.getLogger(__name__)


def durable_copy(chunk: OutputChunk, suppress_redacted: bool) -> OutputChunk:
    """The form of ``chunk`` kept in durable storage.

    Redacted chunks keep their sequence (so replay has no gaps) but may
    have their content dropped entirely.
    """
    if suppress_redacted and chunk.redacted:
        return chunk.model_copy(update={"data": ""})
    return chunk


class SessionStore(ABC):
    """Durable storage for sessions, command history and output."""

    @abstractmethod
    async def save_session(self, session: Session) -> None:
        """Insert or update ``session``."""
        ...

    @abstractmethod
    async def save_command(self, record: CommandRecord) -> None:
        """Insert or update a command record, keyed by (session, sequence)."""
        ...

    @abstractmethod
    async def save_output_batch(
        self,
        session_id: str,
        sequence_range: tuple[int, int],
        chunks: Sequence[OutputChunk],
    ) -> None:
        """Persist the chunks with sequences in ``sequence_range`` (inclusive)."""
        ...

    @abstractmethod
    async def load_active_sessions(self) -> list[Session]:
        """Sessions that were not terminated, for startup recovery."""
        ...

    @abstractmethod
    async def load_output_since(self, session_id: str, sequence: int) -> list[OutputChunk]:
        """Persisted chunks with sequence strictly greater than ``sequence``, in order."""
        ...

    async def load_commands(self, session_id: str) -> list[CommandRecord]:
        """Command history for a session. Optional for backends."""
        return []

    async def close(self) -> None:
        """Release backend resources."""
        return None
