"""In-process session store, used by default and in tests."""

from __future__ import annotations

import logging
from collections.abc import Sequence

from termrelay.domain.models import CommandRecord, OutputChunk, Session, SessionStatus
from termrelay.storage.base import SessionStore, durable_copy

logger = logging.getLogger(__name__)


class InMemorySessionStore(SessionStore):
    """Keeps everything in dictionaries; nothing survives a restart.

    ``max_chunks_per_session`` bounds memory by dropping the oldest
    persisted chunks of a session.
    """

    def __init__(
        self,
        max_chunks_per_session: int = 100_000,
        suppress_redacted: bool = False,
    ) -> None:
        self._sessions: dict[str, Session] = {}
        self._commands: dict[str, dict[int, CommandRecord]] = {}
        self._output: dict[str, dict[int, OutputChunk]] = {}
        self._max_chunks = max_chunks_per_session
        self._suppress_redacted = suppress_redacted

    async def save_session(self, session: Session) -> None:
        self._sessions[session.session_id] = session.model_copy(deep=True)

    async def save_command(self, record: CommandRecord) -> None:
        self._commands.setdefault(record.session_id, {})[record.sequence] = record.model_copy()

    async def save_output_batch(
        self,
        session_id: str,
        sequence_range: tuple[int, int],
        chunks: Sequence[OutputChunk],
    ) -> None:
        first, last = sequence_range
        stored = self._output.setdefault(session_id, {})
        for chunk in chunks:
            if first <= chunk.sequence <= last:
                stored[chunk.sequence] = durable_copy(chunk, self._suppress_redacted)
        overflow = len(stored) - self._max_chunks
        if overflow > 0:
            for sequence in sorted(stored)[:overflow]:
                del stored[sequence]

    async def load_active_sessions(self) -> list[Session]:
        return [
            s.model_copy(deep=True)
            for s in self._sessions.values()
            if s.status is not SessionStatus.TERMINATED
        ]

    async def load_output_since(self, session_id: str, sequence: int) -> list[OutputChunk]:
        stored = self._output.get(session_id, {})
        return [stored[seq] for seq in sorted(stored) if seq > sequence]

    async def load_commands(self, session_id: str) -> list[CommandRecord]:
        records = self._commands.get(session_id, {})
        return [records[seq] for seq in sorted(records)]

    def get_session(self, session_id: str) -> Session | None:
        return self._sessions.get(session_id)
