"""Session registry: the orchestrator's table of live sessions."""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from collections.abc import Iterator
from dataclasses import dataclass, field

from termrelay.domain.errors import SessionNotFound
from termrelay.domain.models import CommandRecord, Session
from termrelay.shell.base import ShellProcess
from termrelay.streaming.pipeline import OutputPipeline

logger = logging.getLogger(__name__)

# Commands still waiting for a prompt; the oldest are dropped past this.
MAX_PENDING_COMMANDS = 64


@dataclass(eq=False)
class SessionEntry:
    """Everything the orchestrator owns for one session.

    The entry holds the session, its current process and its pipeline;
    the process and pipeline only know the session id.
    """

    session: Session
    pipeline: OutputPipeline
    process: ShellProcess | None = None
    ingest_task: asyncio.Task[None] | None = None
    teardown_task: asyncio.Task[None] | None = None
    # Serializes create / recover / terminate
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    # Serializes writes and resizes
    write_lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    pending_commands: deque[CommandRecord] = field(
        default_factory=lambda: deque(maxlen=MAX_PENDING_COMMANDS)
    )
    closing: bool = False

    @property
    def session_id(self) -> str:
        return self.session.session_id


class SessionRegistry:
    """Maps session ids to entries.

    Lookups are plain dict reads on the event loop thread, so a slow
    session never holds up access to any other.
    """

    def __init__(self) -> None:
        self._entries: dict[str, SessionEntry] = {}

    def add(self, entry: SessionEntry) -> None:
        if entry.session_id in self._entries:
            raise ValueError(f"Session {entry.session_id} is already registered")
        self._entries[entry.session_id] = entry
        logger.debug("Registered session %s", entry.session_id)

    def get(self, session_id: str) -> SessionEntry:
        """Return the live entry for ``session_id``.

        Raises:
            SessionNotFound: If it is unknown or being torn down.
        """
        entry = self._entries.get(session_id)
        if entry is None or entry.closing:
            raise SessionNotFound(session_id)
        return entry

    def find(self, session_id: str) -> SessionEntry | None:
        """Like ``get`` but also returns entries being torn down."""
        return self._entries.get(session_id)

    def remove(self, session_id: str) -> SessionEntry | None:
        entry = self._entries.pop(session_id, None)
        if entry is not None:
            logger.debug("Unregistered session %s", session_id)
        return entry

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[SessionEntry]:
        return iter(list(self._entries.values()))
