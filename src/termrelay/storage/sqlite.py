"""SQLite session store backed by aiosqlite.

Sessions and command records are stored as JSON payloads; output chunks
get their own rows so replay can range-scan by sequence.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Sequence
from pathlib import Path

import aiosqlite

from termrelay.domain.errors import PersistenceError
from termrelay.domain.models import CommandRecord, OutputChunk, Session, SessionStatus
from termrelay.storage.base import SessionStore, durable_copy

logger = logging.getLogger(__name__)

_DEFAULT_DB_PATH = Path.home() / ".termrelay" / "sessions.db"

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS sessions (
        session_id TEXT PRIMARY KEY,
        status     TEXT NOT NULL,
        payload    TEXT NOT NULL,
        saved_at   TEXT NOT NULL DEFAULT (datetime('now'))
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS commands (
        session_id TEXT NOT NULL,
        sequence   INTEGER NOT NULL,
        payload    TEXT NOT NULL,
        PRIMARY KEY (session_id, sequence)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS output_chunks (
        session_id TEXT NOT NULL,
        sequence   INTEGER NOT NULL,
        payload    TEXT NOT NULL,
        PRIMARY KEY (session_id, sequence)
    )
    """,
)

_UPSERT_SESSION = """
INSERT INTO sessions (session_id, status, payload, saved_at)
VALUES (?, ?, ?, datetime('now'))
ON CONFLICT(session_id) DO UPDATE SET
    status   = excluded.status,
    payload  = excluded.payload,
    saved_at = excluded.saved_at
"""

_UPSERT_COMMAND = """
INSERT INTO commands (session_id, sequence, payload) VALUES (?, ?, ?)
ON CONFLICT(session_id, sequence) DO UPDATE SET payload = excluded.payload
"""

_INSERT_CHUNK = """
INSERT OR REPLACE INTO output_chunks (session_id, sequence, payload) VALUES (?, ?, ?)
"""


class SQLiteSessionStore(SessionStore):
    """Persists sessions, commands and output in one SQLite file.

    A single connection is opened lazily and shared; statements are
    serialized with an ``asyncio.Lock``.
    """

    def __init__(
        self,
        db_path: str | Path | None = None,
        suppress_redacted: bool = False,
    ) -> None:
        self._db_path = Path(db_path).expanduser() if db_path is not None else _DEFAULT_DB_PATH
        self._suppress_redacted = suppress_redacted
        self._conn: aiosqlite.Connection | None = None
        self._lock = asyncio.Lock()

    async def _connection(self) -> aiosqlite.Connection:
        if self._conn is None:
            self._db_path.parent.mkdir(parents=True, exist_ok=True)
            conn = await aiosqlite.connect(str(self._db_path))
            await conn.execute("PRAGMA journal_mode=WAL")
            for statement in _SCHEMA:
                await conn.execute(statement)
            await conn.commit()
            self._conn = conn
            logger.info("Opened session database %s", self._db_path)
        return self._conn

    async def _execute(self, sql: str, rows: Sequence[tuple]) -> None:
        try:
            async with self._lock:
                conn = await self._connection()
                await conn.executemany(sql, rows)
                await conn.commit()
        except (aiosqlite.Error, OSError) as e:
            raise PersistenceError(f"Database write failed: {e}") from e

    async def _fetch(self, sql: str, params: tuple) -> list[tuple]:
        try:
            async with self._lock:
                conn = await self._connection()
                async with conn.execute(sql, params) as cursor:
                    return list(await cursor.fetchall())
        except (aiosqlite.Error, OSError) as e:
            raise PersistenceError(f"Database read failed: {e}") from e

    async def save_session(self, session: Session) -> None:
        await self._execute(
            _UPSERT_SESSION,
            [(session.session_id, session.status.value, session.model_dump_json())],
        )

    async def save_command(self, record: CommandRecord) -> None:
        await self._execute(
            _UPSERT_COMMAND,
            [(record.session_id, record.sequence, record.model_dump_json())],
        )

    async def save_output_batch(
        self,
        session_id: str,
        sequence_range: tuple[int, int],
        chunks: Sequence[OutputChunk],
    ) -> None:
        first, last = sequence_range
        rows = [
            (
                session_id,
                chunk.sequence,
                durable_copy(chunk, self._suppress_redacted).model_dump_json(),
            )
            for chunk in chunks
            if first <= chunk.sequence <= last
        ]
        if rows:
            await self._execute(_INSERT_CHUNK, rows)

    async def load_active_sessions(self) -> list[Session]:
        rows = await self._fetch(
            "SELECT payload FROM sessions WHERE status != ? ORDER BY saved_at",
            (SessionStatus.TERMINATED.value,),
        )
        return [Session.model_validate_json(row[0]) for row in rows]

    async def load_output_since(self, session_id: str, sequence: int) -> list[OutputChunk]:
        rows = await self._fetch(
            "SELECT payload FROM output_chunks WHERE session_id = ? AND sequence > ? "
            "ORDER BY sequence",
            (session_id, sequence),
        )
        return [OutputChunk.model_validate_json(row[0]) for row in rows]

    async def load_commands(self, session_id: str) -> list[CommandRecord]:
        rows = await self._fetch(
            "SELECT payload FROM commands WHERE session_id = ? ORDER BY sequence",
            (session_id,),
        )
        return [CommandRecord.model_validate_json(row[0]) for row in rows]

    async def close(self) -> None:
        if self._conn is not None:
            await self._conn.close()
            self._conn = None

    def __repr__(self) -> str:
        return f"SQLiteSessionStore(db_path={str(self._db_path)!r})"
