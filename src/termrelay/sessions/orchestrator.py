"""The session orchestrator.

Owns every session's shell process and output pipeline, dispatches
client input to the right process, and converges every way a session
can end (explicit request, process death, idle timeout, server
shutdown) on one idempotent teardown.
"""

from __future__ import annotations

import asyncio
import logging
import os
import re
from collections.abc import Awaitable, Callable, Coroutine
from datetime import datetime, timedelta
from typing import Any

from termrelay.config.settings import DEFAULT_PROMPT_PATTERN, Settings
from termrelay.domain.errors import (
    PersistenceError,
    SessionLimitReached,
    SessionNotFound,
    ShellUnavailable,
    ShellWriteError,
    SpawnError,
)
from termrelay.domain.models import (
    ChunkKind,
    CommandRecord,
    OutputChunk,
    Session,
    SessionConfig,
    SessionStatus,
    ShellFamily,
    ShellKind,
)
from termrelay.security.filter import SecurityFilter
from termrelay.sessions.registry import SessionEntry, SessionRegistry
from termrelay.shell.base import ShellProcess
from termrelay.shell.factory import default_shell_kind, spawn_shell
from termrelay.storage.base import SessionStore
from termrelay.streaming.pipeline import OutputPipeline, Subscription

logger = logging.getLogger(__name__)

_ANSI_ESCAPE = re.compile(r"\x1b\[[0-?]*[ -/]*[@-~]|\x1b\][^\x07\x1b]*(?:\x07|\x1b\\)|\x1b[@-Z\\-_]")

ShellSpawner = Callable[..., Awaitable[ShellProcess]]
ExitHandler = Callable[[str], Awaitable[None]]


def _line_ending(kind: ShellKind) -> str:
    return "\n" if kind.family is ShellFamily.POSIX else "\r\n"


class SessionOrchestrator:
    """Creates, drives and tears down shell sessions.

    All state lives in a ``SessionRegistry`` owned by this object; pass
    the orchestrator around by reference rather than reaching for a
    module-level session table.

    Example usage::

        orchestrator = SessionOrchestrator(store=InMemorySessionStore())
        session = await orchestrator.create_session(SessionConfig(name="build"))
        async for chunk in orchestrator.subscribe(session.session_id):
            ...
        await orchestrator.execute_command(session.session_id, "make test")
        await orchestrator.terminate_session(session.session_id)
    """

    def __init__(
        self,
        store: SessionStore | None = None,
        security_filter: SecurityFilter | None = None,
        default_shell: ShellKind | None = None,
        default_working_directory: str | None = None,
        max_sessions: int = 64,
        idle_timeout: float | None = None,
        terminate_grace_period: float = 2.0,
        fallback_to_default_shell: bool = True,
        flush_interval: float = 0.016,
        max_batch_bytes: int = 16384,
        window_size: int = 1024,
        subscriber_queue_size: int = 256,
        redaction_hold: float = 0.1,
        max_hold_chars: int = 4096,
        prompt_pattern: str | None = DEFAULT_PROMPT_PATTERN,
        spawner: ShellSpawner = spawn_shell,
    ) -> None:
        self._store = store
        self._filter = security_filter
        self._default_shell = default_shell
        self._default_working_directory = default_working_directory
        self._max_sessions = max_sessions
        self._idle_timeout = idle_timeout
        self._grace_period = terminate_grace_period
        self._fallback = fallback_to_default_shell
        self._flush_interval = flush_interval
        self._max_batch_bytes = max_batch_bytes
        self._window_size = window_size
        self._subscriber_queue_size = subscriber_queue_size
        self._redaction_hold = redaction_hold
        self._max_hold_chars = max_hold_chars
        self._prompt_re = re.compile(prompt_pattern) if prompt_pattern else None
        self._spawner = spawner

        self._registry = SessionRegistry()
        self._creating = 0
        self._exit_handler: ExitHandler | None = None
        self._background: set[asyncio.Task[Any]] = set()
        self._idle_task: asyncio.Task[None] | None = None
        self._closed = False

    @property
    def registry(self) -> SessionRegistry:
        return self._registry

    @property
    def store(self) -> SessionStore | None:
        return self._store

    @property
    def terminate_grace_period(self) -> float:
        return self._grace_period

    def set_exit_handler(self, handler: ExitHandler | None) -> None:
        """Decide what happens when a session's process dies on its own.

        Without a handler the session is terminated.
        """
        self._exit_handler = handler

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Start background maintenance (idle timeout)."""
        if self._idle_timeout and self._idle_task is None:
            self._idle_task = asyncio.create_task(self._idle_monitor(), name="idle-monitor")
            logger.info("Idle timeout enabled: %.0fs", self._idle_timeout)

    async def shutdown(self) -> None:
        """Stop every process, leaving sessions restorable.

        Sessions are saved as Paused, so ``restore_sessions()`` on the
        next start respawns them under the same ids.
        """
        if self._closed:
            return
        self._closed = True
        if self._idle_task is not None:
            self._idle_task.cancel()
            await asyncio.gather(self._idle_task, return_exceptions=True)
            self._idle_task = None
        entries = list(self._registry)
        logger.info("Shutting down %d session(s)", len(entries))
        await asyncio.gather(
            *(self._end_session(entry, SessionStatus.PAUSED) for entry in entries),
            return_exceptions=True,
        )
        for task in list(self._background):
            task.cancel()
        await asyncio.gather(*self._background, return_exceptions=True)

    # ------------------------------------------------------------------
    # Session operations
    # ------------------------------------------------------------------

    async def create_session(
        self, config: SessionConfig, owner: str | None = None
    ) -> Session:
        """Spawn a shell and register a new session for it.

        When the requested shell kind is not installed and fallback is
        enabled, the host default is used instead; the returned session
        always reports the kind actually running.

        Raises:
            SessionLimitReached: If ``max_sessions`` are already live.
            SpawnError: If no process could be started.
        """
        if self._closed:
            raise SpawnError("Orchestrator is shut down")
        if len(self._registry) + self._creating >= self._max_sessions:
            raise SessionLimitReached(f"Session limit of {self._max_sessions} reached")

        self._creating += 1
        try:
            working_directory = self._resolve_working_directory(config.working_directory)
            kind, process = await self._spawn_for(config, working_directory)
            session = Session(
                name=config.name,
                shell_kind=kind,
                requested_shell_kind=config.shell_kind,
                working_directory=working_directory,
                environment=dict(config.environment),
                rows=config.rows,
                cols=config.cols,
                owner=owner,
            )
            if not session.name:
                session.name = f"{kind.value}-{session.session_id[:6]}"
            entry = SessionEntry(session=session, pipeline=self._make_pipeline(session))
            self._registry.add(entry)
            self._attach_process(entry, process)
        finally:
            self._creating -= 1

        logger.info(
            "Created session %s (%s, pid %s) in %s",
            session.session_id, kind.value, process.pid, working_directory,
        )
        await self._save_session(session)
        return session

    async def execute_command(self, session_id: str, text: str) -> CommandRecord:
        """Write ``text`` plus a newline and record it.

        Command record sequence numbers are assigned after the write
        succeeds, so they are gap-free per session.

        Raises:
            SessionNotFound: If the session does not exist.
            ShellWriteError: If the write failed even after recovery.
        """
        entry = self._registry.get(session_id)
        recorded_text, redacted = text, False
        if self._filter is not None:
            recorded_text, redacted = self._filter.filter(text)
        data = (text + _line_ending(entry.session.shell_kind)).encode("utf-8")

        async with entry.write_lock:
            await self._write(entry, data)
            entry.session.command_sequence += 1
            record = CommandRecord(
                session_id=session_id,
                sequence=entry.session.command_sequence,
                text=recorded_text,
                redacted=redacted,
            )
            entry.session.touch()
            if self._prompt_re is not None:
                entry.pending_commands.append(record)

        logger.debug("Session %s command #%d submitted", session_id, record.sequence)
        await self._save_command(record)
        await self._save_session(entry.session)
        return record

    async def send_input(self, session_id: str, data: str | bytes) -> None:
        """Write raw keystrokes without a newline or a command record."""
        entry = self._registry.get(session_id)
        raw = data.encode("utf-8") if isinstance(data, str) else data
        if not raw:
            return
        async with entry.write_lock:
            await self._write(entry, raw)
            entry.session.touch()

    async def resize(self, session_id: str, rows: int, cols: int) -> Session:
        """Change the terminal geometry of a session.

        Raises:
            SessionNotFound: If the session does not exist.
            ResizeError: If the geometry could not be applied.
        """
        entry = self._registry.get(session_id)
        async with entry.write_lock:
            if entry.process is not None:
                await entry.process.resize(rows, cols)
            entry.session.rows = rows
            entry.session.cols = cols
        logger.debug("Session %s resized to %dx%d", session_id, cols, rows)
        await self._save_session(entry.session)
        return entry.session

    async def terminate_session(self, session_id: str) -> None:
        """End a session and release its process. Safe to call repeatedly
        and concurrently; unknown ids are ignored."""
        entry = self._registry.find(session_id)
        if entry is None:
            return
        await self._end_session(entry, SessionStatus.TERMINATED)

    def get_session(self, session_id: str) -> Session:
        return self._registry.get(session_id).session

    def list_active_sessions(self) -> list[Session]:
        return [entry.session for entry in self._registry if not entry.closing]

    def is_alive(self, session_id: str) -> bool:
        """Whether the session's current process is running."""
        entry = self._registry.get(session_id)
        return entry.process is not None and entry.process.is_alive()

    def subscribe(self, session_id: str, after_sequence: int | None = None) -> Subscription:
        """Output of a session from ``after_sequence`` (exclusive) onwards."""
        return self._registry.get(session_id).pipeline.subscribe(after_sequence)

    async def replay(self, session_id: str, after_sequence: int) -> list[OutputChunk]:
        return await self._registry.get(session_id).pipeline.replay(after_sequence)

    def last_sequence(self, session_id: str) -> int:
        return self._registry.get(session_id).pipeline.last_sequence

    async def get_commands(self, session_id: str) -> list[CommandRecord]:
        self._registry.get(session_id)
        if self._store is None:
            return []
        try:
            return await self._store.load_commands(session_id)
        except PersistenceError as e:
            logger.warning("Could not load command history for %s: %s", session_id, e)
            return []

    # ------------------------------------------------------------------
    # Recovery
    # ------------------------------------------------------------------

    async def recover_session(self, session_id: str) -> Session:
        """Respawn a session's dead process under the same session id.

        A ``process_restarted`` marker is emitted into the session's
        output. Does nothing if the current process is still alive.

        Raises:
            SessionNotFound: If the session does not exist.
            SpawnError: If the replacement could not be started.
        """
        entry = self._registry.get(session_id)
        async with entry.lock:
            if entry.closing:
                raise SessionNotFound(session_id)
            old = entry.process
            if old is not None and old.is_alive():
                return entry.session

            logger.info("Recovering session %s", session_id)
            entry.process = None
            if old is not None:
                await old.terminate(self._grace_period)
            await self._stop_ingest(entry)

            session = entry.session
            process = await self._spawner(
                session.shell_kind,
                session.working_directory,
                session.environment,
                session.rows,
                session.cols,
            )
            session.restart_count += 1
            session.status = SessionStatus.ACTIVE
            session.touch()
            entry.pending_commands.clear()
            entry.pipeline.mark(ChunkKind.PROCESS_RESTARTED)
            self._attach_process(entry, process)

        logger.info(
            "Session %s recovered (pid %s, restart #%d)",
            session_id, process.pid, session.restart_count,
        )
        await self._save_session(session)
        return session

    async def restore_sessions(self) -> list[Session]:
        """Respawn sessions the store reports as not terminated.

        Used at startup. Each restored session keeps its id and its
        output sequence continues from what was persisted.
        """
        if self._store is None:
            return []
        try:
            stored = await self._store.load_active_sessions()
        except PersistenceError as e:
            logger.warning("Could not load sessions to restore: %s", e)
            return []

        restored: list[Session] = []
        for session in stored:
            if session.session_id in self._registry:
                continue
            if len(self._registry) >= self._max_sessions:
                logger.warning("Session limit reached, not restoring %s", session.session_id)
                break
            try:
                restored.append(await self._restore(session))
            except SpawnError as e:
                logger.warning("Could not restore session %s: %s", session.session_id, e)
                session.status = SessionStatus.TERMINATED
                await self._save_session(session)
        if restored:
            logger.info("Restored %d session(s)", len(restored))
        return restored

    async def _restore(self, session: Session) -> Session:
        assert self._store is not None
        start_sequence = session.output_sequence
        command_sequence = session.command_sequence
        try:
            later = await self._store.load_output_since(session.session_id, start_sequence)
            if later:
                start_sequence = later[-1].sequence
            commands = await self._store.load_commands(session.session_id)
            if commands:
                command_sequence = max(command_sequence, commands[-1].sequence)
        except PersistenceError as e:
            logger.warning("Restoring %s with partial history: %s", session.session_id, e)

        process = await self._spawner(
            session.shell_kind,
            session.working_directory,
            session.environment,
            session.rows,
            session.cols,
        )
        session.output_sequence = start_sequence
        session.command_sequence = command_sequence
        session.restart_count += 1
        session.status = SessionStatus.ACTIVE
        session.touch()
        entry = SessionEntry(
            session=session,
            pipeline=self._make_pipeline(session, start_sequence=start_sequence),
        )
        self._registry.add(entry)
        entry.pipeline.mark(ChunkKind.PROCESS_RESTARTED)
        self._attach_process(entry, process)
        await self._save_session(session)
        logger.info("Restored session %s at sequence %d", session.session_id, start_sequence)
        return session

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _resolve_working_directory(self, requested: str | None) -> str:
        directory = requested or self._default_working_directory or os.getcwd()
        return os.path.abspath(os.path.expanduser(directory))

    async def _spawn_for(
        self, config: SessionConfig, working_directory: str
    ) -> tuple[ShellKind, ShellProcess]:
        requested = config.shell_kind
        kind = requested or default_shell_kind(self._default_shell)
        try:
            process = await self._spawner(
                kind, working_directory, config.environment, config.rows, config.cols
            )
        except ShellUnavailable:
            if requested is None or not self._fallback:
                raise
            fallback = default_shell_kind(self._default_shell)
            if fallback is requested:
                raise
            logger.warning(
                "Shell %s is unavailable, falling back to %s", requested.value, fallback.value
            )
            kind = fallback
            process = await self._spawner(
                kind, working_directory, config.environment, config.rows, config.cols
            )
        return kind, process

    def _make_pipeline(self, session: Session, start_sequence: int = 0) -> OutputPipeline:
        session_id = session.session_id

        def on_chunk(chunk: OutputChunk) -> None:
            entry = self._registry.find(session_id)
            if entry is not None:
                self._on_chunk(entry, chunk)

        return OutputPipeline(
            session_id,
            security_filter=self._filter,
            store=self._store,
            flush_interval=self._flush_interval,
            max_batch_bytes=self._max_batch_bytes,
            window_size=self._window_size,
            subscriber_queue_size=self._subscriber_queue_size,
            redaction_hold=self._redaction_hold,
            max_hold_chars=self._max_hold_chars,
            start_sequence=start_sequence,
            on_chunk=on_chunk,
        )

    def _attach_process(self, entry: SessionEntry, process: ShellProcess) -> None:
        entry.process = process
        entry.ingest_task = asyncio.create_task(
            self._ingest(entry, process), name=f"ingest-{entry.session_id[:8]}"
        )

    async def _ingest(self, entry: SessionEntry, process: ShellProcess) -> None:
        try:
            await entry.pipeline.run(process.read_stream())
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Ingest loop failed for session %s", entry.session_id)
        if entry.closing or entry.process is not process:
            return
        logger.info(
            "Shell process for session %s exited (pid %s)", entry.session_id, process.pid
        )
        self._spawn_background(self._handle_exit(entry.session_id))

    async def _handle_exit(self, session_id: str) -> None:
        if self._exit_handler is None:
            await self.terminate_session(session_id)
            return
        try:
            await self._exit_handler(session_id)
        except Exception:
            logger.exception("Exit handler failed for session %s; terminating", session_id)
            await self.terminate_session(session_id)

    def _on_chunk(self, entry: SessionEntry, chunk: OutputChunk) -> None:
        session = entry.session
        session.output_sequence = chunk.sequence
        if chunk.kind is not ChunkKind.OUTPUT:
            return
        session.touch()
        if entry.pending_commands and self._prompt_re is not None:
            tail = _ANSI_ESCAPE.sub("", chunk.data[-256:]).rstrip("\r\n")
            if self._prompt_re.search(tail):
                record = entry.pending_commands.popleft()
                elapsed = (datetime.now() - record.submitted_at).total_seconds()
                completed = record.model_copy(update={"duration": max(elapsed, 0.0)})
                self._spawn_background(self._save_command(completed))

    async def _write(self, entry: SessionEntry, data: bytes) -> None:
        """Write to the session's process, recovering once on failure.

        Must be called with ``entry.write_lock`` held.
        """
        session_id = entry.session_id
        try:
            if entry.process is None:
                raise ShellWriteError("Shell process is not running", session_id=session_id)
            await entry.process.write(data)
            return
        except ShellWriteError as e:
            logger.warning("Write to session %s failed (%s); recovering", session_id, e.message)

        try:
            await self.recover_session(session_id)
        except SpawnError as e:
            await self.terminate_session(session_id)
            raise ShellWriteError(
                "Shell process died and could not be restarted", session_id=session_id
            ) from e

        try:
            assert entry.process is not None
            await entry.process.write(data)
        except ShellWriteError:
            logger.error("Write to session %s failed after recovery", session_id)
            await self.terminate_session(session_id)
            raise

    async def _stop_ingest(self, entry: SessionEntry) -> None:
        task = entry.ingest_task
        entry.ingest_task = None
        if task is None or task.done() or task is asyncio.current_task():
            return
        try:
            # The stream ends once the process is gone; give it a moment
            await asyncio.wait_for(asyncio.shield(task), timeout=0.5)
        except asyncio.TimeoutError:
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)

    async def _end_session(self, entry: SessionEntry, status: SessionStatus) -> None:
        if entry.teardown_task is None:
            entry.teardown_task = asyncio.create_task(
                self._teardown(entry, status), name=f"teardown-{entry.session_id[:8]}"
            )
        await asyncio.shield(entry.teardown_task)

    async def _teardown(self, entry: SessionEntry, status: SessionStatus) -> None:
        session = entry.session
        async with entry.lock:
            entry.closing = True
            process, entry.process = entry.process, None
            if process is not None:
                try:
                    await process.terminate(self._grace_period)
                except Exception:
                    logger.exception("Error terminating process for %s", session.session_id)
            await self._stop_ingest(entry)

            entry.pipeline.flush(final=True)
            if entry.pipeline.last_kind is not ChunkKind.PROCESS_ENDED:
                entry.pipeline.mark(ChunkKind.PROCESS_ENDED)
            await entry.pipeline.close()
            entry.pending_commands.clear()

            session.status = status
            session.touch()
            self._registry.remove(session.session_id)
        logger.info("Session %s %s", session.session_id, status.value)
        await self._save_session(session)

    async def _idle_monitor(self) -> None:
        assert self._idle_timeout
        interval = min(max(self._idle_timeout / 4, 1.0), 30.0)
        limit = timedelta(seconds=self._idle_timeout)
        while True:
            await asyncio.sleep(interval)
            now = datetime.now()
            for entry in self._registry:
                if entry.closing or now - entry.session.last_activity < limit:
                    continue
                logger.info("Session %s idle for %.0fs, terminating",
                            entry.session_id, self._idle_timeout)
                self._spawn_background(self.terminate_session(entry.session_id))

    def _spawn_background(self, coro: Coroutine[Any, Any, Any]) -> None:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _save_session(self, session: Session) -> None:
        if self._store is None:
            return
        try:
            await self._store.save_session(session)
        except PersistenceError as e:
            logger.warning("Could not persist session %s: %s", session.session_id, e)

    async def _save_command(self, record: CommandRecord) -> None:
        if self._store is None:
            return
        try:
            await self._store.save_command(record)
        except PersistenceError as e:
            logger.warning(
                "Could not persist command #%d for %s: %s",
                record.sequence, record.session_id, e,
            )

    def __repr__(self) -> str:
        return f"SessionOrchestrator(sessions={len(self._registry)}, store={self._store!r})"

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        store: SessionStore | None = None,
        security_filter: SecurityFilter | None = None,
        **overrides: Any,
    ) -> SessionOrchestrator:
        """Build an orchestrator from a ``Settings`` object."""
        options: dict[str, Any] = dict(
            store=store,
            security_filter=security_filter,
            default_shell=settings.shell.default_kind,
            default_working_directory=settings.shell.working_directory,
            max_sessions=settings.sessions.max_sessions,
            idle_timeout=settings.sessions.idle_timeout,
            terminate_grace_period=settings.shell.terminate_grace_period,
            fallback_to_default_shell=settings.shell.fallback_to_default,
            flush_interval=settings.streaming.flush_interval,
            max_batch_bytes=settings.streaming.max_batch_bytes,
            window_size=settings.streaming.window_size,
            subscriber_queue_size=settings.streaming.subscriber_queue_size,
            redaction_hold=settings.streaming.redaction_hold,
            max_hold_chars=settings.streaming.max_hold_chars,
            prompt_pattern=settings.sessions.prompt_pattern,
        )
        options.update(overrides)
        return cls(**options)

