"""Shared test fixtures for the termrelay test suite.

Provides an in-memory shell process that echoes its input, a spawner
that hands those out, and the usual collaborators (store, filter,
orchestrator) wired to them.
"""

from __future__ import annotations

import asyncio
import itertools
from collections.abc import Awaitable, Callable, Mapping
from datetime import datetime

import pytest

from termrelay.domain.errors import ShellUnavailable, ShellWriteError, SpawnError
from termrelay.domain.models import ChunkKind, OutputChunk, Session, ShellKind
from termrelay.security.filter import SecurityFilter
from termrelay.sessions.orchestrator import SessionOrchestrator
from termrelay.shell.base import ShellProcess
from termrelay.storage.memory import InMemorySessionStore

_pids = itertools.count(1000)


class FakeShellProcess(ShellProcess):
    """A shell that echoes everything written to it back as output."""

    def __init__(
        self,
        shell_kind: ShellKind,
        working_directory: str,
        environment: Mapping[str, str],
        rows: int = 24,
        cols: int = 80,
        echo: bool = True,
    ) -> None:
        super().__init__(shell_kind, working_directory, environment, rows, cols)
        self.echo = echo
        self.written = bytearray()
        self.fail_writes = False
        self.terminate_calls = 0
        self._alive = True
        self._pid = next(_pids)

    @classmethod
    def resolve_command(cls, shell_kind: ShellKind) -> list[str]:
        return [shell_kind.value]

    @classmethod
    async def spawn(
        cls,
        shell_kind: ShellKind,
        working_directory: str,
        environment: Mapping[str, str],
        rows: int = 24,
        cols: int = 80,
    ) -> FakeShellProcess:
        return cls(shell_kind, working_directory, environment, rows, cols)

    @property
    def pid(self) -> int | None:
        return self._pid

    def is_alive(self) -> bool:
        return self._alive

    async def write(self, data: bytes) -> None:
        if not self._alive or self.fail_writes:
            raise ShellWriteError("fake shell is not accepting input")
        self.written += data
        if self.echo:
            self._stream.feed(data)

    async def resize(self, rows: int, cols: int) -> None:
        self._rows, self._cols = rows, cols

    async def terminate(self, grace_period: float = 2.0) -> None:
        self.terminate_calls += 1
        self.crash()

    def emit(self, data: bytes | str) -> None:
        """Produce output as if the shell printed it."""
        self._stream.feed(data.encode() if isinstance(data, str) else data)

    def crash(self) -> None:
        """Die without being asked to."""
        if self._alive:
            self._alive = False
            self._stream.feed_eof()

    def die_silently(self) -> None:
        """Die before the output reader has noticed."""
        self._alive = False


class FakeSpawner:
    """Stands in for ``spawn_shell``; remembers every process it made."""

    def __init__(self) -> None:
        self.processes: list[FakeShellProcess] = []
        self.unavailable: set[ShellKind] = set()
        self.fail = False

    async def __call__(
        self,
        kind: ShellKind,
        working_directory: str,
        environment: Mapping[str, str] | None = None,
        rows: int = 24,
        cols: int = 80,
    ) -> FakeShellProcess:
        if kind in self.unavailable:
            raise ShellUnavailable(f"{kind.value} is not installed", shell_kind=kind.value)
        if self.fail:
            raise SpawnError("spawn disabled for this test")
        process = FakeShellProcess(kind, working_directory, environment or {}, rows, cols)
        self.processes.append(process)
        return process

    @property
    def last(self) -> FakeShellProcess:
        return self.processes[-1]


# ---------------------------------------------------------------------------
# Collaborator Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def fake_spawner() -> FakeSpawner:
    return FakeSpawner()


@pytest.fixture
def store() -> InMemorySessionStore:
    return InMemorySessionStore()


@pytest.fixture
def security_filter() -> SecurityFilter:
    return SecurityFilter()


@pytest.fixture
def orchestrator(
    fake_spawner: FakeSpawner,
    store: InMemorySessionStore,
    security_filter: SecurityFilter,
    tmp_path,
) -> SessionOrchestrator:
    """An orchestrator on fake shells. Tests must ``await shutdown()``."""
    return SessionOrchestrator(
        store=store,
        security_filter=security_filter,
        default_working_directory=str(tmp_path),
        spawner=fake_spawner,
        flush_interval=0.001,
        terminate_grace_period=0.1,
    )


# ---------------------------------------------------------------------------
# Sample Data Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def sample_session(tmp_path) -> Session:
    return Session(
        session_id="sess-1",
        name="sample",
        shell_kind=ShellKind.BASH,
        working_directory=str(tmp_path),
        created_at=datetime(2025, 1, 1, 12, 0, 0),
    )


@pytest.fixture
def sample_chunks() -> list[OutputChunk]:
    """Five chunks of session ``sess-1``, the last one redacted."""
    chunks = [
        OutputChunk(session_id="sess-1", sequence=i, data=f"line {i}\r\n")
        for i in range(1, 5)
    ]
    chunks.append(
        OutputChunk(session_id="sess-1", sequence=5, data="password=[REDACTED]", redacted=True)
    )
    return chunks


@pytest.fixture
def ended_chunk() -> OutputChunk:
    return OutputChunk(session_id="sess-1", sequence=6, kind=ChunkKind.PROCESS_ENDED)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


@pytest.fixture
def eventually() -> Callable[..., Awaitable[None]]:
    """Poll a predicate until it holds or the timeout expires."""

    async def _eventually(predicate: Callable[[], bool], timeout: float = 3.0) -> None:
        deadline = asyncio.get_running_loop().time() + timeout
        while not predicate():
            if asyncio.get_running_loop().time() > deadline:
                raise AssertionError("condition not met before timeout")
            await asyncio.sleep(0.01)

    return _eventually
