"""Abstract base class for shell processes.

Every shell variant (POSIX pseudo-terminal, Windows console, subsystem
bridge) conforms to this interface, so the orchestrator and the output
pipeline never need to know which kind of process backs a session.

Example usage::

    process = await PosixShellProcess.spawn(ShellKind.BASH, "/tmp", {})
    pipeline_task = asyncio.create_task(pipeline.run(process.read_stream()))
    await process.write(b"echo hi\\n")
    await process.resize(40, 120)
    await process.terminate()
"""

from __future__ import annotations

import asyncio
import logging
import os
from abc import ABC, abstractmethod
from collections.abc import Mapping

from termrelay.domain.models import ShellKind

logger = logging.getLogger(__name__)

TERM = "xterm-256color"


class ShellOutputStream:
    """Lazy, non-restartable stream of raw byte chunks from one process.

    The producer side (a reader callback or thread) calls ``feed()`` and
    finally ``feed_eof()`` when liveness is lost. Consumers iterate with
    ``async for``. The buffer is unbounded so a stalled consumer can never
    block the child's output pipe.
    """

    def __init__(self) -> None:
        self._queue: asyncio.Queue[bytes | None] = asyncio.Queue()
        self._eof = False
        self._finished = False

    def feed(self, data: bytes) -> None:
        if self._eof or not data:
            return
        self._queue.put_nowait(data)

    def feed_eof(self) -> None:
        if self._eof:
            return
        self._eof = True
        self._queue.put_nowait(None)

    @property
    def has_pending(self) -> bool:
        """Whether another chunk is available without waiting."""
        return not self._queue.empty() and not self._finished

    @property
    def at_eof(self) -> bool:
        return self._finished

    def __aiter__(self) -> ShellOutputStream:
        return self

    async def __anext__(self) -> bytes:
        if self._finished:
            raise StopAsyncIteration
        data = await self._queue.get()
        if data is None:
            self._finished = True
            raise StopAsyncIteration
        return data


class ShellProcess(ABC):
    """Abstract interface for a shell running behind a terminal device.

    Implementations provide a ``spawn`` classmethod and the byte-level
    operations below. Process exit is not an error: the output stream
    simply ends.
    """

    family_kinds: tuple[ShellKind, ...] = ()

    def __init__(
        self,
        shell_kind: ShellKind,
        working_directory: str,
        environment: Mapping[str, str],
        rows: int,
        cols: int,
    ) -> None:
        self.shell_kind = shell_kind
        self.working_directory = working_directory
        self.environment = dict(environment)
        self._rows = rows
        self._cols = cols
        self._stream = ShellOutputStream()
        self._stream_taken = False

    @classmethod
    @abstractmethod
    def resolve_command(cls, shell_kind: ShellKind) -> list[str]:
        """Return the argv for ``shell_kind`` on this host.

        Raises:
            ShellUnavailable: If the kind cannot run here.
        """
        ...

    @classmethod
    @abstractmethod
    async def spawn(
        cls,
        shell_kind: ShellKind,
        working_directory: str,
        environment: Mapping[str, str],
        rows: int = 24,
        cols: int = 80,
    ) -> ShellProcess:
        """Start a shell of ``shell_kind`` and return its handle.

        Raises:
            ShellUnavailable: If the kind is not available on this host.
            SpawnError: If the process could not be started.
        """
        ...

    @abstractmethod
    async def write(self, data: bytes) -> None:
        """Write bytes to the shell's terminal input.

        Raises:
            ShellWriteError: If the process is gone or the write fails.
        """
        ...

    @abstractmethod
    async def resize(self, rows: int, cols: int) -> None:
        """Propagate a window size change to the OS terminal geometry.

        Raises:
            ResizeError: If the geometry cannot be applied.
        """
        ...

    @abstractmethod
    async def terminate(self, grace_period: float = 2.0) -> None:
        """Stop the process, force-killing after ``grace_period`` seconds.

        Must be safe to call more than once.
        """
        ...

    @abstractmethod
    def is_alive(self) -> bool:
        ...

    @property
    @abstractmethod
    def pid(self) -> int | None:
        ...

    @property
    def rows(self) -> int:
        return self._rows

    @property
    def cols(self) -> int:
        return self._cols

    def read_stream(self) -> ShellOutputStream:
        """Return the process output stream. May only be taken once."""
        if self._stream_taken:
            raise RuntimeError("Shell output stream can only be consumed once")
        self._stream_taken = True
        return self._stream

    def build_environment(self) -> dict[str, str]:
        """Host environment plus overrides plus terminal geometry."""
        env = os.environ.copy()
        env.update(self.environment)
        env["TERM"] = TERM
        env["COLUMNS"] = str(self._cols)
        env["LINES"] = str(self._rows)
        return env

    def __repr__(self) -> str:
        return (
            f"{type(self).__name__}(kind={self.shell_kind.value}, pid={self.pid}, "
            f"alive={self.is_alive()})"
        )
