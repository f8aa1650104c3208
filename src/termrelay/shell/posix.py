"""POSIX shells running behind a pseudo-terminal.

The shell gets the slave side of a pty as its controlling terminal, so
line editing, job control, signals and full-screen applications behave
as they do on a real console. The master side is read through the event
loop without blocking it.
"""

from __future__ import annotations

import asyncio
import errno
import logging
import os
import shutil
import signal
import struct
import sys
from collections.abc import Mapping

if sys.platform != "win32":
    import fcntl
    import pty
    import termios

from termrelay.domain.errors import ResizeError, ShellUnavailable, ShellWriteError, SpawnError
from termrelay.domain.models import ShellKind
from termrelay.shell.base import ShellProcess

logger = logging.getLogger(__name__)

_EXECUTABLES = {
    ShellKind.BASH: "bash",
    ShellKind.ZSH: "zsh",
    ShellKind.SH: "sh",
    ShellKind.FISH: "fish",
}

# Upper bound on bytes drained per readiness callback before yielding.
_MAX_DRAIN = 256 * 1024
_READ_SIZE = 65536


def _set_winsize(fd: int, rows: int, cols: int) -> None:
    winsize = struct.pack("HHHH", rows, cols, 0, 0)
    fcntl.ioctl(fd, termios.TIOCSWINSZ, winsize)


class PosixShellProcess(ShellProcess):
    """A shell process attached to a pseudo-terminal."""

    family_kinds = tuple(_EXECUTABLES)

    def __init__(
        self,
        shell_kind: ShellKind,
        working_directory: str,
        environment: Mapping[str, str],
        rows: int,
        cols: int,
    ) -> None:
        super().__init__(shell_kind, working_directory, environment, rows, cols)
        self._pid: int | None = None
        self._master_fd: int | None = None
        self._alive = False
        self._exit_code: int | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._terminate_task: asyncio.Task[None] | None = None

    @classmethod
    def resolve_command(cls, shell_kind: ShellKind) -> list[str]:
        if os.name != "posix":
            raise ShellUnavailable("POSIX shells require a POSIX host", shell_kind.value)
        name = _EXECUTABLES.get(shell_kind)
        if name is None:
            raise ShellUnavailable(
                f"{shell_kind.value} is not a POSIX shell", shell_kind.value
            )
        path = shutil.which(name)
        if path is None:
            raise ShellUnavailable(f"{name} is not installed", shell_kind.value)
        return [path]

    @classmethod
    async def spawn(
        cls,
        shell_kind: ShellKind,
        working_directory: str,
        environment: Mapping[str, str],
        rows: int = 24,
        cols: int = 80,
    ) -> PosixShellProcess:
        argv = cls.resolve_command(shell_kind)
        if not os.path.isdir(working_directory):
            raise SpawnError("Working directory does not exist")
        if not os.access(working_directory, os.X_OK):
            raise SpawnError("Permission denied for working directory")
        process = cls(shell_kind, working_directory, environment, rows, cols)
        process._start(argv)
        return process

    def _start(self, argv: list[str]) -> None:
        try:
            master_fd, slave_fd = pty.openpty()
        except OSError as e:
            raise SpawnError("Could not allocate a pseudo-terminal") from e

        _set_winsize(slave_fd, self._rows, self._cols)
        env = self.build_environment()

        try:
            pid = os.fork()
        except OSError as e:
            os.close(master_fd)
            os.close(slave_fd)
            raise SpawnError("Could not fork shell process") from e

        if pid == 0:
            # Child process
            try:
                os.close(master_fd)
                os.setsid()
                fcntl.ioctl(slave_fd, termios.TIOCSCTTY, 0)
                os.dup2(slave_fd, 0)
                os.dup2(slave_fd, 1)
                os.dup2(slave_fd, 2)
                if slave_fd > 2:
                    os.close(slave_fd)
                os.chdir(self.working_directory)
                os.execvpe(argv[0], argv, env)
            finally:
                os._exit(127)

        # Parent process
        os.close(slave_fd)
        self._pid = pid
        self._master_fd = master_fd

        flags = fcntl.fcntl(master_fd, fcntl.F_GETFL)
        fcntl.fcntl(master_fd, fcntl.F_SETFL, flags | os.O_NONBLOCK)

        self._alive = True
        self._loop = asyncio.get_running_loop()
        self._loop.add_reader(master_fd, self._on_readable)
        logger.info(
            "Started %s (pid=%d, %dx%d) in %s",
            self.shell_kind.value, pid, self._cols, self._rows, self.working_directory,
        )

    @property
    def pid(self) -> int | None:
        return self._pid

    @property
    def exit_code(self) -> int | None:
        return self._exit_code

    def _on_readable(self) -> None:
        """Drain everything immediately available into one stream chunk."""
        if self._master_fd is None:
            return
        buffer = bytearray()
        eof = False
        while len(buffer) < _MAX_DRAIN:
            try:
                data = os.read(self._master_fd, _READ_SIZE)
            except BlockingIOError:
                break
            except OSError as e:
                # EIO: every slave fd closed, i.e. the shell went away
                if e.errno != errno.EIO:
                    logger.debug("pty read error on pid=%s: %s", self._pid, e)
                eof = True
                break
            if not data:
                eof = True
                break
            buffer += data
        if buffer:
            self._stream.feed(bytes(buffer))
        if eof:
            self._handle_eof()

    def _handle_eof(self) -> None:
        self._remove_reader()
        self._reap()
        self._alive = False
        self._stream.feed_eof()
        logger.info("Shell pid=%s ended (exit_code=%s)", self._pid, self._exit_code)

    def _remove_reader(self) -> None:
        if self._loop is not None and self._master_fd is not None:
            try:
                self._loop.remove_reader(self._master_fd)
            except (ValueError, OSError, RuntimeError):
                pass

    def _reap(self) -> bool:
        """Collect the child's exit status if it has exited."""
        if self._pid is None or self._exit_code is not None:
            return True
        try:
            pid, status = os.waitpid(self._pid, os.WNOHANG)
        except ChildProcessError:
            self._exit_code = -1
            return True
        if pid == 0:
            return False
        self._exit_code = os.waitstatus_to_exitcode(status)
        return True

    def is_alive(self) -> bool:
        if not self._alive:
            return False
        if self._reap():
            self._alive = False
        return self._alive

    async def write(self, data: bytes) -> None:
        if not self.is_alive() or self._master_fd is None:
            raise ShellWriteError("Shell process is not running")
        view = memoryview(data)
        while view:
            try:
                written = os.write(self._master_fd, view)
            except BlockingIOError:
                # pty input buffer full; let the shell catch up
                await asyncio.sleep(0.005)
                continue
            except OSError as e:
                raise ShellWriteError(f"Failed to write to shell: {e.strerror}") from e
            view = view[written:]

    async def resize(self, rows: int, cols: int) -> None:
        if self._master_fd is None or not self._alive:
            raise ResizeError("Shell process is not running")
        try:
            _set_winsize(self._master_fd, rows, cols)
        except OSError as e:
            raise ResizeError(f"Failed to resize terminal: {e.strerror}") from e
        self._rows = rows
        self._cols = cols
        logger.debug("Resized pid=%s to %dx%d", self._pid, cols, rows)

    async def terminate(self, grace_period: float = 2.0) -> None:
        if self._terminate_task is None:
            self._terminate_task = asyncio.ensure_future(self._terminate(grace_period))
        await asyncio.shield(self._terminate_task)

    async def _terminate(self, grace_period: float) -> None:
        if self._pid is not None and not self._reap():
            # Interactive shells ignore SIGTERM; SIGHUP is the hang-up they expect
            self._signal_group(signal.SIGHUP)
            self._signal_group(signal.SIGCONT)
            loop = asyncio.get_running_loop()
            deadline = loop.time() + grace_period
            while loop.time() < deadline and not self._reap():
                await asyncio.sleep(0.05)
            if not self._reap():
                logger.warning("Shell pid=%d ignored SIGHUP, sending SIGKILL", self._pid)
                self._signal_group(signal.SIGKILL)
                while not self._reap():
                    await asyncio.sleep(0.01)

        self._remove_reader()
        if self._master_fd is not None:
            try:
                os.close(self._master_fd)
            except OSError:
                pass
            self._master_fd = None
        self._alive = False
        self._stream.feed_eof()
        logger.info("Shell pid=%s terminated", self._pid)

    def _signal_group(self, sig: signal.Signals) -> None:
        if self._pid is None:
            return
        try:
            os.killpg(self._pid, sig)
        except ProcessLookupError:
            pass
        except PermissionError as e:
            logger.warning("Cannot signal shell pid=%d: %s", self._pid, e)
