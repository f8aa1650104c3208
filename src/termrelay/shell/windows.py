"""Windows console shells and the WSL subsystem bridge.

Uses pywinpty (ConPTY where available) so console applications see a
real console. pywinpty reads block, so each process gets a reader
thread that hands chunks back to the event loop.
"""

from __future__ import annotations

import asyncio
import logging
import os
import shutil
import threading
from collections.abc import Mapping
from typing import Any

from termrelay.domain.errors import ResizeError, ShellUnavailable, ShellWriteError, SpawnError
from termrelay.domain.models import ShellKind
from termrelay.shell.base import ShellProcess

logger = logging.getLogger(__name__)

_EXECUTABLES = {
    ShellKind.POWERSHELL: ["powershell.exe", "-NoLogo"],
    ShellKind.PWSH: ["pwsh.exe", "-NoLogo"],
    ShellKind.CMD: ["cmd.exe"],
}

_READ_SIZE = 4096


def _load_winpty() -> Any:
    try:
        import winpty
    except ImportError as e:
        raise ShellUnavailable("Windows console shells require pywinpty") from e
    return winpty


class WindowsConsoleShellProcess(ShellProcess):
    """A shell process attached to a Windows pseudo console."""

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
        self._pty: Any = None
        self._reader: threading.Thread | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._write_lock = asyncio.Lock()
        self._terminated = False

    @classmethod
    def resolve_command(cls, shell_kind: ShellKind) -> list[str]:
        if os.name != "nt":
            raise ShellUnavailable("Windows console shells require a Windows host", shell_kind.value)
        argv = _EXECUTABLES.get(shell_kind)
        if argv is None:
            raise ShellUnavailable(f"{shell_kind.value} is not a Windows console shell", shell_kind.value)
        path = shutil.which(argv[0])
        if path is None:
            raise ShellUnavailable(f"{argv[0]} is not installed", shell_kind.value)
        return [path, *argv[1:]]

    @classmethod
    async def spawn(
        cls,
        shell_kind: ShellKind,
        working_directory: str,
        environment: Mapping[str, str],
        rows: int = 24,
        cols: int = 80,
    ) -> WindowsConsoleShellProcess:
        argv = cls.resolve_command(shell_kind)
        winpty = _load_winpty()
        if not os.path.isdir(working_directory):
            raise SpawnError("Working directory does not exist")
        process = cls(shell_kind, working_directory, environment, rows, cols)
        loop = asyncio.get_running_loop()
        try:
            process._pty = await loop.run_in_executor(
                None,
                lambda: winpty.PtyProcess.spawn(
                    argv,
                    cwd=working_directory,
                    env=process.build_environment(),
                    dimensions=(rows, cols),
                ),
            )
        except Exception as e:
            raise SpawnError(f"Failed to start {shell_kind.value}") from e
        process._loop = loop
        process._reader = threading.Thread(
            target=process._read_loop,
            name=f"winpty-reader-{process.pid}",
            daemon=True,
        )
        process._reader.start()
        logger.info(
            "Started %s (pid=%s, %dx%d) in %s",
            shell_kind.value, process.pid, cols, rows, working_directory,
        )
        return process

    def _read_loop(self) -> None:
        """Reader thread: blocking reads, handed to the loop thread-safely."""
        assert self._loop is not None
        try:
            while True:
                try:
                    text = self._pty.read(_READ_SIZE)
                except EOFError:
                    break
                if text:
                    self._loop.call_soon_threadsafe(self._stream.feed, text.encode("utf-8"))
                elif not self._pty.isalive():
                    break
        except Exception as e:
            logger.debug("winpty reader for pid=%s ended: %s", self.pid, e)
        finally:
            try:
                self._loop.call_soon_threadsafe(self._stream.feed_eof)
            except RuntimeError:
                # Loop already closed during shutdown
                pass

    @property
    def pid(self) -> int | None:
        return getattr(self._pty, "pid", None)

    def is_alive(self) -> bool:
        return self._pty is not None and not self._terminated and bool(self._pty.isalive())

    async def write(self, data: bytes) -> None:
        if not self.is_alive():
            raise ShellWriteError("Shell process is not running")
        text = data.decode("utf-8", errors="replace")
        loop = asyncio.get_running_loop()
        async with self._write_lock:
            try:
                await loop.run_in_executor(None, self._pty.write, text)
            except Exception as e:
                raise ShellWriteError("Failed to write to shell") from e

    async def resize(self, rows: int, cols: int) -> None:
        if not self.is_alive():
            raise ResizeError("Shell process is not running")
        try:
            self._pty.setwinsize(rows, cols)
        except Exception as e:
            raise ResizeError("Failed to resize console") from e
        self._rows = rows
        self._cols = cols

    async def terminate(self, grace_period: float = 2.0) -> None:
        if self._terminated or self._pty is None:
            return
        self._terminated = True
        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(None, self._pty.terminate, False)
            deadline = loop.time() + grace_period
            while loop.time() < deadline and self._pty.isalive():
                await asyncio.sleep(0.05)
            if self._pty.isalive():
                logger.warning("Shell pid=%s did not exit, forcing", self.pid)
                await loop.run_in_executor(None, self._pty.terminate, True)
        except Exception as e:
            logger.warning("Error terminating shell pid=%s: %s", self.pid, e)
        self._stream.feed_eof()
        logger.info("Shell pid=%s terminated", self.pid)


class SubsystemBridgeShellProcess(WindowsConsoleShellProcess):
    """A Linux shell inside WSL, reached through ``wsl.exe``."""

    family_kinds = (ShellKind.WSL,)

    @classmethod
    def resolve_command(cls, shell_kind: ShellKind) -> list[str]:
        if shell_kind is not ShellKind.WSL:
            raise ShellUnavailable(f"{shell_kind.value} is not a subsystem shell", shell_kind.value)
        if os.name != "nt":
            raise ShellUnavailable("WSL requires a Windows host", shell_kind.value)
        path = shutil.which("wsl.exe")
        if path is None:
            raise ShellUnavailable("wsl.exe is not installed", shell_kind.value)
        return [path]
