"""Shell process abstraction.

One capability interface (``ShellProcess``) over a closed set of
variants: POSIX pseudo-terminal shells, Windows console shells, and the
WSL subsystem bridge.
"""

from termrelay.shell.base import ShellOutputStream, ShellProcess
from termrelay.shell.factory import (
    available_shell_kinds,
    default_shell_kind,
    spawn_shell,
)
from termrelay.shell.posix import PosixShellProcess
from termrelay.shell.windows import SubsystemBridgeShellProcess, WindowsConsoleShellProcess

__all__ = [
    "PosixShellProcess",
    "ShellOutputStream",
    "ShellProcess",
    "SubsystemBridgeShellProcess",
    "WindowsConsoleShellProcess",
    "available_shell_kinds",
    "default_shell_kind",
    "spawn_shell",
]
