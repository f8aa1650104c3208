"""Selects the shell process variant for a shell kind.

Adding a shell kind means adding a variant class and listing it here;
the orchestrator only ever calls ``spawn_shell``.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Mapping

from termrelay.domain.errors import ShellUnavailable
from termrelay.domain.models import ShellFamily, ShellKind
from termrelay.shell.base import ShellProcess
from termrelay.shell.posix import PosixShellProcess
from termrelay.shell.windows import SubsystemBridgeShellProcess, WindowsConsoleShellProcess

logger = logging.getLogger(__name__)

SHELL_VARIANTS: dict[ShellFamily, type[ShellProcess]] = {
    ShellFamily.POSIX: PosixShellProcess,
    ShellFamily.WINDOWS_CONSOLE: WindowsConsoleShellProcess,
    ShellFamily.SUBSYSTEM_BRIDGE: SubsystemBridgeShellProcess,
}

_POSIX_PREFERENCE = (ShellKind.BASH, ShellKind.ZSH, ShellKind.SH, ShellKind.FISH)
_WINDOWS_PREFERENCE = (ShellKind.PWSH, ShellKind.POWERSHELL, ShellKind.CMD)


def variant_for(kind: ShellKind) -> type[ShellProcess]:
    return SHELL_VARIANTS[kind.family]


def is_available(kind: ShellKind) -> bool:
    try:
        variant_for(kind).resolve_command(kind)
    except ShellUnavailable:
        return False
    return True


def available_shell_kinds() -> list[ShellKind]:
    """Shell kinds that can be spawned on this host."""
    return [kind for kind in ShellKind if is_available(kind)]


def default_shell_kind(preferred: ShellKind | None = None) -> ShellKind:
    """The host default shell kind.

    Args:
        preferred: Configured default, used when available here.

    Raises:
        ShellUnavailable: If no shell at all can run on this host.
    """
    if preferred is not None and is_available(preferred):
        return preferred
    preference = _WINDOWS_PREFERENCE if os.name == "nt" else _POSIX_PREFERENCE
    for kind in preference:
        if is_available(kind):
            return kind
    raise ShellUnavailable("No supported shell is installed on this host")


async def spawn_shell(
    kind: ShellKind,
    working_directory: str,
    environment: Mapping[str, str] | None = None,
    rows: int = 24,
    cols: int = 80,
) -> ShellProcess:
    """Spawn a shell of exactly ``kind``; never substitutes another kind."""
    variant = variant_for(kind)
    logger.debug("Spawning %s via %s", kind.value, variant.__name__)
    return await variant.spawn(kind, working_directory, environment or {}, rows, cols)
