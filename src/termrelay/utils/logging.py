"""Handlers for the ``termrelay`` logger tree.

Records go to stderr and, when ``logging.file`` is set, to a file as
well. Only handlers tagged by this module are ever replaced, so a host
application can attach its own to the same logger.
"""

from __future__ import annotations

import logging
import sys
from pathlib import Path

from termrelay.config.settings import LoggingConfig

_HANDLER_MARKER = "_termrelay_handler"


def _owned_handlers(config: LoggingConfig) -> list[logging.Handler]:
    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stderr)]
    if config.file:
        log_path = Path(config.file).expanduser()
        log_path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_path))
    formatter = logging.Formatter(config.format)
    for handler in handlers:
        handler.setFormatter(formatter)
        setattr(handler, _HANDLER_MARKER, True)
    return handlers


def setup_logging(config: LoggingConfig | None = None) -> None:
    """Point the ``termrelay`` logger at stderr and the optional log file.

    Safe to call repeatedly; each call swaps out the previous call's
    handlers.
    """
    config = config or LoggingConfig()
    package_logger = logging.getLogger("termrelay")
    package_logger.setLevel(config.level)

    for stale in [h for h in package_logger.handlers if getattr(h, _HANDLER_MARKER, False)]:
        package_logger.removeHandler(stale)
        stale.close()
    for handler in _owned_handlers(config):
        package_logger.addHandler(handler)

    package_logger.debug("Log level %s, file %s", config.level, config.file or "-")
