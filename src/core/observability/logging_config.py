"""
Logging setup for the gatewayctl CLI.

The console level comes from ``--debug`` / ``--verbose`` / ``--quiet``,
then GWCTL_LOG_LEVEL, then WARNING. Setting GWCTL_LOG_FILE adds a file
handler with its own level (GWCTL_LOG_FILE_LEVEL). Provider CLI calls
log at DEBUG, so ``--debug`` shows every command a target runs.
"""

from __future__ import annotations

import logging
import os
import sys

ENV_LOG_LEVEL = "GWCTL_LOG_LEVEL"
ENV_LOG_FILE = "GWCTL_LOG_FILE"
ENV_LOG_FILE_LEVEL = "GWCTL_LOG_FILE_LEVEL"

CONSOLE_FORMAT = "%(levelname)s %(name)s: %(message)s"
FILE_FORMAT = "%(asctime)s %(levelname)-7s %(name)s:%(lineno)d %(message)s"

# Chatty below WARNING unless we are debugging
_QUIETED = ("asyncio",)


def level_number(name: str | None) -> int:
    """Numeric level for ``name``; WARNING for anything unknown."""
    value = logging.getLevelName(name.upper()) if name else None
    return value if isinstance(value, int) else logging.WARNING


def resolve_level(*, debug: bool = False, verbose: bool = False, quiet: bool = False) -> str:
    """Pick the console level from CLI flags, falling back to GWCTL_LOG_LEVEL."""
    if debug:
        return "DEBUG"
    if verbose:
        return "INFO"
    if quiet:
        return "ERROR"
    return os.environ.get(ENV_LOG_LEVEL, "WARNING")


def setup_logging(level: str = "WARNING", log_file: str | None = None, log_file_level: str | None = None) -> None:
    """Replace the root handlers with a stderr handler and an optional file."""
    console_level = level_number(level)
    handlers: list[logging.Handler] = []

    console = logging.StreamHandler(sys.stderr)
    console.setLevel(console_level)
    console.setFormatter(logging.Formatter(CONSOLE_FORMAT))
    handlers.append(console)

    if log_file:
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setLevel(level_number(log_file_level) if log_file_level else console_level)
        file_handler.setFormatter(logging.Formatter(FILE_FORMAT))
        handlers.append(file_handler)

    root = logging.getLogger()
    root.handlers[:] = handlers
    root.setLevel(min(h.level for h in handlers))

    if console_level > logging.DEBUG:
        for name in _QUIETED:
            logging.getLogger(name).setLevel(logging.WARNING)


def setup_logging_from_env(level: str) -> None:
    setup_logging(level, os.environ.get(ENV_LOG_FILE), os.environ.get(ENV_LOG_FILE_LEVEL))
