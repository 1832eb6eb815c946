"""Diagnostics for the nebi CLI.

stderr is shared with command output (status lines, warnings), so at the
default level diagnostics are one short line each.  ``-v`` switches to a
detailed format with timestamps and call sites.  ``NEBI_LOG_FILE`` keeps a
rotated DEBUG log regardless of the stderr level, which is what to attach
to a bug report about a failed pull or push.
"""

from __future__ import annotations

import logging
import sys
from pathlib import Path

from loguru import logger

_COMPACT_FORMAT = "<level>nebi {level}:</level> {message}"
_DETAILED_FORMAT = (
    "<green>{time:HH:mm:ss.SSS}</green> <level>{level: <7}</level> "
    "<cyan>{name}:{line}</cyan> {message}"
)
_FILE_FORMAT = "{time:YYYY-MM-DD HH:mm:ss.SSS} {level: <7} {name}:{function}:{line} {message}"

# Held at WARNING unless verbose.
_QUIET_LOGGERS = ("httpx", "httpcore")


class _ToLoguru(logging.Handler):
    """Forward stdlib records (httpx, warnings) to loguru at their call site."""

    def emit(self, record: logging.LogRecord) -> None:
        try:
            level: str | int = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        frame, depth = logging.currentframe(), 2
        while frame is not None and frame.f_code.co_filename == logging.__file__:
            frame = frame.f_back
            depth += 1
        logger.opt(depth=depth, exception=record.exc_info).log(level, record.getMessage())


def _verbose(level: str) -> bool:
    return level in ("DEBUG", "TRACE")


def setup_logging(level: str = "WARNING", *, log_file: Path | str | None = None) -> None:
    """Route all diagnostics through loguru.

    Safe to call more than once; each call replaces the previous sinks.
    """
    level = level.upper()
    logger.remove()
    logger.add(
        sys.stderr,
        level=level,
        format=_DETAILED_FORMAT if _verbose(level) else _COMPACT_FORMAT,
        backtrace=_verbose(level),
        diagnose=False,
    )
    if log_file is not None:
        logger.add(
            Path(log_file).expanduser(),
            level="DEBUG",
            format=_FILE_FORMAT,
            rotation="1 MB",
            retention=3,
            encoding="utf-8",
            diagnose=False,
        )

    logging.basicConfig(handlers=[_ToLoguru()], level=0, force=True)
    logging.captureWarnings(True)
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.DEBUG if _verbose(level) else logging.WARNING)

    logger.debug("nebi logging: stderr={} file={}", level, log_file or "-")
