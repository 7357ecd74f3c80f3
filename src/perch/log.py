"""Logging setup for the ``perch`` logger tree.

Modules log through ``logging.getLogger("perch.<module>")``. Nothing is
printed until the application configures logging, either its own way or
with ``configure()``::

    from perch import log

    log.configure(level="debug")                          # console
    log.configure(file="perch.log", console=False)        # rotating file
    log.configure(fmt="json", stream=sys.stdout)          # JSON lines
"""

import logging
import sys
from datetime import UTC, datetime
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import IO

from pythonjsonlogger.json import JsonFormatter

from perch.config import RouterConfig

LOGGER_NAME = "perch"

DEFAULT_MAX_BYTES = 10 * 1024 * 1024
DEFAULT_BACKUP_COUNT = 5

# Marks handlers installed here so reconfiguring replaces only those
_MARKER = "_perch_handler"


class TextFormatter(logging.Formatter):
    """``<iso time> [LEVEL] logger: message``."""

    def __init__(self) -> None:
        super().__init__("%(asctime)s [%(levelname)s] %(name)s: %(message)s")

    def formatTime(self, record: logging.LogRecord, datefmt: str | None = None) -> str:  # noqa: N802
        moment = datetime.fromtimestamp(record.created, tz=UTC)
        return moment.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def make_formatter(fmt: str = "text") -> logging.Formatter:
    """Formatter for ``"text"`` or ``"json"`` output."""
    match fmt:
        case "text":
            return TextFormatter()
        case "json":
            return JsonFormatter(
                "%(asctime)s %(levelname)s %(name)s %(message)s",
                rename_fields={"levelname": "level", "name": "logger"},
            )
        case _:
            msg = f"Unknown log format {fmt!r}. Expected 'text' or 'json'"
            raise ValueError(msg)


def _level(level: str | int) -> int:
    if isinstance(level, int):
        return level
    value = logging.getLevelName(level.upper())
    if not isinstance(value, int):
        msg = f"Unknown log level {level!r}"
        raise ValueError(msg)
    return value


def configure(
    level: str | int = "info",
    *,
    fmt: str = "text",
    console: bool = True,
    file: str | Path | None = None,
    max_bytes: int = DEFAULT_MAX_BYTES,
    backup_count: int = DEFAULT_BACKUP_COUNT,
    stream: IO[str] | None = None,
) -> logging.Logger:
    """Install handlers on the ``perch`` logger and return it.

    Args:
        level: Minimum level for the perch loggers.
        fmt: ``"text"`` or ``"json"``.
        console: Log to stderr.
        file: Also log to this file, rotated at *max_bytes* with
            *backup_count* old files kept.
        stream: Also log to this text stream.

    Calling it again replaces the handlers installed by the previous call.
    """
    resolved = _level(level)
    formatter = make_formatter(fmt)
    logger = logging.getLogger(LOGGER_NAME)
    for handler in list(logger.handlers):
        if getattr(handler, _MARKER, False):
            logger.removeHandler(handler)
            handler.close()

    handlers: list[logging.Handler] = []
    if console:
        handlers.append(logging.StreamHandler(sys.stderr))
    if file is not None:
        handlers.append(
            RotatingFileHandler(
                file, maxBytes=max_bytes, backupCount=backup_count, encoding="utf-8"
            )
        )
    if stream is not None:
        handlers.append(logging.StreamHandler(stream))

    for handler in handlers:
        handler.setFormatter(formatter)
        setattr(handler, _MARKER, True)
        logger.addHandler(handler)
    logger.setLevel(resolved)
    return logger


def configure_from(config: RouterConfig, **options: object) -> logging.Logger:
    """``configure()`` using the level and format from a ``RouterConfig``."""
    return configure(config.log_level, fmt=config.log_format, **options)  # type: ignore[arg-type]
