"""
Logging setup for the update cycle orchestrator.

Everything logs under the "update_cycle" logger namespace. Interactive runs
get a plain console line per record; CI runs can switch to one JSON object
per record, carrying the `extra` fields (stage, command, path...) of each
call as top-level keys.
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import UTC, datetime
from typing import IO, TYPE_CHECKING, Any

if TYPE_CHECKING:
    from update_cycle.config import LoggingConfig

LOGGER_NAME = "update_cycle"

CONSOLE_FORMAT = "%(asctime)s %(levelname)-8s %(name)s: %(message)s"

# Attributes of a bare LogRecord; anything else on a record came from `extra`
_STANDARD_ATTRIBUTES = frozenset(
    logging.LogRecord("", logging.INFO, "", 0, "", (), None).__dict__
) | {"message", "asctime"}

_LEVELS = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
    "CRITICAL": logging.CRITICAL,
}


class JSONFormatter(logging.Formatter):
    """Render each record as a single-line JSON object."""

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)

        entry.update(
            (key, value)
            for key, value in record.__dict__.items()
            if key not in _STANDARD_ATTRIBUTES and value is not None
        )
        return json.dumps(entry, default=str)


def setup_logging(
    config: LoggingConfig | None = None,
    *,
    level: str = "INFO",
    json_format: bool = False,
    stream: IO[str] | None = None,
) -> logging.Logger:
    """
    (Re)configure the package logger.

    Calling it again replaces the previous handler, so the CLI can start with
    defaults and switch to the loaded configuration later.

    Args:
        config: Logging section of the configuration; takes precedence over
            `level` and `json_format`.
        level: Level name used without a config.
        json_format: Emit JSON records instead of console lines.
        stream: Destination; stderr by default, keeping stdout for prompts.

    Returns:
        The "update_cycle" logger.
    """
    if config is not None:
        level = config.level
        json_format = config.json_format

    handler = logging.StreamHandler(stream or sys.stderr)
    handler.setFormatter(JSONFormatter() if json_format else logging.Formatter(CONSOLE_FORMAT))

    logger = logging.getLogger(LOGGER_NAME)
    logger.handlers.clear()
    logger.addHandler(handler)
    logger.setLevel(_LEVELS.get(level.upper(), logging.INFO))
    logger.propagate = False
    return logger


def get_logger(name: str) -> logging.Logger:
    """Return a logger below the package namespace (`__name__` works as is)."""
    if name != LOGGER_NAME and not name.startswith(f"{LOGGER_NAME}."):
        name = f"{LOGGER_NAME}.{name}"
    return logging.getLogger(name)
