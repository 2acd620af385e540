"""Logging setup for chatengine.

Every module logs through ``logging.getLogger("chatengine.<module>")`` with a
snake_case event name as the message and structured context in ``extra``::

    logger.info("exchange_completed", extra={"backend": "chat", "attempts": 1})

``configure_logging()`` attaches a single handler to the ``chatengine``
logger. Output is one JSON object per line (``StructuredFormatter``) or a
plain text line (``TextFormatter``), selected by CHATENGINE_LOG_FORMAT.
"""

import json
import logging
import os
from datetime import datetime, timezone
from typing import Any, Optional, TextIO

LOGGER_NAME = "chatengine"
REDACTED = "[REDACTED]"

# Keys redacted in log output
SENSITIVE_KEYS = frozenset(
    {
        "access_token",
        "api_key",
        "apikey",
        "auth",
        "authorization",
        "bearer",
        "cookie",
        "credential",
        "key",
        "password",
        "puid",
        "secret",
        "token",
    }
)

# Attributes every LogRecord carries; anything else arrived through ``extra``
_RECORD_ATTRIBUTES = frozenset(
    vars(logging.LogRecord("", logging.INFO, "", 0, "", (), None))
) | {"message", "asctime", "taskName"}


def _redact(value: Any) -> Any:
    """Mask sensitive keys, descending into nested mappings (e.g. headers)."""
    if isinstance(value, dict):
        return {
            k: REDACTED if str(k).lower() in SENSITIVE_KEYS else _redact(v)
            for k, v in value.items()
        }
    return value


def _context(record: logging.LogRecord) -> dict[str, Any]:
    extras = {
        k: v
        for k, v in vars(record).items()
        if k not in _RECORD_ATTRIBUTES and not k.startswith("_")
    }
    return _redact(extras)


class StructuredFormatter(logging.Formatter):
    """One JSON object per record.

    Fields: ``timestamp`` (UTC, ``Z`` suffix, taken from the record),
    ``level``, ``logger``, ``message``, then ``context`` holding the
    ``extra`` values and ``exception`` holding a formatted traceback.
    Non-JSON values are stringified.
    """

    def format(self, record: logging.LogRecord) -> str:
        created = datetime.fromtimestamp(record.created, tz=timezone.utc)
        entry: dict[str, Any] = {
            "timestamp": created.isoformat(timespec="milliseconds").replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        context = _context(record)
        if context:
            entry["context"] = context
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(entry, default=str)


class TextFormatter(logging.Formatter):
    """``time [LEVEL] logger: event key=value ...`` for local debugging."""

    def __init__(self):
        super().__init__(
            fmt="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
            datefmt="%H:%M:%S",
        )

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        context = _context(record)
        if context:
            line += " " + " ".join(f"{k}={v}" for k, v in context.items())
        return line


def configure_logging(level: Optional[str] = None, stream: Optional[TextIO] = None) -> None:
    """Configure the ``chatengine`` logger.

    Safe to call repeatedly: the package handler is created once and its
    level and formatter are refreshed on every call.

    Args:
        level: Level name; defaults to CHATENGINE_LOG_LEVEL, then INFO
        stream: Output stream for a newly created handler (default: stderr)

    Environment Variables:
        CHATENGINE_LOG_LEVEL: DEBUG, INFO, WARNING, ERROR or CRITICAL
        CHATENGINE_LOG_FORMAT: json (default) or text
    """
    level_name = (level or os.getenv("CHATENGINE_LOG_LEVEL", "INFO")).upper()
    log_level = logging.getLevelName(level_name)
    if not isinstance(log_level, int):
        log_level = logging.INFO

    if os.getenv("CHATENGINE_LOG_FORMAT", "json").lower() == "text":
        formatter: logging.Formatter = TextFormatter()
    else:
        formatter = StructuredFormatter()

    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(log_level)

    if not logger.handlers:
        logger.addHandler(logging.StreamHandler(stream))
    for handler in logger.handlers:
        handler.setFormatter(formatter)

    # The package handler is the only sink
    logger.propagate = False
