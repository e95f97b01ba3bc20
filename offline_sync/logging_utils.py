"""
Logging helpers for the sync engine.

Background sync runs unattended, so its logs are the record of what
happened to each queued mutation. Records logged through
:class:`SyncLoggerAdapter` carry the queue entry they concern, and
:class:`SyncJsonFormatter` lifts that context into its own JSON object.
"""

import json
import logging
import sys
from datetime import datetime, timezone
from typing import IO, Any

PACKAGE_LOGGER = "offline_sync"

# Record attributes copied into the "context" object of JSON output
CONTEXT_FIELDS = ("entry_id", "entity", "entity_id", "action", "attempt", "principal")

TEXT_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


class SyncJsonFormatter(logging.Formatter):
    """
    JSON formatter emitting one object per line.

    Fields:
    - ts: record creation time, ISO 8601 in UTC
    - level, logger, message
    - context: queue-entry fields present on the record (omitted if none)
    - exception: formatted traceback, when logged with exc_info
    """

    def format(self, record: logging.LogRecord) -> str:
        out: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        context = {
            key: getattr(record, key)
            for key in CONTEXT_FIELDS
            if getattr(record, key, None) is not None
        }
        if context:
            out["context"] = context

        if record.exc_info:
            out["exception"] = self.formatException(record.exc_info)

        return json.dumps(out, default=str)


class _SyncStreamHandler(logging.StreamHandler):
    """Handler installed by configure_sync_logging."""


def configure_sync_logging(
    level: int | str = logging.INFO,
    *,
    json_format: bool = True,
    stream: IO[str] | None = None,
) -> logging.Logger:
    """
    Send the engine's logs to a stream.

    Only the ``offline_sync`` logger is touched. A handler installed by an
    earlier call is replaced; handlers added by the application stay.

    Args:
        level: Level for the package logger
        json_format: One JSON object per line instead of plain text
        stream: Target stream (default: stdout)

    Returns:
        The package logger
    """
    logger = logging.getLogger(PACKAGE_LOGGER)
    for handler in [h for h in logger.handlers if isinstance(h, _SyncStreamHandler)]:
        logger.removeHandler(handler)

    handler = _SyncStreamHandler(stream or sys.stdout)
    handler.setFormatter(SyncJsonFormatter() if json_format else logging.Formatter(TEXT_FORMAT))
    logger.addHandler(handler)
    logger.setLevel(level)
    return logger


def get_sync_logger(name: str) -> logging.Logger:
    """Logger named ``offline_sync.<name>``."""
    return logging.getLogger(f"{PACKAGE_LOGGER}.{name}")


class SyncLoggerAdapter(logging.LoggerAdapter):
    """
    Adds queue-entry context to every record.

    Usage:
        log = SyncLoggerAdapter(logger, {"entry_id": entry.id, "entity": entry.entity})
        log.warning("retry scheduled")
    """

    def process(self, msg: str, kwargs: dict[str, Any]) -> tuple[str, dict[str, Any]]:
        kwargs["extra"] = {**self.extra, **kwargs.get("extra", {})}
        return msg, kwargs
