"""Logging setup for the engine: text or JSON records with correlation ids."""
from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Dict, Optional

if TYPE_CHECKING:
    from core.config import Settings


TEXT_LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# Promoted to top-level JSON keys when a record carries them
CONTEXT_FIELDS = ("lead_id", "event_id", "model_id", "conversion_id", "job_id")

QUIET_LOGGERS = ("sqlalchemy.engine", "apscheduler")


class JSONFormatter(logging.Formatter):
    """
    One JSON object per record.

    The timestamp is the record's creation time, not the time of formatting,
    so records emitted from worker threads keep their original order when a
    pipeline sorts on it. Correlation ids listed in CONTEXT_FIELDS are copied
    to the top level; anything passed as ``extra_data`` lands under "extra".
    """

    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "thread": record.threadName,
        }

        for name in CONTEXT_FIELDS:
            value = getattr(record, name, None)
            if value is not None:
                payload[name] = value

        extra_data = getattr(record, "extra_data", None)
        if extra_data:
            payload["extra"] = extra_data

        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)

        return json.dumps(payload, default=str)


class ContextLogger(logging.LoggerAdapter):
    """Adapter that stamps bound correlation ids on every record.

    Ids passed in a call's own ``extra`` take precedence over the bound ones.
    """

    def process(self, msg: str, kwargs: Dict[str, Any]) -> tuple[str, Dict[str, Any]]:
        kwargs["extra"] = {**self.extra, **(kwargs.get("extra") or {})}
        return msg, kwargs

    def bind(self, **context: Any) -> "ContextLogger":
        """Return a new adapter with additional context."""
        return ContextLogger(self.logger, {**self.extra, **context})


def setup_logging(
    level: str = "INFO",
    log_file: Optional[str] = None,
    json_format: bool = False,
) -> None:
    """
    Install root handlers.

    Args:
        level: Logging level name.
        log_file: Optional file to mirror console output into.
        json_format: Emit JSONFormatter records instead of plain text.
    """
    formatter: logging.Formatter = (
        JSONFormatter() if json_format else logging.Formatter(TEXT_LOG_FORMAT, DATE_FORMAT)
    )

    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    if log_file:
        handlers.append(logging.FileHandler(log_file))
    for handler in handlers:
        handler.setFormatter(formatter)

    logging.basicConfig(level=level, handlers=handlers, force=True)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def setup_logging_from_settings(settings: "Settings") -> None:
    """Configure logging from LOG_LEVEL, LOG_FORMAT and LOG_FILE."""
    setup_logging(
        level=settings.log_level,
        log_file=settings.log_file,
        json_format=settings.log_format == "json",
    )


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)


def get_context_logger(name: str, **context: Any) -> ContextLogger:
    """
    Logger that attaches fixed correlation ids, e.g. ``job_id`` for an export.

    Args:
        name: Logger name (usually __name__).
        **context: Ids to put on every record.
    """
    return ContextLogger(logging.getLogger(name), context)


def log_store_call(
    logger: logging.Logger,
    collaborator: str,
    operation: str,
    success: bool,
    duration_ms: float,
    **extra: Any,
) -> None:
    """
    Record a timed call to the conversion store or the realtime transport.

    Successful calls log at DEBUG, failures at WARNING. ``extra`` keys that
    name a correlation field (``lead_id`` etc.) are also set on the record.
    """
    details = {
        "collaborator": collaborator,
        "operation": operation,
        "success": success,
        "duration_ms": round(duration_ms, 2),
        **extra,
    }
    record_extra: Dict[str, Any] = {"extra_data": details}
    record_extra.update({k: v for k, v in extra.items() if k in CONTEXT_FIELDS})

    if success:
        logger.debug(f"{collaborator}.{operation} completed in {duration_ms:.2f}ms", extra=record_extra)
    else:
        logger.warning(f"{collaborator}.{operation} failed after {duration_ms:.2f}ms", extra=record_extra)


__all__ = [
    "setup_logging",
    "setup_logging_from_settings",
    "get_logger",
    "get_context_logger",
    "log_store_call",
    "JSONFormatter",
    "ContextLogger",
    "CONTEXT_FIELDS",
]
