"""Structured logging configuration.

Provides JSON-formatted logs with context tracking (user, session, topic,
sequencer stage) for the session core and its background workers. The
root logger is configured on import from ``LOG_LEVEL``; production
environments log JSON.
"""
import logging
import json
import sys
from datetime import datetime, timezone
from typing import Any, Dict, Optional
import traceback

from codementor.core.config import settings


CONTEXT_FIELDS = (
    "user_id", "session_id", "topic", "stage", "lesson_id",
    "request_id", "duration_ms", "error_type",
)


class JSONFormatter(logging.Formatter):
    """One JSON object per record, with any context fields set via ``extra``."""

    def format(self, record: logging.LogRecord) -> str:
        log_obj: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        if record.exc_info:
            log_obj["exception"] = {
                "type": record.exc_info[0].__name__,
                "message": str(record.exc_info[1]),
                "traceback": traceback.format_exception(*record.exc_info)
            }

        for attr in CONTEXT_FIELDS:
            if hasattr(record, attr):
                log_obj[attr] = getattr(record, attr)

        return json.dumps(log_obj, default=str)


class ContextLogger(logging.LoggerAdapter):
    """Logger adapter that merges a fixed context into every record.

    Example:
        >>> logger = ContextLogger(base_logger, {"user_id": "42"})
        >>> logger.info("Session initialized")
    """

    def process(self, msg: str, kwargs: Dict[str, Any]) -> tuple:
        extra = dict(kwargs.get('extra') or {})
        extra.update(self.extra)
        kwargs['extra'] = extra
        return msg, kwargs


def setup_logging(
    level: str = "INFO",
    json_format: bool = True,
) -> logging.Logger:
    """Replace the root logger's handlers with a single stdout handler.

    Args:
        level: Log level name; unknown names fall back to INFO
        json_format: Use :class:`JSONFormatter` instead of plain text

    Returns:
        The root logger
    """
    numeric_level = getattr(logging, level.upper(), logging.INFO)
    root_logger = logging.getLogger()
    root_logger.setLevel(numeric_level)

    root_logger.handlers.clear()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(numeric_level)

    if json_format:
        formatter = JSONFormatter()
    else:
        formatter = logging.Formatter('%(asctime)s - %(name)s - %(levelname)s - %(message)s')

    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    return root_logger


def get_logger(name: str, context: Optional[Dict[str, Any]] = None) -> logging.Logger:
    """Module logger, wrapped in a :class:`ContextLogger` when ``context`` is given.

    Example:
        >>> logger = get_logger(__name__, {"user_id": "42"})
        >>> logger.info("Metadata synced", extra={"duration_ms": 48})
    """
    logger = logging.getLogger(name)

    if context:
        return ContextLogger(logger, context)

    return logger


class LogTimer:
    """Context manager that logs how long a block took.

    Failures are logged at WARNING with the exception type; successes at
    DEBUG.

    Example:
        >>> with LogTimer(logger, "conversation_sync"):
        ...     client.update_conversation(session_id, messages)
    """

    def __init__(self, logger: logging.Logger, operation: str):
        self.logger = logger
        self.operation = operation
        self.start_time: Optional[datetime] = None

    def __enter__(self):
        self.start_time = datetime.now(timezone.utc)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if self.start_time:
            duration = (datetime.now(timezone.utc) - self.start_time).total_seconds() * 1000

            if exc_type:
                self.logger.warning(
                    f"{self.operation} failed after {duration:.1f}ms",
                    extra={"operation": self.operation, "duration_ms": duration,
                           "error_type": exc_type.__name__},
                )
            else:
                self.logger.debug(
                    f"{self.operation} completed in {duration:.1f}ms",
                    extra={"operation": self.operation, "duration_ms": duration}
                )


setup_logging(
    level=settings.log_level,
    json_format=settings.environment == "production",
)
