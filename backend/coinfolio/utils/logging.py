# backend/coinfolio/utils/logging.py
"""
Logging configuration for Coinfolio.

- Level and format from LOG_LEVEL / LOG_FORMAT
- Every record carries the request's correlation id and user id
- JSON output for log aggregation, pipe-separated text otherwise
- httpx/httpcore chatter reduced to WARNING

Usage:
    from coinfolio.utils.logging import setup_logging

    setup_logging()                    # from settings
    setup_logging(level="DEBUG")       # scripts, local debugging

Log Levels:
    DEBUG   - Per-page and per-flush detail, reconciled aggregates
    INFO    - Pass summaries, recorded trades, deleted holdings
    WARNING - Retried pages, kept referenced coins, empty upstream
    ERROR   - Failed batches and flushes, persistence failures
"""

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any

from coinfolio.config import settings
from coinfolio.utils.context import get_correlation_id, get_user_id

TEXT_FORMAT = "%(asctime)s | %(levelname)-8s | %(correlation_id)s | %(user_id)s | %(name)s | %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

NO_CORRELATION_ID = "no-correlation-id"
NO_USER_ID = "-"

NOISY_LOGGERS = [
    "httpx",
    "httpcore",
    "asyncio",
    "sqlalchemy.engine",
]

# LogRecord attributes that are not "extra" fields
_RESERVED_ATTRS = frozenset({
    "name", "msg", "args", "created", "filename", "funcName",
    "levelname", "levelno", "lineno", "module", "msecs",
    "pathname", "process", "processName", "relativeCreated",
    "stack_info", "exc_info", "exc_text", "thread", "threadName",
    "correlation_id", "user_id", "message", "taskName",
})

_LEVELS = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARNING": logging.WARNING,
    "WARN": logging.WARNING,
    "ERROR": logging.ERROR,
    "CRITICAL": logging.CRITICAL,
}


class RequestContextFilter(logging.Filter):
    """Adds `correlation_id` and `user_id` to every record."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.correlation_id = get_correlation_id() or NO_CORRELATION_ID
        record.user_id = get_user_id() or NO_USER_ID
        return True


class JsonFormatter(logging.Formatter):
    """
    One JSON object per line.

    {"timestamp": ..., "level": "INFO", "logger": "coinfolio.services...",
     "correlation_id": ..., "user_id": ..., "message": ..., "extra": {...}}
    """

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "correlation_id": getattr(record, "correlation_id", NO_CORRELATION_ID),
            "user_id": getattr(record, "user_id", NO_USER_ID),
            "message": record.getMessage(),
        }

        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)

        extra = {}
        for key, value in record.__dict__.items():
            if key in _RESERVED_ATTRS:
                continue
            try:
                json.dumps(value)
                extra[key] = value
            except (TypeError, ValueError):
                extra[key] = str(value)
        if extra:
            entry["extra"] = extra

        return json.dumps(entry)


def parse_log_level(level: str) -> int:
    """
    Map a level name to its logging constant.

    Raises:
        ValueError: Unknown level name
    """
    key = level.upper().strip()
    if key not in _LEVELS:
        raise ValueError(
            f"Invalid log level: '{level}'. Valid levels are: {', '.join(_LEVELS)}"
        )
    return _LEVELS[key]


def setup_logging(
        level: str | None = None,
        log_format: str | None = None,
        suppress_noisy_loggers: bool = True,
) -> None:
    """
    Configure the root logger once at startup.

    Args:
        level: Overrides settings.log_level
        log_format: "text" or "json", overrides settings.log_format
        suppress_noisy_loggers: Raise third-party loggers to WARNING
    """
    level_name = level or settings.log_level
    format_type = (log_format or settings.log_format).lower()

    if format_type == "json":
        formatter: logging.Formatter = JsonFormatter()
    else:
        formatter = logging.Formatter(fmt=TEXT_FORMAT, datefmt=DATE_FORMAT)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)
    handler.addFilter(RequestContextFilter())

    root = logging.getLogger()
    root.setLevel(parse_log_level(level_name))
    root.handlers.clear()
    root.addHandler(handler)

    if suppress_noisy_loggers:
        for name in NOISY_LOGGERS:
            logging.getLogger(name).setLevel(logging.WARNING)

    logging.getLogger(__name__).info(
        f"Logging configured: level={level_name}, format={format_type}",
        extra={"config": {"level": level_name, "format": format_type}},
    )
