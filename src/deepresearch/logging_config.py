"""Logging configuration with automatic session context injection.

Every log record emitted while a research session is bound carries the
session id and the elapsed time since the session started, so the output
of concurrent sessions can be told apart.

Usage:
    from deepresearch.logging_config import bind_session, configure_logging, get_logger

    configure_logging(format="human")
    logger = get_logger(__name__)

    with bind_session("deep-research-1700000000000-ab12"):
        logger.info("Generating questions")  # record includes session_id
"""

from __future__ import annotations

import json
import logging
import sys
import time
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, Optional, TextIO, Union

__all__ = [
    "ContextFilter",
    "StructuredFormatter",
    "HumanReadableFormatter",
    "bind_session",
    "configure_logging",
    "current_session_id",
    "get_logger",
]

ROOT_LOGGER = "deepresearch"

_session_id: ContextVar[str] = ContextVar("deepresearch_session_id", default="")
_session_start: ContextVar[float] = ContextVar("deepresearch_session_start", default=0.0)


@contextmanager
def bind_session(session_id: str, start_time: Optional[float] = None) -> Iterator[None]:
    """Bind a session id to the current context for log enrichment.

    Context variables are copied into tasks created inside the block, so
    every coroutine spawned for the session inherits the binding.

    Args:
        session_id: Research session identifier
        start_time: Unix timestamp of session start (default: now)
    """
    token_id = _session_id.set(session_id)
    token_start = _session_start.set(start_time or time.time())
    try:
        yield
    finally:
        _session_id.reset(token_id)
        _session_start.reset(token_start)


def current_session_id() -> str:
    """Get the session id bound to the current context, or empty string."""
    return _session_id.get()


class ContextFilter(logging.Filter):
    """Logging filter that injects session context into log records.

    Adds the following attributes to every record:
    - session_id: Bound research session, or "-"
    - elapsed_ms: Milliseconds since the session started
    """

    def filter(self, record: logging.LogRecord) -> bool:
        """Add context attributes to the log record.

        Args:
            record: Log record to enrich

        Returns:
            Always True (allows all records through)
        """
        record.session_id = _session_id.get() or "-"

        start = _session_start.get()
        if start > 0:
            record.elapsed_ms = round((time.time() - start) * 1000, 2)
        else:
            record.elapsed_ms = 0.0

        return True


class StructuredFormatter(logging.Formatter):
    """JSON-structured log formatter for machine-readable output.

    Example output:
        {"timestamp":"2024-01-15T10:30:45.123Z","level":"INFO",
         "logger":"deepresearch.research.engine","message":"Phase started",
         "session_id":"deep-research-1705314645123-a1b2","elapsed_ms":42.5}
    """

    _STANDARD_ATTRS = frozenset(
        {
            "name",
            "msg",
            "args",
            "levelname",
            "levelno",
            "pathname",
            "filename",
            "module",
            "lineno",
            "funcName",
            "created",
            "msecs",
            "relativeCreated",
            "thread",
            "threadName",
            "processName",
            "process",
            "taskName",
            "message",
            "exc_info",
            "exc_text",
            "stack_info",
            "session_id",
            "elapsed_ms",
        }
    )

    def __init__(self, *, include_extra: bool = True, include_exception: bool = True):
        """Initialize the structured formatter.

        Args:
            include_extra: Include extra record attributes
            include_exception: Include exception info in output
        """
        super().__init__()
        self.include_extra = include_extra
        self.include_exception = include_exception

    def format(self, record: logging.LogRecord) -> str:
        """Format the log record as a JSON line."""
        log_entry: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "session_id": getattr(record, "session_id", "-"),
            "elapsed_ms": getattr(record, "elapsed_ms", 0.0),
        }

        if self.include_exception and record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)

        if self.include_extra:
            extra = {}
            for key, value in record.__dict__.items():
                if key in self._STANDARD_ATTRS:
                    continue
                try:
                    json.dumps(value)
                    extra[key] = value
                except (TypeError, ValueError):
                    extra[key] = str(value)
            if extra:
                log_entry["extra"] = extra

        return json.dumps(log_entry, default=str)


class HumanReadableFormatter(logging.Formatter):
    """Human-readable formatter with a session prefix.

    Produces logs in format:
        2024-01-15 10:30:45 [LEVEL] [session_id] logger: message
    """

    def __init__(self, *, include_timestamp: bool = True):
        super().__init__()
        self.include_timestamp = include_timestamp

    def format(self, record: logging.LogRecord) -> str:
        parts = []

        if self.include_timestamp:
            parts.append(datetime.fromtimestamp(record.created).strftime("%Y-%m-%d %H:%M:%S"))

        parts.append(f"[{record.levelname}]")

        session_id = getattr(record, "session_id", "-")
        if session_id and session_id != "-":
            parts.append(f"[{session_id}]")

        logger_name = record.name
        if logger_name.startswith(ROOT_LOGGER + "."):
            logger_name = logger_name[len(ROOT_LOGGER) + 1:]
        parts.append(f"{logger_name}:")

        parts.append(record.getMessage())

        result = " ".join(parts)
        if record.exc_info:
            result += "\n" + self.formatException(record.exc_info)
        return result


def configure_logging(
    *,
    level: Union[int, str] = logging.INFO,
    format: str = "human",  # "structured" or "human"
    stream: Optional[TextIO] = None,
    add_context: bool = True,
) -> logging.Logger:
    """Configure the root deepresearch logger.

    Replaces any handlers previously installed on the deepresearch logger.

    Args:
        level: Log level (default: INFO)
        format: Output format ("structured" for JSON, "human" for readable)
        stream: Output stream (default: stderr)
        add_context: Add ContextFilter for automatic session injection

    Returns:
        Configured root logger for deepresearch
    """
    logger = logging.getLogger(ROOT_LOGGER)
    logger.setLevel(level)
    logger.handlers.clear()

    handler = logging.StreamHandler(stream or sys.stderr)
    handler.setLevel(level)

    if format == "structured":
        handler.setFormatter(StructuredFormatter())
    else:
        handler.setFormatter(HumanReadableFormatter())

    if add_context:
        handler.addFilter(ContextFilter())

    logger.addHandler(handler)
    return logger


def get_logger(name: str) -> logging.Logger:
    """Get a logger under the deepresearch namespace.

    Args:
        name: Logger name (typically __name__)

    Returns:
        Logger instance
    """
    if not name.startswith(ROOT_LOGGER):
        name = f"{ROOT_LOGGER}.{name}"
    return logging.getLogger(name)
