"""
Attempt correlation for log records.

The orchestrator enters a LoggingContext for every attempt it works on.
Anything logged inside that block, from any module, can then be traced back
to the attempt, the detected error and the pattern being applied.
"""

import contextvars
import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

CONTEXT_FIELDS = ("attempt_id", "error_id", "pattern_id")

_current: contextvars.ContextVar[Dict[str, Any]] = contextvars.ContextVar(
    "adapt_remediate_log_context", default={}
)


def _correlation_ids(record: Optional[logging.LogRecord] = None) -> Dict[str, Any]:
    """IDs set on the record win over the ambient context."""
    ids = {key: value for key, value in _current.get().items() if key in CONTEXT_FIELDS}
    if record is not None:
        for key in CONTEXT_FIELDS:
            value = getattr(record, key, None)
            if value is not None:
                ids[key] = value
    return ids


class ContextFilter(logging.Filter):
    """Stamp the active attempt's IDs onto every record passing a handler."""

    def filter(self, record: logging.LogRecord) -> bool:
        for key, value in _correlation_ids(record).items():
            setattr(record, key, value)
        return True


class ContextualLogger(logging.LoggerAdapter):
    """
    Adapter that passes the active IDs as ``extra``.

    Useful for loggers whose records reach handlers without a ContextFilter,
    such as pytest's caplog handler.
    """

    def process(self, msg: str, kwargs: dict) -> tuple:
        extra = _correlation_ids()
        extra.update(kwargs.get("extra") or {})
        kwargs["extra"] = extra
        return msg, kwargs


class JSONFormatter(logging.Formatter):
    """One JSON object per record."""

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "thread": record.threadName,
        }
        entry.update(_correlation_ids(record))
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


def get_logger(name: str) -> ContextualLogger:
    return ContextualLogger(logging.getLogger(name), {})


def set_context(**ids: Any) -> contextvars.Token:
    """
    Merge ``ids`` into the current context.

    Returns:
        Token accepted by ``contextvars.ContextVar.reset``
    """
    merged = dict(_current.get())
    merged.update(ids)
    return _current.set(merged)


def get_context() -> Dict[str, Any]:
    return dict(_current.get())


def clear_context() -> None:
    _current.set({})


class LoggingContext:
    """
    Scope correlation IDs to a ``with`` block; nesting adds fields and the
    outer values come back on exit.

    Example:
        >>> with LoggingContext(attempt_id="E1#1", error_id="E1"):
        ...     with LoggingContext(pattern_id="sec-005"):
        ...         logger.info("Applying fix")
    """

    def __init__(self, **ids: Any):
        self.ids = ids
        self._token: Optional[contextvars.Token] = None

    def __enter__(self) -> "LoggingContext":
        self._token = set_context(**self.ids)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> bool:
        if self._token is not None:
            _current.reset(self._token)
            self._token = None
        return False
