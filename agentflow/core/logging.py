"""Centralized logging configuration.

Node runs bind ``node_id`` / ``execution_id`` with ``log_context()``; a
handler filter copies them onto every record emitted inside the block, so
deeper layers (dispatcher, retry, tool client) never pass them explicitly.
"""

import contextvars
import json
import logging
import sys
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Iterator

from agentflow.core.config import settings

# Fields lifted from ``extra={...}`` or the bound context into JSON logs
CONTEXT_FIELDS = ("provider", "node_id", "execution_id", "approval_id")

_log_context: contextvars.ContextVar[dict] = contextvars.ContextVar("agentflow_log_context", default={})


@contextmanager
def log_context(**fields) -> Iterator[dict]:
    """Bind context fields to all log records emitted inside the block.

    Nested blocks inherit the outer fields; ``None`` values are dropped.
    """
    merged = {**_log_context.get(), **{k: v for k, v in fields.items() if v is not None}}
    token = _log_context.set(merged)
    try:
        yield merged
    finally:
        _log_context.reset(token)


def current_log_context() -> dict:
    return dict(_log_context.get())


class ContextFilter(logging.Filter):
    """Copies bound context fields onto records. Explicit ``extra=`` wins."""

    def filter(self, record: logging.LogRecord) -> bool:
        for name, value in _log_context.get().items():
            if not hasattr(record, name):
                setattr(record, name, value)
        return True


class JSONFormatter(logging.Formatter):
    """Structured JSON log formatter for production."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info and record.exc_info[1]:
            log_data["exception"] = self.formatException(record.exc_info)
        for name in CONTEXT_FIELDS:
            value = getattr(record, name, None)
            if value is not None:
                log_data[name] = value
        return json.dumps(log_data, ensure_ascii=False, default=str)


class ContextTextFormatter(logging.Formatter):
    """Pipe-separated format with bound context appended as ``key=value``."""

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        context = " ".join(
            f"{name}={getattr(record, name)}" for name in CONTEXT_FIELDS if getattr(record, name, None) is not None
        )
        return f"{line} | {context}" if context else line


def setup_logging() -> None:
    """Configure logging for the entire process."""
    level = getattr(logging, settings.log_level.upper(), logging.INFO)

    root = logging.getLogger()
    root.setLevel(level)

    for handler in root.handlers[:]:
        root.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(level)
    handler.addFilter(ContextFilter())

    if settings.log_json:
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(
            ContextTextFormatter(
                "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
                datefmt="%Y-%m-%d %H:%M:%S",
            )
        )

    root.addHandler(handler)

    # Transport and ORM loggers stay at WARNING
    for noisy in ("httpx", "httpcore", "sqlalchemy.engine"):
        logging.getLogger(noisy).setLevel(logging.WARNING)
