"""Structured logging configuration for notiflow.

Provides JSON and text formatters, a job-context filter that injects
the delivery currently being processed into every log record, and a
one-call ``configure_logging`` function driven by config settings.
"""

from __future__ import annotations

import json
import logging
import sys
import threading
from contextlib import contextmanager
from datetime import UTC, datetime
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Generator

    from notiflow.config.settings import LoggingSettings

# Context attributes set by JobContextFilter, rendered explicitly.
_CONTEXT_ATTRS = ("notification_id", "job_type", "attempt")

# Attributes that are part of the standard LogRecord; everything
# else is considered "extra" and gets included in structured output.
_STANDARD_ATTRS = frozenset(
    {
        "args",
        "created",
        "exc_info",
        "exc_text",
        "filename",
        "funcName",
        "levelname",
        "levelno",
        "lineno",
        "message",
        "module",
        "msecs",
        "msg",
        "name",
        "pathname",
        "process",
        "processName",
        "relativeCreated",
        "stack_info",
        "taskName",
        "thread",
        "threadName",
        *_CONTEXT_ATTRS,
    }
)

_job_context = threading.local()


@contextmanager
def job_context(
    notification_id: str | None,
    job_type: str | None = None,
    attempt: int | None = None,
) -> Generator[None, None, None]:
    """Bind delivery context to log records emitted by the current thread."""
    previous = getattr(_job_context, "values", None)
    _job_context.values = {
        "notification_id": notification_id,
        "job_type": job_type,
        "attempt": attempt,
    }
    try:
        yield
    finally:
        _job_context.values = previous


# ---------------------------------------------------------------------------
# Formatters
# ---------------------------------------------------------------------------


class StructuredFormatter(logging.Formatter):
    """JSON-lines formatter for production logging.

    Every record becomes a single JSON object on one line containing
    the standard fields plus any *extra* attributes passed by the
    caller or injected by filters.
    """

    def format(self, record: logging.LogRecord) -> str:
        record.message = record.getMessage()

        data: dict = {
            "timestamp": datetime.fromtimestamp(
                record.created,
                tz=UTC,
            ).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.message,
        }

        for attr in _CONTEXT_ATTRS:
            value = getattr(record, attr, None)
            if value not in (None, "-"):
                data[attr] = value

        # Caller-supplied extra fields
        for key, value in record.__dict__.items():
            if key not in _STANDARD_ATTRS and not key.startswith("_"):
                data.setdefault(key, value)

        if record.exc_info and record.exc_info[0] is not None:
            data["exception"] = self.formatException(record.exc_info)

        if record.stack_info:
            data["stack_info"] = self.formatStack(record.stack_info)

        return json.dumps(data, default=str)


class TextFormatter(logging.Formatter):
    """Human-readable formatter for development / console use."""

    _FMT = "%(asctime)s %(levelname)-8s [%(notification_id)s] %(name)s - %(message)s"

    def __init__(self) -> None:
        super().__init__(fmt=self._FMT, datefmt="%Y-%m-%d %H:%M:%S")


# ---------------------------------------------------------------------------
# Filter
# ---------------------------------------------------------------------------


class JobContextFilter(logging.Filter):
    """Inject the current delivery job into every log record.

    Adds ``notification_id``, ``job_type`` and ``attempt`` from the
    thread-local context bound by :func:`job_context`; falls back to
    ``"-"`` outside of job processing.  Values passed explicitly via
    ``extra=`` take precedence.
    """

    def filter(self, record: logging.LogRecord) -> bool:  # type: ignore[override]
        values = getattr(_job_context, "values", None) or {}
        for attr in _CONTEXT_ATTRS:
            if getattr(record, attr, None) is None:
                value = values.get(attr)
                setattr(record, attr, "-" if value is None else value)
        return True


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def configure_logging(settings: LoggingSettings) -> logging.Logger:
    """Configure the ``notiflow`` logger hierarchy from settings.

    Replaces any bootstrap handlers with properly formatted output.
    Returns the root ``notiflow`` logger.
    """
    level = getattr(logging, settings.level.upper(), logging.INFO)

    root = logging.getLogger("notiflow")
    root.setLevel(level)
    root.handlers.clear()
    root.propagate = False

    formatter: logging.Formatter
    formatter = StructuredFormatter() if settings.format == "json" else TextFormatter()

    console = logging.StreamHandler(sys.stderr)
    console.setFormatter(formatter)
    console.addFilter(JobContextFilter())
    root.addHandler(console)

    # pika logs every connection state change at INFO
    for lib in ("pika", "psycopg.pool"):
        logging.getLogger(lib).setLevel(logging.WARNING)

    return root
