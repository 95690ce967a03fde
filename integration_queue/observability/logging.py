"""
Structured logging setup using structlog.

Modules log through the standard library (``logging.getLogger(__name__)``
with ``extra=``); structlog renders those records and merges the context a
worker run binds, such as its tenant, run id and the job in hand.

Job payloads carry customer bookkeeping data and never reach the log
output; neither do credentials.
"""

import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

import structlog
from opentelemetry import trace

from integration_queue.config import Settings, get_settings

# Keys whose values are replaced before rendering
SENSITIVE_KEYS = frozenset({"authorization", "cron_secret", "api_key", "password", "token"})

# Keys holding job bodies; only their size is logged
PAYLOAD_KEYS = frozenset({"payload", "document", "body"})

# Third-party loggers that are only interesting when something is wrong
QUIET_LOGGERS = ("uvicorn.access", "sqlalchemy.engine", "aiosqlite", "httpx", "httpcore")


def add_trace_context(logger: Any, method_name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    """Attach the current trace and span ids so log lines join their traces."""
    span = trace.get_current_span()
    if span and span.is_recording():
        ctx = span.get_span_context()
        event_dict["trace_id"] = format(ctx.trace_id, "032x")
        event_dict["span_id"] = format(ctx.span_id, "016x")
    return event_dict


def mask_sensitive(logger: Any, method_name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    """Replace the values of credential-like keys."""
    for key in event_dict.keys() & SENSITIVE_KEYS:
        event_dict[key] = "***"
    return event_dict


def summarize_payloads(logger: Any, method_name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    """Log the number of fields of a job body instead of its content."""
    for key in event_dict.keys() & PAYLOAD_KEYS:
        value = event_dict.pop(key)
        event_dict[f"{key}_fields"] = len(value) if isinstance(value, dict | list) else None
    return event_dict


def shared_processors() -> list[Any]:
    """Processors applied to both structlog and stdlib records."""
    return [
        structlog.contextvars.merge_contextvars,
        add_trace_context,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.stdlib.ExtraAdder(),
        mask_sensitive,
        summarize_payloads,
    ]


def setup_logging(settings: Settings | None = None) -> None:
    """
    Route all logging through structlog.

    Output is one JSON object per line, or colored console lines when
    ``log_format`` is ``console``.
    """
    settings = settings or get_settings()
    log_level = getattr(logging, settings.log_level.upper(), logging.INFO)
    processors = shared_processors()

    if settings.log_format == "json":
        renderer: Any = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty())

    structlog.configure(
        processors=[*processors, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            foreign_pre_chain=processors,
            processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, renderer],
        )
    )

    root_logger = logging.getLogger()
    root_logger.handlers = [handler]
    root_logger.setLevel(log_level)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def bind_context(**kwargs: Any) -> None:
    """Bind key-value pairs to every later log line of this task."""
    structlog.contextvars.bind_contextvars(**kwargs)


def clear_context() -> None:
    """Clear all bound context variables."""
    structlog.contextvars.clear_contextvars()


@contextmanager
def job_context(job_id: str, **kwargs: Any) -> Iterator[None]:
    """Tag log lines with a job id for the duration of the block."""
    with structlog.contextvars.bound_contextvars(job_id=job_id, **kwargs):
        yield
