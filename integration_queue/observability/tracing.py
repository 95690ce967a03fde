"""
OpenTelemetry tracing setup.

Queue operations open spans through :func:`traced`, which tags them with the
tenant and job they act on. With ``otel_enabled`` off no provider is
installed and every span is a no-op.
"""

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from enum import Enum
from typing import Any

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.sqlalchemy import SQLAlchemyInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter
from opentelemetry.sdk.trace.sampling import ParentBased, TraceIdRatioBased
from opentelemetry.trace import Span, Tracer

from integration_queue import __version__
from integration_queue.config import Settings, get_settings

logger = logging.getLogger(__name__)

# Global tracer instance
_tracer: Tracer | None = None


def setup_tracing(settings: Settings | None = None, enable_console_export: bool = False) -> Tracer:
    """
    Install the tracer provider and return the queue's tracer.

    Args:
        settings: Settings override.
        enable_console_export: Also print finished spans, for local debugging.

    Returns:
        Tracer: The tracer instance.
    """
    global _tracer

    settings = settings or get_settings()

    if not settings.otel_enabled:
        _tracer = trace.get_tracer(settings.otel_service_name)
        return _tracer

    provider = TracerProvider(
        resource=Resource.create(
            {
                "service.name": settings.otel_service_name,
                "service.version": __version__,
            }
        ),
        sampler=ParentBased(TraceIdRatioBased(settings.otel_sample_ratio)),
    )
    provider.add_span_processor(
        BatchSpanProcessor(
            OTLPSpanExporter(endpoint=settings.otel_exporter_otlp_endpoint, insecure=True)
        )
    )
    if enable_console_export:
        provider.add_span_processor(BatchSpanProcessor(ConsoleSpanExporter()))

    trace.set_tracer_provider(provider)
    _tracer = trace.get_tracer(settings.otel_service_name)
    logger.info(
        "Tracing enabled",
        extra={
            "endpoint": settings.otel_exporter_otlp_endpoint,
            "sample_ratio": settings.otel_sample_ratio,
        },
    )
    return _tracer


def instrument_fastapi(app: Any) -> None:
    """Trace incoming API requests."""
    if get_settings().otel_enabled:
        FastAPIInstrumentor.instrument_app(app)


def instrument_sqlalchemy(engine: Any) -> None:
    """Trace statements on the async engine's underlying sync engine."""
    if get_settings().otel_enabled:
        SQLAlchemyInstrumentor().instrument(engine=engine.sync_engine)


def get_tracer() -> Tracer:
    """Get the tracer instance, setting tracing up on first use."""
    global _tracer
    if _tracer is None:
        _tracer = setup_tracing()
    return _tracer


def annotate(span: Span, **attributes: Any) -> None:
    """Set span attributes, skipping None and unwrapping enums."""
    for key, value in attributes.items():
        if value is None:
            continue
        span.set_attribute(key, value.value if isinstance(value, Enum) else value)


@contextmanager
def traced(name: str, **attributes: Any) -> Iterator[Span]:
    """
    Run a block inside a span.

    Exceptions leaving the block are recorded on the span and re-raised.

    Example:
        with traced(SPAN_CLAIM_JOB, tenant_id=tenant_id, job_id=job_id) as span:
            job = await repo.claim_job(...)
            annotate(span, granted=job is not None)
    """
    with get_tracer().start_as_current_span(name) as span:
        annotate(span, **attributes)
        yield span
