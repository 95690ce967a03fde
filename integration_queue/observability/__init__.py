"""
Observability module.
Contains logging, metrics, and tracing setup.
"""

from integration_queue.observability.logging import (
    bind_context,
    clear_context,
    job_context,
    setup_logging,
)
from integration_queue.observability.metrics import (
    MetricsCollector,
    get_metrics,
    setup_metrics,
)
from integration_queue.observability.tracing import annotate, get_tracer, setup_tracing, traced

__all__ = [
    "setup_logging",
    "bind_context",
    "clear_context",
    "job_context",
    "setup_metrics",
    "get_metrics",
    "MetricsCollector",
    "setup_tracing",
    "get_tracer",
    "traced",
    "annotate",
]
