"""
Prometheus metrics collection.
"""

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    REGISTRY,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

from integration_queue.constants import (
    METRIC_API_LATENCY,
    METRIC_API_REQUESTS,
    METRIC_CLAIMS,
    METRIC_JOB_DURATION,
    METRIC_JOBS_DEDUPED,
    METRIC_JOBS_ENQUEUED,
    METRIC_JOBS_FINISHED,
    METRIC_LEASE_EXPIRED,
    METRIC_QUEUE_DEPTH,
    METRIC_WORKER_RUNS,
)

# Global metrics instance
_metrics: "MetricsCollector | None" = None


class MetricsCollector:
    """
    Prometheus metrics collector for the integration queue.

    Collects metrics for:
    - Queue depth
    - Enqueues and deduplicated submissions
    - Job outcomes and processing duration
    - Claim contention and lease expiry
    - Worker runs
    - API requests
    """

    def __init__(self, registry: CollectorRegistry | None = None):
        """
        Initialize the metrics collector.

        Args:
            registry: Optional custom registry. Uses default if not provided.
        """
        self._registry = registry or REGISTRY

        self.queue_depth = Gauge(
            METRIC_QUEUE_DEPTH,
            "Number of queued or retry-pending jobs",
            ["tenant_id"],
            registry=self._registry,
        )

        self.jobs_enqueued = Counter(
            METRIC_JOBS_ENQUEUED,
            "Total number of jobs created",
            ["tenant_id", "job_type"],
            registry=self._registry,
        )

        self.jobs_deduped = Counter(
            METRIC_JOBS_DEDUPED,
            "Total number of enqueue calls collapsed onto an existing job",
            ["tenant_id", "job_type"],
            registry=self._registry,
        )

        self.jobs_finished = Counter(
            METRIC_JOBS_FINISHED,
            "Total number of processed attempts by resulting status",
            ["tenant_id", "job_type", "status"],
            registry=self._registry,
        )

        self.job_duration = Histogram(
            METRIC_JOB_DURATION,
            "Processor execution duration in seconds",
            ["job_type", "status"],
            buckets=(0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0),
            registry=self._registry,
        )

        self.claims = Counter(
            METRIC_CLAIMS,
            "Claim attempts by outcome",
            ["tenant_id", "outcome"],
            registry=self._registry,
        )

        self.lease_expired = Counter(
            METRIC_LEASE_EXPIRED,
            "Total number of lapsed leases found by the worker",
            ["tenant_id"],
            registry=self._registry,
        )

        self.worker_runs = Counter(
            METRIC_WORKER_RUNS,
            "Total number of worker invocations",
            ["trigger"],
            registry=self._registry,
        )

        self.api_requests = Counter(
            METRIC_API_REQUESTS,
            "Total number of API requests",
            ["method", "endpoint", "status"],
            registry=self._registry,
        )

        self.api_latency = Histogram(
            METRIC_API_LATENCY,
            "API request latency in seconds",
            ["method", "endpoint"],
            buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0),
            registry=self._registry,
        )

    def record_enqueued(self, tenant_id: str, job_type: str, deduped: bool) -> None:
        """Record an enqueue call."""
        if deduped:
            self.jobs_deduped.labels(tenant_id=tenant_id, job_type=job_type).inc()
        else:
            self.jobs_enqueued.labels(tenant_id=tenant_id, job_type=job_type).inc()

    def record_job_finished(
        self,
        tenant_id: str,
        job_type: str,
        status: str,
        duration_seconds: float,
    ) -> None:
        """Record the outcome of one attempt."""
        self.jobs_finished.labels(tenant_id=tenant_id, job_type=job_type, status=status).inc()
        self.job_duration.labels(job_type=job_type, status=status).observe(duration_seconds)

    def record_claim(self, tenant_id: str, granted: bool) -> None:
        """Record a claim attempt."""
        outcome = "granted" if granted else "contended"
        self.claims.labels(tenant_id=tenant_id, outcome=outcome).inc()

    def record_lease_expired(self, tenant_id: str, count: int = 1) -> None:
        """Record lapsed leases."""
        self.lease_expired.labels(tenant_id=tenant_id).inc(count)

    def record_worker_run(self, trigger: str) -> None:
        """Record a worker invocation."""
        self.worker_runs.labels(trigger=trigger).inc()

    def update_queue_depth(self, tenant_id: str, depth: int) -> None:
        """Update queue depth for a tenant."""
        self.queue_depth.labels(tenant_id=tenant_id).set(depth)

    def record_api_request(
        self,
        method: str,
        endpoint: str,
        status: int,
        duration_seconds: float,
    ) -> None:
        """Record an API request."""
        self.api_requests.labels(
            method=method,
            endpoint=endpoint,
            status=str(status),
        ).inc()
        self.api_latency.labels(method=method, endpoint=endpoint).observe(
            duration_seconds
        )

    def get_metrics(self) -> bytes:
        """Get all metrics in Prometheus format."""
        return generate_latest(self._registry)

    def get_content_type(self) -> str:
        """Get the content type for metrics response."""
        return CONTENT_TYPE_LATEST


def setup_metrics() -> MetricsCollector:
    """
    Set up and return the metrics collector.

    Returns:
        MetricsCollector: The metrics collector instance.
    """
    global _metrics
    if _metrics is None:
        _metrics = MetricsCollector()
    return _metrics


def get_metrics() -> MetricsCollector:
    """
    Get the metrics collector instance, creating it on first use.

    Returns:
        MetricsCollector: The metrics collector instance.
    """
    if _metrics is None:
        return setup_metrics()
    return _metrics
