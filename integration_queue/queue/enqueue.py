"""
Enqueue service.

Accepts a typed work request, derives its idempotency key and writes a new
job unless one with the same (tenant, type, key) already exists.
"""

import logging
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from integration_queue.clock import as_naive_utc, utcnow
from integration_queue.config import Settings, get_settings
from integration_queue.constants import (
    MAX_MAX_ATTEMPTS,
    MIN_MAX_ATTEMPTS,
    SPAN_ENQUEUE_JOB,
    JobType,
)
from integration_queue.db.repository import JobRepository
from integration_queue.observability.metrics import get_metrics
from integration_queue.observability.tracing import annotate, traced
from integration_queue.queue.idempotency import derive_idempotency_key
from integration_queue.queue.retry import default_max_attempts
from integration_queue.types.job import EnqueueResult

logger = logging.getLogger(__name__)


def clamp_max_attempts(value: int) -> int:
    return max(MIN_MAX_ATTEMPTS, min(MAX_MAX_ATTEMPTS, value))


class EnqueueService:
    """
    Writes jobs into the store exactly once per idempotency key.

    Enqueueing never invokes a processor; the worker loop picks the job up
    on its next pass.
    """

    def __init__(self, session: AsyncSession, settings: Settings | None = None):
        self._repo = JobRepository(session)
        self._settings = settings or get_settings()
        self._metrics = get_metrics()

    def retain_until(self, job_type: JobType, now: datetime) -> datetime:
        """Retention horizon for a new job of this type."""
        if job_type == JobType.OUTBOUND_POSTING:
            days = self._settings.posting_retention_days
        else:
            days = self._settings.job_retention_days
        return now + timedelta(days=days)

    async def enqueue(
        self,
        tenant_id: str,
        job_type: JobType,
        payload: dict[str, Any],
        idempotency_key: str | None = None,
        *,
        job_id: str | None = None,
        max_attempts: int | None = None,
        run_at: datetime | None = None,
        request_hash: str | None = None,
        now: datetime | None = None,
    ) -> EnqueueResult:
        """
        Enqueue a job, collapsing repeated submissions onto one job.

        Args:
            tenant_id: The tenant identifier.
            job_type: Kind of work; selects the processor.
            payload: Data the processor needs.
            idempotency_key: Caller-stable key. Derived from the payload when absent.
            job_id: Optional caller-chosen job id.
            max_attempts: Retry budget, clamped to the allowed range.
                Defaults to the budget configured for the job type.
            run_at: Earliest time of the first attempt.
            request_hash: Fingerprint of the request body (postings).
            now: Reference time.

        Returns:
            EnqueueResult with the stored job and whether it already existed.
        """
        now = now or utcnow()
        key = derive_idempotency_key(idempotency_key, payload)

        if max_attempts is None:
            max_attempts = default_max_attempts(job_type, self._settings)
        max_attempts = clamp_max_attempts(max_attempts)

        next_eligible_at = as_naive_utc(run_at) if run_at is not None else now

        with traced(SPAN_ENQUEUE_JOB, tenant_id=tenant_id, job_type=job_type) as span:
            job, created = await self._repo.create_job(
                tenant_id=tenant_id,
                job_type=job_type,
                idempotency_key=key,
                payload=payload,
                max_attempts=max_attempts,
                job_id=job_id,
                next_eligible_at=next_eligible_at,
                request_hash=request_hash,
                retain_until=self.retain_until(job_type, now),
                now=now,
            )

            annotate(span, job_id=job.id, deduped=not created)

        self._metrics.record_enqueued(tenant_id, job_type.value, deduped=not created)
        return EnqueueResult(job=job, deduped=not created)
