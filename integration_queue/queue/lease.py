"""
Claim/lease manager.

A lease is a conditional update on the job row, not a lock: concurrent claim
attempts race on the same single-row UPDATE and exactly one matches. Expiry
is checked lazily, whenever a claim attempt or the worker loop looks at the
job again.
"""

import logging
from datetime import datetime

from sqlalchemy.ext.asyncio import AsyncSession

from integration_queue.clock import utcnow
from integration_queue.config import Settings, get_settings
from integration_queue.constants import SPAN_CLAIM_JOB, JobType
from integration_queue.db.models import Job
from integration_queue.db.repository import JobRepository
from integration_queue.observability.metrics import get_metrics
from integration_queue.observability.tracing import annotate, traced
from integration_queue.queue.retry import BackoffPolicy, policy_for

logger = logging.getLogger(__name__)


class LeaseManager:
    """Grants, extends and releases time-bounded claims on jobs."""

    def __init__(self, session: AsyncSession, settings: Settings | None = None):
        self._repo = JobRepository(session)
        self._settings = settings or get_settings()
        self._metrics = get_metrics()

    def _policy(self, job_type: JobType) -> BackoffPolicy:
        return policy_for(job_type, self._settings)

    async def acquire(
        self,
        tenant_id: str,
        job_id: str,
        owner_id: str,
        lease_millis: int | None = None,
        *,
        now: datetime | None = None,
    ) -> Job | None:
        """
        Claim a job and return it.

        Returns:
            The claimed Job, or None when another owner holds a valid lease
            or the job is not in a claimable state.
        """
        lease_millis = lease_millis or self._settings.worker_lease_millis

        with traced(
            SPAN_CLAIM_JOB, tenant_id=tenant_id, job_id=job_id, owner_id=owner_id
        ) as span:
            job = await self._repo.claim_job(
                tenant_id, job_id, owner_id, lease_millis, now=now or utcnow()
            )
            annotate(span, granted=job is not None)

        self._metrics.record_claim(tenant_id, granted=job is not None)
        if job is None:
            logger.debug(
                "Claim not granted",
                extra={"job_id": job_id, "tenant_id": tenant_id, "owner_id": owner_id},
            )
        return job

    async def claim(
        self,
        tenant_id: str,
        job_id: str,
        owner_id: str,
        lease_millis: int | None = None,
        *,
        now: datetime | None = None,
    ) -> bool:
        """
        Try to take the lease on a job.

        Returns:
            True if the lease was granted; the caller must skip the job otherwise.
        """
        job = await self.acquire(tenant_id, job_id, owner_id, lease_millis, now=now)
        return job is not None

    async def release(
        self,
        tenant_id: str,
        job_id: str,
        owner_id: str,
        *,
        now: datetime | None = None,
    ) -> bool:
        """Return a held lease without consuming an attempt."""
        job = await self._repo.release_claim(tenant_id, job_id, owner_id, now=now)
        return job is not None

    async def extend(
        self,
        tenant_id: str,
        job_id: str,
        owner_id: str,
        lease_millis: int | None = None,
        *,
        now: datetime | None = None,
    ) -> bool:
        """Push out the expiry of a lease the caller still holds."""
        return await self._repo.extend_claim(
            tenant_id,
            job_id,
            owner_id,
            lease_millis or self._settings.worker_lease_millis,
            now=now,
        )

    async def expire_stale(
        self,
        tenant_id: str,
        *,
        now: datetime | None = None,
    ) -> list[Job]:
        """
        Turn every lapsed lease of a tenant into a failed attempt.

        Returns:
            Jobs moved to error or dead_letter.
        """
        expired = await self._repo.expire_stale_claims(
            tenant_id, policy_resolver=self._policy, now=now
        )
        if expired:
            self._metrics.record_lease_expired(tenant_id, len(expired))
        return expired
