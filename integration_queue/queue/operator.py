"""
Operator overrides.

Requeue is the only way a dead-lettered job re-enters the queue. It keeps
the attempt count, so a job that keeps failing goes back to dead_letter
after its next attempt and needs another explicit decision.
"""

import logging
from datetime import datetime
from uuid import uuid4

from sqlalchemy.ext.asyncio import AsyncSession

from integration_queue.clock import utcnow
from integration_queue.constants import Capability, JobStatus
from integration_queue.db.models import AuditEvent, Job
from integration_queue.db.repository import AuditRepository, JobRepository
from integration_queue.errors import InvalidTransitionError, JobNotFoundError
from integration_queue.types.principal import Principal, authorize

logger = logging.getLogger(__name__)

REQUEUE_ACTION = "job.requeue"


def _requeueable(job: Job, now: datetime) -> bool:
    if not job.can_transition_to(JobStatus.QUEUED):
        return False
    # A claim may still be in use by the worker holding it
    return job.status != JobStatus.CLAIMED or job.is_lease_expired(now)


class RequeueService:
    """Puts stuck or dead-lettered jobs back in the queue, with an audit trail."""

    def __init__(self, session: AsyncSession):
        self._jobs = JobRepository(session)
        self._audit = AuditRepository(session)

    async def requeue(
        self,
        tenant_id: str,
        job_id: str,
        principal: Principal,
        now: datetime | None = None,
    ) -> tuple[Job, JobStatus]:
        """
        Reset a job to queued without touching its attempt count.

        The audit event is written in the same transaction as the state
        change, so a requeue is never recorded without happening or the
        other way round.

        Args:
            tenant_id: The tenant identifier.
            job_id: The job to requeue.
            principal: Caller; needs the requeue capability on the tenant.
            now: Reference time.

        Returns:
            Tuple of (requeued job, status before the requeue).

        Raises:
            AuthorizationError: The principal may not requeue on this tenant.
            JobNotFoundError: No such job.
            InvalidTransitionError: The job is queued, completed, or claimed
                under a lease that has not lapsed.
        """
        authorize(principal, Capability.REQUEUE_JOBS, tenant_id)
        now = now or utcnow()

        current = await self._jobs.get_job(tenant_id, job_id)
        if current is None:
            raise JobNotFoundError(tenant_id, job_id)
        previous_status = JobStatus(current.status)
        if not _requeueable(current, now):
            raise InvalidTransitionError(job_id, previous_status.value, "requeue")

        job = await self._jobs.requeue_job(tenant_id, job_id, now=now)
        if job is None:
            # Changed state between the read and the write
            latest = await self._jobs.get_job(tenant_id, job_id)
            status = latest.status if latest is not None else previous_status
            raise InvalidTransitionError(job_id, JobStatus(status).value, "requeue")

        await self._audit.add_event(
            AuditEvent(
                id=f"evt_{uuid4().hex}",
                tenant_id=tenant_id,
                action=REQUEUE_ACTION,
                job_id=job_id,
                principal_kind=principal.kind,
                principal_subject=principal.subject,
                principal_role=principal.role.value if principal.role else None,
                details={
                    "previous_status": previous_status.value,
                    "attempts": job.attempts,
                    "max_attempts": job.max_attempts,
                },
                created_at=now,
            )
        )

        logger.warning(
            "Operator requeued job",
            extra={
                "job_id": job_id,
                "tenant_id": tenant_id,
                "previous_status": previous_status.value,
                "principal": principal.subject,
            },
        )
        return job, previous_status
