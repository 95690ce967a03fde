"""
Job repository for database operations.
Implements the data access patterns the queue is built on.

Every state change is a single-row conditional write: an INSERT that does
nothing on conflict, or an UPDATE whose WHERE clause names the state the
caller expects. A write that matches zero rows means another writer got there
first, and the caller sees None instead of a corrupted job.
"""

import logging
from collections.abc import Callable, Sequence
from datetime import datetime, timedelta
from typing import Any
from uuid import uuid4

from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

from integration_queue.clock import utcnow
from integration_queue.constants import (
    DUE_STATUSES,
    LEASE_EXPIRED_ERROR,
    REQUEUEABLE_STATUSES,
    JobStatus,
    JobType,
)
from integration_queue.db.models import AuditEvent, Job, WorkerRun
from integration_queue.errors import QueueError
from integration_queue.queue.retry import BackoffPolicy, policy_for, schedule_retry

logger = logging.getLogger(__name__)


def new_job_id() -> str:
    """Generate a job id."""
    return f"job_{uuid4().hex}"


class JobRepository:
    """
    Repository for integration job persistence.

    Implements atomic operations for:
    - Job creation with idempotency (conditional insert)
    - Lease acquisition and release (conditional update)
    - Outcome recording: complete, fail with backoff, dead-letter
    - Lazy lease expiry
    - Operator requeue
    """

    def __init__(self, session: AsyncSession):
        """
        Initialize the repository with a database session.

        Args:
            session: The async database session.
        """
        self._session = session

    # ------------------------------------------------------------------ #
    # Reads                                                               #
    # ------------------------------------------------------------------ #

    async def get_job(self, tenant_id: str, job_id: str) -> Job | None:
        """
        Get a job by tenant and id, always reading the stored row.

        Args:
            tenant_id: The tenant identifier.
            job_id: The job id.

        Returns:
            The Job or None if not found.
        """
        stmt = (
            select(Job)
            .where(and_(Job.tenant_id == tenant_id, Job.id == job_id))
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_job_by_idempotency_key(
        self,
        tenant_id: str,
        job_type: JobType,
        idempotency_key: str,
    ) -> Job | None:
        """
        Get a job by its deduplication identity.

        Args:
            tenant_id: The tenant identifier.
            job_type: The job type.
            idempotency_key: The idempotency key.

        Returns:
            The Job or None if not found.
        """
        stmt = (
            select(Job)
            .where(
                and_(
                    Job.tenant_id == tenant_id,
                    Job.job_type == job_type,
                    Job.idempotency_key == idempotency_key,
                )
            )
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def list_jobs(
        self,
        tenant_id: str,
        status: JobStatus | None = None,
        job_type: JobType | None = None,
        limit: int = 20,
        offset: int = 0,
    ) -> tuple[Sequence[Job], int]:
        """
        List jobs for a tenant with optional filtering, newest first.

        Returns:
            Tuple of (jobs, total_count).
        """
        filters = [Job.tenant_id == tenant_id]
        if status is not None:
            filters.append(Job.status == status)
        if job_type is not None:
            filters.append(Job.job_type == job_type)

        count_stmt = select(func.count()).select_from(Job).where(and_(*filters))
        total = (await self._session.execute(count_stmt)).scalar() or 0

        stmt = (
            select(Job)
            .where(and_(*filters))
            .order_by(Job.created_at.desc(), Job.id)
            .limit(limit)
            .offset(offset)
        )
        result = await self._session.execute(stmt)
        return result.scalars().all(), total

    async def list_due_jobs(
        self,
        tenant_id: str,
        limit: int,
        now: datetime | None = None,
    ) -> Sequence[Job]:
        """
        List jobs eligible for an attempt, oldest-due first.

        Args:
            tenant_id: The tenant identifier.
            limit: Maximum number of jobs to return.
            now: Reference time.

        Returns:
            Queued or retry-pending jobs whose next_eligible_at has passed.
        """
        now = now or utcnow()
        stmt = (
            select(Job)
            .where(
                and_(
                    Job.tenant_id == tenant_id,
                    Job.status.in_(DUE_STATUSES),
                    Job.next_eligible_at <= now,
                )
            )
            .order_by(Job.next_eligible_at.asc(), Job.created_at.asc(), Job.id)
            .limit(limit)
        )
        result = await self._session.execute(stmt)
        return result.scalars().all()

    async def get_queue_depth(self, tenant_id: str) -> int:
        """Number of queued or retry-pending jobs for a tenant."""
        stmt = (
            select(func.count())
            .select_from(Job)
            .where(and_(Job.tenant_id == tenant_id, Job.status.in_(DUE_STATUSES)))
        )
        result = await self._session.execute(stmt)
        return result.scalar() or 0

    async def get_job_stats(self, tenant_id: str) -> dict[str, int]:
        """
        Get job counts by status for a tenant.

        Returns:
            Dictionary of status -> count.
        """
        stmt = (
            select(Job.status, func.count())
            .where(Job.tenant_id == tenant_id)
            .group_by(Job.status)
        )
        result = await self._session.execute(stmt)
        return {JobStatus(status).value: count for status, count in result.all()}

    # ------------------------------------------------------------------ #
    # Conditional writes                                                  #
    # ------------------------------------------------------------------ #

    def _insert(self):
        dialect = self._session.bind.dialect.name
        if dialect == "postgresql":
            return pg_insert(Job.__table__)
        if dialect == "sqlite":
            return sqlite_insert(Job.__table__)
        raise QueueError(f"Unsupported database dialect for conditional insert: {dialect}")

    async def _conditional_update(
        self,
        tenant_id: str,
        job_id: str,
        conditions: list[Any],
        values: dict[str, Any],
    ) -> Job | None:
        """
        UPDATE one job only if it still matches ``conditions``.

        Returns:
            The updated Job, or None when the condition did not hold.
        """
        stmt = (
            update(Job)
            .where(and_(Job.tenant_id == tenant_id, Job.id == job_id, *conditions))
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        if result.rowcount != 1:
            return None
        return await self.get_job(tenant_id, job_id)

    async def create_job(
        self,
        tenant_id: str,
        job_type: JobType,
        idempotency_key: str,
        payload: dict[str, Any],
        max_attempts: int,
        job_id: str | None = None,
        next_eligible_at: datetime | None = None,
        request_hash: str | None = None,
        retain_until: datetime | None = None,
        now: datetime | None = None,
    ) -> tuple[Job, bool]:
        """
        Create a new job unless one with the same idempotency identity exists.

        Uses INSERT ... ON CONFLICT DO NOTHING so concurrent submissions race
        on the unique constraint and exactly one row is written.

        Args:
            tenant_id: The tenant identifier.
            job_type: The job type.
            idempotency_key: Deduplication key, unique per (tenant, type).
            payload: The job payload.
            max_attempts: Retry budget.
            job_id: Optional caller-chosen id.
            next_eligible_at: Earliest first attempt. Defaults to now.
            request_hash: Fingerprint of the payload (postings).
            retain_until: Retention horizon.
            now: Reference time.

        Returns:
            Tuple of (Job, created) where created is True if a new job was written.

        Raises:
            QueueError: If job_id is already used by a job with another key.
        """
        now = now or utcnow()
        job_id = job_id or new_job_id()

        stmt = (
            self._insert()
            .values(
                tenant_id=tenant_id,
                id=job_id,
                job_type=job_type,
                idempotency_key=idempotency_key,
                payload=payload,
                status=JobStatus.QUEUED,
                attempts=0,
                max_attempts=max_attempts,
                next_eligible_at=next_eligible_at or now,
                request_hash=request_hash,
                retain_until=retain_until,
                created_at=now,
                updated_at=now,
            )
            .on_conflict_do_nothing()
        )
        result = await self._session.execute(stmt)
        created = result.rowcount == 1

        job = await self.get_job_by_idempotency_key(tenant_id, job_type, idempotency_key)
        if job is None:
            # The conflict was on the primary key, not on the idempotency key
            raise QueueError(f"Job id {job_id} is already in use for tenant {tenant_id}")

        if created:
            logger.info(
                "Created new job",
                extra={"job_id": job.id, "tenant_id": tenant_id, "job_type": job_type.value},
            )
        else:
            logger.info(
                "Returned existing job (idempotent)",
                extra={"job_id": job.id, "tenant_id": tenant_id, "job_type": job_type.value},
            )
        return job, created

    async def claim_job(
        self,
        tenant_id: str,
        job_id: str,
        owner_id: str,
        lease_millis: int,
        now: datetime | None = None,
    ) -> Job | None:
        """
        Acquire the lease on a job.

        Succeeds when the job is queued or retry-pending and due, or when it
        is claimed by someone whose lease has lapsed. In the lapsed case the
        abandoned attempt is counted, and the takeover is refused if that
        leaves no retry budget (the expiry sweep dead-letters it instead).

        Args:
            tenant_id: The tenant identifier.
            job_id: The job id.
            owner_id: Identity of the claiming worker.
            lease_millis: Lease length in milliseconds.
            now: Reference time.

        Returns:
            The claimed Job, or None if the job was not claimable.
        """
        now = now or utcnow()
        lease_values = {
            "status": JobStatus.CLAIMED,
            "claimed_by": owner_id,
            "claim_expires_at": now + timedelta(milliseconds=lease_millis),
            "updated_at": now,
        }

        job = await self._conditional_update(
            tenant_id,
            job_id,
            [Job.status.in_(DUE_STATUSES), Job.next_eligible_at <= now],
            lease_values,
        )
        if job is not None:
            return job

        job = await self._conditional_update(
            tenant_id,
            job_id,
            [
                Job.status == JobStatus.CLAIMED,
                Job.claim_expires_at <= now,
                Job.attempts + 1 < Job.max_attempts,
            ],
            {
                **lease_values,
                "attempts": Job.attempts + 1,
                "last_error": LEASE_EXPIRED_ERROR,
            },
        )
        if job is not None:
            logger.warning(
                "Took over job with lapsed lease",
                extra={"job_id": job_id, "tenant_id": tenant_id, "owner_id": owner_id},
            )
        return job

    async def release_claim(
        self,
        tenant_id: str,
        job_id: str,
        owner_id: str,
        now: datetime | None = None,
    ) -> Job | None:
        """
        Give a held lease back without consuming an attempt.

        Returns:
            The queued Job, or None if the caller does not hold the lease.
        """
        now = now or utcnow()
        return await self._conditional_update(
            tenant_id,
            job_id,
            [Job.status == JobStatus.CLAIMED, Job.claimed_by == owner_id],
            {
                "status": JobStatus.QUEUED,
                "claimed_by": None,
                "claim_expires_at": None,
                "updated_at": now,
            },
        )

    async def extend_claim(
        self,
        tenant_id: str,
        job_id: str,
        owner_id: str,
        lease_millis: int,
        now: datetime | None = None,
    ) -> bool:
        """
        Extend a held, unexpired lease (heartbeat for long processors).

        Returns:
            True if the lease was extended.
        """
        now = now or utcnow()
        job = await self._conditional_update(
            tenant_id,
            job_id,
            [
                Job.status == JobStatus.CLAIMED,
                Job.claimed_by == owner_id,
                Job.claim_expires_at > now,
            ],
            {
                "claim_expires_at": now + timedelta(milliseconds=lease_millis),
                "updated_at": now,
            },
        )
        return job is not None

    async def complete_job(
        self,
        tenant_id: str,
        job_id: str,
        owner_id: str,
        result: dict[str, Any] | None = None,
        external_ref: str | None = None,
        now: datetime | None = None,
    ) -> Job | None:
        """
        Mark a claimed job as completed.

        Args:
            tenant_id: The tenant identifier.
            job_id: The job id.
            owner_id: Must match the lease holder.
            result: Processor output.
            external_ref: Downstream artifact id (postings).
            now: Reference time.

        Returns:
            Updated Job or None if the caller does not hold the claim.
        """
        now = now or utcnow()
        values: dict[str, Any] = {
            "status": JobStatus.COMPLETED,
            "attempts": Job.attempts + 1,
            "result": result,
            "last_error": None,
            "claimed_by": None,
            "claim_expires_at": None,
            "completed_at": now,
            "updated_at": now,
        }
        if external_ref is not None:
            values["external_ref"] = external_ref

        job = await self._conditional_update(
            tenant_id,
            job_id,
            [Job.status == JobStatus.CLAIMED, Job.claimed_by == owner_id],
            values,
        )
        if job is None:
            logger.warning(
                "Complete rejected: caller does not hold the claim",
                extra={"job_id": job_id, "tenant_id": tenant_id, "owner_id": owner_id},
            )
        else:
            logger.info("Job completed", extra={"job_id": job_id, "tenant_id": tenant_id})
        return job

    async def fail_job(
        self,
        tenant_id: str,
        job_id: str,
        owner_id: str,
        error: str,
        policy: BackoffPolicy,
        permanent: bool = False,
        now: datetime | None = None,
    ) -> Job | None:
        """
        Record a failed attempt: reschedule with backoff or dead-letter.

        Permanent failures go straight to dead_letter. The update is guarded
        by the attempt count read beforehand, so two racing writers cannot
        both apply.

        Args:
            tenant_id: The tenant identifier.
            job_id: The job id.
            owner_id: Must match the lease holder.
            error: Error message.
            policy: Backoff policy for the job type.
            permanent: Skip retries.
            now: Reference time.

        Returns:
            Updated Job or None if the caller does not hold the claim.
        """
        now = now or utcnow()
        job = await self.get_job(tenant_id, job_id)
        if job is None or job.status != JobStatus.CLAIMED or job.claimed_by != owner_id:
            logger.warning(
                "Fail rejected: caller does not hold the claim",
                extra={"job_id": job_id, "tenant_id": tenant_id, "owner_id": owner_id},
            )
            return None

        attempts = job.attempts + 1
        decision = schedule_retry(attempts, job.max_attempts, policy, now)
        values: dict[str, Any] = {
            "attempts": attempts,
            "last_error": error,
            "claimed_by": None,
            "claim_expires_at": None,
            "updated_at": now,
        }

        if permanent or decision.dead_letter:
            values.update(status=JobStatus.DEAD_LETTER, completed_at=now)
            logger.warning(
                f"Job moved to dead_letter after {attempts} attempts",
                extra={"job_id": job_id, "tenant_id": tenant_id, "error": error,
                       "permanent": permanent},
            )
        else:
            values.update(status=JobStatus.ERROR, next_eligible_at=decision.next_eligible_at)
            logger.info(
                "Job scheduled for retry",
                extra={"job_id": job_id, "tenant_id": tenant_id, "attempts": attempts,
                       "delay_seconds": decision.delay.total_seconds()},
            )

        return await self._conditional_update(
            tenant_id,
            job_id,
            [
                Job.status == JobStatus.CLAIMED,
                Job.claimed_by == owner_id,
                Job.attempts == job.attempts,
            ],
            values,
        )

    async def expire_stale_claims(
        self,
        tenant_id: str,
        policy_resolver: Callable[[JobType], BackoffPolicy] = policy_for,
        now: datetime | None = None,
    ) -> list[Job]:
        """
        Turn lapsed leases into failed attempts.

        Lease expiry is never enforced by a timer; this runs whenever the
        worker loop inspects a tenant. Each job is updated only if it still
        carries the lease that was observed, so a concurrent takeover wins.

        Returns:
            Jobs moved to error or dead_letter.
        """
        now = now or utcnow()
        stmt = select(Job).where(
            and_(
                Job.tenant_id == tenant_id,
                Job.status == JobStatus.CLAIMED,
                Job.claim_expires_at <= now,
            )
        )
        stale = (await self._session.execute(stmt)).scalars().all()

        expired: list[Job] = []
        for job in stale:
            attempts = job.attempts + 1
            decision = schedule_retry(
                attempts, job.max_attempts, policy_resolver(job.job_type), now
            )
            values: dict[str, Any] = {
                "attempts": attempts,
                "last_error": LEASE_EXPIRED_ERROR,
                "claimed_by": None,
                "claim_expires_at": None,
                "updated_at": now,
            }
            if decision.dead_letter:
                values.update(status=JobStatus.DEAD_LETTER, completed_at=now)
            else:
                values.update(status=JobStatus.ERROR, next_eligible_at=decision.next_eligible_at)

            updated = await self._conditional_update(
                tenant_id,
                job.id,
                [
                    Job.status == JobStatus.CLAIMED,
                    Job.claimed_by == job.claimed_by,
                    Job.claim_expires_at == job.claim_expires_at,
                ],
                values,
            )
            if updated is not None:
                expired.append(updated)

        if expired:
            logger.info(
                f"Expired {len(expired)} lapsed leases",
                extra={"tenant_id": tenant_id},
            )
        return expired

    async def requeue_job(
        self,
        tenant_id: str,
        job_id: str,
        now: datetime | None = None,
    ) -> Job | None:
        """
        Operator override: put a dead-lettered, stuck or retry-pending job
        back in the queue. Attempts are preserved.

        A claimed job counts as stuck only once its lease has lapsed; a live
        lease is never revoked.

        Returns:
            Updated Job or None if the job is not in a requeueable state.
        """
        now = now or utcnow()
        job = await self._conditional_update(
            tenant_id,
            job_id,
            [
                or_(
                    Job.status.in_(REQUEUEABLE_STATUSES),
                    and_(Job.status == JobStatus.CLAIMED, Job.claim_expires_at <= now),
                )
            ],
            {
                "status": JobStatus.QUEUED,
                "next_eligible_at": now,
                "claimed_by": None,
                "claim_expires_at": None,
                "completed_at": None,
                "last_error": None,
                "updated_at": now,
            },
        )
        if job:
            logger.info("Job requeued", extra={"job_id": job_id, "tenant_id": tenant_id})
        return job

    async def replace_payload(
        self,
        tenant_id: str,
        job_id: str,
        payload: dict[str, Any],
        request_hash: str | None,
        now: datetime | None = None,
    ) -> Job | None:
        """
        Swap the body of a job nobody is working on.

        Only queued or retry-pending jobs accept a new payload; once a job is
        claimed or finished its body is fixed.

        Returns:
            Updated Job or None if the job is no longer waiting.
        """
        now = now or utcnow()
        return await self._conditional_update(
            tenant_id,
            job_id,
            [Job.status.in_(DUE_STATUSES)],
            {"payload": payload, "request_hash": request_hash, "updated_at": now},
        )


class AuditRepository:
    """Append-only storage for worker runs and operator actions."""

    def __init__(self, session: AsyncSession):
        self._session = session

    async def add_worker_run(self, run: WorkerRun) -> WorkerRun:
        self._session.add(run)
        await self._session.flush()
        return run

    async def add_event(self, event: AuditEvent) -> AuditEvent:
        self._session.add(event)
        await self._session.flush()
        return event

    async def list_worker_runs(self, tenant_id: str, limit: int = 20) -> Sequence[WorkerRun]:
        stmt = (
            select(WorkerRun)
            .where(WorkerRun.tenant_id == tenant_id)
            .order_by(WorkerRun.started_at.desc())
            .limit(limit)
        )
        result = await self._session.execute(stmt)
        return result.scalars().all()

    async def list_events(
        self, tenant_id: str, job_id: str | None = None, limit: int = 50
    ) -> Sequence[AuditEvent]:
        stmt = select(AuditEvent).where(AuditEvent.tenant_id == tenant_id)
        if job_id is not None:
            stmt = stmt.where(AuditEvent.job_id == job_id)
        stmt = stmt.order_by(AuditEvent.created_at.desc()).limit(limit)
        result = await self._session.execute(stmt)
        return result.scalars().all()
