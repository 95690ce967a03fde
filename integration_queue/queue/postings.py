"""
Outbound postings to the bookkeeping system.

A posting is an ``outbound_posting`` job keyed by the caller's posting id.
Besides the job lifecycle it remembers the fingerprint of the body it was
submitted with and, once booked, the id of the artifact the downstream
system created. Resubmitting a booked posting with the same body returns the
stored artifact; resubmitting it with a different body is a conflict.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from integration_queue.clock import utcnow
from integration_queue.config import Settings, get_settings
from integration_queue.constants import DUE_STATUSES, JobStatus, JobType, PostingState
from integration_queue.db.models import Job
from integration_queue.db.repository import JobRepository
from integration_queue.errors import PostingConflictError
from integration_queue.queue.enqueue import EnqueueService
from integration_queue.queue.idempotency import fingerprint

logger = logging.getLogger(__name__)


@dataclass
class PostingRecord:
    """An outbound posting as seen by the caller."""

    posting_id: str
    job_id: str
    tenant_id: str
    status: JobStatus
    request_hash: str | None
    external_ref: str | None
    attempts: int
    max_attempts: int
    last_error: str | None
    next_retry_at: datetime | None
    created_at: datetime
    updated_at: datetime
    state: PostingState | None = None

    @classmethod
    def from_job(cls, job: Job, state: PostingState | None = None) -> "PostingRecord":
        return cls(
            posting_id=job.idempotency_key,
            job_id=job.id,
            tenant_id=job.tenant_id,
            status=JobStatus(job.status),
            request_hash=job.request_hash,
            external_ref=job.external_ref,
            attempts=job.attempts,
            max_attempts=job.max_attempts,
            last_error=job.last_error,
            next_retry_at=job.next_eligible_at if job.status == JobStatus.ERROR else None,
            created_at=job.created_at,
            updated_at=job.updated_at,
            state=state,
        )


def posting_payload(posting_id: str, document: dict[str, Any]) -> dict[str, Any]:
    return {"posting_id": posting_id, "document": document}


class PostingService:
    """Submits and looks up outbound postings."""

    def __init__(self, session: AsyncSession, settings: Settings | None = None):
        self._repo = JobRepository(session)
        self._enqueue = EnqueueService(session, settings or get_settings())

    async def submit_posting(
        self,
        tenant_id: str,
        posting_id: str,
        document: dict[str, Any],
        *,
        max_attempts: int | None = None,
        now: datetime | None = None,
    ) -> PostingRecord:
        """
        Submit a posting, or report what happened to an earlier submission.

        A waiting posting takes the new body if it changed. A booked posting
        keeps its body and artifact.

        Args:
            tenant_id: The tenant identifier.
            posting_id: Caller's id for the posting; the idempotency key.
            document: Voucher or invoice body to book.
            max_attempts: Retry budget for a new posting.
            now: Reference time.

        Returns:
            PostingRecord with ``state`` set.

        Raises:
            PostingConflictError: The posting was booked with a different body.
        """
        now = now or utcnow()
        payload = posting_payload(posting_id, document)
        request_hash = fingerprint(document)

        result = await self._enqueue.enqueue(
            tenant_id,
            JobType.OUTBOUND_POSTING,
            payload,
            idempotency_key=posting_id,
            max_attempts=max_attempts,
            request_hash=request_hash,
            now=now,
        )
        if not result.deduped:
            return PostingRecord.from_job(result.job, PostingState.QUEUED)

        job = result.job
        if job.status in DUE_STATUSES and job.request_hash != request_hash:
            updated = await self._repo.replace_payload(
                tenant_id, job.id, payload, request_hash, now=now
            )
            if updated is not None:
                logger.info(
                    "Replaced body of waiting posting",
                    extra={"job_id": job.id, "tenant_id": tenant_id},
                )
                job = updated
            else:
                # A worker took it in the meantime
                job = await self._repo.get_job(tenant_id, job.id)

        return PostingRecord.from_job(job, self._state_for(job, request_hash, now))

    def _state_for(self, job: Job, request_hash: str, now: datetime) -> PostingState:
        if job.status == JobStatus.COMPLETED:
            if job.request_hash == request_hash:
                return PostingState.ALREADY_COMPLETED
            logger.warning(
                "Posting resubmitted with a different body after completion",
                extra={"job_id": job.id, "tenant_id": job.tenant_id},
            )
            raise PostingConflictError(job.id, job.external_ref)
        if job.status == JobStatus.DEAD_LETTER:
            return PostingState.DEAD_LETTER
        if job.status == JobStatus.CLAIMED:
            return PostingState.IN_FLIGHT
        if job.status == JobStatus.ERROR and job.next_eligible_at > now:
            return PostingState.WAIT_RETRY
        return PostingState.PENDING

    async def get_posting(self, tenant_id: str, posting_id: str) -> PostingRecord | None:
        job = await self._repo.get_job_by_idempotency_key(
            tenant_id, JobType.OUTBOUND_POSTING, posting_id
        )
        if job is None:
            return None
        return PostingRecord.from_job(job)

    async def list_postings(
        self,
        tenant_id: str,
        status: JobStatus | None = None,
        limit: int = 200,
        offset: int = 0,
    ) -> tuple[list[PostingRecord], int]:
        """List a tenant's postings, newest first."""
        jobs, total = await self._repo.list_jobs(
            tenant_id,
            status=status,
            job_type=JobType.OUTBOUND_POSTING,
            limit=limit,
            offset=offset,
        )
        return [PostingRecord.from_job(job) for job in jobs], total
