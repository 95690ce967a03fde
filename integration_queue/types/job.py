"""
Job-related type definitions for internal use.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from integration_queue.constants import JobStatus, JobType


class InboundEventPayload(BaseModel):
    """
    Payload of an inbound webhook event.

    The raw body has already been verified by the receiving endpoint.
    """

    source: str = Field(..., min_length=1, description="Provider that sent the event")
    event_type: str = Field(..., min_length=1)
    event_id: str | None = Field(default=None, description="Provider event id, if any")
    data: dict[str, Any] = Field(default_factory=dict)


class PostingPayload(BaseModel):
    """Payload of an outbound posting to the bookkeeping system."""

    model_config = ConfigDict(extra="allow")

    posting_id: str = Field(..., min_length=1, description="Caller's id for the posting")
    document: dict[str, Any] = Field(..., description="Voucher or invoice body to book")


# Job types whose payload shape is known to the queue
PAYLOAD_MODELS: dict[JobType, type[BaseModel]] = {
    JobType.INBOUND_EVENT: InboundEventPayload,
    JobType.OUTBOUND_POSTING: PostingPayload,
}


def validate_payload(job_type: JobType, payload: dict[str, Any]) -> None:
    """
    Check a payload against its job type's model.

    Raises:
        ValidationError: If the payload is malformed.
    """
    model = PAYLOAD_MODELS.get(job_type)
    if model is not None:
        model.model_validate(payload)


class JobResult(BaseModel):
    """
    Result of job execution.
    Returned by processors after handling a job.
    """

    success: bool
    output: dict[str, Any] | None = None
    error: str | None = None
    # Retrying cannot help: dead-letter immediately
    permanent: bool = False
    # Id of the artifact created downstream (postings)
    external_ref: str | None = None
    duration_ms: float | None = None

    @classmethod
    def ok(cls, output: dict[str, Any] | None = None, external_ref: str | None = None) -> "JobResult":
        return cls(success=True, output=output, external_ref=external_ref)

    @classmethod
    def failed(cls, error: str, permanent: bool = False) -> "JobResult":
        return cls(success=False, error=error, permanent=permanent)


@dataclass
class JobContext:
    """
    Context passed to processors during execution.
    Contains job metadata the processor needs to act idempotently downstream.
    """

    job_id: str
    tenant_id: str
    job_type: JobType
    idempotency_key: str
    attempt: int
    max_attempts: int
    payload: dict[str, Any]
    lease_owner: str
    lease_expires_at: datetime

    @classmethod
    def from_job(cls, job: Any) -> "JobContext":
        """Build a context from a freshly claimed job."""
        return cls(
            job_id=job.id,
            tenant_id=job.tenant_id,
            job_type=JobType(job.job_type),
            idempotency_key=job.idempotency_key,
            attempt=job.attempts + 1,
            max_attempts=job.max_attempts,
            payload=job.payload,
            lease_owner=job.claimed_by,
            lease_expires_at=job.claim_expires_at,
        )


@dataclass
class EnqueueResult:
    """Outcome of an enqueue call."""

    job: Any
    deduped: bool


@dataclass
class JobRunResult:
    """What happened to one job during a worker run."""

    job_id: str
    success: bool
    skipped: bool = False
    status: JobStatus | None = None
    error: str | None = None


@dataclass
class RunSummary:
    """Aggregate outcome of one worker invocation."""

    run_id: str
    tenant_id: str
    results: list[JobRunResult] = field(default_factory=list)
    duration_ms: int = 0

    @property
    def processed(self) -> int:
        return len(self.results)

    @property
    def success(self) -> int:
        return sum(1 for r in self.results if r.success)

    @property
    def skipped(self) -> int:
        return sum(1 for r in self.results if r.skipped)

    @property
    def failed(self) -> int:
        return sum(1 for r in self.results if not r.success and not r.skipped)

    @property
    def job_ids(self) -> list[str]:
        return [r.job_id for r in self.results]
