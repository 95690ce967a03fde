"""
API request and response type definitions.
"""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from integration_queue.constants import (
    MAX_MAX_ATTEMPTS,
    MAX_RUN_LIMIT,
    MIN_MAX_ATTEMPTS,
    JobStatus,
    JobType,
    PostingState,
    PrincipalKind,
    Role,
)


class EnqueueJobRequest(BaseModel):
    """Request body for enqueueing a job."""

    job_type: JobType = Field(..., description="Kind of work; selects the processor")
    payload: dict[str, Any] = Field(..., description="Job payload data")
    job_id: str | None = Field(
        default=None, max_length=64, description="Optional caller-chosen job id"
    )
    max_attempts: int | None = Field(
        default=None,
        ge=MIN_MAX_ATTEMPTS,
        le=MAX_MAX_ATTEMPTS,
        description="Attempts before dead-lettering",
    )
    run_at: datetime | None = Field(
        default=None, description="Earliest time of the first attempt"
    )


class EnqueueJobResponse(BaseModel):
    """Response body after enqueueing a job."""

    id: str
    tenant_id: str
    job_type: JobType
    idempotency_key: str
    status: JobStatus
    deduped: bool
    created_at: datetime
    message: str = "Job enqueued"


class JobResponse(BaseModel):
    """Full job details response."""

    id: str
    tenant_id: str
    job_type: JobType
    idempotency_key: str
    payload: dict[str, Any]
    status: JobStatus
    attempts: int
    max_attempts: int
    claimed_by: str | None
    claim_expires_at: datetime | None
    next_eligible_at: datetime
    result: dict[str, Any] | None
    last_error: str | None
    external_ref: str | None
    created_at: datetime
    updated_at: datetime
    completed_at: datetime | None


class JobListResponse(BaseModel):
    """Paginated list of jobs."""

    jobs: list[JobResponse]
    total: int
    page: int
    page_size: int
    has_next: bool


class RequeueJobResponse(BaseModel):
    """Response body after an operator requeue."""

    id: str
    status: JobStatus
    previous_status: JobStatus
    attempts: int
    max_attempts: int
    message: str = "Job requeued"


class SubmitPostingRequest(BaseModel):
    """Request body for submitting an outbound posting."""

    posting_id: str = Field(..., min_length=1, max_length=255)
    document: dict[str, Any] = Field(..., description="Voucher or invoice body to book")
    max_attempts: int | None = Field(default=None, ge=MIN_MAX_ATTEMPTS, le=MAX_MAX_ATTEMPTS)


class PostingResponse(BaseModel):
    """A posting record with its submission state."""

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


class RunWorkerRequest(BaseModel):
    """Request body for triggering a worker run."""

    tenant_id: str = Field(..., min_length=1)
    limit: int | None = Field(default=None, ge=1, le=MAX_RUN_LIMIT)


class JobRunResultResponse(BaseModel):
    """Per-job outcome inside a worker run."""

    job_id: str
    success: bool
    skipped: bool = False
    status: JobStatus | None = None
    error: str | None = None


class RunWorkerResponse(BaseModel):
    """Summary of a worker run."""

    run_id: str
    tenant_id: str
    processed: int
    success: int
    failed: int
    skipped: int
    duration_ms: int
    results: list[JobRunResultResponse]


class WorkerRunResponse(BaseModel):
    """An audited worker run."""

    id: str
    tenant_id: str
    principal_kind: PrincipalKind
    principal_subject: str
    principal_role: str | None
    run_limit: int
    processed: int
    success: int
    failed: int
    skipped: int
    duration_ms: int
    job_ids: list[str]
    error: str | None
    started_at: datetime
    finished_at: datetime


class AuditEventResponse(BaseModel):
    """An audited operator action on a job."""

    id: str
    action: str
    job_id: str | None
    principal_kind: PrincipalKind
    principal_subject: str
    principal_role: str | None
    details: dict[str, Any] | None
    created_at: datetime


class AuthRequest(BaseModel):
    """Authentication request."""

    api_key: str = Field(..., description="API key for authentication")
    tenant_id: str = Field(..., description="Tenant identifier")
    subject: str = Field(..., description="User identity, e.g. email")
    role: Role = Field(default=Role.COMPANY_USER, description="Tenant role")


class TokenResponse(BaseModel):
    """JWT token response."""

    access_token: str
    token_type: str = "bearer"
    expires_in: int


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    version: str
    database: str
    processors: list[str] = Field(default_factory=list)
    timestamp: datetime

