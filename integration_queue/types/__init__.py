"""
Type definitions for the integration queue.
Contains input/output type definitions for all functions, grouped by module.
"""

from integration_queue.types.api import (
    AuditEventResponse,
    AuthRequest,
    EnqueueJobRequest,
    EnqueueJobResponse,
    HealthResponse,
    JobListResponse,
    JobResponse,
    JobRunResultResponse,
    PostingResponse,
    RequeueJobResponse,
    RunWorkerRequest,
    RunWorkerResponse,
    SubmitPostingRequest,
    TokenResponse,
    WorkerRunResponse,
)
from integration_queue.types.job import (
    EnqueueResult,
    InboundEventPayload,
    JobContext,
    JobResult,
    JobRunResult,
    PostingPayload,
    RunSummary,
)
from integration_queue.types.principal import Principal, authorize

__all__ = [
    # API types
    "EnqueueJobRequest",
    "EnqueueJobResponse",
    "JobResponse",
    "JobListResponse",
    "RequeueJobResponse",
    "SubmitPostingRequest",
    "PostingResponse",
    "RunWorkerRequest",
    "RunWorkerResponse",
    "JobRunResultResponse",
    "WorkerRunResponse",
    "AuditEventResponse",
    "TokenResponse",
    "AuthRequest",
    "HealthResponse",
    # Job types
    "InboundEventPayload",
    "PostingPayload",
    "JobResult",
    "JobContext",
    "EnqueueResult",
    "JobRunResult",
    "RunSummary",
    # Authorization
    "Principal",
    "authorize",
]
