"""
Application constants.
Centralized location for all constant values used across the application.
"""

from enum import StrEnum


class JobStatus(StrEnum):
    """
    Job lifecycle states.

    State transitions:
    - QUEUED -> CLAIMED (lease acquired)
    - CLAIMED -> COMPLETED (processor succeeded)
    - CLAIMED -> ERROR (processor failed or lease lapsed, retry pending)
    - CLAIMED -> DEAD_LETTER (retry budget exhausted or permanent failure)
    - CLAIMED -> QUEUED (lease released)
    - ERROR -> CLAIMED (backoff elapsed, lease acquired)
    - ERROR -> DEAD_LETTER (lapsed lease with no budget left)
    - DEAD_LETTER/CLAIMED/ERROR -> QUEUED (operator requeue)
    """

    QUEUED = "queued"
    CLAIMED = "claimed"
    COMPLETED = "completed"
    ERROR = "error"
    DEAD_LETTER = "dead_letter"


class JobType(StrEnum):
    """Kinds of work the queue carries. Selects the processor."""

    INBOUND_EVENT = "inbound_event"
    OUTBOUND_POSTING = "outbound_posting"
    LEDGER_SYNC = "ledger_sync"
    TAX_SUBMISSION = "tax_submission"
    BANK_SYNC = "bank_sync"


class PostingState(StrEnum):
    """What a posting submission found when it reached the store."""

    QUEUED = "queued"  # new posting written
    PENDING = "pending"  # already waiting for the worker
    WAIT_RETRY = "wait_retry"  # failed recently, backing off
    IN_FLIGHT = "in_flight"  # a worker holds the lease
    ALREADY_COMPLETED = "already_completed"
    DEAD_LETTER = "dead_letter"


class PrincipalKind(StrEnum):
    """Who triggered an operation."""

    CRON = "cron"
    USER = "user"


class Role(StrEnum):
    """Tenant roles carried in access tokens."""

    TENANT_ADMIN = "tenant_admin"
    TENANT_MANAGER = "tenant_manager"
    COMPANY_ADMIN = "company_admin"
    COMPANY_USER = "company_user"
    COMPANY_VIEWER = "company_viewer"
    EXTERNAL_AUDITOR = "external_auditor"
    EXTERNAL_CLIENT = "external_client"


class Capability(StrEnum):
    """Permissions checked before queue operations."""

    VIEW_JOBS = "view_jobs"
    ENQUEUE_JOBS = "enqueue_jobs"
    PUSH_DOWNSTREAM = "push_downstream"
    REQUEUE_JOBS = "requeue_jobs"


ROLE_CAPABILITIES: dict[Role, frozenset[Capability]] = {
    Role.TENANT_ADMIN: frozenset(Capability),
    Role.TENANT_MANAGER: frozenset(Capability),
    Role.COMPANY_ADMIN: frozenset(
        {Capability.VIEW_JOBS, Capability.ENQUEUE_JOBS, Capability.PUSH_DOWNSTREAM}
    ),
    Role.COMPANY_USER: frozenset({Capability.VIEW_JOBS, Capability.ENQUEUE_JOBS}),
    Role.COMPANY_VIEWER: frozenset({Capability.VIEW_JOBS}),
    Role.EXTERNAL_AUDITOR: frozenset({Capability.VIEW_JOBS}),
    Role.EXTERNAL_CLIENT: frozenset(),
}

# Cron triggers may run the worker but nothing else
CRON_CAPABILITIES: frozenset[Capability] = frozenset({Capability.PUSH_DOWNSTREAM})

# Statuses the worker loop may pick up
DUE_STATUSES: tuple[JobStatus, ...] = (JobStatus.QUEUED, JobStatus.ERROR)

# Statuses an operator may requeue from. A claimed job also qualifies once
# its lease has lapsed.
REQUEUEABLE_STATUSES: tuple[JobStatus, ...] = (
    JobStatus.DEAD_LETTER,
    JobStatus.ERROR,
)

ALLOWED_TRANSITIONS: dict[JobStatus, frozenset[JobStatus]] = {
    JobStatus.QUEUED: frozenset({JobStatus.CLAIMED}),
    JobStatus.CLAIMED: frozenset(
        {
            JobStatus.COMPLETED,
            JobStatus.ERROR,
            JobStatus.DEAD_LETTER,
            JobStatus.QUEUED,
            JobStatus.CLAIMED,
        }
    ),
    JobStatus.ERROR: frozenset(
        {JobStatus.CLAIMED, JobStatus.DEAD_LETTER, JobStatus.QUEUED}
    ),
    JobStatus.COMPLETED: frozenset(),
    JobStatus.DEAD_LETTER: frozenset({JobStatus.QUEUED}),
}

# Default values
DEFAULT_MAX_ATTEMPTS = 8
DEFAULT_POSTING_MAX_ATTEMPTS = 6
MIN_MAX_ATTEMPTS = 1
MAX_MAX_ATTEMPTS = 50
DEFAULT_LEASE_MILLIS = 60_000
DEFAULT_RUN_LIMIT = 10
MAX_RUN_LIMIT = 50
LEASE_EXPIRED_ERROR = "Lease expired before completion"

# API constants
API_V1_PREFIX = "/v1"
IDEMPOTENCY_KEY_HEADER = "Idempotency-Key"
CRON_SECRET_HEADER = "X-Cron-Secret"

# Metrics names
METRIC_QUEUE_DEPTH = "integration_queue_depth"
METRIC_JOBS_ENQUEUED = "integration_jobs_enqueued_total"
METRIC_JOBS_DEDUPED = "integration_jobs_deduped_total"
METRIC_JOBS_FINISHED = "integration_jobs_finished_total"
METRIC_JOB_DURATION = "integration_job_duration_seconds"
METRIC_CLAIMS = "integration_job_claims_total"
METRIC_LEASE_EXPIRED = "integration_lease_expired_total"
METRIC_WORKER_RUNS = "integration_worker_runs_total"
METRIC_API_REQUESTS = "api_requests_total"
METRIC_API_LATENCY = "api_request_latency_seconds"

# Trace span names
SPAN_ENQUEUE_JOB = "enqueue_job"
SPAN_CLAIM_JOB = "claim_job"
SPAN_DISPATCH_JOB = "dispatch_job"
SPAN_WORKER_RUN = "worker_run"
