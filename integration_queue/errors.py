"""
Typed exceptions for queue operations.

Routes translate these into HTTP errors; the worker loop catches them per job
so one bad job never aborts a batch.
"""


class QueueError(Exception):
    """Base class for queue errors."""

    code = "QUEUE_ERROR"


class JobNotFoundError(QueueError):
    """No job with this id exists for the tenant."""

    code = "JOB_NOT_FOUND"

    def __init__(self, tenant_id: str, job_id: str):
        self.tenant_id = tenant_id
        self.job_id = job_id
        super().__init__(f"Job {job_id} not found for tenant {tenant_id}")


class InvalidTransitionError(QueueError):
    """The job is not in a state the requested operation accepts."""

    code = "INVALID_TRANSITION"

    def __init__(self, job_id: str, current: str, operation: str):
        self.job_id = job_id
        self.current = current
        self.operation = operation
        super().__init__(f"Cannot {operation} job {job_id} in status {current}")


class PostingConflictError(QueueError):
    """A posting was already booked downstream with a different body."""

    code = "POSTING_CONFLICT"

    def __init__(self, job_id: str, external_ref: str | None):
        self.job_id = job_id
        self.external_ref = external_ref
        super().__init__(
            f"Posting {job_id} already completed as {external_ref} with a different request body"
        )


class PermanentJobError(QueueError):
    """
    Raised by processors when retrying cannot help.

    The job goes straight to dead_letter without consuming retry budget.
    """

    code = "PERMANENT_FAILURE"


class AuthorizationError(QueueError):
    """The principal lacks the capability for an operation."""

    code = "FORBIDDEN"

    def __init__(self, subject: str, capability: str):
        self.subject = subject
        self.capability = capability
        super().__init__(f"{subject} lacks capability {capability}")
