"""
SQLAlchemy database models.
Defines the integration job table and the audit tables.
"""

from datetime import datetime
from typing import Any

from sqlalchemy import (
    JSON,
    DateTime,
    Enum,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from integration_queue.clock import utcnow
from integration_queue.constants import (
    ALLOWED_TRANSITIONS,
    JobStatus,
    JobType,
    PrincipalKind,
)

# JSONB on PostgreSQL, plain JSON elsewhere (tests run on SQLite)
JSONType = JSON().with_variant(JSONB(), "postgresql")


def _enum_values(enum_cls: type) -> list[str]:
    return [e.value for e in enum_cls]


PrincipalKindType = Enum(PrincipalKind, name="principal_kind", values_callable=_enum_values)


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


class Job(Base):
    """
    A unit of integration work.

    This is the authoritative source of truth for job state. Every lifecycle
    transition is a single-row conditional UPDATE against this table.

    Key constraints:
    - (tenant_id, id) is the primary key
    - (tenant_id, job_type, idempotency_key) is unique, so repeated
      submissions collapse to one job
    - claimed_by and claim_expires_at form the lease
    """

    __tablename__ = "integration_jobs"

    tenant_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    id: Mapped[str] = mapped_column(String(64), primary_key=True)

    job_type: Mapped[JobType] = mapped_column(
        Enum(JobType, name="job_type", values_callable=_enum_values),
        nullable=False,
    )
    idempotency_key: Mapped[str] = mapped_column(String(255), nullable=False)
    payload: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)

    status: Mapped[JobStatus] = mapped_column(
        Enum(JobStatus, name="job_status", values_callable=_enum_values),
        nullable=False,
        default=JobStatus.QUEUED,
    )

    # Retry tracking
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_attempts: Mapped[int] = mapped_column(Integer, nullable=False)

    # Lease
    claimed_by: Mapped[str | None] = mapped_column(String(255), nullable=True)
    claim_expires_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    # Scheduling
    next_eligible_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    # Outcome
    result: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Outbound postings: downstream artifact id and body fingerprint
    external_ref: Mapped[str | None] = mapped_column(String(255), nullable=True)
    request_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    retain_until: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    __table_args__ = (
        UniqueConstraint(
            "tenant_id", "job_type", "idempotency_key", name="uq_job_idempotency"
        ),
        # Due-job polling: tenant + status, ordered by eligibility time
        Index("ix_jobs_due", "tenant_id", "status", "next_eligible_at"),
        # Lazy lease expiry sweep
        Index("ix_jobs_claim_expiry", "tenant_id", "status", "claim_expires_at"),
    )

    def is_lease_expired(self, now: datetime | None = None) -> bool:
        """Check if the job's lease has lapsed (or was never taken)."""
        if self.claim_expires_at is None:
            return True
        return (now or utcnow()) >= self.claim_expires_at

    def can_transition_to(self, status: JobStatus) -> bool:
        return status in ALLOWED_TRANSITIONS[self.status]

    def __repr__(self) -> str:
        return (
            f"Job(id={self.id}, tenant={self.tenant_id}, type={self.job_type}, "
            f"status={self.status}, attempts={self.attempts}/{self.max_attempts})"
        )


class WorkerRun(Base):
    """One append-only summary record per worker invocation."""

    __tablename__ = "worker_runs"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)

    principal_kind: Mapped[PrincipalKind] = mapped_column(PrincipalKindType, nullable=False)
    principal_subject: Mapped[str] = mapped_column(String(255), nullable=False)
    principal_role: Mapped[str | None] = mapped_column(String(64), nullable=True)

    run_limit: Mapped[int] = mapped_column(Integer, nullable=False)
    processed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    success: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    failed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    skipped: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    duration_ms: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    job_ids: Mapped[list[str]] = mapped_column(JSONType, nullable=False, default=list)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)

    started_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    finished_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    def __repr__(self) -> str:
        return (
            f"WorkerRun(id={self.id}, tenant={self.tenant_id}, "
            f"processed={self.processed}, failed={self.failed})"
        )


class AuditEvent(Base):
    """Append-only record of operator overrides such as requeue."""

    __tablename__ = "audit_events"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    action: Mapped[str] = mapped_column(String(64), nullable=False)
    job_id: Mapped[str | None] = mapped_column(String(64), nullable=True)

    principal_kind: Mapped[PrincipalKind] = mapped_column(PrincipalKindType, nullable=False)
    principal_subject: Mapped[str] = mapped_column(String(255), nullable=False)
    principal_role: Mapped[str | None] = mapped_column(String(64), nullable=True)

    details: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
