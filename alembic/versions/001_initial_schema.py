"""Initial schema with integration jobs and audit tables

Revision ID: 001
Revises:
Create Date: 2026-10-17 00:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

JOB_STATUSES = ("queued", "claimed", "completed", "error", "dead_letter")
JOB_TYPES = ("inbound_event", "outbound_posting", "ledger_sync", "tax_submission", "bank_sync")
PRINCIPAL_KINDS = ("cron", "user")


def _create_enum(name: str, values: tuple[str, ...]) -> None:
    labels = ", ".join(f"'{v}'" for v in values)
    op.execute(f"""
        DO $$ BEGIN
            CREATE TYPE {name} AS ENUM ({labels});
        EXCEPTION
            WHEN duplicate_object THEN null;
        END $$;
    """)


def upgrade() -> None:
    _create_enum("job_status", JOB_STATUSES)
    _create_enum("job_type", JOB_TYPES)
    _create_enum("principal_kind", PRINCIPAL_KINDS)

    op.create_table(
        "integration_jobs",
        sa.Column("tenant_id", sa.String(255), nullable=False),
        sa.Column("id", sa.String(64), nullable=False),
        sa.Column(
            "job_type",
            postgresql.ENUM(*JOB_TYPES, name="job_type", create_type=False),
            nullable=False,
        ),
        sa.Column("idempotency_key", sa.String(255), nullable=False),
        sa.Column("payload", postgresql.JSONB, nullable=False, server_default="{}"),
        sa.Column(
            "status",
            postgresql.ENUM(*JOB_STATUSES, name="job_status", create_type=False),
            nullable=False,
            server_default="queued",
        ),
        sa.Column("attempts", sa.Integer, nullable=False, server_default="0"),
        sa.Column("max_attempts", sa.Integer, nullable=False),
        sa.Column("claimed_by", sa.String(255), nullable=True),
        sa.Column("claim_expires_at", sa.DateTime, nullable=True),
        sa.Column("next_eligible_at", sa.DateTime, nullable=False),
        sa.Column("result", postgresql.JSONB, nullable=True),
        sa.Column("last_error", sa.Text, nullable=True),
        sa.Column("external_ref", sa.String(255), nullable=True),
        sa.Column("request_hash", sa.String(64), nullable=True),
        sa.Column("created_at", sa.DateTime, nullable=False),
        sa.Column("updated_at", sa.DateTime, nullable=False),
        sa.Column("completed_at", sa.DateTime, nullable=True),
        sa.Column("retain_until", sa.DateTime, nullable=True),
        sa.PrimaryKeyConstraint("tenant_id", "id"),
        sa.UniqueConstraint(
            "tenant_id", "job_type", "idempotency_key", name="uq_job_idempotency"
        ),
        sa.CheckConstraint("attempts >= 0", name="ck_jobs_attempts_non_negative"),
    )

    op.create_index(
        "ix_jobs_due", "integration_jobs", ["tenant_id", "status", "next_eligible_at"]
    )
    op.create_index(
        "ix_jobs_claim_expiry", "integration_jobs", ["tenant_id", "status", "claim_expires_at"]
    )
    # Archival scans by retention horizon
    op.execute("""
        CREATE INDEX ix_jobs_retain_until
        ON integration_jobs (retain_until)
        WHERE status IN ('completed', 'dead_letter')
    """)

    op.create_table(
        "worker_runs",
        sa.Column("id", sa.String(64), nullable=False),
        sa.Column("tenant_id", sa.String(255), nullable=False),
        sa.Column(
            "principal_kind",
            postgresql.ENUM(*PRINCIPAL_KINDS, name="principal_kind", create_type=False),
            nullable=False,
        ),
        sa.Column("principal_subject", sa.String(255), nullable=False),
        sa.Column("principal_role", sa.String(64), nullable=True),
        sa.Column("run_limit", sa.Integer, nullable=False),
        sa.Column("processed", sa.Integer, nullable=False, server_default="0"),
        sa.Column("success", sa.Integer, nullable=False, server_default="0"),
        sa.Column("failed", sa.Integer, nullable=False, server_default="0"),
        sa.Column("skipped", sa.Integer, nullable=False, server_default="0"),
        sa.Column("duration_ms", sa.Integer, nullable=False, server_default="0"),
        sa.Column("job_ids", postgresql.JSONB, nullable=False, server_default="[]"),
        sa.Column("error", sa.Text, nullable=True),
        sa.Column("started_at", sa.DateTime, nullable=False),
        sa.Column("finished_at", sa.DateTime, nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_worker_runs_tenant_id", "worker_runs", ["tenant_id"])

    op.create_table(
        "audit_events",
        sa.Column("id", sa.String(64), nullable=False),
        sa.Column("tenant_id", sa.String(255), nullable=False),
        sa.Column("action", sa.String(64), nullable=False),
        sa.Column("job_id", sa.String(64), nullable=True),
        sa.Column(
            "principal_kind",
            postgresql.ENUM(*PRINCIPAL_KINDS, name="principal_kind", create_type=False),
            nullable=False,
        ),
        sa.Column("principal_subject", sa.String(255), nullable=False),
        sa.Column("principal_role", sa.String(64), nullable=True),
        sa.Column("details", postgresql.JSONB, nullable=True),
        sa.Column("created_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_audit_events_tenant_id", "audit_events", ["tenant_id"])


def downgrade() -> None:
    op.drop_index("ix_audit_events_tenant_id")
    op.drop_table("audit_events")

    op.drop_index("ix_worker_runs_tenant_id")
    op.drop_table("worker_runs")

    op.execute("DROP INDEX IF EXISTS ix_jobs_retain_until")
    op.drop_index("ix_jobs_claim_expiry")
    op.drop_index("ix_jobs_due")
    op.drop_table("integration_jobs")

    op.execute("DROP TYPE IF EXISTS principal_kind")
    op.execute("DROP TYPE IF EXISTS job_type")
    op.execute("DROP TYPE IF EXISTS job_status")
