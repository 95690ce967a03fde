"""
Run auditor.

Writes one append-only ``worker_runs`` row per worker invocation. The write
is best-effort and happens in its own session: a failure is logged and never
changes the outcome the worker returns.
"""

import logging
from datetime import datetime

from integration_queue.clock import utcnow
from integration_queue.db import get_session_context
from integration_queue.db.models import WorkerRun
from integration_queue.db.repository import AuditRepository
from integration_queue.types.job import RunSummary
from integration_queue.types.principal import Principal

logger = logging.getLogger(__name__)


class RunAuditor:
    """Records worker invocations for operational visibility."""

    async def record(
        self,
        summary: RunSummary,
        principal: Principal,
        run_limit: int,
        started_at: datetime,
        error: str | None = None,
    ) -> WorkerRun | None:
        """
        Append the audit record of a run.

        Args:
            summary: Counts and per-job results of the run.
            principal: Who triggered the run.
            run_limit: Batch size the run was asked for.
            started_at: When the run began.
            error: Why the run aborted, if it did.

        Returns:
            The stored WorkerRun, or None if it could not be written.
        """
        run = WorkerRun(
            id=summary.run_id,
            tenant_id=summary.tenant_id,
            principal_kind=principal.kind,
            principal_subject=principal.subject,
            principal_role=principal.role.value if principal.role else None,
            run_limit=run_limit,
            processed=summary.processed,
            success=summary.success,
            failed=summary.failed,
            skipped=summary.skipped,
            duration_ms=summary.duration_ms,
            job_ids=summary.job_ids,
            error=error,
            started_at=started_at,
            finished_at=utcnow(),
        )

        try:
            async with get_session_context() as session:
                await AuditRepository(session).add_worker_run(run)
        except Exception:
            logger.exception(
                "Failed to write worker run audit record",
                extra={"run_id": summary.run_id, "tenant_id": summary.tenant_id},
            )
            return None

        return run
