"""
Worker loop for executing jobs.

The worker runs only when invoked, by a scheduled trigger or an authorized
user, processes one bounded batch of due jobs for a tenant sequentially, and
returns a summary. There is no background polling; overlapping invocations
coordinate only through conditional writes on the job rows.
"""

import argparse
import asyncio
import logging
import os
import time
from datetime import datetime
from uuid import uuid4

from integration_queue.clock import utcnow
from integration_queue.config import Settings, get_settings
from integration_queue.constants import SPAN_WORKER_RUN, Capability, JobStatus, JobType
from integration_queue.db import close_db, get_session_context, init_db
from integration_queue.db.models import Job
from integration_queue.db.repository import JobRepository
from integration_queue.observability.logging import (
    bind_context,
    clear_context,
    job_context,
    setup_logging,
)
from integration_queue.observability.metrics import get_metrics
from integration_queue.observability.tracing import annotate, traced
from integration_queue.queue.lease import LeaseManager
from integration_queue.queue.retry import policy_for
from integration_queue.types.job import JobContext, JobRunResult, RunSummary
from integration_queue.types.principal import Principal, authorize
from integration_queue.worker.audit import RunAuditor
from integration_queue.worker.handlers import dispatch, register_configured_processors

logger = logging.getLogger(__name__)

LEASE_LOST_ERROR = "Lease lost before the outcome was recorded"


class Worker:
    """
    Runs batches of due jobs.

    Each run:
    - Sweeps lapsed leases of the tenant into failed attempts
    - Lists due jobs, oldest-due first, up to the limit
    - Claims, dispatches and records the outcome of each job in turn
    - Writes a best-effort audit record
    """

    def __init__(
        self,
        worker_id: str | None = None,
        lease_millis: int | None = None,
        settings: Settings | None = None,
        auditor: RunAuditor | None = None,
    ):
        """
        Initialize the worker.

        Args:
            worker_id: Worker identifier. Defaults to hostname + PID.
            lease_millis: Lease length per claimed job.
            settings: Settings override.
            auditor: Run auditor override.
        """
        self._settings = settings or get_settings()

        self.worker_id = (
            worker_id or self._settings.worker_id or f"{os.uname().nodename}-{os.getpid()}"
        )
        self.lease_millis = lease_millis or self._settings.worker_lease_millis
        self._auditor = auditor or RunAuditor()
        self._metrics = get_metrics()

    def clamp_limit(self, limit: int | None) -> int:
        if limit is None:
            limit = self._settings.worker_default_limit
        return max(1, min(self._settings.worker_max_limit, limit))

    async def run_once(
        self,
        tenant_id: str,
        principal: Principal,
        limit: int | None = None,
        *,
        now: datetime | None = None,
    ) -> RunSummary:
        """
        Process one batch of due jobs for a tenant.

        Failures of individual jobs are recorded in the summary and never
        abort the batch. Store errors while sweeping or listing propagate.

        Args:
            tenant_id: The tenant identifier.
            principal: Who triggered the run.
            limit: Maximum jobs to look at. Defaults to the configured limit.
            now: Reference time for eligibility and lease expiry.

        Returns:
            RunSummary with per-job results.

        Raises:
            AuthorizationError: The principal may not push data downstream.
        """
        authorize(principal, Capability.PUSH_DOWNSTREAM, tenant_id)

        limit = self.clamp_limit(limit)
        run_id = f"run_{uuid4().hex}"
        owner_id = f"{self.worker_id}/{run_id}"
        summary = RunSummary(run_id=run_id, tenant_id=tenant_id)

        bind_context(run_id=run_id, tenant_id=tenant_id)
        self._metrics.record_worker_run(principal.kind.value)
        logger.info(
            "Worker run starting",
            extra={"limit": limit, "principal": principal.subject, "owner_id": owner_id},
        )

        started_at = utcnow()
        start = time.monotonic()
        error: str | None = None

        try:
            with traced(
                SPAN_WORKER_RUN,
                tenant_id=tenant_id,
                run_id=run_id,
                limit=limit,
                principal_kind=principal.kind,
            ) as span:
                candidates = await self._due_jobs(tenant_id, limit, now)
                for job in candidates:
                    with job_context(job.id, job_type=JobType(job.job_type).value):
                        summary.results.append(await self._process_job(job, owner_id, now))

                annotate(
                    span,
                    processed=summary.processed,
                    failed=summary.failed,
                    skipped=summary.skipped,
                )
        except Exception as e:
            error = str(e)
            logger.exception("Worker run aborted", extra={"error": error})
            raise
        finally:
            summary.duration_ms = int((time.monotonic() - start) * 1000)
            await self._auditor.record(summary, principal, limit, started_at, error=error)
            logger.info(
                "Worker run finished",
                extra={
                    "processed": summary.processed,
                    "success": summary.success,
                    "failed": summary.failed,
                    "skipped": summary.skipped,
                    "duration_ms": summary.duration_ms,
                },
            )
            clear_context()

        return summary

    async def _due_jobs(
        self,
        tenant_id: str,
        limit: int,
        now: datetime | None,
    ) -> list[Job]:
        async with get_session_context() as session:
            expired = await LeaseManager(session, self._settings).expire_stale(
                tenant_id, now=now
            )
            if expired:
                logger.warning(
                    f"Recovered {len(expired)} jobs with lapsed leases",
                    extra={"job_ids": [job.id for job in expired]},
                )

            repo = JobRepository(session)
            jobs = list(await repo.list_due_jobs(tenant_id, limit, now=now))
            self._metrics.update_queue_depth(tenant_id, await repo.get_queue_depth(tenant_id))
            return jobs

    async def _process_job(
        self,
        job: Job,
        owner_id: str,
        now: datetime | None,
    ) -> JobRunResult:
        """
        Claim, dispatch and record one job.

        Returns:
            JobRunResult; skipped when another invocation holds the lease.
        """
        job_id = job.id
        tenant_id = job.tenant_id

        try:
            async with get_session_context() as session:
                claimed = await LeaseManager(session, self._settings).acquire(
                    tenant_id, job_id, owner_id, self.lease_millis, now=now
                )

            if claimed is None:
                logger.info("Skipped job claimed elsewhere", extra={"job_id": job_id})
                return JobRunResult(job_id=job_id, success=False, skipped=True)

            context = JobContext.from_job(claimed)
            logger.info(
                "Executing job",
                extra={
                    "job_id": job_id,
                    "job_type": context.job_type.value,
                    "attempt": context.attempt,
                },
            )

            result = await dispatch(context)

            async with get_session_context() as session:
                repo = JobRepository(session)
                if result.success:
                    updated = await repo.complete_job(
                        tenant_id,
                        job_id,
                        owner_id,
                        result=result.output,
                        external_ref=result.external_ref,
                        now=now,
                    )
                else:
                    updated = await repo.fail_job(
                        tenant_id,
                        job_id,
                        owner_id,
                        error=result.error or "Unknown error",
                        policy=policy_for(context.job_type, self._settings),
                        permanent=result.permanent,
                        now=now,
                    )

            if updated is None:
                logger.warning(LEASE_LOST_ERROR, extra={"job_id": job_id})
                return JobRunResult(job_id=job_id, success=False, error=LEASE_LOST_ERROR)

            status = JobStatus(updated.status)
            self._metrics.record_job_finished(
                tenant_id=tenant_id,
                job_type=context.job_type.value,
                status=status.value,
                duration_seconds=(result.duration_ms or 0) / 1000,
            )

            if result.success:
                logger.info("Job completed successfully", extra={"job_id": job_id})
            else:
                logger.warning(
                    "Job failed",
                    extra={
                        "job_id": job_id,
                        "error": result.error,
                        "attempt": context.attempt,
                        "status": status.value,
                    },
                )

            return JobRunResult(
                job_id=job_id,
                success=result.success,
                status=status,
                error=result.error,
            )

        except Exception as e:
            # One job's store failure must not abort the batch
            logger.exception("Exception processing job", extra={"job_id": job_id})
            return JobRunResult(job_id=job_id, success=False, error=f"Worker exception: {e}")


async def run_async(tenant_id: str, limit: int | None = None) -> RunSummary:
    """Run one worker pass as the cron principal."""
    setup_logging()
    register_configured_processors()
    await init_db()

    try:
        return await Worker().run_once(tenant_id, Principal.cron(), limit)
    finally:
        await close_db()


def run() -> None:
    """Run one worker pass from the command line."""
    parser = argparse.ArgumentParser(description="Process one batch of due integration jobs")
    parser.add_argument("--tenant", required=True, help="Tenant to process")
    parser.add_argument("--limit", type=int, default=None, help="Maximum jobs to process")
    args = parser.parse_args()

    summary = asyncio.run(run_async(args.tenant, args.limit))
    print(
        f"run={summary.run_id} processed={summary.processed} success={summary.success} "
        f"failed={summary.failed} skipped={summary.skipped}"
    )


if __name__ == "__main__":
    run()
