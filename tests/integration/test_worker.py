"""
Integration tests for the worker loop.
"""

import asyncio
from datetime import timedelta
from typing import Any

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession

from integration_queue.constants import (
    LEASE_EXPIRED_ERROR,
    JobStatus,
    JobType,
    PostingState,
    PrincipalKind,
    Role,
)
from integration_queue.db import get_session_context
from integration_queue.db.repository import AuditRepository, JobRepository
from integration_queue.errors import AuthorizationError
from integration_queue.queue.enqueue import EnqueueService
from integration_queue.queue.lease import LeaseManager
from integration_queue.queue.postings import PostingService
from integration_queue.types.job import JobResult
from integration_queue.types.principal import Principal
from integration_queue.worker.handlers import register_processor
from integration_queue.worker.main import LEASE_LOST_ERROR, Worker

CRON = Principal.cron()


class TestWorker:
    """Tests for Worker.run_once."""

    @pytest_asyncio.fixture
    async def worker(self, async_engine, fast_settings) -> Worker:
        return Worker(worker_id="test-worker", settings=fast_settings)

    @pytest_asyncio.fixture
    async def enqueue(self, db_session: AsyncSession, test_tenant_id, now):
        """Enqueue and commit, so the worker's own sessions can write."""

        async def _enqueue(
            key: str,
            job_type: JobType = JobType.INBOUND_EVENT,
            payload: dict[str, Any] | None = None,
            **kwargs,
        ):
            if payload is None:
                payload = {"source": "bank", "event_type": "transaction.booked"}
            kwargs.setdefault("now", now)
            result = await EnqueueService(db_session).enqueue(
                test_tenant_id, job_type, payload, key, **kwargs
            )
            await db_session.commit()
            return result.job

        return _enqueue

    @pytest_asyncio.fixture
    async def repo(self, db_session: AsyncSession) -> JobRepository:
        return JobRepository(db_session)

    async def test_processes_due_job(self, worker, enqueue, repo, register, test_tenant_id, now):
        processor = register(JobType.INBOUND_EVENT, JobResult.ok({"applied": True}))
        job = await enqueue("evt-1")

        summary = await worker.run_once(test_tenant_id, CRON, now=now)

        assert summary.processed == 1
        assert summary.success == 1
        assert summary.failed == 0
        assert summary.skipped == 0
        assert summary.job_ids == [job.id]
        assert summary.results[0].status == JobStatus.COMPLETED

        context = processor.calls[0]
        assert context.idempotency_key == "evt-1"
        assert context.attempt == 1
        assert context.lease_owner.startswith("test-worker/")

        stored = await repo.get_job(test_tenant_id, job.id)
        assert stored.status == JobStatus.COMPLETED
        assert stored.attempts == 1
        assert stored.result == {"applied": True}

    async def test_empty_queue(self, worker, test_tenant_id, now):
        summary = await worker.run_once(test_tenant_id, CRON, now=now)

        assert summary.processed == 0
        assert summary.results == []

    async def test_limit_takes_oldest_due_first(
        self, worker, enqueue, repo, register, test_tenant_id, now
    ):
        """Two due jobs and limit=1: the older-due one runs, the other stays queued."""
        register(JobType.INBOUND_EVENT)
        newer = await enqueue("evt-newer", run_at=now - timedelta(seconds=1))
        older = await enqueue("evt-older", run_at=now - timedelta(seconds=30))

        summary = await worker.run_once(test_tenant_id, CRON, limit=1, now=now)

        assert summary.job_ids == [older.id]
        assert (await repo.get_job(test_tenant_id, newer.id)).status == JobStatus.QUEUED

    async def test_future_job_is_not_picked(self, worker, enqueue, register, test_tenant_id, now):
        processor = register(JobType.INBOUND_EVENT)
        await enqueue("evt-later", run_at=now + timedelta(hours=1))

        summary = await worker.run_once(test_tenant_id, CRON, now=now)

        assert summary.processed == 0
        assert processor.calls == []

    async def test_other_tenants_are_untouched(self, worker, db_session, register, now):
        register(JobType.INBOUND_EVENT)
        await EnqueueService(db_session).enqueue(
            "tenant-b", JobType.INBOUND_EVENT, {"source": "bank", "event_type": "x"}, "k", now=now
        )
        await db_session.commit()

        summary = await worker.run_once("tenant-a", CRON, now=now)

        assert summary.processed == 0

    async def test_failure_backs_off(self, worker, enqueue, repo, register, test_tenant_id, now):
        register(JobType.INBOUND_EVENT, JobResult.failed("HTTP 503"))
        job = await enqueue("evt-1", max_attempts=3)

        summary = await worker.run_once(test_tenant_id, CRON, now=now)

        assert summary.failed == 1
        assert summary.results[0].status == JobStatus.ERROR
        assert summary.results[0].error == "HTTP 503"

        stored = await repo.get_job(test_tenant_id, job.id)
        assert stored.status == JobStatus.ERROR
        assert stored.attempts == 1
        assert stored.next_eligible_at == now + timedelta(seconds=5)

        # Not eligible again until the backoff has passed
        early = await worker.run_once(test_tenant_id, CRON, now=now + timedelta(seconds=4))
        assert early.processed == 0

    async def test_escalates_to_dead_letter_after_max_attempts(
        self, worker, enqueue, repo, register, test_tenant_id, now
    ):
        """A job failing max_attempts times is dead-lettered and never picked again."""
        processor = register(
            JobType.INBOUND_EVENT,
            JobResult.failed("timeout"),
            JobResult.failed("timeout"),
            JobResult.failed("timeout"),
        )
        job = await enqueue("evt-1", max_attempts=3)

        t = now
        seen_attempts = []
        for _ in range(3):
            summary = await worker.run_once(test_tenant_id, CRON, now=t)
            assert summary.processed == 1
            stored = await repo.get_job(test_tenant_id, job.id)
            seen_attempts.append(stored.attempts)
            t = t + timedelta(seconds=61)

        assert seen_attempts == [1, 2, 3]
        assert stored.status == JobStatus.DEAD_LETTER

        fourth = await worker.run_once(test_tenant_id, CRON, now=t + timedelta(days=1))
        assert fourth.processed == 0
        assert len(processor.calls) == 3
        assert (await repo.get_job(test_tenant_id, job.id)).attempts == 3

    async def test_retry_then_success(self, worker, enqueue, repo, register, test_tenant_id, now):
        processor = register(
            JobType.INBOUND_EVENT, JobResult.failed("HTTP 502"), JobResult.ok({"n": 1})
        )
        job = await enqueue("evt-1", max_attempts=3)

        await worker.run_once(test_tenant_id, CRON, now=now)
        summary = await worker.run_once(test_tenant_id, CRON, now=now + timedelta(seconds=6))

        assert summary.success == 1
        assert [c.attempt for c in processor.calls] == [1, 2]
        stored = await repo.get_job(test_tenant_id, job.id)
        assert stored.status == JobStatus.COMPLETED
        assert stored.attempts == 2
        assert stored.last_error is None

    async def test_unknown_job_type_dead_letters_immediately(
        self, worker, enqueue, repo, test_tenant_id, now
    ):
        job = await enqueue("tax-1", JobType.TAX_SUBMISSION, {"period": "2026-09"}, max_attempts=5)

        summary = await worker.run_once(test_tenant_id, CRON, now=now)

        assert summary.failed == 1
        stored = await repo.get_job(test_tenant_id, job.id)
        assert stored.status == JobStatus.DEAD_LETTER
        assert stored.attempts == 1
        assert "No processor registered" in stored.last_error

    async def test_malformed_payload_dead_letters(
        self, worker, enqueue, repo, register, test_tenant_id, now
    ):
        processor = register(JobType.INBOUND_EVENT)
        job = await enqueue("evt-bad", payload={"data": {}}, max_attempts=5)

        await worker.run_once(test_tenant_id, CRON, now=now)

        stored = await repo.get_job(test_tenant_id, job.id)
        assert stored.status == JobStatus.DEAD_LETTER
        assert stored.attempts == 1
        assert processor.calls == []

    async def test_processor_exception_does_not_abort_batch(
        self, worker, enqueue, repo, register, test_tenant_id, now
    ):
        register(JobType.INBOUND_EVENT, RuntimeError("socket closed"), JobResult.ok())
        first = await enqueue("evt-1", run_at=now - timedelta(seconds=2))
        second = await enqueue("evt-2", run_at=now - timedelta(seconds=1))

        summary = await worker.run_once(test_tenant_id, CRON, now=now)

        assert summary.processed == 2
        assert summary.failed == 1
        assert summary.success == 1
        assert summary.results[0].error == "Processor exception: socket closed"
        assert (await repo.get_job(test_tenant_id, first.id)).status == JobStatus.ERROR
        assert (await repo.get_job(test_tenant_id, second.id)).status == JobStatus.COMPLETED

    async def test_store_error_on_one_job_is_isolated(
        self, worker, enqueue, register, test_tenant_id, now, monkeypatch
    ):
        register(JobType.INBOUND_EVENT)
        await enqueue("evt-1", run_at=now - timedelta(seconds=2))
        await enqueue("evt-2", run_at=now - timedelta(seconds=1))

        async def broken_complete(self, *args, **kwargs):
            raise RuntimeError("write timeout")

        monkeypatch.setattr(JobRepository, "complete_job", broken_complete)

        summary = await worker.run_once(test_tenant_id, CRON, now=now)

        assert summary.processed == 2
        assert summary.failed == 2
        assert all(r.error == "Worker exception: write timeout" for r in summary.results)

    async def test_job_claimed_elsewhere_is_skipped(
        self, worker, enqueue, db_session, register, test_tenant_id, now
    ):
        processor = register(JobType.INBOUND_EVENT)
        job = await enqueue("evt-1")

        async def claim_first(tenant_id, limit, run_now):
            jobs = await original(tenant_id, limit, run_now)
            async with get_session_context() as session:
                await LeaseManager(session).claim(tenant_id, job.id, "other-worker", now=run_now)
            return jobs

        original = worker._due_jobs
        worker._due_jobs = claim_first

        summary = await worker.run_once(test_tenant_id, CRON, now=now)

        assert summary.processed == 1
        assert summary.skipped == 1
        assert summary.failed == 0
        assert processor.calls == []

    async def test_overlapping_runs_claim_each_job_once(
        self, enqueue, register, fast_settings, test_tenant_id, now
    ):
        processor = register(JobType.INBOUND_EVENT)
        jobs = [await enqueue(f"evt-{i}") for i in range(4)]

        first, second = await asyncio.gather(
            Worker(worker_id="worker-a", settings=fast_settings).run_once(test_tenant_id, CRON, now=now),
            Worker(worker_id="worker-b", settings=fast_settings).run_once(test_tenant_id, CRON, now=now),
        )

        assert first.success + second.success == len(jobs)
        assert sorted(c.job_id for c in processor.calls) == sorted(j.id for j in jobs)

    async def test_completed_job_is_never_touched(
        self, worker, enqueue, repo, register, test_tenant_id, now
    ):
        register(JobType.INBOUND_EVENT)
        job = await enqueue("evt-1")
        await worker.run_once(test_tenant_id, CRON, now=now)
        done = await repo.get_job(test_tenant_id, job.id)

        later = await worker.run_once(test_tenant_id, CRON, now=now + timedelta(days=3))

        assert later.processed == 0
        again = await repo.get_job(test_tenant_id, job.id)
        assert again.updated_at == done.updated_at
        assert again.attempts == done.attempts

    async def test_lapsed_lease_is_recovered(
        self, worker, enqueue, repo, register, test_tenant_id, now
    ):
        """A crashed worker's claim expires and a later run picks the job up."""
        processor = register(JobType.INBOUND_EVENT)
        job = await enqueue("evt-1")
        async with get_session_context() as session:
            await LeaseManager(session).claim(test_tenant_id, job.id, "crashed", 1_000, now=now)

        # The expiry sweep counts the abandoned attempt and applies backoff
        first = await worker.run_once(test_tenant_id, CRON, now=now + timedelta(seconds=2))
        assert first.processed == 0
        stored = await repo.get_job(test_tenant_id, job.id)
        assert stored.status == JobStatus.ERROR
        assert stored.last_error == LEASE_EXPIRED_ERROR

        second = await worker.run_once(test_tenant_id, CRON, now=now + timedelta(seconds=8))
        assert second.success == 1
        assert processor.calls[0].attempt == 2
        assert (await repo.get_job(test_tenant_id, job.id)).attempts == 2

    async def test_lost_lease_is_reported(
        self, worker, enqueue, repo, fast_settings, test_tenant_id, now
    ):
        """A processor outliving its lease loses the job to an operator requeue."""
        job = await enqueue("evt-1")
        after_lease = now + timedelta(milliseconds=fast_settings.worker_lease_millis)

        async def requeued_meanwhile(context):
            async with get_session_context() as session:
                await JobRepository(session).requeue_job(
                    context.tenant_id, context.job_id, now=after_lease
                )
            return JobResult.ok()

        register_processor(JobType.INBOUND_EVENT, requeued_meanwhile)

        summary = await worker.run_once(test_tenant_id, CRON, now=now)

        assert summary.failed == 1
        assert summary.results[0].error == LEASE_LOST_ERROR
        stored = await repo.get_job(test_tenant_id, job.id)
        assert stored.status == JobStatus.QUEUED
        assert stored.attempts == 0

    async def test_posting_is_booked_once(self, worker, db_session, register, test_tenant_id, now):
        register(JobType.OUTBOUND_POSTING, JobResult.ok({"voucher": 17}, external_ref="V-17"))
        document = {"series": "A", "rows": []}
        await PostingService(db_session).submit_posting(test_tenant_id, "P-1", document, now=now)
        await db_session.commit()

        await worker.run_once(test_tenant_id, CRON, now=now)
        again = await PostingService(db_session).submit_posting(
            test_tenant_id, "P-1", document, now=now
        )

        assert again.state == PostingState.ALREADY_COMPLETED
        assert again.external_ref == "V-17"


class TestWorkerAuthorization:
    """Tests for principal checks on worker runs."""

    async def test_user_without_push_capability_is_rejected(
        self, async_engine, fast_settings, test_tenant_id
    ):
        viewer = Principal.user("viewer@example.com", Role.COMPANY_VIEWER, test_tenant_id)

        with pytest.raises(AuthorizationError):
            await Worker(settings=fast_settings).run_once(test_tenant_id, principal=viewer)

    async def test_user_of_other_tenant_is_rejected(self, async_engine, fast_settings):
        admin = Principal.user("ops@example.com", Role.TENANT_ADMIN, "tenant-a")

        with pytest.raises(AuthorizationError):
            await Worker(settings=fast_settings).run_once("tenant-b", principal=admin)

    async def test_principal_is_required(self, async_engine, fast_settings, test_tenant_id):
        with pytest.raises(TypeError):
            await Worker(settings=fast_settings).run_once(test_tenant_id)

    @pytest.mark.parametrize("limit,expected", [(None, 10), (0, 1), (3, 3), (500, 50)])
    def test_clamp_limit(self, limit, expected):
        assert Worker(worker_id="w").clamp_limit(limit) == expected


class TestRunAudit:
    """Tests for worker run audit records."""

    async def test_cron_run_is_audited(
        self, async_engine, db_session, fast_settings, register, test_tenant_id, now
    ):
        register(JobType.INBOUND_EVENT)
        result = await EnqueueService(db_session).enqueue(
            test_tenant_id, JobType.INBOUND_EVENT, {"source": "bank", "event_type": "x"}, "k",
            now=now,
        )
        await db_session.commit()

        summary = await Worker(settings=fast_settings).run_once(test_tenant_id, CRON, limit=5, now=now)

        runs = await AuditRepository(db_session).list_worker_runs(test_tenant_id)
        assert len(runs) == 1
        run = runs[0]
        assert run.id == summary.run_id
        assert run.principal_kind == PrincipalKind.CRON
        assert run.principal_subject == "cron"
        assert run.run_limit == 5
        assert run.processed == 1
        assert run.success == 1
        assert run.job_ids == [result.job.id]
        assert run.error is None

    async def test_user_run_is_tagged_with_principal(
        self, async_engine, db_session, fast_settings, test_tenant_id, now
    ):
        admin = Principal.user("ops@example.com", Role.COMPANY_ADMIN, test_tenant_id)

        await Worker(settings=fast_settings).run_once(test_tenant_id, principal=admin, now=now)

        (run,) = await AuditRepository(db_session).list_worker_runs(test_tenant_id)
        assert run.principal_kind == PrincipalKind.USER
        assert run.principal_subject == "ops@example.com"
        assert run.principal_role == Role.COMPANY_ADMIN.value

    async def test_audit_failure_does_not_change_outcome(
        self, async_engine, db_session, fast_settings, register, test_tenant_id, now, monkeypatch
    ):
        register(JobType.INBOUND_EVENT)
        await EnqueueService(db_session).enqueue(
            test_tenant_id, JobType.INBOUND_EVENT, {"source": "bank", "event_type": "x"}, "k",
            now=now,
        )
        await db_session.commit()

        async def broken_add(self, run):
            raise RuntimeError("audit table unavailable")

        monkeypatch.setattr(AuditRepository, "add_worker_run", broken_add)

        summary = await Worker(settings=fast_settings).run_once(test_tenant_id, CRON, now=now)

        assert summary.success == 1
        monkeypatch.undo()
        assert await AuditRepository(db_session).list_worker_runs(test_tenant_id) == []

    async def test_aborted_run_is_audited_with_error(
        self, async_engine, db_session, fast_settings, test_tenant_id, now, monkeypatch
    ):
        async def store_down(self, *args, **kwargs):
            raise RuntimeError("store unavailable")

        monkeypatch.setattr(JobRepository, "list_due_jobs", store_down)

        with pytest.raises(RuntimeError, match="store unavailable"):
            await Worker(settings=fast_settings).run_once(test_tenant_id, CRON, now=now)

        (run,) = await AuditRepository(db_session).list_worker_runs(test_tenant_id)
        assert run.error == "store unavailable"
        assert run.processed == 0
