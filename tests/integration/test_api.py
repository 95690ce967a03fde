"""
Integration tests for the API endpoints.
"""

from uuid import uuid4

import pytest
import pytest_asyncio
from httpx import AsyncClient

from integration_queue.constants import CRON_SECRET_HEADER, JobStatus, JobType, Role
from integration_queue.types.job import JobResult

EVENT = {"source": "bank", "event_type": "transaction.booked", "data": {"amount": "10.00"}}


class TestJobAPI:
    """Integration tests for job API endpoints."""

    @pytest_asyncio.fixture
    async def created_job(self, client: AsyncClient, auth_headers: dict[str, str]) -> dict:
        """Create a job for testing."""
        response = await client.post(
            "/v1/jobs",
            json={"job_type": "inbound_event", "payload": EVENT, "max_attempts": 3},
            headers={**auth_headers, "Idempotency-Key": f"evt-{uuid4().hex}"},
        )
        assert response.status_code == 201
        return response.json()

    async def test_create_job_success(self, client: AsyncClient, auth_headers, test_tenant_id):
        """Test successful job creation."""
        response = await client.post(
            "/v1/jobs",
            json={"job_type": "inbound_event", "payload": EVENT, "max_attempts": 3},
            headers={**auth_headers, "Idempotency-Key": "evt-1"},
        )

        assert response.status_code == 201
        data = response.json()
        assert data["id"].startswith("job_")
        assert data["tenant_id"] == test_tenant_id
        assert data["idempotency_key"] == "evt-1"
        assert data["status"] == JobStatus.QUEUED.value
        assert data["deduped"] is False

    async def test_create_job_idempotency(self, client: AsyncClient, auth_headers):
        """Repeating the key returns the first job with 200."""
        headers = {**auth_headers, "Idempotency-Key": "evt-1"}
        body = {"job_type": "inbound_event", "payload": EVENT}

        first = await client.post("/v1/jobs", json=body, headers=headers)
        second = await client.post("/v1/jobs", json=body, headers=headers)

        assert first.status_code == 201
        assert second.status_code == 200
        assert second.json()["id"] == first.json()["id"]
        assert second.json()["deduped"] is True

    async def test_create_job_without_key_dedupes_on_payload(
        self, client: AsyncClient, auth_headers
    ):
        body = {"job_type": "inbound_event", "payload": EVENT}

        first = await client.post("/v1/jobs", json=body, headers=auth_headers)
        second = await client.post("/v1/jobs", json=body, headers=auth_headers)

        assert first.status_code == 201
        assert second.status_code == 200
        assert second.json()["id"] == first.json()["id"]

    async def test_create_job_rejects_out_of_range_attempts(
        self, client: AsyncClient, auth_headers
    ):
        response = await client.post(
            "/v1/jobs",
            json={"job_type": "inbound_event", "payload": EVENT, "max_attempts": 0},
            headers=auth_headers,
        )
        assert response.status_code == 422

    async def test_create_job_unknown_type(self, client: AsyncClient, auth_headers):
        response = await client.post(
            "/v1/jobs",
            json={"job_type": "fax", "payload": {}},
            headers=auth_headers,
        )
        assert response.status_code == 422

    async def test_create_job_taken_id_conflicts(self, client: AsyncClient, auth_headers):
        body = {"job_type": "inbound_event", "payload": EVENT, "job_id": "job_fixed"}

        await client.post("/v1/jobs", json=body, headers={**auth_headers, "Idempotency-Key": "a"})
        response = await client.post(
            "/v1/jobs", json=body, headers={**auth_headers, "Idempotency-Key": "b"}
        )

        assert response.status_code == 409

    async def test_create_job_requires_auth(self, client: AsyncClient):
        response = await client.post(
            "/v1/jobs", json={"job_type": "inbound_event", "payload": EVENT}
        )
        assert response.status_code == 401

    async def test_create_job_invalid_token(self, client: AsyncClient):
        response = await client.post(
            "/v1/jobs",
            json={"job_type": "inbound_event", "payload": EVENT},
            headers={"Authorization": "Bearer invalid-token"},
        )
        assert response.status_code == 401

    async def test_viewer_cannot_enqueue(self, client: AsyncClient, make_auth_headers):
        response = await client.post(
            "/v1/jobs",
            json={"job_type": "inbound_event", "payload": EVENT},
            headers=make_auth_headers(Role.COMPANY_VIEWER),
        )
        assert response.status_code == 403

    async def test_get_job(self, client: AsyncClient, auth_headers, created_job):
        response = await client.get(f"/v1/jobs/{created_job['id']}", headers=auth_headers)

        assert response.status_code == 200
        data = response.json()
        assert data["id"] == created_job["id"]
        assert data["payload"] == EVENT
        assert data["attempts"] == 0
        assert data["max_attempts"] == 3

    async def test_get_job_not_found(self, client: AsyncClient, auth_headers):
        response = await client.get("/v1/jobs/job_missing", headers=auth_headers)
        assert response.status_code == 404

    async def test_get_job_other_tenant(self, client: AsyncClient, make_auth_headers, created_job):
        """Another tenant's job looks like a missing one."""
        response = await client.get(
            f"/v1/jobs/{created_job['id']}",
            headers=make_auth_headers(Role.TENANT_ADMIN, tenant_id="other-tenant"),
        )
        assert response.status_code == 404

    async def test_list_jobs(self, client: AsyncClient, auth_headers):
        for i in range(3):
            await client.post(
                "/v1/jobs",
                json={"job_type": "inbound_event", "payload": {**EVENT, "event_id": str(i)}},
                headers=auth_headers,
            )

        response = await client.get("/v1/jobs?page_size=2", headers=auth_headers)

        assert response.status_code == 200
        data = response.json()
        assert data["total"] == 3
        assert len(data["jobs"]) == 2
        assert data["has_next"] is True

    async def test_list_jobs_filters(self, client: AsyncClient, auth_headers, created_job):
        await client.post(
            "/v1/jobs",
            json={"job_type": "ledger_sync", "payload": {"ledger": "main"}},
            headers=auth_headers,
        )

        response = await client.get("/v1/jobs?job_type=ledger_sync", headers=auth_headers)
        assert response.json()["total"] == 1

        response = await client.get("/v1/jobs?status=completed", headers=auth_headers)
        assert response.json()["total"] == 0

    async def test_job_stats(self, client: AsyncClient, auth_headers, created_job):
        response = await client.get("/v1/jobs/stats/summary", headers=auth_headers)

        assert response.status_code == 200
        assert response.json() == {"stats": {"queued": 1}, "queue_depth": 1}


class TestRequeueAPI:
    """Integration tests for operator requeue."""

    @pytest_asyncio.fixture
    async def dead_job(
        self, client: AsyncClient, auth_headers, cron_headers, test_tenant_id
    ) -> dict:
        """A job with no processor: the first run dead-letters it."""
        created = await client.post(
            "/v1/jobs",
            json={"job_type": "tax_submission", "payload": {"period": "2026-09"}},
            headers=auth_headers,
        )
        run = await client.post(
            "/v1/worker/run", json={"tenant_id": test_tenant_id}, headers=cron_headers
        )
        assert run.json()["results"][0]["status"] == JobStatus.DEAD_LETTER.value
        return created.json()

    async def test_requeue_dead_letter(self, client: AsyncClient, auth_headers, dead_job):
        response = await client.post(f"/v1/jobs/{dead_job['id']}/requeue", headers=auth_headers)

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == JobStatus.QUEUED.value
        assert data["previous_status"] == JobStatus.DEAD_LETTER.value
        assert data["attempts"] == 1

    async def test_requeue_queued_job_conflicts(self, client: AsyncClient, auth_headers, dead_job):
        await client.post(f"/v1/jobs/{dead_job['id']}/requeue", headers=auth_headers)
        response = await client.post(f"/v1/jobs/{dead_job['id']}/requeue", headers=auth_headers)

        assert response.status_code == 409

    async def test_requeue_not_found(self, client: AsyncClient, auth_headers):
        response = await client.post("/v1/jobs/job_missing/requeue", headers=auth_headers)
        assert response.status_code == 404

    async def test_requeue_requires_capability(
        self, client: AsyncClient, make_auth_headers, dead_job
    ):
        response = await client.post(
            f"/v1/jobs/{dead_job['id']}/requeue",
            headers=make_auth_headers(Role.COMPANY_ADMIN),
        )
        assert response.status_code == 403

    async def test_requeue_shows_in_job_events(self, client: AsyncClient, auth_headers, dead_job):
        events_url = f"/v1/jobs/{dead_job['id']}/events"
        assert (await client.get(events_url, headers=auth_headers)).json() == []

        await client.post(f"/v1/jobs/{dead_job['id']}/requeue", headers=auth_headers)
        response = await client.get(events_url, headers=auth_headers)

        assert response.status_code == 200
        (event,) = response.json()
        assert event["action"] == "job.requeue"
        assert event["principal_subject"] == "tenant_admin@example.com"
        assert event["details"]["previous_status"] == JobStatus.DEAD_LETTER.value

    async def test_events_of_unknown_job(self, client: AsyncClient, auth_headers):
        response = await client.get("/v1/jobs/job_missing/events", headers=auth_headers)
        assert response.status_code == 404


class TestPostingAPI:
    """Integration tests for outbound posting endpoints."""

    DOCUMENT = {"series": "A", "rows": [{"account": 1930, "debit": "100.00"}]}

    async def test_submit_posting(self, client: AsyncClient, auth_headers):
        response = await client.post(
            "/v1/postings",
            json={"posting_id": "P-1", "document": self.DOCUMENT},
            headers=auth_headers,
        )

        assert response.status_code == 201
        data = response.json()
        assert data["posting_id"] == "P-1"
        assert data["state"] == "queued"
        assert data["max_attempts"] == 6

    async def test_resubmit_pending_posting(self, client: AsyncClient, auth_headers):
        body = {"posting_id": "P-1", "document": self.DOCUMENT}

        await client.post("/v1/postings", json=body, headers=auth_headers)
        response = await client.post("/v1/postings", json=body, headers=auth_headers)

        assert response.status_code == 200
        assert response.json()["state"] == "pending"

    async def test_booked_posting(
        self, client: AsyncClient, auth_headers, cron_headers, register, test_tenant_id
    ):
        register(JobType.OUTBOUND_POSTING, JobResult.ok(external_ref="V-17"))
        body = {"posting_id": "P-1", "document": self.DOCUMENT}
        await client.post("/v1/postings", json=body, headers=auth_headers)
        await client.post(
            "/v1/worker/run", json={"tenant_id": test_tenant_id}, headers=cron_headers
        )

        again = await client.post("/v1/postings", json=body, headers=auth_headers)
        assert again.status_code == 200
        assert again.json()["state"] == "already_completed"
        assert again.json()["external_ref"] == "V-17"

        conflict = await client.post(
            "/v1/postings",
            json={"posting_id": "P-1", "document": {**self.DOCUMENT, "series": "B"}},
            headers=auth_headers,
        )
        assert conflict.status_code == 409

    async def test_get_and_list_postings(self, client: AsyncClient, auth_headers):
        for posting_id in ("P-1", "P-2"):
            await client.post(
                "/v1/postings",
                json={"posting_id": posting_id, "document": self.DOCUMENT},
                headers=auth_headers,
            )

        one = await client.get("/v1/postings/P-1", headers=auth_headers)
        missing = await client.get("/v1/postings/P-404", headers=auth_headers)
        listed = await client.get("/v1/postings", headers=auth_headers)

        assert one.status_code == 200
        assert one.json()["posting_id"] == "P-1"
        assert missing.status_code == 404
        assert {p["posting_id"] for p in listed.json()} == {"P-1", "P-2"}


class TestWorkerAPI:
    """Integration tests for worker triggers."""

    async def test_cron_trigger(
        self, client: AsyncClient, auth_headers, cron_headers, register, test_tenant_id
    ):
        processor = register(JobType.INBOUND_EVENT)
        await client.post(
            "/v1/jobs", json={"job_type": "inbound_event", "payload": EVENT}, headers=auth_headers
        )

        response = await client.post(
            "/v1/worker/run", json={"tenant_id": test_tenant_id, "limit": 5}, headers=cron_headers
        )

        assert response.status_code == 200
        data = response.json()
        assert data["processed"] == 1
        assert data["success"] == 1
        assert data["failed"] == 0
        assert data["skipped"] == 0
        assert data["results"][0]["status"] == JobStatus.COMPLETED.value
        assert len(processor.calls) == 1

    async def test_failed_job_still_answers_200(
        self, client: AsyncClient, auth_headers, cron_headers, register, test_tenant_id
    ):
        register(JobType.INBOUND_EVENT, RuntimeError("downstream down"))
        await client.post(
            "/v1/jobs", json={"job_type": "inbound_event", "payload": EVENT}, headers=auth_headers
        )

        response = await client.post(
            "/v1/worker/run", json={"tenant_id": test_tenant_id}, headers=cron_headers
        )

        assert response.status_code == 200
        data = response.json()
        assert data["failed"] == 1
        assert data["results"][0]["error"] == "Processor exception: downstream down"

    async def test_bad_cron_secret(self, client: AsyncClient, test_tenant_id):
        response = await client.post(
            "/v1/worker/run",
            json={"tenant_id": test_tenant_id},
            headers={CRON_SECRET_HEADER: "guess"},
        )
        assert response.status_code == 401

    async def test_no_credentials(self, client: AsyncClient, test_tenant_id):
        response = await client.post("/v1/worker/run", json={"tenant_id": test_tenant_id})
        assert response.status_code == 401

    async def test_manual_trigger_by_admin(
        self, client: AsyncClient, make_auth_headers, test_tenant_id
    ):
        response = await client.post(
            "/v1/worker/run",
            json={"tenant_id": test_tenant_id},
            headers=make_auth_headers(Role.COMPANY_ADMIN),
        )
        assert response.status_code == 200

    @pytest.mark.parametrize("role", [Role.COMPANY_USER, Role.COMPANY_VIEWER, Role.EXTERNAL_AUDITOR])
    async def test_manual_trigger_needs_push_capability(
        self, client: AsyncClient, make_auth_headers, test_tenant_id, role
    ):
        response = await client.post(
            "/v1/worker/run",
            json={"tenant_id": test_tenant_id},
            headers=make_auth_headers(role),
        )
        assert response.status_code == 403

    async def test_manual_trigger_for_other_tenant(
        self, client: AsyncClient, auth_headers
    ):
        response = await client.post(
            "/v1/worker/run", json={"tenant_id": "other-tenant"}, headers=auth_headers
        )
        assert response.status_code == 403

    async def test_limit_is_bounded(self, client: AsyncClient, cron_headers, test_tenant_id):
        response = await client.post(
            "/v1/worker/run", json={"tenant_id": test_tenant_id, "limit": 500}, headers=cron_headers
        )
        assert response.status_code == 422

    async def test_runs_are_listed(
        self, client: AsyncClient, auth_headers, cron_headers, test_tenant_id
    ):
        await client.post("/v1/worker/run", json={"tenant_id": test_tenant_id}, headers=cron_headers)
        await client.post("/v1/worker/run", json={"tenant_id": test_tenant_id}, headers=auth_headers)

        response = await client.get("/v1/worker/runs", headers=auth_headers)

        assert response.status_code == 200
        runs = response.json()
        assert len(runs) == 2
        assert {run["principal_kind"] for run in runs} == {"cron", "user"}


class TestAuthAPI:
    """Integration tests for token issuance."""

    async def test_get_token(self, client: AsyncClient, test_tenant_id):
        response = await client.post(
            "/auth/token",
            json={
                "api_key": "dev-key",
                "tenant_id": test_tenant_id,
                "subject": "ops@example.com",
                "role": "tenant_admin",
            },
        )

        assert response.status_code == 200
        token = response.json()["access_token"]

        stats = await client.get(
            "/v1/jobs/stats/summary", headers={"Authorization": f"Bearer {token}"}
        )
        assert stats.status_code == 200

    async def test_empty_api_key(self, client: AsyncClient, test_tenant_id):
        response = await client.post(
            "/auth/token",
            json={"api_key": "", "tenant_id": test_tenant_id, "subject": "x"},
        )
        assert response.status_code == 401


class TestHealthAPI:
    """Integration tests for health endpoints."""

    async def test_health(self, client: AsyncClient):
        response = await client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["database"] == "healthy"

    async def test_health_lists_processors(self, client: AsyncClient, register):
        register(JobType.LEDGER_SYNC)

        data = (await client.get("/health")).json()

        assert data["processors"] == ["ledger_sync"]

    async def test_ready_and_live(self, client: AsyncClient):
        ready = (await client.get("/ready")).json()
        assert ready == {"ready": True, "processors": []}
        assert (await client.get("/live")).json() == {"alive": True}

    async def test_metrics(self, client: AsyncClient):
        response = await client.get("/metrics")

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/plain")
        assert "integration_queue_depth" in response.text
