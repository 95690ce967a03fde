"""
Pytest configuration and shared fixtures.
"""

import os
from collections.abc import AsyncGenerator, Callable, Generator
from datetime import datetime
from typing import Any
from uuid import uuid4

# Settings are cached on first use, so the environment is set before any
# application import.
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ["OTEL_ENABLED"] = "false"
os.environ["API_SECRET_KEY"] = "test-secret-key"
os.environ["CRON_SECRET"] = "test-cron-secret"
os.environ["API_KEY"] = ""
os.environ["LOG_LEVEL"] = "DEBUG"

import pytest
import pytest_asyncio
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession

from integration_queue.api.auth import create_access_token
from integration_queue.api.main import create_app
from integration_queue.clock import utcnow
from integration_queue.config import Settings
from integration_queue.constants import CRON_SECRET_HEADER, JobType, Role
from integration_queue.db import (
    close_db,
    create_engine_for_url,
    create_schema,
    init_db,
    make_session_factory,
)
from integration_queue.types.job import JobContext, JobResult
from integration_queue.worker.handlers import clear_handlers, register_processor

TEST_DATABASE_URL = os.getenv("TEST_DATABASE_URL")


@pytest.fixture
def database_url(tmp_path) -> str:
    """Get the test database URL: a fresh SQLite file per test by default."""
    return TEST_DATABASE_URL or f"sqlite+aiosqlite:///{tmp_path / 'queue.db'}"


@pytest_asyncio.fixture
async def async_engine(database_url: str) -> AsyncGenerator[AsyncEngine]:
    """
    Create the engine, the schema, and bind the global session factory.

    The worker and the API open their own sessions through the global
    factory, so it must point at the test database.
    """
    engine = create_engine_for_url(database_url)
    await create_schema(engine)
    await init_db(engine)

    yield engine

    await close_db()


@pytest_asyncio.fixture
async def db_session(async_engine: AsyncEngine) -> AsyncGenerator[AsyncSession]:
    """
    Create a database session for tests.

    Commit before running the worker: SQLite allows one writer at a time.
    """
    async with make_session_factory(async_engine)() as session:
        yield session
        await session.rollback()


@pytest.fixture
def fast_settings() -> Settings:
    """Settings with short leases and a fixed backoff for time-travel tests."""
    return Settings(
        worker_lease_millis=1_000,
        backoff_base_seconds=5,
        backoff_max_seconds=60,
        posting_backoff_base_seconds=10,
        posting_backoff_max_seconds=120,
    )


@pytest.fixture(autouse=True)
def isolated_processors() -> Generator[None]:
    """Every test starts with an empty processor registry."""
    clear_handlers()
    yield
    clear_handlers()


@pytest.fixture
def now() -> datetime:
    """A fixed reference time."""
    return utcnow()


@pytest.fixture
def test_tenant_id() -> str:
    """Generate a test tenant ID."""
    return f"test-tenant-{uuid4().hex[:8]}"


@pytest.fixture
def idempotency_key() -> str:
    """Generate a unique idempotency key."""
    return f"evt-{uuid4().hex}"


@pytest.fixture
def sample_event_payload() -> dict[str, Any]:
    """Create a sample inbound event payload."""
    return {
        "source": "bank",
        "event_type": "transaction.booked",
        "event_id": f"evt-{uuid4().hex[:8]}",
        "data": {"amount": "1250.00", "currency": "SEK"},
    }


@pytest.fixture
def make_auth_headers(test_tenant_id: str) -> Callable[..., dict[str, str]]:
    """Build bearer headers for a role in the test tenant."""

    def _make(role: Role = Role.TENANT_ADMIN, tenant_id: str | None = None) -> dict[str, str]:
        token = create_access_token(
            tenant_id=tenant_id or test_tenant_id,
            subject=f"{role.value}@example.com",
            role=role,
        )
        return {"Authorization": f"Bearer {token}"}

    return _make


@pytest.fixture
def auth_headers(make_auth_headers) -> dict[str, str]:
    """Bearer headers for a tenant admin."""
    return make_auth_headers(Role.TENANT_ADMIN)


@pytest.fixture
def cron_headers() -> dict[str, str]:
    """Headers of a scheduled trigger."""
    return {CRON_SECRET_HEADER: "test-cron-secret"}


@pytest_asyncio.fixture
async def app(async_engine: AsyncEngine) -> AsyncGenerator[FastAPI]:
    """Create a FastAPI app bound to the test database."""
    yield create_app()


@pytest_asyncio.fixture
async def client(app: FastAPI) -> AsyncGenerator[AsyncClient]:
    """Create an async HTTP client for testing."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


class RecordingProcessor:
    """Processor double returning scripted results and recording its calls."""

    def __init__(self, *results: JobResult | Exception):
        self.results = list(results)
        self.calls: list[JobContext] = []

    async def __call__(self, context: JobContext) -> JobResult:
        self.calls.append(context)
        outcome = self.results.pop(0) if self.results else JobResult.ok({"handled": True})
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


@pytest.fixture
def register() -> Callable[..., RecordingProcessor]:
    """Register a RecordingProcessor for a job type."""

    def _register(
        job_type: JobType = JobType.INBOUND_EVENT,
        *results: JobResult | Exception,
    ) -> RecordingProcessor:
        processor = RecordingProcessor(*results)
        register_processor(job_type, processor)
        return processor

    return _register
