"""
Worker trigger routes.

The same endpoint serves scheduled triggers (cron secret header) and manual
runs by users whose role may push data downstream.
"""

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from integration_queue.api.auth import CurrentPrincipal, TriggerPrincipal, require_capability
from integration_queue.constants import API_V1_PREFIX, Capability
from integration_queue.db import get_async_session
from integration_queue.db.repository import AuditRepository
from integration_queue.types.api import (
    JobRunResultResponse,
    RunWorkerRequest,
    RunWorkerResponse,
    WorkerRunResponse,
)
from integration_queue.worker.main import Worker

router = APIRouter(prefix=f"{API_V1_PREFIX}/worker", tags=["Worker"])


@router.post(
    "/run",
    response_model=RunWorkerResponse,
    summary="Run the worker once",
    description=(
        "Process one batch of due jobs for a tenant. Answers 200 with a per-job "
        "summary even when individual jobs fail."
    ),
)
async def run_worker(
    request: RunWorkerRequest,
    principal: TriggerPrincipal,
) -> RunWorkerResponse:
    """
    Trigger a worker pass.

    Raises:
        HTTPException: 401 without valid credentials, 403 if the caller may
            not push data downstream for the tenant.
    """
    require_capability(principal, Capability.PUSH_DOWNSTREAM, request.tenant_id)

    summary = await Worker().run_once(request.tenant_id, principal, request.limit)

    return RunWorkerResponse(
        run_id=summary.run_id,
        tenant_id=summary.tenant_id,
        processed=summary.processed,
        success=summary.success,
        failed=summary.failed,
        skipped=summary.skipped,
        duration_ms=summary.duration_ms,
        results=[
            JobRunResultResponse(
                job_id=r.job_id,
                success=r.success,
                skipped=r.skipped,
                status=r.status,
                error=r.error,
            )
            for r in summary.results
        ],
    )


@router.get(
    "/runs",
    response_model=list[WorkerRunResponse],
    summary="List recent worker runs",
)
async def list_worker_runs(
    principal: CurrentPrincipal,
    limit: int = Query(default=20, ge=1, le=100),
    session: AsyncSession = Depends(get_async_session),
) -> list[WorkerRunResponse]:
    """Recent audited runs for the caller's tenant, newest first."""
    require_capability(principal, Capability.VIEW_JOBS, principal.tenant_id)

    runs = await AuditRepository(session).list_worker_runs(principal.tenant_id, limit)
    return [WorkerRunResponse.model_validate(run, from_attributes=True) for run in runs]
