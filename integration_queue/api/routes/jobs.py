"""
Job management routes.
"""

import logging
from typing import Annotated

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Response, status
from sqlalchemy.ext.asyncio import AsyncSession

from integration_queue.api.auth import CurrentPrincipal, require_capability
from integration_queue.constants import (
    API_V1_PREFIX,
    IDEMPOTENCY_KEY_HEADER,
    Capability,
    JobStatus,
    JobType,
)
from integration_queue.db import get_async_session
from integration_queue.db.models import Job
from integration_queue.db.repository import AuditRepository, JobRepository
from integration_queue.errors import InvalidTransitionError, JobNotFoundError, QueueError
from integration_queue.queue.enqueue import EnqueueService
from integration_queue.queue.operator import RequeueService
from integration_queue.types.api import (
    AuditEventResponse,
    EnqueueJobRequest,
    EnqueueJobResponse,
    JobListResponse,
    JobResponse,
    RequeueJobResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix=f"{API_V1_PREFIX}/jobs", tags=["Jobs"])


def job_to_response(job: Job) -> JobResponse:
    """Convert a Job model to a JobResponse."""
    return JobResponse(
        id=job.id,
        tenant_id=job.tenant_id,
        job_type=job.job_type,
        idempotency_key=job.idempotency_key,
        payload=job.payload,
        status=job.status,
        attempts=job.attempts,
        max_attempts=job.max_attempts,
        claimed_by=job.claimed_by,
        claim_expires_at=job.claim_expires_at,
        next_eligible_at=job.next_eligible_at,
        result=job.result,
        last_error=job.last_error,
        external_ref=job.external_ref,
        created_at=job.created_at,
        updated_at=job.updated_at,
        completed_at=job.completed_at,
    )


@router.post(
    "",
    response_model=EnqueueJobResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Enqueue a job",
    description=(
        "Submit a job to the queue. Repeated submissions with the same idempotency "
        "key return the existing job with 200 instead of 201."
    ),
)
async def enqueue_job(
    request: EnqueueJobRequest,
    principal: CurrentPrincipal,
    response: Response,
    idempotency_key: Annotated[str | None, Header(alias=IDEMPOTENCY_KEY_HEADER)] = None,
    session: AsyncSession = Depends(get_async_session),
) -> EnqueueJobResponse:
    """
    Enqueue a job for the caller's tenant.

    Without an Idempotency-Key header the key is derived from the payload,
    so byte-identical redeliveries collapse onto one job.

    Raises:
        HTTPException: 403 without the enqueue capability, 409 if the job id
            is taken by another job.
    """
    require_capability(principal, Capability.ENQUEUE_JOBS, principal.tenant_id)

    try:
        result = await EnqueueService(session).enqueue(
            principal.tenant_id,
            request.job_type,
            request.payload,
            idempotency_key,
            job_id=request.job_id,
            max_attempts=request.max_attempts,
            run_at=request.run_at,
        )
    except QueueError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e)) from e

    await session.commit()

    job = result.job
    if result.deduped:
        response.status_code = status.HTTP_200_OK

    return EnqueueJobResponse(
        id=job.id,
        tenant_id=job.tenant_id,
        job_type=job.job_type,
        idempotency_key=job.idempotency_key,
        status=job.status,
        deduped=result.deduped,
        created_at=job.created_at,
        message="Job already exists (idempotent)" if result.deduped else "Job enqueued",
    )


@router.get(
    "/stats/summary",
    summary="Get job statistics",
    description="Get job counts by status for the tenant.",
)
async def get_job_stats(
    principal: CurrentPrincipal,
    session: AsyncSession = Depends(get_async_session),
) -> dict:
    """
    Get job statistics for the caller's tenant.

    Returns:
        Dictionary with counts by status and the queue depth.
    """
    require_capability(principal, Capability.VIEW_JOBS, principal.tenant_id)

    repo = JobRepository(session)
    stats = await repo.get_job_stats(tenant_id=principal.tenant_id)
    queue_depth = await repo.get_queue_depth(tenant_id=principal.tenant_id)

    return {
        "stats": stats,
        "queue_depth": queue_depth,
    }


@router.get(
    "/{job_id}",
    response_model=JobResponse,
    summary="Get job details",
    description="Get detailed information about a specific job.",
)
async def get_job(
    job_id: str,
    principal: CurrentPrincipal,
    session: AsyncSession = Depends(get_async_session),
) -> JobResponse:
    """
    Get job details by id.

    Jobs are looked up within the caller's tenant only, so another tenant's
    job is indistinguishable from a missing one.

    Raises:
        HTTPException: If the job is not found.
    """
    require_capability(principal, Capability.VIEW_JOBS, principal.tenant_id)

    job = await JobRepository(session).get_job(principal.tenant_id, job_id)
    if job is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Job not found",
        )

    return job_to_response(job)


@router.get(
    "",
    response_model=JobListResponse,
    summary="List jobs",
    description="List jobs for the authenticated tenant with optional filtering.",
)
async def list_jobs(
    principal: CurrentPrincipal,
    page: int = Query(default=1, ge=1),
    page_size: int = Query(default=20, ge=1, le=100),
    status: JobStatus | None = Query(default=None),
    job_type: JobType | None = Query(default=None),
    session: AsyncSession = Depends(get_async_session),
) -> JobListResponse:
    """
    List jobs for the caller's tenant, newest first.
    """
    require_capability(principal, Capability.VIEW_JOBS, principal.tenant_id)

    offset = (page - 1) * page_size
    jobs, total = await JobRepository(session).list_jobs(
        tenant_id=principal.tenant_id,
        status=status,
        job_type=job_type,
        limit=page_size,
        offset=offset,
    )

    return JobListResponse(
        jobs=[job_to_response(job) for job in jobs],
        total=total,
        page=page,
        page_size=page_size,
        has_next=(page * page_size) < total,
    )


@router.post(
    "/{job_id}/requeue",
    response_model=RequeueJobResponse,
    summary="Requeue a job",
    description=(
        "Put a dead-lettered, stuck or retry-pending job back in the queue. "
        "The attempt count is kept. The override is audited."
    ),
)
async def requeue_job(
    job_id: str,
    principal: CurrentPrincipal,
    session: AsyncSession = Depends(get_async_session),
) -> RequeueJobResponse:
    """
    Operator requeue.

    Raises:
        HTTPException: 403 without the requeue capability, 404 if the job
            does not exist, 409 if it is queued, completed or still under
            a live lease.
    """
    require_capability(principal, Capability.REQUEUE_JOBS, principal.tenant_id)

    try:
        job, previous_status = await RequeueService(session).requeue(
            principal.tenant_id, job_id, principal
        )
    except JobNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e)) from e
    except InvalidTransitionError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e)) from e

    await session.commit()

    return RequeueJobResponse(
        id=job.id,
        status=job.status,
        previous_status=previous_status,
        attempts=job.attempts,
        max_attempts=job.max_attempts,
    )


@router.get(
    "/{job_id}/events",
    response_model=list[AuditEventResponse],
    summary="List operator actions on a job",
)
async def list_job_events(
    job_id: str,
    principal: CurrentPrincipal,
    limit: int = Query(default=50, ge=1, le=200),
    session: AsyncSession = Depends(get_async_session),
) -> list[AuditEventResponse]:
    """Audited overrides such as requeues, newest first."""
    require_capability(principal, Capability.VIEW_JOBS, principal.tenant_id)

    if await JobRepository(session).get_job(principal.tenant_id, job_id) is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Job not found")

    events = await AuditRepository(session).list_events(principal.tenant_id, job_id, limit)
    return [AuditEventResponse.model_validate(event, from_attributes=True) for event in events]
