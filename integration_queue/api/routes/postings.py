"""
Outbound posting routes.
"""

from dataclasses import asdict

from fastapi import APIRouter, Depends, HTTPException, Query, Response, status
from sqlalchemy.ext.asyncio import AsyncSession

from integration_queue.api.auth import CurrentPrincipal, require_capability
from integration_queue.constants import API_V1_PREFIX, Capability, JobStatus, PostingState
from integration_queue.db import get_async_session
from integration_queue.errors import PostingConflictError
from integration_queue.queue.postings import PostingRecord, PostingService
from integration_queue.types.api import PostingResponse, SubmitPostingRequest

router = APIRouter(prefix=f"{API_V1_PREFIX}/postings", tags=["Postings"])


def posting_to_response(record: PostingRecord) -> PostingResponse:
    return PostingResponse(**asdict(record))


@router.post(
    "",
    response_model=PostingResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Submit a posting",
    description=(
        "Queue a voucher or invoice for booking in the bookkeeping system. "
        "Resubmitting returns the existing record; a booked posting with a "
        "different body is a conflict."
    ),
)
async def submit_posting(
    request: SubmitPostingRequest,
    principal: CurrentPrincipal,
    response: Response,
    session: AsyncSession = Depends(get_async_session),
) -> PostingResponse:
    """
    Submit an outbound posting for the caller's tenant.

    Raises:
        HTTPException: 403 without the enqueue capability, 409 on a body
            conflict with a completed posting.
    """
    require_capability(principal, Capability.ENQUEUE_JOBS, principal.tenant_id)

    try:
        record = await PostingService(session).submit_posting(
            principal.tenant_id,
            request.posting_id,
            request.document,
            max_attempts=request.max_attempts,
        )
    except PostingConflictError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e)) from e

    await session.commit()

    if record.state != PostingState.QUEUED:
        response.status_code = status.HTTP_200_OK
    return posting_to_response(record)


@router.get(
    "/{posting_id}",
    response_model=PostingResponse,
    summary="Get a posting",
)
async def get_posting(
    posting_id: str,
    principal: CurrentPrincipal,
    session: AsyncSession = Depends(get_async_session),
) -> PostingResponse:
    """
    Get a posting by the caller's posting id.

    Raises:
        HTTPException: If the posting is not found.
    """
    require_capability(principal, Capability.VIEW_JOBS, principal.tenant_id)

    record = await PostingService(session).get_posting(principal.tenant_id, posting_id)
    if record is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Posting not found",
        )
    return posting_to_response(record)


@router.get(
    "",
    response_model=list[PostingResponse],
    summary="List postings",
)
async def list_postings(
    principal: CurrentPrincipal,
    status: JobStatus | None = Query(default=None),
    limit: int = Query(default=200, ge=1, le=500),
    session: AsyncSession = Depends(get_async_session),
) -> list[PostingResponse]:
    """List the caller's postings, newest first."""
    require_capability(principal, Capability.VIEW_JOBS, principal.tenant_id)

    records, _ = await PostingService(session).list_postings(
        principal.tenant_id, status=status, limit=limit
    )
    return [posting_to_response(record) for record in records]
