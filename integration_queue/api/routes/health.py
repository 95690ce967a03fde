"""
Health, readiness and metrics routes.

Readiness reports which job types have a processor: a queue without
processors accepts work it can never deliver, and operators want to see
that before traffic arrives.
"""

import logging

from fastapi import APIRouter, Depends
from fastapi.responses import Response
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from integration_queue import __version__
from integration_queue.clock import utcnow
from integration_queue.db import get_async_session
from integration_queue.observability.metrics import get_metrics
from integration_queue.types.api import HealthResponse
from integration_queue.worker.handlers import list_handlers

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Health"])


async def _database_reachable(session: AsyncSession) -> bool:
    try:
        await session.execute(text("SELECT 1"))
    except SQLAlchemyError:
        logger.warning("Database health check failed", exc_info=True)
        return False
    return True


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
    description="Report the job store connection and the registered processors.",
)
async def health_check(
    session: AsyncSession = Depends(get_async_session),
) -> HealthResponse:
    """Degraded when the job store is unreachable."""
    database_ok = await _database_reachable(session)

    return HealthResponse(
        status="healthy" if database_ok else "degraded",
        version=__version__,
        database="healthy" if database_ok else "unhealthy",
        processors=list_handlers(),
        timestamp=utcnow(),
    )


@router.get(
    "/ready",
    summary="Readiness check",
    description="Ready once the job store answers.",
)
async def readiness_check(
    session: AsyncSession = Depends(get_async_session),
) -> dict:
    return {"ready": await _database_reachable(session), "processors": list_handlers()}


@router.get("/live", summary="Liveness check")
async def liveness_check() -> dict:
    return {"alive": True}


@router.get(
    "/metrics",
    summary="Prometheus metrics",
    description="Queue depth, job outcomes, claims and API traffic in Prometheus format.",
)
async def metrics() -> Response:
    collector = get_metrics()
    return Response(content=collector.get_metrics(), media_type=collector.get_content_type())
