"""
Token issuance for portal users.

The token carries the tenant, the user and their tenant role; the worker
and requeue routes decide capabilities from that role.
"""

import logging

from fastapi import APIRouter, HTTPException, status

from integration_queue.api.auth import create_access_token, validate_api_key
from integration_queue.config import get_settings
from integration_queue.types.api import AuthRequest, TokenResponse

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/auth", tags=["Authentication"])


@router.post(
    "/token",
    response_model=TokenResponse,
    summary="Get access token",
    description="Exchange an API key for a JWT carrying tenant, user and role.",
)
async def get_token(request: AuthRequest) -> TokenResponse:
    """
    Issue a token for a tenant user.

    Raises:
        HTTPException: 401 if the API key is rejected.
    """
    if not validate_api_key(request.api_key, request.tenant_id):
        logger.warning("Rejected API key", extra={"tenant_id": request.tenant_id})
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid API key",
        )

    expires_in = get_settings().api_access_token_expire_minutes * 60
    token = create_access_token(
        tenant_id=request.tenant_id,
        subject=request.subject,
        role=request.role,
    )
    logger.info(
        "Issued access token",
        extra={"tenant_id": request.tenant_id, "role": request.role.value},
    )
    return TokenResponse(access_token=token, expires_in=expires_in)
