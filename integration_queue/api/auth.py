"""
Authentication and authorization utilities.

Users present a JWT carrying their tenant, identity and role. Scheduled
triggers present a shared secret instead. Either way the route receives a
Principal and passes it explicitly into the queue operation.
"""

import hmac
from datetime import UTC, datetime, timedelta
from typing import Annotated

from fastapi import Depends, Header, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt
from pydantic import BaseModel, ValidationError

from integration_queue.config import get_settings
from integration_queue.constants import CRON_SECRET_HEADER, Capability, Role
from integration_queue.errors import AuthorizationError
from integration_queue.types.principal import Principal, authorize

# Security scheme; missing credentials are reported by the dependencies below
security = HTTPBearer(auto_error=False)


class TokenData(BaseModel):
    """Data extracted from JWT token."""

    tenant_id: str
    sub: str
    role: Role
    exp: datetime


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


def create_access_token(
    tenant_id: str,
    subject: str,
    role: Role,
    expires_delta: timedelta | None = None,
) -> str:
    """
    Create a JWT access token.

    Args:
        tenant_id: The tenant identifier.
        subject: User identity.
        role: Tenant role; decides the capabilities.
        expires_delta: Optional custom expiration time.

    Returns:
        The encoded JWT token.
    """
    settings = get_settings()

    if expires_delta is None:
        expires_delta = timedelta(minutes=settings.api_access_token_expire_minutes)

    issued_at = datetime.now(UTC)
    to_encode = {
        "tenant_id": tenant_id,
        "sub": subject,
        "role": Role(role).value,
        "exp": issued_at + expires_delta,
        "iat": issued_at,
    }

    return jwt.encode(
        to_encode,
        settings.api_secret_key,
        algorithm=settings.api_algorithm,
    )


def decode_token(token: str) -> TokenData:
    """
    Decode and validate a JWT token.

    Raises:
        HTTPException: If token is invalid, expired or missing claims.
    """
    settings = get_settings()

    try:
        payload = jwt.decode(
            token,
            settings.api_secret_key,
            algorithms=[settings.api_algorithm],
        )
    except JWTError as e:
        raise _unauthorized(f"Invalid token: {e}") from e

    try:
        return TokenData(
            tenant_id=payload.get("tenant_id"),
            sub=payload.get("sub"),
            role=payload.get("role"),
            exp=datetime.fromtimestamp(payload.get("exp"), UTC),
        )
    except (TypeError, ValidationError) as e:
        raise _unauthorized("Invalid token: missing or malformed claims") from e


async def get_current_principal(
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(security)],
) -> Principal:
    """
    FastAPI dependency resolving the authenticated user.

    Raises:
        HTTPException: If authentication fails.
    """
    if credentials is None:
        raise _unauthorized("Not authenticated")

    token_data = decode_token(credentials.credentials)
    return Principal.user(
        subject=token_data.sub,
        role=token_data.role,
        tenant_id=token_data.tenant_id,
    )


async def get_trigger_principal(
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(security)],
    cron_secret: Annotated[str | None, Header(alias=CRON_SECRET_HEADER)] = None,
) -> Principal:
    """
    FastAPI dependency for worker triggers: cron secret or user token.

    A request carrying the cron header is judged on the secret alone. An
    unset secret disables cron access.

    Raises:
        HTTPException: If authentication fails.
    """
    if cron_secret is not None:
        expected = get_settings().cron_secret
        if not expected or not hmac.compare_digest(
            cron_secret.encode("utf-8"), expected.encode("utf-8")
        ):
            raise _unauthorized("Invalid cron secret")
        return Principal.cron()

    return await get_current_principal(credentials)


# Type aliases for dependency injection
CurrentPrincipal = Annotated[Principal, Depends(get_current_principal)]
TriggerPrincipal = Annotated[Principal, Depends(get_trigger_principal)]


def require_capability(
    principal: Principal,
    capability: Capability,
    tenant_id: str | None = None,
) -> None:
    """
    Authorize a principal, answering 403 when it may not proceed.

    Raises:
        HTTPException: If the capability is missing or the tenant differs.
    """
    try:
        authorize(principal, capability, tenant_id)
    except AuthorizationError as e:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(e)) from e


def validate_api_key(api_key: str, tenant_id: str) -> bool:
    """
    Validate an API key for a tenant.

    Compares against the configured key. Without one, any non-empty key is
    accepted, which is only suitable for local development.

    Args:
        api_key: The API key to validate.
        tenant_id: The tenant identifier.

    Returns:
        True if the API key is valid.
    """
    if not api_key or not tenant_id:
        return False

    expected = get_settings().api_key
    if not expected:
        return True
    return hmac.compare_digest(api_key.encode("utf-8"), expected.encode("utf-8"))
