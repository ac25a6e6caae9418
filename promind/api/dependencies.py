"""
FastAPI Dependencies - operational API authentication.
"""

import secrets

from fastapi import Header, HTTPException, status
from structlog import get_logger

from promind.config import settings
from promind.exceptions import AuthenticationError

logger = get_logger(__name__)


def verify_admin_key(x_api_key: str | None) -> None:
    """
    Check a presented key against ADMIN_API_KEY.

    Raises:
        AuthenticationError: Key missing, wrong, or operational API disabled
    """
    if not settings.admin_api_key:
        raise AuthenticationError("Operational API is disabled")
    if not x_api_key:
        raise AuthenticationError("Missing API key")
    if not secrets.compare_digest(x_api_key.encode(), settings.admin_api_key.encode()):
        raise AuthenticationError("Invalid API key")


async def require_admin_key(
    x_api_key: str | None = Header(None, description="Operational API key"),
) -> None:
    """
    FastAPI dependency guarding operational endpoints.

    Usage:
        @router.post("/v1/orders/redeem", dependencies=[Depends(require_admin_key)])

    Raises:
        HTTPException 401 if the key is missing or invalid
    """
    try:
        verify_admin_key(x_api_key)
    except AuthenticationError as exc:
        logger.warning("admin_key_rejected", reason=exc.message)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=str(exc),
            headers={"WWW-Authenticate": "ApiKey"},
        ) from exc
