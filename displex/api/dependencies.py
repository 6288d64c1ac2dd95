"""
FastAPI Dependencies - admin authentication.
"""

import hmac

from fastapi import Header, HTTPException, status
from structlog import get_logger

from displex.config import settings

logger = get_logger(__name__)


async def require_admin_key(
    x_admin_key: str | None = Header(None, description="Operator API key"),
) -> None:
    """
    FastAPI dependency guarding the admin routes with the X-Admin-Key header.

    Admin routes are disabled (403) when DISPLEX_ADMIN_API_KEY is unset.

    Raises:
        HTTPException 403 if admin access is not configured
        HTTPException 401 if the key is missing or wrong
    """
    if not settings.admin_api_key:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin API is disabled",
        )

    if x_admin_key is None or not hmac.compare_digest(
        x_admin_key.encode(), settings.admin_api_key.encode()
    ):
        logger.warning("admin_key_rejected")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid admin key",
            headers={"WWW-Authenticate": "ApiKey"},
        )
