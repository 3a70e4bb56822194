"""Security dependencies for FastAPI routes."""

import hmac
import os

import structlog
from fastapi import HTTPException, Request, status

logger = structlog.get_logger(__name__)


def require_admin_token(request: Request) -> bool:
    """
    Require a valid admin token for answer-store routes.

    - hmac.compare_digest() for constant-time comparison
    - 401 for a missing token, 403 for an invalid one or an unset ADMIN_TOKEN

    Usage:
        @router.put("/anomaly-questions/{question_id}/answer")
        async def answer(..., _: bool = Depends(require_admin_token)):
            ...
    """
    admin_token = os.environ.get("ADMIN_TOKEN")
    if not admin_token:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="ADMIN_TOKEN not configured. Contact system administrator.",
        )

    provided_token = request.headers.get("X-Admin-Token")
    if not provided_token:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Admin token required. Provide X-Admin-Token header.",
            headers={"WWW-Authenticate": "Bearer"},
        )

    if not hmac.compare_digest(provided_token.encode(), admin_token.encode()):
        logger.warning(
            "invalid_admin_token",
            path=request.url.path,
            client=request.client.host if request.client else "unknown",
        )
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Invalid admin token",
        )

    return True
