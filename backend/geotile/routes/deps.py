"""
Shared route helpers: caller identity and error translation.
"""

import logging
from typing import Optional

from fastapi import Header, HTTPException, status

from geotile.services.errors import GeoreferenceError

logger = logging.getLogger(__name__)

# HTTP status per error kind
STATUS_BY_KIND = {
    "validation": status.HTTP_400_BAD_REQUEST,
    "numeric": status.HTTP_400_BAD_REQUEST,
    "authorization": status.HTTP_403_FORBIDDEN,
    "not_found": status.HTTP_404_NOT_FOUND,
    "conflict": status.HTTP_409_CONFLICT,
    "quota": status.HTTP_429_TOO_MANY_REQUESTS,
    "pipeline": status.HTTP_500_INTERNAL_SERVER_ERROR,
}


def get_current_user(x_user_id: Optional[str] = Header(default=None)) -> str:
    """
    Caller identity, forwarded by the authenticating gateway in ``X-User-Id``.
    """
    if not x_user_id or not x_user_id.strip():
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={
                "code": "UNAUTHENTICATED",
                "message": "Missing X-User-Id header",
            },
        )
    return x_user_id.strip()


def http_error(error: GeoreferenceError) -> HTTPException:
    """Convert a service error to an HTTPException with the standard detail body."""
    status_code = STATUS_BY_KIND.get(error.kind, status.HTTP_500_INTERNAL_SERVER_ERROR)
    if status_code >= 500:
        logger.error(f"{error.code}: {error.message}")
    return HTTPException(
        status_code=status_code,
        detail={
            "code": error.code,
            "message": error.message,
            "details": error.details,
        },
    )
