"""
Auth utilities for the back-office API.

Validates HS256 bearer JWTs and extracts user_id from the 'sub' claim.
Falls back to the X-User-Id header when AUTH_ALLOW_HEADER_FALLBACK is on (tests).
"""
from fastapi import Header, Request
from typing import Optional
import jwt
import logging

from backoffice.core.config import settings
from backoffice.core.errors import UnauthorizedError

logger = logging.getLogger("backoffice")


def verify_jwt(token: str, secret: Optional[str] = None) -> Optional[str]:
    """
    Verify a bearer JWT and extract user_id.

    Returns:
        user_id from the 'sub' claim, or None when no secret is configured

    Raises:
        UnauthorizedError: invalid, expired, or subject-less token
    """
    key = secret or settings.AUTH_JWT_SECRET
    if not key:
        logger.debug("No AUTH_JWT_SECRET configured, skipping JWT validation")
        return None

    try:
        payload = jwt.decode(
            token,
            key,
            algorithms=["HS256"],
            options={"verify_signature": True, "verify_exp": True},
        )
    except jwt.ExpiredSignatureError:
        raise UnauthorizedError("Token expired")
    except jwt.InvalidTokenError as e:
        logger.debug(f"Invalid token: {e}")
        raise UnauthorizedError("Invalid token")

    user_id = payload.get("sub")
    if not user_id:
        raise UnauthorizedError("Invalid token")
    return str(user_id)


async def get_current_user_id(
    request: Request,
    x_user_id: Optional[str] = Header(None, description="Test user ID (header fallback)"),
) -> str:
    """
    Extract current user ID from request context.

    Priority:
    1. Bearer JWT from Authorization header
    2. X-User-Id header (only when header fallback is allowed)
    3. Raise 401 Unauthorized
    """
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        user_id = verify_jwt(auth_header[7:])
        if user_id:
            return user_id

    if x_user_id and settings.AUTH_ALLOW_HEADER_FALLBACK:
        return x_user_id

    raise UnauthorizedError("Missing Authorization (Bearer JWT) or X-User-Id header")
