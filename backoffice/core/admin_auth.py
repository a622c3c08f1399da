"""
Admin capability check for back-office operations.

Admin endpoints require X-Admin-Key to match ADMIN_KEY. No key configured
means admin endpoints are closed.
"""
import hashlib
import hmac
import logging
from dataclasses import dataclass

from fastapi import Request

from backoffice.core.config import settings
from backoffice.core.errors import PermissionError

logger = logging.getLogger("backoffice")


@dataclass
class AdminActor:
    """Represents an authenticated admin actor."""
    actor_id: str  # "admin_key:<hash prefix>"


def _key_fingerprint(key: str) -> str:
    return hashlib.sha256(key.encode()).hexdigest()[:12]


def require_admin(request: Request) -> AdminActor:
    """FastAPI dependency: allow the request only with a valid admin key."""
    expected_key = settings.ADMIN_KEY
    header_key = request.headers.get("X-Admin-Key", "").strip()

    if not expected_key or not header_key or not hmac.compare_digest(header_key, expected_key):
        logger.warning(
            "[admin] access denied",
            extra={"path": request.url.path, "key_present": bool(header_key)},
        )
        raise PermissionError("Admin access required")

    return AdminActor(actor_id=f"admin_key:{_key_fingerprint(header_key)}")
