"""
Admin authentication for billing operations.

Admins authenticate with the shared X-Admin-Key header (ADMIN_KEY).
The actor identity recorded in audits is a short hash of the key, never
the key itself.
"""
import hashlib
import hmac
import os
from dataclasses import dataclass
from typing import Optional

from fastapi import HTTPException, Request

from bookshelf.core.config import settings


@dataclass
class AdminActor:
    """Represents an authenticated admin actor."""
    actor_id: str  # "admin_key:<hash>"
    auth_mechanism: str = "x_admin_key"


def get_admin_api_key() -> Optional[str]:
    """Prefer ADMIN_API_KEY env var; fall back to settings.ADMIN_KEY."""
    return os.getenv("ADMIN_API_KEY") or settings.ADMIN_KEY


def get_admin_actor(request: Request) -> Optional[AdminActor]:
    expected_key = get_admin_api_key()
    if not expected_key:
        return None

    header_key = request.headers.get("X-Admin-Key", "").strip()
    if not header_key or not hmac.compare_digest(header_key, expected_key):
        return None

    key_hash = hashlib.sha256(header_key.encode()).hexdigest()[:16]
    return AdminActor(actor_id=f"admin_key:{key_hash}")


def require_admin(request: Request) -> AdminActor:
    """
    FastAPI dependency: require admin authentication.

    Usage:
        @router.get("/admin/endpoint")
        def admin_endpoint(actor: AdminActor = Depends(require_admin)):
            ...
    """
    if not get_admin_api_key():
        raise HTTPException(
            status_code=503,
            detail="Admin authentication not configured (set ADMIN_KEY)",
        )

    actor = get_admin_actor(request)
    if not actor:
        raise HTTPException(
            status_code=401,
            detail="Unauthorized: invalid or missing X-Admin-Key header",
        )
    return actor
