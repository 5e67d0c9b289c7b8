"""
Auth utilities for the Bookshelf API.

Validates Supabase access tokens and extracts user_id from the request.
Falls back to the X-User-Id header outside production (tests, local dev).
"""
from fastapi import Header, HTTPException, Request
from typing import Optional
from bookshelf.core.config import settings
import jwt
import logging

logger = logging.getLogger(__name__)


def verify_supabase_jwt(token: str) -> Optional[str]:
    """
    Verify a Supabase access token and extract user_id.

    Args:
        token: JWT from Authorization header (Bearer {token})

    Returns:
        user_id from the 'sub' claim, or None when no secret is configured

    Raises:
        HTTPException 401: Invalid or expired token
    """
    if not settings.SUPABASE_JWT_SECRET:
        logger.debug("No SUPABASE_JWT_SECRET configured, skipping JWT validation")
        return None

    try:
        payload = jwt.decode(
            token,
            settings.SUPABASE_JWT_SECRET,
            algorithms=["HS256"],
            audience=settings.SUPABASE_JWT_AUDIENCE,
            options={"verify_signature": True, "verify_exp": True},
        )
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token expired")
    except jwt.InvalidTokenError as e:
        logger.debug(f"Invalid token: {e}")
        raise HTTPException(status_code=401, detail="Invalid token")

    user_id = payload.get("sub")
    if not user_id:
        raise HTTPException(status_code=401, detail="Token has no subject")
    return user_id


async def get_current_user_id(
    request: Request,
    x_user_id: Optional[str] = Header(None, description="Development/test user ID"),
) -> str:
    """
    Resolve the authenticated user for a request.

    Priority:
    1. Supabase JWT from Authorization header
    2. X-User-Id header (not accepted in production)
    3. Raise 401 Unauthorized
    """
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        user_id = verify_supabase_jwt(auth_header[7:].strip())
        if user_id:
            request.state.user_id = user_id
            return user_id

    if x_user_id and settings.ENV.lower() != "production":
        request.state.user_id = x_user_id
        return x_user_id

    raise HTTPException(
        status_code=401,
        detail="Missing Authorization (Bearer JWT) or X-User-Id header",
    )
