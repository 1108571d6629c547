"""
Auth utilities for the HTTP adapter.

Verifies HS256 bearer JWTs (issued elsewhere) and resolves the caller to a
stored, non-deleted user. Falls back to the X-User-Id header outside
production (local development and tests).
"""
from fastapi import Depends, Header, HTTPException, Request
from typing import Optional
import logging

import jwt

from saas_engine.core.config import settings
from saas_engine.core.errors import PermissionError
from saas_engine.features.entitlements.resolver import has_role_bypass
from saas_engine.features.users.service import get_user
from saas_engine.models.user import Role, User

logger = logging.getLogger(__name__)


def verify_jwt(token: str) -> str:
    """
    Verify a bearer JWT and extract the user id.

    Args:
        token: JWT from Authorization header (Bearer {token})

    Returns:
        user_id: the token's 'sub' claim

    Raises:
        HTTPException 401: Invalid, expired or unverifiable token
    """
    if not settings.JWT_SECRET:
        logger.warning("JWT_SECRET not configured; rejecting bearer token")
        raise HTTPException(status_code=401, detail="Token verification unavailable")

    try:
        payload = jwt.decode(
            token,
            settings.JWT_SECRET,
            algorithms=[settings.JWT_ALGORITHM],
            options={"require": ["sub"]},
        )
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token expired")
    except jwt.InvalidTokenError as e:
        logger.debug(f"Invalid token: {e}")
        raise HTTPException(status_code=401, detail="Invalid token")

    user_id = payload.get("sub")
    if not user_id:
        raise HTTPException(status_code=401, detail="Invalid token")
    return str(user_id)


async def get_current_user_id(
    request: Request,
    x_user_id: Optional[str] = Header(None, description="Development/test user ID"),
) -> str:
    """
    Extract current user ID from request context.

    Priority:
    1. Bearer JWT from Authorization header
    2. X-User-Id header (non-production only)
    3. Raise 401 Unauthorized
    """
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        return verify_jwt(auth_header[7:])

    if x_user_id and not settings.is_production:
        return x_user_id

    raise HTTPException(
        status_code=401,
        detail="Missing Authorization (Bearer JWT) or X-User-Id header",
    )


async def get_current_user(user_id: str = Depends(get_current_user_id)) -> User:
    """Authenticated caller; unknown or soft-deleted users are rejected."""
    user = get_user(user_id)
    if user is None:
        raise HTTPException(status_code=401, detail="Unknown or deleted user")
    return user


async def require_admin(user: User = Depends(get_current_user)) -> User:
    if not has_role_bypass(user.role):
        raise PermissionError("Admin role required")
    return user


async def require_founder(user: User = Depends(get_current_user)) -> User:
    """Role changes are reserved for FOUNDER callers."""
    if user.role != Role.FOUNDER:
        raise PermissionError("Founder role required")
    return user
