"""
Caller authentication for the ownership-transfer API.

Callers present ``Authorization: Bearer <user uuid>``; session and API-key
issuance belong to the surrounding directory application.
"""

from __future__ import annotations

import uuid
from typing import Optional

import structlog
from fastapi import Depends, HTTPException
from fastapi.security import APIKeyHeader
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.database import get_session
from app.models.user import User

log = structlog.get_logger()

api_key_header = APIKeyHeader(name="Authorization", auto_error=False)


def parse_bearer(authorization: Optional[str]) -> uuid.UUID:
    """Extract the user id from a bearer header. Raises ValueError if malformed."""
    if not authorization:
        raise ValueError("Missing Authorization header")
    scheme, _, token = authorization.strip().partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise ValueError("Authorization header must use the Bearer scheme")
    return uuid.UUID(token.strip())


async def get_current_user(
    authorization: Optional[str] = Depends(api_key_header),
    session: AsyncSession = Depends(get_session),
) -> User:
    """Resolve the calling user; 401 when the header is missing, malformed or unknown."""
    try:
        user_id = parse_bearer(authorization)
    except ValueError:
        raise HTTPException(status_code=401, detail="Authentication required")

    user = await session.get(User, user_id)
    if user is None:
        log.info("auth.unknown_user", user_id=str(user_id))
        raise HTTPException(status_code=401, detail="User not found")
    return user
