"""Session-aware dependencies for member APIs."""

from __future__ import annotations

from uuid import UUID

from fastapi import Depends, Header, HTTPException, status
from loguru import logger
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from truckstamp_api.db.session import get_session
from truckstamp_api.models.user import User


async def get_session_subject(
    session_user: str | None = Header(None, alias="X-Session-User"),
    db: AsyncSession = Depends(get_session),
) -> User | None:
    """Resolve the forwarded session user, or ``None`` when there is no valid principal."""

    if not session_user:
        return None

    try:
        user_id = UUID(session_user)
    except ValueError:
        logger.warning("Ignoring malformed session user header", value=session_user[:64])
        return None

    stmt = select(User).where(User.id == user_id)
    result = await db.execute(stmt)
    return result.scalar_one_or_none()


async def require_member_session(subject: User | None = Depends(get_session_subject)) -> User:
    if subject is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"error": "Unauthorized", "code": "UNAUTHORIZED"},
        )
    return subject
