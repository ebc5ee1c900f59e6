"""Session service — anonymous per-browser users for multi-tenant mode."""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timedelta, timezone

from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.user import User

logger = logging.getLogger(__name__)


def generate_session_id() -> str:
    return str(uuid.uuid4())


async def get_user_by_session_id(db: AsyncSession, session_id: str) -> User | None:
    result = await db.execute(select(User).where(User.session_id == session_id))
    return result.scalar_one_or_none()


async def _touch(db: AsyncSession, user: User) -> None:
    await db.execute(update(User).where(User.id == user.id).values(last_active=func.now()))
    await db.commit()
    await db.refresh(user)


async def create_or_get_session(db: AsyncSession, session_id: str | None = None) -> User:
    """Return the user for ``session_id``, creating one (and an id) if needed."""
    if not session_id:
        session_id = generate_session_id()

    user = await get_user_by_session_id(db, session_id)
    if user:
        await _touch(db, user)
        return user

    user = User(session_id=session_id)
    db.add(user)
    await db.commit()
    await db.refresh(user)
    logger.info("New user %d created for a new session", user.id)
    return user


async def validate_session(db: AsyncSession, session_id: str | None) -> User | None:
    if not session_id:
        return None
    user = await get_user_by_session_id(db, session_id)
    if user:
        await _touch(db, user)
    return user


async def cleanup_old_sessions(db: AsyncSession, days_old: int = 30) -> list[int]:
    """Delete users inactive for more than ``days_old`` days; their bots cascade.

    Returns the ids of the deleted users so live sessions can be dropped too.
    """
    # SQLite CURRENT_TIMESTAMP is naive UTC
    cutoff = datetime.now(timezone.utc).replace(tzinfo=None) - timedelta(days=days_old)
    result = await db.execute(select(User.id).where(User.last_active < cutoff))
    user_ids = list(result.scalars().all())
    if user_ids:
        await db.execute(delete(User).where(User.id.in_(user_ids)))
        await db.commit()
        logger.info("Cleaned up %d inactive sessions", len(user_ids))
    return user_ids
