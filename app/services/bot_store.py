"""Bot store — durable bot records and connection history (multi-tenant mode).

Every call commits on its own; callers must not assume two calls are atomic.
"""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import case, delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.bot import Bot
from app.models.connection_history import ConnectionHistory
from app.schemas.bot import BotStatus, HistoryEntry, StatusCounts
from app.services.history import HISTORY_CAPACITY

STALE_STATUS_ERROR = "Not running: re-add the token to reconnect"


async def create_bot(
    db: AsyncSession, user_id: int, token_preview: str, token_hash: str
) -> Bot:
    bot = Bot(
        user_id=user_id,
        token_preview=token_preview,
        token_hash=token_hash,
        status=BotStatus.CONNECTING.value,
    )
    db.add(bot)
    await db.commit()
    await db.refresh(bot)
    return bot


async def get_bot(db: AsyncSession, bot_id: int, user_id: int | None) -> Bot | None:
    stmt = select(Bot).where(Bot.id == bot_id, Bot.user_id == user_id)
    result = await db.execute(stmt)
    return result.scalar_one_or_none()


async def list_bots(db: AsyncSession, user_id: int | None = None) -> list[Bot]:
    """Bots newest first; all owners when ``user_id`` is None."""
    stmt = select(Bot).order_by(Bot.created_at.desc(), Bot.id.desc())
    if user_id is not None:
        stmt = stmt.where(Bot.user_id == user_id)
    result = await db.execute(stmt)
    return list(result.scalars().all())


async def update_status(
    db: AsyncSession,
    bot_id: int,
    user_id: int | None,
    status: BotStatus,
    last_error: str | None = None,
) -> int:
    stmt = (
        update(Bot)
        .where(Bot.id == bot_id, Bot.user_id == user_id)
        .values(status=status.value, last_error=last_error)
    )
    result = await db.execute(stmt)
    await db.commit()
    return result.rowcount


async def delete_bot(db: AsyncSession, bot_id: int, user_id: int | None) -> int:
    result = await db.execute(delete(Bot).where(Bot.id == bot_id, Bot.user_id == user_id))
    await db.commit()
    return result.rowcount


async def add_history(
    db: AsyncSession,
    bot_id: int,
    type_: str,
    message: str,
    timestamp: datetime | None = None,
) -> int:
    row = ConnectionHistory(bot_id=bot_id, type=type_, message=message)
    if timestamp is not None:
        row.timestamp = timestamp.replace(tzinfo=None)
    db.add(row)
    await db.commit()
    return row.id


async def trim_history(db: AsyncSession, bot_id: int, keep: int = HISTORY_CAPACITY) -> int:
    """Delete all but the newest ``keep`` history rows of a bot."""
    newest = (
        select(ConnectionHistory.id)
        .where(ConnectionHistory.bot_id == bot_id)
        .order_by(ConnectionHistory.id.desc())
        .limit(keep)
    )
    stmt = delete(ConnectionHistory).where(
        ConnectionHistory.bot_id == bot_id,
        ConnectionHistory.id.not_in(newest.scalar_subquery()),
    )
    result = await db.execute(stmt)
    await db.commit()
    return result.rowcount


async def get_history(
    db: AsyncSession, bot_id: int, user_id: int | None, limit: int = HISTORY_CAPACITY
) -> list[HistoryEntry]:
    """History of a bot owned by ``user_id``, newest first."""
    stmt = (
        select(ConnectionHistory)
        .join(Bot, ConnectionHistory.bot_id == Bot.id)
        .where(ConnectionHistory.bot_id == bot_id, Bot.user_id == user_id)
        .order_by(ConnectionHistory.id.desc())
        .limit(limit)
    )
    result = await db.execute(stmt)
    return [HistoryEntry.model_validate(row) for row in result.scalars().all()]


async def get_status_counts(db: AsyncSession, user_id: int | None = None) -> StatusCounts:
    def _count(status: BotStatus):
        return func.coalesce(func.sum(case((Bot.status == status.value, 1), else_=0)), 0)

    stmt = select(
        func.count(Bot.id),
        _count(BotStatus.ONLINE),
        _count(BotStatus.OFFLINE),
        _count(BotStatus.CONNECTING),
    )
    if user_id is not None:
        stmt = stmt.where(Bot.user_id == user_id)
    total, online, offline, connecting = (await db.execute(stmt)).one()
    return StatusCounts(total=total, online=online, offline=offline, connecting=connecting)


async def reset_stale_statuses(db: AsyncSession) -> int:
    """Mark bots left online/connecting by a previous process as offline.

    Sessions are not resumed after a restart because the plaintext token is
    not kept durably.
    """
    stmt = (
        update(Bot)
        .where(Bot.status != BotStatus.OFFLINE.value)
        .values(status=BotStatus.OFFLINE.value, last_error=STALE_STATUS_ERROR)
    )
    result = await db.execute(stmt)
    await db.commit()
    return result.rowcount
