"""Session service and stale-status tests."""

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import update

from app.database import async_session
from app.models.bot import Bot
from app.models.user import User
from app.schemas.bot import BotStatus
from app.services import bot_store, session_service


@pytest.mark.asyncio
async def test_create_or_get_session_reuses_user():
    async with async_session() as db:
        user = await session_service.create_or_get_session(db)
        assert user.session_id
        again = await session_service.create_or_get_session(db, user.session_id)
    assert again.id == user.id


@pytest.mark.asyncio
async def test_validate_session():
    async with async_session() as db:
        assert await session_service.validate_session(db, None) is None
        assert await session_service.validate_session(db, "nope") is None
        user = await session_service.create_or_get_session(db)
        assert (await session_service.validate_session(db, user.session_id)).id == user.id


@pytest.mark.asyncio
async def test_cleanup_old_sessions_cascades_to_bots():
    old_time = datetime.now(timezone.utc).replace(tzinfo=None) - timedelta(days=45)
    async with async_session() as db:
        old = await session_service.create_or_get_session(db)
        fresh = await session_service.create_or_get_session(db)
        bot = await bot_store.create_bot(db, old.id, "****abcd", "scrypt$x$y")
        await db.execute(update(User).where(User.id == old.id).values(last_active=old_time))
        await db.commit()

        removed = await session_service.cleanup_old_sessions(db, days_old=30)
    assert removed == [old.id]

    async with async_session() as db:
        assert await db.get(Bot, bot.id) is None
        assert await db.get(User, old.id) is None
        assert await session_service.get_user_by_session_id(db, fresh.session_id) is not None


@pytest.mark.asyncio
async def test_reset_stale_statuses():
    async with async_session() as db:
        user = await session_service.create_or_get_session(db)
        online = await bot_store.create_bot(db, user.id, "****aaaa", "scrypt$x$y")
        offline = await bot_store.create_bot(db, user.id, "****bbbb", "scrypt$x$y")
        await bot_store.update_status(db, online.id, user.id, BotStatus.ONLINE)
        await bot_store.update_status(db, offline.id, user.id, BotStatus.OFFLINE, "Clean")

        assert await bot_store.reset_stale_statuses(db) == 1

    async with async_session() as db:
        rows = {b.id: b for b in await bot_store.list_bots(db, user.id)}
    assert rows[online.id].status == BotStatus.OFFLINE.value
    assert rows[online.id].last_error == bot_store.STALE_STATUS_ERROR
    assert rows[offline.id].last_error == "Clean"
