"""Bot manager tests in multi-tenant mode (durable store + owner scoping)."""

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import func, select, update

from app.database import async_session
from app.main import expire_sessions
from app.models.bot import Bot
from app.models.connection_history import ConnectionHistory
from app.models.user import User
from app.schemas.bot import BotStatus, HistoryType
from app.services import bot_store
from app.services.bot_manager import BotManager
from app.services.errors import CreationError, NotFoundError, NotRunningError
from app.utils.crypto import verify_token
from conftest import TOKEN, TOKEN_60, FakeConnectionFactory, RecordingListener


@pytest.mark.asyncio
async def test_add_requires_owner(multi_manager):
    with pytest.raises(CreationError):
        await multi_manager.add(None, TOKEN)


@pytest.mark.asyncio
async def test_add_stores_hash_and_preview_but_not_the_token(multi_manager, make_user):
    owner = await make_user()
    result = await multi_manager.add(owner, TOKEN)

    async with async_session() as db:
        row = await bot_store.get_bot(db, result.id, owner)
    assert row.token_preview == "*" * (len(TOKEN) - 4) + TOKEN[-4:]
    assert row.status == BotStatus.CONNECTING.value
    assert TOKEN not in row.token_hash
    assert verify_token(TOKEN, row.token_hash)


@pytest.mark.asyncio
async def test_owners_are_isolated(multi_manager, make_user, connection_factory):
    alice = await make_user()
    bob = await make_user()
    result = await multi_manager.add(alice, TOKEN)

    assert await multi_manager.get(result.id, bob) is None
    assert await multi_manager.list_all(bob) == []
    with pytest.raises(NotFoundError):
        await multi_manager.toggle(result.id, bob)
    with pytest.raises(NotFoundError):
        await multi_manager.remove(result.id, bob)

    assert (await multi_manager.get(result.id, alice)).id == result.id
    assert connection_factory.last.disconnect_calls == 0


@pytest.mark.asyncio
async def test_list_is_newest_first(multi_manager, make_user):
    owner = await make_user()
    first = await multi_manager.add(owner, TOKEN)
    second = await multi_manager.add(owner, TOKEN_60)

    assert [b.id for b in await multi_manager.list_all(owner)] == [second.id, first.id]


@pytest.mark.asyncio
async def test_transitions_are_mirrored_to_the_store(multi_manager, make_user, connection_factory):
    owner = await make_user()
    result = await multi_manager.add(owner, TOKEN)
    connection_factory.last.emit_connected()
    connection_factory.last.emit_error(RuntimeError("ECONNREFUSED gateway"))
    await multi_manager.wait_idle()

    async with async_session() as db:
        row = await bot_store.get_bot(db, result.id, owner)
        history = await bot_store.get_history(db, result.id, owner)
    assert row.status == BotStatus.OFFLINE.value
    assert row.last_error == "Discord gateway connection failed"
    assert [e.type for e in history] == [HistoryType.ERROR, HistoryType.SUCCESS]


@pytest.mark.asyncio
async def test_stored_history_is_trimmed(multi_manager, make_user, connection_factory):
    owner = await make_user()
    result = await multi_manager.add(owner, TOKEN)
    for i in range(13):
        connection_factory.last.emit_disconnected(RuntimeError(f"drop {i}"))
    await multi_manager.wait_idle()

    async with async_session() as db:
        count = await db.scalar(
            select(func.count(ConnectionHistory.id)).where(ConnectionHistory.bot_id == result.id)
        )
    assert count == 10


@pytest.mark.asyncio
async def test_bot_from_a_previous_process_is_not_running(multi_manager, make_user, connection_factory):
    owner = await make_user()
    result = await multi_manager.add(owner, TOKEN)
    connection_factory.last.emit_connected()
    await multi_manager.wait_idle()

    restarted = BotManager(multi_tenant=True, connection_factory=FakeConnectionFactory())
    view = await restarted.get(result.id, owner)
    assert view is not None
    assert view.status == BotStatus.ONLINE
    assert view.connection_history[0].type == HistoryType.SUCCESS

    with pytest.raises(NotRunningError):
        await restarted.toggle(result.id, owner)

    await restarted.remove(result.id, owner)
    assert await restarted.get(result.id, owner) is None
    with pytest.raises(NotFoundError):
        await restarted.remove(result.id, owner)


@pytest.mark.asyncio
async def test_remove_deletes_row_and_history(multi_manager, make_user, connection_factory):
    owner = await make_user()
    result = await multi_manager.add(owner, TOKEN)
    connection_factory.last.emit_connected()
    await multi_manager.wait_idle()

    await multi_manager.remove(result.id, owner)
    await multi_manager.wait_idle()

    async with async_session() as db:
        assert await db.get(Bot, result.id) is None
        count = await db.scalar(
            select(func.count(ConnectionHistory.id)).where(ConnectionHistory.bot_id == result.id)
        )
    assert count == 0


@pytest.mark.asyncio
async def test_toggle_persists_status(multi_manager, make_user, connection_factory):
    owner = await make_user()
    result = await multi_manager.add(owner, TOKEN)
    connection_factory.last.emit_connected()
    await multi_manager.wait_idle()

    assert await multi_manager.toggle(result.id, owner) == BotStatus.OFFLINE
    async with async_session() as db:
        row = await bot_store.get_bot(db, result.id, owner)
    assert row.status == BotStatus.OFFLINE.value


@pytest.mark.asyncio
async def test_counts_are_per_owner(multi_manager, make_user, connection_factory):
    alice = await make_user()
    bob = await make_user()
    await multi_manager.add(alice, TOKEN)
    await multi_manager.add(alice, TOKEN_60)
    await multi_manager.add(bob, TOKEN)
    connection_factory.created[0].emit_connected()
    await multi_manager.wait_idle()

    counts = await multi_manager.status_counts(alice)
    assert counts.model_dump() == {"online": 1, "offline": 0, "connecting": 1, "total": 2}
    assert (await multi_manager.status_counts(bob)).total == 1


@pytest.mark.asyncio
async def test_broadcasts_only_reach_the_owner(multi_manager, make_user, connection_factory):
    alice = await make_user()
    bob = await make_user()
    alice_listener, bob_listener = RecordingListener(), RecordingListener()
    multi_manager.broadcaster.register(alice, alice_listener)
    multi_manager.broadcaster.register(bob, bob_listener)

    await multi_manager.add(alice, TOKEN)
    connection_factory.last.emit_connected()
    await multi_manager.wait_idle()

    assert alice_listener.of_type("botsUpdate")[-1]["bots"][0]["status"] == "online"
    assert bob_listener.messages == []


@pytest.mark.asyncio
async def test_forget_owner_drops_live_sessions(multi_manager, make_user, connection_factory):
    owner = await make_user()
    other = await make_user()
    await multi_manager.add(owner, TOKEN)
    await multi_manager.add(other, TOKEN_60)

    assert await multi_manager.forget_owner(owner) == 1
    assert multi_manager.bot_count == 1
    assert connection_factory.created[0].disconnect_calls == 1
    assert connection_factory.created[1].disconnect_calls == 0


@pytest.mark.asyncio
async def test_store_failure_is_creation_error(multi_manager, connection_factory):
    # No such user: the foreign key rejects the row
    with pytest.raises(CreationError, match="Failed to store bot"):
        await multi_manager.add(9999, TOKEN)
    assert multi_manager.bot_count == 0
    assert connection_factory.last.connect_calls == 0


@pytest.mark.asyncio
async def test_live_and_stored_views_use_utc_timestamps(multi_manager, make_user, connection_factory):
    owner = await make_user()
    stored = await multi_manager.add(owner, TOKEN)
    connection_factory.last.emit_connected()
    await multi_manager.wait_idle()
    live = await multi_manager.add(owner, TOKEN_60)
    connection_factory.last.emit_connected()
    await multi_manager.wait_idle()

    restarted = BotManager(multi_tenant=True, connection_factory=FakeConnectionFactory())
    views = await multi_manager.list_all(owner) + [await restarted.get(stored.id, owner)]

    assert {v.id for v in views} == {stored.id, live.id}
    for view in views:
        assert view.created_at.utcoffset() == timedelta(0)
        for entry in view.connection_history:
            assert entry.timestamp.utcoffset() == timedelta(0)


@pytest.mark.asyncio
async def test_expired_sessions_drop_live_bots(multi_manager, make_user, connection_factory):
    stale = await make_user()
    active = await make_user()
    await multi_manager.add(stale, TOKEN)
    await multi_manager.add(active, TOKEN_60)
    old_time = datetime.now(timezone.utc).replace(tzinfo=None) - timedelta(days=45)
    async with async_session() as db:
        await db.execute(update(User).where(User.id == stale).values(last_active=old_time))
        await db.commit()

    assert await expire_sessions(multi_manager) == 1

    assert multi_manager.bot_count == 1
    assert connection_factory.created[0].disconnect_calls == 1
    assert len(await multi_manager.list_all(active)) == 1
    assert await multi_manager.list_all(stale) == []
