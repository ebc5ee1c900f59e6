"""Bot manager — supervises many independent Discord gateway sessions.

The manager owns the registry of live connections (bot id → record).  Every
public method returns plain ``BotView``/``StatusCounts`` data; records and
gateway handles never leave this module.

Concurrency model (single asyncio loop):
  - each record has its own lock; lifecycle events and operator actions on
    the same bot are serialized on it, different bots never wait on each other
  - the registry lock only guards dict insert/delete, never I/O
  - gateway callbacks are turned into tasks instead of running inline, so a
    handle emitting ``disconnected`` from inside ``disconnect()`` cannot
    deadlock against a ``remove`` that holds the record lock
  - events arriving for a removed record are dropped, and so are events
    stamped with an earlier session generation (an operator disconnect or a
    newer session supersedes them)

Two tenancy modes:
  - single-tenant: in-memory only, ids from a process counter, owner ignored
  - multi-tenant: each bot belongs to a user; records are mirrored to the
    bot store and every access checks the owner.  The plaintext token is
    only kept in memory, so a bot stored by a previous process cannot be
    toggled back on (``NotRunningError``).
"""

from __future__ import annotations

import asyncio
import itertools
import logging
from collections.abc import Callable
from functools import partial

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.adapters.base import GatewayConnection, LifecycleEvent
from app.adapters.discord import DiscordGatewayClient
from app.config import settings
from app.database import async_session
from app.models.bot import Bot
from app.schemas.bot import AddResult, BotStatus, BotView, StatusCounts
from app.services import bot_store
from app.services.broadcaster import UpdateBroadcaster
from app.services.connection_record import ConnectionRecord, Transition, mask_token, transition_for
from app.services.errors import CreationError, NotFoundError, NotRunningError
from app.services.history import HistoryRing
from app.utils.crypto import hash_token

logger = logging.getLogger(__name__)

ConnectionFactory = Callable[[str], GatewayConnection]


class BotManager:
    def __init__(
        self,
        *,
        multi_tenant: bool | None = None,
        connection_factory: ConnectionFactory | None = None,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        broadcaster: UpdateBroadcaster | None = None,
        min_token_length: int | None = None,
        history_limit: int | None = None,
    ) -> None:
        self.multi_tenant = settings.multi_tenant if multi_tenant is None else multi_tenant
        self.broadcaster = broadcaster or UpdateBroadcaster()
        self._connection_factory = connection_factory or DiscordGatewayClient
        self._session_factory = session_factory or async_session
        self._min_token_length = min_token_length or settings.min_token_length
        self._history_limit = history_limit or settings.history_limit

        self._bots: dict[int, ConnectionRecord] = {}
        self._registry_lock = asyncio.Lock()
        self._ids = itertools.count(1)
        self._pending: set[asyncio.Task] = set()

    # ── Queries ──────────────────────────────────────────────────────

    @property
    def bot_count(self) -> int:
        """Number of sessions held in this process."""
        return len(self._bots)

    async def get(self, bot_id: int, owner_id: int | None = None) -> BotView | None:
        owner_id = self._scope(owner_id)
        record = self._lookup(bot_id, owner_id)
        if record is not None:
            return record.view()
        if not self.multi_tenant:
            return None
        async with self._session_factory() as db:
            row = await bot_store.get_bot(db, bot_id, owner_id)
            if row is None:
                return None
            return await self._stored_view(db, row)

    async def list_all(self, owner_id: int | None = None) -> list[BotView]:
        """All bots in scope: insertion order (single) or newest first (multi)."""
        owner_id = self._scope(owner_id)
        if not self.multi_tenant:
            return [r.view() for r in self._bots.values() if not r.removed]

        views: list[BotView] = []
        async with self._session_factory() as db:
            for row in await bot_store.list_bots(db, owner_id):
                record = self._lookup(row.id, row.user_id)
                views.append(record.view() if record else await self._stored_view(db, row))
        return views

    async def status_counts(self, owner_id: int | None = None) -> StatusCounts:
        owner_id = self._scope(owner_id)
        if self.multi_tenant:
            async with self._session_factory() as db:
                return await bot_store.get_status_counts(db, owner_id)

        live = [r for r in self._bots.values() if not r.removed]
        counts = {status.value: 0 for status in BotStatus}
        for record in live:
            counts[record.status.value] += 1
        return StatusCounts(total=len(live), **counts)

    # ── Operations ───────────────────────────────────────────────────

    async def add(self, owner_id: int | None, token: str) -> AddResult:
        """Register a bot and start connecting it in the background.

        Returns as soon as the session is started; the outcome is only ever
        reported through lifecycle events and the broadcaster.
        """
        owner_id = self._scope(owner_id)
        if not token:
            raise CreationError("Token is required")
        if len(token) < self._min_token_length:
            raise CreationError("Invalid token format")
        if self.multi_tenant and owner_id is None:
            raise CreationError("An owner is required")

        try:
            handle = self._connection_factory(token)
        except Exception as exc:
            logger.warning("Failed to create gateway client: %s", exc)
            raise CreationError(str(exc) or "Failed to create bot") from exc

        preview = mask_token(token)
        record = ConnectionRecord(
            id=0,
            token=token,
            handle=handle,
            owner_id=owner_id,
            token_preview=preview,
            history=HistoryRing(self._history_limit),
        )
        if self.multi_tenant:
            token_hash = await asyncio.to_thread(hash_token, token)
            try:
                async with self._session_factory() as db:
                    row = await bot_store.create_bot(db, owner_id, preview, token_hash)
            except SQLAlchemyError as exc:
                logger.error("Failed to store new bot for owner %s: %s", owner_id, exc)
                raise CreationError("Failed to store bot") from exc
            record.id, record.created_at = row.id, row.created_at
        else:
            record.id = next(self._ids)

        self._subscribe(record)
        async with self._registry_lock:
            self._bots[record.id] = record

        logger.info("Bot %d: connecting to Discord", record.id)
        self._start_session(record)
        await self._broadcast(owner_id)
        return AddResult(id=record.id, status=BotStatus.CONNECTING)

    async def remove(self, bot_id: int, owner_id: int | None = None) -> None:
        owner_id = self._scope(owner_id)
        record = self._lookup(bot_id, owner_id)
        if record is None:
            if self.multi_tenant:
                async with self._session_factory() as db:
                    deleted = await bot_store.delete_bot(db, bot_id, owner_id)
                if deleted:
                    logger.info("Bot %d: removed (not running)", bot_id)
                    await self._broadcast(owner_id)
                    return
            raise NotFoundError()

        async with record.lock:
            if record.removed:
                raise NotFoundError()
            record.removed = True
            async with self._registry_lock:
                self._bots.pop(bot_id, None)

            await self._teardown(record)

            if self.multi_tenant:
                try:
                    async with self._session_factory() as db:
                        await bot_store.delete_bot(db, bot_id, owner_id)
                except Exception:
                    logger.exception("Bot %d: failed to delete stored record", bot_id)

        logger.info("Bot %d: removed", bot_id)
        await self._broadcast(owner_id)

    async def toggle(self, bot_id: int, owner_id: int | None = None) -> BotStatus:
        """Disconnect an online bot, otherwise (re)connect it."""
        owner_id = self._scope(owner_id)
        record = self._lookup(bot_id, owner_id)
        if record is None:
            if self.multi_tenant:
                async with self._session_factory() as db:
                    if await bot_store.get_bot(db, bot_id, owner_id) is not None:
                        raise NotRunningError()
            raise NotFoundError()

        async with record.lock:
            if record.removed:
                raise NotFoundError()
            if record.status == BotStatus.ONLINE:
                record.status = BotStatus.OFFLINE
                logger.info("Bot %d: disconnecting (operator)", bot_id)
                try:
                    await record.handle.disconnect()
                except Exception:
                    logger.exception("Error disconnecting bot %d", bot_id)
                # The session's own "disconnected" is already queued with the old
                # generation; the operator's offline stands without it.
                record.generation += 1
            else:
                record.status = BotStatus.CONNECTING
                logger.info("Bot %d: reconnecting (operator)", bot_id)
                self._start_session(record)
            status, last_error = record.status, record.last_error

            if self.multi_tenant:
                try:
                    async with self._session_factory() as db:
                        await bot_store.update_status(db, bot_id, owner_id, status, last_error)
                except Exception:
                    logger.exception("Bot %d: failed to store status", bot_id)

        await self._broadcast(owner_id)
        return status

    async def forget_owner(self, owner_id: int) -> int:
        """Drop every live session of an owner whose stored data is already gone."""
        records = [r for r in list(self._bots.values()) if r.owner_id == owner_id]
        for record in records:
            async with record.lock:
                record.removed = True
                async with self._registry_lock:
                    self._bots.pop(record.id, None)
                await self._teardown(record)
        return len(records)

    async def wait_idle(self) -> None:
        """Wait until every scheduled lifecycle event has been applied."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def shutdown(self) -> None:
        """Disconnect every session (process exit). Stored records are kept."""
        logger.info("Shutting down %d bot sessions", len(self._bots))
        for record in list(self._bots.values()):
            record.removed = True
            await self._teardown(record)
        async with self._registry_lock:
            self._bots.clear()
        await self.wait_idle()

    # ── Lifecycle wiring ─────────────────────────────────────────────

    def _subscribe(self, record: ConnectionRecord) -> None:
        for event in LifecycleEvent:
            record.handle.subscribe(event, partial(self._on_lifecycle_event, record, event))

    def _on_lifecycle_event(
        self,
        record: ConnectionRecord,
        event: LifecycleEvent,
        error: BaseException | None = None,
        *,
        generation: int | None = None,
    ) -> None:
        # Stamp at emission time, not when the task finally gets the lock
        if generation is None:
            generation = record.generation
        task = asyncio.get_running_loop().create_task(
            self._apply_event(record, event, error, generation)
        )
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    def _start_session(self, record: ConnectionRecord) -> None:
        record.generation += 1
        try:
            session = record.handle.connect()
        except Exception as exc:
            logger.error("Bot %d: connection failed: %s", record.id, exc)
            self._on_lifecycle_event(record, LifecycleEvent.ERROR, exc)
            return
        if isinstance(session, asyncio.Task) and session is not record.session:
            record.session = session
            session.add_done_callback(
                partial(self._on_session_done, record, record.generation)
            )

    def _on_session_done(
        self, record: ConnectionRecord, generation: int, session: asyncio.Task
    ) -> None:
        # Handles report their own failures; this only catches crashes.
        if session.cancelled() or session.exception() is None:
            return
        exc = session.exception()
        logger.error("Bot %d: gateway session crashed: %s", record.id, exc)
        self._on_lifecycle_event(record, LifecycleEvent.ERROR, exc, generation=generation)

    async def _apply_event(
        self,
        record: ConnectionRecord,
        event: LifecycleEvent,
        error: BaseException | None,
        generation: int,
    ) -> None:
        async with record.lock:
            if record.removed or self._bots.get(record.id) is not record:
                logger.debug("Bot %d: ignoring %s event after removal", record.id, event.value)
                return
            if generation != record.generation:
                logger.debug(
                    "Bot %d: ignoring %s event from an earlier session", record.id, event.value
                )
                return

            transition = transition_for(event, error)
            record.apply(transition)
            self._log_transition(record, event, error)
            await self._store_transition(record, transition)

        await self._broadcast(record.owner_id)

    @staticmethod
    def _log_transition(
        record: ConnectionRecord, event: LifecycleEvent, error: BaseException | None
    ) -> None:
        if event is LifecycleEvent.CONNECTED:
            logger.info("Bot %d: connected to Discord", record.id)
        elif event is LifecycleEvent.ERROR:
            logger.warning("Bot %d error: %s (%s)", record.id, record.last_error, error)
        elif error is not None:
            logger.info("Bot %d: disconnected with error: %s", record.id, error)
        else:
            logger.info("Bot %d: disconnected", record.id)

    async def _store_transition(self, record: ConnectionRecord, transition: Transition) -> None:
        if not self.multi_tenant:
            return
        try:
            async with self._session_factory() as db:
                await bot_store.update_status(
                    db, record.id, record.owner_id, transition.status, transition.last_error
                )
                await bot_store.add_history(
                    db,
                    record.id,
                    transition.entry.type.value,
                    transition.entry.message,
                    transition.entry.timestamp,
                )
                await bot_store.trim_history(db, record.id, keep=self._history_limit)
        except Exception:
            logger.exception("Bot %d: failed to store %s", record.id, transition.status.value)

    # ── Helpers ──────────────────────────────────────────────────────

    async def _teardown(self, record: ConnectionRecord) -> None:
        """Best-effort disconnect of a removed record, then detach from its handle."""
        try:
            await record.handle.disconnect()
        except Exception:
            logger.exception("Error disconnecting bot %d", record.id)
        record.handle.clear_subscribers()

    def _scope(self, owner_id: int | None) -> int | None:
        return owner_id if self.multi_tenant else None

    def _lookup(self, bot_id: int, owner_id: int | None) -> ConnectionRecord | None:
        record = self._bots.get(bot_id)
        if record is None or record.removed or not record.owned_by(owner_id):
            return None
        return record

    async def _stored_view(self, db: AsyncSession, row: Bot) -> BotView:
        history = await bot_store.get_history(db, row.id, row.user_id, limit=self._history_limit)
        return BotView(
            id=row.id,
            token_preview=row.token_preview,
            status=BotStatus(row.status),
            created_at=row.created_at,
            last_error=row.last_error,
            connection_history=history,
        )

    async def _broadcast(self, owner_id: int | None) -> None:
        if not self.broadcaster.listener_count(owner_id):
            return
        try:
            bots = await self.list_all(owner_id)
            stats = await self.status_counts(owner_id)
            await self.broadcaster.notify(owner_id, bots, stats)
        except Exception:
            logger.exception("Failed to broadcast bot update (owner=%s)", owner_id)
