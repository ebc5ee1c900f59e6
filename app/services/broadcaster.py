"""Push bot snapshots to connected dashboard clients, scoped by owner."""

from __future__ import annotations

import logging
from collections import defaultdict
from typing import Any, Protocol

from app.schemas.bot import BotView, StatusCounts

logger = logging.getLogger(__name__)


class Listener(Protocol):
    async def send_json(self, data: Any) -> None: ...


def bots_message(bots: list[BotView]) -> dict[str, Any]:
    return {"type": "botsUpdate", "bots": [b.model_dump(mode="json") for b in bots]}


def stats_message(stats: StatusCounts) -> dict[str, Any]:
    return {"type": "statsUpdate", "stats": stats.model_dump(mode="json")}


class UpdateBroadcaster:
    """Fan-out of state snapshots.

    Listeners register under an owner id (``None`` in single-tenant mode) and
    only ever receive snapshots for that owner.  A listener whose send fails
    is dropped.
    """

    def __init__(self) -> None:
        self._listeners: dict[int | None, set[Listener]] = defaultdict(set)

    def register(self, owner_id: int | None, listener: Listener) -> None:
        self._listeners[owner_id].add(listener)
        logger.debug("Update listener registered (owner=%s)", owner_id)

    def unregister(self, owner_id: int | None, listener: Listener) -> None:
        listeners = self._listeners.get(owner_id)
        if listeners is None:
            return
        listeners.discard(listener)
        if not listeners:
            del self._listeners[owner_id]

    def listener_count(self, owner_id: int | None = None) -> int:
        return len(self._listeners.get(owner_id, ()))

    async def send_snapshot(
        self, listener: Listener, bots: list[BotView], stats: StatusCounts
    ) -> None:
        await listener.send_json(bots_message(bots))
        await listener.send_json(stats_message(stats))

    async def notify(
        self, owner_id: int | None, bots: list[BotView], stats: StatusCounts
    ) -> None:
        for listener in list(self._listeners.get(owner_id, ())):
            try:
                await self.send_snapshot(listener, bots, stats)
            except Exception as exc:
                logger.info("Dropping update listener (owner=%s): %s", owner_id, exc)
                self.unregister(owner_id, listener)
