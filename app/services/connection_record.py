"""State held for one managed connection, and its lifecycle transition table.

Transitions are pure functions of the lifecycle event and its error so they
can be checked without any network I/O:

    connected          → online,  last_error cleared,   success entry
    error(e)           → offline, classified message,  error entry
    disconnected(None) → offline, last_error cleared,   "Clean disconnect"
    disconnected(e)    → offline, str(e),               disconnect entry

Operator toggles (online → offline, * → connecting) do not go through this
table; the bot manager sets those statuses directly.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone

from app.adapters.base import GatewayConnection, LifecycleEvent
from app.schemas.bot import BotStatus, BotView, HistoryEntry, HistoryType
from app.services.error_classifier import classify, error_text
from app.services.history import HistoryRing

CONNECTED_MESSAGE = "Successfully connected to Discord"
CLEAN_DISCONNECT_MESSAGE = "Clean disconnect"


@dataclass(frozen=True)
class Transition:
    status: BotStatus
    last_error: str | None
    entry: HistoryEntry


def _connected(_error: BaseException | None = None) -> Transition:
    return Transition(
        status=BotStatus.ONLINE,
        last_error=None,
        entry=HistoryEntry(type=HistoryType.SUCCESS, message=CONNECTED_MESSAGE),
    )


def _errored(error: BaseException | None = None) -> Transition:
    details = classify(error if error is not None else "Unknown error")
    return Transition(
        status=BotStatus.OFFLINE,
        last_error=details.message,
        entry=HistoryEntry(type=HistoryType.ERROR, message=details.message),
    )


def _disconnected(error: BaseException | None = None) -> Transition:
    if error is None:
        return Transition(
            status=BotStatus.OFFLINE,
            last_error=None,
            entry=HistoryEntry(type=HistoryType.DISCONNECT, message=CLEAN_DISCONNECT_MESSAGE),
        )
    message = error_text(error)
    return Transition(
        status=BotStatus.OFFLINE,
        last_error=message,
        entry=HistoryEntry(type=HistoryType.DISCONNECT, message=message),
    )


TRANSITIONS: dict[LifecycleEvent, Callable[[BaseException | None], Transition]] = {
    LifecycleEvent.CONNECTED: _connected,
    LifecycleEvent.ERROR: _errored,
    LifecycleEvent.DISCONNECTED: _disconnected,
}


def transition_for(event: LifecycleEvent, error: BaseException | None = None) -> Transition:
    return TRANSITIONS[LifecycleEvent(event)](error)


def mask_token(token: str) -> str:
    """Show only the last 4 characters of a token."""
    if not token or len(token) < 4:
        return "****"
    return "*" * (len(token) - 4) + token[-4:]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(eq=False)
class ConnectionRecord:
    """Live state of one bot. Only the bot manager mutates it."""

    id: int
    token: str
    handle: GatewayConnection
    owner_id: int | None = None
    token_preview: str = ""
    status: BotStatus = BotStatus.CONNECTING
    last_error: str | None = None
    created_at: datetime = field(default_factory=_utcnow)
    history: HistoryRing = field(default_factory=HistoryRing)
    lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)
    session: asyncio.Task | None = field(default=None, repr=False)
    # Bumped per session start and operator disconnect; stale events carry an older value
    generation: int = 0
    removed: bool = False

    def __post_init__(self) -> None:
        if not self.token_preview:
            self.token_preview = mask_token(self.token)

    def apply(self, transition: Transition) -> None:
        # No await here: status, error and history change as one step.
        self.status = transition.status
        self.last_error = transition.last_error
        self.history.append(transition.entry)

    def owned_by(self, owner_id: int | None) -> bool:
        return self.owner_id == owner_id

    def view(self, history_limit: int | None = None) -> BotView:
        return BotView(
            id=self.id,
            token_preview=self.token_preview,
            status=self.status,
            created_at=self.created_at,
            last_error=self.last_error,
            connection_history=self.history.snapshot(history_limit),
        )
