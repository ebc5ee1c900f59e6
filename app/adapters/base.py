"""Abstract base class for gateway connection handles.

A handle represents one live or pending session with a chat gateway.  The
bot manager never waits on a handle's outcome: ``connect()`` starts the
attempt in the background and results arrive later as lifecycle events.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from collections.abc import Callable
from enum import StrEnum
from typing import Any

logger = logging.getLogger(__name__)


class LifecycleEvent(StrEnum):
    CONNECTED = "connected"
    ERROR = "error"  # callback(error)
    DISCONNECTED = "disconnected"  # callback(error | None)


LifecycleCallback = Callable[..., Any]


class GatewayConnection(ABC):
    """Contract that any gateway client must satisfy."""

    def __init__(self) -> None:
        self._subscribers: dict[LifecycleEvent, list[LifecycleCallback]] = {
            event: [] for event in LifecycleEvent
        }

    def subscribe(self, event: LifecycleEvent, callback: LifecycleCallback) -> None:
        """Register ``callback`` for one of the lifecycle events."""
        self._subscribers[LifecycleEvent(event)].append(callback)

    def clear_subscribers(self) -> None:
        for callbacks in self._subscribers.values():
            callbacks.clear()

    def _emit(self, event: LifecycleEvent, *args: Any) -> None:
        for callback in list(self._subscribers[event]):
            try:
                callback(*args)
            except Exception:
                logger.exception("Lifecycle subscriber for %s failed", event.value)

    @abstractmethod
    def connect(self) -> asyncio.Task:
        """Start connecting in the background and return the session task."""

    @abstractmethod
    async def disconnect(self) -> None:
        """Tear down the session (operator initiated)."""

    @property
    @abstractmethod
    def is_connected(self) -> bool:
        """True once the gateway reported the session ready."""
