"""Bounded per-connection lifecycle history."""

from __future__ import annotations

from collections import deque

from app.schemas.bot import HistoryEntry

HISTORY_CAPACITY = 10


class HistoryRing:
    """Append-only log that keeps only the most recent ``capacity`` entries.

    Eviction is FIFO: entries are never re-touched after being appended.
    """

    def __init__(self, capacity: int = HISTORY_CAPACITY) -> None:
        if capacity < 1:
            raise ValueError("capacity must be positive")
        self._entries: deque[HistoryEntry] = deque(maxlen=capacity)

    @property
    def capacity(self) -> int:
        return self._entries.maxlen or 0

    def append(self, entry: HistoryEntry) -> None:
        self._entries.append(entry)

    def snapshot(self, limit: int | None = None) -> list[HistoryEntry]:
        """Most recent ``limit`` entries (all when None), newest first."""
        newest_first = list(reversed(self._entries))
        if limit is None:
            return newest_first
        return newest_first[: max(limit, 0)]

    def entries(self) -> list[HistoryEntry]:
        """All retained entries in append order."""
        return list(self._entries)

    def __len__(self) -> int:
        return len(self._entries)
