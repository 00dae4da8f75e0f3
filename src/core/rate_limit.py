"""
Remindly — Rate limiter.

Sliding-window limiter keyed by "{identity_type}:{identity}" (user, ip,
email). Buckets live behind a small store protocol so a shared store can
replace the in-memory one when more than one process serves users.
"""

from __future__ import annotations

import logging
import time
from collections import deque
from typing import Protocol

logger = logging.getLogger(__name__)


def make_key(identity_type: str, identity: object) -> str:
    if identity_type == "email":
        return f"email:{str(identity).lower()}"
    return f"{identity_type}:{identity}"


class BucketStore(Protocol):
    def events(self, key: str) -> deque[float]: ...

    def keys(self) -> list[str]: ...

    def discard(self, key: str) -> None: ...


class InMemoryBucketStore:
    """Per-process buckets of event timestamps."""

    def __init__(self) -> None:
        self._buckets: dict[str, deque[float]] = {}

    def events(self, key: str) -> deque[float]:
        return self._buckets.setdefault(key, deque())

    def keys(self) -> list[str]:
        return list(self._buckets)

    def discard(self, key: str) -> None:
        self._buckets.pop(key, None)


class RateLimiter:
    """Allow at most ``max_events`` per key in any ``window_seconds`` span.

    Keys idle for longer than one window are dropped from the store; the
    sweep runs from hit() at most once per window.
    """

    def __init__(self, max_events: int = 5, window_seconds: float = 60.0, store: BucketStore | None = None) -> None:
        self._max = max_events
        self._window = window_seconds
        self._store = store if store is not None else InMemoryBucketStore()
        self._last_purge: float | None = None

    def hit(self, key: str, now: float | None = None) -> bool:
        """Record one event for ``key``. False when the window is already full."""
        now = time.monotonic() if now is None else now
        if self._last_purge is None:
            self._last_purge = now
        elif now - self._last_purge >= self._window:
            self.purge(now)

        events = self._store.events(key)
        while events and now - events[0] > self._window:
            events.popleft()
        if len(events) >= self._max:
            logger.info("Rate limit hit for %s", key)
            return False
        events.append(now)
        return True

    def purge(self, now: float | None = None) -> int:
        """Drop every key whose newest event is older than the window. Returns how many."""
        now = time.monotonic() if now is None else now
        stale = []
        for key in self._store.keys():
            events = self._store.events(key)
            if not events or now - events[-1] > self._window:
                stale.append(key)
        for key in stale:
            self._store.discard(key)
        self._last_purge = now
        if stale:
            logger.debug("Rate limiter dropped %d idle keys", len(stale))
        return len(stale)
