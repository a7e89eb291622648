"""Explicitly scoped time-based response cache."""

from __future__ import annotations

import time
from threading import Lock
from typing import Any, Callable, Dict, Hashable, Tuple

import structlog


logger = structlog.get_logger(__name__)


class TimedCache:
    """Map keys to ``(timestamp, value)`` pairs that expire after ``ttl_seconds``.

    The cache belongs to whichever component creates it.  Invalidation only
    happens through :meth:`invalidate`, :meth:`invalidate_where` or
    :meth:`clear`; expired entries are swept whenever a new value is stored.
    A value built while an invalidation ran is returned to its caller but
    never stored.
    """

    def __init__(self, ttl_seconds: float, *, clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = float(ttl_seconds)
        self._clock = clock
        self._entries: Dict[Hashable, Tuple[float, Any]] = {}
        self._generation = 0
        self._lock = Lock()

    def _fresh(self, stamp: float, now: float) -> bool:
        return now - stamp <= self.ttl_seconds

    def _store(self, key: Hashable, value: Any, now: float) -> None:
        # Caller holds the lock.
        expired = [k for k, (stamp, _) in self._entries.items() if not self._fresh(stamp, now)]
        for stale in expired:
            del self._entries[stale]
        self._entries[key] = (now, value)

    def get(self, key: Hashable, default: Any = None) -> Any:
        now = self._clock()
        with self._lock:
            entry = self._entries.get(key)
            if entry is None or not self._fresh(entry[0], now):
                return default
            return entry[1]

    def set(self, key: Hashable, value: Any) -> None:
        with self._lock:
            self._store(key, value, self._clock())

    def get_or_build(self, key: Hashable, builder: Callable[[], Any]) -> Tuple[Any, bool]:
        """Return ``(value, hit)`` for ``key`` rebuilding via ``builder`` when stale."""

        now = self._clock()
        with self._lock:
            entry = self._entries.get(key)
            if entry is not None and self._fresh(entry[0], now):
                return entry[1], True
            generation = self._generation
        value = builder()
        with self._lock:
            if self._generation == generation:
                self._store(key, value, self._clock())
            else:
                logger.debug("cache.build_discarded", key=repr(key))
        return value, False

    def invalidate(self, *keys: Hashable) -> None:
        """Drop ``keys``.  With no keys this is a no-op."""

        if not keys:
            return
        with self._lock:
            self._generation += 1
            for key in keys:
                self._entries.pop(key, None)

    def invalidate_where(self, predicate: Callable[[Hashable], bool]) -> int:
        with self._lock:
            self._generation += 1
            doomed = [key for key in self._entries if predicate(key)]
            for key in doomed:
                del self._entries[key]
        if doomed:
            logger.debug("cache.invalidated", count=len(doomed))
        return len(doomed)

    def clear(self) -> None:
        with self._lock:
            self._generation += 1
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


__all__ = ["TimedCache"]
