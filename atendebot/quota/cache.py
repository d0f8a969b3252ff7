"""Thread-safe TTL cache for monthly usage totals."""
from __future__ import annotations

import threading
import time
from typing import Callable, Dict, Generic, Hashable, Optional, TypeVar

from cachetools import TTLCache

K = TypeVar("K", bound=Hashable)
V = TypeVar("V")


class UsageCache(Generic[K, V]):
    """``TTLCache`` plus lossless invalidation of loads already in flight.

    A key that is being loaded carries a generation counter. ``invalidate``
    bumps it, and a load that started before the bump is not written back, so
    a value read before a usage increment can never overwrite the invalidation
    that followed it. Counters exist only while a load for their key runs.
    """

    def __init__(
        self,
        ttl_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
        maxsize: int = 10_000,
    ) -> None:
        self._entries: TTLCache = TTLCache(maxsize=maxsize, ttl=ttl_seconds, timer=clock)
        self._generations: Dict[K, int] = {}
        self._loading: Dict[K, int] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def get(self, key: K) -> Optional[V]:
        with self._lock:
            return self._entries.get(key)

    def set(self, key: K, value: V) -> None:
        with self._lock:
            self._entries[key] = value

    def invalidate(self, key: K) -> None:
        with self._lock:
            self._entries.pop(key, None)
            if key in self._loading:
                self._generations[key] += 1

    def get_or_load(self, key: K, loader: Callable[[], V]) -> V:
        with self._lock:
            cached = self._entries.get(key)
            if cached is not None:
                return cached
            self._loading[key] = self._loading.get(key, 0) + 1
            generation = self._generations.setdefault(key, 0)
        try:
            value = loader()
            with self._lock:
                if self._generations[key] == generation:
                    self._entries[key] = value
            return value
        finally:
            with self._lock:
                remaining = self._loading[key] - 1
                if remaining:
                    self._loading[key] = remaining
                else:
                    del self._loading[key]
                    del self._generations[key]

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            for key in self._generations:
                self._generations[key] += 1
