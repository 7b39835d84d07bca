"""Simple in-memory TTL cache implementation."""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Callable, Dict, Generic, Optional, TypeVar

K = TypeVar("K")
V = TypeVar("V")


@dataclass
class CacheEntry(Generic[V]):
    """Store cached value with expiration metadata."""

    value: V
    expires_at: float


class TTLCache(Generic[K, V]):
    """Small process-local cache whose entries expire a fixed time after their last write."""

    def __init__(self, ttl_seconds: float = 300.0, clock: Callable[[], float] = time.time) -> None:
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._data: Dict[K, CacheEntry[V]] = {}

    def set(self, key: K, value: V) -> None:
        """Insert a value into the cache, restarting its expiry window."""
        self._data[key] = CacheEntry(value=value, expires_at=self._clock() + self.ttl_seconds)

    def get(self, key: K) -> Optional[V]:
        """Retrieve a cached value if it has not expired."""
        entry = self._data.get(key)
        if entry is None:
            return None
        if entry.expires_at < self._clock():
            self._data.pop(key, None)
            return None
        return entry.value

    def purge(self) -> int:
        """Drop every expired entry and return how many were removed."""
        now = self._clock()
        expired = [key for key, entry in self._data.items() if entry.expires_at < now]
        for key in expired:
            del self._data[key]
        return len(expired)
