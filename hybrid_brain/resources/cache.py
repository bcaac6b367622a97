from __future__ import annotations

import json
import math
import sys
import threading
import time
from collections import OrderedDict
from collections.abc import Callable, Hashable
from dataclasses import dataclass
from typing import Any, Generic, TypeVar

T = TypeVar("T")
K = TypeVar("K", bound=Hashable)

Clock = Callable[[], float]


def estimate_size_bytes(value: Any) -> int:
    if isinstance(value, str | bytes):
        return sys.getsizeof(value)
    try:
        return len(json.dumps(value, default=str).encode("utf-8"))
    except (TypeError, ValueError):
        return sys.getsizeof(value)


@dataclass
class CacheEntry(Generic[T]):
    value: T
    created_at: float
    ttl: float
    last_accessed_at: float
    access_count: int = 0
    estimated_size_bytes: int = 0

    def is_expired(self, now: float) -> bool:
        return now - self.created_at >= self.ttl


class BoundedTTLCache(Generic[K, T]):
    """TTL + entry-count bounded cache with least-recently-used eviction.

    Hits refresh access metadata only; the TTL always counts from creation.
    Expired entries are never returned, even before a sweep removes them.
    """

    def __init__(self, max_entries: int, ttl_seconds: float, clock: Clock = time.monotonic) -> None:
        if max_entries < 1:
            raise ValueError("max_entries must be >= 1")
        self.max_entries = max_entries
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: OrderedDict[K, CacheEntry[T]] = OrderedDict()
        self._lock = threading.Lock()
        self._hits = 0
        self._misses = 0
        self._evictions = 0

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, key: K) -> T | None:
        now = self._clock()
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self._misses += 1
                return None
            if entry.is_expired(now):
                del self._entries[key]
                self._misses += 1
                return None
            entry.access_count += 1
            entry.last_accessed_at = now
            self._entries.move_to_end(key)
            self._hits += 1
            return entry.value

    def set(self, key: K, value: T, ttl_seconds: float | None = None) -> None:
        now = self._clock()
        entry = CacheEntry(
            value=value,
            created_at=now,
            ttl=self.ttl_seconds if ttl_seconds is None else ttl_seconds,
            last_accessed_at=now,
            estimated_size_bytes=estimate_size_bytes(value),
        )
        with self._lock:
            if key in self._entries:
                del self._entries[key]
            while len(self._entries) >= self.max_entries:
                self._entries.popitem(last=False)
                self._evictions += 1
            self._entries[key] = entry

    def delete(self, key: K) -> bool:
        with self._lock:
            return self._entries.pop(key, None) is not None

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def evict_expired(self) -> int:
        now = self._clock()
        with self._lock:
            expired = [k for k, e in self._entries.items() if e.is_expired(now)]
            for key in expired:
                del self._entries[key]
            self._evictions += len(expired)
            return len(expired)

    def evict_fraction(self, fraction: float) -> int:
        """Evict the least recently used ``fraction`` of entries."""
        if fraction <= 0:
            return 0
        with self._lock:
            count = min(len(self._entries), math.ceil(len(self._entries) * min(fraction, 1.0)))
            for _ in range(count):
                self._entries.popitem(last=False)
            self._evictions += count
            return count

    def stats(self) -> dict[str, Any]:
        with self._lock:
            total_size = sum(e.estimated_size_bytes for e in self._entries.values())
            total_accesses = self._hits + self._misses
            return {
                "entries": len(self._entries),
                "max_entries": self.max_entries,
                "ttl_seconds": self.ttl_seconds,
                "estimated_size_bytes": total_size,
                "hits": self._hits,
                "misses": self._misses,
                "evictions": self._evictions,
                "hit_rate": round(self._hits / total_accesses, 4) if total_accesses else 0.0,
            }
