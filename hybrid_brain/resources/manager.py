from __future__ import annotations

import asyncio
import inspect
import logging
import threading
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

import psutil

from hybrid_brain.constants import (
    MEMORY_WATERMARK_MB,
    NORMAL_EVICTION_FRACTION,
    PRESSURE_EVICTION_FRACTION,
    RESOURCE_CACHE_MAX_ENTRIES,
    RESOURCE_CACHE_TTL_SECONDS,
    RESOURCE_MAX_REGISTERED,
    RESOURCE_SWEEP_INTERVAL_SECONDS,
)
from hybrid_brain.resources.cache import BoundedTTLCache, Clock

logger = logging.getLogger(__name__)

CleanupCallback = Callable[[], None] | Callable[[], Awaitable[None]]
MemoryProbe = Callable[[], int]


def process_rss_bytes() -> int:
    return psutil.Process().memory_info().rss


@dataclass
class RegisteredResource:
    id: str
    cleanup: CleanupCallback
    registered_at: float = field(default_factory=time.monotonic)


@dataclass(frozen=True)
class SweepReport:
    expired_evicted: int
    pressure_evicted: int
    resources_cleaned: int
    under_pressure: bool
    rss_bytes: int


class ResourceManager:
    """Keeps caches and execution-scoped handles bounded under sustained load.

    Sweeps run on a timer, never on the request path. A sweep evicts expired
    cache entries, evicts a larger share of every cache when process RSS is
    above the watermark, and force-cleans the oldest registered resources
    once their count exceeds ``max_resources``.
    """

    def __init__(
        self,
        *,
        cache_max_entries: int = RESOURCE_CACHE_MAX_ENTRIES,
        cache_ttl_seconds: float = RESOURCE_CACHE_TTL_SECONDS,
        max_resources: int = RESOURCE_MAX_REGISTERED,
        sweep_interval_seconds: float = RESOURCE_SWEEP_INTERVAL_SECONDS,
        memory_watermark_bytes: int = MEMORY_WATERMARK_MB * 1024 * 1024,
        pressure_eviction_fraction: float = PRESSURE_EVICTION_FRACTION,
        normal_eviction_fraction: float = NORMAL_EVICTION_FRACTION,
        memory_probe: MemoryProbe = process_rss_bytes,
        clock: Clock = time.monotonic,
    ) -> None:
        self._cache: BoundedTTLCache[str, Any] = BoundedTTLCache(
            cache_max_entries, cache_ttl_seconds, clock=clock
        )
        self._caches: dict[str, BoundedTTLCache[Any, Any]] = {"state": self._cache}
        self._resources: dict[str, RegisteredResource] = {}
        self._lock = threading.Lock()
        self.max_resources = max_resources
        self.sweep_interval_seconds = sweep_interval_seconds
        self.memory_watermark_bytes = memory_watermark_bytes
        self.pressure_eviction_fraction = pressure_eviction_fraction
        self.normal_eviction_fraction = normal_eviction_fraction
        self._memory_probe = memory_probe
        self._sweep_task: asyncio.Task[None] | None = None
        self._sweep_count = 0
        self._pressure_sweeps = 0
        self._cleanup_failures = 0

    # ------------------------------------------------------------------ cache

    def cache_get(self, key: str) -> Any | None:
        return self._cache.get(key)

    def cache_set(self, key: str, value: Any, ttl_seconds: float | None = None) -> None:
        self._cache.set(key, value, ttl_seconds)

    def attach_cache(self, name: str, cache: BoundedTTLCache[Any, Any]) -> None:
        """Include another cache in the periodic sweep."""
        self._caches[name] = cache

    # -------------------------------------------------------------- resources

    def register_resource(self, resource_id: str, cleanup: CleanupCallback) -> None:
        with self._lock:
            self._resources[resource_id] = RegisteredResource(resource_id, cleanup)
            total = len(self._resources)
        logger.debug("Resource registered: %s (total=%d)", resource_id, total)
        if total > self.max_resources:
            logger.warning(
                "Registered resource count %d exceeds ceiling %d; next sweep will force cleanup",
                total,
                self.max_resources,
            )

    async def unregister_resource(self, resource_id: str, run_cleanup: bool = True) -> bool:
        with self._lock:
            resource = self._resources.pop(resource_id, None)
        if resource is None:
            return False
        if run_cleanup:
            await self._run_cleanup(resource)
        logger.debug("Resource unregistered: %s", resource_id)
        return True

    @property
    def resource_count(self) -> int:
        return len(self._resources)

    async def _run_cleanup(self, resource: RegisteredResource) -> None:
        try:
            outcome = resource.cleanup()
            if inspect.isawaitable(outcome):
                await outcome
        except Exception as e:
            self._cleanup_failures += 1
            logger.warning("Cleanup for resource %s failed: %s: %s", resource.id, type(e).__name__, e)

    # ------------------------------------------------------------------ sweep

    def _read_rss(self) -> int:
        try:
            return self._memory_probe()
        except (psutil.Error, OSError) as e:
            logger.warning("Memory probe failed: %s", e)
            return 0

    async def sweep(self) -> SweepReport:
        rss = self._read_rss()
        under_pressure = rss > self.memory_watermark_bytes
        fraction = (
            self.pressure_eviction_fraction if under_pressure else self.normal_eviction_fraction
        )

        expired = 0
        pressured = 0
        for cache in list(self._caches.values()):
            expired += cache.evict_expired()
            pressured += cache.evict_fraction(fraction)

        with self._lock:
            overflow = len(self._resources) - self.max_resources
            victims: list[RegisteredResource] = []
            if overflow > 0:
                oldest = sorted(self._resources.values(), key=lambda r: r.registered_at)
                victims = oldest[:overflow]
                for resource in victims:
                    del self._resources[resource.id]
        for resource in victims:
            await self._run_cleanup(resource)

        self._sweep_count += 1
        if under_pressure:
            self._pressure_sweeps += 1
            logger.warning(
                "Memory pressure: rss=%.1fMB watermark=%.1fMB, evicted %d cache entries",
                rss / 1024 / 1024,
                self.memory_watermark_bytes / 1024 / 1024,
                pressured,
            )
        if expired or pressured or victims:
            logger.info(
                "Sweep: expired=%d pressure_evicted=%d resources_cleaned=%d",
                expired,
                pressured,
                len(victims),
            )
        return SweepReport(
            expired_evicted=expired,
            pressure_evicted=pressured,
            resources_cleaned=len(victims),
            under_pressure=under_pressure,
            rss_bytes=rss,
        )

    async def _periodic_sweep(self) -> None:
        while True:
            await asyncio.sleep(self.sweep_interval_seconds)
            try:
                await self.sweep()
            except Exception as e:
                logger.error("Resource sweep failed: %s: %s", type(e).__name__, e)

    async def start(self) -> None:
        if self._sweep_task is None:
            self._sweep_task = asyncio.create_task(self._periodic_sweep())
            logger.info(
                "ResourceManager started (interval=%.1fs, max_resources=%d)",
                self.sweep_interval_seconds,
                self.max_resources,
            )

    async def stop(self) -> None:
        if self._sweep_task:
            self._sweep_task.cancel()
            try:
                await self._sweep_task
            except asyncio.CancelledError:
                pass
            self._sweep_task = None

        with self._lock:
            remaining = list(self._resources.values())
            self._resources.clear()
        for resource in remaining:
            await self._run_cleanup(resource)
        logger.info("ResourceManager stopped, released %d resource(s)", len(remaining))

    # ------------------------------------------------------------------ stats

    def memory_stats(self) -> dict[str, Any]:
        rss = self._read_rss()
        return {
            "rss_bytes": rss,
            "watermark_bytes": self.memory_watermark_bytes,
            "under_pressure": rss > self.memory_watermark_bytes,
        }

    def stats(self) -> dict[str, Any]:
        return {
            "caches": {name: cache.stats() for name, cache in self._caches.items()},
            "registered_resources": len(self._resources),
            "max_resources": self.max_resources,
            "sweeps": self._sweep_count,
            "pressure_sweeps": self._pressure_sweeps,
            "cleanup_failures": self._cleanup_failures,
            "memory": self.memory_stats(),
        }
