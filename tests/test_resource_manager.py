import asyncio

import psutil
import pytest

from hybrid_brain.resources.cache import BoundedTTLCache
from hybrid_brain.resources.manager import ResourceManager, process_rss_bytes

MB = 1024 * 1024


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


def _manager(rss: int = 10 * MB, **kwargs) -> ResourceManager:
    return ResourceManager(
        memory_watermark_bytes=100 * MB,
        memory_probe=lambda: rss,
        **kwargs,
    )


class TestCache:
    def test_set_and_get(self):
        manager = _manager()
        manager.cache_set("k", {"v": 1})
        assert manager.cache_get("k") == {"v": 1}
        assert manager.cache_get("missing") is None

    def test_cache_bounded(self):
        manager = _manager(cache_max_entries=3)
        for i in range(10):
            manager.cache_set(f"k{i}", i)
        assert manager.stats()["caches"]["state"]["entries"] == 3


class TestResources:
    async def test_unregister_runs_sync_and_async_cleanup(self):
        manager = _manager()
        released: list[str] = []

        async def async_cleanup():
            released.append("async")

        manager.register_resource("a", lambda: released.append("sync"))
        manager.register_resource("b", async_cleanup)

        assert await manager.unregister_resource("a") is True
        assert await manager.unregister_resource("b") is True
        assert await manager.unregister_resource("b") is False
        assert released == ["sync", "async"]
        assert manager.resource_count == 0

    async def test_unregister_without_cleanup(self):
        manager = _manager()
        released: list[str] = []
        manager.register_resource("a", lambda: released.append("a"))
        assert await manager.unregister_resource("a", run_cleanup=False) is True
        assert released == []

    async def test_failing_cleanup_is_counted_not_raised(self):
        manager = _manager()

        def broken():
            raise RuntimeError("socket already closed")

        manager.register_resource("a", broken)
        assert await manager.unregister_resource("a") is True
        assert manager.stats()["cleanup_failures"] == 1


class TestSweep:
    async def test_sweep_forces_cleanup_of_oldest_overflow(self):
        manager = _manager(max_resources=2)
        released: list[str] = []
        for name in ("r1", "r2", "r3", "r4"):
            manager.register_resource(name, lambda name=name: released.append(name))

        report = await manager.sweep()

        assert report.resources_cleaned == 2
        assert released == ["r1", "r2"]
        assert manager.resource_count == 2

    async def test_sweep_evicts_expired_from_attached_caches(self):
        clock = FakeClock()
        manager = _manager(clock=clock, cache_ttl_seconds=10)
        prompts: BoundedTTLCache[str, str] = BoundedTTLCache(10, 5, clock=clock)
        manager.attach_cache("prompts", prompts)
        manager.cache_set("state-key", "v")
        prompts.set("p", "prompt")

        clock.now = 6
        report = await manager.sweep()

        assert report.expired_evicted == 1
        assert report.under_pressure is False
        assert len(prompts) == 0
        assert manager.cache_get("state-key") == "v"

    async def test_pressure_evicts_fraction_of_every_cache(self):
        manager = _manager(rss=200 * MB, pressure_eviction_fraction=0.5)
        for i in range(10):
            manager.cache_set(f"k{i}", i)

        report = await manager.sweep()

        assert report.under_pressure is True
        assert report.pressure_evicted == 5
        assert manager.cache_get("k0") is None
        assert manager.cache_get("k9") == 9
        assert manager.stats()["pressure_sweeps"] == 1

    async def test_failing_memory_probe_reads_as_zero(self):
        def probe():
            raise psutil.AccessDenied()

        manager = ResourceManager(memory_probe=probe)
        report = await manager.sweep()
        assert report.rss_bytes == 0
        assert report.under_pressure is False


class TestLifecycle:
    async def test_periodic_sweep_and_stop_releases_everything(self):
        manager = _manager(max_resources=1, sweep_interval_seconds=0.01)
        released: list[str] = []
        manager.register_resource("a", lambda: released.append("a"))
        manager.register_resource("b", lambda: released.append("b"))

        await manager.start()
        await asyncio.sleep(0.05)
        assert released == ["a"]
        assert manager.stats()["sweeps"] >= 1

        await manager.stop()
        assert released == ["a", "b"]
        assert manager.resource_count == 0

    async def test_start_is_idempotent(self):
        manager = _manager(sweep_interval_seconds=10)
        await manager.start()
        first = manager._sweep_task
        await manager.start()
        assert manager._sweep_task is first
        await manager.stop()


def test_process_rss_is_positive():
    assert process_rss_bytes() > 0


@pytest.mark.parametrize("rss, expected", [(50 * MB, False), (150 * MB, True)])
def test_memory_stats(rss, expected):
    assert _manager(rss=rss).memory_stats()["under_pressure"] is expected
