import asyncio
import random
import statistics
import threading
import time

import pytest

from hybrid_brain.rollout.ab_testing import (
    ABTestConfig,
    ABTestController,
    ExperimentStatus,
    RolloutRecommendation,
    bucket_position,
)
from hybrid_brain.rollout.stats import RollingBackendStats
from hybrid_brain.schemas import BackendKind, PerformanceSample, RequestIdentity


def _sample(
    backend: BackendKind = BackendKind.DIRECT,
    success: bool = True,
    duration_ms: float = 100.0,
    timestamp: float | None = None,
    cancelled: bool = False,
) -> PerformanceSample:
    return PerformanceSample(
        backend=backend,
        success=success,
        duration_ms=duration_ms,
        cancelled=cancelled,
        timestamp=time.time() if timestamp is None else timestamp,
    )


def _feed(controller, backend, n, errors=0, duration_ms=100.0):
    for i in range(n):
        controller.record_sample(_sample(backend, success=i >= errors, duration_ms=duration_ms))


class TestBucketing:
    def test_assignment_is_stable(self):
        controller = ABTestController()
        controller.create_test(ABTestConfig(rollout_percentage=50))
        first = controller.assign_bucket(user_id="user-42")
        for _ in range(5):
            assert controller.assign_bucket(user_id="user-42") is first
        assert first.in_rollout == (bucket_position("user-42") < 50)

    def test_identifier_precedence(self):
        controller = ABTestController()
        controller.create_test(ABTestConfig(rollout_percentage=50))
        bucket = controller.assign_bucket(user_id=None, session_id="sess-1", ip_address="10.0.0.1")
        assert bucket.identifier == "sess-1"
        assert controller.assign_bucket(ip_address="10.0.0.1").identifier == "10.0.0.1"

    @pytest.mark.parametrize("percentage, expected", [(0, 0), (100, 200)])
    def test_rollout_extremes(self, percentage, expected):
        controller = ABTestController()
        controller.create_test(ABTestConfig(rollout_percentage=percentage))
        in_rollout = sum(controller.assign_bucket(user_id=f"u{i}").in_rollout for i in range(200))
        assert in_rollout == expected

    def test_rollout_share_is_roughly_proportional(self):
        controller = ABTestController()
        controller.create_test(ABTestConfig(rollout_percentage=30))
        in_rollout = sum(controller.assign_bucket(user_id=f"u{i}").in_rollout for i in range(2000))
        assert 450 <= in_rollout <= 750

    def test_candidate_and_baseline_backends(self):
        controller = ABTestController()
        controller.create_test(ABTestConfig(rollout_percentage=100))
        assert controller.assign_bucket(user_id="x").assigned_backend is BackendKind.DIRECT
        controller.create_test(ABTestConfig(rollout_percentage=0))
        assert controller.assign_bucket(user_id="x").assigned_backend is BackendKind.AGENT

    def test_no_test_means_no_gating(self):
        controller = ABTestController()
        bucket = controller.assign_bucket(user_id="u1")
        assert bucket.assigned_backend is BackendKind.AGENT
        assert bucket.in_rollout is False
        assert controller.is_eligible_for_candidate(RequestIdentity(user_id="u1")) is True

    def test_update_rollout_affects_new_identifiers_only(self):
        controller = ABTestController()
        controller.create_test(ABTestConfig(rollout_percentage=0))
        before = controller.assign_bucket(user_id="early")
        controller.update_rollout(100)
        assert controller.assign_bucket(user_id="early") is before
        assert controller.assign_bucket(user_id="late").in_rollout is True

    def test_stop_test_clears_buckets(self):
        controller = ABTestController()
        controller.create_test(ABTestConfig(rollout_percentage=50))
        controller.assign_bucket(user_id="u1")
        stopped = controller.stop_test()
        assert stopped.status is ExperimentStatus.STOPPED
        assert controller.active_test is None
        assert controller.results()["bucketed_identifiers"] == 0
        assert controller.stop_test() is None

    def test_identifier_matches_request_identity_key(self):
        controller = ABTestController()
        controller.create_test(ABTestConfig(rollout_percentage=50))
        identity = RequestIdentity(session_id="s-9", ip_address="10.0.0.1")
        bucket = controller.assign_bucket(session_id="s-9", ip_address="10.0.0.1")
        assert bucket.identifier == identity.bucket_key == "s-9"
        assert controller.assign_bucket().identifier == RequestIdentity().bucket_key

    def test_bucket_table_is_capped(self):
        controller = ABTestController(max_buckets=2)
        controller.create_test(ABTestConfig(rollout_percentage=50))
        first = controller.assign_bucket(user_id="u1")
        controller.assign_bucket(user_id="u2")
        controller.assign_bucket(user_id="u1")
        controller.assign_bucket(user_id="u3")

        assert controller.results()["bucketed_identifiers"] == 2
        assert controller.assign_bucket(user_id="u1") is first
        again = controller.assign_bucket(user_id="u2")
        assert again.in_rollout == (bucket_position("u2") < 50)


class TestRollingStats:
    def test_matches_reference_statistics_under_concurrent_writers(self):
        stats = RollingBackendStats(window_seconds=3600, bucket_seconds=1, reservoir_size=10_000)
        rng = random.Random(7)
        now = time.time()
        latencies = [rng.uniform(10, 900) for _ in range(4000)]
        chunks = [latencies[i::8] for i in range(8)]

        def writer(values):
            for offset, value in enumerate(values):
                stats.record(_sample(duration_ms=value, timestamp=now - (offset % 30)))

        threads = [threading.Thread(target=writer, args=(chunk,)) for chunk in chunks]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        snapshot = stats.snapshot()
        assert snapshot.count == len(latencies)
        assert snapshot.mean_latency_ms == pytest.approx(statistics.fmean(latencies), rel=1e-9)
        assert snapshot.latency_stddev_ms == pytest.approx(statistics.stdev(latencies), rel=1e-9)

    def test_cancelled_samples_excluded_from_rates(self):
        stats = RollingBackendStats()
        stats.record(_sample(success=True, duration_ms=100))
        stats.record(_sample(success=False, duration_ms=5, cancelled=True))
        snapshot = stats.snapshot()
        assert snapshot.count == 1
        assert snapshot.cancelled == 1
        assert snapshot.success_rate == 1.0
        assert snapshot.mean_latency_ms == 100

    def test_percentiles_nearest_rank(self):
        stats = RollingBackendStats()
        for value in range(1, 101):
            stats.record(_sample(duration_ms=float(value)))
        snapshot = stats.snapshot()
        assert snapshot.p50_latency_ms == 50
        assert snapshot.p95_latency_ms == 95

    def test_prune_drops_buckets_outside_window(self):
        stats = RollingBackendStats(window_seconds=120, bucket_seconds=60)
        now = 10_000.0
        stats.record(_sample(timestamp=now - 1000))
        stats.record(_sample(timestamp=now - 10))
        assert stats.prune(now) == 1
        snapshot = stats.snapshot()
        assert snapshot.count == 1
        assert stats.bucket_count == 1

    def test_empty_snapshot(self):
        snapshot = RollingBackendStats().snapshot()
        assert snapshot.count == 0
        assert snapshot.success_rate == 0.0
        assert snapshot.p95_latency_ms == 0.0


class TestRecommendation:
    def _controller(self, **overrides) -> ABTestController:
        controller = ABTestController()
        controller.create_test(ABTestConfig(rollout_percentage=10, min_samples=20, **overrides))
        return controller

    def test_insufficient_samples_maintains(self):
        controller = self._controller()
        _feed(controller, BackendKind.DIRECT, 19, errors=19)
        report = controller.compute_recommendation()
        assert report.recommendation is RolloutRecommendation.MAINTAIN
        assert "insufficient" in report.reason

    def test_error_ceiling_rolls_back(self):
        controller = self._controller()
        _feed(controller, BackendKind.DIRECT, 100, errors=6)
        report = controller.compute_recommendation()
        assert report.recommendation is RolloutRecommendation.ROLLBACK
        assert "error rate" in report.reason

    def test_success_floor_rolls_back(self):
        controller = self._controller(max_error_rate=0.5, min_success_rate=0.9)
        _feed(controller, BackendKind.DIRECT, 100, errors=20)
        report = controller.compute_recommendation()
        assert report.recommendation is RolloutRecommendation.ROLLBACK
        assert "success rate" in report.reason

    def test_latency_ceiling_rolls_back(self):
        controller = self._controller(max_latency_ms=500)
        _feed(controller, BackendKind.DIRECT, 50, duration_ms=800)
        report = controller.compute_recommendation()
        assert report.recommendation is RolloutRecommendation.ROLLBACK
        assert "p95 latency" in report.reason

    def test_faster_candidate_increases(self):
        controller = self._controller()
        _feed(controller, BackendKind.DIRECT, 50, duration_ms=100)
        _feed(controller, BackendKind.AGENT, 50, duration_ms=200)
        report = controller.compute_recommendation()
        assert report.recommendation is RolloutRecommendation.INCREASE
        assert report.latency_improvement_pct == pytest.approx(50.0)

    def test_small_improvement_maintains(self):
        controller = self._controller()
        _feed(controller, BackendKind.DIRECT, 50, duration_ms=190)
        _feed(controller, BackendKind.AGENT, 50, duration_ms=200)
        assert controller.compute_recommendation().recommendation is RolloutRecommendation.MAINTAIN


class TestTick:
    def test_auto_rollback_is_one_way(self):
        controller = ABTestController()
        controller.create_test(ABTestConfig(rollout_percentage=50, min_samples=10))
        _feed(controller, BackendKind.DIRECT, 20, errors=5)

        report = controller.tick()

        test = controller.active_test
        assert report.recommendation is RolloutRecommendation.ROLLBACK
        assert test.rolled_back is True
        assert test.rollout_percentage == 0
        assert test.status is ExperimentStatus.ROLLED_BACK
        assert test.alerts and test.alerts[0].startswith("AUTO-ROLLBACK")
        assert controller.is_eligible_for_candidate(RequestIdentity(user_id="anyone")) is False

        _feed(controller, BackendKind.DIRECT, 200, errors=0)
        controller.tick()
        assert test.rolled_back is True
        with pytest.raises(RuntimeError):
            controller.update_rollout(50)

    def test_agent_candidate_rollback(self):
        controller = ABTestController()
        controller.create_test(
            ABTestConfig(rollout_percentage=100, candidate_backend=BackendKind.AGENT, min_samples=10)
        )
        _feed(controller, BackendKind.AGENT, 10, errors=3)
        _feed(controller, BackendKind.DIRECT, 10)

        controller.tick()

        results = controller.results()
        assert results["rolled_back"] is True
        assert results["candidate_backend"] == "agent-backend"
        assert results["rollout_percentage"] == 0

    def test_auto_rollback_disabled(self):
        controller = ABTestController()
        controller.create_test(
            ABTestConfig(rollout_percentage=50, min_samples=10, auto_rollback=False)
        )
        _feed(controller, BackendKind.DIRECT, 10, errors=10)
        assert controller.tick().recommendation is RolloutRecommendation.ROLLBACK
        assert controller.active_test.rolled_back is False

    def test_tick_without_test(self):
        assert ABTestController().tick() is None

    async def test_periodic_tick_task(self):
        controller = ABTestController(tick_interval_seconds=0.01)
        controller.create_test(ABTestConfig(rollout_percentage=50, min_samples=5))
        _feed(controller, BackendKind.DIRECT, 5, errors=5)
        await controller.start()
        try:
            for _ in range(50):
                if controller.active_test.rolled_back:
                    break
                await asyncio.sleep(0.01)
        finally:
            await controller.stop()
        assert controller.active_test.rolled_back is True
