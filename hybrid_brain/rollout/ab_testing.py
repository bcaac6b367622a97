"""Gradual rollout of the candidate backend.

Users are bucketed by a stable hash of their identifier, outcomes are
aggregated per backend, and a periodic tick turns the aggregates into a
recommendation. A rollback sets the rollout to zero for the rest of the
test; resuming needs a new test.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import threading
import time
import uuid
from collections import OrderedDict
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field

from hybrid_brain.constants import (
    LATENCY_RESERVOIR_SIZE,
    ROLLOUT_BUCKET_SECONDS,
    ROLLOUT_LATENCY_IMPROVEMENT_PCT,
    ROLLOUT_MAX_BUCKETS,
    ROLLOUT_MAX_ERROR_RATE,
    ROLLOUT_MIN_SAMPLES,
    ROLLOUT_MIN_SUCCESS_RATE,
    ROLLOUT_TICK_INTERVAL_SECONDS,
    ROLLOUT_WINDOW_SECONDS,
)
from hybrid_brain.rollout.stats import BackendSnapshot, RollingBackendStats
from hybrid_brain.schemas import BackendKind, PerformanceSample, RequestIdentity, UserBucket

logger = logging.getLogger(__name__)


class RolloutRecommendation(StrEnum):
    ROLLBACK = "rollback"
    INCREASE = "increase"
    MAINTAIN = "maintain"


class ExperimentStatus(StrEnum):
    RUNNING = "running"
    STOPPED = "stopped"
    ROLLED_BACK = "rolled_back"


class ABTestConfig(BaseModel):
    name: str = "direct-backend-rollout"
    description: str = ""
    rollout_percentage: float = Field(ge=0, le=100)
    candidate_backend: BackendKind = BackendKind.DIRECT
    min_samples: int = Field(default=ROLLOUT_MIN_SAMPLES, ge=1)
    max_error_rate: float = Field(default=ROLLOUT_MAX_ERROR_RATE, ge=0, le=1)
    min_success_rate: float = Field(default=ROLLOUT_MIN_SUCCESS_RATE, ge=0, le=1)
    max_latency_ms: float | None = Field(default=None, gt=0)
    latency_improvement_pct: float = ROLLOUT_LATENCY_IMPROVEMENT_PCT
    window_seconds: float = Field(default=ROLLOUT_WINDOW_SECONDS, gt=0)
    auto_rollback: bool = True

    @property
    def baseline_backend(self) -> BackendKind:
        return self.candidate_backend.other


@dataclass(frozen=True)
class RecommendationReport:
    recommendation: RolloutRecommendation
    reason: str
    candidate: BackendSnapshot
    baseline: BackendSnapshot
    latency_improvement_pct: float | None = None


@dataclass
class ActiveTest:
    config: ABTestConfig
    test_id: str = field(default_factory=lambda: f"ab_{uuid.uuid4().hex[:10]}")
    status: ExperimentStatus = ExperimentStatus.RUNNING
    rollout_percentage: float = 0.0
    rolled_back: bool = False
    started_at: float = field(default_factory=time.time)
    rollback_reason: str | None = None
    last_report: RecommendationReport | None = None
    alerts: list[str] = field(default_factory=list)


def bucket_position(identifier: str) -> int:
    digest = hashlib.sha256(identifier.encode("utf-8")).digest()
    return int.from_bytes(digest[:8], "big") % 100


class ABTestController:
    def __init__(
        self,
        tick_interval_seconds: float = ROLLOUT_TICK_INTERVAL_SECONDS,
        bucket_seconds: float = ROLLOUT_BUCKET_SECONDS,
        reservoir_size: int = LATENCY_RESERVOIR_SIZE,
        max_buckets: int = ROLLOUT_MAX_BUCKETS,
    ) -> None:
        self.tick_interval_seconds = tick_interval_seconds
        self._bucket_seconds = bucket_seconds
        self._reservoir_size = reservoir_size
        self.max_buckets = max_buckets
        self._test: ActiveTest | None = None
        self._buckets: OrderedDict[str, UserBucket] = OrderedDict()
        self._stats: dict[BackendKind, RollingBackendStats] = self._fresh_stats(ROLLOUT_WINDOW_SECONDS)
        self._lock = threading.Lock()
        self._tick_task: asyncio.Task[None] | None = None

    def _fresh_stats(self, window_seconds: float) -> dict[BackendKind, RollingBackendStats]:
        return {
            kind: RollingBackendStats(window_seconds, self._bucket_seconds, self._reservoir_size)
            for kind in BackendKind
        }

    # ------------------------------------------------------------- lifecycle

    @property
    def active_test(self) -> ActiveTest | None:
        return self._test

    def create_test(self, config: ABTestConfig) -> ActiveTest:
        with self._lock:
            if self._test is not None and self._test.status is ExperimentStatus.RUNNING:
                logger.info("Replacing running A/B test %s", self._test.test_id)
            self._test = ActiveTest(config=config, rollout_percentage=config.rollout_percentage)
            self._buckets = OrderedDict()
            self._stats = self._fresh_stats(config.window_seconds)
        logger.info(
            "A/B test %s started: candidate=%s rollout=%.1f%%",
            self._test.test_id,
            config.candidate_backend,
            config.rollout_percentage,
        )
        return self._test

    def stop_test(self) -> ActiveTest | None:
        with self._lock:
            test = self._test
            if test is None:
                return None
            if test.status is ExperimentStatus.RUNNING:
                test.status = ExperimentStatus.STOPPED
            self._buckets = OrderedDict()
            self._test = None
        logger.info("A/B test %s stopped (%s)", test.test_id, test.status)
        return test

    def update_rollout(self, percentage: float) -> None:
        """Change the rollout for identifiers not yet bucketed."""
        if not 0 <= percentage <= 100:
            raise ValueError("rollout percentage must be within [0, 100]")
        with self._lock:
            test = self._test
            if test is None or test.status is not ExperimentStatus.RUNNING:
                raise RuntimeError("no running A/B test")
            test.rollout_percentage = percentage
        logger.info("A/B test %s rollout set to %.1f%%", test.test_id, percentage)

    # ------------------------------------------------------------- bucketing

    def assign_bucket(
        self,
        user_id: str | None = None,
        session_id: str | None = None,
        ip_address: str | None = None,
    ) -> UserBucket:
        identifier = RequestIdentity(
            user_id=user_id, session_id=session_id, ip_address=ip_address
        ).bucket_key
        with self._lock:
            test = self._test
            if test is None:
                return UserBucket(
                    identifier=identifier,
                    assigned_backend=BackendKind.AGENT,
                    in_rollout=False,
                )
            existing = self._buckets.get(identifier)
            if existing is not None:
                self._buckets.move_to_end(identifier)
                return existing
            in_rollout = bucket_position(identifier) < test.rollout_percentage
            bucket = UserBucket(
                identifier=identifier,
                assigned_backend=(
                    test.config.candidate_backend if in_rollout else test.config.baseline_backend
                ),
                in_rollout=in_rollout,
            )
            self._buckets[identifier] = bucket
            if len(self._buckets) > self.max_buckets:
                evicted, _ = self._buckets.popitem(last=False)
                logger.debug("Bucket cap %d reached, forgot %s", self.max_buckets, evicted)
            return bucket

    def is_eligible_for_candidate(self, identity: RequestIdentity) -> bool:
        """Whether this caller may be routed to the candidate backend.

        Without a test there is no gating. After a rollback nobody is.
        """
        test = self._test
        if test is None:
            return True
        if test.rolled_back:
            return False
        bucket = self.assign_bucket(identity.user_id, identity.session_id, identity.ip_address)
        return bucket.in_rollout

    # ----------------------------------------------------------- aggregation

    def record_sample(self, sample: PerformanceSample) -> None:
        # Synchronous on purpose: no await between read and write.
        self._stats[sample.backend].record(sample)

    def snapshot(self, backend: BackendKind) -> BackendSnapshot:
        return self._stats[backend].snapshot()

    def compute_recommendation(self) -> RecommendationReport:
        test = self._test
        config = test.config if test is not None else ABTestConfig(rollout_percentage=0)
        candidate = self._stats[config.candidate_backend].snapshot()
        baseline = self._stats[config.baseline_backend].snapshot()

        def report(rec: RolloutRecommendation, reason: str, improvement: float | None = None):
            return RecommendationReport(rec, reason, candidate, baseline, improvement)

        if candidate.count < config.min_samples:
            return report(
                RolloutRecommendation.MAINTAIN,
                f"insufficient samples ({candidate.count}/{config.min_samples})",
            )
        if candidate.error_rate > config.max_error_rate:
            return report(
                RolloutRecommendation.ROLLBACK,
                f"{config.candidate_backend} error rate {candidate.error_rate:.1%} "
                f"exceeds {config.max_error_rate:.1%}",
            )
        if candidate.success_rate < config.min_success_rate:
            return report(
                RolloutRecommendation.ROLLBACK,
                f"{config.candidate_backend} success rate {candidate.success_rate:.1%} "
                f"below {config.min_success_rate:.1%}",
            )
        if config.max_latency_ms is not None and candidate.p95_latency_ms > config.max_latency_ms:
            return report(
                RolloutRecommendation.ROLLBACK,
                f"{config.candidate_backend} p95 latency {candidate.p95_latency_ms:.0f}ms "
                f"exceeds {config.max_latency_ms:.0f}ms",
            )

        improvement: float | None = None
        if baseline.count and baseline.mean_latency_ms > 0:
            improvement = (
                (baseline.mean_latency_ms - candidate.mean_latency_ms)
                / baseline.mean_latency_ms
                * 100
            )
            if (
                improvement > config.latency_improvement_pct
                and candidate.success_rate >= baseline.success_rate
            ):
                return report(
                    RolloutRecommendation.INCREASE,
                    f"latency improved {improvement:.1f}% with success rate "
                    f"{candidate.success_rate:.1%} >= {baseline.success_rate:.1%}",
                    improvement,
                )
        return report(RolloutRecommendation.MAINTAIN, "within thresholds", improvement)

    def _rollback(self, test: ActiveTest, reason: str) -> None:
        with self._lock:
            if test.rolled_back:
                return
            test.rollout_percentage = 0.0
            test.rolled_back = True
            test.status = ExperimentStatus.ROLLED_BACK
            test.rollback_reason = reason
            test.alerts.append(f"AUTO-ROLLBACK: {reason}")
        logger.error("A/B test %s auto-rollback: %s", test.test_id, reason)

    def tick(self, now: float | None = None) -> RecommendationReport | None:
        """Retention sweep, recommendation, and automatic rollback."""
        for stats in self._stats.values():
            stats.prune(now)
        test = self._test
        if test is None:
            return None
        report = self.compute_recommendation()
        test.last_report = report
        if (
            report.recommendation is RolloutRecommendation.ROLLBACK
            and test.config.auto_rollback
            and test.status is ExperimentStatus.RUNNING
        ):
            self._rollback(test, report.reason)
        return report

    def results(self) -> dict[str, Any]:
        test = self._test
        payload: dict[str, Any] = {
            "active": test is not None,
            "backends": {str(kind): stats.snapshot().to_dict() for kind, stats in self._stats.items()},
            "bucketed_identifiers": len(self._buckets),
        }
        if test is not None:
            report = test.last_report
            payload.update(
                {
                    "test_id": test.test_id,
                    "name": test.config.name,
                    "status": str(test.status),
                    "candidate_backend": str(test.config.candidate_backend),
                    "configured_rollout_percentage": test.config.rollout_percentage,
                    "rollout_percentage": test.rollout_percentage,
                    "rolled_back": test.rolled_back,
                    "rollback_reason": test.rollback_reason,
                    "started_at": test.started_at,
                    "recommendation": str(report.recommendation) if report else None,
                    "recommendation_reason": report.reason if report else None,
                    "alerts": list(test.alerts),
                }
            )
        return payload

    # -------------------------------------------------------- periodic tick

    async def _periodic_tick(self) -> None:
        while True:
            await asyncio.sleep(self.tick_interval_seconds)
            try:
                self.tick()
            except Exception as e:
                logger.error("Rollout tick failed: %s: %s", type(e).__name__, e)

    async def start(self) -> None:
        if self._tick_task is None:
            self._tick_task = asyncio.create_task(self._periodic_tick())

    async def stop(self) -> None:
        if self._tick_task:
            self._tick_task.cancel()
            try:
                await self._tick_task
            except asyncio.CancelledError:
                pass
            self._tick_task = None
