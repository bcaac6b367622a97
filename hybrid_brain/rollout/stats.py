"""Windowed per-backend performance aggregates.

Samples land in fixed-width time buckets. Each bucket keeps a running
latency mean and sum of squared deviations (Welford), and buckets are merged
with the parallel-variance formula, so a snapshot never rescans samples.
Only ``prune`` removes data; counts within the retained window never drop.
"""

from __future__ import annotations

import math
import threading
import time
from collections import deque
from dataclasses import dataclass

from hybrid_brain.constants import (
    LATENCY_RESERVOIR_SIZE,
    ROLLOUT_BUCKET_SECONDS,
    ROLLOUT_WINDOW_SECONDS,
)
from hybrid_brain.schemas import PerformanceSample


@dataclass
class _Moments:
    count: int = 0
    mean: float = 0.0
    m2: float = 0.0

    def add(self, value: float) -> None:
        self.count += 1
        delta = value - self.mean
        self.mean += delta / self.count
        self.m2 += delta * (value - self.mean)

    def merge(self, other: _Moments) -> _Moments:
        if other.count == 0:
            return _Moments(self.count, self.mean, self.m2)
        if self.count == 0:
            return _Moments(other.count, other.mean, other.m2)
        n = self.count + other.count
        delta = other.mean - self.mean
        return _Moments(
            count=n,
            mean=self.mean + delta * other.count / n,
            m2=self.m2 + other.m2 + delta * delta * self.count * other.count / n,
        )


@dataclass
class _Bucket:
    latency: _Moments
    successes: int = 0
    cancelled: int = 0
    prompt_tokens: int = 0
    completion_tokens: int = 0


@dataclass(frozen=True)
class BackendSnapshot:
    count: int
    successes: int
    cancelled: int
    mean_latency_ms: float
    latency_stddev_ms: float
    p50_latency_ms: float
    p95_latency_ms: float
    prompt_tokens: int
    completion_tokens: int

    @property
    def errors(self) -> int:
        return self.count - self.successes

    @property
    def success_rate(self) -> float:
        return self.successes / self.count if self.count else 0.0

    @property
    def error_rate(self) -> float:
        return self.errors / self.count if self.count else 0.0

    def to_dict(self) -> dict[str, float | int]:
        return {
            "count": self.count,
            "successes": self.successes,
            "errors": self.errors,
            "cancelled": self.cancelled,
            "success_rate": round(self.success_rate, 4),
            "error_rate": round(self.error_rate, 4),
            "mean_latency_ms": round(self.mean_latency_ms, 2),
            "latency_stddev_ms": round(self.latency_stddev_ms, 2),
            "p50_latency_ms": round(self.p50_latency_ms, 2),
            "p95_latency_ms": round(self.p95_latency_ms, 2),
            "prompt_tokens": self.prompt_tokens,
            "completion_tokens": self.completion_tokens,
        }


def _percentile(sorted_values: list[float], pct: float) -> float:
    if not sorted_values:
        return 0.0
    rank = max(1, math.ceil(pct / 100 * len(sorted_values)))
    return sorted_values[rank - 1]


class RollingBackendStats:
    """Aggregates for one backend.

    Cancelled attempts are counted separately and excluded from success rate
    and latency: a caller hanging up says nothing about the backend.
    """

    def __init__(
        self,
        window_seconds: float = ROLLOUT_WINDOW_SECONDS,
        bucket_seconds: float = ROLLOUT_BUCKET_SECONDS,
        reservoir_size: int = LATENCY_RESERVOIR_SIZE,
    ) -> None:
        self.window_seconds = window_seconds
        self.bucket_seconds = bucket_seconds
        self._buckets: dict[int, _Bucket] = {}
        self._recent: deque[tuple[float, float]] = deque(maxlen=reservoir_size)
        self._lock = threading.Lock()

    def _bucket_index(self, timestamp: float) -> int:
        return int(timestamp // self.bucket_seconds)

    def record(self, sample: PerformanceSample) -> None:
        with self._lock:
            index = self._bucket_index(sample.timestamp)
            bucket = self._buckets.get(index)
            if bucket is None:
                bucket = self._buckets[index] = _Bucket(latency=_Moments())
            if sample.cancelled:
                bucket.cancelled += 1
                return
            bucket.latency.add(sample.duration_ms)
            if sample.success:
                bucket.successes += 1
            bucket.prompt_tokens += sample.prompt_tokens
            bucket.completion_tokens += sample.completion_tokens
            self._recent.append((sample.timestamp, sample.duration_ms))

    def prune(self, now: float | None = None) -> int:
        """Drop buckets entirely outside the window. Returns buckets removed."""
        now = time.time() if now is None else now
        cutoff = now - self.window_seconds
        oldest_kept = self._bucket_index(cutoff)
        with self._lock:
            stale = [i for i in self._buckets if i < oldest_kept]
            for index in stale:
                del self._buckets[index]
            while self._recent and self._recent[0][0] < cutoff:
                self._recent.popleft()
            return len(stale)

    def snapshot(self) -> BackendSnapshot:
        with self._lock:
            moments = _Moments()
            successes = cancelled = prompt = completion = 0
            for index in sorted(self._buckets):
                bucket = self._buckets[index]
                moments = moments.merge(bucket.latency)
                successes += bucket.successes
                cancelled += bucket.cancelled
                prompt += bucket.prompt_tokens
                completion += bucket.completion_tokens
            latencies = sorted(d for _, d in self._recent)

        variance = moments.m2 / (moments.count - 1) if moments.count > 1 else 0.0
        return BackendSnapshot(
            count=moments.count,
            successes=successes,
            cancelled=cancelled,
            mean_latency_ms=moments.mean,
            latency_stddev_ms=math.sqrt(variance),
            p50_latency_ms=_percentile(latencies, 50),
            p95_latency_ms=_percentile(latencies, 95),
            prompt_tokens=prompt,
            completion_tokens=completion,
        )

    def reset(self) -> None:
        with self._lock:
            self._buckets.clear()
            self._recent.clear()

    @property
    def bucket_count(self) -> int:
        return len(self._buckets)
