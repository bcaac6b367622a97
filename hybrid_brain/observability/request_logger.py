"""Correlation-id scoped request logging with token and latency accounting."""

from __future__ import annotations

import logging
import re
import time
import uuid
from contextvars import ContextVar
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Literal

from hybrid_brain.constants import OBSERVABILITY_QUIET
from hybrid_brain.observability.cost import estimate_cost_usd
from hybrid_brain.schemas import TokenUsage

logger = logging.getLogger(__name__)

correlation_id_var: ContextVar[str | None] = ContextVar("correlation_id_var", default=None)

LogLevel = Literal["info", "warn", "error"]

_ROUTINE_PATTERNS = [
    re.compile(p, re.IGNORECASE)
    for p in (
        r"stream chunk",
        r"processed \d+ events",
        r"agent session (opened|released)",
        r"prompt cache hit",
        r"resource (registered|unregistered)",
    )
]


class CorrelationIdFilter(logging.Filter):
    """Stamp every record with the current request's correlation id."""

    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, "correlation_id"):
            record.correlation_id = correlation_id_var.get() or "-"
        return True


def new_correlation_id() -> str:
    return f"req_{uuid.uuid4().hex[:10]}_{int(time.time() * 1000)}"


@dataclass(frozen=True)
class LogEvent:
    timestamp: str
    level: LogLevel
    message: str
    data: dict[str, Any] | None = None


@dataclass(frozen=True)
class TokenUsageRecord:
    prompt_tokens: int
    completion_tokens: int
    total_tokens: int
    model: str
    provider: str
    cost_usd: float


@dataclass(frozen=True)
class RequestSummary:
    correlation_id: str
    duration_ms: float
    success: bool
    token_usage: TokenUsageRecord | None
    metrics: dict[str, Any] | None
    events: tuple[LogEvent, ...]


@dataclass
class RequestLogger:
    """Per-request logger. Not shared across requests."""

    correlation_id: str = field(default_factory=new_correlation_id)
    quiet: bool = OBSERVABILITY_QUIET
    start_time: float = field(default_factory=time.perf_counter)
    _events: list[LogEvent] = field(default_factory=list)
    _token_usage: TokenUsageRecord | None = None
    _metrics: dict[str, Any] | None = None
    _summary: RequestSummary | None = None

    def _log(self, level: LogLevel, message: str, data: dict[str, Any] | None) -> None:
        self._events.append(
            LogEvent(
                timestamp=datetime.now(UTC).isoformat(),
                level=level,
                message=message,
                data=data,
            )
        )
        extra = {"correlation_id": self.correlation_id, "data": data}
        if level == "error":
            logger.error("%s %s", message, data or "", extra=extra)
        elif level == "warn":
            logger.warning("%s %s", message, data or "", extra=extra)
        else:
            logger.info("%s %s", message, data or "", extra=extra)

    def info(self, message: str, **data: Any) -> None:
        if self.quiet and any(p.search(message) for p in _ROUTINE_PATTERNS):
            return
        self._log("info", message, data or None)

    def warn(self, message: str, **data: Any) -> None:
        self._log("warn", message, data or None)

    def error(self, message: str, error: BaseException | None = None, **data: Any) -> None:
        if error is not None:
            data = {**data, "error": str(error), "error_class": type(error).__name__}
        self._log("error", message, data or None)

    def log_token_usage(self, usage: TokenUsage, model: str, provider: str = "openai") -> None:
        record = TokenUsageRecord(
            prompt_tokens=usage.prompt_tokens,
            completion_tokens=usage.completion_tokens,
            total_tokens=usage.total_tokens,
            model=model,
            provider=provider,
            cost_usd=estimate_cost_usd(
                usage.prompt_tokens, usage.completion_tokens, model, provider
            ),
        )
        self._token_usage = record
        self.info(
            "Token usage recorded",
            model=model,
            total_tokens=record.total_tokens,
            cost_usd=record.cost_usd,
        )

    def log_performance_metrics(self, **metrics: Any) -> None:
        self._metrics = {**(self._metrics or {}), **metrics}
        self.info("Performance metrics recorded", **metrics)

    @property
    def events(self) -> tuple[LogEvent, ...]:
        return tuple(self._events)

    def elapsed_ms(self) -> float:
        return (time.perf_counter() - self.start_time) * 1000.0

    def finalize(self) -> RequestSummary:
        if self._summary is not None:
            return self._summary

        duration = self.elapsed_ms()
        success = not any(e.level == "error" for e in self._events)
        important = [e for e in self._events if e.level != "info"]
        if not self.quiet or important:
            self._log(
                "info",
                "Request completed",
                {
                    "duration_ms": round(duration, 2),
                    "success": success,
                    "event_count": len(self._events),
                    "important_event_count": len(important),
                },
            )
        self._summary = RequestSummary(
            correlation_id=self.correlation_id,
            duration_ms=duration,
            success=success,
            token_usage=self._token_usage,
            metrics=dict(self._metrics) if self._metrics else None,
            events=tuple(self._events),
        )
        return self._summary


class TokenUsageTracker:
    """Accumulates usage across the model calls of one request."""

    def __init__(self, provider: str = "openai") -> None:
        self.provider = provider
        self._records: list[tuple[str, TokenUsage]] = []

    def add(self, usage: TokenUsage, model: str) -> None:
        self._records.append((model, usage))

    def total(self) -> TokenUsage:
        total = TokenUsage()
        for _, usage in self._records:
            total = total + usage
        return total

    def by_model(self) -> dict[str, TokenUsage]:
        result: dict[str, TokenUsage] = {}
        for model, usage in self._records:
            result[model] = result.get(model, TokenUsage()) + usage
        return result

    def total_cost_usd(self) -> float:
        return round(
            sum(
                estimate_cost_usd(u.prompt_tokens, u.completion_tokens, model, self.provider)
                for model, u in self._records
            ),
            6,
        )

    def reset(self) -> None:
        self._records.clear()
