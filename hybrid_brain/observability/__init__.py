"""Request-scoped logging and usage accounting."""

from hybrid_brain.observability.cost import estimate_cost_usd
from hybrid_brain.observability.request_logger import (
    CorrelationIdFilter,
    RequestLogger,
    RequestSummary,
    TokenUsageTracker,
    correlation_id_var,
)

__all__ = [
    "CorrelationIdFilter",
    "RequestLogger",
    "RequestSummary",
    "TokenUsageTracker",
    "correlation_id_var",
    "estimate_cost_usd",
]
