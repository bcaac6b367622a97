from hybrid_brain.rollout.ab_testing import (
    ABTestConfig,
    ABTestController,
    ExperimentStatus,
    RecommendationReport,
    RolloutRecommendation,
)
from hybrid_brain.rollout.stats import BackendSnapshot, RollingBackendStats

__all__ = [
    "ABTestConfig",
    "ABTestController",
    "BackendSnapshot",
    "ExperimentStatus",
    "RecommendationReport",
    "RollingBackendStats",
    "RolloutRecommendation",
]
