"""Heuristic routing between the tool-agent and direct-model backends.

Scoring is deterministic and model-free so routing decisions can be
reproduced in tests:

- complexity = structural signals (length, sentences, technical terms)
  + weights of matched complex categories + a share of history complexity,
  clamped to [0, 1];
- any complex category, or a busy history (> 0.6), routes to the agent;
- only simple categories with a calm history (< 0.3) routes direct;
- otherwise the combined score is compared with ``complexity_threshold``.

A direct decision whose confidence falls below ``confidence_threshold`` is
overridden to the agent backend, which is a superset of the direct one.
"""

from __future__ import annotations

import logging
import math
import re
import time
from collections.abc import Sequence
from typing import Any

from hybrid_brain.constants import (
    AGENT_MODEL,
    COMPLEXITY_THRESHOLD,
    CONFIDENCE_THRESHOLD,
    DIRECT_MODEL,
)
from hybrid_brain.errors import ClassificationError
from hybrid_brain.routing.patterns import (
    ALL_CATEGORIES,
    ERROR_MENTION,
    TECHNICAL_TERMS,
    TOOL_MENTION,
    PatternCategory,
    PatternKind,
    detect,
)
from hybrid_brain.schemas import ClassificationResult

logger = logging.getLogger(__name__)

CLASSIFICATION_ERROR_TAG = "classification_error"
BUSY_CONTEXT = 0.6
CALM_CONTEXT = 0.3
CONTEXT_SHARE = 0.25
RECENT_TURNS = 5

_SENTENCE_SPLIT = re.compile(r"[.!?]+")


def _content_of(turn: Any) -> str:
    if isinstance(turn, str):
        return turn
    if isinstance(turn, dict):
        value = turn.get("content")
    else:
        value = getattr(turn, "content", None)
    return value if isinstance(value, str) else ""


def structural_score(utterance: str) -> float:
    words = len(utterance.split())
    sentences = len([s for s in _SENTENCE_SPLIT.split(utterance) if s.strip()])
    lowered = utterance.lower()
    tech_terms = sum(1 for term in TECHNICAL_TERMS if term in lowered)
    return (
        min(words / 60, 0.2)
        + min(max(sentences - 1, 0) / 4, 0.15)
        + min(tech_terms * 0.1, 0.2)
    )


def context_complexity(history: Sequence[Any]) -> float:
    if not history:
        return 0.0
    recent = [_content_of(t) for t in history[-RECENT_TURNS:]]
    tool_mentions = sum(1 for c in recent if TOOL_MENTION.search(c))
    error_mentions = sum(1 for c in recent if ERROR_MENTION.search(c))
    score = (
        min(tool_mentions / 3, 0.4)
        + min(len(history) / 10, 0.3)
        + min(error_mentions / 2, 0.3)
    )
    return min(score, 1.0)


def estimate_tokens(utterance: str, history: Sequence[Any]) -> int:
    # ~4 characters per token
    return math.ceil(len(utterance) / 4) + sum(
        math.ceil(len(_content_of(t)) / 4) for t in history
    )


class QueryClassifier:
    def __init__(
        self,
        complexity_threshold: float = COMPLEXITY_THRESHOLD,
        confidence_threshold: float = CONFIDENCE_THRESHOLD,
        agent_model: str = AGENT_MODEL,
        direct_model: str = DIRECT_MODEL,
        categories: tuple[PatternCategory, ...] = ALL_CATEGORIES,
    ) -> None:
        self.complexity_threshold = complexity_threshold
        self.confidence_threshold = confidence_threshold
        self.agent_model = agent_model
        self.direct_model = direct_model
        self.categories = categories

    def complexity_score(
        self,
        utterance: str,
        history: Sequence[Any],
        matched: Sequence[PatternCategory] | None = None,
    ) -> float:
        if matched is None:
            matched = detect(utterance, self.categories)
        pattern_weight = sum(c.weight for c in matched if c.kind is PatternKind.COMPLEX)
        score = (
            structural_score(utterance)
            + pattern_weight
            + CONTEXT_SHARE * context_complexity(history)
        )
        return max(0.0, min(score, 1.0))

    def _decide(self, complexity: float, matched: Sequence[PatternCategory], context: float) -> bool:
        has_complex = any(c.kind is PatternKind.COMPLEX for c in matched)
        has_simple = any(c.kind is PatternKind.SIMPLE for c in matched)
        if has_complex or context > BUSY_CONTEXT:
            return True
        if has_simple and context < CALM_CONTEXT:
            return False
        return (complexity + context) / 2 >= self.complexity_threshold

    def _confidence(self, complexity: float, matched: Sequence[PatternCategory]) -> float:
        pattern_strength = min(0.1 * len(matched), 0.3)
        distance = abs(complexity - self.complexity_threshold)
        return min(0.5 + pattern_strength + min(distance * 0.5, 0.2), 1.0)

    @staticmethod
    def _reasoning(
        to_agent: bool,
        complexity: float,
        matched: Sequence[PatternCategory],
        context: float,
    ) -> str:
        reasons: list[str] = []
        if to_agent:
            complex_names = [c.name for c in matched if c.kind is PatternKind.COMPLEX]
            if complex_names:
                reasons.append(f"complex patterns ({', '.join(complex_names)})")
            if complexity > 0.7:
                reasons.append("high query complexity")
            if context > BUSY_CONTEXT:
                reasons.append("complex conversation context")
            if not reasons:
                reasons.append("complexity score above threshold")
            return "Agent backend: " + ", ".join(reasons)
        simple_names = [c.name for c in matched if c.kind is PatternKind.SIMPLE]
        if simple_names:
            reasons.append(f"simple patterns ({', '.join(simple_names)})")
        if complexity < 0.4:
            reasons.append("low complexity score")
        if context < CALM_CONTEXT:
            reasons.append("simple context")
        if not reasons:
            reasons.append("complexity score below threshold")
        return "Direct backend: " + ", ".join(reasons)

    def _classify(self, utterance: str, history: Sequence[Any]) -> ClassificationResult:
        try:
            return self._score(utterance, history)
        except Exception as e:
            raise ClassificationError(
                f"{type(e).__name__}: {e}", details={"utterance_chars": len(utterance)}
            ) from e

    def _score(self, utterance: str, history: Sequence[Any]) -> ClassificationResult:
        matched = detect(utterance, self.categories)
        context = context_complexity(history)
        complexity = self.complexity_score(utterance, history, matched)
        to_agent = self._decide(complexity, matched, context)
        confidence = self._confidence(complexity, matched)
        reasoning = self._reasoning(to_agent, complexity, matched, context)

        if not to_agent and confidence < self.confidence_threshold:
            to_agent = True
            reasoning = (
                f"Agent backend: direct decision confidence {confidence:.2f} "
                f"below {self.confidence_threshold:.2f}"
            )

        return ClassificationResult(
            route_to_agent_backend=to_agent,
            confidence=confidence,
            reasoning=reasoning,
            complexity_score=complexity,
            detected_patterns=frozenset(c.tag for c in matched),
            recommended_model=self.agent_model if to_agent else self.direct_model,
            estimated_tokens=estimate_tokens(utterance, history),
        )

    def classify(
        self,
        utterance: str,
        history: Sequence[Any] = (),
        system_prompt: str | None = None,
    ) -> ClassificationResult:
        """Never raises. Internal failures route to the agent backend."""
        start = time.perf_counter()
        try:
            result = self._classify(utterance, history)
        except ClassificationError as e:
            logger.error("Query classification failed: %s", e.message)
            return ClassificationResult(
                route_to_agent_backend=True,
                confidence=0.5,
                reasoning="Classification failed, defaulting to agent backend",
                complexity_score=1.0,
                detected_patterns=frozenset({CLASSIFICATION_ERROR_TAG}),
                recommended_model=self.agent_model,
            )
        logger.info(
            "Query classified: backend=%s confidence=%.2f complexity=%.2f patterns=%s (%.2fms, prompt=%s)",
            result.backend,
            result.confidence,
            result.complexity_score,
            sorted(result.detected_patterns),
            (time.perf_counter() - start) * 1000.0,
            bool(system_prompt),
        )
        return result

    def metrics(self) -> dict[str, Any]:
        return {
            "complexity_threshold": self.complexity_threshold,
            "confidence_threshold": self.confidence_threshold,
            "categories": [c.tag for c in self.categories],
        }
