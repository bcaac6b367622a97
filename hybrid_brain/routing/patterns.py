from __future__ import annotations

import re
from dataclasses import dataclass
from enum import StrEnum


class PatternKind(StrEnum):
    COMPLEX = "complex"
    SIMPLE = "simple"


@dataclass(frozen=True)
class PatternCategory:
    name: str
    kind: PatternKind
    patterns: tuple[re.Pattern[str], ...]
    weight: float = 0.0
    # Contribution to the complexity score when the category matches.
    # Simple categories carry no weight; they only steer the decision.

    @property
    def tag(self) -> str:
        return f"{self.kind}_{self.name}"

    def matches(self, text: str) -> bool:
        return any(p.search(text) for p in self.patterns)


def _compile(*patterns: str) -> tuple[re.Pattern[str], ...]:
    return tuple(re.compile(p, re.IGNORECASE) for p in patterns)


COMPLEX_CATEGORIES: tuple[PatternCategory, ...] = (
    PatternCategory(
        name="tool_request",
        kind=PatternKind.COMPLEX,
        weight=0.35,
        patterns=_compile(
            r"\b(?:create|make|generate|build)\b.+\b(?:task|project|document|file)s?\b",
            r"\b(?:search|find|look up|retrieve|fetch|access)\b.+\b(?:asana|google|drive|files?|documents?|content|data|knowledge)\b",
            r"\b(?:update|modify|change|edit)\b.+\b(?:task|project|status|document|file)s?\b",
            r"\b(?:analy[sz]e|process|transform)\b.+\b(?:data|content|documents?)\b",
            r"\b(?:give me|show me|provide|display)\b.+\b(?:contents|file|document|data|information)\b",
            r"\b(?:upload|download|save|store|backup)\b.+\b(?:file|document|data)s?\b",
            r"\bassign\b.+\bto (?:me|him|her|them|\w+)\b",
        ),
    ),
    PatternCategory(
        name="multi_step",
        kind=PatternKind.COMPLEX,
        weight=0.2,
        patterns=_compile(
            r"\b(?:first|then|next|afterwards|finally)\b",
            r"\b(?:step|phase) \d+\b",
            r"(?:^|\s)\d+\.\s",
            r"\bif\b.+\bthen\b",
        ),
    ),
    PatternCategory(
        name="reasoning",
        kind=PatternKind.COMPLEX,
        weight=0.15,
        patterns=_compile(
            r"\b(?:compare|contrast|evaluate|assess)\b",
            r"\b(?:pros and cons|advantages|disadvantages|trade-?offs?)\b",
            r"\b(?:explain why|what if|suppose that)\b",
        ),
    ),
    PatternCategory(
        name="integration",
        kind=PatternKind.COMPLEX,
        weight=0.2,
        patterns=_compile(
            r"\b(?:RAG|retrieval|embeddings?|vector|semantic search)\b",
            r"\b(?:workflow|automation|integration|API)s?\b",
            r"\b(?:code|programming|codebase|repository)\b",
        ),
    ),
    PatternCategory(
        name="knowledge_retrieval",
        kind=PatternKind.COMPLEX,
        weight=0.3,
        patterns=_compile(
            r"\b(?:complete contents|full content|entire file|all content)\b",
            r"\b(?:knowledge base|internal docs|company files|core values|policies|procedures)\b",
            r"\b(?:from the|in our|company's|organization's)\b.+\b(?:files|documents|database)\b",
        ),
    ),
)

SIMPLE_CATEGORIES: tuple[PatternCategory, ...] = (
    PatternCategory(
        name="conversational",
        kind=PatternKind.SIMPLE,
        patterns=_compile(
            r"^(?:hi|hello|hey|good (?:morning|afternoon|evening))\b",
            r"^(?:how are you|what['’]s up|how['’]s it going)\b",
            r"^(?:thanks|thank you|thx)\b",
            r"^(?:yes|no|ok|okay|sure|alright)\b",
            r"^(?:what(?:['’]s| is| are)|who is|when is|where is)\b",
        ),
    ),
    PatternCategory(
        name="lookup",
        kind=PatternKind.SIMPLE,
        patterns=_compile(
            r"\b(?:weather|temperature|forecast)\b",
            r"\b(?:time|date|today|tomorrow)\b",
        ),
    ),
    PatternCategory(
        name="advisory",
        kind=PatternKind.SIMPLE,
        patterns=_compile(
            r"^(?:define|explain|tell me about|can you help|help me)\b",
            r"\b(?:suggestions?|recommend(?:ation)?s?|advice)\b",
        ),
    ),
)

ALL_CATEGORIES: tuple[PatternCategory, ...] = COMPLEX_CATEGORIES + SIMPLE_CATEGORIES

TECHNICAL_TERMS: tuple[str, ...] = (
    "api",
    "database",
    "algorithm",
    "integration",
    "workflow",
    "automation",
    "schema",
    "deployment",
)

TOOL_MENTION = re.compile(r"\b(?:tool|search(?:ed)?|creat(?:e|ed)|updat(?:e|ed)|task)\b", re.IGNORECASE)
ERROR_MENTION = re.compile(r"\b(?:error|failed|try again)\b", re.IGNORECASE)


def detect(text: str, categories: tuple[PatternCategory, ...] = ALL_CATEGORIES) -> list[PatternCategory]:
    return [c for c in categories if c.matches(text)]
