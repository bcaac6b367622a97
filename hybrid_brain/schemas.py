from __future__ import annotations

import time
from enum import StrEnum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class MessageRole(StrEnum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


class BackendKind(StrEnum):
    AGENT = "agent-backend"
    DIRECT = "direct-backend"

    @property
    def other(self) -> BackendKind:
        return BackendKind.DIRECT if self is BackendKind.AGENT else BackendKind.AGENT


class FinishReason(StrEnum):
    STOP = "stop"
    LENGTH = "length"
    TOOL = "tool"
    ERROR = "error"


def _clamp_unit(value: float) -> float:
    return max(0.0, min(1.0, float(value)))


# =============================================================================
# Inbound request
# =============================================================================


class Attachment(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    url: str
    name: str | None = None
    content_type: str | None = Field(default=None, alias="contentType")


class MessageData(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    id: str | None = None
    role: MessageRole
    content: str
    attachments: tuple[Attachment, ...] = ()
    experimental_attachments: tuple[Attachment, ...] = ()


class BrainRequest(BaseModel):
    """One inbound chat request. Constructed once and never mutated."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    messages: tuple[MessageData, ...] = Field(min_length=1)
    selected_chat_model: str | None = Field(default=None, alias="selectedChatModel")
    active_bit_context_id: str | None = Field(default=None, alias="activeBitContextId")
    current_active_specialist_id: str | None = Field(
        default=None, alias="currentActiveSpecialistId"
    )
    active_bit_persona: str | None = Field(default=None, alias="activeBitPersona")
    user_timezone: str | None = Field(default=None, alias="userTimezone")
    is_from_global_pane: bool = Field(default=False, alias="isFromGlobalPane")
    referenced_chat_id: str | None = Field(default=None, alias="referencedChatId")


class RequestIdentity(BaseModel):
    """Stable identifiers supplied by the authentication collaborator."""

    model_config = ConfigDict(frozen=True)

    user_id: str | None = None
    session_id: str | None = None
    ip_address: str | None = None

    @property
    def bucket_key(self) -> str:
        return self.user_id or self.session_id or self.ip_address or "anonymous"


# =============================================================================
# Classification
# =============================================================================


class ClassificationResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    route_to_agent_backend: bool
    confidence: float
    reasoning: str
    complexity_score: float
    detected_patterns: frozenset[str] = frozenset()
    recommended_model: str
    estimated_tokens: int = 0

    @field_validator("confidence", "complexity_score", mode="before")
    @classmethod
    def _in_unit_interval(cls, value: float) -> float:
        return _clamp_unit(value)

    @property
    def backend(self) -> BackendKind:
        return BackendKind.AGENT if self.route_to_agent_backend else BackendKind.DIRECT


# =============================================================================
# Execution
# =============================================================================


class TokenUsage(BaseModel):
    model_config = ConfigDict(frozen=True)

    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0

    @model_validator(mode="before")
    @classmethod
    def _fill_total(cls, data: Any) -> Any:
        if isinstance(data, dict) and not data.get("total_tokens"):
            prompt = data.get("prompt_tokens") or 0
            completion = data.get("completion_tokens") or 0
            if prompt or completion:
                data = {**data, "total_tokens": prompt + completion}
        return data

    def __add__(self, other: TokenUsage) -> TokenUsage:
        return TokenUsage(
            prompt_tokens=self.prompt_tokens + other.prompt_tokens,
            completion_tokens=self.completion_tokens + other.completion_tokens,
            total_tokens=self.total_tokens + other.total_tokens,
        )


class ToolCallRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    input: dict[str, Any] = Field(default_factory=dict)
    output: str = ""


class ExecutionResult(BaseModel):
    """Backend-agnostic envelope both adapters normalise into."""

    model_config = ConfigDict(frozen=True)

    backend: BackendKind
    content: str
    token_usage: TokenUsage = TokenUsage()
    finish_reason: FinishReason = FinishReason.STOP
    tool_calls: tuple[ToolCallRecord, ...] = ()
    execution_time_ms: float = 0.0
    model: str = ""


# Stream events. A backend stream yields deltas in arrival order and ends with
# exactly one StreamCompleted.


class TextDelta(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: Literal["text_delta"] = "text_delta"
    text: str


class ToolCallEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: Literal["tool_call"] = "tool_call"
    call: ToolCallRecord


class StreamCompleted(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: Literal["completed"] = "completed"
    result: ExecutionResult


BackendEvent = TextDelta | ToolCallEvent | StreamCompleted


# =============================================================================
# Performance tracking / rollout
# =============================================================================


class PerformanceSample(BaseModel):
    model_config = ConfigDict(frozen=True)

    backend: BackendKind
    success: bool
    duration_ms: float
    cancelled: bool = False
    prompt_tokens: int = 0
    completion_tokens: int = 0
    feature_flags: frozenset[str] = frozenset()
    correlation_id: str = ""
    timestamp: float = Field(default_factory=time.time)


class UserBucket(BaseModel):
    model_config = ConfigDict(frozen=True)

    identifier: str
    assigned_backend: BackendKind
    in_rollout: bool
    assignment_timestamp: float = Field(default_factory=time.time)


# =============================================================================
# Outbound response
# =============================================================================


class PerformanceInfo(BaseModel):
    total_time_ms: float = Field(serialization_alias="totalTime")
    classification_time_ms: float | None = Field(
        default=None, serialization_alias="classificationTime"
    )
    execution_time_ms: float = Field(serialization_alias="executionTime")


class ResponseMetadata(BaseModel):
    model: str
    tools_used: list[str] = Field(default_factory=list, serialization_alias="toolsUsed")
    confidence: float | None = None
    reasoning: str | None = None
    correlation_id: str = Field(default="", serialization_alias="correlationId")
    fallback_used: bool = Field(default=False, serialization_alias="fallbackUsed")


class BrainResponse(BaseModel):
    success: bool = True
    content: str
    execution_path: BackendKind = Field(serialization_alias="executionPath")
    classification: ClassificationResult | None = None
    performance: PerformanceInfo
    token_usage: TokenUsage | None = Field(default=None, serialization_alias="tokenUsage")
    metadata: ResponseMetadata

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


class ErrorBody(BaseModel):
    type: str
    message: str
    retryable: bool = False
    correlation_id: str = Field(default="", serialization_alias="correlationId")
    details: dict[str, Any] | None = None
