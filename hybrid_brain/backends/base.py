"""Uniform contract for the execution backends.

A backend is used in three steps: ``open`` builds an ``ExecutionHandle``
for one request, ``stream`` yields ordered deltas followed by exactly one
``StreamCompleted``, and ``cleanup`` releases whatever the handle owns. The
orchestrator always calls ``cleanup``, including after a failed or cancelled
stream.

Engine errors never leave ``stream`` untranslated: timeouts become
``BackendTimeoutError`` and everything else ``BackendExecutionError``.
"""

from __future__ import annotations

import logging
import time
import uuid
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Callable, Sequence
from contextlib import aclosing
from dataclasses import dataclass, field
from typing import Any

from openai import AsyncOpenAI

from hybrid_brain.backends.tools import ToolRegistry
from hybrid_brain.constants import LLM_DEFAULT_MAX_TOKENS, LLM_TEMPERATURE
from hybrid_brain.context import ProcessedContext
from hybrid_brain.errors import BackendExecutionError, BackendTimeoutError, BrainError
from hybrid_brain.llm.client import ChatStreamChunk, get_client, parse_tool_arguments, stream_chat
from hybrid_brain.messages.adapter import ChatTurn, MessageAdapter
from hybrid_brain.observability.request_logger import TokenUsageTracker
from hybrid_brain.schemas import (
    BackendEvent,
    BackendKind,
    BrainRequest,
    ClassificationResult,
    ExecutionResult,
    FinishReason,
    StreamCompleted,
    TextDelta,
    ToolCallEvent,
    ToolCallRecord,
)

logger = logging.getLogger(__name__)

ClientFactory = Callable[[], AsyncOpenAI]


@dataclass
class ExecutionHandle:
    id: str
    backend: BackendKind
    model: str
    messages: list[dict[str, Any]]
    context: ProcessedContext
    classification: ClassificationResult | None = None
    started_at: float = field(default_factory=time.perf_counter)
    closed: bool = False
    state: dict[str, Any] = field(default_factory=dict)

    def elapsed_ms(self) -> float:
        return (time.perf_counter() - self.started_at) * 1000.0


class ExecutionBackend(ABC):
    kind: BackendKind

    def __init__(self, model: str) -> None:
        self.model = model

    def select_model(
        self,
        context: ProcessedContext,
        classification: ClassificationResult | None,
    ) -> str:
        return self.model

    async def open(
        self,
        request: BrainRequest,
        context: ProcessedContext,
        classification: ClassificationResult | None,
        system_prompt: str,
        history: Sequence[ChatTurn],
        user_input: str,
    ) -> ExecutionHandle:
        handle = ExecutionHandle(
            id=f"{self.kind}-{uuid.uuid4().hex[:12]}",
            backend=self.kind,
            model=self.select_model(context, classification),
            messages=MessageAdapter.to_chat_messages(
                system_prompt + context.prompt_additions(), history, user_input
            ),
            context=context,
            classification=classification,
        )
        try:
            await self._prepare(handle)
        except BrainError:
            raise
        except Exception as e:
            raise self._translate(e) from e
        return handle

    async def _prepare(self, handle: ExecutionHandle) -> None:
        """Acquire per-execution resources. Released by ``_release``."""

    async def _release(self, handle: ExecutionHandle) -> None:
        """Release what ``_prepare`` acquired."""

    @abstractmethod
    def _run(self, handle: ExecutionHandle) -> AsyncIterator[BackendEvent]:
        """Engine-specific event stream. Errors are translated by ``stream``."""

    def _translate(self, error: Exception) -> BackendExecutionError:
        if isinstance(error, TimeoutError):
            return BackendTimeoutError(f"{self.kind} timed out", backend=self.kind)
        return BackendExecutionError(
            f"{self.kind} failed: {type(error).__name__}: {error}",
            backend=self.kind,
        )

    async def stream(self, handle: ExecutionHandle) -> AsyncIterator[BackendEvent]:
        completed = False
        try:
            async with aclosing(self._run(handle)) as events:
                async for event in events:
                    if isinstance(event, StreamCompleted):
                        if not event.result.content.strip():
                            raise BackendExecutionError(
                                f"{self.kind} returned an empty result",
                                backend=self.kind,
                                details={"malformed": True},
                            )
                        completed = True
                    yield event
                    if completed:
                        return
        except BrainError:
            raise
        except Exception as e:
            raise self._translate(e) from e
        if not completed:
            raise BackendExecutionError(
                f"{self.kind} stream ended without a result",
                backend=self.kind,
                details={"malformed": True},
            )

    async def execute(self, handle: ExecutionHandle) -> ExecutionResult:
        async for event in self.stream(handle):
            if isinstance(event, StreamCompleted):
                return event.result
        raise BackendExecutionError(f"{self.kind} produced no result", backend=self.kind)

    async def cleanup(self, handle: ExecutionHandle) -> None:
        """Idempotent and never raises."""
        if handle.closed:
            return
        handle.closed = True
        try:
            await self._release(handle)
        except Exception as e:
            logger.warning("Cleanup of %s failed: %s: %s", handle.id, type(e).__name__, e)


class ChatCompletionBackend(ExecutionBackend):
    """Streams a chat completion and runs tool calls for up to ``max_steps`` rounds."""

    def __init__(
        self,
        model: str,
        max_steps: int,
        client_factory: ClientFactory = get_client,
        temperature: float = LLM_TEMPERATURE,
        max_tokens: int = LLM_DEFAULT_MAX_TOKENS,
    ) -> None:
        super().__init__(model)
        self.max_steps = max_steps
        self._client_factory = client_factory
        self.temperature = temperature
        self.max_tokens = max_tokens

    @abstractmethod
    def _registry(self, handle: ExecutionHandle) -> ToolRegistry: ...

    async def _run(self, handle: ExecutionHandle) -> AsyncIterator[BackendEvent]:
        client = self._client_factory()
        registry = self._registry(handle)
        messages = list(handle.messages)
        usage = TokenUsageTracker()
        records: list[ToolCallRecord] = []
        content: list[str] = []
        finish = FinishReason.STOP

        for step in range(self.max_steps):
            # Last round goes without tools so the model has to answer.
            tools = registry.openai_specs() if step < self.max_steps - 1 else None
            final: ChatStreamChunk | None = None
            round_text: list[str] = []
            chunks = stream_chat(
                client,
                handle.model,
                messages,
                tools=tools,
                temperature=self.temperature,
                max_tokens=self.max_tokens,
            )
            async with aclosing(chunks):
                async for chunk in chunks:
                    if chunk.text:
                        round_text.append(chunk.text)
                        yield TextDelta(text=chunk.text)
                    if chunk.is_final:
                        final = chunk
            if final is None:
                raise BackendExecutionError("model stream ended without a finish", backend=self.kind)

            content.extend(round_text)
            if final.usage:
                usage.add(final.usage, handle.model)
            if final.finish_reason == "length":
                finish = FinishReason.LENGTH
            if not final.tool_calls:
                break

            messages.append(
                {
                    "role": "assistant",
                    "content": "".join(round_text) or None,
                    "tool_calls": [
                        {
                            "id": call.id,
                            "type": "function",
                            "function": {"name": call.name, "arguments": call.arguments},
                        }
                        for call in final.tool_calls
                    ],
                }
            )
            for call in final.tool_calls:
                arguments = parse_tool_arguments(call.arguments)
                output = await registry.dispatch(call.name, arguments)
                record = ToolCallRecord(name=call.name, input=arguments, output=output)
                records.append(record)
                yield ToolCallEvent(call=record)
                messages.append({"role": "tool", "tool_call_id": call.id, "content": output})
        else:
            logger.warning("%s hit the %d step limit", handle.id, self.max_steps)
            finish = FinishReason.TOOL

        yield StreamCompleted(
            result=ExecutionResult(
                backend=self.kind,
                content="".join(content),
                token_usage=usage.total(),
                finish_reason=finish,
                tool_calls=tuple(records),
                execution_time_ms=handle.elapsed_ms(),
                model=handle.model,
            )
        )
