import json
import logging
import os
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from typing import Any

import httpx
import json_repair
from dotenv import load_dotenv
from openai import (
    APIConnectionError,
    APITimeoutError,
    AsyncOpenAI,
    InternalServerError,
    RateLimitError,
)
from tenacity import (
    before_sleep_log,
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_random_exponential,
)

from hybrid_brain.constants import (
    CONTEXT_MODEL_MAPPING,
    LLM_DEFAULT_MAX_TOKENS,
    LLM_STREAM_OPEN_ATTEMPTS,
    LLM_TEMPERATURE,
)
from hybrid_brain.schemas import TokenUsage

load_dotenv()

logger = logging.getLogger(__name__)

LLM_TIMEOUT = httpx.Timeout(connect=10.0, read=60.0, write=30.0, pool=30.0)

_client_cache: dict[tuple[str, str], AsyncOpenAI] = {}


def _get_or_create_client(api_key: str, base_url: str) -> AsyncOpenAI:
    cache_key = (base_url, api_key)
    if cache_key not in _client_cache:
        _client_cache[cache_key] = AsyncOpenAI(
            api_key=api_key,
            base_url=base_url,
            timeout=LLM_TIMEOUT,
        )
    return _client_cache[cache_key]


def get_client() -> AsyncOpenAI:
    api_key = os.environ.get("OPENAI_API_KEY") or os.environ.get("LLM_API_KEY")
    if not api_key:
        raise RuntimeError("OPENAI_API_KEY (or LLM_API_KEY) environment variable is required")
    base_url = os.environ.get("LLM_BASE_URL", "https://api.openai.com/v1")
    return _get_or_create_client(api_key, base_url)


def resolve_model(selected_model: str | None, context_id: str | None, default: str) -> str:
    """Specialist contexts pin a model; otherwise a mapped UI selection, else ``default``."""
    if context_id and context_id in CONTEXT_MODEL_MAPPING:
        return CONTEXT_MODEL_MAPPING[context_id]
    if selected_model and selected_model in CONTEXT_MODEL_MAPPING:
        return CONTEXT_MODEL_MAPPING[selected_model]
    return default


@dataclass
class AssembledToolCall:
    id: str
    name: str
    arguments: str = ""


@dataclass
class ChatStreamChunk:
    """One increment of a streamed completion.

    Text chunks carry ``text`` only. The last chunk of a stream carries the
    assembled tool calls, usage, and finish reason.
    """

    text: str | None = None
    tool_calls: list[AssembledToolCall] = field(default_factory=list)
    usage: TokenUsage | None = None
    finish_reason: str | None = None

    @property
    def is_final(self) -> bool:
        return self.finish_reason is not None


@retry(
    wait=wait_random_exponential(min=0.5, max=4),
    stop=stop_after_attempt(LLM_STREAM_OPEN_ATTEMPTS),
    retry=retry_if_exception_type(
        (
            httpx.TimeoutException,
            httpx.ConnectError,
            RateLimitError,
            APIConnectionError,
            APITimeoutError,
            InternalServerError,
        )
    ),
    before_sleep=before_sleep_log(logger, logging.WARNING),
    reraise=True,
)
async def _open_stream(client: AsyncOpenAI, kwargs: dict[str, Any]) -> Any:
    return await client.chat.completions.create(**kwargs)


async def stream_chat(
    client: AsyncOpenAI,
    model: str,
    messages: list[dict[str, Any]],
    tools: list[dict[str, Any]] | None = None,
    temperature: float = LLM_TEMPERATURE,
    max_tokens: int | None = None,
) -> AsyncIterator[ChatStreamChunk]:
    kwargs: dict[str, Any] = {
        "model": model,
        "messages": messages,
        "temperature": temperature,
        "max_tokens": max_tokens or LLM_DEFAULT_MAX_TOKENS,
        "stream": True,
        "stream_options": {"include_usage": True},
    }
    if tools:
        kwargs["tools"] = tools

    logger.debug("LLM stream opening (model=%s, tools=%d)", model, len(tools or []))
    stream = await _open_stream(client, kwargs)

    calls: dict[int, AssembledToolCall] = {}
    usage: TokenUsage | None = None
    finish_reason: str | None = None

    try:
        async for chunk in stream:
            if getattr(chunk, "usage", None):
                usage = TokenUsage(
                    prompt_tokens=chunk.usage.prompt_tokens,
                    completion_tokens=chunk.usage.completion_tokens,
                    total_tokens=chunk.usage.total_tokens,
                )
            if not chunk.choices:
                continue
            choice = chunk.choices[0]
            delta = choice.delta
            if delta is not None:
                if delta.content:
                    yield ChatStreamChunk(text=delta.content)
                for tc in getattr(delta, "tool_calls", None) or []:
                    slot = calls.get(tc.index)
                    if slot is None:
                        slot = calls[tc.index] = AssembledToolCall(id=tc.id or f"call_{tc.index}", name="")
                    if tc.id:
                        slot.id = tc.id
                    if tc.function is not None:
                        if tc.function.name:
                            slot.name += tc.function.name
                        if tc.function.arguments:
                            slot.arguments += tc.function.arguments
            if choice.finish_reason:
                finish_reason = choice.finish_reason
    finally:
        # Releases the pooled connection when the caller stops early.
        await stream.close()

    yield ChatStreamChunk(
        tool_calls=[calls[i] for i in sorted(calls)],
        usage=usage,
        finish_reason=finish_reason or "stop",
    )


def parse_tool_arguments(raw: str) -> dict[str, Any]:
    if not raw.strip():
        return {}
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError as e:
        logger.warning("Tool arguments are not valid JSON (%s), attempting json_repair...", e)
        parsed = json_repair.loads(raw)
    if not isinstance(parsed, dict):
        logger.warning("Tool arguments decoded to %s, ignoring", type(parsed).__name__)
        return {}
    return parsed
