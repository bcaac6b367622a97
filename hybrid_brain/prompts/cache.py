from __future__ import annotations

import asyncio
import hashlib
import inspect
import json
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from hybrid_brain.constants import (
    DEFAULT_SYSTEM_PROMPT,
    PROMPT_CACHE_MAX_ENTRIES,
    PROMPT_CACHE_TTL_SECONDS,
)
from hybrid_brain.resources.cache import BoundedTTLCache, Clock

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PromptRequest:
    model_id: str
    context_id: str | None
    tenant_config: dict[str, Any] | None
    now: datetime | None = None


PromptLoader = Callable[[PromptRequest], str] | Callable[[PromptRequest], Awaitable[str]]
PromptKey = tuple[str, str, str]


@dataclass(frozen=True)
class PromptResult:
    system_prompt: str
    cache_hit: bool
    load_time_ms: float


def tenant_fingerprint(tenant_config: dict[str, Any] | None) -> str:
    if not tenant_config:
        return "none"
    canonical = json.dumps(tenant_config, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()[:16]


def prompt_key(model_id: str, context_id: str | None, tenant_config: dict[str, Any] | None) -> PromptKey:
    return (model_id, context_id or "default", tenant_fingerprint(tenant_config))


class PromptCache:
    """System prompts keyed by (model, context, tenant config hash).

    Concurrent misses on the same key share one loader call. A failed load
    yields ``DEFAULT_SYSTEM_PROMPT`` and is not cached, so the next request
    retries the loader.
    """

    def __init__(
        self,
        loader: PromptLoader,
        *,
        ttl_seconds: float = PROMPT_CACHE_TTL_SECONDS,
        max_entries: int = PROMPT_CACHE_MAX_ENTRIES,
        default_prompt: str = DEFAULT_SYSTEM_PROMPT,
        clock: Clock = time.monotonic,
    ) -> None:
        self._loader = loader
        self._default_prompt = default_prompt
        self._entries: BoundedTTLCache[PromptKey, str] = BoundedTTLCache(
            max_entries, ttl_seconds, clock=clock
        )
        self._inflight: dict[PromptKey, asyncio.Future[str | None]] = {}
        self._load_failures = 0

    @property
    def backing_cache(self) -> BoundedTTLCache[PromptKey, str]:
        return self._entries

    async def _load(self, request: PromptRequest) -> str | None:
        try:
            outcome = self._loader(request)
            if inspect.isawaitable(outcome):
                outcome = await outcome
        except Exception as e:
            self._load_failures += 1
            logger.warning(
                "Prompt load failed for model=%s context=%s: %s: %s",
                request.model_id,
                request.context_id,
                type(e).__name__,
                e,
            )
            return None
        if not isinstance(outcome, str) or not outcome.strip():
            self._load_failures += 1
            logger.warning(
                "Prompt loader returned an empty prompt for model=%s context=%s",
                request.model_id,
                request.context_id,
            )
            return None
        return outcome

    async def get_or_load(self, request: PromptRequest) -> PromptResult:
        start = time.perf_counter()
        key = prompt_key(request.model_id, request.context_id, request.tenant_config)

        cached = self._entries.get(key)
        if cached is not None:
            logger.debug("Prompt cache hit for %s", key[:2])
            return PromptResult(cached, cache_hit=True, load_time_ms=_ms_since(start))

        pending = self._inflight.get(key)
        if pending is not None:
            loaded = await asyncio.shield(pending)
        else:
            future: asyncio.Future[str | None] = asyncio.get_running_loop().create_future()
            self._inflight[key] = future
            try:
                loaded = await self._load(request)
                if loaded is not None:
                    self._entries.set(key, loaded)
                future.set_result(loaded)
            except BaseException:
                # Cancelled mid-load: waiters fall back to the default prompt.
                if not future.done():
                    future.set_result(None)
                raise
            finally:
                self._inflight.pop(key, None)

        prompt = loaded if loaded is not None else self._default_prompt
        return PromptResult(prompt, cache_hit=False, load_time_ms=_ms_since(start))

    def invalidate(
        self,
        model_id: str,
        context_id: str | None = None,
        tenant_config: dict[str, Any] | None = None,
    ) -> bool:
        return self._entries.delete(prompt_key(model_id, context_id, tenant_config))

    def clear(self) -> None:
        self._entries.clear()
        logger.info("Prompt cache cleared")

    def stats(self) -> dict[str, Any]:
        return {
            **self._entries.stats(),
            "inflight_loads": len(self._inflight),
            "load_failures": self._load_failures,
        }


def _ms_since(start: float) -> float:
    return (time.perf_counter() - start) * 1000.0
