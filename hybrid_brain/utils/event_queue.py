import asyncio
import time
from collections.abc import AsyncIterator
from typing import Any

from hybrid_brain.constants import STREAM_FLUSH_INTERVAL_MS, STREAM_HEARTBEAT_SECONDS

StreamChunk = dict[str, Any]


class StreamingEventQueue:
    """
    Debounced SSE engine: merges text deltas so one frame carries many tokens.

    Strategy:
    1. Time window: flush the text buffer every FLUSH_INTERVAL_MS
    2. Semantic boundary: punctuation or newline flushes immediately
    3. Non-text chunks (tool calls, done, error) flush pending text first,
       so the caller sees chunks in the order the backend produced them
    """

    FLUSH_INTERVAL_MS: float = STREAM_FLUSH_INTERVAL_MS
    SEMANTIC_BOUNDARIES: frozenset[str] = frozenset({".", "!", "?", "\n", "。", "！", "？"})
    HEARTBEAT_INTERVAL_S: float = STREAM_HEARTBEAT_SECONDS
    HEARTBEAT_SENTINEL: str = "__heartbeat__"

    def __init__(self) -> None:
        self._buffer: list[str] = []
        self._queue: asyncio.Queue[StreamChunk | None] = asyncio.Queue()
        self._last_flush_time: float = time.monotonic()
        self._closed: bool = False
        self._flush_task: asyncio.Task[None] | None = None
        self._stats_total_tokens: int = 0
        self._stats_total_flushes: int = 0
        self._stats_total_events: int = 0

    async def start(self) -> None:
        if self._flush_task is None:
            self._flush_task = asyncio.create_task(self._periodic_flush())

    async def _periodic_flush(self) -> None:
        while not self._closed:
            await asyncio.sleep(self.FLUSH_INTERVAL_MS / 1000.0)
            await self._try_flush(force=False)

    async def _try_flush(self, force: bool = False) -> None:
        if not self._buffer:
            return

        now = time.monotonic()
        elapsed_ms = (now - self._last_flush_time) * 1000.0

        if force or elapsed_ms >= self.FLUSH_INTERVAL_MS:
            merged = "".join(self._buffer)
            self._buffer.clear()
            self._last_flush_time = now
            self._stats_total_flushes += 1
            await self._queue.put({"type": "delta", "content": merged})

    def _should_flush_on_boundary(self, token: str) -> bool:
        return any(ch in self.SEMANTIC_BOUNDARIES for ch in token)

    async def push(self, token: str) -> None:
        """Buffer a text token. Flushes at once on a semantic boundary."""
        if self._closed or not token:
            return

        self._buffer.append(token)
        self._stats_total_tokens += 1

        if self._should_flush_on_boundary(token):
            await self._try_flush(force=True)

    async def push_event(self, chunk: StreamChunk) -> None:
        if self._closed:
            return
        await self._try_flush(force=True)
        self._stats_total_events += 1
        await self._queue.put(chunk)

    async def pump(self, chunks: AsyncIterator[StreamChunk]) -> None:
        """Feed an orchestrator chunk stream into the queue, then close it."""
        try:
            async for chunk in chunks:
                if chunk.get("type") == "delta":
                    await self.push(chunk.get("content", ""))
                else:
                    await self.push_event(chunk)
        finally:
            await self.close()

    async def close(self) -> None:
        """Flush what is left and send the end-of-stream signal."""
        if self._closed:
            return

        self._closed = True

        if self._flush_task:
            self._flush_task.cancel()
            try:
                await self._flush_task
            except asyncio.CancelledError:
                pass
            self._flush_task = None

        if self._buffer:
            merged = "".join(self._buffer)
            self._buffer.clear()
            self._stats_total_flushes += 1
            await self._queue.put({"type": "delta", "content": merged})

        await self._queue.put(None)

    async def consume(self) -> AsyncIterator[StreamChunk | str]:
        while True:
            try:
                chunk = await asyncio.wait_for(self._queue.get(), timeout=self.HEARTBEAT_INTERVAL_S)
                if chunk is None:
                    break
                yield chunk
            except TimeoutError:
                yield self.HEARTBEAT_SENTINEL

    def get_stats(self) -> dict[str, int | float]:
        """Total tokens, total text flushes, passthrough events and compression ratio."""
        return {
            "total_tokens": self._stats_total_tokens,
            "total_flushes": self._stats_total_flushes,
            "total_events": self._stats_total_events,
            "compression_ratio": (
                round(self._stats_total_tokens / self._stats_total_flushes, 2)
                if self._stats_total_flushes > 0
                else 0.0
            ),
        }
