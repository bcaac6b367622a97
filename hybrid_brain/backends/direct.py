from __future__ import annotations

import httpx

from hybrid_brain.backends.base import ChatCompletionBackend, ClientFactory, ExecutionHandle
from hybrid_brain.backends.tools import ToolRegistry, direct_toolset
from hybrid_brain.constants import DIRECT_MAX_STEPS, DIRECT_MODEL
from hybrid_brain.llm.client import get_client
from hybrid_brain.schemas import BackendKind


class DirectModelBackend(ChatCompletionBackend):
    """Single streamed generation with a small fixed toolset (weather, suggestions)."""

    kind = BackendKind.DIRECT

    def __init__(
        self,
        client_factory: ClientFactory = get_client,
        model: str = DIRECT_MODEL,
        max_steps: int = DIRECT_MAX_STEPS,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        super().__init__(model, max_steps, client_factory)
        self._tools = ToolRegistry(direct_toolset(http_client))

    def _registry(self, handle: ExecutionHandle) -> ToolRegistry:
        return self._tools

    async def aclose(self) -> None:
        await self._tools.cleanup()
