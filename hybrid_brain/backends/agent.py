from __future__ import annotations

import logging
from collections.abc import Iterable

import httpx

from hybrid_brain.backends.base import ChatCompletionBackend, ClientFactory, ExecutionHandle
from hybrid_brain.backends.tools import AgentTool, ToolRegistry, agent_toolset
from hybrid_brain.constants import AGENT_MAX_ITERATIONS, AGENT_MODEL
from hybrid_brain.context import ProcessedContext
from hybrid_brain.llm.client import get_client, resolve_model
from hybrid_brain.resources.manager import ResourceManager
from hybrid_brain.schemas import BackendKind, ClassificationResult

logger = logging.getLogger(__name__)

_REGISTRY_KEY = "registry"


class ToolAgentBackend(ChatCompletionBackend):
    """Multi-step tool agent with the full toolset.

    Each execution owns an agent session (its tool registry and any clients
    the tools open). The session is registered with the ResourceManager so a
    leaked handle is still released by the periodic sweep.
    """

    kind = BackendKind.AGENT

    def __init__(
        self,
        client_factory: ClientFactory = get_client,
        model: str = AGENT_MODEL,
        max_iterations: int = AGENT_MAX_ITERATIONS,
        extra_tools: Iterable[AgentTool] = (),
        resource_manager: ResourceManager | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        super().__init__(model, max_iterations, client_factory)
        self.extra_tools = list(extra_tools)
        self.resource_manager = resource_manager
        self._http_client = http_client

    def select_model(
        self,
        context: ProcessedContext,
        classification: ClassificationResult | None,
    ) -> str:
        return resolve_model(context.selected_model, context.context_id, self.model)

    def _registry(self, handle: ExecutionHandle) -> ToolRegistry:
        return handle.state[_REGISTRY_KEY]

    async def _prepare(self, handle: ExecutionHandle) -> None:
        registry = ToolRegistry(
            agent_toolset(handle.context.timezone, self.extra_tools, self._http_client)
        )
        handle.state[_REGISTRY_KEY] = registry
        if self.resource_manager is not None:
            self.resource_manager.register_resource(handle.id, registry.cleanup)
        logger.debug("Agent session opened: %s (%d tools)", handle.id, len(registry))

    async def _release(self, handle: ExecutionHandle) -> None:
        registry: ToolRegistry | None = handle.state.pop(_REGISTRY_KEY, None)
        if registry is None:
            return
        if self.resource_manager is not None:
            # False means the sweep already force-released this session.
            await self.resource_manager.unregister_resource(handle.id, run_cleanup=True)
        else:
            await registry.cleanup()
        logger.debug("Agent session released: %s", handle.id)
