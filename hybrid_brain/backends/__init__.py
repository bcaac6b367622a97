from hybrid_brain.backends.agent import ToolAgentBackend
from hybrid_brain.backends.base import ChatCompletionBackend, ExecutionBackend, ExecutionHandle
from hybrid_brain.backends.direct import DirectModelBackend
from hybrid_brain.backends.tools import AgentTool, ToolRegistry

__all__ = [
    "AgentTool",
    "ChatCompletionBackend",
    "DirectModelBackend",
    "ExecutionBackend",
    "ExecutionHandle",
    "ToolAgentBackend",
    "ToolRegistry",
]
