"""Streaming chat-completion access shared by both execution backends."""

from hybrid_brain.llm.client import (
    AssembledToolCall,
    ChatStreamChunk,
    get_client,
    parse_tool_arguments,
    resolve_model,
    stream_chat,
)

__all__ = [
    "AssembledToolCall",
    "ChatStreamChunk",
    "get_client",
    "parse_tool_arguments",
    "resolve_model",
    "stream_chat",
]
