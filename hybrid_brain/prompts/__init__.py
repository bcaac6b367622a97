from hybrid_brain.prompts.cache import (
    PromptCache,
    PromptLoader,
    PromptRequest,
    PromptResult,
    prompt_key,
)
from hybrid_brain.prompts.loader import build_system_prompt

__all__ = [
    "PromptCache",
    "PromptLoader",
    "PromptRequest",
    "PromptResult",
    "build_system_prompt",
    "prompt_key",
]
