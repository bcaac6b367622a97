"""Default system prompt loader used by the service.

Selection order: a registered specialist context, then the orchestrator
role, then the generic assistant prompt. Tenant config may override a
specialist persona and add general instructions.
"""

import logging
from dataclasses import dataclass

from hybrid_brain.backends.tools import CurrentTimeTool, RequestSuggestionsTool, WeatherTool
from hybrid_brain.constants import DEFAULT_SYSTEM_PROMPT
from hybrid_brain.prompts.cache import PromptRequest

logger = logging.getLogger(__name__)

ORCHESTRATOR_ROLE = "global-orchestrator"

ORCHESTRATOR_PROMPT = (
    "You are the workspace orchestrator. Route work to the right tools, keep "
    "answers short, and say which tool produced each fact."
)


@dataclass(frozen=True)
class Specialist:
    id: str
    persona: str
    tools: tuple[str, ...] = ()


SPECIALISTS: dict[str, Specialist] = {
    "echo-tango-specialist": Specialist(
        id="echo-tango-specialist",
        persona=(
            "You are Echo Tango's creative assistant. Help with storytelling, "
            "video production planning and brand voice."
        ),
        tools=(RequestSuggestionsTool.name, CurrentTimeTool.name),
    ),
    "chat-model": Specialist(
        id="chat-model",
        persona="You are a general-purpose assistant for everyday questions.",
        tools=(WeatherTool.name,),
    ),
}


def _tool_instructions(tools: tuple[str, ...]) -> str:
    if not tools:
        return ""
    return "\n\n# Tools\nPrefer these tools when relevant: " + ", ".join(tools) + "."


def build_system_prompt(request: PromptRequest) -> str:
    tenant = request.tenant_config or {}
    specialist = SPECIALISTS.get(request.context_id or "")

    if specialist is not None:
        overrides = tenant.get("specialist_prompts") or {}
        persona = (overrides.get(specialist.id) or specialist.persona).strip()
        if not persona:
            logger.warning("Empty persona for specialist %s, using default prompt", specialist.id)
            prompt = DEFAULT_SYSTEM_PROMPT
        else:
            instructions = (tenant.get("custom_instructions") or "").strip()
            if instructions and instructions not in persona:
                persona += f"\n\n# Client-Specific Guidelines\n{instructions}"
            prompt = persona + _tool_instructions(specialist.tools)
    elif request.model_id == ORCHESTRATOR_ROLE:
        prompt = ORCHESTRATOR_PROMPT
    else:
        prompt = DEFAULT_SYSTEM_PROMPT

    if request.now is not None:
        prompt += f"\n\nCurrent date: {request.now:%A, %B %d, %Y}"
    return prompt
