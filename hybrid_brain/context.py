from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime, tzinfo
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from hybrid_brain.constants import DEFAULT_CHAT_MODEL
from hybrid_brain.schemas import BrainRequest

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProcessedContext:
    selected_model: str
    context_id: str | None
    persona: str | None
    timezone: str
    now: datetime
    is_from_global_pane: bool = False
    referenced_chat_id: str | None = None
    tenant_config: dict[str, Any] | None = field(default=None, hash=False)

    def prompt_additions(self) -> str:
        additions: list[str] = [f"User timezone: {self.timezone}"]
        if self.is_from_global_pane:
            additions.append("Request from global assistant pane")
        if self.persona:
            additions.append(f"Active specialist persona: {self.persona}")
        if self.referenced_chat_id and self.is_from_global_pane:
            additions.append(f"Referenced main chat: {self.referenced_chat_id}")
        return "\n\nContext: " + ", ".join(additions)


def _resolve_timezone(name: str | None) -> tuple[str, tzinfo]:
    if not name:
        return "UTC", UTC
    try:
        return name, ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("Unknown timezone %r, using UTC", name)
        return "UTC", UTC


class ContextService:
    def __init__(self, default_model: str = DEFAULT_CHAT_MODEL) -> None:
        self.default_model = default_model

    def process(
        self,
        request: BrainRequest,
        tenant_config: dict[str, Any] | None = None,
    ) -> ProcessedContext:
        tenant_default = (tenant_config or {}).get("default_model")
        selected = request.selected_chat_model or tenant_default or self.default_model
        tz_name, tz = _resolve_timezone(request.user_timezone)
        return ProcessedContext(
            selected_model=selected,
            context_id=request.current_active_specialist_id or request.active_bit_context_id,
            persona=request.active_bit_persona,
            timezone=tz_name,
            now=datetime.now(tz),
            is_from_global_pane=request.is_from_global_pane,
            referenced_chat_id=request.referenced_chat_id,
            tenant_config=tenant_config,
        )

    @staticmethod
    def validate(request: BrainRequest) -> list[str]:
        """Non-fatal warnings about inconsistent request context."""
        warnings: list[str] = []
        if request.active_bit_context_id and not request.current_active_specialist_id:
            warnings.append("Active context without specialist id may lead to inconsistent behavior")
        if request.is_from_global_pane and not request.referenced_chat_id:
            warnings.append("Global pane request without referenced chat id")
        if request.user_timezone:
            try:
                ZoneInfo(request.user_timezone)
            except (ZoneInfoNotFoundError, ValueError):
                warnings.append("Invalid timezone provided")
        return warnings
