"""Canonicalise inbound chat messages for classification and both backends."""

from __future__ import annotations

import logging
import re
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from typing import Any

from pydantic import BaseModel

from hybrid_brain.constants import MAX_CONTENT_LENGTH, MAX_HISTORY_TURNS
from hybrid_brain.schemas import Attachment, BrainRequest, MessageData, MessageRole

logger = logging.getLogger(__name__)

_LANGCHAIN_TYPE_TO_ROLE = {
    "human": MessageRole.USER,
    "ai": MessageRole.ASSISTANT,
    "system": MessageRole.SYSTEM,
}

# Assistant phrasing that marks an unfulfilled attempt. Matching is a
# heuristic; a legitimate answer that opens with these words is dropped too.
_DEAD_END_PATTERNS = [
    re.compile(p, re.IGNORECASE)
    for p in (
        r"\bI (?:couldn't|could not|can't|cannot) (?:find|locate|access|retrieve)\b",
        r"\bI(?:'m| am) (?:unable|not able) to\b",
        r"\bI don'?t have access\b",
        r"\bsomething went wrong\b",
        r"\bno (?:results|matching \w+) (?:were )?found\b",
    )
]


@dataclass(frozen=True)
class ChatTurn:
    role: MessageRole
    content: str
    attachments: tuple[Attachment, ...] = ()

    def to_openai(self) -> dict[str, str]:
        return {"role": self.role.value, "content": self.content}


class MessageAdapter:
    def __init__(
        self,
        max_content_length: int = MAX_CONTENT_LENGTH,
        max_history_turns: int = MAX_HISTORY_TURNS,
        filter_dead_ends: bool = True,
    ) -> None:
        self.max_content_length = max_content_length
        self.max_history_turns = max_history_turns
        self.dead_end_filtering = filter_dead_ends

    def sanitize(self, content: str) -> str:
        normalized = content.strip().replace("\r\n", "\n").replace("\r", "\n")
        return normalized[: self.max_content_length]

    def _coerce(self, raw: Any) -> ChatTurn:
        if isinstance(raw, ChatTurn):
            return raw
        if isinstance(raw, MessageData):
            return ChatTurn(
                role=raw.role,
                content=self.sanitize(raw.content),
                attachments=raw.attachments + raw.experimental_attachments,
            )
        if isinstance(raw, str):
            return ChatTurn(MessageRole.USER, self.sanitize(raw))
        if isinstance(raw, BaseModel):
            raw = raw.model_dump()
        if isinstance(raw, dict):
            content = raw.get("content")
            if not isinstance(content, str):
                content = "" if content is None else str(content)
            if "role" in raw:
                try:
                    role = MessageRole(raw["role"])
                except ValueError:
                    logger.warning("Unknown message role %r, treating as user", raw["role"])
                    role = MessageRole.USER
                return ChatTurn(role, self.sanitize(content))
            if "type" in raw:
                role = _LANGCHAIN_TYPE_TO_ROLE.get(str(raw["type"]), MessageRole.USER)
                return ChatTurn(role, self.sanitize(content))
        logger.warning("Unrecognised message shape %s, treating as user turn", type(raw).__name__)
        return ChatTurn(MessageRole.USER, self.sanitize(str(raw)))

    def normalize(self, messages: Iterable[Any]) -> list[ChatTurn]:
        """Accept MessageData, role dicts, LangChain-style type dicts, or strings."""
        return [self._coerce(m) for m in messages]

    def extract_user_input(self, request: BrainRequest) -> str:
        return self.sanitize(request.messages[-1].content)

    @staticmethod
    def is_dead_end(content: str) -> bool:
        return any(p.search(content) for p in _DEAD_END_PATTERNS)

    def filter_dead_ends(self, turns: Sequence[ChatTurn]) -> list[ChatTurn]:
        """Drop (user, assistant) exchanges where the assistant did not fulfil the ask.

        Stale failures in history otherwise steer the next answer toward
        repeating them.
        """
        kept: list[ChatTurn] = []
        i = 0
        while i < len(turns):
            turn = turns[i]
            nxt = turns[i + 1] if i + 1 < len(turns) else None
            if (
                turn.role is MessageRole.USER
                and nxt is not None
                and nxt.role is MessageRole.ASSISTANT
                and self.is_dead_end(nxt.content)
            ):
                i += 2
                continue
            kept.append(turn)
            i += 1
        dropped = len(turns) - len(kept)
        if dropped:
            logger.debug("Filtered %d dead-end history turn(s)", dropped)
        return kept

    def history(self, request: BrainRequest) -> list[ChatTurn]:
        """Prior turns, excluding the current one, newest ``max_history_turns`` kept."""
        turns = self.normalize(request.messages[:-1])
        turns = [t for t in turns if t.content]
        if self.dead_end_filtering:
            turns = self.filter_dead_ends(turns)
        if self.max_history_turns and len(turns) > self.max_history_turns:
            turns = turns[-self.max_history_turns :]
        return turns

    @staticmethod
    def collect_attachments(request: BrainRequest) -> list[Attachment]:
        attachments: list[Attachment] = []
        for message in request.messages:
            attachments.extend(message.attachments)
            attachments.extend(message.experimental_attachments)
        return attachments

    @staticmethod
    def to_chat_messages(
        system_prompt: str,
        history: Sequence[ChatTurn],
        user_input: str,
    ) -> list[dict[str, Any]]:
        messages: list[dict[str, Any]] = [{"role": "system", "content": system_prompt}]
        messages.extend(turn.to_openai() for turn in history if turn.role is not MessageRole.SYSTEM)
        messages.append({"role": "user", "content": user_input})
        return messages

    def validate_messages(self, messages: Sequence[Any]) -> list[str]:
        """Return a list of problems; empty means valid."""
        if not messages:
            return ["At least one message is required"]
        errors: list[str] = []
        for index, message in enumerate(messages):
            if isinstance(message, BaseModel):
                message = message.model_dump()
            if not isinstance(message, dict):
                errors.append(f"Message {index}: must be an object")
                continue
            role = message.get("role")
            if role not in {r.value for r in MessageRole}:
                errors.append(f"Message {index}: Invalid role")
            content = message.get("content")
            if not isinstance(content, str) or not content.strip():
                errors.append(f"Message {index}: Content must be a non-empty string")
            elif len(content) > self.max_content_length:
                errors.append(f"Message {index}: Content exceeds maximum length")
        return errors
