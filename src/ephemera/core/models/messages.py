from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Iterable, Literal, Union

from ephemera.core.tools.base import ToolResult, result_to_agent_text

Role = Literal["user", "assistant", "system"]


@dataclass(frozen=True)
class TextPart:
    content: str
    type: Literal["text"] = "text"


@dataclass(frozen=True)
class ToolCallPart:
    tool_call_id: str
    name: str
    arguments: dict[str, Any]
    metadata: dict[str, Any] | None = None
    type: Literal["tool_call"] = "tool_call"


@dataclass(frozen=True)
class ToolResultPart:
    tool_call_id: str
    name: str
    result: ToolResult
    type: Literal["tool_result"] = "tool_result"


MessagePart = Union[TextPart, ToolCallPart, ToolResultPart]


@dataclass(frozen=True)
class ConversationMessage:
    role: Role
    parts: tuple[MessagePart, ...] = field(default_factory=tuple)

    def has_tool_results(self) -> bool:
        return any(isinstance(part, ToolResultPart) for part in self.parts)

    @property
    def text(self) -> str:
        return "".join(part.content for part in self.parts if isinstance(part, TextPart))


def text_message(role: Role, content: str) -> ConversationMessage:
    return ConversationMessage(role=role, parts=(TextPart(content=content),))


def part_to_text(part: MessagePart) -> str:
    if isinstance(part, TextPart):
        return part.content
    if isinstance(part, ToolCallPart):
        return f"[Tool: {part.name}({json.dumps(part.arguments, ensure_ascii=False, default=str)})]"
    return f"[Result: {part.name} -> {result_to_agent_text(part.result)}]"


def extract_text_from_parts(parts: Iterable[MessagePart]) -> str:
    return " ".join(part_to_text(part) for part in parts)
