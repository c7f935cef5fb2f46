from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any

from ephemera.core.errors.provider_errors import MalformedToolCallError


@dataclass(frozen=True)
class ToolCall:
    name: str
    arguments: dict[str, Any]
    id: str | None = None
    metadata: dict[str, Any] | None = None


@dataclass
class _PendingCall:
    id: str | None = None
    metadata: dict[str, Any] | None = None
    name: str = ""
    arguments: str = ""


@dataclass
class ToolCallAccumulator:
    """Collects streamed tool-call fragments keyed by their stream index."""

    provider_name: str
    _calls: dict[int, _PendingCall] = field(default_factory=dict)

    def add(self, index: int, *, id: str | None = None, name: str | None = None, arguments: str | None = None) -> None:
        pending = self._calls.setdefault(index, _PendingCall())
        if id and not pending.id:
            pending.id = id
        if name:
            pending.name += name
        if arguments:
            pending.arguments += arguments

    def __bool__(self) -> bool:
        return bool(self._calls)

    def build(self) -> list[ToolCall]:
        calls: list[ToolCall] = []
        for index in sorted(self._calls):
            pending = self._calls[index]
            calls.append(parse_tool_call(self.provider_name, pending.name, pending.arguments, pending.id))
        return calls


def parse_tool_call(provider_name: str, name: str, raw_arguments: str, call_id: str | None = None) -> ToolCall:
    if not raw_arguments.strip():
        return ToolCall(name=name, arguments={}, id=call_id)
    try:
        arguments = json.loads(raw_arguments)
    except json.JSONDecodeError as exc:
        raise MalformedToolCallError(provider_name, name, str(exc)) from exc
    if not isinstance(arguments, dict):
        raise MalformedToolCallError(provider_name, name, "arguments are not a JSON object")
    return ToolCall(name=name, arguments=arguments, id=call_id)
