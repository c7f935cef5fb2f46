from __future__ import annotations

import json
from typing import Any, Sequence

from ephemera.core.tools.base import Tool, result_to_agent_text

from .messages import ConversationMessage, TextPart, ToolCallPart, ToolResultPart
from .tool_calling import ToolCallAccumulator


def to_openai_messages(system_prompt: str, messages: Sequence[ConversationMessage]) -> list[dict[str, Any]]:
    converted: list[dict[str, Any]] = []
    if system_prompt:
        converted.append({"role": "system", "content": system_prompt})

    for message in messages:
        text = "".join(part.content for part in message.parts if isinstance(part, TextPart))
        calls = [part for part in message.parts if isinstance(part, ToolCallPart)]
        results = [part for part in message.parts if isinstance(part, ToolResultPart)]

        if calls:
            converted.append(
                {
                    "role": "assistant",
                    "content": text or None,
                    "tool_calls": [
                        {
                            "id": call.tool_call_id,
                            "type": "function",
                            "function": {"name": call.name, "arguments": json.dumps(call.arguments, default=str)},
                        }
                        for call in calls
                    ],
                }
            )
            continue

        for result in results:
            converted.append(
                {
                    "role": "tool",
                    "tool_call_id": result.tool_call_id,
                    "content": result_to_agent_text(result.result),
                }
            )
        if text and not results:
            converted.append({"role": message.role, "content": text})
    return converted


def to_openai_tools(tools: Sequence[Tool]) -> list[dict[str, Any]]:
    return [
        {
            "type": "function",
            "function": {"name": tool.name, "description": tool.description, "parameters": tool.json_schema},
        }
        for tool in tools
    ]


def add_tool_call_deltas(accumulator: ToolCallAccumulator, deltas: Sequence[dict[str, Any]]) -> None:
    """Fold OpenAI-style ``delta.tool_calls`` fragments (plain dicts) into the accumulator."""
    for position, delta in enumerate(deltas):
        function = delta.get("function") or {}
        accumulator.add(
            int(delta.get("index", position)),
            id=delta.get("id"),
            name=function.get("name"),
            arguments=function.get("arguments"),
        )
