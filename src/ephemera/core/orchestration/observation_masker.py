from __future__ import annotations

import dataclasses
from dataclasses import dataclass, field
from typing import Sequence

from ephemera.core.models.messages import ConversationMessage, MessagePart, ToolResultPart
from ephemera.core.models.tokens import count_conversation_tokens
from ephemera.core.tools.base import ToolOk

DEFAULT_RECENCY_WINDOW = 3
DEFAULT_TOKEN_THRESHOLD = 25000


@dataclass(frozen=True)
class MaskingStats:
    total_tokens_before: int
    total_tokens_after: int
    masked_parts: int
    saved_tokens: int


@dataclass(frozen=True)
class MaskingResult:
    messages: list[ConversationMessage]
    masked: bool
    stats: MaskingStats = field(default_factory=lambda: MaskingStats(0, 0, 0, 0))


def _placeholder(part: ToolResultPart) -> str:
    return f"[{part.name} output omitted, re-call tool if needed]"


def _protected_boundary(messages: Sequence[ConversationMessage], window: int) -> int:
    """Index of the oldest message that still falls inside the recency window."""
    seen = 0
    for index in range(len(messages) - 1, -1, -1):
        if messages[index].has_tool_results():
            seen += 1
            if seen >= window:
                return index
    return 0


def _mask_message(message: ConversationMessage) -> tuple[ConversationMessage, int]:
    masked = 0
    parts: list[MessagePart] = []
    for part in message.parts:
        if isinstance(part, ToolResultPart) and isinstance(part.result, ToolOk):
            placeholder = _placeholder(part)
            if part.result.agent_content != placeholder:
                part = dataclasses.replace(part, result=dataclasses.replace(part.result, agent_content=placeholder))
                masked += 1
        parts.append(part)
    if not masked:
        return message, 0
    return dataclasses.replace(message, parts=tuple(parts)), masked


def mask_observations(
    messages: Sequence[ConversationMessage],
    recency_window: int = DEFAULT_RECENCY_WINDOW,
    token_threshold: int = DEFAULT_TOKEN_THRESHOLD,
) -> MaskingResult:
    """Replace old successful tool outputs with short placeholders.

    Nothing happens below ``token_threshold``. The newest ``recency_window``
    messages carrying tool results, and everything after them, are kept intact.
    Failed results are never masked so the model still sees why a call failed.
    """
    before = count_conversation_tokens(messages)
    if before < token_threshold:
        return MaskingResult(
            messages=list(messages),
            masked=False,
            stats=MaskingStats(before, before, 0, 0),
        )

    boundary = _protected_boundary(messages, recency_window)
    masked_parts = 0
    output: list[ConversationMessage] = []
    for index, message in enumerate(messages):
        if index >= boundary or not message.has_tool_results():
            output.append(message)
            continue
        replaced, count = _mask_message(message)
        masked_parts += count
        output.append(replaced)

    after = count_conversation_tokens(output)
    return MaskingResult(
        messages=output,
        masked=masked_parts > 0,
        stats=MaskingStats(
            total_tokens_before=before,
            total_tokens_after=after,
            masked_parts=masked_parts,
            saved_tokens=before - after,
        ),
    )
