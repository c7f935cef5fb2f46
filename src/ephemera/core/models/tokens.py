from __future__ import annotations

import json
import math
from dataclasses import dataclass
from functools import lru_cache
from typing import Iterable

import tiktoken

from ephemera.core.models.messages import ConversationMessage, MessagePart, TextPart, ToolCallPart
from ephemera.core.tools.base import result_to_agent_text

CHARS_PER_TOKEN = 4
ENCODING_NAME = "cl100k_base"

# Conservative per-provider ceilings for the system prompt, below the real
# context windows so there is room left for the conversation itself.
PROVIDER_TOKEN_LIMITS: dict[str, int] = {
    "anthropic": 180_000,
    "openai": 110_000,
    "gemini": 900_000,
    "vllm": 110_000,
}
DEFAULT_TOKEN_LIMIT = 110_000


def estimate_tokens(text: str) -> int:
    """Cheap chars/4 estimate, used only for the compression trigger."""
    if not text:
        return 0
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def estimate_conversation_tokens(messages: Iterable[ConversationMessage]) -> int:
    return sum(estimate_tokens(_part_text(part)) for message in messages for part in message.parts)


@lru_cache(maxsize=1)
def _encoder() -> tiktoken.Encoding:
    return tiktoken.get_encoding(ENCODING_NAME)


def count_tokens(text: str) -> int:
    if not text:
        return 0
    # Tool output may contain literal special-token strings.
    return len(_encoder().encode(text, disallowed_special=()))


def count_part_tokens(part: MessagePart) -> int:
    return count_tokens(_part_text(part))


def count_conversation_tokens(messages: Iterable[ConversationMessage]) -> int:
    return sum(count_part_tokens(part) for message in messages for part in message.parts)


def _part_text(part: MessagePart) -> str:
    if isinstance(part, TextPart):
        return part.content
    if isinstance(part, ToolCallPart):
        return part.name + json.dumps(part.arguments, default=str)
    return result_to_agent_text(part.result)


@dataclass(frozen=True)
class TokenBudget:
    provider: str
    limit: int
    used: int
    remaining: int
    over_budget: bool


def check_budget(system_prompt: str, provider: str, token_count: int | None = None) -> TokenBudget:
    """Compare a system prompt against the provider's ceiling.

    ``token_count`` skips re-encoding when the caller already counted.
    """
    limit = PROVIDER_TOKEN_LIMITS.get(provider.casefold(), DEFAULT_TOKEN_LIMIT)
    used = token_count if token_count is not None else count_tokens(system_prompt)
    return TokenBudget(
        provider=provider,
        limit=limit,
        used=used,
        remaining=max(0, limit - used),
        over_budget=used > limit,
    )
