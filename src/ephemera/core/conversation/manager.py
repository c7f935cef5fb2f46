from __future__ import annotations

import asyncio
import json
import logging
from typing import Literal, Sequence

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from pydantic.alias_generators import to_camel

from ephemera.core.config.settings import MemorySettings
from ephemera.core.models.messages import ConversationMessage, extract_text_from_parts, text_message
from ephemera.core.models.provider import CompletionOptions, LLMProvider, StreamChannel, TextFrame
from ephemera.core.models.tokens import count_tokens, estimate_conversation_tokens
from ephemera.core.streaming.json_extraction import FENCE_CLOSE_RE, FENCE_OPEN_RE, extract_balanced_json

SUMMARIZER_SYSTEM_PROMPT = "You are a conversation summarizer."

COMPRESSION_PROMPT = """
Analyze this debugging conversation and create a structured summary.

Extract:
1. What issues have been identified
2. Which services have been investigated
3. What tools were used
4. Current task/focus
5. Key findings

Return only a JSON object with this shape:
{{"summary": "...", "identified_issues": [{{"service": "...", "issue": "...", "confidence": "high|medium|low"}}],
 "investigated_services": ["..."], "tools_used": ["..."], "current_task": "..."}}

Conversation:
{conversation}
"""


class CompressionError(RuntimeError):
    pass


class IdentifiedIssue(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    service: str
    issue: str
    confidence: Literal["high", "medium", "low"] = "medium"

    @field_validator("confidence", mode="before")
    @classmethod
    def _normalize_confidence(cls, value: object) -> object:
        return value.strip().casefold() if isinstance(value, str) else value


class ConversationState(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    summary: str = ""
    identified_issues: list[IdentifiedIssue] = Field(default_factory=list)
    investigated_services: list[str] = Field(default_factory=list)
    tools_used: list[str] = Field(default_factory=list)
    current_task: str = ""
    token_count: int = 0
    message_count: int = 0
    compression_level: int = 0


def build_prompt_from_state(state: ConversationState) -> str:
    issues = "\n".join(f"- **{i.service}**: {i.issue} ({i.confidence} confidence)" for i in state.identified_issues)
    return (
        "# Conversation Context (Compressed)\n\n"
        f"## Summary\n{state.summary}\n\n"
        f"## Identified Issues\n{issues}\n\n"
        "## Already Investigated\n"
        f"Services: {', '.join(state.investigated_services)}\n"
        f"Tools used: {', '.join(state.tools_used)}\n\n"
        f"## Current Task\n{state.current_task}\n\n"
        "Continue the investigation from this point.\n"
    )


def _format_messages(messages: Sequence[ConversationMessage]) -> str:
    return "\n\n".join(f"{message.role}: {extract_text_from_parts(message.parts)}" for message in messages)


def parse_state(text: str) -> ConversationState:
    cleaned = FENCE_CLOSE_RE.sub("", FENCE_OPEN_RE.sub("", text)).strip()
    start = cleaned.find("{")
    candidate = extract_balanced_json(cleaned, start) if start >= 0 else None
    if candidate is None:
        raise CompressionError("summarizer returned no JSON object")
    try:
        payload = json.loads(candidate)
    except json.JSONDecodeError as exc:
        raise CompressionError(f"summarizer returned invalid JSON: {exc}") from exc
    if not isinstance(payload, dict):
        raise CompressionError("summarizer JSON is not an object")
    try:
        return ConversationState.model_validate(payload)
    except ValidationError as exc:
        raise CompressionError(f"summarizer JSON does not match the state shape: {exc}") from exc


class ConversationManager:
    def __init__(
        self,
        compression_threshold_tokens: int = 80000,
        compression_max_tokens: int = 2000,
        logger: logging.Logger | None = None,
    ) -> None:
        self.compression_threshold_tokens = compression_threshold_tokens
        self.compression_max_tokens = compression_max_tokens
        self.logger = logger or logging.getLogger("ephemera.conversation")

    @classmethod
    def from_settings(cls, settings: MemorySettings, logger: logging.Logger | None = None) -> "ConversationManager":
        return cls(
            compression_threshold_tokens=settings.compression_threshold_tokens,
            compression_max_tokens=settings.compression_max_tokens,
            logger=logger,
        )

    def estimate_tokens(self, messages: Sequence[ConversationMessage]) -> int:
        return estimate_conversation_tokens(messages)

    def should_compress(self, messages: Sequence[ConversationMessage]) -> bool:
        return self.estimate_tokens(messages) > self.compression_threshold_tokens

    async def compress(
        self,
        messages: Sequence[ConversationMessage],
        provider: LLMProvider,
        previous_state: ConversationState | None = None,
        signal: asyncio.Event | None = None,
    ) -> ConversationState:
        self.logger.info("compression_started", extra={"extra_fields": {"message_count": len(messages)}})
        prompt = COMPRESSION_PROMPT.format(conversation=_format_messages(messages))
        options = CompletionOptions(system_prompt=SUMMARIZER_SYSTEM_PROMPT, max_tokens=self.compression_max_tokens)

        chunks: list[str] = []
        frames = provider.stream_completion([text_message("user", prompt)], options, signal)
        async with StreamChannel(frames, signal) as channel:
            async for frame in channel:
                if isinstance(frame, TextFrame):
                    chunks.append(frame.text)

        state = parse_state("".join(chunks))
        state.message_count = len(messages)
        state.compression_level = (previous_state.compression_level if previous_state else 0) + 1
        state.token_count = count_tokens(state.model_dump_json(exclude={"token_count"}))

        self.logger.info(
            "compression_complete",
            extra={
                "extra_fields": {
                    "message_count": state.message_count,
                    "token_count": state.token_count,
                    "issue_count": len(state.identified_issues),
                    "service_count": len(state.investigated_services),
                    "compression_level": state.compression_level,
                }
            },
        )
        return state

    def compact(self, messages: Sequence[ConversationMessage], state: ConversationState) -> list[ConversationMessage]:
        """Replace older history with one rendering of ``state``.

        The latest turn survives. When it ends in tool results, the assistant
        message that issued those calls is kept with them.
        """
        compacted = [text_message("user", build_prompt_from_state(state))]
        start = len(messages) - 1
        while start > 0 and messages[start].has_tool_results():
            start -= 1
        if messages:
            compacted.extend(messages[start:])
        return compacted
