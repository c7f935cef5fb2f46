from __future__ import annotations

import asyncio
import logging
from typing import Any, AsyncIterator, Sequence

import anthropic

from ephemera.core.tools.base import Tool, ToolErr, result_to_agent_text

from .messages import ConversationMessage, TextPart, ToolCallPart, ToolResultPart
from .provider import CompletionOptions, EndFrame, ModelInfo, StreamFrame, TextFrame, ToolCallBatchFrame, UsageFrame
from .tool_calling import ToolCallAccumulator

DEFAULT_MAX_TOKENS = 4096


def to_anthropic_messages(messages: Sequence[ConversationMessage]) -> list[dict[str, Any]]:
    converted: list[dict[str, Any]] = []
    for message in messages:
        if message.role == "system":
            # System text travels in the dedicated parameter; keep it as user context here.
            converted.append({"role": "user", "content": [{"type": "text", "text": message.text}]})
            continue
        blocks: list[dict[str, Any]] = []
        for part in message.parts:
            if isinstance(part, TextPart):
                if part.content:
                    blocks.append({"type": "text", "text": part.content})
            elif isinstance(part, ToolCallPart):
                blocks.append({"type": "tool_use", "id": part.tool_call_id, "name": part.name, "input": part.arguments})
            elif isinstance(part, ToolResultPart):
                blocks.append(
                    {
                        "type": "tool_result",
                        "tool_use_id": part.tool_call_id,
                        "content": result_to_agent_text(part.result),
                        "is_error": isinstance(part.result, ToolErr),
                    }
                )
        if blocks:
            converted.append({"role": message.role, "content": blocks})
    return converted


def to_anthropic_tools(tools: Sequence[Tool]) -> list[dict[str, Any]]:
    return [{"name": tool.name, "description": tool.description, "input_schema": tool.json_schema} for tool in tools]


class AnthropicProvider:
    name = "anthropic"

    def __init__(
        self,
        model: str,
        api_key: str | None = None,
        base_url: str | None = None,
        timeout_s: float = 120.0,
        max_tokens: int | None = None,
        temperature: float | None = None,
        client: anthropic.AsyncAnthropic | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.model = model
        self.max_tokens = max_tokens or DEFAULT_MAX_TOKENS
        self.temperature = temperature
        self._client = client or anthropic.AsyncAnthropic(
            api_key=api_key, base_url=base_url, timeout=timeout_s, max_retries=0
        )
        self.logger = logger or logging.getLogger("ephemera.providers.anthropic")

    def model_info(self) -> ModelInfo:
        return ModelInfo(provider=self.name, model=self.model)

    async def stream_completion(
        self,
        messages: Sequence[ConversationMessage],
        options: CompletionOptions,
        signal: asyncio.Event | None = None,
    ) -> AsyncIterator[StreamFrame]:
        kwargs: dict[str, Any] = {
            "model": self.model,
            "messages": to_anthropic_messages(messages),
            "max_tokens": options.max_tokens or self.max_tokens,
            "stream": True,
        }
        if options.system_prompt:
            kwargs["system"] = options.system_prompt
        if options.tools:
            kwargs["tools"] = to_anthropic_tools(options.tools)
        temperature = options.temperature if options.temperature is not None else self.temperature
        if temperature is not None:
            kwargs["temperature"] = temperature

        accumulator = ToolCallAccumulator(provider_name=self.name)
        input_tokens = 0
        output_tokens = 0
        stop_reason: str | None = None
        stream = await self._client.messages.create(**kwargs)
        try:
            async for event in stream:
                if signal is not None and signal.is_set():
                    break
                if event.type == "message_start":
                    input_tokens = event.message.usage.input_tokens or 0
                elif event.type == "content_block_start":
                    block = event.content_block
                    if block.type == "tool_use":
                        accumulator.add(event.index, id=block.id, name=block.name)
                elif event.type == "content_block_delta":
                    delta = event.delta
                    if delta.type == "text_delta" and delta.text:
                        yield TextFrame(text=delta.text)
                    elif delta.type == "input_json_delta":
                        accumulator.add(event.index, arguments=delta.partial_json)
                elif event.type == "message_delta":
                    stop_reason = event.delta.stop_reason
                    if event.usage is not None:
                        output_tokens = event.usage.output_tokens or 0
        finally:
            await stream.close()

        if input_tokens or output_tokens:
            yield UsageFrame(input_tokens=input_tokens, output_tokens=output_tokens)
        if accumulator:
            yield ToolCallBatchFrame(calls=tuple(accumulator.build()))
        yield EndFrame(finish_reason=stop_reason)
