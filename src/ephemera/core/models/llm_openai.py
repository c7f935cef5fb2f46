from __future__ import annotations

import asyncio
import logging
from typing import Any, AsyncIterator, Sequence

import openai

from .messages import ConversationMessage
from .openai_format import to_openai_messages, to_openai_tools
from .provider import CompletionOptions, EndFrame, ModelInfo, StreamFrame, TextFrame, ToolCallBatchFrame, UsageFrame
from .tool_calling import ToolCallAccumulator


class OpenAIProvider:
    name = "openai"

    def __init__(
        self,
        model: str,
        api_key: str | None = None,
        base_url: str | None = None,
        timeout_s: float = 120.0,
        max_tokens: int | None = None,
        temperature: float | None = None,
        client: openai.AsyncOpenAI | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.model = model
        self.max_tokens = max_tokens
        self.temperature = temperature
        # SDK retries are disabled; the provider policy owns retry decisions.
        self._client = client or openai.AsyncOpenAI(api_key=api_key, base_url=base_url, timeout=timeout_s, max_retries=0)
        self.logger = logger or logging.getLogger("ephemera.providers.openai")

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
            "messages": to_openai_messages(options.system_prompt, messages),
            "stream": True,
            "stream_options": {"include_usage": True},
        }
        if options.tools:
            kwargs["tools"] = to_openai_tools(options.tools)
        temperature = options.temperature if options.temperature is not None else self.temperature
        if temperature is not None:
            kwargs["temperature"] = temperature
        max_tokens = options.max_tokens or self.max_tokens
        if max_tokens:
            kwargs["max_tokens"] = max_tokens

        accumulator = ToolCallAccumulator(provider_name=self.name)
        finish_reason: str | None = None
        stream = await self._client.chat.completions.create(**kwargs)
        try:
            async for chunk in stream:
                if signal is not None and signal.is_set():
                    break
                if chunk.usage is not None:
                    yield UsageFrame(
                        input_tokens=chunk.usage.prompt_tokens or 0,
                        output_tokens=chunk.usage.completion_tokens or 0,
                    )
                if not chunk.choices:
                    continue
                choice = chunk.choices[0]
                delta = choice.delta
                if delta is not None and delta.content:
                    yield TextFrame(text=delta.content)
                for tool_delta in (delta.tool_calls if delta is not None else None) or []:
                    function = tool_delta.function
                    accumulator.add(
                        tool_delta.index,
                        id=tool_delta.id,
                        name=function.name if function else None,
                        arguments=function.arguments if function else None,
                    )
                if choice.finish_reason:
                    finish_reason = choice.finish_reason
        finally:
            await stream.close()

        if accumulator:
            yield ToolCallBatchFrame(calls=tuple(accumulator.build()))
        yield EndFrame(finish_reason=finish_reason)
