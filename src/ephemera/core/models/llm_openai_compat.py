from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, AsyncIterator, Sequence

import httpx

from .messages import ConversationMessage
from .openai_format import add_tool_call_deltas, to_openai_messages, to_openai_tools
from .provider import CompletionOptions, EndFrame, ModelInfo, StreamFrame, TextFrame, ToolCallBatchFrame, UsageFrame
from .tool_calling import ToolCallAccumulator


class OpenAICompatProvider:
    """Streams chat completions from an OpenAI-compatible HTTP endpoint (vLLM and friends) over SSE."""

    name = "vllm"

    def __init__(
        self,
        url: str,
        model: str,
        timeout_s: float = 120.0,
        api_key: str | None = None,
        max_tokens: int | None = None,
        temperature: float | None = None,
        client: httpx.AsyncClient | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.url = url
        self.model = model
        self.timeout_s = timeout_s
        self.api_key = api_key
        self.max_tokens = max_tokens
        self.temperature = temperature
        self._client = client
        self.logger = logger or logging.getLogger("ephemera.providers.vllm")

    def model_info(self) -> ModelInfo:
        return ModelInfo(provider=self.name, model=self.model)

    def _payload(self, messages: Sequence[ConversationMessage], options: CompletionOptions) -> dict[str, Any]:
        payload: dict[str, object] = {
            "model": self.model,
            "messages": to_openai_messages(options.system_prompt, messages),
            "stream": True,
            "stream_options": {"include_usage": True},
        }
        if options.tools:
            payload["tools"] = to_openai_tools(options.tools)
        temperature = options.temperature if options.temperature is not None else self.temperature
        if temperature is not None:
            payload["temperature"] = temperature
        max_tokens = options.max_tokens or self.max_tokens
        if max_tokens:
            payload["max_tokens"] = max_tokens
        return payload

    async def stream_completion(
        self,
        messages: Sequence[ConversationMessage],
        options: CompletionOptions,
        signal: asyncio.Event | None = None,
    ) -> AsyncIterator[StreamFrame]:
        headers = {"Authorization": f"Bearer {self.api_key}"} if self.api_key else {}
        client = self._client or httpx.AsyncClient(timeout=self.timeout_s)
        accumulator = ToolCallAccumulator(provider_name=self.name)
        finish_reason: str | None = None
        try:
            async with client.stream("POST", self.url, json=self._payload(messages, options), headers=headers) as response:
                if response.status_code >= 400:
                    await response.aread()
                    response.raise_for_status()
                async for line in response.aiter_lines():
                    if signal is not None and signal.is_set():
                        break
                    if not line.startswith("data:"):
                        continue
                    data = line[len("data:") :].strip()
                    if not data:
                        continue
                    if data == "[DONE]":
                        break
                    chunk = json.loads(data)

                    usage = chunk.get("usage")
                    if usage:
                        yield UsageFrame(
                            input_tokens=int(usage.get("prompt_tokens") or 0),
                            output_tokens=int(usage.get("completion_tokens") or 0),
                        )
                    choices = chunk.get("choices") or []
                    if not choices:
                        continue
                    choice = choices[0]
                    delta = choice.get("delta") or {}
                    content = delta.get("content")
                    if content:
                        yield TextFrame(text=str(content))
                    if delta.get("tool_calls"):
                        add_tool_call_deltas(accumulator, delta["tool_calls"])
                    if choice.get("finish_reason"):
                        finish_reason = str(choice["finish_reason"])
        finally:
            if self._client is None:
                await client.aclose()

        if accumulator:
            yield ToolCallBatchFrame(calls=tuple(accumulator.build()))
        self.logger.debug(
            "provider_stream_complete",
            extra={"extra_fields": {"provider": self.name, "model": self.model, "finish_reason": finish_reason}},
        )
        yield EndFrame(finish_reason=finish_reason)
