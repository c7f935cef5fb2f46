from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, AsyncIterator, Sequence

import httpx

from ephemera.core.errors.classification import ErrorCategory
from ephemera.core.errors.provider_errors import CategorizedError
from ephemera.core.tools.base import Tool, ToolOk

from .messages import ConversationMessage, TextPart, ToolCallPart, ToolResultPart
from .provider import CompletionOptions, EndFrame, ModelInfo, StreamFrame, TextFrame, ToolCallBatchFrame, UsageFrame
from .tool_calling import ToolCall

DEFAULT_GEMINI_URL = "https://generativelanguage.googleapis.com/v1beta"
DEFAULT_MAX_OUTPUT_TOKENS = 65536
DEFAULT_TEMPERATURE = 0.1
FUNCTION_PREFIX = "default_api:"


def _function_response(part: ToolResultPart) -> dict[str, Any]:
    result = part.result
    if not isinstance(result, ToolOk):
        return {"error": result.message or "Tool execution failed", "success": False}
    try:
        parsed = json.loads(result.agent_content)
    except json.JSONDecodeError:
        return {"content": result.agent_content}
    if isinstance(parsed, list):
        return {"items": parsed}
    if not isinstance(parsed, dict):
        return {"content": result.agent_content}
    return parsed


def to_gemini_contents(messages: Sequence[ConversationMessage]) -> list[dict[str, Any]]:
    contents: list[dict[str, Any]] = []
    for message in messages:
        if message.role == "system":
            continue
        parts: list[dict[str, Any]] = []
        for part in message.parts:
            if isinstance(part, TextPart):
                if part.content:
                    parts.append({"text": part.content})
            elif isinstance(part, ToolCallPart):
                call: dict[str, Any] = {"functionCall": {"name": part.name, "args": part.arguments}}
                signature = (part.metadata or {}).get("thoughtSignature")
                if signature:
                    call["thoughtSignature"] = signature
                parts.append(call)
            elif isinstance(part, ToolResultPart):
                parts.append({"functionResponse": {"name": part.name, "response": _function_response(part)}})
        if parts:
            contents.append({"role": "model" if message.role == "assistant" else "user", "parts": parts})
    return contents


def to_gemini_tools(tools: Sequence[Tool]) -> list[dict[str, Any]]:
    declarations = []
    for tool in tools:
        schema = tool.json_schema or {}
        declarations.append(
            {
                "name": tool.name,
                "description": tool.description,
                "parametersJsonSchema": {
                    "type": "object",
                    "properties": schema.get("properties", {}),
                    "required": schema.get("required", []),
                },
            }
        )
    return [{"functionDeclarations": declarations}]


def _parse_function_call(part: dict[str, Any]) -> ToolCall:
    call = part["functionCall"]
    name = str(call.get("name") or "")
    if name.startswith(FUNCTION_PREFIX):
        name = name[len(FUNCTION_PREFIX) :]
    signature = part.get("thoughtSignature")
    return ToolCall(
        name=name,
        arguments=dict(call.get("args") or {}),
        metadata={"thoughtSignature": signature} if signature else None,
    )


class GeminiProvider:
    """Streams ``streamGenerateContent`` from the Gemini REST API over SSE."""

    name = "gemini"

    def __init__(
        self,
        model: str,
        api_key: str | None = None,
        base_url: str | None = None,
        timeout_s: float = 120.0,
        max_tokens: int | None = None,
        temperature: float | None = None,
        client: httpx.AsyncClient | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.model = model
        self.api_key = api_key
        self.base_url = (base_url or DEFAULT_GEMINI_URL).rstrip("/")
        self.timeout_s = timeout_s
        self.max_tokens = max_tokens
        self.temperature = temperature
        self._client = client
        self.logger = logger or logging.getLogger("ephemera.providers.gemini")

    def model_info(self) -> ModelInfo:
        return ModelInfo(provider=self.name, model=self.model, context_window=1_000_000)

    @property
    def url(self) -> str:
        return f"{self.base_url}/models/{self.model}:streamGenerateContent?alt=sse"

    def _payload(self, messages: Sequence[ConversationMessage], options: CompletionOptions) -> dict[str, Any]:
        temperature = options.temperature if options.temperature is not None else self.temperature
        generation: dict[str, Any] = {
            "temperature": temperature if temperature is not None else DEFAULT_TEMPERATURE,
            "topP": 0.95,
            "maxOutputTokens": options.max_tokens or self.max_tokens or DEFAULT_MAX_OUTPUT_TOKENS,
        }
        # Thinking models reject topK.
        if "2.5" not in self.model and "3." not in self.model:
            generation["topK"] = 40
        payload: dict[str, Any] = {"contents": to_gemini_contents(messages), "generationConfig": generation}
        if options.system_prompt:
            payload["systemInstruction"] = {"parts": [{"text": options.system_prompt}]}
        if options.tools:
            payload["tools"] = to_gemini_tools(options.tools)
            self.logger.info(
                "gemini_tools_sent",
                extra={"extra_fields": {"tool_count": len(options.tools), "tools": [t.name for t in options.tools]}},
            )
        return payload

    async def stream_completion(
        self,
        messages: Sequence[ConversationMessage],
        options: CompletionOptions,
        signal: asyncio.Event | None = None,
    ) -> AsyncIterator[StreamFrame]:
        headers = {"x-goog-api-key": self.api_key} if self.api_key else {}
        client = self._client or httpx.AsyncClient(timeout=self.timeout_s)
        calls: list[ToolCall] = []
        text_len = 0
        finish_reason: str | None = None
        usage: dict[str, Any] | None = None
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
                    chunk = json.loads(data)
                    usage = chunk.get("usageMetadata") or usage
                    candidates = chunk.get("candidates") or []
                    if not candidates:
                        continue
                    candidate = candidates[0]
                    finish_reason = candidate.get("finishReason") or finish_reason
                    for part in (candidate.get("content") or {}).get("parts") or []:
                        if part.get("text"):
                            text_len += len(part["text"])
                            yield TextFrame(text=str(part["text"]))
                        if part.get("functionCall"):
                            calls.append(_parse_function_call(part))
        finally:
            if self._client is None:
                await client.aclose()

        if finish_reason == "MALFORMED_FUNCTION_CALL":
            raise CategorizedError(
                "Gemini generated a malformed function call. This is a transient model error.",
                ErrorCategory.TRANSIENT,
                provider_name=self.name,
            )
        if not text_len and not calls and (signal is None or not signal.is_set()):
            self.logger.error("gemini_empty_response", extra={"extra_fields": {"finish_reason": finish_reason}})
            raise CategorizedError(
                "Gemini returned an empty response. This may be due to the system prompt size "
                f"({len(options.system_prompt)} chars), the number of tools ({len(options.tools)}) or "
                f"incompatible tool definitions. finishReason: {finish_reason}",
                ErrorCategory.AMBIGUOUS if finish_reason == "STOP" else ErrorCategory.TRANSIENT,
                provider_name=self.name,
            )

        if calls:
            yield ToolCallBatchFrame(calls=tuple(calls))
        if usage:
            yield UsageFrame(
                input_tokens=int(usage.get("promptTokenCount") or 0),
                output_tokens=int(usage.get("candidatesTokenCount") or 0),
            )
        yield EndFrame(finish_reason=finish_reason)
