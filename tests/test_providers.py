from __future__ import annotations

import json
from typing import Any

import httpx
import pytest
from conftest import EchoTool

from ephemera.core.config.settings import ProviderSettings
from ephemera.core.errors.classification import ErrorCategory
from ephemera.core.errors.provider_errors import CategorizedError, MalformedToolCallError, classify_error
from ephemera.core.models.factory import DEFAULT_VLLM_URL, create_provider
from ephemera.core.models.llm_anthropic import AnthropicProvider, to_anthropic_messages
from ephemera.core.models.llm_gemini import GeminiProvider, to_gemini_contents
from ephemera.core.models.llm_openai import OpenAIProvider
from ephemera.core.models.llm_openai_compat import OpenAICompatProvider
from ephemera.core.models.messages import ConversationMessage, TextPart, ToolCallPart, ToolResultPart, text_message
from ephemera.core.models.openai_format import to_openai_messages
from ephemera.core.models.provider import (
    CompletionOptions,
    StreamChannel,
    TextFrame,
    ToolCallBatchFrame,
    UsageFrame,
)
from ephemera.core.models.tool_calling import ToolCall, ToolCallAccumulator
from ephemera.core.tools.base import ToolErr, ToolOk

URL = "http://vllm.local/v1/chat/completions"


def _sse(*chunks: Any) -> bytes:
    lines = [f"data: {json.dumps(chunk)}\n\n" for chunk in chunks]
    lines.append("data: [DONE]\n\n")
    return "".join(lines).encode()


def _tool_delta(arguments: str, **extra: Any) -> dict[str, Any]:
    call: dict[str, Any] = {"index": 0, "function": {"arguments": arguments}}
    call["function"].update(extra.pop("function", {}))
    call.update(extra)
    return {"choices": [{"delta": {"tool_calls": [call]}}]}


def _provider(handler) -> OpenAICompatProvider:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return OpenAICompatProvider(url=URL, model="glm-test", client=client)


async def _collect(provider: OpenAICompatProvider, messages: list[ConversationMessage], options: CompletionOptions) -> list[Any]:
    frames: list[Any] = []
    async with StreamChannel(provider.stream_completion(messages, options)) as channel:
        async for frame in channel:
            frames.append(frame)
    return frames


async def test_openai_compat_streams_text_tool_calls_and_usage() -> None:
    captured: dict[str, Any] = {}

    def handler(request: httpx.Request) -> httpx.Response:
        captured.update(json.loads(request.content))
        body = _sse(
            {"choices": [{"delta": {"content": "Hel"}}]},
            {"choices": [{"delta": {"content": "lo"}}]},
            _tool_delta('{"file_', id="call_1", function={"name": "get_file"}),
            _tool_delta('path": "a.py"}'),
            {"choices": [{"delta": {}, "finish_reason": "tool_calls"}]},
            {"choices": [], "usage": {"prompt_tokens": 12, "completion_tokens": 7}},
        )
        return httpx.Response(200, content=body, headers={"content-type": "text/event-stream"})

    options = CompletionOptions(system_prompt="sys", tools=(EchoTool(),), max_tokens=256)
    frames = await _collect(_provider(handler), [text_message("user", "hi")], options)

    assert [f.text for f in frames if isinstance(f, TextFrame)] == ["Hel", "lo"]
    assert UsageFrame(input_tokens=12, output_tokens=7) in frames
    batch = [f for f in frames if isinstance(f, ToolCallBatchFrame)]
    assert batch[0].calls == (ToolCall(name="get_file", arguments={"file_path": "a.py"}, id="call_1"),)

    assert captured["stream"] is True
    assert captured["model"] == "glm-test"
    assert captured["max_tokens"] == 256
    assert captured["messages"][0] == {"role": "system", "content": "sys"}
    assert captured["tools"][0]["function"]["name"] == "echo"


async def test_openai_compat_malformed_arguments() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        body = _sse(_tool_delta("{not json", id="call_1", function={"name": "get_file"}))
        return httpx.Response(200, content=body)

    with pytest.raises(MalformedToolCallError) as excinfo:
        await _collect(_provider(handler), [text_message("user", "hi")], CompletionOptions())
    assert classify_error("vllm", excinfo.value) is ErrorCategory.TRANSIENT


async def test_openai_compat_http_errors_are_classified() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(503, json={"error": "loading model"})

    with pytest.raises(httpx.HTTPStatusError) as excinfo:
        await _collect(_provider(handler), [text_message("user", "hi")], CompletionOptions())
    assert classify_error("vllm", excinfo.value) is ErrorCategory.TRANSIENT


def test_accumulator_handles_empty_arguments_and_order() -> None:
    accumulator = ToolCallAccumulator(provider_name="openai")
    accumulator.add(1, id="b", name="list_builds")
    accumulator.add(0, id="a", name="get_", arguments='{"x": 1}')
    accumulator.add(0, name="file")

    assert accumulator.build() == [
        ToolCall(name="get_file", arguments={"x": 1}, id="a"),
        ToolCall(name="list_builds", arguments={}, id="b"),
    ]


def _exchange() -> list[ConversationMessage]:
    return [
        text_message("user", "check logs"),
        ConversationMessage(
            role="assistant",
            parts=(
                TextPart(content="Looking."),
                ToolCallPart(tool_call_id="c1", name="get_pod_logs", arguments={"pod": "api-0"}),
            ),
        ),
        ConversationMessage(
            role="user",
            parts=(
                ToolResultPart(tool_call_id="c1", name="get_pod_logs", result=ToolOk("OOMKilled")),
                ToolResultPart(
                    tool_call_id="c2",
                    name="get_file",
                    result=ToolErr(code="NOT_FOUND", message="missing", recoverable=True),
                ),
            ),
        ),
    ]


def test_openai_message_conversion() -> None:
    converted = to_openai_messages("sys", _exchange())

    assert [m["role"] for m in converted] == ["system", "user", "assistant", "tool", "tool"]
    assert converted[2]["content"] == "Looking."
    assert converted[2]["tool_calls"][0]["function"] == {"name": "get_pod_logs", "arguments": '{"pod": "api-0"}'}
    assert converted[3] == {"role": "tool", "tool_call_id": "c1", "content": "OOMKilled"}
    assert json.loads(converted[4]["content"])["error"]["code"] == "NOT_FOUND"


def test_anthropic_message_conversion() -> None:
    converted = to_anthropic_messages(_exchange())

    assert [m["role"] for m in converted] == ["user", "assistant", "user"]
    assert converted[1]["content"][1] == {
        "type": "tool_use",
        "id": "c1",
        "name": "get_pod_logs",
        "input": {"pod": "api-0"},
    }
    results = converted[2]["content"]
    assert results[0]["is_error"] is False
    assert results[1]["is_error"] is True


def test_factory_builds_the_configured_provider() -> None:
    assert isinstance(create_provider(ProviderSettings(name="anthropic", api_key="sk-ant-test")), AnthropicProvider)
    assert isinstance(create_provider(ProviderSettings(name="openai", api_key="sk-test")), OpenAIProvider)

    vllm = create_provider(ProviderSettings(name="vllm"))
    assert isinstance(vllm, OpenAICompatProvider)
    assert vllm.url == DEFAULT_VLLM_URL
    assert vllm.model_info().provider == "vllm"


def _gemini_sse(*chunks: Any) -> bytes:
    return "".join(f"data: {json.dumps(chunk)}\n\n" for chunk in chunks).encode()


def _gemini(handler) -> GeminiProvider:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return GeminiProvider(model="gemini-2.5-flash", api_key="g-key", client=client)


def _candidate(parts: list[dict[str, Any]], finish_reason: str | None = None) -> dict[str, Any]:
    candidate: dict[str, Any] = {"content": {"role": "model", "parts": parts}}
    if finish_reason:
        candidate["finishReason"] = finish_reason
    return {"candidates": [candidate]}


async def test_gemini_streams_text_function_calls_and_usage() -> None:
    captured: dict[str, Any] = {}

    def handler(request: httpx.Request) -> httpx.Response:
        captured["url"] = str(request.url)
        captured["key"] = request.headers.get("x-goog-api-key")
        captured["body"] = json.loads(request.content)
        body = _gemini_sse(
            _candidate([{"text": "Checking "}]),
            _candidate(
                [
                    {
                        "functionCall": {"name": "default_api:get_pod_logs", "args": {"pod": "api-0"}},
                        "thoughtSignature": "sig-1",
                    }
                ],
                finish_reason="STOP",
            ),
            {"usageMetadata": {"promptTokenCount": 40, "candidatesTokenCount": 9}},
        )
        return httpx.Response(200, content=body, headers={"content-type": "text/event-stream"})

    options = CompletionOptions(system_prompt="sys", tools=(EchoTool(),))
    frames = await _collect(_gemini(handler), [text_message("user", "hi")], options)

    assert [f.text for f in frames if isinstance(f, TextFrame)] == ["Checking "]
    batch = [f for f in frames if isinstance(f, ToolCallBatchFrame)][0]
    assert batch.calls[0].name == "get_pod_logs"
    assert batch.calls[0].arguments == {"pod": "api-0"}
    assert batch.calls[0].metadata == {"thoughtSignature": "sig-1"}
    assert UsageFrame(input_tokens=40, output_tokens=9) in frames

    assert captured["url"].endswith("/models/gemini-2.5-flash:streamGenerateContent?alt=sse")
    assert captured["key"] == "g-key"
    assert captured["body"]["systemInstruction"] == {"parts": [{"text": "sys"}]}
    assert captured["body"]["tools"][0]["functionDeclarations"][0]["name"] == "echo"
    assert "topK" not in captured["body"]["generationConfig"]


async def test_gemini_malformed_function_call_is_transient() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, content=_gemini_sse(_candidate([], finish_reason="MALFORMED_FUNCTION_CALL")))

    with pytest.raises(CategorizedError) as excinfo:
        await _collect(_gemini(handler), [text_message("user", "hi")], CompletionOptions())
    assert classify_error("gemini", excinfo.value) is ErrorCategory.TRANSIENT


async def test_gemini_empty_response_category_depends_on_finish_reason() -> None:
    def stopped(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, content=_gemini_sse(_candidate([], finish_reason="STOP")))

    def cut_off(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, content=_gemini_sse(_candidate([], finish_reason="MAX_TOKENS")))

    with pytest.raises(CategorizedError) as stop_error:
        await _collect(_gemini(stopped), [text_message("user", "hi")], CompletionOptions())
    with pytest.raises(CategorizedError) as other_error:
        await _collect(_gemini(cut_off), [text_message("user", "hi")], CompletionOptions())

    assert classify_error("gemini", stop_error.value) is ErrorCategory.AMBIGUOUS
    assert classify_error("gemini", other_error.value) is ErrorCategory.TRANSIENT


async def test_gemini_http_errors_are_classified() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(429, json={"error": {"status": "RESOURCE_EXHAUSTED"}})

    with pytest.raises(httpx.HTTPStatusError) as excinfo:
        await _collect(_gemini(handler), [text_message("user", "hi")], CompletionOptions())
    assert classify_error("gemini", excinfo.value) is ErrorCategory.RATE_LIMITED


def test_gemini_content_conversion() -> None:
    messages = _exchange()
    messages[1] = ConversationMessage(
        role="assistant",
        parts=(
            TextPart(content="Looking."),
            ToolCallPart(
                tool_call_id="c1",
                name="get_pod_logs",
                arguments={"pod": "api-0"},
                metadata={"thoughtSignature": "sig-1"},
            ),
        ),
    )
    messages.append(
        ConversationMessage(
            role="user",
            parts=(ToolResultPart(tool_call_id="c3", name="list_pods", result=ToolOk('["api-0", "api-1"]')),),
        )
    )

    contents = to_gemini_contents(messages)

    assert [c["role"] for c in contents] == ["user", "model", "user", "user"]
    assert contents[1]["parts"][1] == {
        "functionCall": {"name": "get_pod_logs", "args": {"pod": "api-0"}},
        "thoughtSignature": "sig-1",
    }
    results = contents[2]["parts"]
    assert results[0]["functionResponse"] == {"name": "get_pod_logs", "response": {"content": "OOMKilled"}}
    assert results[1]["functionResponse"]["response"] == {"error": "missing", "success": False}
    assert contents[3]["parts"][0]["functionResponse"]["response"] == {"items": ["api-0", "api-1"]}


def test_factory_builds_gemini() -> None:
    provider = create_provider(ProviderSettings(name="gemini", api_key="g-key"))

    assert isinstance(provider, GeminiProvider)
    assert provider.model == "gemini-2.5-flash"
    assert provider.model_info().provider == "gemini"
