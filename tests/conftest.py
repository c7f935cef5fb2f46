from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, AsyncIterator, Iterator, Sequence

import pytest

from ephemera.core.infra.breaker_manager import reset_all_circuit_breakers
from ephemera.core.models.messages import ConversationMessage
from ephemera.core.models.provider import (
    CompletionOptions,
    EndFrame,
    ModelInfo,
    StreamFrame,
    TextFrame,
    ToolCallBatchFrame,
    UsageFrame,
)
from ephemera.core.models.tool_calling import ToolCall
from ephemera.core.tools.base import BaseTool, SafetyLevel, ToolResult


@pytest.fixture(autouse=True)
def fresh_circuit_breakers() -> Iterator[None]:
    reset_all_circuit_breakers()
    yield
    reset_all_circuit_breakers()


@pytest.fixture(autouse=True)
def clear_ephemera_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in (
        "EPHEMERA_MAX_ITERATIONS",
        "EPHEMERA_MAX_TOOL_CALLS",
        "EPHEMERA_RETRY_BUDGET",
        "EPHEMERA_REQUIRE_TOOL_CONFIRMATION",
        "EPHEMERA_LLM_PROVIDER",
        "EPHEMERA_LOG_LEVEL",
    ):
        monkeypatch.delenv(name, raising=False)


@dataclass(frozen=True)
class Pause:
    seconds: float


def text_turn(*chunks: str, input_tokens: int = 10, output_tokens: int = 5) -> list[Any]:
    frames: list[Any] = [TextFrame(text=chunk) for chunk in chunks]
    frames.append(UsageFrame(input_tokens=input_tokens, output_tokens=output_tokens))
    frames.append(EndFrame(finish_reason="stop"))
    return frames


def tool_turn(*calls: ToolCall, text: str = "") -> list[Any]:
    frames: list[Any] = [TextFrame(text=text)] if text else []
    frames.append(ToolCallBatchFrame(calls=tuple(calls)))
    frames.append(UsageFrame(input_tokens=20, output_tokens=8))
    frames.append(EndFrame(finish_reason="tool_calls"))
    return frames


class ScriptedProvider:
    """Replays one scripted turn per ``stream_completion`` call.

    A turn is a list of frames; a ``Pause`` sleeps, an exception is raised at
    that point of the stream.
    """

    def __init__(self, turns: Sequence[list[Any]], name: str = "anthropic", model: str = "claude-test") -> None:
        self.name = name
        self.model = model
        self.turns = list(turns)
        self.calls: list[list[ConversationMessage]] = []
        self.options: list[CompletionOptions] = []

    def model_info(self) -> ModelInfo:
        return ModelInfo(provider=self.name, model=self.model)

    async def stream_completion(
        self,
        messages: Sequence[ConversationMessage],
        options: CompletionOptions,
        signal: asyncio.Event | None = None,
    ) -> AsyncIterator[StreamFrame]:
        self.calls.append(list(messages))
        self.options.append(options)
        if not self.turns:
            raise AssertionError("provider called more often than scripted")
        for item in self.turns.pop(0):
            if isinstance(item, BaseException):
                raise item
            if isinstance(item, Pause):
                await asyncio.sleep(item.seconds)
                continue
            yield item


class EchoTool(BaseTool):
    name = "echo"
    description = "Echo the message back"
    json_schema = {
        "type": "object",
        "properties": {"message": {"type": "string"}},
        "required": ["message"],
    }

    def __init__(self) -> None:
        self.calls: list[dict[str, Any]] = []

    async def execute(self, args: dict[str, Any], signal: asyncio.Event | None = None) -> ToolResult:
        self.calls.append(args)
        return self.success(f"echo: {args['message']}")


class SleepyTool(BaseTool):
    description = "Sleeps, then reports how long it slept"
    json_schema = {"type": "object", "properties": {"id": {"type": "integer"}}}

    def __init__(self, name: str, delay_s: float, safety_level: SafetyLevel = SafetyLevel.SAFE) -> None:
        self.name = name
        self.delay_s = delay_s
        self.safety_level = safety_level
        self.executions = 0

    async def execute(self, args: dict[str, Any], signal: asyncio.Event | None = None) -> ToolResult:
        self.executions += 1
        await asyncio.sleep(self.delay_s)
        return self.success(f"{self.name} slept {self.delay_s}s")


class RaisingTool(BaseTool):
    name = "explode"
    description = "Always raises"

    def __init__(self, error: Exception) -> None:
        self.error = error

    async def execute(self, args: dict[str, Any], signal: asyncio.Event | None = None) -> ToolResult:
        raise self.error
