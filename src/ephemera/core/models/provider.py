from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Protocol, Sequence, Union, runtime_checkable

from ephemera.core.errors.provider_errors import RunCancelledError
from ephemera.core.tools.base import Tool

from .messages import ConversationMessage
from .tool_calling import ToolCall


@dataclass(frozen=True)
class TextFrame:
    text: str


@dataclass(frozen=True)
class ToolCallBatchFrame:
    calls: tuple[ToolCall, ...]


@dataclass(frozen=True)
class UsageFrame:
    input_tokens: int = 0
    output_tokens: int = 0


@dataclass(frozen=True)
class EndFrame:
    finish_reason: str | None = None


@dataclass(frozen=True)
class ErrorFrame:
    error: BaseException


StreamFrame = Union[TextFrame, ToolCallBatchFrame, UsageFrame, EndFrame, ErrorFrame]


@dataclass
class CompletionOptions:
    system_prompt: str = ""
    tools: Sequence[Tool] = field(default_factory=tuple)
    max_tokens: int | None = None
    temperature: float | None = None


@dataclass(frozen=True)
class ModelInfo:
    provider: str
    model: str
    context_window: int | None = None


@runtime_checkable
class LLMProvider(Protocol):
    name: str

    def stream_completion(
        self,
        messages: Sequence[ConversationMessage],
        options: CompletionOptions,
        signal: asyncio.Event | None = None,
    ) -> AsyncIterator[StreamFrame]: ...

    def model_info(self) -> ModelInfo: ...


class StreamChannel:
    """Typed view over one provider stream.

    Iterating yields frames until an ``EndFrame`` or the provider finishes.
    ``ErrorFrame`` is raised as its error. When the cancellation signal is set
    the pending read is abandoned, the provider iterator is closed and
    ``RunCancelledError`` is raised.
    """

    def __init__(self, frames: AsyncIterator[StreamFrame], signal: asyncio.Event | None = None) -> None:
        self._frames = frames
        self._signal = signal
        self._closed = False
        self.finish_reason: str | None = None

    async def __aenter__(self) -> "StreamChannel":
        return self

    async def __aexit__(self, exc_type: Any, exc: Any, tb: Any) -> None:
        await self.aclose()

    def __aiter__(self) -> "StreamChannel":
        return self

    async def __anext__(self) -> StreamFrame:
        if self._closed:
            raise StopAsyncIteration
        if self._signal is not None and self._signal.is_set():
            await self.aclose()
            raise RunCancelledError()

        try:
            frame = await self._read()
        except StopAsyncIteration:
            await self.aclose()
            raise

        if isinstance(frame, ErrorFrame):
            await self.aclose()
            raise frame.error
        if isinstance(frame, EndFrame):
            self.finish_reason = frame.finish_reason
            await self.aclose()
            raise StopAsyncIteration
        return frame

    async def _read(self) -> StreamFrame:
        if self._signal is None:
            return await self._frames.__anext__()

        pending_frame = asyncio.ensure_future(self._frames.__anext__())
        cancelled = asyncio.ensure_future(self._signal.wait())
        try:
            await asyncio.wait({pending_frame, cancelled}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            pending_frame.cancel()
            raise
        finally:
            cancelled.cancel()
        if pending_frame.done():
            return pending_frame.result()

        pending_frame.cancel()
        await asyncio.gather(pending_frame, return_exceptions=True)
        await self.aclose()
        raise RunCancelledError()

    async def aclose(self) -> None:
        if self._closed:
            return
        self._closed = True
        close = getattr(self._frames, "aclose", None)
        if close is not None:
            await close()
