from __future__ import annotations

from typing import Any, Awaitable, Callable, Optional, Protocol

from ephemera.core.tools.base import ConfirmationDetails, ToolResult

ConfirmationHandler = Callable[[ConfirmationDetails], Awaitable[bool]]


class StreamCallbacks(Protocol):
    on_tool_confirmation: Optional[ConfirmationHandler]

    def on_text_chunk(self, text: str) -> None: ...

    def on_thinking(self, message: str) -> None: ...

    def on_tool_call(self, name: str, args: dict[str, Any], tool_call_id: str) -> None: ...

    def on_tool_result(
        self,
        result: ToolResult,
        name: str,
        args: dict[str, Any],
        tool_duration_ms: int,
        total_duration_ms: int,
        tool_call_id: str,
    ) -> None: ...

    def on_error(self, error: BaseException) -> None: ...

    def on_activity(self, activity: dict[str, Any]) -> None: ...

    def on_structured_output(self, data: dict[str, Any]) -> None: ...


class NullCallbacks:
    """Host callbacks that ignore every event. Subclass and override what you need."""

    on_tool_confirmation: Optional[ConfirmationHandler] = None

    def on_text_chunk(self, text: str) -> None:
        pass

    def on_thinking(self, message: str) -> None:
        pass

    def on_tool_call(self, name: str, args: dict[str, Any], tool_call_id: str) -> None:
        pass

    def on_tool_result(
        self,
        result: ToolResult,
        name: str,
        args: dict[str, Any],
        tool_duration_ms: int,
        total_duration_ms: int,
        tool_call_id: str,
    ) -> None:
        pass

    def on_error(self, error: BaseException) -> None:
        pass

    def on_activity(self, activity: dict[str, Any]) -> None:
        pass

    def on_structured_output(self, data: dict[str, Any]) -> None:
        pass
