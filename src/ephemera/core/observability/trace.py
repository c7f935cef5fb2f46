from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional

from ephemera.core.orchestration.callbacks import NullCallbacks
from ephemera.core.tools.base import ConfirmationDetails, ToolResult


@dataclass
class RecordingCallbacks(NullCallbacks):
    """Host callbacks that keep every event in order.

    ``confirm`` answers confirmation prompts: a bool for a fixed answer, an
    async callable for custom logic, or None to leave the host without a
    confirmation handler.
    """

    run_id: str | None = None
    correlation_id: str | None = None
    confirm: bool | Callable[[ConfirmationDetails], Awaitable[bool]] | None = True
    events: list[dict[str, Any]] = field(default_factory=list)
    on_tool_confirmation: Optional[Callable[[ConfirmationDetails], Awaitable[bool]]] = field(init=False, default=None)

    def __post_init__(self) -> None:
        if self.confirm is not None:
            self.on_tool_confirmation = self._confirm

    def emit(self, name: str, payload: dict[str, Any]) -> None:
        enriched_payload = dict(payload)
        if self.run_id:
            enriched_payload.setdefault("run_id", self.run_id)
        if self.correlation_id:
            enriched_payload.setdefault("correlation_id", self.correlation_id)
        self.events.append({"event": name, "payload": enriched_payload})

    def of(self, name: str) -> list[dict[str, Any]]:
        return [event["payload"] for event in self.events if event["event"] == name]

    @property
    def text(self) -> str:
        return "".join(payload["text"] for payload in self.of("TextChunk"))

    async def _confirm(self, details: ConfirmationDetails) -> bool:
        self.emit("ToolConfirmation", {"title": details.title, "impact": details.impact})
        if callable(self.confirm):
            return await self.confirm(details)
        return bool(self.confirm)

    def on_text_chunk(self, text: str) -> None:
        self.emit("TextChunk", {"text": text})

    def on_thinking(self, message: str) -> None:
        self.emit("Thinking", {"message": message})

    def on_tool_call(self, name: str, args: dict[str, Any], tool_call_id: str) -> None:
        self.emit("ToolCall", {"name": name, "args": args, "tool_call_id": tool_call_id})

    def on_tool_result(
        self,
        result: ToolResult,
        name: str,
        args: dict[str, Any],
        tool_duration_ms: int,
        total_duration_ms: int,
        tool_call_id: str,
    ) -> None:
        self.emit(
            "ToolResult",
            {
                "result": result,
                "name": name,
                "args": args,
                "tool_duration_ms": tool_duration_ms,
                "total_duration_ms": total_duration_ms,
                "tool_call_id": tool_call_id,
            },
        )

    def on_error(self, error: BaseException) -> None:
        self.emit("Error", {"error": error})

    def on_activity(self, activity: dict[str, Any]) -> None:
        self.emit("Activity", dict(activity))

    def on_structured_output(self, data: dict[str, Any]) -> None:
        self.emit("StructuredOutput", {"data": data})
