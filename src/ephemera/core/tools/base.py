from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, ClassVar, Literal, Protocol, Union, runtime_checkable


class SafetyLevel(str, Enum):
    SAFE = "safe"
    CAUTIOUS = "cautious"
    DANGEROUS = "dangerous"


@dataclass(frozen=True)
class DisplayContent:
    type: Literal["text", "table", "diff", "terminal"]
    content: Any


@dataclass(frozen=True)
class ToolOk:
    agent_content: str
    display_content: DisplayContent | None = None

    @property
    def success(self) -> bool:
        return True


@dataclass(frozen=True)
class ToolErr:
    code: str
    message: str
    recoverable: bool
    suggested_action: str | None = None

    @property
    def success(self) -> bool:
        return False

    def to_dict(self) -> dict[str, object]:
        payload: dict[str, object] = {
            "message": self.message,
            "code": self.code,
            "recoverable": self.recoverable,
        }
        if self.suggested_action:
            payload["suggestedAction"] = self.suggested_action
        return payload


ToolResult = Union[ToolOk, ToolErr]


def result_to_agent_text(result: ToolResult) -> str:
    if isinstance(result, ToolOk):
        return result.agent_content
    return json.dumps({"success": False, "error": result.to_dict()}, ensure_ascii=False)


@dataclass(frozen=True)
class ConfirmationDetails:
    title: str
    description: str
    impact: str
    confirm_button_text: str = "Confirm"


class ToolExecutionError(RuntimeError):
    """Raised by tools that want a specific error code on the resulting ToolErr."""

    def __init__(self, message: str, code: str = "EXECUTION_ERROR", recoverable: bool = True) -> None:
        super().__init__(message)
        self.code = code
        self.recoverable = recoverable


@runtime_checkable
class Tool(Protocol):
    name: str
    description: str
    json_schema: dict[str, Any]
    safety_level: SafetyLevel
    category: str

    def execute(self, args: dict[str, Any], signal: asyncio.Event | None = None) -> Awaitable[ToolResult]: ...

    def should_confirm_execution(self, args: dict[str, Any]) -> Awaitable[ConfirmationDetails | None]: ...


class BaseTool:
    name: ClassVar[str]
    description: ClassVar[str] = ""
    json_schema: ClassVar[dict[str, Any]] = {"type": "object", "properties": {}}
    safety_level: ClassVar[SafetyLevel] = SafetyLevel.SAFE
    category: ClassVar[str] = "general"

    async def execute(self, args: dict[str, Any], signal: asyncio.Event | None = None) -> ToolResult:
        raise NotImplementedError

    async def should_confirm_execution(self, args: dict[str, Any]) -> ConfirmationDetails | None:
        # Override and return None to skip confirmation for a specific call.
        return ConfirmationDetails(
            title=f"Run {self.name}",
            description=self.description or self.name,
            impact=f"{self.safety_level.value} operation",
        )

    @staticmethod
    def success(agent_content: str, display: str | None = None) -> ToolOk:
        return ToolOk(
            agent_content=agent_content,
            display_content=DisplayContent(type="text", content=display) if display else None,
        )

    @staticmethod
    def error(message: str, code: str, recoverable: bool = True) -> ToolErr:
        return ToolErr(code=code, message=message, recoverable=recoverable)

    @staticmethod
    def aborted(signal: asyncio.Event | None) -> bool:
        return signal is not None and signal.is_set()
