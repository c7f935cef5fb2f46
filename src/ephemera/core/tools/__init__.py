from .base import (
    BaseTool,
    ConfirmationDetails,
    DisplayContent,
    SafetyLevel,
    Tool,
    ToolErr,
    ToolExecutionError,
    ToolOk,
    ToolResult,
    result_to_agent_text,
)
from .output_limiter import OutputLimiter
from .registry import ToolRegistry

__all__ = [
    "BaseTool",
    "ConfirmationDetails",
    "DisplayContent",
    "OutputLimiter",
    "SafetyLevel",
    "Tool",
    "ToolErr",
    "ToolExecutionError",
    "ToolOk",
    "ToolRegistry",
    "ToolResult",
    "result_to_agent_text",
]
