from .messages import (
    ConversationMessage,
    MessagePart,
    TextPart,
    ToolCallPart,
    ToolResultPart,
    extract_text_from_parts,
    text_message,
)
from .provider import (
    CompletionOptions,
    EndFrame,
    ErrorFrame,
    LLMProvider,
    ModelInfo,
    StreamChannel,
    StreamFrame,
    TextFrame,
    ToolCallBatchFrame,
    UsageFrame,
)
from .tokens import (
    TokenBudget,
    check_budget,
    count_conversation_tokens,
    count_tokens,
    estimate_conversation_tokens,
    estimate_tokens,
)
from .tool_calling import ToolCall, ToolCallAccumulator

__all__ = [
    "CompletionOptions",
    "ConversationMessage",
    "EndFrame",
    "ErrorFrame",
    "LLMProvider",
    "MessagePart",
    "ModelInfo",
    "StreamChannel",
    "StreamFrame",
    "TextFrame",
    "TextPart",
    "ToolCall",
    "ToolCallAccumulator",
    "ToolCallBatchFrame",
    "ToolCallPart",
    "ToolResultPart",
    "TokenBudget",
    "UsageFrame",
    "check_budget",
    "count_conversation_tokens",
    "count_tokens",
    "estimate_conversation_tokens",
    "estimate_tokens",
    "extract_text_from_parts",
    "text_message",
]
