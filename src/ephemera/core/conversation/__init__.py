from .manager import (
    CompressionError,
    ConversationManager,
    ConversationState,
    IdentifiedIssue,
    build_prompt_from_state,
)
from .store import ConversationStore, InMemoryConversationStore

__all__ = [
    "CompressionError",
    "ConversationManager",
    "ConversationState",
    "ConversationStore",
    "IdentifiedIssue",
    "InMemoryConversationStore",
    "build_prompt_from_state",
]
