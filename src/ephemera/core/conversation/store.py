from __future__ import annotations

from typing import Protocol

from ephemera.core.models.messages import ConversationMessage


class ConversationStore(Protocol):
    async def get_messages(self, run_id: str) -> list[ConversationMessage]: ...

    async def append_message(self, run_id: str, message: ConversationMessage) -> None: ...


class InMemoryConversationStore:
    """Process-local store; hosts plug in their own durable implementation."""

    def __init__(self) -> None:
        self._messages: dict[str, list[ConversationMessage]] = {}

    async def get_messages(self, run_id: str) -> list[ConversationMessage]:
        return list(self._messages.get(run_id, []))

    async def append_message(self, run_id: str, message: ConversationMessage) -> None:
        self._messages.setdefault(run_id, []).append(message)

    async def clear(self, run_id: str) -> None:
        self._messages.pop(run_id, None)
