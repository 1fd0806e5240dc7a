"""Conversation and message persistence.

``PersistenceStore`` is the seam the completion engine saves through. The
in-memory store backs local runs and tests; a database-backed store only has
to implement the same four coroutines.
"""

import asyncio
from datetime import UTC, datetime
from typing import Any, Literal, Protocol

from pydantic import BaseModel, Field


def _utcnow() -> datetime:
    return datetime.now(UTC)


class Conversation(BaseModel):
    id: str
    user_id: str | None = None
    app_id: str | None = None
    title: str | None = None
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)


class StoredMessage(BaseModel):
    id: str
    conversation_id: str
    role: Literal["user", "assistant"]
    content: str
    model: str | None = None
    tool_results: list[dict[str, Any]] = Field(default_factory=list)
    memory_sources: list[dict[str, Any]] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=_utcnow)


class PersistenceStore(Protocol):
    async def get_conversation(self, conversation_id: str) -> Conversation | None: ...

    async def save_conversation(self, conversation: Conversation) -> Conversation: ...

    async def get_message(self, message_id: str) -> StoredMessage | None: ...

    async def save_message(self, message: StoredMessage) -> StoredMessage: ...


class InMemoryPersistenceStore:
    def __init__(self) -> None:
        self._conversations: dict[str, Conversation] = {}
        self._messages: dict[str, StoredMessage] = {}
        self._lock = asyncio.Lock()

    async def get_conversation(self, conversation_id: str) -> Conversation | None:
        return self._conversations.get(conversation_id)

    async def save_conversation(self, conversation: Conversation) -> Conversation:
        async with self._lock:
            stored = conversation.model_copy(update={"updated_at": _utcnow()})
            self._conversations[conversation.id] = stored
            return stored

    async def get_message(self, message_id: str) -> StoredMessage | None:
        return self._messages.get(message_id)

    async def save_message(self, message: StoredMessage) -> StoredMessage:
        async with self._lock:
            self._messages[message.id] = message
            return message

    async def list_messages(self, conversation_id: str) -> list[StoredMessage]:
        """Messages of one conversation, oldest first."""
        return sorted(
            (m for m in self._messages.values() if m.conversation_id == conversation_id),
            key=lambda m: m.created_at,
        )
