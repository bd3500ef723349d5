"""Chat history storage used by the facilitator."""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from typing import Protocol, Sequence

from .message_model import ChatMessage, ChatRole, ToolCallRecord, new_message_id

__all__ = ["ChatStore", "InMemoryChatStore"]

LOGGER = logging.getLogger(__name__)


class ChatStore(Protocol):
    """Persistence boundary for per-user conversation history."""

    async def append(
        self,
        user_id: str,
        role: ChatRole,
        content: str,
        tool_calls: Sequence[ToolCallRecord] | None = None,
        message_id: str | None = None,
    ) -> ChatMessage:
        ...

    async def list_messages(self, user_id: str) -> list[ChatMessage]:
        ...

    async def clear(self, user_id: str) -> None:
        ...


class InMemoryChatStore:
    """Process-local :class:`ChatStore` implementation."""

    def __init__(self) -> None:
        self._messages: dict[str, list[ChatMessage]] = defaultdict(list)
        self._lock = asyncio.Lock()

    async def append(
        self,
        user_id: str,
        role: ChatRole,
        content: str,
        tool_calls: Sequence[ToolCallRecord] | None = None,
        message_id: str | None = None,
    ) -> ChatMessage:
        message = ChatMessage(
            id=message_id or new_message_id(),
            user_id=user_id,
            role=role,
            content=content,
            tool_calls=tuple(tool_calls) if tool_calls else None,
        )
        async with self._lock:
            self._messages[user_id].append(message)
        LOGGER.debug("Stored %s message %s for user %s", role, message.id, user_id)
        return message

    async def list_messages(self, user_id: str) -> list[ChatMessage]:
        async with self._lock:
            return list(self._messages.get(user_id, ()))

    async def clear(self, user_id: str) -> None:
        async with self._lock:
            self._messages.pop(user_id, None)
