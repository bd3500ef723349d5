"""Chat message models and storage."""

from .message_model import ChatMessage, ChatRole, ToolCallRecord
from .store import ChatStore, InMemoryChatStore

__all__ = [
    "ChatMessage",
    "ChatRole",
    "ToolCallRecord",
    "ChatStore",
    "InMemoryChatStore",
]
