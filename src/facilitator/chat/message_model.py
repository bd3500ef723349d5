"""Chat message data models."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Literal, Optional


def _utcnow() -> datetime:
    """Return the current UTC time as a timezone-aware datetime."""

    return datetime.now(timezone.utc)


def new_message_id() -> str:
    return f"msg-{uuid.uuid4().hex[:12]}"


ChatRole = Literal["user", "assistant"]


@dataclass(slots=True, frozen=True)
class ToolCallRecord:
    """Tool call attached to a persisted assistant message."""

    name: str
    input: Dict[str, Any] = field(default_factory=dict)
    output: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"name": self.name, "input": dict(self.input)}
        if self.output is not None:
            payload["output"] = self.output
        return payload


@dataclass(slots=True, frozen=True)
class ChatMessage:
    """A message persisted in a user's facilitator conversation."""

    id: str
    user_id: str
    role: ChatRole
    content: str
    created_at: datetime = field(default_factory=_utcnow)
    tool_calls: tuple[ToolCallRecord, ...] | None = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        """Serialize the message for transport or persistence."""

        payload: Dict[str, Any] = {
            "id": self.id,
            "user_id": self.user_id,
            "role": self.role,
            "content": self.content,
            "created_at": self.created_at.isoformat(),
        }
        if self.tool_calls:
            payload["tool_calls"] = [call.to_dict() for call in self.tool_calls]
        if self.metadata:
            payload["metadata"] = dict(self.metadata)
        return payload
