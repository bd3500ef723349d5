"""Core types for a single conversational turn.

A turn starts from a :class:`TurnRequest`, is tracked by a mutable
:class:`TurnState` while the orchestrator consumes agent events, and
reports progress through the optional hooks on :class:`StreamCallbacks`.
"""

from __future__ import annotations

import inspect
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Mapping, Sequence

from ...chat.message_model import ChatMessage
from ..errors import InvalidTurnTransition, TurnCancelled
from ..events import StreamEvent, SystemInit
from .directive_parser import DirectiveBlock

__all__ = [
    "NavigationContext",
    "CancellationToken",
    "TurnRequest",
    "ConversationTurn",
    "TurnStatus",
    "TurnState",
    "StreamCallbacks",
    "invoke_callback",
]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_turn_id() -> str:
    return f"msg-{uuid.uuid4().hex[:12]}"


# -----------------------------------------------------------------------------
# Request types
# -----------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class NavigationContext:
    """Where the user is in the application when they send a message.

    Each named location is only described to the agent when both its
    display name and its identifier are known.
    """

    current_page: str | None = None
    workspace_id: str | None = None
    workspace_name: str | None = None
    document_id: str | None = None
    document_title: str | None = None
    chat_room_id: str | None = None
    chat_room_name: str | None = None
    active_thing_id: str | None = None
    active_thing_name: str | None = None

    @classmethod
    def from_mapping(cls, payload: Mapping[str, Any] | None) -> "NavigationContext":
        """Build a context from a camelCase or snake_case mapping."""

        payload = payload or {}
        aliases = {
            "currentPage": "current_page",
            "workspaceId": "workspace_id",
            "workspaceName": "workspace_name",
            "documentId": "document_id",
            "documentTitle": "document_title",
            "chatRoomId": "chat_room_id",
            "chatRoomName": "chat_room_name",
            "activeThingId": "active_thing_id",
            "activeThingName": "active_thing_name",
        }
        values: dict[str, str] = {}
        for key, value in payload.items():
            name = aliases.get(key, key)
            if name in cls.__dataclass_fields__ and value is not None:
                values[name] = str(value)
        return cls(**values)

    def describe(self) -> list[str]:
        """Return one human-readable line per known location."""

        parts: list[str] = []
        if self.current_page:
            parts.append(f"Current page: {self.current_page}")
        if self.workspace_name and self.workspace_id:
            parts.append(f'Current workspace: "{self.workspace_name}" (ID: {self.workspace_id})')
        if self.document_title and self.document_id:
            parts.append(f'Current document: "{self.document_title}" (ID: {self.document_id})')
        if self.chat_room_name and self.chat_room_id:
            parts.append(f'Current chat room: "{self.chat_room_name}" (ID: {self.chat_room_id})')
        if self.active_thing_name and self.active_thing_id:
            parts.append(f'Active Thing: "{self.active_thing_name}" (ID: {self.active_thing_id})')
        return parts


class CancellationToken:
    """Cooperative cancellation flag shared between a caller and a running turn."""

    __slots__ = ("_cancelled", "_reason")

    def __init__(self) -> None:
        self._cancelled = False
        self._reason: str | None = None

    def cancel(self, reason: str | None = None) -> None:
        if not self._cancelled:
            self._cancelled = True
            self._reason = reason

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def reason(self) -> str | None:
        return self._reason

    def raise_if_cancelled(self) -> None:
        if self._cancelled:
            raise TurnCancelled(reason=self._reason)


@dataclass(slots=True, frozen=True)
class TurnRequest:
    """Inbound request to process one user message."""

    user_id: str
    user_name: str
    content: str
    navigation: NavigationContext = field(default_factory=NavigationContext)
    display_name: str | None = None
    cancellation: CancellationToken | None = None


@dataclass(slots=True, frozen=True)
class ConversationTurn:
    """A request bound to the identifier of the assistant reply it produces."""

    turn_id: str
    user_id: str
    user_name: str
    content: str
    navigation: NavigationContext
    cancellation: CancellationToken
    display_name: str | None = None

    @classmethod
    def from_request(cls, request: TurnRequest, *, turn_id: str | None = None) -> "ConversationTurn":
        return cls(
            turn_id=turn_id or new_turn_id(),
            user_id=request.user_id,
            user_name=request.user_name,
            content=request.content,
            navigation=request.navigation,
            cancellation=request.cancellation or CancellationToken(),
            display_name=request.display_name,
        )


# -----------------------------------------------------------------------------
# Turn state
# -----------------------------------------------------------------------------


class TurnStatus(Enum):
    """Lifecycle of a turn.

    Values:
        IDLE: Created, nothing sent yet.
        SENT: Prompt submitted to the agent.
        STREAMING: At least one event received.
        COMPLETED: Finished normally, including soft completions.
        ERRORED: Finished with a failure reported to the caller.
        ABORTED: Cancelled by the caller.
    """

    IDLE = "idle"
    SENT = "sent"
    STREAMING = "streaming"
    COMPLETED = "completed"
    ERRORED = "errored"
    ABORTED = "aborted"


_TERMINAL = frozenset({TurnStatus.COMPLETED, TurnStatus.ERRORED, TurnStatus.ABORTED})


@dataclass(slots=True)
class TurnState:
    """Mutable record of a turn as it progresses.

    Attributes:
        turn_id: Identifier shared by the streamed chunks and persisted reply.
        status: Current lifecycle status.
        transcript: Visible text delivered so far.
        directives: Open questions emitted during the turn, if any.
        tool_calls: ``{name, input, output?}`` mappings in call order.
        message: Persisted assistant message on completion.
        error: Failure message when the turn errored.
        soft_limit: Whether the agent stopped at its action limit.
        events_seen: Number of agent events consumed.
    """

    turn_id: str
    status: TurnStatus = TurnStatus.IDLE
    transcript: str = ""
    directives: tuple[DirectiveBlock, ...] | None = None
    tool_calls: tuple[Mapping[str, Any], ...] = ()
    message: ChatMessage | None = None
    error: str | None = None
    abort_reason: str | None = None
    soft_limit: bool = False
    events_seen: int = 0
    started_at: datetime = field(default_factory=_utcnow)
    finished_at: datetime | None = None

    @property
    def is_finished(self) -> bool:
        return self.status in _TERMINAL

    def mark_sent(self) -> None:
        self._transition(TurnStatus.SENT, allowed=(TurnStatus.IDLE,))

    def mark_streaming(self) -> None:
        if self.status is TurnStatus.STREAMING:
            return
        self._transition(TurnStatus.STREAMING, allowed=(TurnStatus.SENT,))

    def mark_completed(self, message: ChatMessage | None) -> None:
        self._finish(TurnStatus.COMPLETED)
        self.message = message

    def mark_errored(self, error: str) -> None:
        self._finish(TurnStatus.ERRORED)
        self.error = error

    def mark_aborted(self, reason: str | None = None) -> None:
        self._finish(TurnStatus.ABORTED)
        self.abort_reason = reason

    def _finish(self, status: TurnStatus) -> None:
        if self.is_finished:
            raise InvalidTurnTransition(
                message=f"Turn {self.turn_id} is already {self.status.value}",
                details={"requested": status.value},
            )
        self.status = status
        self.finished_at = _utcnow()

    def _transition(self, status: TurnStatus, *, allowed: Sequence[TurnStatus]) -> None:
        if self.status not in allowed:
            raise InvalidTurnTransition(
                message=f"Cannot move turn {self.turn_id} from {self.status.value} to {status.value}",
            )
        self.status = status


# -----------------------------------------------------------------------------
# Callbacks
# -----------------------------------------------------------------------------


@dataclass(slots=True)
class StreamCallbacks:
    """Optional hooks fired in event-arrival order during a turn.

    Hooks may be plain functions or coroutine functions. ``on_complete`` and
    ``on_error`` are terminal: at most one of them fires per turn, and
    neither fires for an aborted turn.
    """

    on_system_init: Callable[[SystemInit], Any] | None = None
    on_text_chunk: Callable[[str, str], Any] | None = None
    on_thinking: Callable[[str, str], Any] | None = None
    on_tool_use: Callable[[str, Mapping[str, Any], str], Any] | None = None
    on_tool_result: Callable[[str, str, str], Any] | None = None
    on_open_questions: Callable[[Sequence[DirectiveBlock]], Any] | None = None
    on_complete: Callable[[ChatMessage], Any] | None = None
    on_error: Callable[[str], Any] | None = None
    on_raw_event: Callable[[StreamEvent], Any] | None = None


async def invoke_callback(callback: Callable[..., Any] | None, *args: Any) -> None:
    """Call ``callback`` with ``args`` and await the result when needed."""

    if callback is None:
        return
    result = callback(*args)
    if inspect.isawaitable(result):
        await result
