"""Diagnostics captured for each conversational turn.

Two services live here: :class:`DiagnosticsRecorder`, a bounded ring buffer
of completed turn snapshots, and :class:`InFlightTracker`, which follows
requests while they are still running. Both are shared by concurrent turns
and guard their state with a lock.
"""

from __future__ import annotations

import itertools
import logging
import time
from collections import deque
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from threading import Lock
from types import MappingProxyType
from typing import Any, Mapping

__all__ = [
    "DEFAULT_DIAGNOSTICS_CAPACITY",
    "RawEventRecord",
    "SessionInfo",
    "DiagnosticEntry",
    "DiagnosticsRecorder",
    "RequestStatus",
    "InFlightRequest",
    "InFlightTracker",
]

LOGGER = logging.getLogger(__name__)

DEFAULT_DIAGNOSTICS_CAPACITY = 50


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _freeze(value: Any) -> Any:
    """Return a read-only copy of nested mappings and sequences."""

    if isinstance(value, Mapping):
        return MappingProxyType({key: _freeze(item) for key, item in value.items()})
    if isinstance(value, (list, tuple)):
        return tuple(_freeze(item) for item in value)
    return value


def _thaw(value: Any) -> Any:
    if isinstance(value, Mapping):
        return {key: _thaw(item) for key, item in value.items()}
    if isinstance(value, tuple):
        return [_thaw(item) for item in value]
    return value


@dataclass(slots=True, frozen=True)
class RawEventRecord:
    """A stream event as it arrived, kept for post-mortem inspection."""

    timestamp: float
    type: str
    subtype: str | None
    data: Any

    def to_dict(self) -> dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "type": self.type,
            "subtype": self.subtype,
            "data": repr(self.data),
        }


@dataclass(slots=True, frozen=True)
class SessionInfo:
    """Agent session metadata announced at init."""

    session_id: str | None = None
    tools: tuple[str, ...] = ()
    mcp_servers: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "tools": list(self.tools),
            "mcp_servers": list(self.mcp_servers),
        }


@dataclass(slots=True, frozen=True)
class DiagnosticEntry:
    """Immutable snapshot describing one finished turn.

    Attributes:
        timestamp: When the turn finished.
        turn_id: Identifier shared with the persisted assistant message.
        user_message_preview: First 200 characters of the user message.
        iteration_count: Number of tool invocations plus one.
        tool_invocations: ``{name, input, output?}`` mappings in call order.
        response_length: Length of the visible transcript.
        duration_ms: Wall-clock time of the turn.
        system_prompt: Prompt the agent was configured with.
        model: Model reported by the agent, or the configured default.
        error: Failure message, when the turn failed.
        aborted: Whether the turn was cancelled mid-stream.
        token_usage: Recorded only when a counter is positive.
        raw_events: Events received during the turn, when any.
        session_info: Agent session metadata, when announced.
        cost_usd: Recorded only when positive.

    Mapping fields are stored as read-only copies, so entries returned by
    :meth:`DiagnosticsRecorder.snapshot` cannot alter the recorded history.
    """

    timestamp: datetime
    turn_id: str
    user_message_preview: str
    iteration_count: int
    tool_invocations: tuple[Mapping[str, Any], ...]
    response_length: int
    duration_ms: float
    system_prompt: str
    model: str
    error: str | None = None
    aborted: bool = False
    token_usage: Mapping[str, int] | None = None
    raw_events: tuple[RawEventRecord, ...] | None = None
    session_info: SessionInfo | None = None
    cost_usd: float | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "tool_invocations", _freeze(tuple(self.tool_invocations)))
        if self.token_usage is not None:
            object.__setattr__(self, "token_usage", _freeze(self.token_usage))

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "timestamp": self.timestamp.isoformat(),
            "turn_id": self.turn_id,
            "user_message": self.user_message_preview,
            "iterations": self.iteration_count,
            "tool_calls": _thaw(self.tool_invocations),
            "response_length": self.response_length,
            "duration_ms": self.duration_ms,
            "system_prompt": self.system_prompt,
            "model": self.model,
            "aborted": self.aborted,
        }
        if self.error is not None:
            payload["error"] = self.error
        if self.token_usage is not None:
            payload["token_usage"] = _thaw(self.token_usage)
        if self.raw_events:
            payload["raw_events"] = [event.to_dict() for event in self.raw_events]
        if self.session_info is not None:
            payload["session_info"] = self.session_info.to_dict()
        if self.cost_usd is not None:
            payload["total_cost_usd"] = self.cost_usd
        return payload


class DiagnosticsRecorder:
    """Fixed-capacity ring buffer of :class:`DiagnosticEntry` snapshots."""

    def __init__(self, capacity: int = DEFAULT_DIAGNOSTICS_CAPACITY) -> None:
        if capacity < 1:
            raise ValueError("capacity must be positive")
        self._capacity = capacity
        self._buffer: deque[DiagnosticEntry] = deque(maxlen=capacity)
        self._lock = Lock()

    @property
    def capacity(self) -> int:
        return self._capacity

    def append(self, entry: DiagnosticEntry) -> None:
        with self._lock:
            self._buffer.append(entry)

    def snapshot(self) -> tuple[DiagnosticEntry, ...]:
        """Return the recorded entries, oldest first."""

        with self._lock:
            return tuple(self._buffer)

    def clear(self) -> None:
        with self._lock:
            self._buffer.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._buffer)


# ---------------------------------------------------------------------------
# In-flight request tracking
# ---------------------------------------------------------------------------


class RequestStatus(str, Enum):
    PENDING = "pending"
    STREAMING = "streaming"
    COMPLETED = "completed"
    FAILED = "failed"
    ABORTED = "aborted"


_TERMINAL_STATUSES = frozenset({RequestStatus.COMPLETED, RequestStatus.FAILED, RequestStatus.ABORTED})


@dataclass(slots=True, frozen=True)
class InFlightRequest:
    """A request that has been started and possibly finished."""

    request_id: str
    kind: str
    user_id: str
    preview: str
    started_at: datetime = field(default_factory=_utcnow)
    status: RequestStatus = RequestStatus.PENDING
    finished_at: datetime | None = None
    error: str | None = None

    @property
    def is_finished(self) -> bool:
        return self.status in _TERMINAL_STATUSES


class InFlightTracker:
    """Tracks running requests and keeps a short history of finished ones."""

    ABORTED_MESSAGE = "Aborted"

    def __init__(self, *, history_limit: int = 20) -> None:
        self._active: dict[str, InFlightRequest] = {}
        self._finished: deque[InFlightRequest] = deque(maxlen=max(1, history_limit))
        self._lock = Lock()
        self._counter = itertools.count(1)

    def start(self, kind: str, user_id: str, preview: str) -> str:
        with self._lock:
            request_id = f"{kind}-{int(time.time() * 1000)}-{next(self._counter)}"
            self._active[request_id] = InFlightRequest(
                request_id=request_id,
                kind=kind,
                user_id=user_id,
                preview=preview[:100],
            )
        LOGGER.debug("Started %s request %s for user %s", kind, request_id, user_id)
        return request_id

    def update(self, request_id: str, *, status: RequestStatus) -> None:
        with self._lock:
            record = self._active.get(request_id)
            if record is None:
                LOGGER.debug("Ignoring update for unknown request %s", request_id)
                return
            self._active[request_id] = replace(record, status=status)

    def complete(self, request_id: str, error: str | None = None) -> InFlightRequest | None:
        """Mark a request finished.

        Args:
            request_id: Identifier returned by :meth:`start`.
            error: Failure message, or ``"Aborted"`` for cancelled requests.
        """

        if error is None:
            status = RequestStatus.COMPLETED
        elif error == self.ABORTED_MESSAGE:
            status = RequestStatus.ABORTED
        else:
            status = RequestStatus.FAILED
        with self._lock:
            record = self._active.pop(request_id, None)
            if record is None:
                return None
            finished = replace(record, status=status, finished_at=_utcnow(), error=error)
            self._finished.append(finished)
        return finished

    def active(self) -> tuple[InFlightRequest, ...]:
        with self._lock:
            return tuple(self._active.values())

    def recent(self) -> tuple[InFlightRequest, ...]:
        with self._lock:
            return tuple(self._finished)
