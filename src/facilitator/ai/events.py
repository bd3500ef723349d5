"""Typed stream events emitted by the generative agent.

The agent produces a closed set of event kinds. Each kind is a frozen
dataclass and :data:`StreamEvent` is their union, so consumers can use
``match`` with one case per kind.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Literal, Mapping, Sequence, Union

LOGGER = logging.getLogger(__name__)

PartialKind = Literal["thinking", "text"]
BlockKind = Literal["text", "thinking", "tool_use"]
ResultSubtype = Literal["success", "error_during_execution", "error_max_turns"]

_RESULT_SUBTYPES: frozenset[str] = frozenset(
    {"success", "error_during_execution", "error_max_turns"}
)


@dataclass(slots=True, frozen=True)
class TokenUsage:
    """Token counters reported by the agent."""

    input_tokens: int = 0
    output_tokens: int = 0

    @property
    def is_empty(self) -> bool:
        return self.input_tokens <= 0 and self.output_tokens <= 0

    def to_dict(self) -> dict[str, int]:
        return {"input_tokens": self.input_tokens, "output_tokens": self.output_tokens}


@dataclass(slots=True, frozen=True)
class McpServerInfo:
    """A tool server the agent connected to during session start."""

    name: str
    status: str | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"name": self.name}
        if self.status is not None:
            payload["status"] = self.status
        return payload


@dataclass(slots=True, frozen=True)
class SystemInit:
    """Session metadata announced before any content."""

    model: str
    tools: tuple[str, ...] = ()
    mcp_servers: tuple[McpServerInfo, ...] = ()
    session_id: str | None = None


@dataclass(slots=True, frozen=True)
class PartialDelta:
    """Incremental fragment of thinking or visible text."""

    kind: PartialKind
    payload: str


@dataclass(slots=True, frozen=True)
class AssistantBlock:
    """A complete content block from an assistant message."""

    kind: BlockKind
    text: str = ""
    tool_name: str | None = None
    tool_input: Mapping[str, Any] | None = None
    tool_use_id: str | None = None
    usage: TokenUsage | None = None


@dataclass(slots=True, frozen=True)
class UserBlock:
    """A tool result relayed back to the agent on the user's behalf."""

    tool_result: Any = None
    tool_use_id: str | None = None


@dataclass(slots=True, frozen=True)
class Result:
    """Terminal event summarising the agent run."""

    subtype: ResultSubtype
    usage: TokenUsage | None = None
    cost_usd: float | None = None
    text: str | None = None
    errors: tuple[str, ...] = field(default=())


StreamEvent = Union[SystemInit, PartialDelta, AssistantBlock, UserBlock, Result]


def event_kind(event: StreamEvent) -> tuple[str, str | None]:
    """Return a ``(type, subtype)`` label for diagnostics."""

    match event:
        case SystemInit():
            return "system", "init"
        case PartialDelta(kind=kind):
            return "stream_event", kind
        case AssistantBlock(kind=kind):
            return "assistant", kind
        case UserBlock():
            return "user", "tool_result"
        case Result(subtype=subtype):
            return "result", subtype
    raise TypeError(f"Unsupported stream event: {event!r}")  # pragma: no cover


# ---------------------------------------------------------------------------
# Decoding of agent SDK messages
# ---------------------------------------------------------------------------


def decode_sdk_message(message: Mapping[str, Any]) -> list[StreamEvent]:
    """Translate one agent SDK message into zero or more stream events.

    Args:
        message: A decoded JSON object as written by the agent SDK
            (``system``, ``stream_event``, ``assistant``, ``user`` or ``result``).

    Returns:
        The events carried by the message, in content order. Unknown message
        types, unknown delta types and empty deltas yield an empty list.
    """

    message_type = message.get("type")
    if message_type == "system":
        return _decode_system(message)
    if message_type == "stream_event":
        return _decode_stream_event(message.get("event"))
    if message_type == "assistant":
        return _decode_assistant(message.get("message"))
    if message_type == "user":
        return _decode_user(message.get("message"))
    if message_type == "result":
        return _decode_result(message)
    LOGGER.debug("Ignoring agent message of type %r", message_type)
    return []


def _decode_system(message: Mapping[str, Any]) -> list[StreamEvent]:
    if message.get("subtype") != "init":
        return []
    tools = tuple(_coerce_name(item) for item in _as_sequence(message.get("tools")))
    servers = tuple(_coerce_server(item) for item in _as_sequence(message.get("mcp_servers")))
    return [
        SystemInit(
            model=str(message.get("model") or ""),
            tools=tuple(name for name in tools if name),
            mcp_servers=tuple(server for server in servers if server.name),
            session_id=message.get("session_id"),
        )
    ]


def _decode_stream_event(event: Any) -> list[StreamEvent]:
    if not isinstance(event, Mapping) or event.get("type") != "content_block_delta":
        return []
    delta = event.get("delta")
    if not isinstance(delta, Mapping):
        return []
    delta_type = delta.get("type")
    if delta_type == "thinking_delta" and delta.get("thinking"):
        return [PartialDelta(kind="thinking", payload=str(delta["thinking"]))]
    if delta_type == "text_delta" and delta.get("text"):
        return [PartialDelta(kind="text", payload=str(delta["text"]))]
    return []


def _decode_assistant(payload: Any) -> list[StreamEvent]:
    if not isinstance(payload, Mapping):
        return []
    usage = _coerce_usage(payload.get("usage"))
    content = payload.get("content")
    if isinstance(content, str):
        return [AssistantBlock(kind="text", text=content, usage=usage)]
    events: list[StreamEvent] = []
    for block in _as_sequence(content):
        if not isinstance(block, Mapping):
            continue
        block_type = block.get("type")
        if block_type == "text":
            events.append(AssistantBlock(kind="text", text=str(block.get("text") or ""), usage=usage))
        elif block_type == "thinking":
            events.append(
                AssistantBlock(kind="thinking", text=str(block.get("thinking") or ""), usage=usage)
            )
        elif block_type == "tool_use":
            tool_input = block.get("input")
            events.append(
                AssistantBlock(
                    kind="tool_use",
                    tool_name=str(block.get("name") or ""),
                    tool_input=dict(tool_input) if isinstance(tool_input, Mapping) else {},
                    tool_use_id=block.get("id"),
                    usage=usage,
                )
            )
    if not events and usage is not None:
        # Usage-only assistant messages still carry token estimates.
        events.append(AssistantBlock(kind="text", text="", usage=usage))
    return events


def _decode_user(payload: Any) -> list[StreamEvent]:
    if not isinstance(payload, Mapping):
        return []
    events: list[StreamEvent] = []
    for block in _as_sequence(payload.get("content")):
        if isinstance(block, Mapping) and block.get("type") == "tool_result":
            events.append(
                UserBlock(tool_result=block.get("content"), tool_use_id=block.get("tool_use_id"))
            )
    return events


def _decode_result(message: Mapping[str, Any]) -> list[StreamEvent]:
    subtype = message.get("subtype")
    if subtype not in _RESULT_SUBTYPES:
        LOGGER.warning("Unknown result subtype %r; treating as execution error", subtype)
        subtype = "error_during_execution"
    cost = message.get("total_cost_usd")
    text = message.get("result")
    return [
        Result(
            subtype=subtype,
            usage=_coerce_usage(message.get("usage")),
            cost_usd=float(cost) if isinstance(cost, (int, float)) else None,
            text=text if isinstance(text, str) else None,
            errors=tuple(str(item) for item in _as_sequence(message.get("errors"))),
        )
    ]


def _coerce_usage(payload: Any) -> TokenUsage | None:
    if not isinstance(payload, Mapping):
        return None
    return TokenUsage(
        input_tokens=int(payload.get("input_tokens") or 0),
        output_tokens=int(payload.get("output_tokens") or 0),
    )


def _coerce_name(item: Any) -> str:
    if isinstance(item, Mapping):
        return str(item.get("name") or "")
    return str(item or "")


def _coerce_server(item: Any) -> McpServerInfo:
    if isinstance(item, Mapping):
        status = item.get("status")
        return McpServerInfo(name=str(item.get("name") or ""), status=str(status) if status else None)
    return McpServerInfo(name=str(item or ""))


def _as_sequence(value: Any) -> Sequence[Any]:
    if isinstance(value, (list, tuple)):
        return value
    return ()


__all__ = [
    "TokenUsage",
    "McpServerInfo",
    "SystemInit",
    "PartialDelta",
    "AssistantBlock",
    "UserBlock",
    "Result",
    "StreamEvent",
    "event_kind",
    "decode_sdk_message",
]
