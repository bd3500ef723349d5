"""Pairs tool results with the tool invocations that produced them.

Results are matched FIFO: each result is attached to the oldest invocation
that has no output yet. Tool-use ids are recorded but not used for
matching, so when an agent runs several tools concurrently and their
results come back out of order, outputs are attributed to the wrong
invocation. Callers that need exact attribution must not rely on this
class for overlapping tool calls.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Mapping, Sequence

__all__ = ["ToolInvocation", "ToolCallCorrelator", "normalize_tool_output", "DEFAULT_TOOL_OUTPUT"]

LOGGER = logging.getLogger(__name__)

DEFAULT_TOOL_OUTPUT = "completed"


@dataclass(slots=True)
class ToolInvocation:
    """A tool call requested by the agent and, once resolved, its output."""

    name: str
    input: dict[str, Any] = field(default_factory=dict)
    tool_use_id: str | None = None
    _output: str | None = field(default=None, init=False, repr=False)

    @property
    def output(self) -> str | None:
        return self._output

    @output.setter
    def output(self, value: str) -> None:
        if self._output is not None:
            raise ValueError(f"Output for tool '{self.name}' was already recorded")
        self._output = value

    @property
    def is_pending(self) -> bool:
        return self._output is None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"name": self.name, "input": dict(self.input)}
        if self._output is not None:
            payload["output"] = self._output
        return payload


def normalize_tool_output(raw_output: Any) -> str:
    """Reduce a tool result payload to a display string.

    Plain strings are returned unchanged. For a list of typed content parts
    the text of the first ``text`` part is used. Anything else becomes
    ``"completed"``.
    """

    if isinstance(raw_output, str):
        return raw_output
    if isinstance(raw_output, Sequence) and not isinstance(raw_output, (bytes, bytearray)):
        for part in raw_output:
            if isinstance(part, Mapping) and part.get("type") == "text":
                text = part.get("text")
                if isinstance(text, str):
                    return text
                break
    return DEFAULT_TOOL_OUTPUT


class ToolCallCorrelator:
    """Records tool invocations in arrival order and resolves results FIFO."""

    def __init__(self) -> None:
        self._invocations: list[ToolInvocation] = []

    def append(
        self,
        name: str,
        tool_input: Mapping[str, Any] | None = None,
        *,
        tool_use_id: str | None = None,
    ) -> ToolInvocation:
        invocation = ToolInvocation(name=name, input=dict(tool_input or {}), tool_use_id=tool_use_id)
        self._invocations.append(invocation)
        return invocation

    def resolve(self, raw_output: Any) -> ToolInvocation | None:
        """Attach ``raw_output`` to the oldest pending invocation.

        Returns:
            The invocation that received the output, or ``None`` when every
            recorded invocation already has one.
        """

        for invocation in self._invocations:
            if invocation.is_pending:
                invocation.output = normalize_tool_output(raw_output)
                return invocation
        LOGGER.debug("Received a tool result with no pending invocation; ignoring")
        return None

    @property
    def invocations(self) -> tuple[ToolInvocation, ...]:
        return tuple(self._invocations)

    @property
    def pending_count(self) -> int:
        return sum(1 for invocation in self._invocations if invocation.is_pending)

    def __len__(self) -> int:
        return len(self._invocations)
