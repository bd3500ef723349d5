"""Shared test helpers and stub classes.

Import from here instead of duplicating these classes in individual test files.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Callable, Iterable, Sequence

from facilitator.ai.client import AgentOptions
from facilitator.ai.events import StreamEvent
from facilitator.ai.orchestration.directive_parser import DirectiveBlock
from facilitator.ai.orchestration.types import StreamCallbacks
from facilitator.chat.message_model import ChatMessage


class ScriptedAgent:
    """Agent stub replaying a fixed list of events for every submission.

    ``before_event`` is called with the index of each event before it is
    yielded, which lets tests cancel a turn at a precise point.
    """

    def __init__(
        self,
        events: Iterable[StreamEvent],
        *,
        before_event: Callable[[int], None] | None = None,
        error: Exception | None = None,
    ) -> None:
        self.events = list(events)
        self.before_event = before_event
        self.error = error
        self.calls: list[tuple[str, AgentOptions]] = []
        self.closed = 0

    async def submit(self, prompt: str, options: AgentOptions) -> AsyncIterator[StreamEvent]:
        self.calls.append((prompt, options))
        try:
            for index, event in enumerate(self.events):
                if self.before_event is not None:
                    self.before_event(index)
                yield event
            if self.error is not None:
                raise self.error
        finally:
            self.closed += 1


@dataclass
class RecordingCallbacks:
    """Collects every callback invocation in order."""

    chunks: list[tuple[str, str]] = field(default_factory=list)
    thinking: list[str] = field(default_factory=list)
    tool_uses: list[tuple[str, dict[str, Any]]] = field(default_factory=list)
    tool_results: list[tuple[str, str]] = field(default_factory=list)
    questions: list[Sequence[DirectiveBlock]] = field(default_factory=list)
    completed: list[ChatMessage] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    raw_events: list[StreamEvent] = field(default_factory=list)
    order: list[str] = field(default_factory=list)

    @property
    def text(self) -> str:
        return "".join(chunk for chunk, _turn_id in self.chunks)

    def build(self) -> StreamCallbacks:
        def on_text_chunk(text: str, turn_id: str) -> None:
            self.chunks.append((text, turn_id))
            self.order.append("text")

        def on_thinking(text: str, _turn_id: str) -> None:
            self.thinking.append(text)

        def on_tool_use(name: str, tool_input: Any, _turn_id: str) -> None:
            self.tool_uses.append((name, dict(tool_input)))
            self.order.append("tool_use")

        def on_tool_result(name: str, output: str, _turn_id: str) -> None:
            self.tool_results.append((name, output))
            self.order.append("tool_result")

        def on_open_questions(directives: Sequence[DirectiveBlock]) -> None:
            self.questions.append(directives)
            self.order.append("questions")

        async def on_complete(message: ChatMessage) -> None:
            self.completed.append(message)
            self.order.append("complete")

        async def on_error(message: str) -> None:
            self.errors.append(message)
            self.order.append("error")

        def on_raw_event(event: StreamEvent) -> None:
            self.raw_events.append(event)

        return StreamCallbacks(
            on_text_chunk=on_text_chunk,
            on_thinking=on_thinking,
            on_tool_use=on_tool_use,
            on_tool_result=on_tool_result,
            on_open_questions=on_open_questions,
            on_complete=on_complete,
            on_error=on_error,
            on_raw_event=on_raw_event,
        )
