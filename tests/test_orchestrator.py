"""Tests for the conversation orchestrator."""

from __future__ import annotations

import asyncio
import json

import pytest

from facilitator.ai.events import (
    AssistantBlock,
    PartialDelta,
    Result,
    SystemInit,
    TokenUsage,
    UserBlock,
)
from facilitator.ai.orchestration.orchestrator import (
    EMPTY_RESPONSE_FALLBACK,
    MAX_TURNS_NOTICE,
    ConversationOrchestrator,
    OrchestratorConfig,
)
from facilitator.ai.orchestration.types import (
    CancellationToken,
    NavigationContext,
    StreamCallbacks,
    TurnRequest,
    TurnStatus,
)
from facilitator.chat.store import InMemoryChatStore
from facilitator.services.diagnostics import DiagnosticsRecorder, InFlightTracker, RequestStatus
from tests.helpers import RecordingCallbacks, ScriptedAgent

_QUESTIONS = json.dumps(
    [
        {
            "id": "scope",
            "question": "Which workspace should I use?",
            "options": [{"id": "w1", "label": "Research"}, {"id": "w2", "label": "Planning"}],
        }
    ]
)


@pytest.fixture
def make_orchestrator(persona_provider, chat_store, diagnostics, tracker):
    def _make(agent: ScriptedAgent, **config: object) -> ConversationOrchestrator:
        return ConversationOrchestrator(
            agent,
            chat_store,
            persona_provider,
            diagnostics=diagnostics,
            tracker=tracker,
            config=OrchestratorConfig(model="test-model", **config),  # type: ignore[arg-type]
        )

    return _make


def _request(content: str = "Hello", **overrides: object) -> TurnRequest:
    payload: dict[str, object] = {"user_id": "user-1", "user_name": "Ada", "content": content}
    payload.update(overrides)
    return TurnRequest(**payload)  # type: ignore[arg-type]


@pytest.mark.asyncio
async def test_simple_turn_streams_once_and_persists_reply(
    make_orchestrator, chat_store: InMemoryChatStore, diagnostics: DiagnosticsRecorder, tracker: InFlightTracker
) -> None:
    agent = ScriptedAgent(
        [
            SystemInit(model="agent-model", tools=("search_documents",), session_id="s-1"),
            PartialDelta(kind="text", payload="Hi there!"),
            AssistantBlock(kind="text", text="Hi there!"),
            Result(subtype="success", text="Hi there!", usage=TokenUsage(12, 4), cost_usd=0.003),
        ]
    )
    recorder = RecordingCallbacks()

    state = await make_orchestrator(agent).process_message(_request(), recorder.build())

    assert state.status is TurnStatus.COMPLETED
    assert recorder.chunks == [("Hi there!", state.turn_id)]
    assert recorder.errors == []
    assert len(recorder.completed) == 1

    history = await chat_store.list_messages("user-1")
    assert [(message.role, message.content) for message in history] == [
        ("user", "Hello"),
        ("assistant", "Hi there!"),
    ]
    assert history[1].id == state.turn_id
    assert history[1].tool_calls is None
    assert state.message == history[1]

    (entry,) = diagnostics.snapshot()
    assert entry.turn_id == state.turn_id
    assert entry.model == "agent-model"
    assert entry.iteration_count == 1
    assert entry.response_length == len("Hi there!")
    assert entry.token_usage == {"input_tokens": 12, "output_tokens": 4}
    assert entry.cost_usd == 0.003
    assert entry.session_info is not None and entry.session_info.tools == ("search_documents",)
    assert entry.raw_events is not None and len(entry.raw_events) == 4
    assert entry.error is None and entry.aborted is False

    assert tracker.active() == ()
    assert tracker.recent()[-1].status is RequestStatus.COMPLETED
    assert agent.closed == 1


@pytest.mark.asyncio
async def test_first_turn_prompt_is_the_message_alone(make_orchestrator) -> None:
    agent = ScriptedAgent([Result(subtype="success", text="ok")])

    await make_orchestrator(agent).process_message(_request("What is on my plate?"))

    prompt, options = agent.calls[0]
    assert prompt == "What is on my plate?"
    assert options.model == "test-model"
    assert options.include_partial_messages is True
    assert "You are talking with Ada." in (options.system_prompt or "")


@pytest.mark.asyncio
async def test_history_precedes_new_message(make_orchestrator, chat_store: InMemoryChatStore) -> None:
    await chat_store.append("user-1", "user", "First question")
    await chat_store.append("user-1", "assistant", "First answer")
    agent = ScriptedAgent([Result(subtype="success", text="ok")])

    await make_orchestrator(agent).process_message(_request("Follow up"))

    prompt, _options = agent.calls[0]
    assert prompt == "User: First question\n\nAssistant: First answer\n\nUser: Follow up"


@pytest.mark.asyncio
async def test_history_window_limits_prior_messages(make_orchestrator, chat_store: InMemoryChatStore) -> None:
    for index in range(4):
        await chat_store.append("user-1", "user", f"m{index}")
    agent = ScriptedAgent([Result(subtype="success", text="ok")])

    await make_orchestrator(agent, history_window=2).process_message(_request("now"))

    prompt, _options = agent.calls[0]
    assert prompt == "User: m2\n\nUser: m3\n\nUser: now"


@pytest.mark.asyncio
async def test_navigation_and_display_name_shape_system_prompt(make_orchestrator) -> None:
    agent = ScriptedAgent([Result(subtype="success", text="ok")])
    request = _request(
        navigation=NavigationContext(workspace_id="ws-1", workspace_name="Research", document_title="Draft"),
        display_name="Nova",
    )

    await make_orchestrator(agent).process_message(request)

    system_prompt = agent.calls[0][1].system_prompt or ""
    assert system_prompt.startswith('Your name is "Nova". Always refer to yourself as "Nova".')
    assert 'Current workspace: "Research" (ID: ws-1)' in system_prompt
    # A document title without an id is not described.
    assert "Draft" not in system_prompt


@pytest.mark.asyncio
async def test_open_questions_are_emitted_before_remaining_text(
    make_orchestrator, chat_store: InMemoryChatStore
) -> None:
    agent = ScriptedAgent(
        [
            PartialDelta(kind="text", payload="I can help. "),
            PartialDelta(kind="text", payload="<open_questions>"),
            PartialDelta(kind="text", payload=_QUESTIONS[:20]),
            PartialDelta(kind="text", payload=_QUESTIONS[20:] + "</open_questions>"),
            PartialDelta(kind="text", payload=" Thanks!"),
            Result(subtype="success"),
        ]
    )
    recorder = RecordingCallbacks()

    state = await make_orchestrator(agent).process_message(_request(), recorder.build())

    assert recorder.text == "I can help.  Thanks!"
    assert len(recorder.questions) == 1
    assert recorder.questions[0][0].id == "scope"
    assert recorder.order == ["text", "questions", "text", "complete"]
    assert state.directives is not None
    history = await chat_store.list_messages("user-1")
    assert "<open_questions>" not in history[-1].content


@pytest.mark.asyncio
async def test_whole_block_after_streaming_is_not_repeated(make_orchestrator) -> None:
    agent = ScriptedAgent(
        [
            PartialDelta(kind="text", payload="Hello there!\n"),
            AssistantBlock(kind="text", text="Hello there!"),
            Result(subtype="success", text="Hello there!"),
        ]
    )
    recorder = RecordingCallbacks()

    state = await make_orchestrator(agent).process_message(_request(), recorder.build())

    assert recorder.text == "Hello there!\n"
    assert state.transcript == "Hello there!\n"


@pytest.mark.asyncio
async def test_result_text_used_when_nothing_was_streamed(make_orchestrator) -> None:
    agent = ScriptedAgent(
        [Result(subtype="success", text=f"Final answer.\n<open_questions>{_QUESTIONS}</open_questions>\n")]
    )
    recorder = RecordingCallbacks()

    state = await make_orchestrator(agent).process_message(_request(), recorder.build())

    assert recorder.text == "Final answer."
    assert len(recorder.questions) == 1
    assert state.message is not None and state.message.content == "Final answer."


@pytest.mark.asyncio
async def test_empty_reply_persists_fallback(make_orchestrator, diagnostics: DiagnosticsRecorder) -> None:
    agent = ScriptedAgent([Result(subtype="success")])
    recorder = RecordingCallbacks()

    state = await make_orchestrator(agent).process_message(_request(), recorder.build())

    assert state.status is TurnStatus.COMPLETED
    assert recorder.chunks == []
    assert state.message is not None and state.message.content == EMPTY_RESPONSE_FALLBACK
    assert diagnostics.snapshot()[0].response_length == 0


@pytest.mark.asyncio
async def test_max_turns_completes_with_notice(make_orchestrator, diagnostics: DiagnosticsRecorder) -> None:
    agent = ScriptedAgent(
        [
            PartialDelta(kind="text", payload="Working on it."),
            Result(subtype="error_max_turns"),
        ]
    )
    recorder = RecordingCallbacks()

    state = await make_orchestrator(agent).process_message(_request(), recorder.build())

    assert state.status is TurnStatus.COMPLETED
    assert state.soft_limit is True
    assert recorder.chunks[-1][0] == MAX_TURNS_NOTICE
    assert state.message is not None and state.message.content == "Working on it." + MAX_TURNS_NOTICE
    assert recorder.errors == []
    assert diagnostics.snapshot()[0].error is None


@pytest.mark.asyncio
async def test_provider_error_reports_failure(
    make_orchestrator, chat_store: InMemoryChatStore, diagnostics: DiagnosticsRecorder, tracker: InFlightTracker
) -> None:
    agent = ScriptedAgent(
        [
            PartialDelta(kind="text", payload="Let me"),
            Result(subtype="error_during_execution", errors=("rate limited", "retry later")),
            PartialDelta(kind="text", payload=" never seen"),
        ]
    )
    recorder = RecordingCallbacks()

    state = await make_orchestrator(agent).process_message(_request(), recorder.build())

    expected = "An error occurred during processing: rate limited, retry later"
    assert state.status is TurnStatus.ERRORED
    assert state.error == expected
    assert recorder.errors == [expected]
    assert recorder.completed == []
    assert recorder.text == "Let me"
    assert [message.role for message in await chat_store.list_messages("user-1")] == ["user"]
    assert diagnostics.snapshot()[0].error == expected
    assert tracker.recent()[-1].status is RequestStatus.FAILED
    assert agent.closed == 1


@pytest.mark.asyncio
async def test_provider_error_without_details(make_orchestrator) -> None:
    agent = ScriptedAgent([Result(subtype="error_during_execution")])

    state = await make_orchestrator(agent).process_message(_request())

    assert state.error == "An error occurred during processing: Unknown error"


@pytest.mark.asyncio
async def test_unexpected_exception_is_reported_through_on_error(
    make_orchestrator, diagnostics: DiagnosticsRecorder
) -> None:
    agent = ScriptedAgent([PartialDelta(kind="text", payload="partial")], error=RuntimeError("socket closed"))
    recorder = RecordingCallbacks()

    state = await make_orchestrator(agent).process_message(_request(), recorder.build())

    assert state.status is TurnStatus.ERRORED
    assert recorder.errors == ["socket closed"]
    assert diagnostics.snapshot()[0].error == "socket closed"


@pytest.mark.asyncio
async def test_cancel_before_submit_aborts_without_diagnostics(
    make_orchestrator, diagnostics: DiagnosticsRecorder, tracker: InFlightTracker
) -> None:
    token = CancellationToken()
    token.cancel("user left")
    agent = ScriptedAgent([Result(subtype="success", text="unused")])
    recorder = RecordingCallbacks()

    state = await make_orchestrator(agent).process_message(_request(cancellation=token), recorder.build())

    assert state.status is TurnStatus.ABORTED
    assert state.abort_reason == "user left"
    assert agent.calls == []
    assert recorder.completed == [] and recorder.errors == []
    assert diagnostics.snapshot() == ()
    assert tracker.recent()[-1].status is RequestStatus.ABORTED


@pytest.mark.asyncio
async def test_cancel_mid_stream_records_aborted_entry(
    make_orchestrator, chat_store: InMemoryChatStore, diagnostics: DiagnosticsRecorder
) -> None:
    token = CancellationToken()

    def cancel_at_second_event(index: int) -> None:
        if index == 1:
            token.cancel()

    agent = ScriptedAgent(
        [
            PartialDelta(kind="text", payload="Starting"),
            PartialDelta(kind="text", payload=" more"),
            Result(subtype="success"),
        ],
        before_event=cancel_at_second_event,
    )
    recorder = RecordingCallbacks()

    state = await make_orchestrator(agent).process_message(_request(cancellation=token), recorder.build())

    assert state.status is TurnStatus.ABORTED
    assert recorder.text == "Starting"
    assert recorder.completed == [] and recorder.errors == []
    (entry,) = diagnostics.snapshot()
    assert entry.aborted is True
    assert entry.raw_events is not None and len(entry.raw_events) == 1
    assert [message.role for message in await chat_store.list_messages("user-1")] == ["user"]
    assert agent.closed == 1


@pytest.mark.asyncio
async def test_task_cancellation_aborts_and_propagates(make_orchestrator, tracker: InFlightTracker) -> None:
    def interrupt(index: int) -> None:
        if index == 1:
            raise asyncio.CancelledError()

    agent = ScriptedAgent(
        [PartialDelta(kind="text", payload="a"), PartialDelta(kind="text", payload="b")],
        before_event=interrupt,
    )

    with pytest.raises(asyncio.CancelledError):
        await make_orchestrator(agent).process_message(_request())

    assert tracker.recent()[-1].status is RequestStatus.ABORTED


@pytest.mark.asyncio
async def test_cancellation_during_completion_callback_stays_a_cancellation(
    make_orchestrator, tracker: InFlightTracker
) -> None:
    entered = asyncio.Event()

    async def on_complete(_message: object) -> None:
        entered.set()
        await asyncio.sleep(10)

    agent = ScriptedAgent([PartialDelta(kind="text", payload="Done."), Result(subtype="success")])
    task = asyncio.create_task(
        make_orchestrator(agent).process_message(_request(), StreamCallbacks(on_complete=on_complete))
    )
    await entered.wait()
    task.cancel()

    with pytest.raises(asyncio.CancelledError):
        await task
    assert tracker.recent()[-1].status is RequestStatus.COMPLETED


@pytest.mark.asyncio
async def test_tool_calls_are_correlated_and_persisted(
    make_orchestrator, diagnostics: DiagnosticsRecorder
) -> None:
    agent = ScriptedAgent(
        [
            AssistantBlock(kind="tool_use", tool_name="search_documents", tool_input={"query": "plan"}, tool_use_id="a"),
            AssistantBlock(kind="tool_use", tool_name="read_document", tool_input={"id": "d1"}, tool_use_id="b"),
            UserBlock(tool_result=[{"type": "text", "text": "2 hits"}], tool_use_id="a"),
            UserBlock(tool_result={"unexpected": True}, tool_use_id="b"),
            AssistantBlock(kind="text", text="Found two documents."),
            Result(subtype="success", text="Found two documents."),
        ]
    )
    recorder = RecordingCallbacks()

    state = await make_orchestrator(agent).process_message(_request(), recorder.build())

    assert recorder.tool_uses == [("search_documents", {"query": "plan"}), ("read_document", {"id": "d1"})]
    assert recorder.tool_results == [("search_documents", "2 hits"), ("read_document", "completed")]
    assert recorder.order[:4] == ["tool_use", "tool_use", "tool_result", "tool_result"]
    assert state.message is not None and state.message.tool_calls is not None
    assert [call.to_dict() for call in state.message.tool_calls] == [
        {"name": "search_documents", "input": {"query": "plan"}, "output": "2 hits"},
        {"name": "read_document", "input": {"id": "d1"}, "output": "completed"},
    ]
    entry = diagnostics.snapshot()[0]
    assert entry.iteration_count == 3
    assert len(entry.tool_invocations) == 2


@pytest.mark.asyncio
async def test_thinking_is_forwarded_but_not_persisted(make_orchestrator) -> None:
    agent = ScriptedAgent(
        [
            PartialDelta(kind="thinking", payload="considering"),
            AssistantBlock(kind="thinking", text="full thought"),
            PartialDelta(kind="text", payload="Answer"),
            Result(subtype="success"),
        ]
    )
    recorder = RecordingCallbacks()

    state = await make_orchestrator(agent).process_message(_request(), recorder.build())

    assert recorder.thinking == ["considering", "full thought"]
    assert state.transcript == "Answer"


@pytest.mark.asyncio
async def test_raw_events_reach_callback_in_order(make_orchestrator) -> None:
    events = [
        SystemInit(model="m"),
        PartialDelta(kind="text", payload="x"),
        Result(subtype="success"),
    ]
    recorder = RecordingCallbacks()

    await make_orchestrator(ScriptedAgent(events)).process_message(_request(), recorder.build())

    assert recorder.raw_events == events


@pytest.mark.asyncio
async def test_failing_on_complete_propagates_after_recording(
    make_orchestrator, diagnostics: DiagnosticsRecorder
) -> None:
    def explode(_message: object) -> None:
        raise RuntimeError("transport gone")

    agent = ScriptedAgent([Result(subtype="success", text="done")])

    with pytest.raises(RuntimeError, match="transport gone"):
        await make_orchestrator(agent).process_message(_request(), StreamCallbacks(on_complete=explode))

    assert len(diagnostics.snapshot()) == 1


@pytest.mark.asyncio
async def test_concurrent_turns_keep_separate_state(make_orchestrator) -> None:
    orchestrator = make_orchestrator(
        ScriptedAgent(
            [
                PartialDelta(kind="text", payload="<open_questions>"),
                PartialDelta(kind="text", payload=_QUESTIONS + "</open_questions>reply"),
                Result(subtype="success"),
            ]
        )
    )
    first, second = RecordingCallbacks(), RecordingCallbacks()

    states = await asyncio.gather(
        orchestrator.process_message(_request(user_id="user-1"), first.build()),
        orchestrator.process_message(_request(user_id="user-2"), second.build()),
    )

    assert states[0].turn_id != states[1].turn_id
    assert first.text == second.text == "reply"
    assert len(first.questions) == len(second.questions) == 1
