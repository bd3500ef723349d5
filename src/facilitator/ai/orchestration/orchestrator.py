"""Conversation orchestrator driving one facilitator turn.

The orchestrator saves the user's message, composes the prompt, submits it
to the agent and consumes the agent's events one by one. Visible text is
filtered through a :class:`StreamProcessor`, tool calls are paired with
their results by a :class:`ToolCallCorrelator` and every finished turn
leaves a :class:`DiagnosticEntry` behind.

Cancellation is cooperative: the turn's :class:`CancellationToken` is
checked before the request is submitted and after every event received.

Turns for the same user are not serialized. Two overlapping submissions
each read the history as it stands when they start, and their replies are
stored in completion order.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import AsyncIterator

from ...chat.message_model import ToolCallRecord
from ...chat.store import ChatStore
from ...services.diagnostics import (
    DiagnosticEntry,
    DiagnosticsRecorder,
    InFlightTracker,
    RawEventRecord,
    RequestStatus,
    SessionInfo,
)
from ..client import AgentClient, AgentOptions
from ..errors import ProviderError, SoftLimitReached, TurnCancelled
from ..events import (
    AssistantBlock,
    PartialDelta,
    Result,
    StreamEvent,
    SystemInit,
    TokenUsage,
    UserBlock,
    event_kind,
)
from .event_log import NullTurnEventLogRun, TurnEventLogger, TurnEventLogRun
from .prompt_builder import (
    DEFAULT_HISTORY_WINDOW,
    PersonaProvider,
    PromptBuilder,
    build_conversation_history,
    compose_prompt,
)
from .stream_processor import StreamOutput, StreamProcessor
from .tool_correlator import ToolCallCorrelator
from .types import (
    ConversationTurn,
    StreamCallbacks,
    TurnRequest,
    TurnState,
    TurnStatus,
    invoke_callback,
)

__all__ = [
    "ConversationOrchestrator",
    "OrchestratorConfig",
    "MAX_TURNS_NOTICE",
    "EMPTY_RESPONSE_FALLBACK",
]

LOGGER = logging.getLogger(__name__)

MAX_TURNS_NOTICE = (
    "\n\n*I've reached my action limit for this request. "
    "Let me know if you need me to continue.*"
)
EMPTY_RESPONSE_FALLBACK = "I apologize, but I was unable to generate a response."
_USER_PREVIEW_CHARS = 200
_REQUEST_KIND = "facilitator"


@dataclass(slots=True)
class OrchestratorConfig:
    """Settings applied to every turn."""

    model: str | None = None
    max_turns: int = 20
    max_thinking_tokens: int | None = 8_000
    history_window: int = DEFAULT_HISTORY_WINDOW
    tools: tuple[str, ...] = ()
    cwd: str | None = None


@dataclass(slots=True)
class _TurnRun:
    """Turn-local bookkeeping. Never shared between turns."""

    turn: ConversationTurn
    state: TurnState
    callbacks: StreamCallbacks
    model: str
    started: float = field(default_factory=time.perf_counter)
    system_prompt: str = ""
    request_id: str | None = None
    processor: StreamProcessor = field(default_factory=StreamProcessor)
    correlator: ToolCallCorrelator = field(default_factory=ToolCallCorrelator)
    raw_events: list[RawEventRecord] = field(default_factory=list)
    session: SessionInfo | None = None
    input_tokens: int = 0
    output_tokens: int = 0
    cost_usd: float = 0.0

    @property
    def turn_id(self) -> str:
        return self.turn.turn_id

    def record_event(self, event: StreamEvent) -> None:
        event_type, subtype = event_kind(event)
        self.raw_events.append(
            RawEventRecord(timestamp=time.time(), type=event_type, subtype=subtype, data=event)
        )
        self.state.events_seen += 1

    def apply_partial_usage(self, usage: TokenUsage) -> None:
        if usage.input_tokens:
            self.input_tokens = usage.input_tokens
        if usage.output_tokens:
            self.output_tokens = usage.output_tokens

    def apply_result(self, result: Result) -> None:
        if result.usage is not None:
            self.input_tokens = result.usage.input_tokens
            self.output_tokens = result.usage.output_tokens
        if result.cost_usd is not None:
            self.cost_usd = result.cost_usd


class ConversationOrchestrator:
    """Runs conversational turns against an agent.

    The orchestrator holds no per-turn state of its own, so any number of
    turns may run concurrently on one instance. The diagnostics recorder and
    in-flight tracker it writes to serialize their own updates.
    """

    def __init__(
        self,
        agent: AgentClient,
        chat_store: ChatStore,
        persona_provider: PersonaProvider,
        *,
        diagnostics: DiagnosticsRecorder,
        tracker: InFlightTracker | None = None,
        prompt_builder: PromptBuilder | None = None,
        config: OrchestratorConfig | None = None,
        event_logger: TurnEventLogger | None = None,
    ) -> None:
        self._agent = agent
        self._chat_store = chat_store
        self._persona_provider = persona_provider
        self._diagnostics = diagnostics
        self._tracker = tracker or InFlightTracker()
        self._prompt_builder = prompt_builder or PromptBuilder()
        self._config = config or OrchestratorConfig()
        self._event_logger = event_logger or TurnEventLogger(enabled=False)

    @property
    def config(self) -> OrchestratorConfig:
        return self._config

    @property
    def diagnostics(self) -> DiagnosticsRecorder:
        return self._diagnostics

    @property
    def tracker(self) -> InFlightTracker:
        return self._tracker

    # ------------------------------------------------------------------
    # Turn execution
    # ------------------------------------------------------------------

    async def process_message(
        self,
        request: TurnRequest,
        callbacks: StreamCallbacks | None = None,
    ) -> TurnState:
        """Process one user message and stream the reply through ``callbacks``.

        Args:
            request: The user's message and the context it was sent from.
            callbacks: Hooks notified as the reply streams in.

        Returns:
            The final :class:`TurnState`. Provider failures, unexpected errors
            and cancellation are reported through the state and callbacks
            rather than raised. An exception raised by ``on_complete`` or
            ``on_error`` propagates to the caller.
        """

        turn = ConversationTurn.from_request(request)
        run = _TurnRun(
            turn=turn,
            state=TurnState(turn_id=turn.turn_id),
            callbacks=callbacks or StreamCallbacks(),
            model=self._config.model or "default",
        )
        LOGGER.debug("Starting turn %s for user %s", turn.turn_id, turn.user_id)
        log_run: TurnEventLogRun | NullTurnEventLogRun = NullTurnEventLogRun()
        try:
            user_message = await self._chat_store.append(turn.user_id, "user", turn.content)
            run.request_id = self._tracker.start(_REQUEST_KIND, turn.user_id, turn.content)
            prompt = await self._prepare(run, exclude_message_id=user_message.id)
            log_run = self._event_logger.start_run(
                turn_id=turn.turn_id,
                user_id=turn.user_id,
                prompt=prompt,
                system_prompt=run.system_prompt,
            )

            turn.cancellation.raise_if_cancelled()
            stream = self._agent.submit(prompt, self._build_options(run.system_prompt))
            run.state.mark_sent()
            try:
                provider_error = await self._consume(run, stream, log_run)
            finally:
                await _close_stream(stream)

            if provider_error is not None:
                LOGGER.warning("Turn %s failed in the agent: %s", turn.turn_id, provider_error)
                log_run.log_failure(message=provider_error.message)
                await self._fail(run, provider_error.message)
                return run.state

            await self._complete(run, log_run)
        except TurnCancelled as exc:
            if run.state.is_finished:
                raise
            log_run.log_aborted(reason=exc.reason)
            self._abort(run, exc.reason)
        except asyncio.CancelledError:
            if not run.state.is_finished:
                log_run.log_aborted(reason="task cancelled")
                self._abort(run, "task cancelled")
            raise
        except Exception as exc:
            if run.state.is_finished:
                # A terminal callback failed after the turn was recorded.
                raise
            message = str(exc) or exc.__class__.__name__
            LOGGER.exception("Error processing turn %s", turn.turn_id)
            log_run.log_failure(message=message)
            await self._fail(run, message)
        return run.state

    async def _prepare(self, run: _TurnRun, *, exclude_message_id: str) -> str:
        turn = run.turn
        persona = self._persona_provider.get_persona()
        run.system_prompt = self._prompt_builder.build_system_prompt(
            persona,
            user_name=turn.user_name,
            navigation=turn.navigation,
            display_name=turn.display_name,
        )
        messages = await self._chat_store.list_messages(turn.user_id)
        # The message saved for this turn is sent separately after the history.
        prior = [message for message in messages if message.id != exclude_message_id]
        history = build_conversation_history(prior, window=self._config.history_window)
        return compose_prompt(history, turn.content)

    def _build_options(self, system_prompt: str) -> AgentOptions:
        return AgentOptions(
            system_prompt=system_prompt,
            model=self._config.model,
            max_turns=self._config.max_turns,
            max_thinking_tokens=self._config.max_thinking_tokens,
            tools=self._config.tools,
            include_partial_messages=True,
            cwd=self._config.cwd,
        )

    async def _consume(
        self,
        run: _TurnRun,
        stream: AsyncIterator[StreamEvent],
        log_run: TurnEventLogRun | NullTurnEventLogRun,
    ) -> ProviderError | None:
        cancellation = run.turn.cancellation
        async for event in stream:
            cancellation.raise_if_cancelled()
            run.record_event(event)
            log_run.log_event(event)
            await invoke_callback(run.callbacks.on_raw_event, event)
            if run.state.status is TurnStatus.SENT:
                run.state.mark_streaming()
                if run.request_id is not None:
                    self._tracker.update(run.request_id, status=RequestStatus.STREAMING)
            error = await self._dispatch(run, event)
            if error is not None:
                return error
        return None

    async def _dispatch(self, run: _TurnRun, event: StreamEvent) -> ProviderError | None:
        callbacks = run.callbacks
        match event:
            case SystemInit():
                run.model = event.model or run.model
                run.session = SessionInfo(
                    session_id=event.session_id,
                    tools=event.tools,
                    mcp_servers=tuple(server.name for server in event.mcp_servers),
                )
                LOGGER.debug(
                    "Agent session initialised: model=%s, tools=%d, servers=%d",
                    event.model,
                    len(event.tools),
                    len(event.mcp_servers),
                )
                await invoke_callback(callbacks.on_system_init, event)
            case PartialDelta(kind="thinking", payload=payload):
                await invoke_callback(callbacks.on_thinking, payload, run.turn_id)
            case PartialDelta(kind="text", payload=payload):
                await self._emit(run, run.processor.feed(payload))
            case AssistantBlock(kind=kind, usage=usage):
                if usage is not None:
                    run.apply_partial_usage(usage)
                if kind == "text":
                    await self._emit(run, run.processor.strip_block(event.text), dedupe=True)
                elif kind == "thinking":
                    if event.text:
                        await invoke_callback(callbacks.on_thinking, event.text, run.turn_id)
                else:
                    name = event.tool_name or "unknown"
                    invocation = run.correlator.append(
                        name, event.tool_input, tool_use_id=event.tool_use_id
                    )
                    LOGGER.debug("Tool use in turn %s: %s", run.turn_id, name)
                    await invoke_callback(callbacks.on_tool_use, name, invocation.input, run.turn_id)
            case UserBlock(tool_result=tool_result):
                invocation = run.correlator.resolve(tool_result)
                if invocation is not None and invocation.output is not None:
                    await invoke_callback(
                        callbacks.on_tool_result, invocation.name, invocation.output, run.turn_id
                    )
            case Result(subtype=subtype):
                run.apply_result(event)
                if subtype == "success":
                    if not run.state.transcript:
                        await self._emit(run, run.processor.strip_block(event.text or ""))
                elif subtype == "error_during_execution":
                    return ProviderError.from_errors(event.errors)
                else:
                    LOGGER.info("Turn %s: %s", run.turn_id, SoftLimitReached().message)
                    run.state.soft_limit = True
                    await self._emit(run, StreamOutput(text=MAX_TURNS_NOTICE))
            case _:  # pragma: no cover - the event union is closed
                raise TypeError(f"Unsupported stream event: {event!r}")
        return None

    async def _emit(self, run: _TurnRun, output: StreamOutput, *, dedupe: bool = False) -> None:
        if output.directives:
            run.state.directives = output.directives
            LOGGER.debug("Sending %d open question(s) for turn %s", len(output.directives), run.turn_id)
            await invoke_callback(run.callbacks.on_open_questions, list(output.directives))
        text = output.text
        if not text:
            return
        if dedupe and _already_delivered(run.state.transcript, text):
            return
        run.state.transcript += text
        await invoke_callback(run.callbacks.on_text_chunk, text, run.turn_id)

    # ------------------------------------------------------------------
    # Terminal paths
    # ------------------------------------------------------------------

    async def _complete(
        self, run: _TurnRun, log_run: TurnEventLogRun | NullTurnEventLogRun
    ) -> None:
        await self._emit(run, run.processor.flush())
        state = run.state
        tool_calls = [
            ToolCallRecord(name=item.name, input=dict(item.input), output=item.output)
            for item in run.correlator.invocations
        ]
        message = await self._chat_store.append(
            run.turn.user_id,
            "assistant",
            state.transcript or EMPTY_RESPONSE_FALLBACK,
            tool_calls or None,
            run.turn_id,
        )
        state.tool_calls = tuple(item.to_dict() for item in run.correlator.invocations)
        state.mark_completed(message)
        if run.request_id is not None:
            self._tracker.complete(run.request_id)
        log_run.log_completion(
            response_text=state.transcript,
            tool_call_count=len(tool_calls),
            soft_limit=state.soft_limit,
        )
        LOGGER.info(
            "Turn %s completed (%d chars, %d tool call(s))",
            run.turn_id,
            len(state.transcript),
            len(tool_calls),
        )
        try:
            await invoke_callback(run.callbacks.on_complete, message)
        finally:
            self._diagnostics.append(self._build_entry(run))

    async def _fail(self, run: _TurnRun, message: str) -> None:
        state = run.state
        state.tool_calls = tuple(item.to_dict() for item in run.correlator.invocations)
        state.mark_errored(message)
        if run.request_id is not None:
            self._tracker.complete(run.request_id, message)
        try:
            await invoke_callback(run.callbacks.on_error, message)
        finally:
            self._diagnostics.append(self._build_entry(run, error=message))

    def _abort(self, run: _TurnRun, reason: str | None) -> None:
        state = run.state
        state.tool_calls = tuple(item.to_dict() for item in run.correlator.invocations)
        state.mark_aborted(reason)
        if run.request_id is not None:
            self._tracker.complete(run.request_id, InFlightTracker.ABORTED_MESSAGE)
        LOGGER.info(
            "Turn %s aborted after %d event(s)%s",
            run.turn_id,
            state.events_seen,
            f": {reason}" if reason else "",
        )
        if state.events_seen > 0:
            self._diagnostics.append(self._build_entry(run, aborted=True))

    def _build_entry(
        self, run: _TurnRun, *, error: str | None = None, aborted: bool = False
    ) -> DiagnosticEntry:
        invocations = run.correlator.invocations
        token_usage = None
        if run.input_tokens > 0 or run.output_tokens > 0:
            token_usage = {"input_tokens": run.input_tokens, "output_tokens": run.output_tokens}
        return DiagnosticEntry(
            timestamp=datetime.now(timezone.utc),
            turn_id=run.turn_id,
            user_message_preview=run.turn.content[:_USER_PREVIEW_CHARS],
            iteration_count=len(invocations) + 1,
            tool_invocations=tuple(item.to_dict() for item in invocations),
            response_length=len(run.state.transcript),
            duration_ms=(time.perf_counter() - run.started) * 1000.0,
            system_prompt=run.system_prompt,
            model=run.model,
            error=error,
            aborted=aborted,
            token_usage=token_usage,
            raw_events=tuple(run.raw_events) or None,
            session_info=run.session,
            cost_usd=run.cost_usd if run.cost_usd > 0 else None,
        )


def _already_delivered(transcript: str, text: str) -> bool:
    if transcript.endswith(text):
        return True
    # Whole blocks are whitespace-trimmed, streamed text is not.
    return bool(transcript.strip()) and transcript.rstrip().endswith(text)


async def _close_stream(stream: AsyncIterator[StreamEvent]) -> None:
    aclose = getattr(stream, "aclose", None)
    if aclose is not None:
        await aclose()
