"""Agent clients that turn a prompt into a stream of :mod:`facilitator.ai.events`."""

from __future__ import annotations

import inspect
import json
import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, AsyncIterable, AsyncIterator, Callable, Dict, List, Mapping, Protocol

import httpx
from openai import AsyncOpenAI, APIConnectionError, APIError, APIStatusError, RateLimitError
from openai.lib.streaming.chat import ChatCompletionStreamEvent
from openai.types.chat import ChatCompletionMessageParam
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from .events import (
    AssistantBlock,
    PartialDelta,
    Result,
    StreamEvent,
    SystemInit,
    TokenUsage,
    decode_sdk_message,
)

__all__ = [
    "AgentOptions",
    "AgentClient",
    "ClientSettings",
    "OpenAIAgentClient",
    "SdkMessageAgentClient",
]

LOGGER = logging.getLogger(__name__)

_RETRYABLE_ERRORS = (
    APIError,
    APIStatusError,
    APIConnectionError,
    RateLimitError,
    httpx.TimeoutException,
)


@dataclass(slots=True)
class AgentOptions:
    """Per-request options passed to the agent."""

    system_prompt: str | None = None
    model: str | None = None
    max_turns: int = 20
    max_thinking_tokens: int | None = None
    tools: tuple[str, ...] = ()
    include_partial_messages: bool = True
    cwd: str | None = None
    metadata: Mapping[str, str] = field(default_factory=dict)


class AgentClient(Protocol):
    """Submits a prompt and yields the agent's events in arrival order."""

    def submit(self, prompt: str, options: AgentOptions) -> AsyncIterator[StreamEvent]:
        ...


@dataclass(slots=True)
class ClientSettings:
    """Subset of settings required to configure the OpenAI-backed agent."""

    base_url: str
    api_key: str
    model: str
    organization: str | None = None
    temperature: float | None = 0.7
    request_timeout: float | None = 90.0
    max_retries: int = 3
    retry_min_seconds: float = 0.5
    retry_max_seconds: float = 6.0
    default_headers: Mapping[str, str] | None = None
    metadata: Mapping[str, str] | None = None
    debug_logging: bool = False


class OpenAIAgentClient:
    """Agent backed by a single streamed chat completion.

    The completion is presented as an agent session: a synthetic
    :class:`SystemInit`, text deltas, one final text block and a
    :class:`Result`. The endpoint never runs tools, so ``max_turns`` and
    ``tools`` from :class:`AgentOptions` have no effect. Failures that
    persist after retries are reported as an ``error_during_execution``
    result instead of being raised. A request is only retried while no text
    delta has been yielded for it.
    """

    def __init__(self, settings: ClientSettings, *, client: AsyncOpenAI | None = None) -> None:
        self._settings = settings
        self._client = client or self._build_client(settings)

    @property
    def settings(self) -> ClientSettings:
        return self._settings

    async def submit(self, prompt: str, options: AgentOptions) -> AsyncIterator[StreamEvent]:
        payload = self._build_payload(prompt, options)
        model = payload["model"]
        LOGGER.debug("Starting streamed completion via %s", model)
        if self._settings.debug_logging:
            self._log_payload(payload)

        yield SystemInit(model=model, session_id=uuid.uuid4().hex)

        chunks: list[str] = []
        usage: TokenUsage | None = None
        emitted = False
        interrupted: Exception | None = None
        try:
            async for attempt in self._retrying():
                with attempt:
                    chunks.clear()
                    try:
                        async with self._client.chat.completions.stream(**payload) as stream:
                            async for event in stream:
                                delta = self._extract_delta(event)
                                if delta:
                                    chunks.append(delta)
                                    if options.include_partial_messages:
                                        emitted = True
                                        yield PartialDelta(kind="text", payload=delta)
                                usage = self._extract_usage(event) or usage
                    except _RETRYABLE_ERRORS as exc:
                        # Yielded deltas are final; only a silent attempt may be replayed.
                        if not emitted:
                            raise
                        interrupted = exc
                    break
        except _RETRYABLE_ERRORS as exc:
            interrupted = exc
        if interrupted is not None:
            LOGGER.warning("Completion request failed: %s", interrupted)
            yield Result(subtype="error_during_execution", errors=(str(interrupted),))
            return

        text = "".join(chunks)
        yield AssistantBlock(kind="text", text=text, usage=usage)
        yield Result(subtype="success", usage=usage, text=text)

    def _build_client(self, settings: ClientSettings) -> AsyncOpenAI:
        headers = dict(settings.default_headers) if settings.default_headers else None
        return AsyncOpenAI(
            api_key=settings.api_key,
            base_url=settings.base_url,
            organization=settings.organization,
            timeout=settings.request_timeout,
            default_headers=headers,
        )

    def _build_payload(self, prompt: str, options: AgentOptions) -> Dict[str, Any]:
        messages: List[ChatCompletionMessageParam] = []
        if options.system_prompt:
            messages.append({"role": "system", "content": options.system_prompt})
        messages.append({"role": "user", "content": prompt})
        payload: Dict[str, Any] = {
            "model": options.model or self._settings.model,
            "messages": messages,
            "stream_options": {"include_usage": True},
        }
        if self._settings.temperature is not None:
            payload["temperature"] = self._settings.temperature
        metadata: Dict[str, str] = {}
        if self._settings.metadata:
            metadata.update(self._settings.metadata)
        metadata.update(options.metadata)
        if metadata:
            payload["metadata"] = metadata
        return payload

    def _retrying(self) -> AsyncRetrying:
        return AsyncRetrying(
            reraise=True,
            stop=stop_after_attempt(max(1, self._settings.max_retries)),
            wait=wait_exponential(
                multiplier=self._settings.retry_min_seconds,
                max=self._settings.retry_max_seconds,
            ),
            retry=retry_if_exception_type(_RETRYABLE_ERRORS),
        )

    @staticmethod
    def _extract_delta(event: ChatCompletionStreamEvent[Any]) -> str | None:
        if getattr(event, "type", None) != "content.delta":
            return None
        delta = getattr(event, "delta", None)
        return str(delta) if delta else None

    @staticmethod
    def _extract_usage(event: ChatCompletionStreamEvent[Any]) -> TokenUsage | None:
        if getattr(event, "type", None) != "chunk":
            return None
        usage = getattr(getattr(event, "chunk", None), "usage", None)
        if usage is None:
            return None
        return TokenUsage(
            input_tokens=int(getattr(usage, "prompt_tokens", 0) or 0),
            output_tokens=int(getattr(usage, "completion_tokens", 0) or 0),
        )

    def _log_payload(self, payload: Mapping[str, Any]) -> None:
        try:
            serialized = json.dumps(payload, ensure_ascii=False, indent=2)
        except (TypeError, ValueError):
            LOGGER.debug("Agent prompt payload (unserializable): %s", payload)
        else:
            LOGGER.debug("Agent prompt payload:\n%s", serialized)

    async def aclose(self) -> None:
        """Close the underlying OpenAI client to release network resources."""

        close = getattr(self._client, "close", None)
        if close is None:
            return
        result = close()
        if inspect.isawaitable(result):
            await result


MessageSource = Callable[[str, AgentOptions], AsyncIterable[Mapping[str, Any]]]


class SdkMessageAgentClient:
    """Agent adapter for sources that speak the agent SDK message format.

    ``source`` is called with the prompt and options and must return an
    async iterable of decoded SDK messages, for example one JSON object per
    line read from an agent subprocess.
    """

    def __init__(self, source: MessageSource) -> None:
        self._source = source

    async def submit(self, prompt: str, options: AgentOptions) -> AsyncIterator[StreamEvent]:
        async for message in self._source(prompt, options):
            for event in decode_sdk_message(message):
                yield event
