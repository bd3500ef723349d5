"""Facilitator service facade.

Wires the persona, chat store, agent, diagnostics and greeting cache
together and exposes the operations a transport layer needs.
"""

from __future__ import annotations

import logging
import tempfile
from typing import Any, Mapping, Sequence

from .ai.client import AgentClient, ClientSettings, OpenAIAgentClient
from .ai.greetings import AgentGreetingGenerator
from .ai.orchestration.event_log import TurnEventLogger
from .ai.orchestration.orchestrator import ConversationOrchestrator, OrchestratorConfig
from .ai.orchestration.prompt_builder import (
    Persona,
    PersonaProvider,
    PromptBuilder,
    StaticPersonaProvider,
    summarize_tools,
)
from .ai.orchestration.types import (
    CancellationToken,
    NavigationContext,
    StreamCallbacks,
    TurnRequest,
    TurnState,
)
from .chat.message_model import ChatMessage
from .chat.store import ChatStore, InMemoryChatStore
from .services.diagnostics import DiagnosticEntry, DiagnosticsRecorder, InFlightRequest, InFlightTracker
from .services.greeting_cache import GreetingCache, greeting_fingerprint
from .services.settings import Settings

__all__ = ["FacilitatorService", "build_service"]

LOGGER = logging.getLogger(__name__)


class FacilitatorService:
    """Entry point for chat turns, greetings, history and diagnostics."""

    def __init__(
        self,
        *,
        persona_provider: PersonaProvider,
        chat_store: ChatStore,
        orchestrator: ConversationOrchestrator,
        greeting_cache: GreetingCache,
    ) -> None:
        self._persona_provider = persona_provider
        self._chat_store = chat_store
        self._orchestrator = orchestrator
        self._greeting_cache = greeting_cache

    @property
    def persona(self) -> Persona:
        return self._persona_provider.get_persona()

    @property
    def orchestrator(self) -> ConversationOrchestrator:
        return self._orchestrator

    @property
    def greeting_cache(self) -> GreetingCache:
        return self._greeting_cache

    async def process_message(
        self,
        user_id: str,
        user_name: str,
        content: str,
        callbacks: StreamCallbacks | None = None,
        *,
        navigation: NavigationContext | Mapping[str, Any] | None = None,
        display_name: str | None = None,
        cancellation: CancellationToken | None = None,
    ) -> TurnState:
        """Process one user message. See :meth:`ConversationOrchestrator.process_message`."""

        if not isinstance(navigation, NavigationContext):
            navigation = NavigationContext.from_mapping(navigation)
        request = TurnRequest(
            user_id=user_id,
            user_name=user_name,
            content=content,
            navigation=navigation,
            display_name=display_name,
            cancellation=cancellation,
        )
        return await self._orchestrator.process_message(request, callbacks)

    async def generate_greeting(self, user_name: str, display_name: str | None = None) -> str:
        """Return a greeting, generating and caching a batch on first use."""

        persona = self.persona
        bot_name = display_name or persona.name
        key = greeting_fingerprint(bot_name, persona.system_prompt)
        return await self._greeting_cache.get(
            key,
            user_name=user_name,
            bot_name=bot_name,
            persona_prompt=persona.system_prompt,
        )

    def get_random_cached_greeting(self, display_name: str | None = None) -> str | None:
        """Return a cached greeting without calling the agent, or ``None``."""

        persona = self.persona
        bot_name = display_name or persona.name
        return self._greeting_cache.peek(greeting_fingerprint(bot_name, persona.system_prompt))

    def get_diagnostics(self) -> tuple[DiagnosticEntry, ...]:
        return self._orchestrator.diagnostics.snapshot()

    def get_in_flight_requests(self) -> tuple[InFlightRequest, ...]:
        return self._orchestrator.tracker.active()

    async def get_history(self, user_id: str) -> list[ChatMessage]:
        return await self._chat_store.list_messages(user_id)

    async def clear_history(self, user_id: str) -> None:
        LOGGER.info("Clearing facilitator history for user %s", user_id)
        await self._chat_store.clear(user_id)


def build_service(
    settings: Settings,
    *,
    agent: AgentClient | None = None,
    chat_store: ChatStore | None = None,
    persona_provider: PersonaProvider | None = None,
    tool_definitions: Sequence[Mapping[str, Any]] | None = None,
) -> FacilitatorService:
    """Assemble a :class:`FacilitatorService` from settings.

    Collaborators that are not supplied are created from ``settings``: an
    OpenAI-backed agent, an in-memory chat store and a persona built from
    ``persona_name``/``persona_prompt``.
    """

    if agent is None:
        agent = OpenAIAgentClient(
            ClientSettings(
                base_url=settings.base_url,
                api_key=settings.api_key,
                model=settings.model,
                organization=settings.organization,
                temperature=settings.temperature,
                request_timeout=settings.request_timeout,
                max_retries=settings.max_retries,
                retry_min_seconds=settings.retry_min_seconds,
                retry_max_seconds=settings.retry_max_seconds,
                default_headers=settings.default_headers or None,
                debug_logging=settings.debug_logging,
            )
        )
    persona_provider = persona_provider or StaticPersonaProvider(
        Persona(name=settings.persona_name, system_prompt=settings.persona_prompt)
    )
    chat_store = chat_store or InMemoryChatStore()
    # Keep the agent away from project files such as instruction documents.
    cwd = tempfile.gettempdir()
    tools = summarize_tools(tool_definitions or ())
    orchestrator = ConversationOrchestrator(
        agent,
        chat_store,
        persona_provider,
        diagnostics=DiagnosticsRecorder(settings.diagnostics_capacity),
        tracker=InFlightTracker(),
        prompt_builder=PromptBuilder(tools),
        config=OrchestratorConfig(
            model=settings.model,
            max_turns=settings.max_turns,
            max_thinking_tokens=settings.max_thinking_tokens,
            history_window=settings.history_window,
            tools=tuple(tool.name for tool in tools),
            cwd=cwd,
        ),
        event_logger=TurnEventLogger(enabled=settings.debug_event_logging),
    )
    greeting_cache = GreetingCache(
        AgentGreetingGenerator(agent, model=settings.model, cwd=cwd),
        batch_size=settings.greeting_batch_size,
    )
    return FacilitatorService(
        persona_provider=persona_provider,
        chat_store=chat_store,
        orchestrator=orchestrator,
        greeting_cache=greeting_cache,
    )
