"""Prompt assembly for facilitator turns and greetings."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Mapping, Protocol, Sequence

from ...chat.message_model import ChatMessage
from .directive_parser import CLOSE_MARKER, OPEN_MARKER
from .types import NavigationContext

__all__ = [
    "DEFAULT_HISTORY_WINDOW",
    "Persona",
    "PersonaProvider",
    "StaticPersonaProvider",
    "ToolDescription",
    "PromptBuilder",
    "build_conversation_history",
    "compose_prompt",
    "build_greeting_batch_prompt",
    "summarize_tools",
]

DEFAULT_HISTORY_WINDOW = 20


@dataclass(slots=True, frozen=True)
class Persona:
    """Name and behavioural prompt of the assistant."""

    name: str
    system_prompt: str


class PersonaProvider(Protocol):
    def get_persona(self) -> Persona:
        ...


class StaticPersonaProvider:
    """Persona provider returning a fixed persona."""

    def __init__(self, persona: Persona) -> None:
        self._persona = persona

    def get_persona(self) -> Persona:
        return self._persona


@dataclass(slots=True, frozen=True)
class ToolDescription:
    """Summary of a tool the agent may call, rendered into the system prompt."""

    name: str
    description: str
    parameters: Mapping[str, str] = field(default_factory=dict)
    required: tuple[str, ...] = ()

    def render(self) -> str:
        lines = [f"**{self.name}**: {self.description}"]
        if self.parameters:
            lines.append("Parameters:")
            for param, summary in self.parameters.items():
                suffix = " (required)" if param in self.required else ""
                lines.append(f"  - {param}: {summary}{suffix}")
        return "\n".join(lines)


_OPEN_QUESTIONS_GUIDE = f"""When the request is ambiguous, ask clarifying questions instead of guessing.
Put them at the end of your reply as a JSON array wrapped in {OPEN_MARKER} and {CLOSE_MARKER}.
Each item needs "id", "question", "selectionType" ("single" or "multiple") and "options"
(a list of {{"id", "label", "description"?}}). Add "context" to explain why you ask and
set "allowCustom": false only when free-form answers make no sense."""


class PromptBuilder:
    """Builds the agent's system prompt from persona, user and location."""

    def __init__(self, tools: Sequence[ToolDescription] | None = None) -> None:
        self._tools = tuple(tools or ())

    @property
    def tools(self) -> tuple[ToolDescription, ...]:
        return self._tools

    def build_system_prompt(
        self,
        persona: Persona,
        *,
        user_name: str,
        navigation: NavigationContext | None = None,
        display_name: str | None = None,
    ) -> str:
        """Return the system prompt for one turn.

        Args:
            persona: Persona supplying the behavioural prompt.
            user_name: Name of the user the assistant talks to.
            navigation: Where the user currently is in the application.
            display_name: Name override configured by the user. When it differs
                from the persona name the assistant is told to use it.
        """

        persona_prompt = persona.system_prompt
        if display_name and display_name != persona.name:
            persona_prompt = (
                f'Your name is "{display_name}". Always refer to yourself as "{display_name}". '
                f"{persona_prompt}"
            )

        sections = [persona_prompt.strip(), f"You are talking with {user_name}."]
        context_parts = (navigation or NavigationContext()).describe()
        if context_parts:
            sections.append("## Current context\n" + "\n".join(context_parts))
        if self._tools:
            rendered = "\n\n".join(tool.render() for tool in self._tools)
            sections.append("## Available tools\n" + rendered)
        sections.append("## Clarifying questions\n" + _OPEN_QUESTIONS_GUIDE)
        return "\n\n".join(sections)


def build_conversation_history(
    messages: Sequence[ChatMessage], *, window: int = DEFAULT_HISTORY_WINDOW
) -> str:
    """Render the most recent ``window`` messages as ``User:``/``Assistant:`` lines."""

    if window <= 0:
        return ""
    recent = list(messages)[-window:]
    lines = []
    for message in recent:
        role = "User" if message.role == "user" else "Assistant"
        lines.append(f"{role}: {message.content}")
    return "\n\n".join(lines)


def compose_prompt(history: str, content: str) -> str:
    """Append the new user message to the rendered history."""

    if not history:
        return content
    return f"{history}\n\nUser: {content}"


def build_greeting_batch_prompt(
    *, user_name: str, bot_name: str, persona_prompt: str, count: int
) -> str:
    """Prompt asking the agent for ``count`` numbered, in-character greetings."""

    return f"""You are "{bot_name}", an AI assistant. Here is your personality:

{persona_prompt}

A user named "{user_name}" will open a chat with you. Generate {count} different greeting messages, each 1-2 sentences. Stay fully in character. Each greeting should:
- Introduce yourself by name ("{bot_name}")
- Be warm and welcoming
- Offer to help
- Be unique and varied

Output ONLY the greetings, one per line, numbered 1-{count}. No other text.

Example format:
1. Hello {user_name}! I'm {bot_name}, ready to assist you today.
2. Welcome, {user_name}! {bot_name} here, what can I help you with?"""


def summarize_tools(tools: Sequence[Mapping[str, Any]]) -> list[ToolDescription]:
    """Convert JSON-schema style tool definitions into :class:`ToolDescription` objects."""

    descriptions: list[ToolDescription] = []
    for tool in tools:
        schema = tool.get("input_schema") or tool.get("parameters") or {}
        properties = schema.get("properties") or {}
        descriptions.append(
            ToolDescription(
                name=str(tool.get("name") or ""),
                description=str(tool.get("description") or ""),
                parameters={
                    str(name): str((prop or {}).get("description") or "")
                    for name, prop in properties.items()
                },
                required=tuple(schema.get("required") or ()),
            )
        )
    return descriptions
