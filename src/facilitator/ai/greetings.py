"""Greeting batch generation through the agent."""

from __future__ import annotations

import logging

from .client import AgentClient, AgentOptions
from .events import AssistantBlock, Result
from .orchestration.prompt_builder import build_greeting_batch_prompt

__all__ = ["AgentGreetingGenerator"]

LOGGER = logging.getLogger(__name__)


class AgentGreetingGenerator:
    """Asks the agent for a numbered list of greetings in a single turn."""

    def __init__(self, agent: AgentClient, *, model: str | None = None, cwd: str | None = None) -> None:
        self._agent = agent
        self._model = model
        self._cwd = cwd

    async def generate_batch(
        self,
        *,
        user_name: str,
        bot_name: str,
        persona_prompt: str,
        count: int,
    ) -> str:
        prompt = build_greeting_batch_prompt(
            user_name=user_name,
            bot_name=bot_name,
            persona_prompt=persona_prompt,
            count=count,
        )
        options = AgentOptions(
            model=self._model,
            max_turns=1,
            include_partial_messages=False,
            cwd=self._cwd,
        )
        collected: list[str] = []
        final_text: str | None = None
        async for event in self._agent.submit(prompt, options):
            match event:
                case AssistantBlock(kind="text", text=text) if text:
                    collected.append(text)
                case Result(subtype="success", text=text):
                    final_text = text
                case Result(subtype=subtype, errors=errors):
                    LOGGER.warning("Greeting generation ended with %s: %s", subtype, ", ".join(errors))
                case _:
                    pass
        if collected:
            return "".join(collected)
        return final_text or ""
