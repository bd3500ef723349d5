"""Shared pytest fixtures."""

from __future__ import annotations

import os
from pathlib import Path

import pytest

from facilitator.ai.orchestration.prompt_builder import Persona, StaticPersonaProvider
from facilitator.chat.store import InMemoryChatStore
from facilitator.services.diagnostics import DiagnosticsRecorder, InFlightTracker

_ENV_PREFIX = "FACILITATOR_"


@pytest.fixture(autouse=True)
def _isolate_environment(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    """Keep user configuration and log files out of the test run."""

    for name in list(os.environ):
        if name.startswith(_ENV_PREFIX):
            monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("FACILITATOR_LOG_DIR", str(tmp_path / "logs"))


@pytest.fixture
def persona() -> Persona:
    return Persona(name="Facilitator", system_prompt="You help teams organise their ideas.")


@pytest.fixture
def persona_provider(persona: Persona) -> StaticPersonaProvider:
    return StaticPersonaProvider(persona)


@pytest.fixture
def chat_store() -> InMemoryChatStore:
    return InMemoryChatStore()


@pytest.fixture
def diagnostics() -> DiagnosticsRecorder:
    return DiagnosticsRecorder()


@pytest.fixture
def tracker() -> InFlightTracker:
    return InFlightTracker()
