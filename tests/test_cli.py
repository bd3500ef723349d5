"""Tests for the console entry point."""

from __future__ import annotations

import io
import json
import logging
from pathlib import Path

import pytest

from facilitator import cli
from facilitator.ai.events import PartialDelta, Result
from facilitator.service import build_service
from facilitator.services.settings import Settings
from facilitator.utils import logging as logging_utils
from tests.helpers import ScriptedAgent


def test_coerce_cli_overrides_uses_field_types() -> None:
    overrides = cli._coerce_cli_overrides(
        [
            "max_turns=5",
            "temperature=0.1",
            "debug_event_logging=on",
            "organization=null",
            "default_headers={\"X-Team\": \"core\"}",
            "model= gpt-4o ",
        ]
    )

    assert overrides == {
        "max_turns": 5,
        "temperature": 0.1,
        "debug_event_logging": True,
        "organization": None,
        "default_headers": {"X-Team": "core"},
        "model": "gpt-4o",
    }


@pytest.mark.parametrize("entry", ["max_turns", "=3", "unknown=1", "debug_logging=maybe", "default_headers=[1]"])
def test_coerce_cli_overrides_rejects_bad_entries(entry: str) -> None:
    with pytest.raises(ValueError):
        cli._coerce_cli_overrides([entry])


def test_dump_settings_redacts_api_key(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    settings_path = tmp_path / "settings.json"

    cli.main(["--settings-path", str(settings_path), "--set", "api_key=sk-secret-value", "--dump-settings"])

    payload = json.loads(capsys.readouterr().out)
    assert payload["settings"]["api_key"] == "sk***********ue"
    assert payload["meta"]["path"] == str(settings_path)
    assert payload["meta"]["cli_overrides"] == ["api_key"]
    assert logging_utils.get_log_path() is not None


def test_main_requires_api_key(tmp_path: Path) -> None:
    with pytest.raises(SystemExit) as excinfo:
        cli.main(["--settings-path", str(tmp_path / "settings.json")])

    assert excinfo.value.code == 2


def test_configure_logging_writes_to_log_dir(tmp_path: Path) -> None:
    cli.configure_logging(True, force=True)

    log_path = logging_utils.get_log_path()
    assert log_path is not None and log_path.parent == tmp_path / "logs"
    assert logging.getLogger().level == logging.DEBUG
    assert logging.getLogger("httpx").level == logging.WARNING


@pytest.mark.asyncio
async def test_run_console_streams_replies_until_quit() -> None:
    agent = ScriptedAgent(
        [
            PartialDelta(kind="text", payload="1. Hello Ada, lovely to see you again!\n"),
            Result(subtype="success", text="1. Hello Ada, lovely to see you again!"),
        ]
    )
    service = build_service(Settings(persona_name="Nova"), agent=agent)
    stdin = io.StringIO("\nWhat's next?\n/clear\n/quit\nnever read\n")
    stdout = io.StringIO()

    await cli.run_console(service, user_id="u", user_name="Ada", stdin=stdin, stdout=stdout)

    output = stdout.getvalue()
    assert output.startswith("Nova: Hello Ada, lovely to see you again!\n")
    assert "Nova: 1. Hello Ada, lovely to see you again!" in output
    assert "History cleared." in output
    assert await service.get_history("u") == []
    assert len(agent.calls) == 2
