"""Console entry point for chatting with the facilitator."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import sys
from dataclasses import asdict
from pathlib import Path
from typing import Any, Callable, Dict, Mapping, Sequence, TextIO, get_args, get_origin, get_type_hints

from .ai.orchestration.directive_parser import DirectiveBlock
from .ai.orchestration.types import StreamCallbacks, TurnStatus
from .service import FacilitatorService, build_service
from .services.settings import Settings, SettingsStore, redact_secret
from .utils import logging as logging_utils

_LOGGER = logging.getLogger(__name__)
_TRUE_VALUES = {"1", "true", "yes", "on", "debug"}
_FALSE_VALUES = {"0", "false", "no", "off", "disabled"}
_EXIT_COMMANDS = {"/quit", "/exit"}


def configure_logging(debug: bool = False, *, force: bool = False) -> None:
    """Configure file logging; the console stays free for the conversation."""

    level = logging.DEBUG if debug else logging.INFO
    logging_utils.setup_logging(level, console=False, force=force)
    _LOGGER.debug("Logging configured (level=%s)", logging.getLevelName(level))


def load_settings(
    path: Path | None = None,
    *,
    store: SettingsStore | None = None,
    overrides: Mapping[str, Any] | None = None,
) -> Settings:
    """Load persisted settings or fall back to defaults."""

    active_store = store or SettingsStore(path)
    try:
        return active_store.load(overrides=overrides)
    except OSError as exc:
        _LOGGER.warning("Failed to load settings from %s: %s", active_store.path, exc)
        return Settings()


def main(argv: Sequence[str] | None = None) -> None:
    """Entry point invoked by the `facilitator` console script."""

    args = _parse_cli_args(argv)

    debug = _env_flag("FACILITATOR_DEBUG", default=False)
    configure_logging(debug)

    settings_path = args.settings_path or os.environ.get("FACILITATOR_SETTINGS_PATH")
    resolved_path = Path(settings_path).expanduser() if settings_path else None
    settings_store = SettingsStore(resolved_path)
    try:
        cli_overrides = _coerce_cli_overrides(args.overrides or [])
    except ValueError as exc:
        print(f"Invalid --set override: {exc}", file=sys.stderr)
        raise SystemExit(2) from exc

    settings = load_settings(resolved_path, store=settings_store, overrides=cli_overrides or None)

    if args.dump_settings:
        _dump_settings(settings, settings_store, overrides=cli_overrides)
        return

    if settings.debug_logging and not debug:
        configure_logging(True, force=True)

    if not settings.api_key:
        print(
            "No API key configured. Set FACILITATOR_API_KEY or use --set api_key=...",
            file=sys.stderr,
        )
        raise SystemExit(2)

    service = build_service(settings)
    try:
        asyncio.run(run_console(service, user_id=args.user_id, user_name=args.user_name))
    except KeyboardInterrupt:
        _LOGGER.info("Console session interrupted")


async def run_console(
    service: FacilitatorService,
    *,
    user_id: str,
    user_name: str,
    stdin: TextIO | None = None,
    stdout: TextIO | None = None,
) -> None:
    """Run an interactive chat loop until EOF or ``/quit``."""

    source = stdin or sys.stdin
    out = stdout or sys.stdout

    greeting = await service.generate_greeting(user_name)
    out.write(f"{service.persona.name}: {greeting}\n")
    out.flush()

    callbacks = _console_callbacks(out)
    while True:
        out.write(f"{user_name}> ")
        out.flush()
        line = await asyncio.to_thread(source.readline)
        if not line:
            break
        content = line.strip()
        if not content:
            continue
        if content in _EXIT_COMMANDS:
            break
        if content == "/clear":
            await service.clear_history(user_id)
            out.write("History cleared.\n")
            continue

        out.write(f"{service.persona.name}: ")
        out.flush()
        state = await service.process_message(user_id, user_name, content, callbacks)
        out.write("\n")
        if state.status is TurnStatus.ERRORED:
            out.write(f"[error] {state.error}\n")
        elif state.status is TurnStatus.ABORTED:
            out.write("[aborted]\n")
        out.flush()


def _console_callbacks(out: TextIO) -> StreamCallbacks:
    def on_text_chunk(text: str, _turn_id: str) -> None:
        out.write(text)
        out.flush()

    def on_tool_use(name: str, tool_input: Mapping[str, Any], _turn_id: str) -> None:
        out.write(f"\n[tool] {name} {json.dumps(dict(tool_input), ensure_ascii=False)}\n")

    def on_open_questions(directives: Sequence[DirectiveBlock]) -> None:
        for directive in directives:
            out.write(f"\n? {directive.question}\n")
            for index, option in enumerate(directive.options, start=1):
                out.write(f"  {index}. {option.label}\n")

    return StreamCallbacks(
        on_text_chunk=on_text_chunk,
        on_tool_use=on_tool_use,
        on_open_questions=on_open_questions,
    )


def _parse_cli_args(argv: Sequence[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="facilitator",
        description="Chat with the facilitator from the terminal or inspect its configuration.",
    )
    parser.add_argument(
        "--dump-settings",
        action="store_true",
        help="Print the effective settings payload (with secrets redacted) and exit.",
    )
    parser.add_argument(
        "--settings-path",
        metavar="PATH",
        help="Override the default ~/.facilitator/settings.json path.",
    )
    parser.add_argument(
        "--set",
        dest="overrides",
        metavar="KEY=VALUE",
        action="append",
        default=[],
        help="Override persisted settings for this session (repeatable).",
    )
    parser.add_argument("--user-id", default="console", help="Conversation owner id.")
    parser.add_argument("--user-name", default=os.environ.get("USER", "there"), help="Name to greet.")
    return parser.parse_args(argv)


def _coerce_cli_overrides(items: Sequence[str]) -> Dict[str, Any]:
    """Turn ``KEY=VALUE`` strings into typed :class:`Settings` overrides.

    Raises:
        ValueError: For malformed entries, unknown fields or values that do
            not parse as the field's type.
    """

    hints = get_type_hints(Settings)
    overrides: Dict[str, Any] = {}
    for entry in items:
        key, separator, raw_value = entry.partition("=")
        key = key.strip()
        if not separator:
            raise ValueError(f"Override '{entry}' must use KEY=VALUE syntax.")
        if not key:
            raise ValueError("Override is missing a field name.")
        if key not in hints:
            raise ValueError(f"Unknown setting '{key}'.")
        parse, nullable = _field_parser(hints[key])
        value = raw_value.strip()
        overrides[key] = None if nullable and value.lower() in {"none", "null"} else parse(value)
    return overrides


def _field_parser(annotation: Any) -> tuple[Callable[[str], Any], bool]:
    members = [arg for arg in get_args(annotation) if arg is not type(None)]
    nullable = len(members) < len(get_args(annotation))
    if nullable:
        annotation = members[0]
    base = get_origin(annotation) or annotation
    return _VALUE_PARSERS.get(base, str), nullable


def _parse_bool(value: str) -> bool:
    lowered = value.lower()
    if lowered in _TRUE_VALUES:
        return True
    if lowered in _FALSE_VALUES:
        return False
    raise ValueError(f"Cannot coerce '{value}' to a boolean.")


def _parse_json_object(value: str) -> dict[str, Any]:
    try:
        payload = json.loads(value or "{}")
    except json.JSONDecodeError as exc:
        raise ValueError("Mapping overrides must be JSON objects") from exc
    if not isinstance(payload, dict):
        raise ValueError("Mapping overrides must be JSON objects")
    return payload


_VALUE_PARSERS: Mapping[Any, Callable[[str], Any]] = {
    str: str,
    bool: _parse_bool,
    int: lambda value: int(value, 10),
    float: float,
    dict: _parse_json_object,
}


def _env_flag(name: str, *, default: bool) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in _TRUE_VALUES


def _dump_settings(settings: Settings, store: SettingsStore, *, overrides: Mapping[str, Any]) -> None:
    report = {
        "settings": {**asdict(settings), "api_key": redact_secret(settings.api_key)},
        "meta": {
            "path": str(store.path),
            "secret_backend": store.vault.strategy,
            "cli_overrides": sorted(overrides),
            "environment_variables": sorted(name for name in os.environ if name.startswith("FACILITATOR_")),
        },
    }
    print(json.dumps(report, indent=2))


if __name__ == "__main__":  # pragma: no cover
    main()
