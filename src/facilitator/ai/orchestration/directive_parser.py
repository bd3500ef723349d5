"""Parsing utilities for embedded open-question directive blocks.

Agents ask the user clarifying questions by embedding a JSON array between
``<open_questions>`` and ``</open_questions>`` markers inside their visible
reply. This module extracts that array and strips the block from the text.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Literal, Mapping, Sequence

from ..errors import DirectiveParseError

__all__ = [
    "OPEN_MARKER",
    "CLOSE_MARKER",
    "DIRECTIVE_BLOCK_RE",
    "DirectiveOption",
    "DirectiveBlock",
    "has_complete_block",
    "parse_directive_payload",
    "strip_directive_block",
]

LOGGER = logging.getLogger(__name__)

OPEN_MARKER = "<open_questions>"
CLOSE_MARKER = "</open_questions>"

DIRECTIVE_BLOCK_RE = re.compile(
    re.escape(OPEN_MARKER) + r"\s*(?P<body>.*?)\s*" + re.escape(CLOSE_MARKER),
    re.DOTALL,
)

SelectionType = Literal["single", "multiple"]
_SELECTION_TYPES: frozenset[str] = frozenset({"single", "multiple"})


@dataclass(slots=True, frozen=True)
class DirectiveOption:
    """One selectable answer for a clarifying question."""

    id: str
    label: str
    description: str | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"id": self.id, "label": self.label}
        if self.description is not None:
            payload["description"] = self.description
        return payload


@dataclass(slots=True, frozen=True)
class DirectiveBlock:
    """A clarifying question the agent wants the user to answer."""

    id: str
    question: str
    options: tuple[DirectiveOption, ...]
    selection_type: SelectionType = "single"
    context: str | None = None
    allow_custom: bool = True

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "id": self.id,
            "question": self.question,
            "selectionType": self.selection_type,
            "options": [option.to_dict() for option in self.options],
            "allowCustom": self.allow_custom,
        }
        if self.context is not None:
            payload["context"] = self.context
        return payload


def has_complete_block(text: str) -> bool:
    """Return ``True`` when a closing marker follows an opening marker in ``text``."""

    start = text.find(OPEN_MARKER)
    return start != -1 and text.find(CLOSE_MARKER, start + len(OPEN_MARKER)) != -1


def parse_directive_payload(raw: str) -> tuple[DirectiveBlock, ...]:
    """Parse the JSON body found between the markers.

    Args:
        raw: Text between the opening and closing markers.

    Returns:
        The parsed directives in payload order. An empty JSON array yields an
        empty tuple.

    Raises:
        DirectiveParseError: If the payload is not valid JSON or is not an
            array of question objects.
    """

    try:
        data = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise DirectiveParseError(
            message=f"Open questions block is not valid JSON: {exc.msg}",
            payload=raw,
        ) from exc
    if not isinstance(data, list):
        raise DirectiveParseError(message="Open questions block must be a JSON array", payload=raw)
    return tuple(_coerce_directive(item, raw) for item in data)


def strip_directive_block(text: str) -> tuple[tuple[DirectiveBlock, ...] | None, str]:
    """Remove the first directive block from ``text``.

    Returns:
        ``(directives, remaining_text)``. ``directives`` is ``None`` when no
        complete block is present or when the block could not be parsed. A
        block that fails to parse is still removed from the text.
    """

    match = DIRECTIVE_BLOCK_RE.search(text)
    if match is None:
        return None, text
    remaining = text[: match.start()] + text[match.end():]
    try:
        directives = parse_directive_payload(match.group("body"))
    except DirectiveParseError as exc:
        LOGGER.warning("Dropping unparseable open questions block: %s", exc)
        return None, remaining
    return directives, remaining


def _coerce_directive(item: Any, raw: str) -> DirectiveBlock:
    if not isinstance(item, Mapping):
        raise DirectiveParseError(message="Each open question must be a JSON object", payload=raw)
    try:
        directive_id = item["id"]
        question = item["question"]
        options = item["options"]
    except KeyError as exc:
        raise DirectiveParseError(
            message=f"Open question is missing field {exc.args[0]!r}", payload=raw
        ) from exc
    if not isinstance(options, Sequence) or isinstance(options, str):
        raise DirectiveParseError(message="Open question options must be a list", payload=raw)
    selection = item.get("selectionType", "single")
    if selection not in _SELECTION_TYPES:
        LOGGER.debug("Unknown selectionType %r; defaulting to single", selection)
        selection = "single"
    context = item.get("context")
    return DirectiveBlock(
        id=str(directive_id),
        question=str(question),
        options=tuple(_coerce_option(option, raw) for option in options),
        selection_type=selection,
        context=str(context) if context is not None else None,
        # Only an explicit ``false`` disables free-form answers.
        allow_custom=item.get("allowCustom") is not False,
    )


def _coerce_option(item: Any, raw: str) -> DirectiveOption:
    if not isinstance(item, Mapping) or "id" not in item or "label" not in item:
        raise DirectiveParseError(
            message="Open question options need an id and a label", payload=raw
        )
    description = item.get("description")
    return DirectiveOption(
        id=str(item["id"]),
        label=str(item["label"]),
        description=str(description) if description is not None else None,
    )
