"""Debug event logging for facilitator turns.

When enabled, every turn writes a JSONL file with its prompt, each agent
event as it arrives and the final outcome.
"""

from __future__ import annotations

import dataclasses
import json
import logging
import time
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Mapping

from ...utils import logging as logging_utils
from ..events import StreamEvent, event_kind

LOGGER = logging.getLogger(__name__)

_MAX_DEPTH = 6
_SCALARS = (str, int, float, bool, type(None))


def _jsonable(value: Any, depth: int = 0) -> Any:
    """Reduce ``value`` to something :func:`json.dumps` accepts."""

    if isinstance(value, _SCALARS):
        return value
    if depth >= _MAX_DEPTH:
        return repr(value)
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    if isinstance(value, Mapping):
        return {str(key): _jsonable(item, depth + 1) for key, item in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        return [_jsonable(item, depth + 1) for item in value]
    return repr(value)


@dataclass(slots=True)
class NullTurnEventLogRun:
    """Stand-in run used when event logging is disabled."""

    path: Path | None = None

    def log_event(self, *_: Any, **__: Any) -> None:
        return

    def log_completion(self, *_: Any, **__: Any) -> None:
        return

    def log_failure(self, *_: Any, **__: Any) -> None:
        return

    def log_aborted(self, *_: Any, **__: Any) -> None:
        return


class TurnEventLogRun:
    """JSONL writer for a single turn. The first terminal entry closes it."""

    def __init__(self, path: Path, *, context: Mapping[str, Any]) -> None:
        self.path = path
        self._handle = path.open("w", encoding="utf-8")
        self._closed = False
        self._emit("start", context)

    def log_event(self, event: StreamEvent) -> None:
        event_type, subtype = event_kind(event)
        self._emit(
            "agent_event",
            {"type": event_type, "subtype": subtype, "data": dataclasses.asdict(event)},
        )

    def log_completion(self, *, response_text: str, tool_call_count: int, soft_limit: bool = False) -> None:
        self._finish(
            "completion",
            status="success",
            response_text=response_text,
            tool_call_count=tool_call_count,
            soft_limit=soft_limit,
        )

    def log_failure(self, *, message: str, details: Mapping[str, Any] | None = None) -> None:
        extra = {"details": dict(details)} if details else {}
        self._finish("failure", status="failure", message=message, **extra)

    def log_aborted(self, *, reason: str | None = None) -> None:
        self._finish("aborted", status="aborted", reason=reason)

    def _finish(self, event: str, **fields: Any) -> None:
        if self._closed:
            return
        self._emit(event, fields)
        self._closed = True
        try:
            self._handle.close()
        except OSError:  # pragma: no cover - close after a successful flush
            LOGGER.debug("Failed to close event log %s", self.path, exc_info=True)

    def _emit(self, event: str, fields: Mapping[str, Any]) -> None:
        if self._closed:
            return
        record = {"event": event, "timestamp": time.time(), **_jsonable(fields)}
        self._handle.write(json.dumps(record, ensure_ascii=False) + "\n")
        self._handle.flush()


class TurnEventLogger:
    """Creates one :class:`TurnEventLogRun` per turn while enabled."""

    def __init__(self, *, enabled: bool, base_dir: Path | str | None = None) -> None:
        self.enabled = bool(enabled)
        if base_dir:
            self._base_dir = Path(base_dir)
        else:
            log_path = logging_utils.get_log_path()
            root = log_path.parent if log_path is not None else Path.home() / ".facilitator" / "logs"
            self._base_dir = root / "events"

    @property
    def base_dir(self) -> Path:
        return self._base_dir

    def start_run(
        self,
        *,
        turn_id: str,
        user_id: str,
        prompt: str,
        system_prompt: str,
    ) -> TurnEventLogRun | NullTurnEventLogRun:
        if not self.enabled:
            return NullTurnEventLogRun()
        stamp = datetime.now(UTC).strftime("%Y%m%d-%H%M%S")
        slug = "".join(ch for ch in turn_id if ch.isalnum())[:16] or "turn"
        path = self._base_dir / f"turn-{stamp}-{slug}.jsonl"
        context = {"turn_id": turn_id, "user_id": user_id, "prompt": prompt, "system_prompt": system_prompt}
        try:
            self._base_dir.mkdir(parents=True, exist_ok=True)
            run = TurnEventLogRun(path, context=context)
        except OSError:
            LOGGER.warning("Could not open turn event log at %s", path, exc_info=True)
            return NullTurnEventLogRun()
        LOGGER.debug("Turn event log started: %s", path)
        return run


__all__ = [
    "TurnEventLogger",
    "TurnEventLogRun",
    "NullTurnEventLogRun",
]
