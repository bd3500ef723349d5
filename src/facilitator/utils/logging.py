"""Process-wide logging configuration for facilitator entry points."""

from __future__ import annotations

import logging
import logging.handlers
import os
from dataclasses import dataclass
from pathlib import Path

__all__ = ["setup_logging", "get_log_path"]

LOG_DIR_ENV = "FACILITATOR_LOG_DIR"
LOG_FILE_NAME = "facilitator.log"
_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"
_DATE_FORMAT = "%Y-%m-%dT%H:%M:%S"
# Third-party loggers that are chatty at DEBUG (request bodies, selector events).
_THIRD_PARTY: tuple[str, ...] = ("httpx", "httpcore", "openai", "asyncio")


@dataclass(slots=True)
class _LoggingState:
    log_path: Path | None = None


_STATE = _LoggingState()


def setup_logging(
    level: int = logging.INFO,
    *,
    log_dir: Path | str | None = None,
    console: bool = True,
    max_bytes: int = 1_000_000,
    backup_count: int = 3,
    force: bool = False,
) -> Path:
    """Route the root logger to ``facilitator.log`` and optionally stderr.

    The directory is ``log_dir``, else ``$FACILITATOR_LOG_DIR``, else
    ``~/.facilitator/logs``. Once configured, later calls return the existing
    path unless ``force`` is given.
    """

    if _STATE.log_path is not None and not force:
        return _STATE.log_path

    directory = Path(log_dir or os.environ.get(LOG_DIR_ENV) or Path.home() / ".facilitator" / "logs")
    directory = directory.expanduser()
    directory.mkdir(parents=True, exist_ok=True)
    log_path = directory / LOG_FILE_NAME

    handlers = _build_handlers(log_path, level, console=console, max_bytes=max_bytes, backup_count=backup_count)
    logging.basicConfig(level=level, handlers=handlers, force=True)
    logging.captureWarnings(True)

    third_party_level = max(level, logging.WARNING)
    for name in _THIRD_PARTY:
        logging.getLogger(name).setLevel(third_party_level)

    _STATE.log_path = log_path
    return log_path


def get_log_path() -> Path | None:
    """Return the active log file, or ``None`` before :func:`setup_logging` runs."""

    return _STATE.log_path


def _build_handlers(
    log_path: Path,
    level: int,
    *,
    console: bool,
    max_bytes: int,
    backup_count: int,
) -> list[logging.Handler]:
    formatter = logging.Formatter(_FORMAT, datefmt=_DATE_FORMAT)
    handlers: list[logging.Handler] = [
        logging.handlers.RotatingFileHandler(
            log_path, maxBytes=max_bytes, backupCount=backup_count, encoding="utf-8"
        )
    ]
    if console:
        handlers.append(logging.StreamHandler())
    for handler in handlers:
        handler.setLevel(level)
        handler.setFormatter(formatter)
    return handlers
