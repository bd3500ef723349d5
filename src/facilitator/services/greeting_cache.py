"""Per-persona cache of pre-generated greetings.

The first greeting request for a persona asks the agent for a numbered
batch of greetings in one call. Later requests draw from the batch at
random without repeating until every candidate has been used once.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import random
import re
from dataclasses import dataclass, field
from threading import Lock
from typing import Protocol

__all__ = [
    "DEFAULT_BATCH_SIZE",
    "GreetingGenerator",
    "GreetingCacheEntry",
    "GreetingCache",
    "greeting_fingerprint",
    "parse_greeting_batch",
    "fallback_greeting",
]

LOGGER = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 20
_MIN_GREETING_LENGTH = 10
_NUMBERED_LINE_RE = re.compile(r"^\s*\d+[.)]\s*(.+)")


class GreetingGenerator(Protocol):
    """Produces the raw text of a numbered greeting batch."""

    async def generate_batch(
        self,
        *,
        user_name: str,
        bot_name: str,
        persona_prompt: str,
        count: int,
    ) -> str:
        ...


@dataclass(slots=True)
class GreetingCacheEntry:
    """Cached candidates for one fingerprint and the indices already served."""

    fingerprint: str
    candidates: tuple[str, ...]
    used_indices: set[int] = field(default_factory=set)

    @property
    def remaining(self) -> int:
        return len(self.candidates) - len(self.used_indices)


def greeting_fingerprint(display_name: str, persona_prompt: str) -> str:
    """Return the cache key for a display name and persona prompt."""

    digest = hashlib.sha256((display_name + persona_prompt).encode("utf-8")).hexdigest()
    return f"{display_name}-{digest[:16]}"


def parse_greeting_batch(text: str) -> list[str]:
    """Extract greetings from lines such as ``1. Hello!`` or ``2) Hi there``.

    Candidates of ten characters or fewer are treated as noise.
    """

    greetings: list[str] = []
    for line in (text or "").splitlines():
        match = _NUMBERED_LINE_RE.match(line)
        if match is None:
            continue
        greeting = match.group(1).strip()
        if len(greeting) > _MIN_GREETING_LENGTH:
            greetings.append(greeting)
    return greetings


def fallback_greeting(user_name: str, bot_name: str) -> str:
    return f"Hello {user_name}! I'm {bot_name}. How can I help you today?"


class GreetingCache:
    """Batch-generated, non-repeating random greeting cache.

    Selection is guarded by a thread lock. Generation is guarded by one
    asyncio lock per fingerprint so that concurrent misses for the same
    persona trigger a single batch request.
    """

    def __init__(
        self,
        generator: GreetingGenerator,
        *,
        batch_size: int = DEFAULT_BATCH_SIZE,
        rng: random.Random | None = None,
    ) -> None:
        self._generator = generator
        self._batch_size = max(1, batch_size)
        self._rng = rng or random.Random()
        self._entries: dict[str, GreetingCacheEntry] = {}
        self._lock = Lock()
        self._generation_locks: dict[str, asyncio.Lock] = {}

    @property
    def batch_size(self) -> int:
        return self._batch_size

    async def get(
        self,
        key: str,
        *,
        user_name: str,
        bot_name: str,
        persona_prompt: str,
    ) -> str:
        """Return a greeting for ``key``, generating a batch on the first request.

        Args:
            key: Fingerprint from :func:`greeting_fingerprint`.
            user_name: Name of the user being greeted.
            bot_name: Name the assistant introduces itself with.
            persona_prompt: Persona description passed to the generator.

        Returns:
            A cached candidate, or the templated fallback when the batch could
            not be generated or parsed. The fallback is never cached.
        """

        cached = self.peek(key)
        if cached is not None:
            LOGGER.debug("Greeting cache hit for %s", key)
            return cached

        async with self._generation_lock(key):
            # Another task may have filled the entry while we waited.
            cached = self.peek(key)
            if cached is not None:
                return cached

            LOGGER.info("Greeting cache miss for %s; generating %d greetings", key, self._batch_size)
            candidates = await self._generate(
                user_name=user_name, bot_name=bot_name, persona_prompt=persona_prompt
            )
            if not candidates:
                LOGGER.warning("No usable greetings generated for %s; using fallback", key)
                return fallback_greeting(user_name, bot_name)

            entry = GreetingCacheEntry(fingerprint=key, candidates=tuple(candidates), used_indices={0})
            with self._lock:
                self._entries[key] = entry
            LOGGER.info("Cached %d greetings for %s", len(candidates), key)
            return entry.candidates[0]

    def peek(self, key: str) -> str | None:
        """Select a cached greeting without ever triggering generation."""

        with self._lock:
            entry = self._entries.get(key)
            if entry is None or not entry.candidates:
                return None
            return self._select(entry)

    def entry(self, key: str) -> GreetingCacheEntry | None:
        with self._lock:
            return self._entries.get(key)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def _select(self, entry: GreetingCacheEntry) -> str:
        if len(entry.used_indices) >= len(entry.candidates):
            LOGGER.debug("All greetings used for %s; starting a new cycle", entry.fingerprint)
            entry.used_indices.clear()
        unused = [index for index in range(len(entry.candidates)) if index not in entry.used_indices]
        choice = self._rng.choice(unused)
        entry.used_indices.add(choice)
        return entry.candidates[choice]

    def _generation_lock(self, key: str) -> asyncio.Lock:
        with self._lock:
            lock = self._generation_locks.get(key)
            if lock is None:
                lock = asyncio.Lock()
                self._generation_locks[key] = lock
            return lock

    async def _generate(self, *, user_name: str, bot_name: str, persona_prompt: str) -> list[str]:
        try:
            text = await self._generator.generate_batch(
                user_name=user_name,
                bot_name=bot_name,
                persona_prompt=persona_prompt,
                count=self._batch_size,
            )
        except Exception:
            LOGGER.exception("Greeting batch generation failed")
            return []
        greetings = parse_greeting_batch(text)
        LOGGER.debug("Parsed %d greetings from batch response", len(greetings))
        return greetings
