"""Incremental text processor that hides open-question blocks from the stream.

Text deltas are passed through immediately unless an opening marker has
been seen, in which case output is held back until the closing marker
arrives. The completed block is parsed once per turn and removed from the
visible text.

Known limitation: a chunk boundary that splits the opening marker itself
(``"<open_qu"`` + ``"estions>"``) is not recognised. The first fragment is
released as visible text and the block will not be extracted.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from .directive_parser import OPEN_MARKER, DirectiveBlock, has_complete_block, strip_directive_block

__all__ = ["StreamOutput", "StreamProcessor"]

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class StreamOutput:
    """Visible text and (at most once per turn) directives released by the processor."""

    text: str = ""
    directives: tuple[DirectiveBlock, ...] | None = None

    @property
    def is_empty(self) -> bool:
        return not self.text and not self.directives


class StreamProcessor:
    """Buffers streamed text and extracts a single directive block per turn."""

    def __init__(self) -> None:
        self._buffer = ""
        self._directives_sent = False

    @property
    def buffer(self) -> str:
        """Text currently held back while waiting for a closing marker."""

        return self._buffer

    @property
    def directives_sent(self) -> bool:
        return self._directives_sent

    def feed(self, delta: str) -> StreamOutput:
        """Consume one text delta and return whatever is safe to show.

        Args:
            delta: The next text fragment in arrival order.

        Returns:
            Visible text released by this delta plus parsed directives when a
            block completed and none has been emitted yet this turn.
        """

        if not delta:
            return StreamOutput()
        self._buffer += delta
        if has_complete_block(self._buffer):
            pending, self._buffer = self._buffer, ""
            return self._extract(pending, strip_whitespace=False)
        if OPEN_MARKER in self._buffer:
            return StreamOutput()
        text, self._buffer = self._buffer, ""
        return StreamOutput(text=text)

    def strip_block(self, text: str) -> StreamOutput:
        """Apply directive stripping to a complete block of text.

        Used for whole assistant blocks and final result text. The stream
        buffer is not touched.
        """

        if not text or not has_complete_block(text):
            return StreamOutput(text=text or "")
        return self._extract(text, strip_whitespace=True)

    def flush(self) -> StreamOutput:
        """Release buffered text at end of turn, even if a block was left unterminated."""

        if not self._buffer:
            return StreamOutput()
        pending, self._buffer = self._buffer, ""
        if has_complete_block(pending):
            return self._extract(pending, strip_whitespace=False)
        if OPEN_MARKER in pending:
            LOGGER.debug("Flushing unterminated open questions block as visible text")
        return StreamOutput(text=pending)

    def reset(self) -> None:
        self._buffer = ""
        self._directives_sent = False

    def _extract(self, text: str, *, strip_whitespace: bool) -> StreamOutput:
        directives, remaining = strip_directive_block(text)
        if strip_whitespace:
            remaining = remaining.strip()
        emitted: tuple[DirectiveBlock, ...] | None = None
        if directives and not self._directives_sent:
            self._directives_sent = True
            emitted = directives
            LOGGER.debug("Extracted %d open question(s)", len(directives))
        elif directives:
            LOGGER.debug("Ignoring additional open questions block in the same turn")
        return StreamOutput(text=remaining, directives=emitted)
