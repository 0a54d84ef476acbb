"""Reassemble newline-delimited records from arbitrarily split byte chunks."""

from __future__ import annotations

import codecs
import logging

from chorus.constants import MAX_RECORD_BYTES

logger = logging.getLogger(__name__)


class LineBuffer:
    """Incremental UTF-8 decoder that yields only complete lines.

    Reads from a pipe can split a record (or a multi-byte character)
    anywhere; the unfinished tail is held until the next ``feed()`` or
    ``flush()``.  Returned lines keep their trailing ``\\n``.
    """

    def __init__(self, name: str = "", max_line: int = MAX_RECORD_BYTES) -> None:
        self._name = name
        self._max_line = max_line
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._pending = ""
        self._discarding = False

    @property
    def pending(self) -> str:
        """Text received after the last newline."""
        return self._pending

    def feed(self, chunk: bytes) -> list[str]:
        """Add *chunk* and return the lines it completed."""
        text = self._pending + self._decoder.decode(chunk)
        parts = text.split("\n")
        self._pending = parts.pop()

        lines: list[str] = []
        for part in parts:
            if self._discarding:
                # Tail of an oversized record.
                self._discarding = False
                continue
            lines.append(part + "\n")

        if len(self._pending) > self._max_line:
            logger.warning(
                "%s: record exceeds %d bytes, skipping",
                self._name,
                self._max_line,
            )
            self._pending = ""
            self._discarding = True
        return lines

    def flush(self) -> str:
        """Return whatever is left (a final line without newline)."""
        tail = self._pending + self._decoder.decode(b"", final=True)
        self._pending = ""
        if self._discarding:
            self._discarding = False
            return ""
        return tail

    def reset(self) -> None:
        self._decoder.reset()
        self._pending = ""
        self._discarding = False
