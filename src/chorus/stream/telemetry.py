"""Telemetry extraction — pull embedded JSON diagnostics out of prose streams.

Some agent CLIs print OpenTelemetry records straight into their stdout, in
the middle of the answer text, and also mirror them into a side-channel
log file.  Neither source is NDJSON: objects are pretty-printed, may sit
back to back, and are sometimes JS object notation rather than JSON.

:class:`TelemetryExtractor` finds those regions with a brace-balance scan
and removes them from the prose.  :class:`TelemetryDecoder` turns the
parsed documents into token counters and tool-call descriptors, keeping a
fingerprint set so that a tool call seen twice (stdout and file, or a file
re-read from an older offset) is reported once.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any

from chorus.events.models import TelemetryTokensEvent

logger = logging.getLogger(__name__)

#: Substrings that mark a line opening with ``{`` as a telemetry object.
_BLOCK_MARKERS = (
    "event.name",
    "gemini_cli.",
    "qwen_cli.",
    "opentelemetry",
    "telemetry.sdk",
    "resource",
    "descriptor",
    "attributes",
)

_API_RESPONSE_EVENTS = {
    "gemini_cli.api_response",
    "qwen_cli.api_response",
    "api_response",
}

_TOOL_CALL_EVENTS = {
    "gemini_cli.tool_call",
    "qwen_cli.tool_call",
    "tool_call",
}


@dataclass(frozen=True)
class TelemetryBlock:
    """One region removed from the prose stream.

    Inserting ``raw`` back into the prose at ``offset`` restores the input.
    ``document`` is ``None`` when the region was not valid JSON.
    """

    offset: int
    raw: str
    document: dict[str, Any] | None


@dataclass
class Extraction:
    """Result of one ``feed()``: prose to keep plus the blocks removed."""

    prose: str = ""
    blocks: list[TelemetryBlock] = field(default_factory=list)


@dataclass(frozen=True)
class ToolCallDescriptor:
    """A tool invocation reported through telemetry."""

    name: str
    args: dict[str, Any]

    @property
    def fingerprint(self) -> str:
        args = json.dumps(self.args, sort_keys=True, default=str)
        return f"{self.name}\x00{args}"


def _has_marker(line: str) -> bool:
    lowered = line.lower()
    return any(marker in lowered for marker in _BLOCK_MARKERS)


class _BraceScanner:
    """Tracks ``{``/``}`` nesting, ignoring braces inside string literals."""

    def __init__(self) -> None:
        self.depth = 0
        self._quote: str | None = None
        self._escape = False

    def scan(self, text: str, start: int = 0) -> int:
        """Consume *text* from *start*; return the index that closed the
        outermost object, or ``-1`` if it is still open."""
        for i in range(start, len(text)):
            ch = text[i]
            if self._quote is not None:
                if self._escape:
                    self._escape = False
                elif ch == "\\":
                    self._escape = True
                elif ch == self._quote:
                    self._quote = None
                continue
            if ch in ("\"", "'"):
                self._quote = ch
            elif ch == "{":
                self.depth += 1
            elif ch == "}":
                self.depth -= 1
                if self.depth <= 0:
                    return i
        return -1


class TelemetryExtractor:
    """Streaming splitter of prose and embedded telemetry objects.

    Works line by line; the trailing partial line of each ``feed()`` is held
    back until its newline arrives (or ``flush()``).  With ``all_json=True``
    every line opening with ``{`` starts an object, which suits the
    side-channel telemetry file where there is no prose at all.
    """

    def __init__(self, all_json: bool = False) -> None:
        self._all_json = all_json
        self._partial = ""
        self._tentative: str | None = None
        self._block: list[str] | None = None
        self._scanner = _BraceScanner()
        self._block_offset = 0
        self._prose_len = 0

    @property
    def in_block(self) -> bool:
        return self._block is not None

    def feed(self, text: str) -> Extraction:
        out = Extraction()
        if not text:
            return out
        lines = (self._partial + text).splitlines(keepends=True)
        if lines and not lines[-1].endswith("\n"):
            self._partial = lines.pop()
        else:
            self._partial = ""
        for line in lines:
            self._consume(line, out)
        return out

    def flush(self) -> Extraction:
        """Release everything held back, closing an unterminated object."""
        out = Extraction()
        if self._partial:
            line, self._partial = self._partial, ""
            self._consume(line, out)
        if self._tentative is not None:
            self._emit_prose(self._tentative, out)
            self._tentative = None
        if self._block is not None:
            self._close_block(out)
        return out

    # ------------------------------------------------------------------ #
    # Internal
    # ------------------------------------------------------------------ #

    def _emit_prose(self, text: str, out: Extraction) -> None:
        if text:
            out.prose += text
            self._prose_len += len(text)

    def _open_block(self, text: str, brace_at: int, out: Extraction) -> None:
        self._block = []
        self._scanner = _BraceScanner()
        self._block_offset = self._prose_len
        self._continue_block(text, brace_at, out)

    def _continue_block(self, text: str, start: int, out: Extraction) -> None:
        if self._block is None:
            return
        end = self._scanner.scan(text, start)
        if end < 0:
            self._block.append(text)
            return

        self._block.append(text[: end + 1])
        rest = text[end + 1 :]
        stripped = rest.lstrip()
        if not stripped:
            # Take the line ending with the object so no blank line is left.
            self._block.append(rest)
            self._close_block(out)
        elif stripped.startswith("{"):
            # Back-to-back objects on one line.
            gap = len(rest) - len(stripped)
            self._block.append(rest[:gap])
            self._close_block(out)
            self._open_block(stripped, 0, out)
        else:
            self._close_block(out)
            self._emit_prose(rest, out)

    def _close_block(self, out: Extraction) -> None:
        if self._block is None:
            return
        raw = "".join(self._block)
        self._block = None
        out.blocks.append(
            TelemetryBlock(
                offset=self._block_offset,
                raw=raw,
                document=_parse_document(raw),
            )
        )

    def _consume(self, line: str, out: Extraction) -> None:
        if self._block is not None:
            self._continue_block(line, 0, out)
            return

        stripped = line.strip()

        if self._tentative is not None:
            held, self._tentative = self._tentative, None
            if _has_marker(stripped):
                self._open_block(held, held.index("{"), out)
                self._continue_block(line, 0, out)
                return
            self._emit_prose(held, out)

        if stripped.startswith("{"):
            brace_at = line.index("{")
            if self._all_json or (stripped != "{" and _has_marker(stripped)):
                self._open_block(line, brace_at, out)
                return
            if stripped == "{":
                self._tentative = line
                return

        self._emit_prose(line, out)


def _parse_document(raw: str) -> dict[str, Any] | None:
    try:
        document = json.loads(raw)
    except json.JSONDecodeError:
        logger.debug("Skipping malformed telemetry block (%d chars)", len(raw))
        return None
    if not isinstance(document, dict):
        return None
    return document


def extract(text: str) -> tuple[str, list[TelemetryBlock]]:
    """Split *text* into prose and the telemetry blocks embedded in it."""
    extractor = TelemetryExtractor()
    first = extractor.feed(text)
    rest = extractor.flush()
    return first.prose + rest.prose, first.blocks + rest.blocks


# ---------------------------------------------------------------------- #
# Decoding
# ---------------------------------------------------------------------- #


def _attributes(document: dict[str, Any]) -> dict[str, Any]:
    attrs = document.get("attributes")
    if isinstance(attrs, dict):
        return attrs
    return document


def _count(attrs: dict[str, Any], *keys: str) -> int:
    for key in keys:
        value = attrs.get(key)
        if value is None:
            continue
        try:
            return max(int(value), 0)
        except (TypeError, ValueError):
            continue
    return 0


def _tool_args(raw: Any) -> dict[str, Any]:
    if isinstance(raw, dict):
        return raw
    if isinstance(raw, str):
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError:
            return {"raw": raw}
        if isinstance(parsed, dict):
            return parsed
        return {"raw": raw}
    return {}


class TelemetryDecoder:
    """Maps telemetry documents to canonical token events and tool calls.

    One decoder per session: its fingerprint set is the arbiter between the
    stdout reader and the file poller.
    """

    def __init__(self, name: str = "") -> None:
        self._name = name
        self._seen: set[str] = set()

    def decode(
        self,
        document: dict[str, Any],
    ) -> list[TelemetryTokensEvent | ToolCallDescriptor]:
        attrs = _attributes(document)
        event_name = attrs.get("event.name")

        if event_name in _API_RESPONSE_EVENTS:
            return [
                TelemetryTokensEvent(
                    tokens_in=_count(attrs, "input_token_count", "input_tokens"),
                    tokens_out=_count(attrs, "output_token_count", "output_tokens"),
                    cached_tokens=_count(attrs, "cached_content_token_count"),
                    thoughts_tokens=_count(attrs, "thoughts_token_count"),
                    tool_tokens=_count(attrs, "tool_token_count"),
                    latency_ms=_count(attrs, "duration_ms"),
                )
            ]

        if event_name in _TOOL_CALL_EVENTS:
            name = str(attrs.get("function_name") or attrs.get("name") or "mcp")
            descriptor = ToolCallDescriptor(
                name=name,
                args=_tool_args(attrs.get("function_args", attrs.get("args"))),
            )
            if not self.claim(descriptor):
                logger.debug("%s: duplicate telemetry tool call %s", self._name, name)
                return []
            return [descriptor]

        return []

    def claim(self, descriptor: ToolCallDescriptor) -> bool:
        """Record *descriptor*; ``False`` if it was already emitted."""
        key = descriptor.fingerprint
        if key in self._seen:
            return False
        self._seen.add(key)
        return True

    def reset(self) -> None:
        self._seen.clear()
