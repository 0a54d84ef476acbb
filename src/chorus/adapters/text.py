"""Adapter for agent CLIs that print plain prose (Gemini, Qwen)."""

from __future__ import annotations

import logging
import re
from pathlib import Path

from chorus.adapters.base import StreamAdapter, new_id
from chorus.adapters.tools import map_tool_kind
from chorus.checkpoint import CheckpointTrigger
from chorus.events.models import (
    CanonicalEvent,
    PermissionRequestEvent,
    TelemetryTokensEvent,
    ToolOutputEvent,
    ToolStartEvent,
)
from chorus.stream.sanitizer import sanitize
from chorus.stream.telemetry import (
    Extraction,
    TelemetryDecoder,
    TelemetryExtractor,
    ToolCallDescriptor,
)

logger = logging.getLogger(__name__)

#: A confirmation prompt the CLI is blocked on.
_PERMISSION_PROMPT_RE = re.compile(
    r"\b(allow|approve|proceed|confirm|permission)\b.*(\(y/n\)|\[y/n\]|\by/n\b|yes/no)",
    re.IGNORECASE,
)


class TextAdapter(StreamAdapter):
    """Turns sanitized prose into assistant deltas.

    Each line is sanitized, telemetry objects are cut out of it and decoded,
    and what remains is streamed as the turn's single assistant message.
    The same decoder handles the telemetry side-channel file, so a tool call
    printed to stdout and logged to the file is reported once.
    """

    protocol = "text"

    def __init__(
        self,
        name: str,
        noise: tuple[re.Pattern[str], ...] = (),
        checkpoints: CheckpointTrigger | None = None,
    ) -> None:
        super().__init__(name, checkpoints)
        self._noise = noise
        self._stdout = TelemetryExtractor()
        self._side_channel = TelemetryExtractor(all_json=True)
        self._decoder = TelemetryDecoder(name)
        self._message_id: str | None = None

    def begin_turn(self, workdir: Path | None = None) -> None:
        super().begin_turn(workdir)
        self._stdout = TelemetryExtractor()
        self._side_channel = TelemetryExtractor(all_json=True)
        self._decoder.reset()
        self._message_id = None

    def feed_telemetry(self, text: str) -> list[CanonicalEvent]:
        extraction = self._side_channel.feed(text)
        return self._finalize(self._decode_blocks(extraction))

    def _parse_line(self, line: str) -> list[CanonicalEvent]:
        clean = sanitize(line, self._noise)
        if not clean:
            return []
        return self._consume(self._stdout.feed(clean))

    def _end_of_stream(self) -> list[CanonicalEvent]:
        events = self._consume(self._stdout.flush())
        events.extend(self._decode_blocks(self._side_channel.flush()))
        return events

    def _consume(self, extraction: Extraction) -> list[CanonicalEvent]:
        events = self._decode_blocks(extraction)
        prose = extraction.prose
        if not prose:
            return events

        kept: list[str] = []
        for line in prose.splitlines(keepends=True):
            if _PERMISSION_PROMPT_RE.search(line):
                events.append(
                    PermissionRequestEvent(
                        id=new_id("perm"),
                        tools=[],
                        prompt=line.strip(),
                    )
                )
                continue
            kept.append(line)
        text = "".join(kept)

        # Blank lines before the first words are not part of the reply.
        if self._message_id is None:
            text = text.lstrip("\n")
            if not text.strip():
                return events
            self._message_id = new_id(self.name)
        if text:
            events.append(self._delta(self._message_id, text))
        return events

    def _decode_blocks(self, extraction: Extraction) -> list[CanonicalEvent]:
        events: list[CanonicalEvent] = []
        for block in extraction.blocks:
            if block.document is None:
                continue
            for item in self._decoder.decode(block.document):
                if isinstance(item, TelemetryTokensEvent):
                    events.append(item)
                elif isinstance(item, ToolCallDescriptor):
                    events.extend(self._tool_events(item))
        return events

    def _tool_events(self, call: ToolCallDescriptor) -> list[CanonicalEvent]:
        tool_id = new_id("tool")
        summary = f"called {call.name}"
        if call.args:
            summary += " with " + ", ".join(sorted(call.args))
        return [
            ToolStartEvent(
                id=tool_id,
                tool_kind=map_tool_kind(call.name),
                name=call.name,
                args=call.args,
            ),
            ToolOutputEvent(id=tool_id, chunk=summary, done=True),
        ]
