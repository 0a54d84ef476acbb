"""Shared machinery for per-backend stream adapters."""

from __future__ import annotations

import json
import logging
import uuid
from pathlib import Path
from typing import Any, Literal

from chorus.checkpoint import CheckpointTrigger
from chorus.constants import INTERRUPTED_MARKER
from chorus.events.models import (
    AssistantCompleteEvent,
    AssistantDeltaEvent,
    CanonicalEvent,
    ErrorEvent,
    RawEvent,
    ToolOutputEvent,
    ToolStartEvent,
)
from chorus.stream.lines import LineBuffer

logger = logging.getLogger(__name__)

AdapterState = Literal["idle", "streaming"]


def new_id(prefix: str) -> str:
    """Return a fresh identifier such as ``claude_3f2a9c01b4de``."""
    return f"{prefix}_{uuid.uuid4().hex[:12]}"


def diff_text(prev: str, nxt: str) -> str:
    """Return the part of *nxt* not already covered by *prev*.

    Backends that resend the whole text so far are turned into deltas by
    stripping the common prefix.
    """
    if not nxt:
        return ""
    if not prev:
        return nxt
    if nxt.startswith(prev):
        return nxt[len(prev) :]
    i = 0
    limit = min(len(prev), len(nxt))
    while i < limit and prev[i] == nxt[i]:
        i += 1
    return nxt[i:]


def choose_final_text(accumulated: str, final: str | None) -> str:
    """Pick the completion text for a message.

    The backend's own final text wins whenever it is non-empty and at least
    as long as what the deltas added up to; some backends normalize
    whitespace so the two are not always byte-identical.
    """
    if final and len(final) >= len(accumulated):
        return final
    return accumulated or (final or "")


class StreamAdapter:
    """Translate one backend's raw stdout into canonical events.

    One instance per session.  ``feed()`` accepts arbitrary byte chunks and
    returns the events completed by them; ``finish()`` and ``interrupt()``
    finalize whatever is still in flight.  Every ``ToolStartEvent`` passes
    the checkpoint trigger first so that a resulting checkpoint lands just
    before it.
    """

    #: Backend family name, used as the id prefix for generated ids.
    protocol: str = ""

    def __init__(
        self,
        name: str,
        checkpoints: CheckpointTrigger | None = None,
    ) -> None:
        self.name = name
        self._checkpoints = checkpoints or CheckpointTrigger()
        self._lines = LineBuffer(name)
        self._buffers: dict[str, str] = {}
        self._current_id: str | None = None
        self._open_tools: set[str] = set()
        self._produced = False
        self._resume_id: str | None = None

    # ------------------------------------------------------------------ #
    # Public API
    # ------------------------------------------------------------------ #

    @property
    def state(self) -> AdapterState:
        return "streaming" if self._buffers else "idle"

    @property
    def streaming_message_id(self) -> str | None:
        """Id of the message currently receiving deltas, if any."""
        if self._current_id in self._buffers:
            return self._current_id
        return next(reversed(self._buffers), None)

    @property
    def accumulated_text(self) -> str:
        message_id = self.streaming_message_id
        return self._buffers.get(message_id, "") if message_id else ""

    @property
    def resume_id(self) -> str | None:
        """Backend conversation id that a follow-up turn should resume."""
        return self._resume_id

    @property
    def produced_output(self) -> bool:
        """Whether the current turn yielded any event."""
        return self._produced

    def begin_turn(self, workdir: Path | None = None) -> None:
        """Clear per-turn state before a new subprocess starts streaming."""
        self._lines.reset()
        self._buffers.clear()
        self._current_id = None
        self._open_tools.clear()
        self._produced = False
        if workdir is not None:
            self._checkpoints.workdir = workdir

    def reset(self) -> None:
        """Forget everything, including the conversation to resume."""
        self.begin_turn()
        self._resume_id = None

    def feed(self, chunk: bytes) -> list[CanonicalEvent]:
        events: list[CanonicalEvent] = []
        for line in self._lines.feed(chunk):
            events.extend(self._parse_line(line))
        return self._finalize(events)

    def feed_telemetry(self, text: str) -> list[CanonicalEvent]:
        """Consume side-channel telemetry text.  Most backends have none."""
        return []

    def finish(self, exit_code: int | None = 0) -> list[CanonicalEvent]:
        """The stream ended; finalize partial state.

        A partial message is kept as the message's final content; when the
        process failed it is also marked interrupted.  A failed process that
        produced nothing at all yields a single error event.
        """
        events: list[CanonicalEvent] = []
        tail = self._lines.flush()
        if tail.strip():
            events.extend(self._parse_line(tail))
        events.extend(self._end_of_stream())
        failed = exit_code is not None and exit_code != 0
        events = self._finalize(events)
        events.extend(self._flush_partials(interrupted=failed))
        if failed and not self._produced:
            logger.error("%s: exited with code %s and no output", self.name, exit_code)
            events.append(
                ErrorEvent(
                    message=f"{self.name} exited with code {exit_code}",
                    exit_code=exit_code,
                    context="subprocess",
                )
            )
        self._produced = True
        return events

    def interrupt(self) -> list[CanonicalEvent]:
        """Cut the turn short, flushing partial messages as interrupted."""
        self._lines.reset()
        return self._flush_partials(interrupted=True)

    # ------------------------------------------------------------------ #
    # Override points
    # ------------------------------------------------------------------ #

    def _parse_line(self, line: str) -> list[CanonicalEvent]:
        raise NotImplementedError

    def _end_of_stream(self) -> list[CanonicalEvent]:
        """Events owed at end of stream, before partials are flushed."""
        return []

    # ------------------------------------------------------------------ #
    # Helpers for subclasses
    # ------------------------------------------------------------------ #

    def _delta(self, message_id: str, chunk: str) -> AssistantDeltaEvent:
        self._current_id = message_id
        self._buffers[message_id] = self._buffers.get(message_id, "") + chunk
        return AssistantDeltaEvent(id=message_id, chunk=chunk)

    def _complete(
        self,
        message_id: str,
        final_text: str | None = None,
    ) -> AssistantCompleteEvent | None:
        accumulated = self._buffers.pop(message_id, "")
        if self._current_id == message_id:
            self._current_id = None
        text = choose_final_text(accumulated, final_text)
        if not text:
            return None
        return AssistantCompleteEvent(id=message_id, text=text)

    def _flush_partials(self, interrupted: bool) -> list[CanonicalEvent]:
        events: list[CanonicalEvent] = []
        for message_id, text in list(self._buffers.items()):
            if interrupted:
                marked = f"{text}\n\n{INTERRUPTED_MARKER}" if text else INTERRUPTED_MARKER
                logger.info("%s: finalizing interrupted message %s", self.name, message_id)
                events.append(
                    AssistantCompleteEvent(id=message_id, text=marked, interrupted=True)
                )
            elif text:
                events.append(AssistantCompleteEvent(id=message_id, text=text))
        self._buffers.clear()
        self._current_id = None

        for tool_id in sorted(self._open_tools):
            events.append(ToolOutputEvent(id=tool_id, done=True))
        self._open_tools.clear()
        if events:
            self._produced = True
        return events

    def _finalize(self, events: list[CanonicalEvent]) -> list[CanonicalEvent]:
        out: list[CanonicalEvent] = []
        for event in events:
            if isinstance(event, ToolStartEvent):
                checkpoint = self._checkpoints.inspect(event)
                if checkpoint is not None:
                    out.append(checkpoint)
                self._open_tools.add(event.id)
            elif isinstance(event, ToolOutputEvent) and event.done:
                self._open_tools.discard(event.id)
            out.append(event)
        if out:
            self._produced = True
        return out


class JsonLineAdapter(StreamAdapter):
    """Adapter for backends that print one JSON record per line."""

    def _parse_line(self, line: str) -> list[CanonicalEvent]:
        line = line.strip()
        if not line:
            return []
        try:
            record = json.loads(line)
        except json.JSONDecodeError:
            logger.warning("%s: malformed JSON record: %s", self.name, line[:200])
            return []
        if not isinstance(record, dict):
            return [RawEvent(payload=record)]
        try:
            return self._handle_record(record)
        except (KeyError, TypeError, ValueError, AttributeError) as exc:
            logger.warning(
                "%s: could not interpret %s record: %s",
                self.name,
                record.get("type"),
                exc,
            )
            return [RawEvent(payload=record)]

    def _handle_record(self, record: dict[str, Any]) -> list[CanonicalEvent]:
        raise NotImplementedError
