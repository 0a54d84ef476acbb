"""Session event log — bounded, ordered event store with message reconciliation.

Adapters append canonical events; the log stamps each accepted event with a
sequence number and keeps them in order.  Assistant text is reconciled: all
deltas and completions for one message id collapse into a single
:class:`ReconciledMessage` entry that is updated in place, so a consumer
never sees the same reply twice.

Precedence for a full-text assistant event (``MessageEvent`` or
``AssistantCompleteEvent``) with id ``X``:

1. A message with id ``X`` (or aliased to ``X``) exists: merge into it.
   Text already contained in it is dropped, an extension replaces, a
   completion of a streaming message supersedes its deltas, and unrelated
   text is appended as a new paragraph.
2. The most recent assistant message was created after the last user
   message: ``X`` becomes an alias of it and the event merges as in 1.
3. Otherwise a new message is created.

Before any of these, text identical to one of the last few assistant
messages is rejected, unless the event is finishing a message that is
still streaming.

The log is not thread-safe; all appends must come from one task.
"""

from __future__ import annotations

import logging
from collections import OrderedDict
from collections.abc import Callable
from typing import Any

from chorus.constants import (
    DEFAULT_DEDUP_WINDOW,
    DEFAULT_MAX_EVENTS,
    DEFAULT_MAX_MESSAGES,
)
from chorus.events.models import (
    AssistantCompleteEvent,
    AssistantDeltaEvent,
    CanonicalEvent,
    CheckpointCreateEvent,
    CostUpdateEvent,
    MessageEvent,
    ModelUpdateEvent,
    PermissionDecisionEvent,
    PermissionRequestEvent,
    TelemetryTokensEvent,
    ThreadUpdateEvent,
    ToolOutputEvent,
    ToolStartEvent,
)
from chorus.session.models import (
    CheckpointRecord,
    LogUpdate,
    ReconciledMessage,
    ToolRun,
    UsageTotals,
)

logger = logging.getLogger(__name__)

Listener = Callable[[LogUpdate], None]

_TextEvent = MessageEvent | AssistantCompleteEvent | AssistantDeltaEvent

_PARAGRAPH = "\n\n"


class SessionEventLog:
    """Append-only, bounded store of one session's canonical events."""

    def __init__(
        self,
        max_events: int = DEFAULT_MAX_EVENTS,
        max_messages: int = DEFAULT_MAX_MESSAGES,
        dedup_window: int = DEFAULT_DEDUP_WINDOW,
        name: str = "",
    ) -> None:
        if max_events < 1 or max_messages < 1:
            msg = "max_events and max_messages must be positive"
            raise ValueError(msg)
        self.name = name
        self._max_events = max_events
        self._max_messages = max_messages
        self._dedup_window = dedup_window
        self._listeners: list[Listener] = []
        self._init_state()

    def _init_state(self) -> None:
        self._entries: OrderedDict[int, Any] = OrderedDict()
        self._messages: OrderedDict[str, ReconciledMessage] = OrderedDict()
        self._aliases: dict[str, str] = {}
        self._tool_runs: dict[str, ToolRun] = {}
        self._unattached: OrderedDict[str, list[ToolOutputEvent]] = OrderedDict()
        self._unattached_count = 0
        self._usage = UsageTotals()
        self._pending_permission: PermissionRequestEvent | None = None
        self._model: str | None = None
        self._thread_id: str | None = None
        self._last_user_seq = 0
        self._next_seq = 1

    # ------------------------------------------------------------------
    # Listeners
    # ------------------------------------------------------------------

    def add_listener(self, listener: Listener) -> None:
        """Register *listener* for every accepted append or update."""
        self._listeners.append(listener)

    def remove_listener(self, listener: Listener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _notify(self, update: LogUpdate) -> None:
        for listener in list(self._listeners):
            try:
                listener(update)
            except Exception:
                logger.exception("%s: log listener failed", self.name)

    # ------------------------------------------------------------------
    # Appending
    # ------------------------------------------------------------------

    def append(self, event: CanonicalEvent) -> None:
        """Add *event*, reconciling it into existing state where it applies."""
        if isinstance(event, MessageEvent | AssistantCompleteEvent | AssistantDeltaEvent):
            updates = self._reconcile(event)
        elif isinstance(event, ToolOutputEvent):
            updates = self._append_tool_output(event)
        else:
            updates = self._append_plain(event)

        for update in updates:
            self._notify(update)
        if updates:
            self._enforce_bounds()

    def extend(self, events: list[CanonicalEvent]) -> None:
        for event in events:
            self.append(event)

    def _stamp(self, event: CanonicalEvent) -> int:
        event.seq = self._next_seq
        self._next_seq += 1
        return event.seq

    # ------------------------------------------------------------------
    # Message reconciliation
    # ------------------------------------------------------------------

    def _reconcile(self, event: _TextEvent) -> list[LogUpdate]:
        message = self._find(event.id)

        if isinstance(event, AssistantDeltaEvent):
            if not event.chunk:
                return []
            if message is None:
                return [self._create(event, "assistant", event.chunk, streaming=True)]
            return self._apply_delta(message, event)

        role = event.role if isinstance(event, MessageEvent) else "assistant"
        if role == "assistant":
            target = message if message is not None else self._turn_message()
            finishing = target is not None and target.streaming
            if not finishing and self._is_recent_duplicate(event.text):
                logger.debug("%s: dropping re-emitted reply %s", self.name, event.id)
                return []
            if message is None and target is not None:
                logger.debug("%s: migrating message id %s -> %s", self.name, event.id, target.id)
                self._aliases[event.id] = target.id
                target.aliases.append(event.id)
                message = target

        if message is None:
            if not event.text:
                return []
            return [self._create(event, role, event.text, streaming=False)]
        return self._apply_full(message, event)

    def _find(self, message_id: str) -> ReconciledMessage | None:
        return self._messages.get(self._aliases.get(message_id, message_id))

    def _turn_message(self) -> ReconciledMessage | None:
        """The latest assistant message, if it belongs to the current turn."""
        for message in reversed(self._messages.values()):
            if message.role == "assistant":
                return message if message.seq > self._last_user_seq else None
        return None

    def _is_recent_duplicate(self, text: str) -> bool:
        if not text or self._dedup_window <= 0:
            return False
        checked = 0
        for message in reversed(self._messages.values()):
            if message.role != "assistant":
                continue
            if message.text == text:
                return True
            checked += 1
            if checked >= self._dedup_window:
                break
        return False

    def _create(
        self,
        event: _TextEvent,
        role: str,
        text: str,
        streaming: bool,
    ) -> LogUpdate:
        seq = self._stamp(event)
        message = ReconciledMessage(
            id=event.id,
            role=role,
            text=text,
            seq=seq,
            ts=event.ts,
            streaming=streaming,
            interrupted=getattr(event, "interrupted", False),
        )
        if isinstance(event, MessageEvent):
            message.content_parts = list(event.content_parts)
            message.model = event.model
            message.tokens = event.tokens
        self._messages[message.id] = message
        self._entries[seq] = message
        if role == "user":
            self._last_user_seq = seq
        return LogUpdate(action="append", event=message.to_event(), source=event)

    def _apply_delta(
        self,
        message: ReconciledMessage,
        event: AssistantDeltaEvent,
    ) -> list[LogUpdate]:
        if message.streaming:
            message.text += event.chunk
        elif message.text:
            # A finalized message reopened by new deltas starts a paragraph.
            message.segment_start = len(message.text) + len(_PARAGRAPH)
            message.text += _PARAGRAPH + event.chunk
        else:
            message.segment_start = 0
            message.text = event.chunk
        message.streaming = True
        message.interrupted = False
        self._stamp(event)
        return [LogUpdate(action="update", event=message.to_event(), source=event)]

    def _apply_full(
        self,
        message: ReconciledMessage,
        event: MessageEvent | AssistantCompleteEvent,
    ) -> list[LogUpdate]:
        incoming = event.text
        current = message.text

        if message.streaming:
            if not incoming or incoming == current:
                text = current
            elif message.segment_start == 0:
                text = incoming
            else:
                base = current[: message.segment_start]
                if incoming.startswith(base) or incoming.startswith(current):
                    text = incoming
                else:
                    text = base + incoming
            message.streaming = False
            message.segment_start = 0
            message.interrupted = getattr(event, "interrupted", False)
        elif not incoming or incoming in current:
            logger.debug("%s: duplicate text for message %s", self.name, message.id)
            return []
        elif incoming.startswith(current):
            text = incoming
        else:
            text = current + _PARAGRAPH + incoming

        message.text = text
        if isinstance(event, MessageEvent):
            if event.content_parts:
                message.content_parts = list(event.content_parts)
            message.model = event.model or message.model
            message.tokens = event.tokens if event.tokens is not None else message.tokens
        self._stamp(event)
        return [LogUpdate(action="update", event=message.to_event(), source=event)]

    # ------------------------------------------------------------------
    # Tools and everything else
    # ------------------------------------------------------------------

    def _append_tool_output(self, event: ToolOutputEvent) -> list[LogUpdate]:
        run = self._tool_runs.get(event.id)
        if run is None:
            self._hold(event)
            return []
        return [self._attach(run, event)]

    def _hold(self, event: ToolOutputEvent) -> None:
        logger.debug("%s: holding output for unknown tool %s", self.name, event.id)
        self._unattached.setdefault(event.id, []).append(event)
        self._unattached_count += 1
        while self._unattached_count > self._max_events:
            tool_id, fragments = next(iter(self._unattached.items()))
            fragments.pop(0)
            self._unattached_count -= 1
            if not fragments:
                del self._unattached[tool_id]
            logger.warning("%s: discarding unattached output for %s", self.name, tool_id)

    def _attach(self, run: ToolRun, event: ToolOutputEvent) -> LogUpdate:
        seq = self._stamp(event)
        self._entries[seq] = event
        run.output += event.chunk
        run.done = run.done or event.done
        if event.exit_code is not None:
            run.exit_code = event.exit_code
        return LogUpdate(action="append", event=event, source=event)

    def _append_plain(self, event: CanonicalEvent) -> list[LogUpdate]:
        if isinstance(event, ToolStartEvent) and event.id in self._tool_runs:
            logger.debug("%s: duplicate tool start %s", self.name, event.id)
            return []

        seq = self._stamp(event)
        self._entries[seq] = event
        updates = [LogUpdate(action="append", event=event, source=event)]

        if isinstance(event, ToolStartEvent):
            run = ToolRun(
                id=event.id,
                tool_kind=event.tool_kind,
                name=event.name,
                args=event.args,
                started_seq=seq,
            )
            self._tool_runs[event.id] = run
            held = self._unattached.pop(event.id, [])
            self._unattached_count -= len(held)
            for fragment in held:
                updates.append(self._attach(run, fragment))
        elif isinstance(event, CostUpdateEvent):
            self._usage.usd += event.usd
            self._usage.tokens_in += event.tokens_in
            self._usage.tokens_out += event.tokens_out
        elif isinstance(event, TelemetryTokensEvent):
            self._usage.tokens_in += event.tokens_in
            self._usage.tokens_out += event.tokens_out
            self._usage.cached_tokens += event.cached_tokens
            self._usage.latency_ms += event.latency_ms
        elif isinstance(event, PermissionRequestEvent):
            self._pending_permission = event
        elif isinstance(event, PermissionDecisionEvent):
            if self._pending_permission is not None and self._pending_permission.id == event.id:
                self._pending_permission = None
        elif isinstance(event, ModelUpdateEvent):
            self._model = event.model
        elif isinstance(event, ThreadUpdateEvent):
            self._thread_id = event.thread_id
        return updates

    # ------------------------------------------------------------------
    # Bounds
    # ------------------------------------------------------------------

    def _enforce_bounds(self) -> None:
        while len(self._messages) > self._max_messages:
            _, message = self._messages.popitem(last=False)
            self._entries.pop(message.seq, None)
            self._forget_aliases(message)
        while len(self._entries) > self._max_events:
            _, entry = self._entries.popitem(last=False)
            if isinstance(entry, ReconciledMessage):
                self._messages.pop(entry.id, None)
                self._forget_aliases(entry)
            elif isinstance(entry, ToolStartEvent):
                run = self._tool_runs.get(entry.id)
                if run is not None and run.started_seq == entry.seq:
                    del self._tool_runs[entry.id]

    def _forget_aliases(self, message: ReconciledMessage) -> None:
        for alias in message.aliases:
            self._aliases.pop(alias, None)

    # ------------------------------------------------------------------
    # Views
    # ------------------------------------------------------------------

    def __len__(self) -> int:
        return len(self._entries)

    def snapshot(self) -> list[CanonicalEvent]:
        """All retained events in order, messages rendered with their latest text."""
        return [
            entry.to_event() if isinstance(entry, ReconciledMessage) else entry
            for entry in self._entries.values()
        ]

    def messages(self) -> list[ReconciledMessage]:
        return list(self._messages.values())

    def get_message(self, message_id: str) -> ReconciledMessage | None:
        """Look up a message by its id or any id migrated onto it."""
        return self._find(message_id)

    def tool_runs(self) -> list[ToolRun]:
        return list(self._tool_runs.values())

    def get_tool_run(self, tool_id: str) -> ToolRun | None:
        return self._tool_runs.get(tool_id)

    def unattached_outputs(self) -> list[ToolOutputEvent]:
        """Tool output still waiting for its start event."""
        return [fragment for fragments in self._unattached.values() for fragment in fragments]

    def checkpoints(self) -> list[CheckpointRecord]:
        return [
            CheckpointRecord.from_event(entry)
            for entry in self._entries.values()
            if isinstance(entry, CheckpointCreateEvent)
        ]

    def usage(self) -> UsageTotals:
        return self._usage.model_copy()

    @property
    def pending_permission(self) -> PermissionRequestEvent | None:
        return self._pending_permission

    @property
    def model(self) -> str | None:
        return self._model

    @property
    def thread_id(self) -> str | None:
        return self._thread_id

    @property
    def streaming_messages(self) -> list[ReconciledMessage]:
        return [m for m in self._messages.values() if m.streaming]

    def clear(self) -> None:
        """Destroy all state; listeners stay registered."""
        self._init_state()
