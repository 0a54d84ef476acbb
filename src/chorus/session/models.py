"""Aggregates derived from a session's canonical event stream."""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, Field

from chorus.events.models import (
    CanonicalEvent,
    CheckpointCreateEvent,
    ContentPart,
    MessageEvent,
    Role,
    ToolKind,
)


class ReconciledMessage(BaseModel):
    """One logical message: every delta and completion for its id collapsed.

    ``segment_start`` marks where the text currently receiving deltas
    begins; it is non-zero only when a finalized message was reopened by a
    new run of deltas (a second paragraph under the same id).
    """

    id: str
    role: Role
    text: str = ""
    seq: int = Field(ge=0, description="Position of the message in the log")
    ts: float
    streaming: bool = False
    interrupted: bool = False
    segment_start: int = 0
    aliases: list[str] = Field(default_factory=list)
    content_parts: list[ContentPart] = Field(default_factory=list)
    model: str | None = None
    tokens: int | None = None

    def to_event(self) -> MessageEvent:
        return MessageEvent(
            id=self.id,
            role=self.role,
            text=self.text,
            content_parts=list(self.content_parts),
            model=self.model,
            tokens=self.tokens,
            ts=self.ts,
            seq=self.seq,
        )


class ToolRun(BaseModel):
    """Lifecycle of one tool invocation: its start plus all output."""

    id: str
    tool_kind: ToolKind
    name: str = ""
    args: dict[str, Any] = Field(default_factory=dict)
    output: str = ""
    done: bool = False
    exit_code: int | None = None
    started_seq: int = 0


class CheckpointRecord(BaseModel):
    """Summary row for the checkpoint history view."""

    id: str
    ts: float
    trigger: str
    file_count: int

    @classmethod
    def from_event(cls, event: CheckpointCreateEvent) -> CheckpointRecord:
        return cls(
            id=f"ckpt-{event.seq}",
            ts=event.ts,
            trigger=event.trigger,
            file_count=len(event.file_snapshots),
        )


class UsageTotals(BaseModel):
    """Running token and cost counters for display."""

    usd: float = 0.0
    tokens_in: int = 0
    tokens_out: int = 0
    cached_tokens: int = 0
    latency_ms: int = 0


class LogUpdate(BaseModel):
    """Notification passed to log listeners.

    ``event`` is the renderable row (a message snapshot for reconciled
    messages, otherwise the appended event); ``source`` is the canonical
    event that caused the change.
    """

    action: Literal["append", "update"]
    event: CanonicalEvent
    source: CanonicalEvent
