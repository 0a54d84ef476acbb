"""Pydantic v2 models for canonical session events."""

from __future__ import annotations

import time
from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Discriminator, Field, Tag

Role = Literal["user", "assistant"]

#: Closed vocabulary every backend tool name is normalized into.
ToolKind = Literal["bash", "read", "write", "grep", "web", "mcp", "task"]

PermissionScope = Literal["once", "session", "project"]


class _EventBase(BaseModel):
    """Common envelope fields shared by every canonical event."""

    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    ts: float = Field(
        default_factory=time.time,
        description="Epoch seconds at which the producing adapter saw the record",
    )
    seq: int = Field(
        default=0,
        ge=0,
        description="Monotonic sequence number stamped by the session log",
    )


class ContentPart(BaseModel):
    """One typed part of a message body (text, image reference, ...)."""

    model_config = ConfigDict(extra="allow")

    type: str = Field(description="Part type, e.g. 'text' or 'image'")
    text: str | None = Field(default=None, description="Text payload, if any")


class MessageEvent(_EventBase):
    """A whole user or assistant message."""

    type: Literal["message"] = "message"
    id: str = Field(description="Message identifier")
    role: Role = Field(description="Message author")
    text: str = Field(description="Message body")
    content_parts: list[ContentPart] = Field(
        default_factory=list,
        description="Structured body parts (attachments etc.)",
    )
    model: str | None = Field(default=None, description="Model that produced it")
    tokens: int | None = Field(default=None, description="Token count, if known")


class AssistantDeltaEvent(_EventBase):
    """An incremental fragment of an in-progress assistant message."""

    type: Literal["assistant_delta"] = "assistant_delta"
    id: str = Field(description="Assistant message identifier")
    chunk: str = Field(description="Text fragment")


class AssistantCompleteEvent(_EventBase):
    """Final authoritative text for an assistant message id."""

    type: Literal["assistant_complete"] = "assistant_complete"
    id: str = Field(description="Assistant message identifier")
    text: str = Field(description="Complete message text")
    interrupted: bool = Field(
        default=False,
        description="True when the turn was cut short and the text is partial",
    )


class ToolStartEvent(_EventBase):
    """A tool invocation began."""

    type: Literal["tool_start"] = "tool_start"
    id: str = Field(description="Tool invocation identifier")
    tool_kind: ToolKind = Field(description="Normalized tool kind")
    name: str = Field(default="", description="Backend-specific tool name")
    args: dict[str, Any] = Field(default_factory=dict, description="Tool arguments")


class ToolOutputEvent(_EventBase):
    """Output produced by a running (or finished) tool."""

    type: Literal["tool_output"] = "tool_output"
    id: str = Field(description="Tool invocation identifier")
    chunk: str = Field(default="", description="Output fragment")
    done: bool = Field(default=False, description="Whether the tool has finished")
    exit_code: int | None = Field(default=None, description="Process exit code")


class ThinkingUpdateEvent(_EventBase):
    """Reasoning trace fragment, kept apart from the visible reply."""

    type: Literal["thinking"] = "thinking"
    id: str = Field(description="Reasoning block identifier")
    text: str = Field(description="Reasoning text")
    done: bool = Field(default=False, description="Whether the block is complete")
    parent_id: str | None = Field(
        default=None,
        description="Assistant message the reasoning belongs to",
    )


class PermissionRequestEvent(_EventBase):
    """The agent asked for permission to use tools."""

    type: Literal["permission_request"] = "permission_request"
    id: str = Field(description="Request identifier")
    tools: list[str] = Field(default_factory=list, description="Requested tool kinds")
    scope: PermissionScope = Field(default="once", description="Requested scope")
    prompt: str = Field(default="", description="Prompt text shown by the agent")


class PermissionDecisionEvent(_EventBase):
    """A collaborator answered a permission request."""

    type: Literal["permission_decision"] = "permission_decision"
    id: str = Field(description="Identifier of the request being answered")
    allow: bool = Field(description="Whether the request was granted")
    scope: PermissionScope = Field(default="once", description="Granted scope")


class FileSnapshot(BaseModel):
    """Pre-mutation content of one file."""

    model_config = ConfigDict(extra="forbid")

    path: str = Field(description="Path as named by the tool call")
    original_content: str = Field(default="", description="Content before mutation")


class CheckpointCreateEvent(_EventBase):
    """Best-effort snapshot taken before a mutating tool runs."""

    type: Literal["checkpoint_create"] = "checkpoint_create"
    trigger: str = Field(description="What caused the checkpoint")
    file_snapshots: list[FileSnapshot] = Field(
        default_factory=list,
        description="Captured files (empty for marker checkpoints)",
    )


class CostUpdateEvent(_EventBase):
    """Spend and token usage reported for a run."""

    type: Literal["cost_update"] = "cost_update"
    usd: float = Field(default=0.0, ge=0, description="Cost in US dollars")
    tokens_in: int = Field(default=0, ge=0, description="Input tokens")
    tokens_out: int = Field(default=0, ge=0, description="Output tokens")


class TelemetryTokensEvent(_EventBase):
    """Token and latency counters recovered from backend telemetry."""

    type: Literal["telemetry_tokens"] = "telemetry_tokens"
    tokens_in: int = Field(default=0, ge=0, description="Input tokens")
    tokens_out: int = Field(default=0, ge=0, description="Output tokens")
    cached_tokens: int = Field(default=0, ge=0, description="Cached input tokens")
    thoughts_tokens: int = Field(default=0, ge=0, description="Reasoning tokens")
    tool_tokens: int = Field(default=0, ge=0, description="Tool-use tokens")
    latency_ms: int = Field(default=0, ge=0, description="Request latency")


class ModelUpdateEvent(_EventBase):
    """The model serving the conversation changed (None = backend default)."""

    type: Literal["model_update"] = "model_update"
    model: str | None = Field(default=None, description="Model identifier")


class ThreadUpdateEvent(_EventBase):
    """Backend conversation id that later turns resume."""

    type: Literal["thread_update"] = "thread_update"
    thread_id: str = Field(description="Backend thread or session identifier")


class ErrorEvent(_EventBase):
    """A subprocess-level failure surfaced to collaborators."""

    type: Literal["error"] = "error"
    message: str = Field(description="Error description")
    exit_code: int | None = Field(default=None, description="Process exit code")
    context: str | None = Field(
        default=None,
        description="Error context: subprocess, spawn, backend, ...",
    )


class RawEvent(_EventBase):
    """A record the adapter did not recognize, passed through untouched."""

    type: Literal["raw"] = "raw"
    payload: Any = Field(description="Original decoded record")


def _event_discriminator(v: Any) -> str:
    """Extract the discriminator value from raw data or a model instance."""
    if isinstance(v, dict):
        return str(v.get("type", ""))
    return str(getattr(v, "type", ""))


CanonicalEvent = Annotated[
    Annotated[MessageEvent, Tag("message")]
    | Annotated[AssistantDeltaEvent, Tag("assistant_delta")]
    | Annotated[AssistantCompleteEvent, Tag("assistant_complete")]
    | Annotated[ToolStartEvent, Tag("tool_start")]
    | Annotated[ToolOutputEvent, Tag("tool_output")]
    | Annotated[ThinkingUpdateEvent, Tag("thinking")]
    | Annotated[PermissionRequestEvent, Tag("permission_request")]
    | Annotated[PermissionDecisionEvent, Tag("permission_decision")]
    | Annotated[CheckpointCreateEvent, Tag("checkpoint_create")]
    | Annotated[CostUpdateEvent, Tag("cost_update")]
    | Annotated[TelemetryTokensEvent, Tag("telemetry_tokens")]
    | Annotated[ModelUpdateEvent, Tag("model_update")]
    | Annotated[ThreadUpdateEvent, Tag("thread_update")]
    | Annotated[ErrorEvent, Tag("error")]
    | Annotated[RawEvent, Tag("raw")],
    Discriminator(_event_discriminator),
]
"""Discriminated union of all canonical event types."""
