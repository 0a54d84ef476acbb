"""Canonical event model shared by adapters, the session log and consumers."""

from chorus.events.models import (
    AssistantCompleteEvent,
    AssistantDeltaEvent,
    CanonicalEvent,
    CheckpointCreateEvent,
    ContentPart,
    CostUpdateEvent,
    ErrorEvent,
    FileSnapshot,
    MessageEvent,
    ModelUpdateEvent,
    PermissionDecisionEvent,
    PermissionRequestEvent,
    RawEvent,
    Role,
    TelemetryTokensEvent,
    ThinkingUpdateEvent,
    ThreadUpdateEvent,
    ToolKind,
    ToolOutputEvent,
    ToolStartEvent,
)

__all__ = [
    "AssistantCompleteEvent",
    "AssistantDeltaEvent",
    "CanonicalEvent",
    "CheckpointCreateEvent",
    "ContentPart",
    "CostUpdateEvent",
    "ErrorEvent",
    "FileSnapshot",
    "MessageEvent",
    "ModelUpdateEvent",
    "PermissionDecisionEvent",
    "PermissionRequestEvent",
    "RawEvent",
    "Role",
    "TelemetryTokensEvent",
    "ThinkingUpdateEvent",
    "ThreadUpdateEvent",
    "ToolKind",
    "ToolOutputEvent",
    "ToolStartEvent",
]
