"""Session event log, derived aggregates and JSONL persistence."""

from chorus.session.log import Listener, SessionEventLog
from chorus.session.models import (
    CheckpointRecord,
    LogUpdate,
    ReconciledMessage,
    ToolRun,
    UsageTotals,
)
from chorus.session.recorder import SessionRecorder, load_events

__all__ = [
    "CheckpointRecord",
    "Listener",
    "LogUpdate",
    "ReconciledMessage",
    "SessionEventLog",
    "SessionRecorder",
    "ToolRun",
    "UsageTotals",
    "load_events",
]
