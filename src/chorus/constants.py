"""Shared constants and type aliases for the Chorus engine."""

from __future__ import annotations

from typing import Literal

#: Default cap on entries retained by a session log.
DEFAULT_MAX_EVENTS = 50_000

#: Default cap on reconciled messages retained by a session log.
DEFAULT_MAX_MESSAGES = 10_000

#: How many recent assistant messages are checked for verbatim re-emission.
DEFAULT_DEDUP_WINDOW = 5

#: Seconds between telemetry side-channel file polls.
DEFAULT_POLL_INTERVAL = 0.3

#: Seconds an interrupted subprocess gets between SIGTERM and SIGKILL.
DEFAULT_INTERRUPT_GRACE = 3.0

#: Maximum number of turns waiting behind the active one.
DEFAULT_MAX_QUEUE = 100

#: Maximum bytes per record from subprocess stdout (1 MB).
MAX_RECORD_BYTES = 1_048_576

#: Appended to partial text when a turn is cut short.
INTERRUPTED_MARKER = "[interrupted]"

#: Wire protocol families understood by the adapters.
Protocol = Literal["stream-json", "thread-json", "text"]
