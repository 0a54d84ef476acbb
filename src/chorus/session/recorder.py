"""Session recorder — append-only JSONL persistence of canonical events."""

from __future__ import annotations

import logging
import re
import threading
import uuid
from datetime import UTC, datetime
from pathlib import Path
from typing import IO

from pydantic import TypeAdapter, ValidationError

from chorus.events.models import CanonicalEvent
from chorus.session.models import LogUpdate

logger = logging.getLogger(__name__)

#: Session names may only use letters, digits, hyphens and underscores.
_SAFE_NAME_RE = re.compile(r"^[a-zA-Z0-9_-]+$")

_EVENT_ADAPTER: TypeAdapter[CanonicalEvent] = TypeAdapter(CanonicalEvent)


class SessionRecorder:
    """Records canonical events to an append-only JSONL file.

    The events written are the ones adapters produced, not the reconciled
    rows, so a recording replayed through a fresh log rebuilds the same
    state.

    Thread-safe: all writes are serialized through a ``threading.Lock``.
    Crash-safe: the file is flushed after every event.
    """

    def __init__(self, path: Path) -> None:
        self._path = path
        self._lock = threading.Lock()
        self._count = 0
        self._closed = False
        path.parent.mkdir(parents=True, exist_ok=True)
        self._fh: IO[str] | None = path.open("a", encoding="utf-8")

    @classmethod
    def for_session(
        cls,
        name: str,
        sessions_dir: Path | None = None,
    ) -> SessionRecorder:
        """Open ``<dir>/<date>_<name>_<id>.jsonl`` for a new recording."""
        if not _SAFE_NAME_RE.match(name):
            msg = (
                f"Invalid session name {name!r}: must contain only "
                "alphanumeric characters, hyphens, and underscores."
            )
            raise ValueError(msg)
        if sessions_dir is None:
            sessions_dir = Path("sessions")
        date_str = datetime.now(tz=UTC).strftime("%Y-%m-%d")
        return cls(sessions_dir / f"{date_str}_{name}_{uuid.uuid4().hex[:12]}.jsonl")

    @property
    def path(self) -> Path:
        return self._path

    @property
    def event_count(self) -> int:
        """Number of events recorded so far."""
        return self._count

    def record(self, event: CanonicalEvent) -> None:
        """Write *event* as one JSON line.

        Silently drops events after the recorder has been closed.
        """
        with self._lock:
            if self._closed or self._fh is None:
                return
            self._fh.write(event.model_dump_json() + "\n")
            self._fh.flush()
            self._count += 1

    def on_update(self, update: LogUpdate) -> None:
        """Log listener: persist the event behind each accepted change."""
        self.record(update.source)

    def close(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
            if self._fh is not None and not self._fh.closed:
                self._fh.close()

    def __enter__(self) -> SessionRecorder:
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()


def load_events(path: Path) -> list[CanonicalEvent]:
    """Read a recording back into typed events, skipping invalid lines."""
    events: list[CanonicalEvent] = []
    with path.open(encoding="utf-8") as fh:
        for lineno, line in enumerate(fh, start=1):
            line = line.strip()
            if not line:
                continue
            try:
                events.append(_EVENT_ADAPTER.validate_json(line))
            except ValidationError as exc:
                logger.warning("%s:%d: skipping invalid event: %s", path, lineno, exc)
    return events
