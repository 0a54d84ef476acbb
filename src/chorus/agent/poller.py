"""Telemetry file poller — tails a CLI's side-channel telemetry log."""

from __future__ import annotations

import asyncio
import codecs
import logging
from collections.abc import Callable
from pathlib import Path

from chorus.background_loop import BackgroundLoop
from chorus.constants import DEFAULT_POLL_INTERVAL

logger = logging.getLogger(__name__)


class TelemetryPoller(BackgroundLoop):
    """Reads whatever was appended to *path* since the last poll.

    New text is handed to *on_text* on the event loop.  A file that shrank
    (rotated or truncated) is re-read from the start; the consumer's
    fingerprint de-duplication absorbs the overlap.
    """

    def __init__(
        self,
        name: str,
        path: Path | None,
        on_text: Callable[[str], None],
        stop_event: asyncio.Event | None = None,
        interval: float = DEFAULT_POLL_INTERVAL,
    ) -> None:
        super().__init__(stop_event or asyncio.Event(), interval)
        self.name = name
        self._path = path
        self._on_text = on_text
        self._offset = 0
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")

    @property
    def offset(self) -> int:
        return self._offset

    def _should_start(self) -> bool:
        return self._path is not None

    async def _tick(self) -> None:
        await self.poll()

    async def poll(self) -> None:
        """Read and deliver new content once."""
        if self._path is None:
            return
        data = await asyncio.to_thread(self._read_new, self._path)
        if not data:
            return
        text = self._decoder.decode(data)
        if text:
            self._on_text(text)

    async def stop(self) -> None:
        """Stop polling, then pick up anything written since the last tick."""
        await super().stop()
        await self.poll()

    def _read_new(self, path: Path) -> bytes:
        try:
            size = path.stat().st_size
        except FileNotFoundError:
            return b""
        except OSError as exc:
            logger.warning("%s: cannot stat telemetry file %s: %s", self.name, path, exc)
            return b""

        if size < self._offset:
            logger.debug("%s: telemetry file shrank, re-reading from start", self.name)
            self._offset = 0
            self._decoder.reset()
        if size == self._offset:
            return b""

        try:
            with path.open("rb") as fh:
                fh.seek(self._offset)
                data = fh.read(size - self._offset)
        except OSError as exc:
            logger.warning("%s: cannot read telemetry file %s: %s", self.name, path, exc)
            return b""
        self._offset += len(data)
        return data
