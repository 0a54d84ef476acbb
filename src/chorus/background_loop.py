"""BackgroundLoop — base class for periodic async tasks.

A loop ticks every ``interval`` seconds until its stop event is set or its
task is cancelled.  The telemetry file poller is built on it.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging

logger = logging.getLogger(__name__)


class BackgroundLoop:
    """Periodic async worker with an owned task.

    Subclasses implement :meth:`_tick` and may veto starting through
    :meth:`_should_start`.  An exception raised by a tick is logged and the
    loop keeps going; only cancellation or the stop event ends it.
    """

    def __init__(
        self,
        stop_event: asyncio.Event,
        interval: int | float,
    ) -> None:
        self._stop_event = stop_event
        self._interval = interval
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    # ------------------------------------------------------------------ #
    # Public API
    # ------------------------------------------------------------------ #

    async def start(self) -> None:
        if self.running or not self._should_start():
            return
        self._task = asyncio.create_task(self._loop())

    async def stop(self) -> None:
        """Cancel the task and wait until it has unwound."""
        task, self._task = self._task, None
        if task is None or task.done():
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    # ------------------------------------------------------------------ #
    # Override points
    # ------------------------------------------------------------------ #

    def _should_start(self) -> bool:
        return True

    async def _tick(self) -> None:
        raise NotImplementedError

    # ------------------------------------------------------------------ #
    # Internal
    # ------------------------------------------------------------------ #

    async def _wait_for_stop(self) -> bool:
        """Wait one interval; ``True`` means the stop event fired meanwhile."""
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=self._interval)
        except TimeoutError:
            return False
        return True

    async def _loop(self) -> None:
        while not self._stop_event.is_set():
            if await self._wait_for_stop():
                return
            try:
                await self._tick()
            except Exception:
                logger.exception("%s: background tick failed", type(self).__name__)
