"""Run supervisor — one active turn per session, the rest queued FIFO."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import tempfile
import uuid
from collections import deque
from dataclasses import dataclass
from pathlib import Path
from typing import Literal

from chorus.adapters import StreamAdapter, create_adapter
from chorus.adapters.base import new_id
from chorus.agent.commands import TurnOptions, build_command
from chorus.agent.poller import TelemetryPoller
from chorus.agent.process import (
    Launcher,
    drain_stderr,
    format_stderr_preview,
    read_stream,
    spawn_process,
    terminate_process,
    write_stdin,
)
from chorus.config.models import BackendConfig, ChorusConfig
from chorus.events.models import (
    ErrorEvent,
    MessageEvent,
    PermissionDecisionEvent,
    PermissionScope,
)
from chorus.session.log import SessionEventLog

logger = logging.getLogger(__name__)

SupervisorState = Literal["idle", "running"]


@dataclass
class _Turn:
    prompt: str
    options: TurnOptions


class RunSupervisor:
    """Drives one session's agent subprocess, one turn at a time.

    ``run_turn()`` starts a turn immediately when idle and queues it
    otherwise; when a turn ends (normally, by crash or by ``interrupt()``)
    the next queued turn starts automatically.  Everything the adapter
    produces goes to the session's :class:`SessionEventLog`.
    """

    def __init__(
        self,
        session_id: str,
        backend_name: str,
        log: SessionEventLog,
        config: ChorusConfig | None = None,
        backend: BackendConfig | None = None,
        launcher: Launcher | None = None,
    ) -> None:
        self.session_id = session_id
        self.backend_name = backend_name
        self._config = config or ChorusConfig()
        self._backend = backend or self._config.backend(backend_name)
        self._log = log
        self._launcher = launcher or spawn_process
        self._adapter = self._new_adapter()

        self._queue: deque[_Turn] = deque()
        self._state: SupervisorState = "idle"
        self._active: asyncio.Task[None] | None = None
        self._proc: asyncio.subprocess.Process | None = None
        self._interrupted = False
        self._idle = asyncio.Event()
        self._idle.set()

    def _new_adapter(self) -> StreamAdapter:
        return create_adapter(self.backend_name, self._backend.protocol)

    # ------------------------------------------------------------------ #
    # Properties
    # ------------------------------------------------------------------ #

    @property
    def name(self) -> str:
        return f"{self.session_id}/{self.backend_name}"

    @property
    def state(self) -> SupervisorState:
        return self._state

    @property
    def queue_depth(self) -> int:
        return len(self._queue)

    @property
    def log(self) -> SessionEventLog:
        return self._log

    @property
    def adapter(self) -> StreamAdapter:
        return self._adapter

    @property
    def current_subprocess_pid(self) -> int | None:
        """PID of the running agent subprocess, if any."""
        if self._proc is not None and self._proc.returncode is None:
            return self._proc.pid
        return None

    # ------------------------------------------------------------------ #
    # Commands
    # ------------------------------------------------------------------ #

    async def run_turn(self, prompt: str, options: TurnOptions | None = None) -> bool:
        """Start or enqueue a turn.  Returns ``False`` if the queue is full."""
        turn = _Turn(prompt=prompt, options=options or TurnOptions())
        if self._state == "running":
            if len(self._queue) >= self._config.supervisor.max_queue:
                self._record_error(
                    f"Turn queue full ({self._config.supervisor.max_queue} turns), rejecting turn",
                    context="queue",
                )
                return False
            self._queue.append(turn)
            logger.info("%s: queued turn (queue size: %d)", self.name, len(self._queue))
            return True
        self._start(turn)
        return True

    async def interrupt(self) -> bool:
        """Stop the active turn.  Returns ``False`` if nothing was running.

        Partial text is flushed as an interrupted completion before the
        subprocess is signalled, so the log never keeps a message stuck
        mid-stream.
        """
        task = self._active
        if self._state != "running" or task is None:
            return False

        logger.info("%s: interrupting turn", self.name)
        self._interrupted = True
        self._log.extend(self._adapter.interrupt())

        proc = self._proc
        if proc is not None:
            await terminate_process(self.name, proc, self._config.supervisor.interrupt_grace)
        if not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        if self._active is task:
            # Cancelled before its first step, so _run never got to clean up.
            self._turn_finished()
        return True

    async def restart(self) -> None:
        """Drop queued turns, stop the active one and start a fresh conversation."""
        self._queue.clear()
        await self.interrupt()
        self._adapter = self._new_adapter()
        logger.info("%s: restarted", self.name)

    async def reset(self) -> None:
        """Restart and destroy the session's log."""
        await self.restart()
        self._log.clear()

    def resolve_permission(
        self,
        request_id: str,
        allow: bool,
        scope: PermissionScope = "once",
    ) -> None:
        """Record a collaborator's answer to a permission request."""
        self._log.append(PermissionDecisionEvent(id=request_id, allow=allow, scope=scope))

    async def wait_idle(self) -> None:
        """Wait until the active turn and every queued turn have finished."""
        await self._idle.wait()

    # ------------------------------------------------------------------ #
    # Turn execution
    # ------------------------------------------------------------------ #

    def _start(self, turn: _Turn) -> None:
        self._state = "running"
        self._idle.clear()
        self._interrupted = False
        self._active = asyncio.create_task(self._run(turn))

    async def _run(self, turn: _Turn) -> None:
        try:
            await self._execute(turn)
        finally:
            self._turn_finished()

    def _turn_finished(self) -> None:
        self._proc = None
        self._active = None
        if self._queue:
            self._start(self._queue.popleft())
        else:
            self._state = "idle"
            self._idle.set()

    async def _execute(self, turn: _Turn) -> None:
        self._log.append(MessageEvent(id=new_id("user"), role="user", text=turn.prompt))
        cwd = Path(turn.options.cwd) if turn.options.cwd else None
        self._adapter.begin_turn(cwd)

        telemetry_file = self._telemetry_path() if self._backend.telemetry else None
        spec = build_command(
            self._backend,
            turn.prompt,
            turn.options,
            resume_id=self._adapter.resume_id,
            telemetry_file=telemetry_file,
        )

        try:
            proc = await self._launcher(spec)
        except FileNotFoundError:
            self._record_error(
                f"{self.backend_name} CLI not found — make sure "
                f"'{self._backend.command}' is installed and on your PATH",
                context="spawn",
            )
            return
        except OSError as exc:
            self._record_error(f"Failed to spawn {self.backend_name} CLI: {exc}", context="spawn")
            return

        self._proc = proc
        logger.info("%s: started pid %s", self.name, proc.pid)
        if spec.stdin is not None:
            await write_stdin(self.name, proc, spec.stdin)

        poller = TelemetryPoller(
            self.name,
            telemetry_file,
            self._on_telemetry,
            interval=self._config.telemetry.poll_interval,
        )
        await poller.start()
        stderr_task = asyncio.create_task(drain_stderr(proc.stderr))
        try:
            await read_stream(self.name, proc.stdout, self._on_stdout)
            returncode = await proc.wait()
            stderr_text = await stderr_task
        finally:
            if not stderr_task.done():
                stderr_task.cancel()
            await poller.stop()
            if telemetry_file is not None:
                with contextlib.suppress(OSError):
                    telemetry_file.unlink(missing_ok=True)

        if self._interrupted:
            return
        self._log.extend(self._adapter.finish(returncode))
        if returncode != 0:
            preview = format_stderr_preview(stderr_text)
            detail = f" Stderr:\n  {preview}" if preview else ""
            logger.error("%s: exited with code %s.%s", self.name, returncode, detail)

    def _on_stdout(self, chunk: bytes) -> None:
        if self._interrupted:
            return
        self._log.extend(self._adapter.feed(chunk))

    def _on_telemetry(self, text: str) -> None:
        if self._interrupted:
            return
        self._log.extend(self._adapter.feed_telemetry(text))

    def _telemetry_path(self) -> Path:
        directory = self._config.telemetry.directory
        base = Path(directory) if directory else Path(tempfile.gettempdir())
        base.mkdir(parents=True, exist_ok=True)
        return base / f"chorus-{self.backend_name}-{uuid.uuid4().hex[:12]}.telemetry.log"

    def _record_error(
        self,
        message: str,
        context: str,
        exit_code: int | None = None,
    ) -> None:
        """Log and append an error event in one call."""
        logger.error("%s: %s", self.name, message)
        self._log.append(ErrorEvent(message=message, exit_code=exit_code, context=context))


class SessionManager:
    """Owns one supervisor and one event log per session id.

    Sessions share nothing: each gets its own adapter, log and queue.
    """

    def __init__(
        self,
        config: ChorusConfig | None = None,
        launcher: Launcher | None = None,
    ) -> None:
        self._config = config or ChorusConfig()
        self._launcher = launcher
        self._sessions: dict[str, RunSupervisor] = {}

    def open(self, session_id: str, backend_name: str) -> RunSupervisor:
        """Create the session, or return it if it already exists."""
        existing = self._sessions.get(session_id)
        if existing is not None:
            if existing.backend_name != backend_name:
                msg = (
                    f"Session '{session_id}' already runs backend "
                    f"'{existing.backend_name}', not '{backend_name}'"
                )
                raise ValueError(msg)
            return existing
        log_config = self._config.log
        log = SessionEventLog(
            max_events=log_config.max_events,
            max_messages=log_config.max_messages,
            dedup_window=log_config.dedup_window,
            name=session_id,
        )
        supervisor = RunSupervisor(
            session_id,
            backend_name,
            log,
            config=self._config,
            launcher=self._launcher,
        )
        self._sessions[session_id] = supervisor
        return supervisor

    def get(self, session_id: str) -> RunSupervisor:
        try:
            return self._sessions[session_id]
        except KeyError:
            msg = f"Unknown session '{session_id}'"
            raise KeyError(msg) from None

    def log(self, session_id: str) -> SessionEventLog:
        return self.get(session_id).log

    @property
    def session_ids(self) -> list[str]:
        return list(self._sessions)

    async def run_turn(
        self,
        session_id: str,
        prompt: str,
        options: TurnOptions | None = None,
    ) -> bool:
        return await self.get(session_id).run_turn(prompt, options)

    async def interrupt(self, session_id: str) -> bool:
        return await self.get(session_id).interrupt()

    async def restart(self, session_id: str) -> None:
        await self.get(session_id).restart()

    async def close(self, session_id: str) -> None:
        """Stop the session's work and destroy its log."""
        supervisor = self._sessions.pop(session_id, None)
        if supervisor is not None:
            await supervisor.reset()

    async def close_all(self) -> None:
        await asyncio.gather(*(self.close(sid) for sid in list(self._sessions)))
