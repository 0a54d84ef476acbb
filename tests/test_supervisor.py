"""Tests for the run supervisor and the session manager."""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Callable
from pathlib import Path
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest

from chorus.agent.commands import LaunchSpec
from chorus.config.models import ChorusConfig, SupervisorConfig, TelemetryConfig
from chorus.events.models import (
    AssistantCompleteEvent,
    ErrorEvent,
    PermissionRequestEvent,
)
from chorus.session.log import SessionEventLog
from chorus.session.models import LogUpdate
from chorus.supervisor import RunSupervisor, SessionManager

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


class MockAsyncStdout:
    """Async-aware mock pipe that yields chunks on demand.

    Chunks can be added at any time via ``feed()``.  ``read()`` blocks
    until a chunk is available or ``close()`` is called.
    """

    def __init__(self) -> None:
        self._queue: asyncio.Queue[bytes] = asyncio.Queue()
        self.closed = asyncio.Event()

    def feed(self, data: bytes) -> None:
        self._queue.put_nowait(data)

    def close(self) -> None:
        """Signal EOF."""
        self._queue.put_nowait(b"")
        self.closed.set()

    async def read(self, n: int = -1) -> bytes:
        return await self._queue.get()


def _make_mock_process(
    stdout: MockAsyncStdout | None = None,
    exit_code: int = 0,
    stderr: bytes = b"",
) -> MagicMock:
    """Create a mock subprocess whose exit follows stdout EOF."""
    proc = MagicMock()
    proc.pid = 4242
    proc.returncode = None

    stdin = MagicMock()
    stdin.write = MagicMock()
    stdin.drain = AsyncMock()
    proc.stdin = stdin

    if stdout is None:
        stdout = MockAsyncStdout()
    proc.stdout = stdout
    proc.stderr = MockAsyncStdout()
    if stderr:
        proc.stderr.feed(stderr)
    proc.stderr.close()

    async def wait() -> int:
        await stdout.closed.wait()
        if proc.returncode is None:
            proc.returncode = exit_code
        return proc.returncode

    def terminate() -> None:
        proc.returncode = -15
        stdout.close()

    proc.wait = wait
    proc.terminate = MagicMock(side_effect=terminate)
    proc.kill = MagicMock()
    return proc


def _claude_records(*records: dict[str, Any]) -> bytes:
    return "".join(json.dumps(r) + "\n" for r in records).encode()


def _claude_reply(text: str, session_id: str = "s1") -> bytes:
    return _claude_records(
        {"type": "stream_event", "event": {"type": "message_start", "message": {"id": f"msg_{text}"}}},
        {
            "type": "stream_event",
            "event": {"type": "content_block_delta", "index": 0, "delta": {"text": text}},
        },
        {"type": "stream_event", "event": {"type": "message_stop"}},
        {"type": "result", "result": text, "session_id": session_id},
    )


def _finished(text: str = "Hello", session_id: str = "s1") -> MagicMock:
    stdout = MockAsyncStdout()
    stdout.feed(_claude_reply(text, session_id))
    stdout.close()
    return _make_mock_process(stdout)


class FakeLauncher:
    """Hands out prepared processes in order and remembers each spec."""

    def __init__(self, *procs: MagicMock) -> None:
        self._procs = list(procs)
        self.specs: list[LaunchSpec] = []

    async def __call__(self, spec: LaunchSpec) -> MagicMock:
        self.specs.append(spec)
        return self._procs.pop(0)


async def _until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


def _supervisor(
    launcher: FakeLauncher,
    backend: str = "claude",
    config: ChorusConfig | None = None,
) -> RunSupervisor:
    return RunSupervisor("s", backend, SessionEventLog(name="s"), config=config, launcher=launcher)


def _roles_and_text(supervisor: RunSupervisor) -> list[tuple[str, str]]:
    return [(m.role, m.text) for m in supervisor.log.messages()]


# ===================================================================
# Turn execution
# ===================================================================


class TestRunTurn:
    async def test_turn_streams_into_log(self) -> None:
        launcher = FakeLauncher(_finished("Hello"))
        supervisor = _supervisor(launcher)

        assert await supervisor.run_turn("hi")
        await supervisor.wait_idle()

        assert supervisor.state == "idle"
        assert _roles_and_text(supervisor) == [("user", "hi"), ("assistant", "Hello")]
        assert launcher.specs[0].args[:3] == ["claude", "-p", "hi"]

    async def test_follow_up_turn_resumes_thread(self) -> None:
        launcher = FakeLauncher(_finished("one", "sess-9"), _finished("two", "sess-9"))
        supervisor = _supervisor(launcher)

        await supervisor.run_turn("first")
        await supervisor.wait_idle()
        await supervisor.run_turn("second")
        await supervisor.wait_idle()

        assert "--resume" not in launcher.specs[0].args
        assert launcher.specs[1].args[-2:] == ["--resume", "sess-9"]
        assert supervisor.log.thread_id == "sess-9"

    async def test_turns_run_in_fifo_order(self) -> None:
        first_stdout = MockAsyncStdout()
        launcher = FakeLauncher(_make_mock_process(first_stdout), _finished("two"))
        supervisor = _supervisor(launcher)

        await supervisor.run_turn("one")
        await supervisor.run_turn("two")
        assert supervisor.state == "running"
        assert supervisor.queue_depth == 1

        first_stdout.close()
        await supervisor.wait_idle()

        assert [s.args[2] for s in launcher.specs] == ["one", "two"]
        assert [m.text for m in supervisor.log.messages() if m.role == "user"] == ["one", "two"]
        assert supervisor.queue_depth == 0

    async def test_full_queue_rejects_turn(self) -> None:
        first_stdout = MockAsyncStdout()
        config = ChorusConfig(supervisor=SupervisorConfig(max_queue=1))
        launcher = FakeLauncher(_make_mock_process(first_stdout), _finished())
        supervisor = _supervisor(launcher, config=config)

        assert await supervisor.run_turn("one")
        assert await supervisor.run_turn("two")
        assert not await supervisor.run_turn("three")

        errors = [e for e in supervisor.log.snapshot() if isinstance(e, ErrorEvent)]
        assert errors[0].context == "queue"

        first_stdout.close()
        await supervisor.wait_idle()
        assert len(launcher.specs) == 2

    async def test_missing_cli_is_reported(self) -> None:
        async def launcher(spec: LaunchSpec) -> MagicMock:
            raise FileNotFoundError(spec.args[0])

        supervisor = RunSupervisor("s", "claude", SessionEventLog(), launcher=launcher)
        await supervisor.run_turn("hi")
        await supervisor.wait_idle()

        (error,) = [e for e in supervisor.log.snapshot() if isinstance(e, ErrorEvent)]
        assert error.context == "spawn"
        assert "not found" in error.message
        assert supervisor.state == "idle"

    async def test_failed_process_without_output(self, caplog: pytest.LogCaptureFixture) -> None:
        stdout = MockAsyncStdout()
        stdout.close()
        launcher = FakeLauncher(_make_mock_process(stdout, exit_code=2, stderr=b"auth failed\n"))
        supervisor = _supervisor(launcher)

        with caplog.at_level(logging.ERROR):
            await supervisor.run_turn("hi")
            await supervisor.wait_idle()

        (error,) = [e for e in supervisor.log.snapshot() if isinstance(e, ErrorEvent)]
        assert error.exit_code == 2
        assert error.context == "subprocess"
        assert "auth failed" in caplog.text

    async def test_text_backend_gets_prompt_on_stdin_and_polls_telemetry(self, tmp_path: Path) -> None:
        stdout = MockAsyncStdout()
        stdout.feed(b"The answer is 4.\n")
        stdout.close()
        proc = _make_mock_process(stdout)
        telemetry = {
            "attributes": {
                "event.name": "gemini_cli.api_response",
                "input_token_count": 50,
                "output_token_count": 20,
            }
        }

        async def launcher(spec: LaunchSpec) -> MagicMock:
            launcher.spec = spec
            assert spec.telemetry_file is not None
            spec.telemetry_file.write_text(json.dumps(telemetry, indent=2) + "\n")
            return proc

        config = ChorusConfig(telemetry=TelemetryConfig(directory=str(tmp_path)))
        supervisor = RunSupervisor("s", "gemini", SessionEventLog(), config=config, launcher=launcher)
        await supervisor.run_turn("2+2?")
        await supervisor.wait_idle()

        proc.stdin.write.assert_called_once_with(b"2+2?")
        assert _roles_and_text(supervisor) == [("user", "2+2?"), ("assistant", "The answer is 4.\n")]
        assert supervisor.log.usage().tokens_in == 50
        assert not launcher.spec.telemetry_file.exists()


# ===================================================================
# Interruption and lifecycle
# ===================================================================


class TestInterrupt:
    async def test_interrupt_flushes_partial_message(self) -> None:
        stdout = MockAsyncStdout()
        stdout.feed(
            _claude_records(
                {"type": "stream_event", "event": {"type": "message_start", "message": {"id": "m"}}},
                {
                    "type": "stream_event",
                    "event": {"type": "content_block_delta", "index": 0, "delta": {"text": "partial"}},
                },
            )
        )
        proc = _make_mock_process(stdout)
        supervisor = _supervisor(FakeLauncher(proc))
        sources: list[LogUpdate] = []
        supervisor.log.add_listener(sources.append)

        await supervisor.run_turn("go")
        await _until(lambda: bool(supervisor.log.streaming_messages))
        assert supervisor.current_subprocess_pid == 4242

        assert await supervisor.interrupt()

        completes = [u.source for u in sources if isinstance(u.source, AssistantCompleteEvent)]
        assert len(completes) == 1
        assert completes[0].text.startswith("partial")
        assert completes[0].interrupted
        proc.terminate.assert_called_once()
        assert supervisor.state == "idle"
        assert supervisor.log.streaming_messages == []

    async def test_interrupt_when_idle(self) -> None:
        supervisor = _supervisor(FakeLauncher())
        assert not await supervisor.interrupt()

    async def test_interrupt_starts_next_queued_turn(self) -> None:
        launcher = FakeLauncher(_make_mock_process(), _finished("second reply"))
        supervisor = _supervisor(launcher)

        await supervisor.run_turn("one")
        await supervisor.run_turn("two")
        await _until(lambda: len(launcher.specs) == 1 and supervisor.current_subprocess_pid is not None)
        await supervisor.interrupt()
        await supervisor.wait_idle()

        assert len(launcher.specs) == 2
        assert ("assistant", "second reply") in _roles_and_text(supervisor)

    async def test_restart_drops_queue_and_thread(self) -> None:
        launcher = FakeLauncher(_finished("one", "sess-1"), _make_mock_process())
        supervisor = _supervisor(launcher)
        await supervisor.run_turn("first")
        await supervisor.wait_idle()
        assert supervisor.adapter.resume_id == "sess-1"

        await supervisor.run_turn("second")
        await supervisor.run_turn("queued")
        await _until(lambda: supervisor.current_subprocess_pid is not None)
        await supervisor.restart()

        assert supervisor.state == "idle"
        assert supervisor.queue_depth == 0
        assert supervisor.adapter.resume_id is None

    async def test_reset_clears_log(self) -> None:
        supervisor = _supervisor(FakeLauncher(_finished()))
        await supervisor.run_turn("hi")
        await supervisor.wait_idle()
        await supervisor.reset()
        assert len(supervisor.log) == 0

    def test_resolve_permission(self) -> None:
        supervisor = _supervisor(FakeLauncher())
        supervisor.log.append(PermissionRequestEvent(id="p1", tools=["bash"]))
        supervisor.resolve_permission("p1", allow=True, scope="session")
        assert supervisor.log.pending_permission is None
        decision = supervisor.log.snapshot()[-1]
        assert decision.type == "permission_decision"
        assert decision.scope == "session"


# ===================================================================
# SessionManager
# ===================================================================


class TestSessionManager:
    def test_open_is_idempotent(self) -> None:
        manager = SessionManager()
        assert manager.open("a", "claude") is manager.open("a", "claude")

    def test_open_with_other_backend_fails(self) -> None:
        manager = SessionManager()
        manager.open("a", "claude")
        with pytest.raises(ValueError, match="already runs backend"):
            manager.open("a", "codex")

    def test_unknown_session(self) -> None:
        with pytest.raises(KeyError, match="Unknown session"):
            SessionManager().get("nope")

    def test_unknown_backend(self) -> None:
        with pytest.raises(KeyError, match="Unknown backend"):
            SessionManager().open("a", "nope")

    def test_log_bounds_from_config(self) -> None:
        config = ChorusConfig.model_validate({"log": {"max_events": 3}})
        log = SessionManager(config).open("a", "claude").log
        for i in range(5):
            log.append(PermissionRequestEvent(id=f"p{i}"))
        assert len(log) == 3

    async def test_sessions_are_isolated(self) -> None:
        launcher = FakeLauncher(_finished("for a"), _finished("for b"))
        manager = SessionManager(launcher=launcher)
        manager.open("a", "claude")
        manager.open("b", "claude")

        await manager.run_turn("a", "hi a")
        await manager.get("a").wait_idle()
        await manager.run_turn("b", "hi b")
        await manager.get("b").wait_idle()

        assert [m.text for m in manager.log("a").messages()] == ["hi a", "for a"]
        assert [m.text for m in manager.log("b").messages()] == ["hi b", "for b"]
        assert manager.get("a").adapter is not manager.get("b").adapter

    async def test_close_all(self) -> None:
        manager = SessionManager(launcher=FakeLauncher())
        manager.open("a", "claude")
        manager.open("b", "codex")
        assert manager.session_ids == ["a", "b"]
        await manager.close_all()
        assert manager.session_ids == []
