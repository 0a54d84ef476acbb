"""Tests for command building, process helpers and the telemetry poller."""

from __future__ import annotations

import asyncio
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest

from chorus.agent.commands import (
    NODE_HEAP_LIMIT_MB,
    TurnOptions,
    build_command,
)
from chorus.agent.poller import TelemetryPoller
from chorus.agent.process import (
    format_stderr_preview,
    read_stream,
    terminate_process,
)
from chorus.config.models import BackendConfig

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

_CLAUDE = BackendConfig(command="claude", protocol="stream-json")
_CODEX = BackendConfig(command="codex", protocol="thread-json")
_GEMINI = BackendConfig(command="gemini", protocol="text", telemetry=True)


class _ChunkStream:
    def __init__(self, *chunks: bytes) -> None:
        self._chunks = list(chunks)

    async def read(self, n: int = -1) -> bytes:
        return self._chunks.pop(0) if self._chunks else b""


# ===================================================================
# build_command
# ===================================================================


class TestClaudeCommand:
    def test_stream_json_flags(self) -> None:
        spec = build_command(_CLAUDE, "hello", TurnOptions(model="opus", approval="plan"))
        assert spec.args[:3] == ["claude", "-p", "hello"]
        assert "--include-partial-messages" in spec.args
        assert spec.args[spec.args.index("--output-format") + 1] == "stream-json"
        assert spec.args[spec.args.index("--model") + 1] == "opus"
        assert spec.args[spec.args.index("--permission-mode") + 1] == "plan"
        assert spec.stdin is None

    def test_resume(self) -> None:
        spec = build_command(_CLAUDE, "again", resume_id="sess-1")
        assert spec.args[-2:] == ["--resume", "sess-1"]

    def test_node_heap_cap(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("NODE_OPTIONS", "--enable-source-maps")
        spec = build_command(_CLAUDE, "x")
        assert spec.env["NODE_OPTIONS"] == f"--enable-source-maps --max-old-space-size={NODE_HEAP_LIMIT_MB}"

    def test_existing_heap_cap_kept(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("NODE_OPTIONS", "--max-old-space-size=512")
        assert build_command(_CLAUDE, "x").env["NODE_OPTIONS"] == "--max-old-space-size=512"

    def test_api_keys_stripped(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("ANTHROPIC_API_KEY", "sk-test")
        monkeypatch.setenv("CHORUS_KEEP_ME", "1")
        env = build_command(_CLAUDE, "x").env
        assert "ANTHROPIC_API_KEY" not in env
        assert env["CHORUS_KEEP_ME"] == "1"

    def test_backend_args_and_env(self) -> None:
        backend = BackendConfig(
            command="claude",
            protocol="stream-json",
            args=["--max-turns", "3"],
            env={"CLAUDE_CONFIG_DIR": "/tmp/c"},
        )
        spec = build_command(backend, "x")
        assert spec.args[-2:] == ["--max-turns", "3"]
        assert spec.env["CLAUDE_CONFIG_DIR"] == "/tmp/c"


class TestCodexCommand:
    def test_exec_flags(self) -> None:
        spec = build_command(
            _CODEX,
            "fix it",
            TurnOptions(cwd="/work", sandbox="workspace-write", approval="never", model="o4"),
        )
        assert spec.args == [
            "codex",
            "exec",
            "--json",
            "--skip-git-repo-check",
            "--sandbox",
            "workspace-write",
            "-c",
            "approval_policy=never",
            "-m",
            "o4",
            "-C",
            "/work",
            "fix it",
        ]
        assert spec.cwd == "/work"

    def test_resume_omits_cd(self) -> None:
        spec = build_command(_CODEX, "more", TurnOptions(cwd="/work"), resume_id="th_1")
        assert spec.args[:4] == ["codex", "exec", "resume", "th_1"]
        assert "-C" not in spec.args
        assert spec.args[-1] == "more"


class TestTextCommand:
    def test_prompt_on_stdin(self, tmp_path: Path) -> None:
        telemetry = tmp_path / "t.log"
        spec = build_command(_GEMINI, "2+2?", TurnOptions(sandbox="docker"), telemetry_file=telemetry)
        assert spec.stdin == b"2+2?"
        assert "2+2?" not in spec.args
        assert "--sandbox" in spec.args
        assert f"--telemetry-outfile={telemetry}" in spec.args
        assert spec.telemetry_file == telemetry
        assert spec.env["NO_COLOR"] == "1"
        assert spec.env["TERM"] == "dumb"

    def test_sandbox_off(self) -> None:
        spec = build_command(_GEMINI, "x", TurnOptions(sandbox="off"))
        assert "--sandbox" not in spec.args
        assert not any(a.startswith("--telemetry") for a in spec.args)


# ===================================================================
# Process helpers
# ===================================================================


class TestProcessHelpers:
    async def test_read_stream_until_eof(self) -> None:
        seen: list[bytes] = []
        await read_stream("t", _ChunkStream(b"a", b"b"), seen.append)
        assert seen == [b"a", b"b"]

    async def test_read_stream_without_pipe(self) -> None:
        await read_stream("t", None, lambda chunk: None)

    async def test_terminate_already_exited(self) -> None:
        proc = MagicMock()
        proc.returncode = 0
        assert await terminate_process("t", proc, grace=0.1) == 0
        proc.terminate.assert_not_called()

    async def test_terminate_graceful(self) -> None:
        proc = MagicMock()
        proc.returncode = None
        proc.wait = AsyncMock(return_value=-15)
        assert await terminate_process("t", proc, grace=0.1) == -15
        proc.terminate.assert_called_once()
        proc.kill.assert_not_called()

    async def test_terminate_escalates_to_kill(self) -> None:
        killed = asyncio.Event()
        proc = MagicMock()
        proc.returncode = None
        proc.kill = MagicMock(side_effect=killed.set)

        async def wait() -> int:
            await killed.wait()
            return -9

        proc.wait = wait
        assert await terminate_process("t", proc, grace=0.05) == -9
        proc.kill.assert_called_once()

    async def test_terminate_gives_up(self) -> None:
        proc = MagicMock()
        proc.returncode = None

        async def wait() -> int:
            await asyncio.sleep(10)
            return 0

        proc.wait = wait
        assert await terminate_process("t", proc, grace=0.05) is None

    def test_stderr_preview_keeps_last_lines(self) -> None:
        text = "\n".join(f"line {i}" for i in range(10)) + "\n\n"
        assert format_stderr_preview(text, max_lines=2) == "line 8\n  line 9"


# ===================================================================
# TelemetryPoller
# ===================================================================


class TestTelemetryPoller:
    async def test_reads_only_new_text(self, tmp_path: Path) -> None:
        path = tmp_path / "t.log"
        seen: list[str] = []
        poller = TelemetryPoller("t", path, seen.append)

        await poller.poll()
        assert seen == []

        path.write_text('{"a": 1}\n')
        await poller.poll()
        with path.open("a") as fh:
            fh.write('{"b": 2}\n')
        await poller.poll()
        await poller.poll()

        assert seen == ['{"a": 1}\n', '{"b": 2}\n']
        assert poller.offset == path.stat().st_size

    async def test_shrunk_file_reread(self, tmp_path: Path) -> None:
        path = tmp_path / "t.log"
        seen: list[str] = []
        poller = TelemetryPoller("t", path, seen.append)
        path.write_text("long original content\n")
        await poller.poll()
        path.write_text("new\n")
        await poller.poll()
        assert seen[-1] == "new\n"

    async def test_split_multibyte_character(self, tmp_path: Path) -> None:
        path = tmp_path / "t.log"
        data = "é\n".encode()
        seen: list[str] = []
        poller = TelemetryPoller("t", path, seen.append)
        path.write_bytes(data[:1])
        await poller.poll()
        path.write_bytes(data)
        await poller.poll()
        assert "".join(seen) == "é\n"

    async def test_background_loop_and_final_poll(self, tmp_path: Path) -> None:
        path = tmp_path / "t.log"
        seen: list[str] = []
        poller = TelemetryPoller("t", path, seen.append, interval=0.01)
        await poller.start()
        assert poller.running
        path.write_text("early\n")
        await asyncio.sleep(0.1)
        with path.open("a") as fh:
            fh.write("late\n")
        await poller.stop()
        assert not poller.running
        assert "".join(seen) == "early\nlate\n"

    async def test_stop_event_ends_loop(self, tmp_path: Path) -> None:
        stop = asyncio.Event()
        poller = TelemetryPoller("t", tmp_path / "t.log", lambda text: None, stop_event=stop, interval=5)
        await poller.start()
        stop.set()
        await asyncio.sleep(0.05)
        assert not poller.running

    async def test_failing_consumer_keeps_polling(self, tmp_path: Path) -> None:
        path = tmp_path / "t.log"
        seen: list[str] = []

        def on_text(text: str) -> None:
            seen.append(text)
            if len(seen) == 1:
                raise RuntimeError("boom")

        poller = TelemetryPoller("t", path, on_text, interval=0.01)
        await poller.start()
        path.write_text("one\n")
        await asyncio.sleep(0.1)
        with path.open("a") as fh:
            fh.write("two\n")
        await asyncio.sleep(0.1)
        assert poller.running
        await poller.stop()
        assert seen == ["one\n", "two\n"]

    async def test_no_path_never_starts(self) -> None:
        poller = TelemetryPoller("t", None, lambda text: None)
        await poller.start()
        assert not poller.running
        await poller.stop()
