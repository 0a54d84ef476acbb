"""Tests for the plain-text adapter and the adapter factory."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from chorus.adapters import ClaudeAdapter, CodexAdapter, TextAdapter, create_adapter
from chorus.adapters.base import choose_final_text, diff_text
from chorus.events.models import (
    AssistantCompleteEvent,
    AssistantDeltaEvent,
    CheckpointCreateEvent,
    PermissionRequestEvent,
    TelemetryTokensEvent,
    ToolOutputEvent,
    ToolStartEvent,
)
from chorus.stream.sanitizer import GEMINI_NOISE

_API_RESPONSE = {
    "attributes": {
        "event.name": "gemini_cli.api_response",
        "input_token_count": 50,
        "output_token_count": 20,
        "duration_ms": 300,
    }
}

_TOOL_CALL = {
    "attributes": {
        "event.name": "gemini_cli.tool_call",
        "function_name": "write_file",
        "function_args": json.dumps({"file_path": "a.txt", "content": "hi"}),
    }
}


def _types(events: list) -> list[str]:
    return [e.type for e in events]


def _text(events: list) -> str:
    return "".join(e.chunk for e in events if isinstance(e, AssistantDeltaEvent))


@pytest.fixture
def adapter(tmp_path: Path) -> TextAdapter:
    a = TextAdapter("gemini", GEMINI_NOISE)
    a.begin_turn(tmp_path)
    return a


# ===================================================================
# Prose
# ===================================================================


class TestProse:
    def test_noise_and_escapes_removed(self, adapter: TextAdapter) -> None:
        events = adapter.feed(b"Loaded cached credentials.\n\x1b[32mThe answer\x1b[0m is 4.\n")
        assert _text(events) == "The answer is 4.\n"

    def test_single_message_per_turn(self, adapter: TextAdapter) -> None:
        events = adapter.feed(b"one\n") + adapter.feed(b"two\n")
        assert len({e.id for e in events}) == 1

    def test_leading_blank_lines_skipped(self, adapter: TextAdapter) -> None:
        assert adapter.feed(b"\n\n") == []
        assert _text(adapter.feed(b"\nhello\n")) == "hello\n"

    def test_finish_completes_message(self, adapter: TextAdapter) -> None:
        adapter.feed(b"Hello\nworld")
        events = adapter.finish(0)
        complete = events[-1]
        assert isinstance(complete, AssistantCompleteEvent)
        assert complete.text == "Hello\nworld"
        assert not complete.interrupted

    def test_permission_prompt_becomes_request(self, adapter: TextAdapter) -> None:
        events = adapter.feed(b"I will delete it.\nAllow execution of 'rm -rf tmp'? (y/n)\n")
        assert _text(events) == "I will delete it.\n"
        (request,) = [e for e in events if isinstance(e, PermissionRequestEvent)]
        assert "rm -rf tmp" in request.prompt

    def test_new_turn_new_message(self, adapter: TextAdapter) -> None:
        first = adapter.feed(b"a\n")[0].id
        adapter.begin_turn()
        second = adapter.feed(b"b\n")[0].id
        assert first != second


# ===================================================================
# Embedded and side-channel telemetry
# ===================================================================


class TestTelemetry:
    def test_inline_block_removed_from_text(self, adapter: TextAdapter) -> None:
        data = f"Before\n{json.dumps(_API_RESPONSE, indent=2)}\nAfter\n".encode()
        events = adapter.feed(data)
        assert _text(events) == "Before\nAfter\n"
        (tokens,) = [e for e in events if isinstance(e, TelemetryTokensEvent)]
        assert tokens.tokens_in == 50
        assert tokens.latency_ms == 300

    def test_tool_call_from_stdout(self, adapter: TextAdapter) -> None:
        events = adapter.feed(f"{json.dumps(_TOOL_CALL)}\n".encode())
        assert _types(events) == ["checkpoint_create", "tool_start", "tool_output"]
        checkpoint, start, output = events
        assert isinstance(checkpoint, CheckpointCreateEvent)
        assert checkpoint.file_snapshots[0].original_content == ""
        assert isinstance(start, ToolStartEvent)
        assert start.tool_kind == "write"
        assert isinstance(output, ToolOutputEvent)
        assert output.id == start.id
        assert output.done
        assert output.chunk == "called write_file with content, file_path"

    def test_tool_call_reported_once_across_sources(self, adapter: TextAdapter) -> None:
        adapter.feed(f"{json.dumps(_TOOL_CALL)}\n".encode())
        assert adapter.feed_telemetry(json.dumps(_TOOL_CALL, indent=2) + "\n") == []

    def test_side_channel_tokens(self, adapter: TextAdapter) -> None:
        events = adapter.feed_telemetry(json.dumps(_API_RESPONSE) + "\n")
        assert _types(events) == ["telemetry_tokens"]

    def test_side_channel_partial_object(self, adapter: TextAdapter) -> None:
        text = json.dumps(_API_RESPONSE, indent=2) + "\n"
        assert adapter.feed_telemetry(text[:20]) == []
        assert _types(adapter.feed_telemetry(text[20:])) == ["telemetry_tokens"]

    def test_unterminated_side_channel_flushed_on_finish(self, adapter: TextAdapter) -> None:
        adapter.feed_telemetry(json.dumps(_API_RESPONSE))
        assert "telemetry_tokens" in _types(adapter.finish(0))

    def test_same_tool_call_in_next_turn_reported_again(
        self, adapter: TextAdapter, tmp_path: Path
    ) -> None:
        adapter.feed_telemetry(json.dumps(_TOOL_CALL) + "\n")
        adapter.finish(0)
        (tmp_path / "a.txt").write_text("edited by user")

        adapter.begin_turn(tmp_path)
        events = adapter.feed_telemetry(json.dumps(_TOOL_CALL) + "\n")
        assert _types(events) == ["checkpoint_create", "tool_start", "tool_output"]
        checkpoint = events[0]
        assert isinstance(checkpoint, CheckpointCreateEvent)
        assert checkpoint.file_snapshots[0].original_content == "edited by user"

    def test_reset_forgets_tool_fingerprints(self, adapter: TextAdapter) -> None:
        line = f"{json.dumps(_TOOL_CALL)}\n".encode()
        adapter.feed(line)
        adapter.reset()
        assert "tool_start" in _types(adapter.feed(line))


# ===================================================================
# Shared helpers and the factory
# ===================================================================


class TestHelpers:
    @pytest.mark.parametrize(
        ("prev", "nxt", "expected"),
        [
            ("", "abc", "abc"),
            ("ab", "abc", "c"),
            ("abc", "abc", ""),
            ("abX", "abcd", "cd"),
            ("abc", "", ""),
        ],
    )
    def test_diff_text(self, prev: str, nxt: str, expected: str) -> None:
        assert diff_text(prev, nxt) == expected

    @pytest.mark.parametrize(
        ("accumulated", "final", "expected"),
        [
            ("Hello", "Hello!", "Hello!"),
            ("Hello world", "Hello", "Hello world"),
            ("Hello", None, "Hello"),
            ("", "", ""),
            ("abc", "xyz", "xyz"),
        ],
    )
    def test_choose_final_text(self, accumulated: str, final: str | None, expected: str) -> None:
        assert choose_final_text(accumulated, final) == expected


class TestCreateAdapter:
    @pytest.mark.parametrize(
        ("name", "cls"),
        [
            ("claude", ClaudeAdapter),
            ("codex", CodexAdapter),
            ("gemini", TextAdapter),
            ("qwen", TextAdapter),
        ],
    )
    def test_well_known_backends(self, name: str, cls: type) -> None:
        adapter = create_adapter(name)
        assert isinstance(adapter, cls)
        assert adapter.name == name

    def test_explicit_protocol(self) -> None:
        assert isinstance(create_adapter("aider", "text"), TextAdapter)

    def test_unknown_backend(self) -> None:
        with pytest.raises(ValueError, match="aider"):
            create_adapter("aider")
