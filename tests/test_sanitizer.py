"""Tests for the text sanitizer and the line buffer."""

from __future__ import annotations

import pytest

from chorus.stream.lines import LineBuffer
from chorus.stream.sanitizer import GEMINI_NOISE, QWEN_NOISE, sanitize

# ===================================================================
# sanitize()
# ===================================================================


class TestSanitize:
    def test_strips_color_codes(self) -> None:
        assert sanitize(b"\x1b[1;32mgreen\x1b[0m text") == "green text"

    def test_strips_cursor_movement_and_erase(self) -> None:
        assert sanitize("\x1b[2K\x1b[1Gdone") == "done"

    def test_strips_title_sequences(self) -> None:
        assert sanitize("\x1b]0;gemini - project\x07hello") == "hello"
        assert sanitize("\x1b]2;title\x1b\\hello") == "hello"

    def test_keeps_literal_brackets(self) -> None:
        text = "Use [link](url) and array[0] or [y/N]"
        assert sanitize(text) == text

    def test_carriage_return_overwrite(self) -> None:
        assert sanitize("Loading 10%\rLoading 100%\nnext") == "Loading 100%\nnext"

    def test_crlf_normalized(self) -> None:
        assert sanitize("a\r\nb\r\n") == "a\nb\n"

    def test_box_drawing_lines_dropped(self) -> None:
        text = "╭──────────╮\n│ hi │\n╰──────────╯\nbody"
        assert sanitize(text) == "│ hi │\nbody"

    def test_gemini_noise_dropped(self) -> None:
        raw = "Loaded cached credentials.\nThe answer is 4.\n"
        assert sanitize(raw, GEMINI_NOISE) == "The answer is 4.\n"

    def test_noise_only_applies_to_its_backend(self) -> None:
        raw = "Loaded cached credentials.\n"
        assert sanitize(raw) == raw
        assert sanitize("Loaded cached Qwen credentials.\nok", QWEN_NOISE) == "ok"

    def test_noise_inside_prose_is_kept(self) -> None:
        raw = "I loaded cached credentials. for you"
        assert sanitize(raw, GEMINI_NOISE) == raw

    def test_invalid_utf8_replaced(self) -> None:
        assert sanitize(b"ok \xff end") == "ok � end"

    def test_empty(self) -> None:
        assert sanitize(b"") == ""

    @pytest.mark.parametrize(
        "raw",
        [
            "\x1b[31mred\x1b[0m\r\nline two\rover",
            "plain [text] (with) {braces}",
            "╭─╮\nbody\n",
            "Loaded cached credentials.\nreal\n",
        ],
    )
    def test_idempotent(self, raw: str) -> None:
        once = sanitize(raw, GEMINI_NOISE)
        assert sanitize(once, GEMINI_NOISE) == once


# ===================================================================
# LineBuffer
# ===================================================================


class TestLineBuffer:
    def test_holds_partial_line(self) -> None:
        buf = LineBuffer()
        assert buf.feed(b'{"type": "te') == []
        assert buf.pending == '{"type": "te'
        assert buf.feed(b'xt"}\n{"a"') == ['{"type": "text"}\n']
        assert buf.flush() == '{"a"'

    def test_split_multibyte_character(self) -> None:
        buf = LineBuffer()
        encoded = "héllo\n".encode()
        assert buf.feed(encoded[:2]) == []
        assert buf.feed(encoded[2:]) == ["héllo\n"]

    def test_oversized_record_dropped(self) -> None:
        buf = LineBuffer(max_line=10)
        assert buf.feed(b"x" * 20) == []
        assert buf.feed(b"yyy\nnext\n") == ["next\n"]

    def test_reset_discards_pending(self) -> None:
        buf = LineBuffer()
        buf.feed(b"partial")
        buf.reset()
        assert buf.pending == ""
        assert buf.flush() == ""
