"""Strip terminal control sequences and known noise from subprocess output."""

from __future__ import annotations

import re

#: CSI sequences: colors, cursor movement, erase-in-line, ...
_CSI_RE = re.compile(r"\x1b\[[0-?]*[ -/]*[@-~]")

#: OSC sequences (window title etc.), terminated by BEL or ST.
_OSC_RE = re.compile(r"\x1b\][^\x07\x1b]*(?:\x07|\x1b\\)")

#: Remaining two-byte escapes (charset selection, keypad modes, ...).
_ESC_RE = re.compile(r"\x1b[@-Z\\-_]")

#: Lines drawn only from box-drawing characters, pipes and dashes.
_BOX_LINE_RE = re.compile(r"^[─-╿][─-╿\s|+\-]*$")

#: Benign banners printed by the Gemini CLI.
GEMINI_NOISE: tuple[re.Pattern[str], ...] = (
    re.compile(r"^loaded cached credentials\.?$", re.IGNORECASE),
    re.compile(r"^using cached credentials\.?$", re.IGNORECASE),
    re.compile(r"^data collection is disabled\.?$", re.IGNORECASE),
)

#: Benign banners printed by the Qwen CLI.
QWEN_NOISE: tuple[re.Pattern[str], ...] = (
    re.compile(r"^loaded cached qwen credentials\.?$", re.IGNORECASE),
    re.compile(r"^using cached qwen credentials\.?$", re.IGNORECASE),
)


def sanitize(
    raw: bytes | str,
    noise: tuple[re.Pattern[str], ...] = (),
) -> str:
    """Return *raw* as clean text.

    Removes ANSI escape and title-set sequences, resolves carriage-return
    overwrites, and drops box-drawing frame lines plus any whole line
    matching one of the *noise* patterns.  Brackets that are not part of an
    escape sequence are left alone, and ``sanitize(sanitize(x)) ==
    sanitize(x)``.
    """
    text = raw.decode("utf-8", errors="replace") if isinstance(raw, bytes) else raw
    if not text:
        return ""

    text = _OSC_RE.sub("", text)
    text = _CSI_RE.sub("", text)
    text = _ESC_RE.sub("", text)
    # A lone ESC left over from a sequence split across reads.
    text = text.replace("\x1b", "")
    text = text.replace("\r\n", "\n")

    kept: list[str] = []
    for line in text.split("\n"):
        if "\r" in line:
            line = line.rsplit("\r", 1)[-1]
        stripped = line.strip()
        if stripped and _BOX_LINE_RE.match(stripped):
            continue
        if stripped and any(p.match(stripped) for p in noise):
            continue
        kept.append(line)
    return "\n".join(kept)
