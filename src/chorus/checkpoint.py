"""Checkpoint trigger — snapshot files before an agent mutates them."""

from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import Any

from chorus.events.models import CheckpointCreateEvent, FileSnapshot, ToolStartEvent

logger = logging.getLogger(__name__)

#: Raw tool names that mutate the file named in their arguments.
FILE_MUTATION_TOOLS = frozenset(
    {
        "write_file",
        "replace",
        "create_file",
        "apply_patch",
        "move",
        "delete",
        "write",
        "edit",
        "multiedit",
        "str_replace_editor",
    }
)

#: Argument keys that may name the affected file.
PATH_KEYS = (
    "path",
    "file_path",
    "file",
    "filename",
    "target",
    "destination",
    "to",
    "output",
    "notebook_path",
)

#: Shell commands that can destroy or rewrite workspace state.
DESTRUCTIVE_SHELL_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"\brm\s+"),
    re.compile(r"\bmv\s+"),
    re.compile(r"\bcp\s+"),
    re.compile(r">>|(?<![0-9&>-])>(?![>&=])"),
    re.compile(r"\bgit\s+(?:reset|revert|clean|rebase|filter-branch|checkout\s+--)\b"),
    re.compile(r"\bgit\s+push\s+(?:.*\s)?(?:--force|-f)\b"),
    re.compile(r"\b(?:npm|pnpm)\s+(?:install|i|update|uninstall|add|remove|rm)\b"),
    re.compile(r"\byarn\s+(?:add|remove|upgrade)\b"),
    re.compile(r"\bpip3?\s+(?:install|uninstall)\b"),
)


def is_destructive_command(command: str) -> bool:
    """Whether a shell *command* matches any destructive pattern."""
    return any(p.search(command) for p in DESTRUCTIVE_SHELL_PATTERNS)


def extract_paths(args: dict[str, Any]) -> list[str]:
    """Distinct file paths named by a tool's arguments, in key order."""
    found: list[str] = []
    for key in PATH_KEYS:
        value = args.get(key)
        if isinstance(value, str) and value and value not in found:
            found.append(value)
    return found


def _shell_command(args: dict[str, Any]) -> str:
    for key in ("command", "cmd", "raw"):
        value = args.get(key)
        if isinstance(value, str):
            return value
        if isinstance(value, list):
            return " ".join(str(v) for v in value)
    return ""


class CheckpointTrigger:
    """Decides whether a tool start warrants a checkpoint and captures it.

    File-mutating tools with a path argument get a snapshot of each named
    file's current content; destructive shell commands get a marker
    checkpoint with no files.  Capture is best-effort: a file that cannot
    be read is recorded with empty content and the tool call proceeds.
    """

    def __init__(self, workdir: Path | None = None) -> None:
        self._workdir = workdir

    @property
    def workdir(self) -> Path | None:
        return self._workdir

    @workdir.setter
    def workdir(self, value: Path | None) -> None:
        self._workdir = value

    def inspect(self, event: ToolStartEvent) -> CheckpointCreateEvent | None:
        name = (event.name or event.tool_kind).lower()

        if event.tool_kind == "bash":
            command = _shell_command(event.args)
            if command and is_destructive_command(command):
                return CheckpointCreateEvent(ts=event.ts, trigger=f"bash: {command}")
            return None

        if event.tool_kind == "write" or name in FILE_MUTATION_TOOLS:
            paths = extract_paths(event.args)
            if not paths:
                return None
            return CheckpointCreateEvent(
                ts=event.ts,
                trigger=event.name or event.tool_kind,
                file_snapshots=[self._snapshot(p) for p in paths],
            )

        return None

    def _snapshot(self, path: str) -> FileSnapshot:
        target = Path(path)
        if not target.is_absolute() and self._workdir is not None:
            target = self._workdir / target
        try:
            content = target.read_text(encoding="utf-8", errors="replace")
        except OSError as exc:
            logger.debug("Checkpoint snapshot of %s failed: %s", path, exc)
            content = ""
        return FileSnapshot(path=path, original_content=content)
