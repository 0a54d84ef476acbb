"""Normalization of backend tool names into the canonical tool kinds."""

from __future__ import annotations

from chorus.events.models import ToolKind


def map_tool_kind(name: str | None) -> ToolKind:
    """Map a backend-specific tool name onto the closed :data:`ToolKind` set.

    Matching is by substring on the lower-cased name, checked in a fixed
    order so that e.g. ``run_shell_command`` is ``bash`` rather than
    ``read``.  Anything unrecognized is treated as an MCP tool.
    """
    if not name:
        return "mcp"
    normalized = name.lower()

    if normalized.startswith("mcp__"):
        return "mcp"
    if normalized in ("task", "agent", "todowrite"):
        return "task"
    if "bash" in normalized or "command" in normalized or "shell" in normalized:
        return "bash"
    if (
        "write" in normalized
        or "edit" in normalized
        or "replace" in normalized
        or "patch" in normalized
        or normalized in ("create_file", "file_change", "file-change")
    ):
        return "write"
    if "read" in normalized or normalized in ("ls", "list_directory"):
        return "read"
    if "grep" in normalized or "search" in normalized or "glob" in normalized:
        if "web" in normalized:
            return "web"
        return "grep"
    if "web" in normalized or "fetch" in normalized:
        return "web"
    return "mcp"
