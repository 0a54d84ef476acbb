"""Per-backend stream adapters and the factory that picks one."""

from __future__ import annotations

from chorus.adapters.base import StreamAdapter
from chorus.adapters.claude import ClaudeAdapter
from chorus.adapters.codex import CodexAdapter
from chorus.adapters.text import TextAdapter
from chorus.adapters.tools import map_tool_kind
from chorus.checkpoint import CheckpointTrigger
from chorus.constants import Protocol
from chorus.stream.sanitizer import GEMINI_NOISE, QWEN_NOISE

#: Protocol spoken by each well-known backend.
DEFAULT_PROTOCOLS: dict[str, Protocol] = {
    "claude": "stream-json",
    "codex": "thread-json",
    "gemini": "text",
    "qwen": "text",
}

_NOISE = {
    "gemini": GEMINI_NOISE,
    "qwen": QWEN_NOISE,
}


def create_adapter(
    name: str,
    protocol: Protocol | None = None,
    checkpoints: CheckpointTrigger | None = None,
) -> StreamAdapter:
    """Build the adapter for backend *name*.

    *protocol* defaults to the backend's well-known protocol; an unknown
    backend without an explicit protocol raises ``ValueError``.
    """
    protocol = protocol or DEFAULT_PROTOCOLS.get(name)
    if protocol == "stream-json":
        return ClaudeAdapter(name, checkpoints)
    if protocol == "thread-json":
        return CodexAdapter(name, checkpoints)
    if protocol == "text":
        return TextAdapter(name, _NOISE.get(name, ()), checkpoints)
    raise ValueError(f"No protocol known for backend '{name}'")


__all__ = [
    "ClaudeAdapter",
    "CodexAdapter",
    "DEFAULT_PROTOCOLS",
    "StreamAdapter",
    "TextAdapter",
    "create_adapter",
    "map_tool_kind",
]
