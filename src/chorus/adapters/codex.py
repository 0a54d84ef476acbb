"""Adapter for ``codex exec --json`` thread/item events."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

from chorus.adapters.base import JsonLineAdapter, diff_text, new_id
from chorus.adapters.tools import map_tool_kind
from chorus.checkpoint import CheckpointTrigger
from chorus.events.models import (
    CanonicalEvent,
    ErrorEvent,
    RawEvent,
    TelemetryTokensEvent,
    ThinkingUpdateEvent,
    ThreadUpdateEvent,
    ToolOutputEvent,
    ToolStartEvent,
)

logger = logging.getLogger(__name__)

_ITEM_PHASES = {
    "item.started": "started",
    "item.updated": "updated",
    "item.completed": "completed",
}

_CHANGE_SIGILS = {"add": "+", "delete": "-", "remove": "-"}


def _summarize_changes(changes: Any) -> str:
    if not isinstance(changes, list) or not changes:
        return "no file changes"
    lines = []
    for change in changes:
        if not isinstance(change, dict):
            continue
        sigil = _CHANGE_SIGILS.get(str(change.get("kind", "")).lower(), "~")
        lines.append(f"{sigil} {change.get('path', '?')}")
    return "\n".join(lines)


def _format_todos(items: Any) -> str:
    if not isinstance(items, list):
        return ""
    lines = []
    for item in items:
        if not isinstance(item, dict):
            continue
        mark = "x" if item.get("completed") else " "
        lines.append(f"[{mark}] {item.get('text', '')}")
    return "\n".join(lines)


class CodexAdapter(JsonLineAdapter):
    """Stateful parser for Codex's thread event stream.

    Codex reports items (messages, reasoning, commands, file changes) with
    started/updated/completed phases, each carrying the full text so far.
    Deltas are derived by prefix diff against the previous snapshot of the
    same item.  Item ids restart every turn, so ids are scoped by a
    per-turn prefix.
    """

    protocol = "thread-json"

    def __init__(
        self,
        name: str = "codex",
        checkpoints: CheckpointTrigger | None = None,
    ) -> None:
        super().__init__(name, checkpoints)
        self._turn = new_id(name)
        self._snapshots: dict[str, str] = {}
        self._started: set[str] = set()

    def begin_turn(self, workdir: Path | None = None) -> None:
        super().begin_turn(workdir)
        self._turn = new_id(self.name)
        self._snapshots.clear()
        self._started.clear()

    def _handle_record(self, record: dict[str, Any]) -> list[CanonicalEvent]:
        kind = record.get("type")

        if kind == "thread.started":
            thread_id = record.get("thread_id")
            if not thread_id:
                return []
            self._resume_id = str(thread_id)
            return [ThreadUpdateEvent(thread_id=self._resume_id)]
        if kind == "turn.started":
            return []
        if kind == "turn.completed":
            usage = record.get("usage") or {}
            return [
                TelemetryTokensEvent(
                    tokens_in=int(usage.get("input_tokens", 0) or 0),
                    tokens_out=int(usage.get("output_tokens", 0) or 0),
                    cached_tokens=int(usage.get("cached_input_tokens", 0) or 0),
                )
            ]
        if kind == "turn.failed":
            error = record.get("error") or {}
            message = error.get("message") if isinstance(error, dict) else str(error)
            logger.warning("%s: turn failed: %s", self.name, message)
            return [ErrorEvent(message=message or "turn failed", context="backend")]
        if kind == "error":
            message = str(record.get("message") or "unknown error")
            logger.warning("%s: backend error: %s", self.name, message)
            return [ErrorEvent(message=message, context="backend")]
        if kind in _ITEM_PHASES:
            item = record.get("item")
            if isinstance(item, dict):
                return self._handle_item(_ITEM_PHASES[kind], item)

        return [RawEvent(payload=record)]

    def _handle_item(self, phase: str, item: dict[str, Any]) -> list[CanonicalEvent]:
        item_type = item.get("type") or item.get("item_type")
        item_id = f"{self._turn}:{item.get('id') or new_id('item')}"

        if item_type == "agent_message":
            return self._agent_message(phase, item_id, item.get("text") or "")
        if item_type == "reasoning":
            delta = self._advance(item_id, item.get("text") or "")
            if not delta and phase != "completed":
                return []
            return [
                ThinkingUpdateEvent(
                    id=item_id,
                    text=delta,
                    done=phase == "completed",
                    parent_id=self._current_id,
                )
            ]
        if item_type == "command_execution":
            return self._command(phase, item_id, item)
        if item_type == "file_change":
            if phase != "completed":
                return []
            events = self._start(item_id, "file_change", {"changes": item.get("changes") or []})
            events.append(
                ToolOutputEvent(
                    id=item_id,
                    chunk=_summarize_changes(item.get("changes")),
                    done=True,
                    exit_code=0 if item.get("status") != "failed" else 1,
                )
            )
            return events
        if item_type == "mcp_tool_call":
            server, tool = item.get("server", ""), item.get("tool", "")
            events = self._start(
                item_id,
                f"mcp__{server}__{tool}",
                {"server": server, "tool": tool, "arguments": item.get("arguments")},
            )
            if phase == "completed":
                status = item.get("status", "completed")
                events.append(
                    ToolOutputEvent(
                        id=item_id,
                        chunk=f"MCP {server}/{tool} {status}",
                        done=True,
                        exit_code=1 if status == "failed" else 0,
                    )
                )
            return events
        if item_type == "web_search":
            query = item.get("query", "")
            events = self._start(item_id, "web_search", {"query": query})
            if phase == "completed":
                events.append(ToolOutputEvent(id=item_id, chunk=query, done=True))
            return events
        if item_type == "todo_list":
            if phase == "started":
                return []
            return [
                ThinkingUpdateEvent(
                    id=item_id,
                    text=_format_todos(item.get("items")),
                    done=phase == "completed",
                    parent_id=self._current_id,
                )
            ]
        if item_type == "error":
            message = str(item.get("message") or "unknown error")
            logger.warning("%s: item error: %s", self.name, message)
            return [ErrorEvent(message=message, context="backend")]

        return [RawEvent(payload={"phase": phase, "item": item})]

    def _advance(self, item_id: str, text: str) -> str:
        delta = diff_text(self._snapshots.get(item_id, ""), text)
        self._snapshots[item_id] = text
        return delta

    def _agent_message(self, phase: str, item_id: str, text: str) -> list[CanonicalEvent]:
        events: list[CanonicalEvent] = []
        delta = self._advance(item_id, text)
        if delta:
            events.append(self._delta(item_id, delta))
        if phase == "completed":
            self._snapshots.pop(item_id, None)
            complete = self._complete(item_id, text)
            if complete is not None:
                events.append(complete)
        return events

    def _command(self, phase: str, item_id: str, item: dict[str, Any]) -> list[CanonicalEvent]:
        events = self._start(item_id, "command_execution", {"command": item.get("command", "")})
        delta = self._advance(item_id, item.get("aggregated_output") or "")
        if phase == "completed":
            self._snapshots.pop(item_id, None)
            exit_code = item.get("exit_code")
            events.append(
                ToolOutputEvent(
                    id=item_id,
                    chunk=delta,
                    done=True,
                    exit_code=exit_code if isinstance(exit_code, int) else None,
                )
            )
        elif delta:
            events.append(ToolOutputEvent(id=item_id, chunk=delta))
        return events

    def _start(self, item_id: str, name: str, args: dict[str, Any]) -> list[CanonicalEvent]:
        if item_id in self._started:
            return []
        self._started.add(item_id)
        return [ToolStartEvent(id=item_id, tool_kind=map_tool_kind(name), name=name, args=args)]
