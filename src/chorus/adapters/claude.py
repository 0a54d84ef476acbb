"""Adapter for the Claude CLI's ``--output-format stream-json`` protocol."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

from chorus.adapters.base import JsonLineAdapter, new_id
from chorus.adapters.tools import map_tool_kind
from chorus.checkpoint import CheckpointTrigger
from chorus.events.models import (
    CanonicalEvent,
    CheckpointCreateEvent,
    CostUpdateEvent,
    ErrorEvent,
    FileSnapshot,
    MessageEvent,
    ModelUpdateEvent,
    PermissionDecisionEvent,
    PermissionRequestEvent,
    RawEvent,
    TelemetryTokensEvent,
    ThinkingUpdateEvent,
    ThreadUpdateEvent,
    ToolOutputEvent,
    ToolStartEvent,
)

logger = logging.getLogger(__name__)

#: Fallback pricing per token when the CLI reports usage but no cost.
INPUT_USD_PER_TOKEN = 3.0 / 1_000_000
OUTPUT_USD_PER_TOKEN = 15.0 / 1_000_000

_TOOL_START_TYPES = frozenset(
    {"tool_use", "tool_start", "tool_call", "tool/started", "tool:start"}
)
_TOOL_OUTPUT_TYPES = frozenset(
    {"tool_result", "tool_output", "tool_end", "tool/finished", "tool/delta", "tool/output", "tool:output"}
)
_TOOL_PARTIAL_TYPES = frozenset({"tool/delta", "tool/output"})

_STREAM_EVENT_TYPES = frozenset(
    {
        "message_start",
        "content_block_start",
        "content_block_delta",
        "content_block_stop",
        "message_delta",
        "message_stop",
    }
)


def _tool_result_text(content: Any) -> str:
    """Flatten a tool_result ``content`` field into text."""
    if content is None:
        return ""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = []
        for item in content:
            if isinstance(item, dict):
                if item.get("type") == "text":
                    parts.append(str(item.get("text", "")))
            elif isinstance(item, str):
                parts.append(item)
        return "\n".join(parts)
    return json.dumps(content, default=str)


def _int(value: Any) -> int:
    try:
        return max(int(value), 0)
    except (TypeError, ValueError):
        return 0


def estimate_cost(tokens_in: int, tokens_out: int) -> float:
    return tokens_in * INPUT_USD_PER_TOKEN + tokens_out * OUTPUT_USD_PER_TOKEN


class ClaudeAdapter(JsonLineAdapter):
    """Stateful parser for Claude's newline-delimited JSON events.

    Handles both the Messages-API style streaming records
    (``message_start`` .. ``message_stop``, possibly wrapped in
    ``stream_event``) and the CLI's whole-message records (``assistant``,
    ``user``, ``result``, ``system``).  Tool-use ids are de-duplicated
    because the same call appears in the streamed blocks and again in the
    ``assistant`` record.
    """

    protocol = "stream-json"

    def __init__(
        self,
        name: str = "claude",
        checkpoints: CheckpointTrigger | None = None,
    ) -> None:
        super().__init__(name, checkpoints)
        self._tool_ids: set[str] = set()
        self._pending_tools: dict[int, dict[str, Any]] = {}
        self._last_assistant_id: str | None = None
        self._model: str | None = None

    def begin_turn(self, workdir: Path | None = None) -> None:
        super().begin_turn(workdir)
        self._pending_tools.clear()
        self._last_assistant_id = None

    def reset(self) -> None:
        super().reset()
        self._tool_ids.clear()
        self._model = None

    # ------------------------------------------------------------------ #
    # Dispatch
    # ------------------------------------------------------------------ #

    def _handle_record(self, record: dict[str, Any]) -> list[CanonicalEvent]:
        kind = record.get("type") or record.get("event")

        if kind == "stream_event":
            inner = record.get("event")
            if isinstance(inner, dict):
                return self._handle_stream_event(inner)
            return []
        if kind in _STREAM_EVENT_TYPES:
            return self._handle_stream_event(record)

        if kind == "system":
            return self._handle_system(record)
        if kind == "assistant":
            return self._handle_assistant(record)
        if kind == "user":
            return self._handle_user(record)
        if kind == "result":
            return self._handle_result(record)

        if kind == "text":
            chunk = record.get("content") or record.get("text") or ""
            if not chunk:
                return []
            message_id = self._current_id or record.get("id") or new_id(self.name)
            return [self._delta(message_id, chunk)]
        if kind == "assistant_message":
            message_id = record.get("id") or self._current_id or new_id(self.name)
            return self._completion(message_id, record.get("content") or record.get("text"))
        if kind == "message":
            return self._handle_message(record)
        if kind == "thinking":
            return [
                ThinkingUpdateEvent(
                    id=record.get("id") or new_id("thinking"),
                    text=record.get("content") or record.get("text") or "",
                    done=bool(record.get("done", False)),
                    parent_id=self._current_id,
                )
            ]
        if kind in _TOOL_START_TYPES:
            return self._tool_start(
                record.get("id") or record.get("tool_use_id"),
                record.get("tool") or record.get("tool_name") or record.get("name"),
                record.get("input") or record.get("args") or record.get("parameters"),
            )
        if kind in _TOOL_OUTPUT_TYPES:
            return [self._tool_output(record, partial=kind in _TOOL_PARTIAL_TYPES)]

        if kind in ("cost", "cost:update"):
            return [self._cost(record.get("usd"), record.get("tokens_in"), record.get("tokens_out"))]
        if kind == "telemetry:tokens":
            return [
                TelemetryTokensEvent(
                    tokens_in=_int(record.get("tokensIn", record.get("tokens_in"))),
                    tokens_out=_int(record.get("tokensOut", record.get("tokens_out"))),
                    cached_tokens=_int(record.get("cachedTokens", record.get("cached_tokens"))),
                    latency_ms=_int(record.get("latencyMs", record.get("latency_ms"))),
                )
            ]
        if kind == "checkpoint:create":
            snapshots = record.get("fileSnapshots") or record.get("file_snapshots") or []
            return [
                CheckpointCreateEvent(
                    trigger=str(record.get("trigger", "backend")),
                    file_snapshots=[
                        FileSnapshot(
                            path=str(s.get("path", "")),
                            original_content=str(
                                s.get("originalContent", s.get("original_content", ""))
                            ),
                        )
                        for s in snapshots
                        if isinstance(s, dict)
                    ],
                )
            ]
        if kind in ("permission:request", "permission_request"):
            return [
                PermissionRequestEvent(
                    id=record.get("id") or new_id("perm"),
                    tools=[str(t) for t in record.get("tools", [])],
                    scope=record.get("scope", "once"),
                    prompt=str(record.get("prompt", "")),
                )
            ]
        if kind in ("permission:decision", "permission_decision"):
            return [
                PermissionDecisionEvent(
                    id=record["id"],
                    allow=bool(record.get("allow", False)),
                    scope=record.get("scope", "once"),
                )
            ]
        if kind in ("subagent:started", "subagent:delegated"):
            return self._model_update(record.get("subagentType") or record.get("model"))
        if kind == "subagent:completed":
            return self._model_update(None)
        if kind == "model:update":
            return self._model_update(record.get("model"))
        if kind == "session":
            return self._thread_update(record.get("sessionId") or record.get("session_id"))
        if kind == "error":
            message = record.get("message") or record.get("error") or "unknown error"
            if isinstance(message, dict):
                message = message.get("message") or json.dumps(message)
            logger.warning("%s: backend error: %s", self.name, message)
            return [ErrorEvent(message=str(message), context="backend")]

        return self._fallback(record)

    # ------------------------------------------------------------------ #
    # Record handlers
    # ------------------------------------------------------------------ #

    def _handle_stream_event(self, event: dict[str, Any]) -> list[CanonicalEvent]:
        kind = event.get("type")
        events: list[CanonicalEvent] = []

        if kind == "message_start":
            message = event.get("message") or {}
            message_id = message.get("id") or new_id(self.name)
            self._current_id = message_id
            self._last_assistant_id = message_id
            events.extend(self._model_update(message.get("model"), only_if_changed=True))
            return events

        if kind == "content_block_start":
            block = event.get("content_block") or {}
            if block.get("type") == "tool_use":
                self._pending_tools[int(event.get("index", 0))] = {
                    "id": block.get("id"),
                    "name": block.get("name"),
                    "input": block.get("input") or {},
                    "json": "",
                }
            return events

        if kind == "content_block_delta":
            delta = event.get("delta") or {}
            index = int(event.get("index", 0))
            delta_type = delta.get("type")
            message_id = self._current_id or new_id(self.name)
            if delta_type == "input_json_delta":
                pending = self._pending_tools.get(index)
                if pending is not None:
                    pending["json"] += delta.get("partial_json", "")
            elif delta_type == "thinking_delta":
                events.append(
                    ThinkingUpdateEvent(
                        id=f"{message_id}:thinking:{index}",
                        text=delta.get("thinking", ""),
                        parent_id=message_id,
                    )
                )
            elif delta.get("text"):
                self._last_assistant_id = message_id
                events.append(self._delta(message_id, delta["text"]))
            return events

        if kind == "content_block_stop":
            pending = self._pending_tools.pop(int(event.get("index", 0)), None)
            if pending is not None:
                args = pending["input"]
                if pending["json"]:
                    try:
                        args = json.loads(pending["json"])
                    except json.JSONDecodeError:
                        args = {"raw": pending["json"]}
                events.extend(self._tool_start(pending["id"], pending["name"], args))
            return events

        if kind == "message_stop":
            if self._current_id is not None:
                events.extend(self._completion(self._current_id, None))
            return events

        # message_delta only carries stop_reason and running usage.
        return events

    def _handle_system(self, record: dict[str, Any]) -> list[CanonicalEvent]:
        if record.get("subtype") != "init":
            return [RawEvent(payload=record)]
        events = self._thread_update(record.get("session_id"))
        events.extend(self._model_update(record.get("model"), only_if_changed=True))
        return events

    def _handle_assistant(self, record: dict[str, Any]) -> list[CanonicalEvent]:
        message = record.get("message") or {}
        message_id = message.get("id") or self._current_id or new_id(self.name)
        self._last_assistant_id = message_id
        events: list[CanonicalEvent] = list(
            self._model_update(message.get("model"), only_if_changed=True)
        )

        content = message.get("content") or []
        if isinstance(content, str):
            content = [{"type": "text", "text": content}]
        for index, block in enumerate(content):
            if not isinstance(block, dict):
                continue
            block_type = block.get("type")
            if block_type == "text":
                events.extend(self._completion(message_id, block.get("text", "")))
            elif block_type == "thinking":
                events.append(
                    ThinkingUpdateEvent(
                        id=f"{message_id}:thinking:{index}",
                        text=block.get("thinking") or block.get("text") or "",
                        done=True,
                        parent_id=message_id,
                    )
                )
            elif block_type == "tool_use":
                events.extend(
                    self._tool_start(block.get("id"), block.get("name"), block.get("input"))
                )
        return events

    def _handle_user(self, record: dict[str, Any]) -> list[CanonicalEvent]:
        # Plain user text is the prompt echoed back; the caller already has it.
        content = (record.get("message") or {}).get("content")
        if not isinstance(content, list):
            return []
        events: list[CanonicalEvent] = []
        for block in content:
            if isinstance(block, dict) and block.get("type") == "tool_result":
                events.append(
                    ToolOutputEvent(
                        id=block.get("tool_use_id") or new_id("tool"),
                        chunk=_tool_result_text(block.get("content")),
                        done=True,
                        exit_code=1 if block.get("is_error") else None,
                    )
                )
        return events

    def _handle_result(self, record: dict[str, Any]) -> list[CanonicalEvent]:
        events: list[CanonicalEvent] = []
        result = record.get("result")
        message_id = self._current_id or self._last_assistant_id
        if isinstance(result, str) and (result or message_id in self._buffers):
            events.extend(self._completion(message_id or new_id(self.name), result))

        if record.get("is_error") and not result:
            subtype = record.get("subtype") or "error"
            logger.warning("%s: run ended with %s", self.name, subtype)
            events.append(ErrorEvent(message=str(subtype), context="backend"))

        usage = record.get("usage") or {}
        cost = record.get("total_cost_usd", record.get("cost_usd"))
        if usage or cost is not None:
            events.append(
                self._cost(
                    cost,
                    usage.get("input_tokens"),
                    usage.get("output_tokens"),
                )
            )
        events.extend(self._thread_update(record.get("session_id")))
        return events

    def _handle_message(self, record: dict[str, Any]) -> list[CanonicalEvent]:
        role = record.get("role", "assistant")
        if role not in ("user", "assistant"):
            return [RawEvent(payload=record)]
        text = record.get("content") or record.get("text") or ""
        if not isinstance(text, str):
            text = _tool_result_text(text)
        return [
            MessageEvent(
                id=record.get("id") or new_id(self.name),
                role=role,
                text=text,
                model=self._model if role == "assistant" else None,
            )
        ]

    # ------------------------------------------------------------------ #
    # Builders
    # ------------------------------------------------------------------ #

    def _completion(self, message_id: str, text: str | None) -> list[CanonicalEvent]:
        event = self._complete(message_id, text)
        return [event] if event is not None else []

    def _tool_start(self, tool_id: str | None, name: str | None, args: Any) -> list[CanonicalEvent]:
        tool_id = tool_id or new_id("tool")
        if tool_id in self._tool_ids:
            return []
        self._tool_ids.add(tool_id)
        if not isinstance(args, dict):
            args = {} if args is None else {"raw": args}
        name = name or "tool"
        return [ToolStartEvent(id=tool_id, tool_kind=map_tool_kind(name), name=name, args=args)]

    def _tool_output(self, record: dict[str, Any], partial: bool) -> ToolOutputEvent:
        chunk = record.get("output")
        if chunk is None:
            chunk = record.get("chunk", record.get("content"))
        if not isinstance(chunk, str):
            chunk = _tool_result_text(chunk)
        exit_code = record.get("exitCode", record.get("exit_code"))
        return ToolOutputEvent(
            id=record.get("tool_use_id") or record.get("tool_id") or record.get("id") or new_id("tool"),
            chunk=chunk,
            done=bool(record.get("done", not partial)),
            exit_code=exit_code if isinstance(exit_code, int) else None,
        )

    def _cost(self, usd: Any, tokens_in: Any, tokens_out: Any) -> CostUpdateEvent:
        tokens_in, tokens_out = _int(tokens_in), _int(tokens_out)
        try:
            amount = float(usd) if usd is not None else estimate_cost(tokens_in, tokens_out)
        except (TypeError, ValueError):
            amount = estimate_cost(tokens_in, tokens_out)
        return CostUpdateEvent(usd=max(amount, 0.0), tokens_in=tokens_in, tokens_out=tokens_out)

    def _model_update(self, model: Any, only_if_changed: bool = False) -> list[CanonicalEvent]:
        model = str(model) if model else None
        if only_if_changed and (model is None or model == self._model):
            return []
        self._model = model
        return [ModelUpdateEvent(model=model)]

    def _thread_update(self, session_id: Any) -> list[CanonicalEvent]:
        if not session_id or session_id == self._resume_id:
            return []
        self._resume_id = str(session_id)
        return [ThreadUpdateEvent(thread_id=self._resume_id)]

    def _fallback(self, record: dict[str, Any]) -> list[CanonicalEvent]:
        """Best-effort mapping for records of unknown type."""
        name = record.get("tool") or record.get("tool_name")
        if name and ("args" in record or "input" in record) and "output" not in record:
            return self._tool_start(record.get("id"), name, record.get("args") or record.get("input"))
        if name and ("output" in record or "chunk" in record):
            return [self._tool_output(record, partial=not record.get("done", False))]
        return [RawEvent(payload=record)]
