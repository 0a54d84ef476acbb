"""chorus replay — reconcile captured agent output offline."""

from __future__ import annotations

import json
from pathlib import Path

import click

from chorus.adapters import create_adapter
from chorus.agent.process import READ_CHUNK
from chorus.commands import configure_logging
from chorus.config.parser import ConfigError, load_config
from chorus.events.models import (
    CanonicalEvent,
    CheckpointCreateEvent,
    ErrorEvent,
    MessageEvent,
    PermissionRequestEvent,
    ThinkingUpdateEvent,
    ToolOutputEvent,
    ToolStartEvent,
)
from chorus.session.log import SessionEventLog
from chorus.session.recorder import load_events


def format_event(event: CanonicalEvent) -> str | None:
    """One human-readable line (or block) for *event*; ``None`` to skip."""
    if isinstance(event, MessageEvent):
        return f"[{event.role}] {event.text}"
    if isinstance(event, ToolStartEvent):
        args = json.dumps(event.args, default=str)
        return f"[tool:{event.tool_kind}] {event.name or event.id} {args}"
    if isinstance(event, ToolOutputEvent):
        if not event.chunk:
            return None
        return "\n".join(f"  {line}" for line in event.chunk.rstrip("\n").split("\n"))
    if isinstance(event, ThinkingUpdateEvent):
        return f"[thinking] {event.text}" if event.text else None
    if isinstance(event, CheckpointCreateEvent):
        return f"[checkpoint] {event.trigger} ({len(event.file_snapshots)} files)"
    if isinstance(event, PermissionRequestEvent):
        return f"[permission] {event.prompt or ', '.join(event.tools)}"
    if isinstance(event, ErrorEvent):
        return f"[error] {event.message}"
    return None


@click.command()
@click.argument("backend")
@click.argument("stdout_file", type=click.Path(exists=True, dir_okay=False))
@click.option(
    "--telemetry",
    "telemetry_file",
    type=click.Path(exists=True, dir_okay=False),
    default=None,
    help="Side-channel telemetry file captured alongside stdout.",
)
@click.option(
    "--events",
    "is_recording",
    is_flag=True,
    help="STDOUT_FILE is a chorus JSONL recording rather than raw agent output.",
)
@click.option("--exit-code", type=int, default=0, help="Exit code the agent ended with.")
@click.option("--json", "as_json", is_flag=True, help="Print the snapshot as JSON lines.")
@click.option(
    "-f", "--file", "config_file", type=click.Path(), help="Config file path."
)
@click.option("-v", "--verbose", is_flag=True, help="Enable verbose output.")
def replay(
    backend: str,
    stdout_file: str,
    telemetry_file: str | None,
    is_recording: bool,
    exit_code: int,
    as_json: bool,
    config_file: str | None,
    verbose: bool,
) -> None:
    """Feed STDOUT_FILE through BACKEND's adapter and print the reconciled log."""
    configure_logging(verbose)
    try:
        config = load_config(Path(config_file) if config_file else None)
    except ConfigError as exc:
        click.echo(f"Error: {exc}", err=True)
        raise SystemExit(1) from exc

    log = SessionEventLog(
        max_events=config.log.max_events,
        max_messages=config.log.max_messages,
        dedup_window=config.log.dedup_window,
        name=backend,
    )

    if is_recording:
        log.extend(load_events(Path(stdout_file)))
    else:
        backend_config = config.backends.get(backend)
        try:
            adapter = create_adapter(
                backend, backend_config.protocol if backend_config else None
            )
        except ValueError as exc:
            click.echo(f"Error: {exc}", err=True)
            raise SystemExit(1) from exc

        with Path(stdout_file).open("rb") as fh:
            while chunk := fh.read(READ_CHUNK):
                log.extend(adapter.feed(chunk))
        if telemetry_file:
            text = Path(telemetry_file).read_text(encoding="utf-8", errors="replace")
            log.extend(adapter.feed_telemetry(text))
        log.extend(adapter.finish(exit_code))

    for event in log.snapshot():
        if as_json:
            click.echo(event.model_dump_json())
            continue
        line = format_event(event)
        if line is not None:
            click.echo(line)

    usage = log.usage()
    if not as_json:
        click.echo(
            f"-- {len(log)} events, tokens in={usage.tokens_in} out={usage.tokens_out}"
            f" cost=${usage.usd:.4f}"
        )
