"""chorus run — run one turn against an agent CLI and stream the log."""

from __future__ import annotations

import asyncio
import contextlib
import signal
from pathlib import Path

import click

from chorus.agent.commands import TurnOptions
from chorus.commands import configure_logging
from chorus.config.models import ChorusConfig
from chorus.config.parser import ConfigError, load_config
from chorus.events.models import ErrorEvent
from chorus.session.models import LogUpdate
from chorus.session.recorder import SessionRecorder
from chorus.supervisor import SessionManager

_SESSION_ID = "cli"


@click.command()
@click.argument("backend")
@click.argument("prompt")
@click.option("--cwd", type=click.Path(file_okay=False), default=None, help="Working directory.")
@click.option("--model", default=None, help="Model identifier passed to the agent.")
@click.option("--sandbox", default=None, help="Sandbox policy passed to the agent.")
@click.option("--approval", default=None, help="Approval policy passed to the agent.")
@click.option(
    "-f", "--file", "config_file", type=click.Path(), help="Config file path."
)
@click.option(
    "--record",
    "record_path",
    type=click.Path(dir_okay=False),
    default=None,
    help="Also write the canonical events to this JSONL file.",
)
@click.option(
    "--save",
    is_flag=True,
    help="Record the session under the configured sessions directory.",
)
@click.option("-v", "--verbose", is_flag=True, help="Enable verbose output.")
def run(
    backend: str,
    prompt: str,
    cwd: str | None,
    model: str | None,
    sandbox: str | None,
    approval: str | None,
    config_file: str | None,
    record_path: str | None,
    save: bool,
    verbose: bool,
) -> None:
    """Run PROMPT through BACKEND and print every log update as JSON lines."""
    if save and record_path:
        raise click.UsageError("--record and --save are mutually exclusive")
    configure_logging(verbose)
    try:
        config = load_config(Path(config_file) if config_file else None)
    except ConfigError as exc:
        click.echo(f"Error: {exc}", err=True)
        raise SystemExit(1) from exc

    if backend not in config.backends:
        available = ", ".join(sorted(config.backends))
        click.echo(f"Error: unknown backend '{backend}' (available: {available})", err=True)
        raise SystemExit(1)

    recorder: SessionRecorder | None = None
    if record_path:
        recorder = SessionRecorder(Path(record_path))
    elif save:
        recorder = SessionRecorder.for_session(backend, Path(config.sessions_dir))
        click.echo(f"Recording to {recorder.path}", err=True)

    options = TurnOptions(cwd=cwd, sandbox=sandbox, approval=approval, model=model)
    exit_code = asyncio.run(_run_turn(config, backend, prompt, options, recorder))
    if exit_code:
        raise SystemExit(exit_code)


def _print_update(update: LogUpdate) -> None:
    click.echo(update.model_dump_json(include={"action", "event"}))


async def _run_turn(
    config: ChorusConfig,
    backend: str,
    prompt: str,
    options: TurnOptions,
    recorder: SessionRecorder | None,
) -> int:
    manager = SessionManager(config)
    supervisor = manager.open(_SESSION_ID, backend)
    log = supervisor.log
    log.add_listener(_print_update)

    if recorder is not None:
        log.add_listener(recorder.on_update)

    loop = asyncio.get_running_loop()
    pending: set[asyncio.Task[bool]] = set()

    def _on_sigint() -> None:
        click.echo("\nInterrupting…", err=True)
        task = asyncio.create_task(supervisor.interrupt())
        pending.add(task)
        task.add_done_callback(pending.discard)

    with contextlib.suppress(NotImplementedError):
        loop.add_signal_handler(signal.SIGINT, _on_sigint)
    try:
        await supervisor.run_turn(prompt, options)
        await supervisor.wait_idle()
        if pending:
            await asyncio.gather(*pending)
    finally:
        with contextlib.suppress(NotImplementedError):
            loop.remove_signal_handler(signal.SIGINT)
        if recorder is not None:
            recorder.close()

    usage = log.usage()
    click.echo(
        f"tokens in={usage.tokens_in} out={usage.tokens_out} "
        f"cached={usage.cached_tokens} cost=${usage.usd:.4f}",
        err=True,
    )
    failed = any(isinstance(e, ErrorEvent) for e in log.snapshot())
    return 1 if failed else 0
