"""Root CLI group and version flag."""

from __future__ import annotations

import signal

import click

from chorus import __version__
from chorus.commands.replay import replay
from chorus.commands.run import run

# Ignore SIGPIPE so a closed stdout pipe surfaces as BrokenPipeError.
if hasattr(signal, "SIGPIPE"):
    signal.signal(signal.SIGPIPE, signal.SIG_IGN)


@click.group()
@click.version_option(version=__version__, prog_name="chorus")
def cli() -> None:
    """Chorus — reconcile coding-agent CLI streams into one event log."""


cli.add_command(run)
cli.add_command(replay)
