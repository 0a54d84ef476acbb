"""Agent subprocess launching, stream reading and telemetry polling."""

from chorus.agent.commands import LaunchSpec, TurnOptions, build_command
from chorus.agent.poller import TelemetryPoller
from chorus.agent.process import (
    Launcher,
    drain_stderr,
    read_stream,
    spawn_process,
    terminate_process,
)

__all__ = [
    "LaunchSpec",
    "Launcher",
    "TelemetryPoller",
    "TurnOptions",
    "build_command",
    "drain_stderr",
    "read_stream",
    "spawn_process",
    "terminate_process",
]
