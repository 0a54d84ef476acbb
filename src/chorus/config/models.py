"""Pydantic v2 models for chorus.yaml configuration."""

from __future__ import annotations

import re

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from chorus.constants import (
    DEFAULT_DEDUP_WINDOW,
    DEFAULT_INTERRUPT_GRACE,
    DEFAULT_MAX_EVENTS,
    DEFAULT_MAX_MESSAGES,
    DEFAULT_MAX_QUEUE,
    DEFAULT_POLL_INTERVAL,
    Protocol,
)

_BACKEND_NAME_RE = re.compile(r"^[a-zA-Z0-9_-]+$")

#: Env vars stripped from agent subprocesses so they use subscription auth.
DEFAULT_STRIPPED_ENV = ["ANTHROPIC_API_KEY", "OPENAI_API_KEY", "GOOGLE_API_KEY"]


class BackendConfig(BaseModel):
    """How to launch one agent CLI and which stream protocol it speaks."""

    model_config = ConfigDict(extra="forbid")

    command: str = Field(description="Executable name or path")
    protocol: Protocol = Field(description="Stdout protocol family")
    args: list[str] = Field(
        default_factory=list,
        description="Extra arguments appended to every invocation",
    )
    env: dict[str, str] = Field(
        default_factory=dict,
        description="Extra environment variables for the subprocess",
    )
    strip_env: list[str] = Field(
        default_factory=lambda: list(DEFAULT_STRIPPED_ENV),
        description="Environment variables removed before launching",
    )
    telemetry: bool = Field(
        default=False,
        description="Ask the CLI to mirror telemetry into a polled side-channel file",
    )


def default_backends() -> dict[str, BackendConfig]:
    return {
        "claude": BackendConfig(command="claude", protocol="stream-json"),
        "codex": BackendConfig(command="codex", protocol="thread-json"),
        "gemini": BackendConfig(command="gemini", protocol="text", telemetry=True),
        "qwen": BackendConfig(command="qwen", protocol="text", telemetry=True),
    }


class LogConfig(BaseModel):
    """Bounds of each session's event log."""

    model_config = ConfigDict(extra="forbid")

    max_events: int = Field(
        default=DEFAULT_MAX_EVENTS,
        ge=1,
        description="Maximum retained events per session",
    )
    max_messages: int = Field(
        default=DEFAULT_MAX_MESSAGES,
        ge=1,
        description="Maximum retained reconciled messages per session",
    )
    dedup_window: int = Field(
        default=DEFAULT_DEDUP_WINDOW,
        ge=0,
        description="Recent assistant messages checked for re-emitted replies",
    )


class TelemetryConfig(BaseModel):
    """Side-channel telemetry file polling."""

    model_config = ConfigDict(extra="forbid")

    poll_interval: float = Field(
        default=DEFAULT_POLL_INTERVAL,
        gt=0,
        description="Seconds between telemetry file polls",
    )
    directory: str | None = Field(
        default=None,
        description="Where per-turn telemetry files are created (default: temp dir)",
    )


class SupervisorConfig(BaseModel):
    """Turn queueing and interruption."""

    model_config = ConfigDict(extra="forbid")

    interrupt_grace: float = Field(
        default=DEFAULT_INTERRUPT_GRACE,
        ge=0,
        description="Seconds between SIGTERM and SIGKILL on interrupt",
    )
    max_queue: int = Field(
        default=DEFAULT_MAX_QUEUE,
        ge=1,
        description="Maximum turns waiting behind the active one",
    )


class ChorusConfig(BaseModel):
    """Top-level chorus.yaml configuration."""

    model_config = ConfigDict(extra="forbid")

    version: str = Field(default="1", description="Config schema version")
    sessions_dir: str = Field(
        default="sessions",
        description="Directory for JSONL session recordings",
    )
    backends: dict[str, BackendConfig] = Field(
        default_factory=default_backends,
        description="Agent backends by name",
    )
    log: LogConfig = Field(default_factory=LogConfig)
    telemetry: TelemetryConfig = Field(default_factory=TelemetryConfig)
    supervisor: SupervisorConfig = Field(default_factory=SupervisorConfig)

    @field_validator("backends", mode="before")
    @classmethod
    def _merge_default_backends(cls, value: object) -> object:
        # Listed backends override the built-in ones of the same name.
        if not isinstance(value, dict):
            return value
        merged: dict[str, object] = dict(default_backends())
        merged.update(value)
        return merged

    @model_validator(mode="after")
    def _validate_backend_names(self) -> ChorusConfig:
        bad = sorted(n for n in self.backends if not _BACKEND_NAME_RE.match(n))
        if bad:
            joined = ", ".join(f"'{n}'" for n in bad)
            msg = (
                f"Invalid backend name(s) {joined}: must contain only "
                "alphanumeric characters, hyphens, and underscores"
            )
            raise ValueError(msg)
        return self

    def backend(self, name: str) -> BackendConfig:
        """Return backend *name*, raising ``KeyError`` with the known names."""
        try:
            return self.backends[name]
        except KeyError:
            available = ", ".join(f"'{b}'" for b in self.backends)
            msg = f"Unknown backend '{name}' — available backends: {available}"
            raise KeyError(msg) from None
