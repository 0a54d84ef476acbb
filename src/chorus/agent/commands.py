"""Command lines for each backend protocol."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field

from chorus.config.models import BackendConfig

#: Max V8 heap size (MB) for Node.js agent CLIs.
NODE_HEAP_LIMIT_MB = 2048

#: Environment that keeps prose-printing CLIs free of colors and wrapping.
PLAIN_TERMINAL_ENV = {"NO_COLOR": "1", "TERM": "dumb", "COLUMNS": "500"}

#: Sandbox values that mean "no sandbox" for CLIs with an on/off switch.
_SANDBOX_OFF = {"off", "none", "danger-full-access"}


class TurnOptions(BaseModel):
    """Per-turn options supplied by the caller of ``run_turn``."""

    model_config = ConfigDict(extra="forbid")

    cwd: str | None = Field(default=None, description="Working directory")
    sandbox: str | None = Field(default=None, description="Sandbox policy")
    approval: str | None = Field(default=None, description="Approval policy")
    model: str | None = Field(default=None, description="Model identifier")


@dataclass
class LaunchSpec:
    """Everything needed to start one agent subprocess."""

    args: list[str]
    env: dict[str, str] = field(default_factory=dict)
    cwd: str | None = None
    stdin: bytes | None = None
    telemetry_file: Path | None = None


def _base_env(backend: BackendConfig) -> dict[str, str]:
    stripped = set(backend.strip_env)
    env = {k: v for k, v in os.environ.items() if k not in stripped}
    env.update(backend.env)
    return env


def build_command(
    backend: BackendConfig,
    prompt: str,
    options: TurnOptions | None = None,
    resume_id: str | None = None,
    telemetry_file: Path | None = None,
) -> LaunchSpec:
    """Build the launch spec for one turn of *backend*.

    *resume_id* continues an earlier conversation (Claude session id or
    Codex thread id); *telemetry_file* is only used by text backends.
    """
    options = options or TurnOptions()
    env = _base_env(backend)

    if backend.protocol == "stream-json":
        args = [
            backend.command,
            "-p",
            prompt,
            "--output-format",
            "stream-json",
            "--verbose",
            "--include-partial-messages",
        ]
        if options.model:
            args.extend(["--model", options.model])
        if options.approval:
            args.extend(["--permission-mode", options.approval])
        if resume_id:
            args.extend(["--resume", resume_id])
        args.extend(backend.args)
        # Cap the Node.js heap so one agent cannot exhaust memory.
        node_opts = env.get("NODE_OPTIONS", "")
        if "--max-old-space-size" not in node_opts:
            separator = " " if node_opts else ""
            env["NODE_OPTIONS"] = f"{node_opts}{separator}--max-old-space-size={NODE_HEAP_LIMIT_MB}"
        return LaunchSpec(args=args, env=env, cwd=options.cwd)

    if backend.protocol == "thread-json":
        args = [backend.command, "exec"]
        if resume_id:
            args.extend(["resume", resume_id])
        args.extend(["--json", "--skip-git-repo-check"])
        if options.sandbox:
            args.extend(["--sandbox", options.sandbox])
        if options.approval:
            args.extend(["-c", f"approval_policy={options.approval}"])
        if options.model:
            args.extend(["-m", options.model])
        if options.cwd and not resume_id:
            args.extend(["-C", options.cwd])
        args.extend(backend.args)
        args.append(prompt)
        return LaunchSpec(args=args, env=env, cwd=options.cwd)

    # Plain-text CLIs read the prompt from stdin.
    args = [backend.command]
    if options.model:
        args.extend(["-m", options.model])
    if options.approval:
        args.extend(["--approval-mode", options.approval])
    if options.sandbox and options.sandbox.lower() not in _SANDBOX_OFF:
        args.append("--sandbox")
    if telemetry_file is not None:
        args.extend(
            [
                "--telemetry",
                "--telemetry-target=local",
                f"--telemetry-outfile={telemetry_file}",
            ]
        )
    args.extend(backend.args)
    env.update(PLAIN_TERMINAL_ENV)
    return LaunchSpec(
        args=args,
        env=env,
        cwd=options.cwd,
        stdin=prompt.encode("utf-8"),
        telemetry_file=telemetry_file,
    )
