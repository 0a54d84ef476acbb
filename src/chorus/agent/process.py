"""Agent subprocess plumbing: spawn, stream stdout, drain stderr, terminate."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Awaitable, Callable

from chorus.agent.commands import LaunchSpec

logger = logging.getLogger(__name__)

#: Bytes requested per stdout read; records may span several reads.
READ_CHUNK = 65_536

#: Most recent stderr bytes kept for error reports.
STDERR_TAIL_BYTES = 65_536

Launcher = Callable[[LaunchSpec], Awaitable[asyncio.subprocess.Process]]


async def spawn_process(spec: LaunchSpec) -> asyncio.subprocess.Process:
    """Start the subprocess described by *spec* in its own process group."""
    return await asyncio.create_subprocess_exec(
        *spec.args,
        stdin=asyncio.subprocess.PIPE if spec.stdin is not None else asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
        env=spec.env or None,
        cwd=spec.cwd,
        start_new_session=True,
    )


async def write_stdin(name: str, proc: asyncio.subprocess.Process, data: bytes) -> None:
    """Send *data* to the process and close its stdin."""
    if proc.stdin is None:
        return
    try:
        proc.stdin.write(data)
        await proc.stdin.drain()
        proc.stdin.close()
    except (BrokenPipeError, ConnectionResetError, OSError) as exc:
        logger.warning("%s: could not write prompt to stdin: %s", name, exc)


async def read_stream(
    name: str,
    stream: asyncio.StreamReader | None,
    on_chunk: Callable[[bytes], None],
) -> None:
    """Hand every chunk read from *stream* to *on_chunk* until EOF."""
    if stream is None:
        return
    try:
        while True:
            chunk = await stream.read(READ_CHUNK)
            if not chunk:
                break
            on_chunk(chunk)
    except asyncio.CancelledError:
        raise
    except OSError as exc:
        logger.error("%s: error reading stdout: %s", name, exc)


async def drain_stderr(stream: asyncio.StreamReader | None) -> str:
    """Read stderr to EOF so the process never blocks on a full pipe."""
    if stream is None:
        return ""
    tail = bytearray()
    try:
        while True:
            chunk = await stream.read(READ_CHUNK)
            if not chunk:
                break
            tail.extend(chunk)
            if len(tail) > STDERR_TAIL_BYTES:
                del tail[: len(tail) - STDERR_TAIL_BYTES]
    except OSError:
        pass
    return tail.decode(errors="replace").strip()


async def terminate_process(
    name: str,
    proc: asyncio.subprocess.Process,
    grace: float,
) -> int | None:
    """SIGTERM, wait *grace* seconds, then SIGKILL.

    Returns the exit code, or ``None`` if the process did not go away
    even after SIGKILL within another grace period.
    """
    if proc.returncode is not None:
        return proc.returncode
    with contextlib.suppress(ProcessLookupError):
        proc.terminate()
    try:
        return await asyncio.wait_for(proc.wait(), timeout=grace)
    except TimeoutError:
        logger.warning("%s: no exit %.1fs after SIGTERM, sending SIGKILL", name, grace)
    with contextlib.suppress(ProcessLookupError):
        proc.kill()
    try:
        return await asyncio.wait_for(proc.wait(), timeout=max(grace, 0.1))
    except TimeoutError:
        logger.error("%s: process %s ignored SIGKILL", name, proc.pid)
        return None


def format_stderr_preview(stderr_text: str, max_lines: int = 5) -> str:
    """Extract and format the last N non-empty lines from stderr output."""
    lines = [line for line in stderr_text.split("\n") if line.strip()]
    last = lines[-max_lines:] if len(lines) > max_lines else lines
    return "\n  ".join(last)
