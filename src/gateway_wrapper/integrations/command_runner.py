from __future__ import annotations

import asyncio
import os
import signal
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path

from wrapper_core.errors import CommandSpawnError


@dataclass(frozen=True)
class CommandResult:
    argv: tuple[str, ...]
    exit_code: int
    output: str

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


def merged_env(env: Mapping[str, str] | None) -> dict[str, str]:
    resolved_env = dict(os.environ)
    for key, value in (env or {}).items():
        resolved_env[str(key)] = str(value)
    return resolved_env


async def run_command(
    cmd: Sequence[str],
    *,
    cwd: Path | None = None,
    env: Mapping[str, str] | None = None,
    timeout_seconds: float | None = None,
) -> CommandResult:
    """Run a one-shot command and capture stdout and stderr as one text stream.

    Raises ``CommandSpawnError`` when the executable cannot be started. A
    non-zero exit is not an error here; callers inspect ``CommandResult.ok``.
    """
    argv = tuple(str(part) for part in cmd)
    try:
        process = await asyncio.create_subprocess_exec(
            *argv,
            cwd=str(cwd) if cwd else None,
            env=merged_env(env),
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
            start_new_session=True,
        )
    except OSError as exc:
        raise CommandSpawnError(f"Failed to start {argv[0]}: {exc}") from exc

    timed_out = False
    try:
        stdout, _ = await asyncio.wait_for(process.communicate(), timeout=timeout_seconds)
    except asyncio.TimeoutError:
        timed_out = True
        await terminate_process(process, grace_seconds=2.0)
        stdout = b""
        if process.stdout is not None:
            stdout = await process.stdout.read()
    output = stdout.decode("utf-8", errors="replace") if stdout else ""
    if timed_out:
        output += f"\nCommand timed out after {timeout_seconds}s and was terminated.\n"
    exit_code = process.returncode if process.returncode is not None else -1
    return CommandResult(argv=argv, exit_code=exit_code, output=output)


async def spawn_process(
    cmd: Sequence[str],
    *,
    cwd: Path | None = None,
    env: Mapping[str, str] | None = None,
) -> asyncio.subprocess.Process:
    """Start a long-lived child in its own session; its output goes to our stdio."""
    argv = tuple(str(part) for part in cmd)
    try:
        return await asyncio.create_subprocess_exec(
            *argv,
            cwd=str(cwd) if cwd else None,
            env=merged_env(env),
            stdin=asyncio.subprocess.DEVNULL,
            start_new_session=True,
        )
    except OSError as exc:
        raise CommandSpawnError(f"Failed to start {argv[0]}: {exc}") from exc


def _signal_process(process: asyncio.subprocess.Process, sig: signal.Signals) -> None:
    try:
        pgid = os.getpgid(process.pid)
    except (ProcessLookupError, OSError):
        pgid = 0
    try:
        if pgid:
            os.killpg(pgid, sig)
        else:
            process.send_signal(sig)
    except (ProcessLookupError, PermissionError, OSError):
        try:
            process.send_signal(sig)
        except (ProcessLookupError, OSError):
            return


async def terminate_process(process: asyncio.subprocess.Process, *, grace_seconds: float) -> int | None:
    """SIGTERM the child's process group, then SIGKILL it after the grace period."""
    if process.returncode is not None:
        return process.returncode
    _signal_process(process, signal.SIGTERM)
    try:
        return await asyncio.wait_for(process.wait(), timeout=max(0.1, float(grace_seconds)))
    except asyncio.TimeoutError:
        pass
    _signal_process(process, signal.SIGKILL)
    return await process.wait()


__all__ = ["CommandResult", "merged_env", "run_command", "spawn_process", "terminate_process"]
