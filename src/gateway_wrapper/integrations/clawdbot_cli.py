from __future__ import annotations

import asyncio
import json
from collections.abc import Mapping, Sequence
from pathlib import Path
from typing import Any

from gateway_wrapper.integrations.command_runner import CommandResult, run_command, spawn_process
from wrapper_core.paths import StatePaths


DEFAULT_COMMAND_TIMEOUT_SECONDS = 300.0


def state_env(paths: StatePaths) -> dict[str, str]:
    return {
        "CLAWDBOT_STATE_DIR": str(paths.state_dir),
        "CLAWDBOT_WORKSPACE_DIR": str(paths.workspace_dir),
        "CLAWDBOT_CONFIG_PATH": str(paths.config_file),
    }


class ClawdbotCli:
    """Invokes the agent's command-line tool with a fixed argv prefix and environment."""

    def __init__(
        self,
        *,
        command: Sequence[str],
        env: Mapping[str, str] | None = None,
        cwd: Path | None = None,
        timeout_seconds: float | None = DEFAULT_COMMAND_TIMEOUT_SECONDS,
    ) -> None:
        if not command:
            raise ValueError("command must not be empty")
        self.command = tuple(str(part) for part in command)
        self._env = dict(env or {})
        self._cwd = cwd
        self._timeout_seconds = timeout_seconds

    def argv(self, *args: str) -> list[str]:
        return [*self.command, *(str(arg) for arg in args)]

    def env(self, overlay: Mapping[str, str] | None = None) -> dict[str, str]:
        resolved = dict(self._env)
        resolved.update({str(key): str(value) for key, value in (overlay or {}).items()})
        return resolved

    async def run(self, *args: str, env: Mapping[str, str] | None = None) -> CommandResult:
        return await run_command(
            self.argv(*args),
            cwd=self._cwd,
            env=self.env(env),
            timeout_seconds=self._timeout_seconds,
        )

    async def spawn(self, *args: str, env: Mapping[str, str] | None = None) -> asyncio.subprocess.Process:
        return await spawn_process(self.argv(*args), cwd=self._cwd, env=self.env(env))

    async def config_set(self, key: str, value: Any, *, as_json: bool = False) -> CommandResult:
        if as_json:
            return await self.run("config", "set", "--json", key, json.dumps(value, separators=(",", ":")))
        return await self.run("config", "set", key, str(value))

    async def pairing_approve(self, channel: str, code: str) -> CommandResult:
        return await self.run("pairing", "approve", channel, code)


__all__ = ["ClawdbotCli", "DEFAULT_COMMAND_TIMEOUT_SECONDS", "state_env"]
