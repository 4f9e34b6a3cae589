from __future__ import annotations

import asyncio
import json
import sys
from pathlib import Path

import pytest

from gateway_wrapper.integrations.clawdbot_cli import ClawdbotCli, state_env
from gateway_wrapper.integrations.command_runner import run_command, spawn_process, terminate_process
from wrapper_core.errors import CommandSpawnError
from wrapper_core.paths import resolve_state_paths


def test_run_command_captures_combined_output_and_exit_code() -> None:
    script = "import sys; print('to stdout'); print('to stderr', file=sys.stderr); sys.exit(3)"

    result = asyncio.run(run_command([sys.executable, "-c", script]))

    assert result.exit_code == 3
    assert result.ok is False
    assert "to stdout" in result.output
    assert "to stderr" in result.output
    assert result.argv[0] == sys.executable


def test_run_command_applies_environment_overlay_and_cwd(tmp_path: Path) -> None:
    script = "import os; print(os.environ['WRAPPER_TEST_VALUE']); print(os.getcwd())"

    result = asyncio.run(
        run_command([sys.executable, "-c", script], cwd=tmp_path, env={"WRAPPER_TEST_VALUE": "overlay"})
    )

    assert result.ok
    lines = result.output.splitlines()
    assert lines[0] == "overlay"
    assert Path(lines[1]).resolve() == tmp_path.resolve()


def test_run_command_missing_executable_raises_spawn_error(tmp_path: Path) -> None:
    with pytest.raises(CommandSpawnError, match="Failed to start"):
        asyncio.run(run_command([str(tmp_path / "missing-clawdbot")]))


def test_run_command_timeout_terminates_the_child() -> None:
    script = "import time; print('started', flush=True); time.sleep(30)"

    result = asyncio.run(run_command([sys.executable, "-c", script], timeout_seconds=1.0))

    assert result.ok is False
    assert "timed out" in result.output


def test_terminate_process_stops_a_long_running_child() -> None:
    async def scenario() -> int | None:
        process = await spawn_process([sys.executable, "-c", "import time; time.sleep(30)"])
        assert process.returncode is None
        return await terminate_process(process, grace_seconds=2.0)

    returncode = asyncio.run(scenario())

    assert returncode is not None
    assert returncode != 0


def test_clawdbot_cli_builds_argv_and_config_set_calls(
    tmp_path: Path, stub_cli_command: list[str], stub_log: Path
) -> None:
    paths = resolve_state_paths({"state_dir": str(tmp_path / "state")})
    cli = ClawdbotCli(command=stub_cli_command, env={**state_env(paths), "STUB_LOG": str(stub_log)})

    async def scenario() -> None:
        plain = await cli.config_set("gateway.bind", "loopback")
        as_json = await cli.config_set("gateway.port", 18789, as_json=True)
        approval = await cli.pairing_approve("telegram", "ABC123")
        assert plain.ok and as_json.ok and approval.ok
        assert "approved telegram ABC123" in approval.output

    asyncio.run(scenario())

    calls = [json.loads(line) for line in stub_log.read_text(encoding="utf-8").splitlines()]
    assert calls == [
        ["config", "set", "gateway.bind", "loopback"],
        ["config", "set", "--json", "gateway.port", "18789"],
        ["pairing", "approve", "telegram", "ABC123"],
    ]
    assert cli.argv("gateway", "run") == [*stub_cli_command, "gateway", "run"]
    assert cli.env({"EXTRA": "1"})["CLAWDBOT_CONFIG_PATH"] == str(paths.config_file)


def test_clawdbot_cli_requires_a_command() -> None:
    with pytest.raises(ValueError):
        ClawdbotCli(command=[])
