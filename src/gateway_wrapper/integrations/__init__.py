from gateway_wrapper.integrations.clawdbot_cli import ClawdbotCli, state_env
from gateway_wrapper.integrations.command_runner import (
    CommandResult,
    run_command,
    spawn_process,
    terminate_process,
)

__all__ = [
    "ClawdbotCli",
    "CommandResult",
    "run_command",
    "spawn_process",
    "state_env",
    "terminate_process",
]
