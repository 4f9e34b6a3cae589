from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping


CONFIG_FILE_NAME = "clawdbot.json"
TOKEN_FILE_NAME = "gateway.token"
WORKSPACE_DIR_NAME = "workspace"


@dataclass(frozen=True)
class StatePaths:
    state_dir: Path
    workspace_dir: Path
    config_file: Path
    token_file: Path

    def ensure_directories(self) -> None:
        self.state_dir.mkdir(parents=True, exist_ok=True)
        self.workspace_dir.mkdir(parents=True, exist_ok=True)


def default_state_dir() -> Path:
    return Path("/data/.clawdbot")


def _configured_path(values: Mapping[str, Any] | None, key: str) -> Path | None:
    if values is None:
        return None
    configured = str(values.get(key) or "").strip()
    if not configured:
        return None
    return Path(configured).expanduser().resolve()


def resolve_state_paths(paths_values: Mapping[str, Any] | None) -> StatePaths:
    state_dir = _configured_path(paths_values, "state_dir") or default_state_dir()
    workspace_dir = _configured_path(paths_values, "workspace_dir") or state_dir / WORKSPACE_DIR_NAME
    config_file = _configured_path(paths_values, "config_file") or state_dir / CONFIG_FILE_NAME
    return StatePaths(
        state_dir=state_dir,
        workspace_dir=workspace_dir,
        config_file=config_file,
        token_file=state_dir / TOKEN_FILE_NAME,
    )
