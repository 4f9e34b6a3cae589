from __future__ import annotations

from .config import (
    DEFAULT_GATEWAY_PORT,
    DEFAULT_PORT,
    WrapperConfig,
    load_wrapper_config,
)
from .errors import (
    CommandSpawnError,
    ConfigError,
    GatewayError,
    GatewayExitedError,
    GatewaySpawnError,
    GatewayStartTimeoutError,
    SetupPasswordMissingError,
    TypedWrapperError,
)
from .paths import StatePaths, default_state_dir, resolve_state_paths

__all__ = [
    "CommandSpawnError",
    "ConfigError",
    "DEFAULT_GATEWAY_PORT",
    "DEFAULT_PORT",
    "GatewayError",
    "GatewayExitedError",
    "GatewaySpawnError",
    "GatewayStartTimeoutError",
    "SetupPasswordMissingError",
    "StatePaths",
    "TypedWrapperError",
    "WrapperConfig",
    "default_state_dir",
    "load_wrapper_config",
    "resolve_state_paths",
]
