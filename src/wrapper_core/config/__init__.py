from __future__ import annotations

import os
import shlex
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping

try:
    import tomllib
except ModuleNotFoundError:  # pragma: no cover - Python < 3.11
    import tomli as tomllib

from wrapper_core.errors import ConfigError
from wrapper_core.logging import LOG_LEVEL_CHOICES
from wrapper_core.paths import StatePaths, resolve_state_paths


_SECTION_KEYS = ("server", "paths", "gateway", "setup", "credentials", "logging")

DEFAULT_HOST = "0.0.0.0"
DEFAULT_PORT = 8080
DEFAULT_GATEWAY_HOST = "127.0.0.1"
DEFAULT_GATEWAY_PORT = 18789
DEFAULT_CLI_COMMAND = "node /clawdbot/dist/entry.js"
DEFAULT_READY_TIMEOUT_SECONDS = 60.0
DEFAULT_STOP_GRACE_SECONDS = 5.0
DEFAULT_SETUP_USERNAME = "admin"

# (section, key) -> environment variable that overrides the file value.
ENV_BINDINGS: dict[tuple[str, str], str] = {
    ("server", "host"): "HOST",
    ("server", "port"): "PORT",
    ("paths", "state_dir"): "CLAWDBOT_STATE_DIR",
    ("paths", "workspace_dir"): "CLAWDBOT_WORKSPACE_DIR",
    ("paths", "config_file"): "CLAWDBOT_CONFIG_PATH",
    ("gateway", "host"): "INTERNAL_GATEWAY_HOST",
    ("gateway", "port"): "INTERNAL_GATEWAY_PORT",
    ("gateway", "cli"): "CLAWDBOT_CLI",
    ("gateway", "token"): "CLAWDBOT_GATEWAY_TOKEN",
    ("gateway", "ready_timeout_seconds"): "GATEWAY_READY_TIMEOUT_SECONDS",
    ("setup", "password"): "SETUP_PASSWORD",
    ("setup", "allow_unauthenticated"): "SETUP_ALLOW_UNAUTHENTICATED",
    ("credentials", "llm_api_key"): "LLM_API_KEY",
    ("credentials", "search_api_key"): "BRAVE_API_KEY",
    ("credentials", "telegram_token"): "TELEGRAM_TOKEN",
    ("credentials", "discord_token"): "DISCORD_TOKEN",
    ("logging", "level"): "LOG_LEVEL",
}


def _ensure_dict(value: object, *, label: str) -> dict[str, Any]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ConfigError(f"{label} must be a table/object.")
    return dict(value)


def _optional_str(value: object, *, label: str) -> str:
    if value is None:
        return ""
    if not isinstance(value, str):
        raise ConfigError(f"{label} must be a string.")
    return value.strip()


def _parse_port(value: object, *, label: str, default: int) -> int:
    if value is None or value == "":
        return default
    if isinstance(value, bool):
        raise ConfigError(f"{label} must be an integer port.")
    try:
        port = int(str(value).strip(), 10)
    except ValueError as exc:
        raise ConfigError(f"{label} must be an integer port.") from exc
    if port <= 0 or port > 65535:
        raise ConfigError(f"{label} must be between 1 and 65535.")
    return port


def _parse_positive_float(value: object, *, label: str, default: float) -> float:
    if value is None or value == "":
        return default
    if isinstance(value, bool):
        raise ConfigError(f"{label} must be a positive number.")
    try:
        parsed = float(str(value).strip())
    except ValueError as exc:
        raise ConfigError(f"{label} must be a positive number.") from exc
    if parsed <= 0:
        raise ConfigError(f"{label} must be a positive number.")
    return parsed


def _parse_bool(value: object, *, label: str, default: bool) -> bool:
    if value is None or value == "":
        return default
    if isinstance(value, bool):
        return value
    normalized = str(value).strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ConfigError(f"{label} must be a boolean.")


def parse_cli_command(value: object, *, label: str = "gateway.cli") -> tuple[str, ...]:
    if value is None or value == "":
        value = DEFAULT_CLI_COMMAND
    if isinstance(value, str):
        try:
            argv = shlex.split(value)
        except ValueError as exc:
            raise ConfigError(f"{label} is not a valid command line: {exc}") from exc
    elif isinstance(value, list) and all(isinstance(part, str) for part in value):
        argv = [part for part in value if part]
    else:
        raise ConfigError(f"{label} must be a string or a list of strings.")
    if not argv:
        raise ConfigError(f"{label} must not be empty.")
    return tuple(argv)


def parse_log_level(value: object, *, label: str = "logging.level") -> str:
    if value is None or value == "":
        return "info"
    if not isinstance(value, str) or value.strip().lower() not in LOG_LEVEL_CHOICES:
        raise ConfigError(f"{label} must be one of: {', '.join(LOG_LEVEL_CHOICES)}.")
    return value.strip().lower()


@dataclass(frozen=True)
class ServerConfig:
    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT


@dataclass(frozen=True)
class GatewayConfig:
    host: str = DEFAULT_GATEWAY_HOST
    port: int = DEFAULT_GATEWAY_PORT
    cli_command: tuple[str, ...] = tuple(shlex.split(DEFAULT_CLI_COMMAND))
    token_override: str = ""
    ready_timeout_seconds: float = DEFAULT_READY_TIMEOUT_SECONDS
    stop_grace_seconds: float = DEFAULT_STOP_GRACE_SECONDS

    @property
    def base_url(self) -> str:
        return f"http://{self.host}:{self.port}"


@dataclass(frozen=True)
class SetupConfig:
    password: str = ""
    username: str = DEFAULT_SETUP_USERNAME
    allow_unauthenticated: bool = False


@dataclass(frozen=True)
class CredentialsConfig:
    llm_api_key: str = ""
    search_api_key: str = ""
    telegram_token: str = ""
    discord_token: str = ""


@dataclass(frozen=True)
class LoggingConfig:
    level: str = "info"
    domains: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class WrapperConfig:
    paths: StatePaths
    server: ServerConfig = field(default_factory=ServerConfig)
    gateway: GatewayConfig = field(default_factory=GatewayConfig)
    setup: SetupConfig = field(default_factory=SetupConfig)
    credentials: CredentialsConfig = field(default_factory=CredentialsConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @classmethod
    def from_dict(
        cls,
        payload: Mapping[str, Any] | dict[str, Any],
        *,
        environ: Mapping[str, str] | None = None,
    ) -> "WrapperConfig":
        if not isinstance(payload, Mapping):
            raise ConfigError("Config payload root must be a table/object.")
        sections = {
            section: _ensure_dict(payload.get(section), label=f"section '{section}'") for section in _SECTION_KEYS
        }
        for (section, key), env_name in ENV_BINDINGS.items():
            env_value = str((environ or {}).get(env_name) or "").strip()
            if env_value:
                sections[section][key] = env_value

        server_raw = sections["server"]
        gateway_raw = sections["gateway"]
        setup_raw = sections["setup"]
        credentials_raw = sections["credentials"]
        logging_raw = sections["logging"]

        server = ServerConfig(
            host=_optional_str(server_raw.get("host"), label="server.host") or DEFAULT_HOST,
            port=_parse_port(server_raw.get("port"), label="server.port", default=DEFAULT_PORT),
        )
        gateway = GatewayConfig(
            host=_optional_str(gateway_raw.get("host"), label="gateway.host") or DEFAULT_GATEWAY_HOST,
            port=_parse_port(gateway_raw.get("port"), label="gateway.port", default=DEFAULT_GATEWAY_PORT),
            cli_command=parse_cli_command(gateway_raw.get("cli")),
            token_override=_optional_str(gateway_raw.get("token"), label="gateway.token"),
            ready_timeout_seconds=_parse_positive_float(
                gateway_raw.get("ready_timeout_seconds"),
                label="gateway.ready_timeout_seconds",
                default=DEFAULT_READY_TIMEOUT_SECONDS,
            ),
            stop_grace_seconds=_parse_positive_float(
                gateway_raw.get("stop_grace_seconds"),
                label="gateway.stop_grace_seconds",
                default=DEFAULT_STOP_GRACE_SECONDS,
            ),
        )
        setup = SetupConfig(
            password=_optional_str(setup_raw.get("password"), label="setup.password"),
            username=_optional_str(setup_raw.get("username"), label="setup.username") or DEFAULT_SETUP_USERNAME,
            allow_unauthenticated=_parse_bool(
                setup_raw.get("allow_unauthenticated"),
                label="setup.allow_unauthenticated",
                default=False,
            ),
        )
        credentials = CredentialsConfig(
            llm_api_key=_optional_str(credentials_raw.get("llm_api_key"), label="credentials.llm_api_key"),
            search_api_key=_optional_str(credentials_raw.get("search_api_key"), label="credentials.search_api_key"),
            telegram_token=_optional_str(credentials_raw.get("telegram_token"), label="credentials.telegram_token"),
            discord_token=_optional_str(credentials_raw.get("discord_token"), label="credentials.discord_token"),
        )
        logging_config = LoggingConfig(
            level=parse_log_level(logging_raw.get("level")),
            domains=_ensure_dict(logging_raw.get("domains"), label="section 'logging.domains'"),
        )
        return cls(
            paths=resolve_state_paths(sections["paths"]),
            server=server,
            gateway=gateway,
            setup=setup,
            credentials=credentials,
            logging=logging_config,
        )

    @classmethod
    def from_toml_path(cls, path: str | Path, *, environ: Mapping[str, str] | None = None) -> "WrapperConfig":
        config_path = Path(path)
        try:
            raw = config_path.read_text(encoding="utf-8")
        except OSError as exc:
            raise ConfigError(f"Unable to read config file {config_path}: {exc}") from exc
        try:
            parsed = tomllib.loads(raw)
        except tomllib.TOMLDecodeError as exc:
            raise ConfigError(f"Invalid TOML in {config_path}: {exc}") from exc
        return cls.from_dict(parsed, environ=environ)


def load_wrapper_config(
    environ: Mapping[str, str] | None = None,
    *,
    config_file: str | Path | None = None,
) -> WrapperConfig:
    resolved_environ = os.environ if environ is None else environ
    if config_file:
        return WrapperConfig.from_toml_path(config_file, environ=resolved_environ)
    return WrapperConfig.from_dict({}, environ=resolved_environ)


__all__ = [
    "CredentialsConfig",
    "DEFAULT_CLI_COMMAND",
    "DEFAULT_GATEWAY_HOST",
    "DEFAULT_GATEWAY_PORT",
    "DEFAULT_HOST",
    "DEFAULT_PORT",
    "ENV_BINDINGS",
    "GatewayConfig",
    "LoggingConfig",
    "ServerConfig",
    "SetupConfig",
    "WrapperConfig",
    "load_wrapper_config",
    "parse_cli_command",
    "parse_log_level",
]
