from __future__ import annotations

import asyncio
import dataclasses
import json
import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any

import click
import httpx
import uvicorn
from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse

from gateway_wrapper.api import register_wrapper_routes
from gateway_wrapper.integrations.clawdbot_cli import ClawdbotCli, state_env
from gateway_wrapper.services.auth_service import SetupAuthGate
from gateway_wrapper.services.config_probe import ConfigurationProbe
from gateway_wrapper.services.gateway_supervisor import GatewaySupervisor, ReadinessProbe
from gateway_wrapper.services.onboarding_service import PROVIDER_AUTH_FLAGS, SUPPORTED_PLATFORMS, OnboardingService
from gateway_wrapper.services.proxy_service import GatewayProxy
from gateway_wrapper.services.token_service import GatewayTokenResolver
from gateway_wrapper.store.token_store import GatewayTokenStore
from wrapper_core import ConfigError, WrapperConfig, load_wrapper_config
from wrapper_core import logging as core_logging
from wrapper_core.errors import TypedWrapperError, typed_error_payload


LOGGER = logging.getLogger("gateway_wrapper")
LOGGER.addHandler(logging.NullHandler())


def _configure_wrapper_logging(level: str) -> None:
    core_logging.configure_structured_logger(LOGGER, level=core_logging.normalize_log_level(level))


def _resolve_wrapper_log_level(log_level: str | None, config: WrapperConfig) -> str:
    cli_value = str(log_level or "").strip()
    if cli_value:
        return core_logging.normalize_log_level(cli_value)
    return core_logging.normalize_log_level(config.logging.level)


def _configure_domain_log_levels(config: WrapperConfig) -> None:
    core_logging.configure_domain_log_levels(
        domains=config.logging.domains,
        logger_prefix="gateway_wrapper",
    )


def _core_error_payload(exc: BaseException) -> tuple[int, dict[str, Any]]:
    typed_payload = typed_error_payload(exc)
    if typed_payload is not None:
        status_by_code = {
            "CONFIG_ERROR": 400,
            "SETUP_PASSWORD_MISSING": 503,
            "COMMAND_SPAWN_ERROR": 500,
            "GATEWAY_ERROR": 503,
            "GATEWAY_SPAWN_ERROR": 503,
            "GATEWAY_START_TIMEOUT": 503,
            "GATEWAY_EXITED": 503,
        }
        status = status_by_code.get(str(typed_payload.get("error_code") or ""), 500)
        return status, typed_payload
    return 500, {"error_code": "INTERNAL_ERROR", "detail": str(exc)}


def _http_error_code(status_code: int) -> str:
    status = int(status_code or 500)
    if status == 400:
        return "BAD_REQUEST"
    if status == 401:
        return "UNAUTHORIZED"
    if status == 403:
        return "FORBIDDEN"
    if status == 404:
        return "NOT_FOUND"
    if status == 405:
        return "METHOD_NOT_ALLOWED"
    if status == 422:
        return "UNPROCESSABLE_ENTITY"
    if status in {500, 502, 503, 504}:
        return "UPSTREAM_ERROR"
    return f"HTTP_{status}"


def _uvicorn_log_level(wrapper_level: str) -> str:
    normalized = core_logging.normalize_log_level(wrapper_level)
    if normalized == "debug":
        return "info"
    return normalized


def _setup_page() -> str:
    providers = ", ".join(sorted(PROVIDER_AUTH_FLAGS))
    platforms = ", ".join(SUPPORTED_PLATFORMS)
    return f"""
<!doctype html>
<html>
<head>
  <meta charset="utf-8" />
  <meta name="viewport" content="width=device-width, initial-scale=1" />
  <title>Clawdbot Setup</title>
  <style>
    body {{ font-family: ui-sans-serif, system-ui, sans-serif; margin: 2rem; color: #111827; }}
    pre {{ padding: 0.75rem; border: 1px solid #d1d5db; border-radius: 8px; background: #f9fafb; }}
  </style>
</head>
<body>
  <h1>Clawdbot setup</h1>
  <p>The setup surface is a JSON API. Providers: {providers}. Platforms: {platforms}.</p>
  <pre>GET  /setup/api/status
POST /setup/api/run               {{"provider", "credential", "platform", "platform_token", "search_api_key", "gateway_token"}}
POST /setup/api/pairing/approve   {{"channel", "code"}}
POST /setup/api/reset
GET  /setup/export</pre>
</body>
</html>
    """


def _gateway_starting_page() -> str:
    return """
<!doctype html>
<html>
<head>
  <meta charset="utf-8" />
  <meta http-equiv="refresh" content="3" />
  <meta name="viewport" content="width=device-width, initial-scale=1" />
  <title>Gateway Starting</title>
  <style>
    body { font-family: ui-sans-serif, system-ui, sans-serif; margin: 2rem; color: #111827; }
  </style>
</head>
<body>
  <h1>The gateway is starting</h1>
  <p>This page refreshes automatically once the gateway is ready.</p>
</body>
</html>
    """


class WrapperState:
    """Composition root for the wrapper's services."""

    def __init__(
        self,
        config: WrapperConfig,
        *,
        readiness_probe: ReadinessProbe | None = None,
        proxy_transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.config = config
        self.started_at = time.time()
        paths = config.paths
        self.probe = ConfigurationProbe(config_file=paths.config_file)
        self.token_resolver = GatewayTokenResolver(
            store=GatewayTokenStore(token_file=paths.token_file),
            env_override=config.gateway.token_override,
            logger=LOGGER.getChild("token"),
        )
        self.cli = ClawdbotCli(command=config.gateway.cli_command, env=state_env(paths))
        self.supervisor = GatewaySupervisor(
            cli=self.cli,
            token_provider=self.token_resolver.resolve,
            host=config.gateway.host,
            port=config.gateway.port,
            env={"BRAVE_API_KEY": config.credentials.search_api_key} if config.credentials.search_api_key else None,
            readiness_probe=readiness_probe,
            ready_timeout_seconds=config.gateway.ready_timeout_seconds,
            stop_grace_seconds=config.gateway.stop_grace_seconds,
            logger=LOGGER.getChild("supervisor"),
        )
        self.onboarding = OnboardingService(
            cli=self.cli,
            probe=self.probe,
            token_resolver=self.token_resolver,
            supervisor=self.supervisor,
            paths=paths,
            gateway_port=config.gateway.port,
            logger=LOGGER.getChild("onboarding"),
        )
        self.proxy = GatewayProxy(
            base_url=self.supervisor.base_url,
            token_provider=self.token_resolver.resolve,
            transport=proxy_transport,
            logger=LOGGER.getChild("proxy"),
        )
        self.auth_gate = SetupAuthGate(
            password=config.setup.password,
            username=config.setup.username,
            allow_unauthenticated=config.setup.allow_unauthenticated,
            logger=LOGGER.getChild("auth"),
        )
        self._background_tasks: set[asyncio.Task[None]] = set()

    def health_payload(self) -> dict[str, Any]:
        configured = self.probe.is_configured()
        return {
            "status": "ok" if configured else "setup_required",
            "configured": configured,
            "gateway": "running" if self.supervisor.is_ready() else "stopped",
            "gatewayState": self.supervisor.state.value,
            "uptimeSeconds": round(time.time() - self.started_at, 3),
        }

    def setup_status_payload(self) -> dict[str, Any]:
        credentials = self.config.credentials
        return {
            "configured": self.probe.is_configured(),
            "gateway": self.supervisor.status_payload(),
            "token": self.token_resolver.status_payload(),
            "hasGatewayToken": self.token_resolver.has_token_source(),
            "hasLlmKey": bool(credentials.llm_api_key),
            "hasSearchKey": bool(credentials.search_api_key),
            "hasBotToken": bool(credentials.telegram_token or credentials.discord_token),
            "providers": sorted(PROVIDER_AUTH_FLAGS),
            "platforms": list(SUPPORTED_PLATFORMS),
            "stateDir": str(self.config.paths.state_dir),
            "workspaceDir": str(self.config.paths.workspace_dir),
        }

    def schedule_gateway_start(self, *, reason: str) -> None:
        task = asyncio.get_running_loop().create_task(self._ensure_gateway_in_background(reason))
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)

    async def _ensure_gateway_in_background(self, reason: str) -> None:
        if not self.probe.is_configured():
            return
        try:
            await self.supervisor.ensure_running()
        except TypedWrapperError as exc:
            LOGGER.warning(
                "Background gateway start failed reason=%s: %s",
                reason,
                exc,
                extra=core_logging.log_extra("startup", "gateway_start", "failed", error_class=type(exc).__name__),
            )

    async def startup(self) -> None:
        paths = self.config.paths
        try:
            paths.ensure_directories()
        except OSError as exc:
            raise ConfigError(f"State directory {paths.state_dir} is not usable: {exc}") from exc
        if not self.probe.is_configured():
            LOGGER.info(
                "Agent is not configured; waiting for setup",
                extra=core_logging.log_extra("startup", "gateway_start", "skipped"),
            )
            return
        self.token_resolver.resolve()
        self.schedule_gateway_start(reason="startup")

    async def shutdown(self) -> None:
        for task in list(self._background_tasks):
            task.cancel()
        if self._background_tasks:
            await asyncio.gather(*self._background_tasks, return_exceptions=True)
        await self.supervisor.stop()
        await self.proxy.aclose()


def build_app(state: WrapperState) -> FastAPI:
    @asynccontextmanager
    async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
        await state.startup()
        try:
            yield
        finally:
            await state.shutdown()

    app = FastAPI(lifespan=lifespan)
    app.state.wrapper_state = state

    @app.exception_handler(TypedWrapperError)
    async def _handle_typed_wrapper_error(_request: Request, exc: TypedWrapperError) -> JSONResponse:
        status, payload = _core_error_payload(exc)
        return JSONResponse(status_code=status, content=payload)

    @app.exception_handler(HTTPException)
    async def _handle_http_exception(_request: Request, exc: HTTPException) -> JSONResponse:
        return JSONResponse(
            status_code=int(exc.status_code or 500),
            content={"error_code": _http_error_code(int(exc.status_code or 500)), "detail": exc.detail},
            headers=getattr(exc, "headers", None),
        )

    register_wrapper_routes(
        app,
        state=state,
        logger=LOGGER,
        setup_page=_setup_page,
        starting_page=_gateway_starting_page,
    )
    return app


@click.command(help="Run the Clawdbot gateway wrapper.")
@click.option(
    "--config-file",
    default=None,
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="Optional TOML config file; environment variables override its values.",
)
@click.option("--host", default=None, show_default="config server.host or HOST or 0.0.0.0")
@click.option("--port", default=None, type=int, show_default="config server.port or PORT or 8080")
@click.option(
    "--log-level",
    default=None,
    show_default="config logging.level or LOG_LEVEL or info",
    type=click.Choice(core_logging.LOG_LEVEL_CHOICES, case_sensitive=False),
    help="Wrapper logging verbosity (applies to wrapper logs and Uvicorn).",
)
@click.option(
    "--allow-unauthenticated-setup",
    is_flag=True,
    default=False,
    help="Serve the setup surface without a password when SETUP_PASSWORD is unset.",
)
def main(
    config_file: Path | None,
    host: str | None,
    port: int | None,
    log_level: str | None,
    allow_unauthenticated_setup: bool,
) -> None:
    try:
        config = load_wrapper_config(config_file=config_file)
    except ConfigError as exc:
        click.echo(
            json.dumps(
                {"event": "gateway_wrapper_config_load_error", "config_path": str(config_file or ""), "error": str(exc)},
                sort_keys=True,
            ),
            err=True,
        )
        raise click.ClickException(str(exc)) from exc

    server = dataclasses.replace(
        config.server,
        host=host or config.server.host,
        port=port or config.server.port,
    )
    setup = config.setup
    if allow_unauthenticated_setup:
        setup = dataclasses.replace(setup, allow_unauthenticated=True)
    config = dataclasses.replace(config, server=server, setup=setup)

    normalized_log_level = _resolve_wrapper_log_level(log_level, config)
    _configure_wrapper_logging(normalized_log_level)
    _configure_domain_log_levels(config)
    LOGGER.info(
        "Starting gateway wrapper host=%s port=%s state_dir=%s gateway=%s log_level=%s",
        server.host,
        server.port,
        config.paths.state_dir,
        config.gateway.base_url,
        normalized_log_level,
        extra=core_logging.log_extra("startup", "wrapper_start", "started"),
    )
    if not config.setup.password:
        LOGGER.warning(
            "SETUP_PASSWORD is not set; setup surface is %s",
            "open without authentication" if config.setup.allow_unauthenticated else "disabled",
            extra=core_logging.log_extra("startup", "setup_auth", "no_password"),
        )

    state = WrapperState(config)
    app = build_app(state)
    uvicorn.run(app, host=server.host, port=server.port, log_level=_uvicorn_log_level(normalized_log_level))


if __name__ == "__main__":
    main()
