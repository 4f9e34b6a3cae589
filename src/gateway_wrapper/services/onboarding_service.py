from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any

from fastapi import HTTPException

from gateway_wrapper.integrations.clawdbot_cli import ClawdbotCli
from gateway_wrapper.integrations.command_runner import CommandResult
from gateway_wrapper.services.config_probe import ConfigurationProbe
from gateway_wrapper.services.gateway_supervisor import GATEWAY_BIND_LOOPBACK, GatewaySupervisor
from gateway_wrapper.services.token_service import GatewayTokenResolver
from gateway_wrapper.store.token_store import normalize_gateway_token
from wrapper_core.config import CredentialsConfig
from wrapper_core.errors import TypedWrapperError
from wrapper_core.logging import log_extra
from wrapper_core.paths import StatePaths


LOGGER = logging.getLogger("gateway_wrapper.onboarding")

PLATFORM_TELEGRAM = "telegram"
PLATFORM_DISCORD = "discord"
SUPPORTED_PLATFORMS = (PLATFORM_TELEGRAM, PLATFORM_DISCORD)

# provider -> (onboard --auth-choice value, credential flag)
PROVIDER_AUTH_FLAGS: dict[str, tuple[str, str]] = {
    "anthropic": ("apiKey", "--anthropic-api-key"),
    "openai": ("openai-api-key", "--openai-api-key"),
    "openrouter": ("openrouter-api-key", "--openrouter-api-key"),
    "gemini": ("gemini-api-key", "--gemini-api-key"),
}


def _first_text(raw: dict[str, Any], *keys: str) -> str:
    for key in keys:
        value = raw.get(key)
        if value is None:
            continue
        if not isinstance(value, str):
            raise HTTPException(status_code=400, detail=f"{key} must be a string.")
        if value.strip():
            return value.strip()
    return ""


@dataclass(frozen=True)
class SetupPayload:
    provider: str
    credential: str
    platform: str = PLATFORM_TELEGRAM
    platform_token: str = ""
    search_api_key: str = ""
    gateway_token: str = ""

    @classmethod
    def from_request(cls, raw: Any, *, defaults: CredentialsConfig | None = None) -> "SetupPayload":
        if not isinstance(raw, dict):
            raise HTTPException(status_code=400, detail="Invalid setup payload.")
        fallback = defaults or CredentialsConfig()

        provider = _first_text(raw, "provider").lower()
        if not provider:
            raise HTTPException(status_code=400, detail="provider is required.")
        if provider not in PROVIDER_AUTH_FLAGS:
            raise HTTPException(
                status_code=400,
                detail=f"provider must be one of: {', '.join(sorted(PROVIDER_AUTH_FLAGS))}.",
            )
        credential = _first_text(raw, "credential", "llm_api_key", "llmSdkKey") or fallback.llm_api_key
        if not credential:
            raise HTTPException(status_code=400, detail="credential is required.")

        platform = (_first_text(raw, "platform") or PLATFORM_TELEGRAM).lower()
        if platform not in SUPPORTED_PLATFORMS:
            raise HTTPException(status_code=400, detail=f"platform must be one of: {', '.join(SUPPORTED_PLATFORMS)}.")
        platform_fallback = fallback.discord_token if platform == PLATFORM_DISCORD else fallback.telegram_token
        platform_token = _first_text(raw, "platform_token", "bot_token", "botToken") or platform_fallback

        gateway_token = _first_text(raw, "gateway_token", "gatewayToken")
        if gateway_token:
            normalized_token = normalize_gateway_token(gateway_token)
            if normalized_token is None:
                raise HTTPException(status_code=400, detail="gateway_token must be 64 hex characters.")
            gateway_token = normalized_token

        return cls(
            provider=provider,
            credential=credential,
            platform=platform,
            platform_token=platform_token,
            search_api_key=_first_text(raw, "search_api_key", "braveApiKey") or fallback.search_api_key,
            gateway_token=gateway_token,
        )


@dataclass(frozen=True)
class OnboardingResult:
    ok: bool
    output: str

    def payload(self) -> dict[str, Any]:
        return {"ok": self.ok, "output": self.output}


def build_onboard_args(payload: SetupPayload, *, paths: StatePaths, gateway_port: int, token: str) -> list[str]:
    auth_choice, credential_flag = PROVIDER_AUTH_FLAGS[payload.provider]
    return [
        "onboard",
        "--non-interactive",
        "--accept-risk",
        "--json",
        "--no-install-daemon",
        "--skip-health",
        "--flow",
        "quickstart",
        "--workspace",
        str(paths.workspace_dir),
        "--gateway-bind",
        GATEWAY_BIND_LOOPBACK,
        "--gateway-port",
        str(gateway_port),
        "--gateway-auth",
        "token",
        "--gateway-token",
        token,
        "--auth-choice",
        auth_choice,
        credential_flag,
        payload.credential,
    ]


def channel_config(payload: SetupPayload) -> tuple[str, dict[str, Any]] | None:
    if not payload.platform_token:
        return None
    if payload.platform == PLATFORM_DISCORD:
        return (
            "channels.discord",
            {
                "enabled": True,
                "token": payload.platform_token,
                "dm": {"policy": "pairing"},
                "groupPolicy": "allowlist",
            },
        )
    return (
        "channels.telegram",
        {
            "enabled": True,
            "botToken": payload.platform_token,
            "dmPolicy": "pairing",
            "groupPolicy": "allowlist",
            "streamMode": "partial",
        },
    )


def follow_up_settings(payload: SetupPayload, *, gateway_port: int, token: str) -> list[tuple[str, Any, bool]]:
    """Settings written with ``config set`` after onboarding, as (key, value, as_json)."""
    settings: list[tuple[str, Any, bool]] = [
        ("gateway.auth.mode", "token", False),
        ("gateway.auth.token", token, False),
        ("gateway.bind", GATEWAY_BIND_LOOPBACK, False),
        ("gateway.port", int(gateway_port), True),
    ]
    if payload.search_api_key:
        settings.append(("tools.web.search.apiKey", payload.search_api_key, False))
    channel = channel_config(payload)
    if channel is not None:
        key, block = channel
        settings.append((key, block, True))
    return settings


class OnboardingService:
    def __init__(
        self,
        *,
        cli: ClawdbotCli,
        probe: ConfigurationProbe,
        token_resolver: GatewayTokenResolver,
        supervisor: GatewaySupervisor,
        paths: StatePaths,
        gateway_port: int,
        logger: logging.Logger | None = None,
    ) -> None:
        self._cli = cli
        self._probe = probe
        self._token_resolver = token_resolver
        self._supervisor = supervisor
        self._paths = paths
        self._gateway_port = int(gateway_port)
        self._logger = logger or LOGGER
        self._lock = asyncio.Lock()

    async def run_onboarding(self, payload: SetupPayload) -> OnboardingResult:
        async with self._lock:
            if self._probe.is_configured():
                return await self._ensure_gateway("Already configured. ")
            return await self._onboard(payload)

    async def _onboard(self, payload: SetupPayload) -> OnboardingResult:
        token = self._token_resolver.resolve(payload.gateway_token or None)
        self._paths.ensure_directories()
        self._logger.info(
            "Running onboarding provider=%s platform=%s",
            payload.provider,
            payload.platform,
            extra=log_extra("onboarding", "onboard", "started"),
        )
        try:
            result = await self._cli.run(
                *build_onboard_args(payload, paths=self._paths, gateway_port=self._gateway_port, token=token)
            )
        except TypedWrapperError as exc:
            return self._failed("onboard", str(exc))
        output = result.output
        if not result.ok:
            return self._failed("onboard", output, result=result)
        if not self._probe.is_configured():
            return self._failed(
                "onboard",
                output + f"\nOnboarding finished but {self._paths.config_file} was not created.\n",
                result=result,
            )

        for key, value, as_json in follow_up_settings(payload, gateway_port=self._gateway_port, token=token):
            try:
                setting_result = await self._cli.config_set(key, value, as_json=as_json)
            except TypedWrapperError as exc:
                return self._failed(f"config set {key}", output + str(exc))
            output += setting_result.output
            if not setting_result.ok:
                return self._failed(f"config set {key}", output, result=setting_result)

        self._logger.info("Onboarding completed", extra=log_extra("onboarding", "onboard", "succeeded"))
        return await self._restart_gateway(output)

    async def _ensure_gateway(self, output: str) -> OnboardingResult:
        try:
            await self._supervisor.ensure_running()
        except TypedWrapperError as exc:
            return OnboardingResult(ok=False, output=output + f"Gateway failed to start: {exc}\n")
        return OnboardingResult(ok=True, output=output + "Gateway is running.\n")

    async def _restart_gateway(self, output: str) -> OnboardingResult:
        try:
            await self._supervisor.restart()
        except TypedWrapperError as exc:
            return OnboardingResult(ok=False, output=output + f"\nGateway failed to start: {exc}\n")
        return OnboardingResult(ok=True, output=output)

    def _failed(self, step: str, output: str, *, result: CommandResult | None = None) -> OnboardingResult:
        self._logger.error(
            "Onboarding step failed step=%s exit_code=%s",
            step,
            result.exit_code if result is not None else "",
            extra=log_extra("onboarding", "onboard", "failed", error_class="command_failed"),
        )
        return OnboardingResult(ok=False, output=output)


__all__ = [
    "OnboardingResult",
    "OnboardingService",
    "PLATFORM_DISCORD",
    "PLATFORM_TELEGRAM",
    "PROVIDER_AUTH_FLAGS",
    "SUPPORTED_PLATFORMS",
    "SetupPayload",
    "build_onboard_args",
    "channel_config",
    "follow_up_settings",
]
