from __future__ import annotations

import logging
import secrets
from typing import Any

from gateway_wrapper.store.token_store import GatewayTokenStore, InvalidTokenFileError, normalize_gateway_token
from wrapper_core.logging import log_extra


LOGGER = logging.getLogger("gateway_wrapper.token")

TOKEN_SOURCE_ENVIRONMENT = "environment"
TOKEN_SOURCE_EXPLICIT = "explicit"
TOKEN_SOURCE_FILE = "file"
TOKEN_SOURCE_GENERATED = "generated"


class GatewayTokenResolver:
    """Resolves the gateway token once per process and keeps it fixed afterwards.

    Precedence: environment override, an explicit token handed over by
    onboarding, the persisted token file, then a freshly generated token that
    is persisted best-effort.
    """

    def __init__(self, *, store: GatewayTokenStore, env_override: str = "", logger: logging.Logger | None = None) -> None:
        self._store = store
        self._env_override = str(env_override or "").strip()
        self._logger = logger or LOGGER
        self._token: str | None = None
        self._source = ""
        self._persisted = False

    @property
    def resolved(self) -> bool:
        return self._token is not None

    def has_token_source(self) -> bool:
        return bool(self._token or self._env_override or self._store.exists())

    def resolve(self, explicit: str | None = None) -> str:
        explicit_value = str(explicit or "").strip()
        if explicit_value:
            normalized = normalize_gateway_token(explicit_value)
            if normalized is None:
                self._logger.warning(
                    "Ignoring explicit gateway token; expected 64 hex characters",
                    extra=log_extra("token", "resolve", "invalid_explicit"),
                )
            explicit_value = normalized or ""
        if self._token is not None:
            if explicit_value and explicit_value != self._token:
                self._logger.warning(
                    "Ignoring explicit gateway token; token already resolved source=%s",
                    self._source,
                    extra=log_extra("token", "resolve", "ignored_explicit"),
                )
            return self._token

        if self._env_override:
            return self._fix(self._env_override, TOKEN_SOURCE_ENVIRONMENT, persisted=False)
        if explicit_value:
            return self._fix(explicit_value, TOKEN_SOURCE_EXPLICIT, persisted=self._persist(explicit_value))

        try:
            stored = self._store.load()
        except InvalidTokenFileError as exc:
            self._logger.warning(
                "Discarding unreadable gateway token file: %s",
                exc,
                extra=log_extra("token", "load", "invalid", error_class="invalid_token_file"),
            )
            stored = None
        except OSError as exc:
            self._logger.warning(
                "Unable to read gateway token file %s: %s",
                self._store.token_file,
                exc,
                extra=log_extra("token", "load", "failed", error_class=type(exc).__name__),
            )
            stored = None
        if stored:
            return self._fix(stored, TOKEN_SOURCE_FILE, persisted=True)

        generated = secrets.token_hex(32)
        return self._fix(generated, TOKEN_SOURCE_GENERATED, persisted=self._persist(generated))

    def status_payload(self) -> dict[str, Any]:
        return {"resolved": self.resolved, "source": self._source, "persisted": self._persisted}

    def _fix(self, token: str, source: str, *, persisted: bool) -> str:
        self._token = token
        self._source = source
        self._persisted = persisted
        self._logger.info(
            "Gateway token resolved source=%s persisted=%s",
            source,
            persisted,
            extra=log_extra("token", "resolve", "resolved"),
        )
        return token

    def _persist(self, token: str) -> bool:
        try:
            self._store.save(token)
        except OSError as exc:
            self._logger.warning(
                "Failed to persist gateway token to %s: %s. A restart will generate a different token "
                "unless CLAWDBOT_GATEWAY_TOKEN is set.",
                self._store.token_file,
                exc,
                extra=log_extra("token", "persist", "failed", error_class=type(exc).__name__),
            )
            return False
        return True


__all__ = [
    "GatewayTokenResolver",
    "TOKEN_SOURCE_ENVIRONMENT",
    "TOKEN_SOURCE_EXPLICIT",
    "TOKEN_SOURCE_FILE",
    "TOKEN_SOURCE_GENERATED",
]
