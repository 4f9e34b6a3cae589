from __future__ import annotations

import base64
import binascii
import hmac
import logging

from fastapi import HTTPException

from wrapper_core.errors import SetupPasswordMissingError
from wrapper_core.logging import log_extra


LOGGER = logging.getLogger("gateway_wrapper.auth")

SETUP_AUTH_REALM = "Clawdbot Setup"


def _challenge(detail: str) -> HTTPException:
    return HTTPException(
        status_code=401,
        detail=detail,
        headers={"WWW-Authenticate": f'Basic realm="{SETUP_AUTH_REALM}"'},
    )


def parse_basic_credentials(authorization: str | None) -> tuple[str, str] | None:
    header = str(authorization or "").strip()
    scheme, _, encoded = header.partition(" ")
    if scheme.lower() != "basic" or not encoded.strip():
        return None
    try:
        decoded = base64.b64decode(encoded.strip(), validate=True).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError):
        return None
    username, separator, password = decoded.partition(":")
    if not separator:
        return None
    return username, password


class SetupAuthGate:
    """HTTP Basic check for the setup surface.

    With no password configured every protected request is refused, unless
    the operator explicitly allowed unauthenticated setup access.
    """

    def __init__(
        self,
        *,
        password: str,
        username: str = "admin",
        allow_unauthenticated: bool = False,
        logger: logging.Logger | None = None,
    ) -> None:
        self._password = str(password or "")
        self._username = str(username or "admin")
        self._allow_unauthenticated = bool(allow_unauthenticated)
        self._logger = logger or LOGGER

    @property
    def enabled(self) -> bool:
        return bool(self._password)

    def authenticate(self, authorization: str | None) -> None:
        if not self._password:
            if self._allow_unauthenticated:
                return
            raise SetupPasswordMissingError(
                "Set SETUP_PASSWORD to use the setup surface, or explicitly allow unauthenticated access."
            )

        credentials = parse_basic_credentials(authorization)
        if credentials is None:
            raise _challenge("Authentication required.")
        username, password = credentials
        username_ok = hmac.compare_digest(username.encode("utf-8"), self._username.encode("utf-8"))
        password_ok = hmac.compare_digest(password.encode("utf-8"), self._password.encode("utf-8"))
        if not (username_ok and password_ok):
            self._logger.warning(
                "Rejected setup credentials",
                extra=log_extra("auth", "authenticate", "rejected", error_class="invalid_credentials"),
            )
            raise _challenge("Invalid credentials.")


__all__ = ["SETUP_AUTH_REALM", "SetupAuthGate", "parse_basic_credentials"]
