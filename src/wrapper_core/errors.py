from __future__ import annotations


class TypedWrapperError(RuntimeError):
    """Base class for typed operational errors surfaced to users."""

    error_code = "INTERNAL_ERROR"
    failure_class = "internal"
    user_message = "An internal error occurred."

    def metadata(self) -> dict[str, str]:
        return {
            "error_code": self.error_code,
            "failure_class": self.failure_class,
            "user_message": self.user_message,
        }

    def payload(self, *, detail: str | None = None) -> dict[str, str]:
        payload = self.metadata()
        payload["detail"] = str(self) if detail is None else str(detail)
        return payload


def typed_error_metadata(exc: BaseException) -> dict[str, str] | None:
    if isinstance(exc, TypedWrapperError):
        return exc.metadata()
    return None


def typed_error_payload(exc: BaseException) -> dict[str, str] | None:
    if isinstance(exc, TypedWrapperError):
        return exc.payload()
    return None


class ConfigError(TypedWrapperError):
    """Configuration parsing or validation error."""

    error_code = "CONFIG_ERROR"
    failure_class = "configuration"
    user_message = "Configuration is invalid."


class CommandSpawnError(TypedWrapperError):
    """The agent command-line tool could not be executed."""

    error_code = "COMMAND_SPAWN_ERROR"
    failure_class = "spawn"
    user_message = "The agent command could not be started."


class GatewayError(TypedWrapperError):
    """Base class for gateway lifecycle failures."""

    error_code = "GATEWAY_ERROR"
    failure_class = "gateway"
    user_message = "The gateway is not available."


class GatewaySpawnError(GatewayError):
    """Gateway process could not be launched."""

    error_code = "GATEWAY_SPAWN_ERROR"
    failure_class = "spawn"
    user_message = "The gateway process could not be started."


class GatewayStartTimeoutError(GatewayError):
    """Gateway did not answer its readiness probe in time."""

    error_code = "GATEWAY_START_TIMEOUT"
    failure_class = "readiness"
    user_message = "The gateway did not become ready in time."


class GatewayExitedError(GatewayError):
    """Gateway process exited before it became ready."""

    error_code = "GATEWAY_EXITED"
    failure_class = "readiness"
    user_message = "The gateway process exited during startup."


class SetupPasswordMissingError(TypedWrapperError):
    """Protected setup routes were requested without a configured password."""

    error_code = "SETUP_PASSWORD_MISSING"
    failure_class = "configuration"
    user_message = "SETUP_PASSWORD is not set; the setup surface is disabled."
