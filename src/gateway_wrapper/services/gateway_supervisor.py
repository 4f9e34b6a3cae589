from __future__ import annotations

import asyncio
import logging
import signal
import time
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any

import httpx

from gateway_wrapper.integrations.clawdbot_cli import ClawdbotCli
from gateway_wrapper.integrations.command_runner import terminate_process
from wrapper_core.errors import (
    CommandSpawnError,
    GatewayError,
    GatewayExitedError,
    GatewaySpawnError,
    GatewayStartTimeoutError,
)
from wrapper_core.logging import log_extra


LOGGER = logging.getLogger("gateway_wrapper.supervisor")

GATEWAY_BIND_LOOPBACK = "loopback"
DEFAULT_POLL_INTERVAL_SECONDS = 0.25
DEFAULT_PROBE_TIMEOUT_SECONDS = 2.0

ReadinessProbe = Callable[[], Awaitable[bool]]


class GatewayState(str, Enum):
    STOPPED = "stopped"
    STARTING = "starting"
    READY = "ready"


def _iso_from_timestamp(timestamp: float) -> str:
    return datetime.fromtimestamp(timestamp, tz=timezone.utc).isoformat().replace("+00:00", "Z")


def _describe_returncode(returncode: int) -> tuple[int | None, str | None]:
    if returncode >= 0:
        return returncode, None
    try:
        return None, signal.Signals(-returncode).name
    except ValueError:
        return None, str(-returncode)


@dataclass
class GatewayProcessHandle:
    process: asyncio.subprocess.Process
    started_at: float
    exit_code: int | None = None
    exit_signal: str | None = None

    @property
    def pid(self) -> int:
        return self.process.pid

    @property
    def running(self) -> bool:
        return self.process.returncode is None


class HttpReadinessProbe:
    """Counts any HTTP response from the gateway as ready; transport errors are not."""

    def __init__(
        self,
        url: str,
        *,
        timeout_seconds: float = DEFAULT_PROBE_TIMEOUT_SECONDS,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.url = url
        self._timeout_seconds = timeout_seconds
        self._transport = transport

    async def __call__(self) -> bool:
        try:
            async with httpx.AsyncClient(timeout=self._timeout_seconds, transport=self._transport) as client:
                await client.get(self.url)
        except httpx.HTTPError:
            return False
        return True


class GatewaySupervisor:
    """Owns the single gateway child process.

    State moves stopped -> starting -> ready. A failed start (spawn error,
    early exit or readiness timeout) records ``last_error`` and returns to
    stopped. Concurrent ``ensure_running`` callers share one start attempt.
    """

    def __init__(
        self,
        *,
        cli: ClawdbotCli,
        token_provider: Callable[[], str],
        host: str,
        port: int,
        env: Mapping[str, str] | None = None,
        readiness_probe: ReadinessProbe | None = None,
        ready_timeout_seconds: float = 60.0,
        poll_interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS,
        stop_grace_seconds: float = 5.0,
        logger: logging.Logger | None = None,
    ) -> None:
        self._cli = cli
        self._token_provider = token_provider
        self.host = str(host)
        self.port = int(port)
        self._env = dict(env or {})
        self._probe = readiness_probe or HttpReadinessProbe(self.base_url + "/")
        self._ready_timeout_seconds = float(ready_timeout_seconds)
        self._poll_interval_seconds = float(poll_interval_seconds)
        self._stop_grace_seconds = float(stop_grace_seconds)
        self._logger = logger or LOGGER

        self._state = GatewayState.STOPPED
        self._handle: GatewayProcessHandle | None = None
        self._start_attempt: asyncio.Task[None] | None = None
        self._exit_watchers: set[asyncio.Task[None]] = set()
        self._last_exit: dict[str, Any] | None = None
        self._last_error = ""
        self._spawn_count = 0

    @property
    def base_url(self) -> str:
        return f"http://{self.host}:{self.port}"

    @property
    def state(self) -> GatewayState:
        return self._state

    @property
    def last_error(self) -> str:
        return self._last_error

    @property
    def spawn_count(self) -> int:
        return self._spawn_count

    @property
    def pid(self) -> int | None:
        handle = self._handle
        return handle.pid if handle is not None else None

    def is_ready(self) -> bool:
        handle = self._handle
        return self._state is GatewayState.READY and handle is not None and handle.running

    def gateway_args(self, token: str) -> list[str]:
        return [
            "gateway",
            "run",
            "--bind",
            GATEWAY_BIND_LOOPBACK,
            "--port",
            str(self.port),
            "--auth",
            "token",
            "--token",
            token,
        ]

    def gateway_env(self, token: str) -> dict[str, str]:
        env = dict(self._env)
        env.update(
            {
                "CLAWDBOT_GATEWAY_TOKEN": token,
                "CLAWDBOT_GATEWAY_BIND": GATEWAY_BIND_LOOPBACK,
                "CLAWDBOT_GATEWAY_PORT": str(self.port),
            }
        )
        return env

    def status_payload(self) -> dict[str, Any]:
        handle = self._handle
        started_at = handle.started_at if handle is not None else None
        return {
            "state": self._state.value,
            "running": self.is_ready(),
            "pid": handle.pid if handle is not None else None,
            "startedAt": _iso_from_timestamp(started_at) if started_at is not None else None,
            "uptimeSeconds": round(time.time() - started_at, 3) if started_at is not None else None,
            "lastExit": dict(self._last_exit) if self._last_exit else None,
            "lastError": self._last_error or None,
            "spawnCount": self._spawn_count,
        }

    async def ensure_running(self) -> None:
        if self.is_ready():
            return
        attempt = self._start_attempt
        if attempt is None:
            attempt = asyncio.get_running_loop().create_task(self._start())
            attempt.add_done_callback(_consume_task_result)
            self._start_attempt = attempt
        try:
            await asyncio.shield(attempt)
        except asyncio.CancelledError:
            if attempt.cancelled():
                raise GatewayError("Gateway start was cancelled because the gateway is stopping.") from None
            raise

    async def restart(self) -> None:
        attempt = self._start_attempt
        if attempt is not None:
            await asyncio.wait({attempt})
        await self._stop_current_process(reason="restart")
        await self.ensure_running()

    async def stop(self) -> None:
        attempt = self._start_attempt
        if attempt is not None and not attempt.done():
            attempt.cancel()
            await asyncio.wait({attempt})
        await self._stop_current_process(reason="stop")

    async def _stop_current_process(self, *, reason: str) -> None:
        handle = self._handle
        self._handle = None
        self._state = GatewayState.STOPPED
        if handle is None:
            return
        self._logger.info(
            "Stopping gateway pid=%s reason=%s",
            handle.pid,
            reason,
            extra=log_extra("supervisor", reason, "stopping"),
        )
        await terminate_process(handle.process, grace_seconds=self._stop_grace_seconds)

    async def _start(self) -> None:
        loop = asyncio.get_running_loop()
        started = loop.time()
        self._state = GatewayState.STARTING
        self._last_error = ""
        handle: GatewayProcessHandle | None = None
        try:
            token = self._token_provider()
            try:
                process = await self._cli.spawn(*self.gateway_args(token), env=self.gateway_env(token))
            except CommandSpawnError as exc:
                raise GatewaySpawnError(str(exc)) from exc
            self._spawn_count += 1
            handle = GatewayProcessHandle(process=process, started_at=time.time())
            self._handle = handle
            watcher = loop.create_task(self._watch_exit(handle))
            self._exit_watchers.add(watcher)
            watcher.add_done_callback(self._exit_watchers.discard)
            self._logger.info(
                "Gateway spawned pid=%s target=%s",
                handle.pid,
                self.base_url,
                extra=log_extra("supervisor", "start", "spawned"),
            )
            await self._wait_until_ready(handle, deadline=started + self._ready_timeout_seconds)
        except BaseException as exc:
            self._state = GatewayState.STOPPED
            if handle is not None:
                if self._handle is handle:
                    self._handle = None
                await terminate_process(handle.process, grace_seconds=self._stop_grace_seconds)
            if isinstance(exc, Exception):
                self._last_error = str(exc)
                self._logger.error(
                    "Gateway start failed: %s",
                    exc,
                    extra=log_extra(
                        "supervisor",
                        "start",
                        "failed",
                        duration_ms=int((loop.time() - started) * 1000),
                        error_class=type(exc).__name__,
                    ),
                )
            raise
        else:
            self._state = GatewayState.READY
            self._logger.info(
                "Gateway ready pid=%s",
                handle.pid,
                extra=log_extra("supervisor", "start", "ready", duration_ms=int((loop.time() - started) * 1000)),
            )
        finally:
            if self._start_attempt is asyncio.current_task():
                self._start_attempt = None

    async def _wait_until_ready(self, handle: GatewayProcessHandle, *, deadline: float) -> None:
        loop = asyncio.get_running_loop()
        while True:
            returncode = handle.process.returncode
            if returncode is not None:
                raise GatewayExitedError(f"Gateway exited with code {returncode} before becoming ready.")
            remaining = deadline - loop.time()
            if remaining <= 0:
                raise GatewayStartTimeoutError(
                    f"Gateway did not become ready within {self._ready_timeout_seconds:g}s at {self.base_url}."
                )
            try:
                ready = await asyncio.wait_for(self._probe(), timeout=remaining)
            except asyncio.TimeoutError:
                ready = False
            if ready:
                return
            remaining = deadline - loop.time()
            if remaining > 0:
                await asyncio.sleep(min(self._poll_interval_seconds, remaining))

    async def _watch_exit(self, handle: GatewayProcessHandle) -> None:
        returncode = await handle.process.wait()
        handle.exit_code, handle.exit_signal = _describe_returncode(returncode)
        self._last_exit = {
            "code": handle.exit_code,
            "signal": handle.exit_signal,
            "at": _iso_from_timestamp(time.time()),
        }
        if self._handle is not handle:
            return
        self._handle = None
        if self._state is GatewayState.READY:
            self._state = GatewayState.STOPPED
            self._logger.warning(
                "Gateway exited unexpectedly pid=%s code=%s signal=%s",
                handle.pid,
                handle.exit_code,
                handle.exit_signal,
                extra=log_extra("supervisor", "watch", "exited"),
            )


def _consume_task_result(task: asyncio.Task[None]) -> None:
    if not task.cancelled():
        task.exception()


__all__ = [
    "GatewayProcessHandle",
    "GatewayState",
    "GatewaySupervisor",
    "HttpReadinessProbe",
    "ReadinessProbe",
]
