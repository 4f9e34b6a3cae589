from __future__ import annotations

import asyncio
import inspect
import io
import json
import tarfile
import threading
from pathlib import Path
from typing import Any, Callable

import httpx
import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect
from websockets.sync.server import serve

from gateway_wrapper.server import WrapperState, build_app
from wrapper_core import WrapperConfig


ADMIN = ("admin", "pw")


async def _always_ready() -> bool:
    return True


async def _never_ready() -> bool:
    return False


class _JsonBody(httpx.AsyncByteStream):
    """Unread response body, as a real transport hands it to the client."""

    def __init__(self, payload: Any) -> None:
        self._data = json.dumps(payload).encode("utf-8")

    async def __aiter__(self):
        yield self._data


class _Upstream:
    """Records requests reaching the gateway through the proxy transport."""

    def __init__(self, responder: Callable[[httpx.Request], httpx.Response] | None = None) -> None:
        self.requests: list[httpx.Request] = []
        self._responder = responder

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self._responder is not None:
            return self._responder(request)
        return httpx.Response(
            201,
            headers={"X-Upstream": "yes", "Content-Type": "application/json"},
            stream=_JsonBody({"echo": request.content.decode("utf-8")}),
        )


def _state(
    tmp_path: Path,
    command: list[str],
    *,
    password: str = "pw",
    allow_unauthenticated: bool = False,
    configured: bool = False,
    gateway_port: int = 18789,
    readiness_probe: Any = _always_ready,
    upstream: _Upstream | None = None,
) -> WrapperState:
    config = WrapperConfig.from_dict(
        {
            "paths": {"state_dir": str(tmp_path / "state")},
            "gateway": {"cli": command, "port": gateway_port, "ready_timeout_seconds": 10, "stop_grace_seconds": 1},
            "setup": {"password": password, "allow_unauthenticated": allow_unauthenticated},
        },
        environ={},
    )
    if configured:
        config.paths.ensure_directories()
        config.paths.config_file.write_text("{}", encoding="utf-8")
    return WrapperState(
        config,
        readiness_probe=readiness_probe,
        proxy_transport=httpx.MockTransport(upstream or _Upstream()),
    )


@pytest.fixture(autouse=True)
def _stub_environment(monkeypatch: pytest.MonkeyPatch, stub_log: Path) -> None:
    monkeypatch.setenv("STUB_LOG", str(stub_log))
    monkeypatch.delenv("STUB_GATEWAY_MODE", raising=False)


def test_health_is_public_and_reports_unconfigured(tmp_path: Path, stub_cli_command: list[str]) -> None:
    with TestClient(build_app(_state(tmp_path, stub_cli_command))) as client:
        response = client.get("/health")

    assert response.status_code == 200
    payload = response.json()
    assert payload["configured"] is False
    assert payload["gateway"] == "stopped"
    assert payload["gatewayState"] == "stopped"
    assert payload["status"] == "setup_required"


def test_health_runs_on_the_event_loop(tmp_path: Path, stub_cli_command: list[str]) -> None:
    app = build_app(_state(tmp_path, stub_cli_command))
    route = next(route for route in app.routes if getattr(route, "path", None) == "/health")

    assert inspect.iscoroutinefunction(route.endpoint)


def test_startup_creates_state_directories(tmp_path: Path, stub_cli_command: list[str]) -> None:
    state = _state(tmp_path, stub_cli_command)
    assert not state.config.paths.state_dir.exists()

    with TestClient(build_app(state)):
        assert state.config.paths.state_dir.is_dir()
        assert state.config.paths.workspace_dir.is_dir()


def test_unconfigured_traffic_is_sent_to_setup(tmp_path: Path, stub_cli_command: list[str]) -> None:
    with TestClient(build_app(_state(tmp_path, stub_cli_command))) as client:
        for path in ("/", "/api/chat?x=1"):
            response = client.get(path, follow_redirects=False)
            assert response.status_code == 302
            assert response.headers["location"] == "/setup"
        assert client.post("/api/chat", json={}, follow_redirects=False).status_code == 302

        with pytest.raises(WebSocketDisconnect) as raised:
            with client.websocket_connect("/ws"):
                pass
        assert raised.value.code == 1008


def test_setup_surface_requires_basic_auth(tmp_path: Path, stub_cli_command: list[str]) -> None:
    with TestClient(build_app(_state(tmp_path, stub_cli_command))) as client:
        unauthenticated = client.get("/setup")
        wrong = client.get("/setup/api/status", auth=("admin", "nope"))
        landing = client.get("/setup", auth=ADMIN)
        landing_slash = client.get("/setup/", auth=ADMIN)
        unknown_anonymous = client.get("/setup/nope")
        unknown = client.get("/setup/nope", auth=ADMIN)

    assert unauthenticated.status_code == 401
    assert unauthenticated.headers["www-authenticate"] == 'Basic realm="Clawdbot Setup"'
    assert unauthenticated.json()["error_code"] == "UNAUTHORIZED"
    assert wrong.status_code == 401
    assert landing.status_code == 200
    assert "text/html" in landing.headers["content-type"]
    assert "/setup/api/run" in landing.text
    assert landing_slash.status_code == 200
    assert unknown_anonymous.status_code == 401
    assert unknown.status_code == 404


def test_setup_surface_is_disabled_without_password(tmp_path: Path, stub_cli_command: list[str]) -> None:
    with TestClient(build_app(_state(tmp_path, stub_cli_command, password=""))) as client:
        response = client.get("/setup/api/status", auth=("admin", ""))
        health = client.get("/health")

    assert response.status_code == 503
    assert response.json()["error_code"] == "SETUP_PASSWORD_MISSING"
    assert health.status_code == 200


def test_setup_surface_can_be_opened_explicitly(tmp_path: Path, stub_cli_command: list[str]) -> None:
    state = _state(tmp_path, stub_cli_command, password="", allow_unauthenticated=True)
    with TestClient(build_app(state)) as client:
        response = client.get("/setup/api/status")

    assert response.status_code == 200
    payload = response.json()
    assert payload["configured"] is False
    assert payload["hasGatewayToken"] is False
    assert payload["gateway"]["state"] == "stopped"
    assert payload["providers"] == ["anthropic", "gemini", "openai", "openrouter"]
    assert payload["platforms"] == ["telegram", "discord"]


def test_setup_run_rejects_invalid_payloads(tmp_path: Path, stub_cli_command: list[str]) -> None:
    with TestClient(build_app(_state(tmp_path, stub_cli_command))) as client:
        missing = client.post("/setup/api/run", json={}, auth=ADMIN)
        not_json = client.post(
            "/setup/api/run", content=b"provider=openai", headers={"content-type": "text/plain"}, auth=ADMIN
        )
        not_object = client.post("/setup/api/run", json=["openai"], auth=ADMIN)

    assert missing.status_code == 400
    assert missing.json() == {"error_code": "BAD_REQUEST", "detail": "provider is required."}
    assert not_json.status_code == 400
    assert not_object.status_code == 400


def test_onboarding_then_proxy_pairing_export_and_reset(
    tmp_path: Path, stub_cli_command: list[str], stub_log: Path
) -> None:
    upstream = _Upstream()
    state = _state(tmp_path, stub_cli_command, upstream=upstream)

    with TestClient(build_app(state)) as client:
        run = client.post(
            "/setup/api/run",
            json={"provider": "anthropic", "credential": "sk-ant", "platform": "telegram", "platform_token": "1:a"},
            auth=ADMIN,
        )
        assert run.status_code == 200, run.text
        assert run.json()["ok"] is True
        assert "sk-ant" not in json.dumps(client.get("/setup/api/status", auth=ADMIN).json())

        health = client.get("/health").json()
        assert health["configured"] is True
        assert health["gateway"] == "running"

        token = state.config.paths.token_file.read_text(encoding="utf-8").strip()
        proxied = client.post("/api/echo?x=1", content=b'{"hello": "world"}', headers={"X-Client": "cli"})
        assert proxied.status_code == 201
        assert proxied.headers["x-upstream"] == "yes"
        assert proxied.json() == {"echo": '{"hello": "world"}'}
        forwarded = upstream.requests[-1]
        assert forwarded.method == "POST"
        assert forwarded.url.path == "/api/echo"
        assert forwarded.url.query == b"x=1"
        assert forwarded.url.port == 18789
        assert forwarded.headers["x-client"] == "cli"
        assert forwarded.headers["authorization"] == f"Bearer {token}"
        assert forwarded.headers["x-forwarded-for"] == "testclient"
        assert forwarded.headers["x-forwarded-host"] == "testserver"
        assert forwarded.headers["x-forwarded-proto"] == "http"

        missing_code = client.post("/setup/api/pairing/approve", json={"channel": "telegram"}, auth=ADMIN)
        assert missing_code.status_code == 400
        assert missing_code.json() == {"ok": False, "output": "Missing code"}
        bad_channel = client.post("/setup/api/pairing/approve", json={"channel": "irc", "code": "X"}, auth=ADMIN)
        assert bad_channel.status_code == 400
        approved = client.post("/setup/api/pairing/approve", json={"code": "CODE1"}, auth=ADMIN)
        assert approved.status_code == 200
        assert approved.json() == {"ok": True, "output": "approved telegram CODE1\n"}

        export = client.get("/setup/export", auth=ADMIN)
        assert export.status_code == 200
        assert export.headers["content-type"] == "application/gzip"
        assert "clawdbot-backup-" in export.headers["content-disposition"]
        with tarfile.open(fileobj=io.BytesIO(export.content), mode="r:gz") as archive:
            assert "state/clawdbot.json" in archive.getnames()

        reset = client.post("/setup/api/reset", auth=ADMIN)
        assert reset.status_code == 200
        assert reset.json()["ok"] is True
        assert not state.config.paths.config_file.exists()
        after = client.get("/health").json()
        assert after["configured"] is False
        assert after["gateway"] == "stopped"
        assert client.get("/api/echo", follow_redirects=False).status_code == 302


def test_reset_unconfigures_before_stopping_so_concurrent_traffic_cannot_respawn(
    tmp_path: Path, stub_cli_command: list[str], stub_log: Path
) -> None:
    state = _state(tmp_path, stub_cli_command, configured=True)
    app = build_app(state)
    supervisor = state.supervisor
    original_stop = supervisor.stop
    observed: dict[str, Any] = {}

    async def scenario() -> httpx.Response:
        await state.startup()
        await supervisor.ensure_running()
        async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://testserver") as client:

            async def stop_while_traffic_arrives() -> None:
                observed["config_present"] = state.config.paths.config_file.exists()
                observed["mid_stop"] = await client.get("/api/echo")
                await original_stop()

            supervisor.stop = stop_while_traffic_arrives
            try:
                reset = await client.post("/setup/api/reset", auth=ADMIN)
            finally:
                del supervisor.stop
            observed["after"] = await client.get("/api/echo")
        await state.shutdown()
        return reset

    reset = asyncio.run(scenario())

    assert reset.status_code == 200, reset.text
    assert observed["config_present"] is False
    assert observed["mid_stop"].status_code == 302
    assert observed["after"].status_code == 302
    assert supervisor.spawn_count == 1
    assert supervisor.is_ready() is False


def test_failed_onboarding_reports_output(
    tmp_path: Path, stub_cli_command: list[str], monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setenv("STUB_ONBOARD_EXIT", "4")
    with TestClient(build_app(_state(tmp_path, stub_cli_command))) as client:
        response = client.post("/setup/api/run", json={"provider": "openai", "credential": "sk"}, auth=ADMIN)

    assert response.status_code == 500
    assert response.json()["ok"] is False
    assert "onboard output" in response.json()["output"]


def test_gateway_start_failure_is_a_503_diagnostic(
    tmp_path: Path, stub_cli_command: list[str], monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setenv("STUB_GATEWAY_MODE", "exit")
    with TestClient(build_app(_state(tmp_path, stub_cli_command, configured=True, readiness_probe=_never_ready))) as client:
        response = client.get("/api/status")

    assert response.status_code == 503
    assert response.json()["error_code"] == "GATEWAY_EXITED"


def test_browser_root_shows_starting_page_while_gateway_boots(tmp_path: Path, stub_cli_command: list[str]) -> None:
    state = _state(tmp_path, stub_cli_command, configured=True, readiness_probe=_never_ready)
    with TestClient(build_app(state)) as client:
        response = client.get("/", headers={"Accept": "text/html,application/xhtml+xml"})

    assert response.status_code == 503
    assert response.headers["retry-after"] == "5"
    assert "The gateway is starting" in response.text


def test_unreachable_gateway_yields_502(tmp_path: Path, stub_cli_command: list[str]) -> None:
    def refuse(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    state = _state(tmp_path, stub_cli_command, configured=True, upstream=_Upstream(refuse))
    with TestClient(build_app(state)) as client:
        response = client.get("/api/status")

    assert response.status_code == 502
    assert response.text == "Gateway unreachable: ConnectError"


def test_websocket_traffic_is_bridged_to_the_gateway(tmp_path: Path, stub_cli_command: list[str]) -> None:
    seen: dict[str, Any] = {}

    def echo(connection: Any) -> None:
        seen["path"] = connection.request.path
        seen["authorization"] = connection.request.headers.get("Authorization")
        seen["forwarded_for"] = connection.request.headers.get("X-Forwarded-For")
        for message in connection:
            connection.send(message)

    with serve(echo, "127.0.0.1", 0, subprotocols=["chat.v1"]) as server:
        thread = threading.Thread(target=server.serve_forever, daemon=True)
        thread.start()
        port = server.socket.getsockname()[1]
        state = _state(tmp_path, stub_cli_command, configured=True, gateway_port=port)
        with TestClient(build_app(state)) as client:
            with client.websocket_connect("/ws/chat?room=1", subprotocols=["chat.v1"]) as websocket:
                assert websocket.accepted_subprotocol == "chat.v1"
                websocket.send_text("ping")
                assert websocket.receive_text() == "ping"
                websocket.send_bytes(b"\x00\x01")
                assert websocket.receive_bytes() == b"\x00\x01"
    thread.join(timeout=5)

    token = state.config.paths.token_file.read_text(encoding="utf-8").strip()
    assert seen["path"] == "/ws/chat?room=1"
    assert seen["authorization"] == f"Bearer {token}"
    assert seen["forwarded_for"] == "testclient"
