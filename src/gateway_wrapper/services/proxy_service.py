from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Iterable

import httpx
from fastapi import Request, WebSocket, WebSocketDisconnect
from fastapi.responses import PlainTextResponse, Response, StreamingResponse
from starlette.background import BackgroundTask
from starlette.websockets import WebSocketState
from websockets.asyncio.client import ClientConnection, connect
from websockets.exceptions import ConnectionClosed, WebSocketException

from wrapper_core.logging import log_extra


LOGGER = logging.getLogger("gateway_wrapper.proxy")

HOP_BY_HOP_HEADERS = frozenset(
    {
        "connection",
        "keep-alive",
        "proxy-authenticate",
        "proxy-authorization",
        "te",
        "trailer",
        "trailers",
        "transfer-encoding",
        "upgrade",
    }
)
# Set by the websockets client itself during the opening handshake.
WEBSOCKET_HANDSHAKE_HEADERS = frozenset(
    {
        "sec-websocket-key",
        "sec-websocket-version",
        "sec-websocket-extensions",
        "sec-websocket-protocol",
        "user-agent",
    }
)
DEFAULT_CONNECT_TIMEOUT_SECONDS = 10.0
UNSENDABLE_CLOSE_CODES = frozenset({1005, 1006, 1015})


def _connection_tokens(headers: Iterable[tuple[str, str]]) -> set[str]:
    tokens: set[str] = set()
    for key, value in headers:
        if key.lower() == "connection":
            tokens.update(part.strip().lower() for part in value.split(",") if part.strip())
    return tokens


def forwarded_request_headers(
    headers: Iterable[tuple[str, str]],
    *,
    client_host: str,
    scheme: str,
    host: str,
    token: str,
    drop: frozenset[str] = frozenset(),
) -> list[tuple[str, str]]:
    """Copy client headers for the gateway, adding X-Forwarded-* and the gateway bearer token."""
    items = [(str(key), str(value)) for key, value in headers]
    dropped = HOP_BY_HOP_HEADERS | _connection_tokens(items) | drop | {"host"}
    forwarded: list[tuple[str, str]] = []
    prior_forwarded_for = ""
    has_authorization = False
    has_proto = False
    has_forwarded_host = False
    for key, value in items:
        lowered = key.lower()
        if lowered in dropped:
            continue
        if lowered == "x-forwarded-for":
            prior_forwarded_for = f"{prior_forwarded_for}, {value}" if prior_forwarded_for else value
            continue
        if lowered == "authorization":
            has_authorization = True
        elif lowered == "x-forwarded-proto":
            has_proto = True
        elif lowered == "x-forwarded-host":
            has_forwarded_host = True
        forwarded.append((key, value))
    if client_host:
        prior_forwarded_for = f"{prior_forwarded_for}, {client_host}" if prior_forwarded_for else client_host
    if prior_forwarded_for:
        forwarded.append(("x-forwarded-for", prior_forwarded_for))
    if not has_proto and scheme:
        forwarded.append(("x-forwarded-proto", scheme))
    if not has_forwarded_host and host:
        forwarded.append(("x-forwarded-host", host))
    if not has_authorization and token:
        forwarded.append(("authorization", f"Bearer {token}"))
    return forwarded


class GatewayProxy:
    def __init__(
        self,
        *,
        base_url: str,
        token_provider: Callable[[], str],
        transport: httpx.AsyncBaseTransport | None = None,
        connect_timeout_seconds: float = DEFAULT_CONNECT_TIMEOUT_SECONDS,
        logger: logging.Logger | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._token_provider = token_provider
        self._transport = transport
        self._connect_timeout_seconds = float(connect_timeout_seconds)
        self._logger = logger or LOGGER
        self._http_client: httpx.AsyncClient | None = None

    @property
    def websocket_base_url(self) -> str:
        if self.base_url.startswith("https://"):
            return "wss://" + self.base_url[len("https://") :]
        return "ws://" + self.base_url[len("http://") :]

    def _client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(
                transport=self._transport,
                timeout=httpx.Timeout(None, connect=self._connect_timeout_seconds),
                follow_redirects=False,
            )
        return self._http_client

    async def aclose(self) -> None:
        client = self._http_client
        self._http_client = None
        if client is not None:
            await client.aclose()

    async def forward_http(self, request: Request) -> Response:
        target = httpx.URL(self.base_url + request.url.path, query=request.url.query.encode("utf-8"))
        headers = forwarded_request_headers(
            request.headers.items(),
            client_host=request.client.host if request.client else "",
            scheme=request.url.scheme,
            host=request.headers.get("host", ""),
            token=self._token_provider(),
        )
        has_body = "content-length" in request.headers or "transfer-encoding" in request.headers
        client = self._client()
        upstream_request = client.build_request(
            request.method,
            target,
            headers=headers,
            content=request.stream() if has_body else None,
        )
        try:
            upstream = await client.send(upstream_request, stream=True)
        except httpx.HTTPError as exc:
            self._logger.warning(
                "Gateway request failed method=%s path=%s error=%s",
                request.method,
                request.url.path,
                exc,
                extra=log_extra("proxy", "forward_http", "upstream_error", error_class=type(exc).__name__),
            )
            return PlainTextResponse(f"Gateway unreachable: {type(exc).__name__}", status_code=502)

        response = StreamingResponse(
            upstream.aiter_raw(),
            status_code=upstream.status_code,
            background=BackgroundTask(upstream.aclose),
        )
        response.raw_headers = [
            (key.encode("latin-1"), value.encode("latin-1"))
            for key, value in upstream.headers.multi_items()
            if key.lower() not in HOP_BY_HOP_HEADERS
        ]
        return response

    async def forward_websocket(self, websocket: WebSocket) -> None:
        path = websocket.url.path
        query = websocket.url.query
        target = f"{self.websocket_base_url}{path}" + (f"?{query}" if query else "")
        headers = forwarded_request_headers(
            websocket.headers.items(),
            client_host=websocket.client.host if websocket.client else "",
            scheme="https" if websocket.url.scheme == "wss" else "http",
            host=websocket.headers.get("host", ""),
            token=self._token_provider(),
            drop=WEBSOCKET_HANDSHAKE_HEADERS,
        )
        subprotocols = [
            part.strip() for part in websocket.headers.get("sec-websocket-protocol", "").split(",") if part.strip()
        ]
        try:
            upstream = await connect(
                target,
                additional_headers=headers,
                subprotocols=subprotocols or None,
                user_agent_header=websocket.headers.get("user-agent"),
                open_timeout=self._connect_timeout_seconds,
                max_size=None,
            )
        except (OSError, TimeoutError, WebSocketException) as exc:
            self._logger.warning(
                "Gateway websocket connect failed path=%s error=%s",
                path,
                exc,
                extra=log_extra("proxy", "forward_websocket", "upstream_error", error_class=type(exc).__name__),
            )
            await websocket.close(code=1011)
            return

        try:
            await websocket.accept(subprotocol=upstream.subprotocol)
            await self._pump_websocket(websocket, upstream)
        finally:
            await upstream.close()
            if websocket.application_state is WebSocketState.CONNECTED and (
                websocket.client_state is WebSocketState.CONNECTED
            ):
                close_code = upstream.close_code
                if close_code is None or close_code in UNSENDABLE_CLOSE_CODES:
                    close_code = 1000
                await websocket.close(code=close_code)

    async def _pump_websocket(self, websocket: WebSocket, upstream: ClientConnection) -> None:
        async def client_to_gateway() -> None:
            while True:
                message = await websocket.receive()
                if message["type"] == "websocket.disconnect":
                    return
                try:
                    if message.get("bytes") is not None:
                        await upstream.send(message["bytes"])
                    elif message.get("text") is not None:
                        await upstream.send(message["text"])
                except ConnectionClosed:
                    return

        async def gateway_to_client() -> None:
            try:
                async for message in upstream:
                    if isinstance(message, bytes):
                        await websocket.send_bytes(message)
                    else:
                        await websocket.send_text(message)
            except ConnectionClosed:
                return

        sender = asyncio.create_task(client_to_gateway())
        receiver = asyncio.create_task(gateway_to_client())
        done, pending = await asyncio.wait({sender, receiver}, return_when=asyncio.FIRST_COMPLETED)
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
        for task in done:
            exc = task.exception()
            if exc and not isinstance(exc, (WebSocketDisconnect, ConnectionClosed)):
                raise exc


__all__ = ["GatewayProxy", "HOP_BY_HOP_HEADERS", "forwarded_request_headers"]
