from __future__ import annotations

import json
import logging
from typing import Any, Callable

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request, WebSocket
from fastapi.responses import HTMLResponse, JSONResponse, RedirectResponse, Response, StreamingResponse

from gateway_wrapper.services.export_service import export_filename, stream_state_archive
from gateway_wrapper.services.onboarding_service import PLATFORM_TELEGRAM, SUPPORTED_PLATFORMS, SetupPayload
from wrapper_core.errors import TypedWrapperError
from wrapper_core.logging import log_extra


SETUP_PREFIX = "/setup"
PROXY_METHODS = ["GET", "HEAD", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"]


def is_setup_path(path: str) -> bool:
    return path == SETUP_PREFIX or path.startswith(SETUP_PREFIX + "/")


def wants_starting_page(request: Request) -> bool:
    return (
        request.method == "GET"
        and request.url.path == "/"
        and "text/html" in request.headers.get("accept", "")
    )


async def _json_body(request: Request) -> dict[str, Any]:
    raw = await request.body()
    if not raw:
        return {}
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise HTTPException(status_code=400, detail="Request body must be JSON.") from exc
    if not isinstance(payload, dict):
        raise HTTPException(status_code=400, detail="Request body must be a JSON object.")
    return payload


def register_wrapper_routes(
    app: FastAPI,
    *,
    state: Any,
    logger: logging.Logger,
    setup_page: Callable[[], str],
    starting_page: Callable[[], str],
) -> None:
    @app.get("/health")
    async def health() -> dict[str, Any]:
        return state.health_payload()

    async def require_setup_auth(request: Request) -> None:
        state.auth_gate.authenticate(request.headers.get("authorization"))

    setup_router = APIRouter(prefix=SETUP_PREFIX, dependencies=[Depends(require_setup_auth)])

    @setup_router.get("", response_class=HTMLResponse)
    @setup_router.get("/", response_class=HTMLResponse, include_in_schema=False)
    def setup_index() -> HTMLResponse:
        return HTMLResponse(setup_page())

    @setup_router.get("/api/status")
    def setup_status() -> dict[str, Any]:
        return state.setup_status_payload()

    @setup_router.post("/api/run")
    async def setup_run(request: Request) -> JSONResponse:
        payload = SetupPayload.from_request(await _json_body(request), defaults=state.config.credentials)
        result = await state.onboarding.run_onboarding(payload)
        return JSONResponse(status_code=200 if result.ok else 500, content=result.payload())

    @setup_router.post("/api/pairing/approve")
    async def setup_pairing_approve(request: Request) -> JSONResponse:
        body = await _json_body(request)
        code = str(body.get("code") or "").strip()
        channel = str(body.get("channel") or PLATFORM_TELEGRAM).strip().lower()
        if not code:
            return JSONResponse(status_code=400, content={"ok": False, "output": "Missing code"})
        if channel not in SUPPORTED_PLATFORMS:
            return JSONResponse(
                status_code=400,
                content={"ok": False, "output": f"channel must be one of: {', '.join(SUPPORTED_PLATFORMS)}"},
            )
        result = await state.cli.pairing_approve(channel, code)
        logger.info(
            "Pairing approval channel=%s exit_code=%s",
            channel,
            result.exit_code,
            extra=log_extra("setup", "pairing_approve", "succeeded" if result.ok else "failed"),
        )
        return JSONResponse(status_code=200 if result.ok else 500, content={"ok": result.ok, "output": result.output})

    @setup_router.post("/api/reset")
    async def setup_reset() -> dict[str, Any]:
        # Unconfigure first; traffic arriving during stop() must route to setup.
        config_file = state.config.paths.config_file
        try:
            config_file.unlink()
        except FileNotFoundError:
            pass
        except OSError as exc:
            raise HTTPException(status_code=500, detail=f"Failed to remove {config_file}: {exc}") from exc
        await state.supervisor.stop()
        logger.info("Configuration reset", extra=log_extra("setup", "reset", "succeeded"))
        return {"ok": True, "output": f"Removed {config_file}. Setup is required again."}

    @setup_router.get("/export")
    def setup_export() -> StreamingResponse:
        filename = export_filename()
        logger.info("Exporting state directory", extra=log_extra("setup", "export", "started"))
        return StreamingResponse(
            stream_state_archive(state.config.paths.state_dir),
            media_type="application/gzip",
            headers={"Content-Disposition": f'attachment; filename="{filename}"'},
        )

    app.include_router(setup_router)

    @app.api_route("/{path:path}", methods=PROXY_METHODS, include_in_schema=False)
    async def proxy_http(request: Request, path: str) -> Response:
        del path
        if is_setup_path(request.url.path):
            state.auth_gate.authenticate(request.headers.get("authorization"))
            raise HTTPException(status_code=404, detail="Not found.")
        if not state.probe.is_configured():
            return RedirectResponse(SETUP_PREFIX, status_code=302)
        supervisor = state.supervisor
        if wants_starting_page(request) and not supervisor.is_ready() and not supervisor.last_error:
            state.schedule_gateway_start(reason="starting_page")
            return HTMLResponse(starting_page(), status_code=503, headers={"Retry-After": "5"})
        await supervisor.ensure_running()
        return await state.proxy.forward_http(request)

    @app.websocket("/{path:path}")
    async def proxy_websocket(websocket: WebSocket, path: str) -> None:
        del path
        if is_setup_path(websocket.url.path) or not state.probe.is_configured():
            await websocket.close(code=1008)
            return
        try:
            await state.supervisor.ensure_running()
        except TypedWrapperError as exc:
            logger.warning(
                "Refusing websocket; gateway unavailable: %s",
                exc,
                extra=log_extra("proxy", "forward_websocket", "unavailable", error_class=type(exc).__name__),
            )
            await websocket.close(code=1011)
            return
        await state.proxy.forward_websocket(websocket)
