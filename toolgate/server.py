from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager, suppress
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from toolgate.config import GatewaySettings
from toolgate.errors import GatewayError
from toolgate.gateway import Gateway
from toolgate.middleware import RequestLoggingMiddleware
from toolgate.models import (
    ActionRequest,
    AvailableActionsRequest,
    DispatchRequest,
    RawApplicationContext,
    SessionRequest,
)

logger = logging.getLogger(__name__)


class AppState:
    def __init__(self, settings: GatewaySettings, gateway: Optional[Gateway] = None):
        self.settings = settings
        self.gateway = gateway or Gateway(settings)


async def _reap_idle_processes(state: AppState) -> None:
    interval = state.settings.idle_check_interval_seconds
    while True:
        await asyncio.sleep(interval)
        try:
            reaped = await state.gateway.reap_idle()
            if reaped:
                logger.info(f"Reaped idle servers: {', '.join(reaped)}")
        except Exception as exc:
            logger.error(f"Idle process check failed: {exc}")


@asynccontextmanager
async def lifespan(app: FastAPI):
    state: AppState = app.state.toolgate
    reaper = None
    if state.settings.idle_process_timeout_seconds > 0 and state.settings.idle_check_interval_seconds > 0:
        reaper = asyncio.create_task(_reap_idle_processes(state))
    try:
        yield
    finally:
        if reaper is not None:
            reaper.cancel()
            with suppress(asyncio.CancelledError):
                await reaper
        await state.gateway.shutdown()


def create_app(settings: GatewaySettings, gateway: Optional[Gateway] = None) -> FastAPI:
    app = FastAPI(title="toolgate", lifespan=lifespan)
    app.state.toolgate = AppState(settings, gateway)

    app.add_middleware(RequestLoggingMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(GatewayError)
    async def gateway_error_handler(request: Request, exc: GatewayError):
        log = logger.error if exc.status_code >= 500 else logger.warning
        log(f"{request.method} {request.url.path} failed: {exc.code}: {exc.message} {exc.details or {}}")
        return JSONResponse(status_code=exc.status_code, content=exc.to_public_dict())

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        errors = exc.errors()
        message = errors[0].get("msg", "Invalid request") if errors else "Invalid request"
        return JSONResponse(status_code=422, content={"success": False, "error": message, "code": "validation_error"})

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        logger.exception(f"Unhandled error on {request.method} {request.url.path}: {exc}")
        return JSONResponse(status_code=500, content={"success": False, "error": "Internal server error", "code": "internal_error"})

    def gateway() -> Gateway:
        return app.state.toolgate.gateway

    @app.get("/health")
    async def health():
        return {"status": "ok"}

    @app.post("/api/sessions")
    async def create_session(body: Optional[SessionRequest] = None):
        return {"success": True, **gateway().session(body.session_id if body else None)}

    @app.post("/api/context")
    async def process_context(body: RawApplicationContext):
        return {"success": True, **(await gateway().process_context(body))}

    @app.post("/api/actions/available")
    async def available_actions(body: AvailableActionsRequest):
        actions = gateway().available_actions(body.session_id)
        return {"success": True, "actions": [action.model_dump() for action in actions]}

    @app.post("/api/actions/execute")
    async def execute_action(body: ActionRequest):
        return await gateway().execute_action(body)

    @app.get("/api/servers")
    async def list_servers():
        return {"success": True, "servers": gateway().list_servers()}

    @app.get("/api/servers/{server_id}/status")
    async def server_status(server_id: str):
        return {"success": True, "status": gateway().server_status(server_id)}

    @app.get("/api/servers/{server_id}/capabilities")
    async def server_capabilities(server_id: str):
        return {"success": True, "capabilities": await gateway().server_capabilities(server_id)}

    @app.post("/api/servers/{server_id}/dispatch")
    async def dispatch(server_id: str, body: DispatchRequest):
        return {"success": True, "result": await gateway().dispatch(server_id, body)}

    @app.post("/api/servers/{server_id}/stop")
    async def stop_server(server_id: str):
        return {"success": True, "stopped": await gateway().stop_server(server_id)}

    return app
