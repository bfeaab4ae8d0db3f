"""
Request logging middleware.

Logs method, path, status code and duration for every HTTP request and
keeps a short request id in the logging context while the request runs.
"""

from __future__ import annotations

import logging
import time

from toolgate.utils import clear_request_context, generate_request_id, set_request_context

logger = logging.getLogger(__name__)


class RequestLoggingMiddleware:
    """
    Raw ASGI middleware so streaming responses pass through untouched.
    """

    def __init__(self, app):
        self.app = app

    async def __call__(self, scope, receive, send):
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        request_id = generate_request_id()
        set_request_context(request_id=request_id)

        method = scope.get("method", "")
        path = scope.get("path", "")

        # /api/servers/{id}/...
        if path.startswith("/api/servers/"):
            server_id = path.split("/api/servers/", 1)[1].split("/")[0]
            set_request_context(server_id=server_id)

        start_time = time.time()
        status_code = 0

        async def send_wrapper(message):
            nonlocal status_code
            if message["type"] == "http.response.start":
                status_code = message.get("status", 0)
                headers = list(message.get("headers", []))
                headers.append((b"x-request-id", request_id.encode()))
                message = {**message, "headers": headers}
            await send(message)

        try:
            await self.app(scope, receive, send_wrapper)
        finally:
            duration_ms = (time.time() - start_time) * 1000
            # skip health checks to reduce noise
            if path != "/health":
                log = logger.warning if status_code >= 500 else logger.info
                log(f"{method} {path} -> {status_code} ({duration_ms:.1f}ms)")
            clear_request_context()
