"""
Remote MCP server clients.

Each enabled remote server gets at most one live ``ClientSession`` over an
SSE or streamable-HTTP transport. The session is owned by a background task
so the transport's context managers are entered and exited in the same
task, which anyio requires.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import AsyncExitStack
from typing import Any, Awaitable, Callable, Dict, List, Optional, TypeVar

from mcp import ClientSession
from mcp.client.sse import sse_client
from mcp.client.streamable_http import streamablehttp_client
from mcp.shared.exceptions import McpError
from pydantic import AnyUrl

from toolgate.errors import (
    ConnectionFailedError,
    GatewayError,
    ProtocolError,
    RequestTimeoutError,
    ServerDisabledError,
)
from toolgate.external.protocol import new_operation_id
from toolgate.models import RemoteServerConfig

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_CONNECT_TIMEOUT_SECONDS = 30.0


def _dump(value: Any) -> Any:
    if hasattr(value, "model_dump"):
        return value.model_dump(mode="json", by_alias=True, exclude_none=True)
    return value


class RemoteServerClient:
    """One MCP client session for a remote server."""

    def __init__(
        self,
        config: RemoteServerConfig,
        request_timeout_ms: int = 30000,
        connect_timeout_seconds: float = DEFAULT_CONNECT_TIMEOUT_SECONDS,
    ):
        self.config = config
        self.server_id = config.id
        self.request_timeout_ms = request_timeout_ms
        self.connect_timeout_seconds = connect_timeout_seconds
        self.session: Optional[ClientSession] = None
        self.server_info: Dict[str, Any] = {}
        self._runner: Optional[asyncio.Task] = None
        self._ready = asyncio.Event()
        self._stop = asyncio.Event()

    @property
    def is_connected(self) -> bool:
        return self.session is not None and self._runner is not None and not self._runner.done()

    async def connect(self) -> None:
        if self.is_connected:
            return

        logger.info(f"Connecting to remote server {self.server_id} at {self.config.url} ({self.config.protocol})")
        self._ready = asyncio.Event()
        self._stop = asyncio.Event()
        self._runner = asyncio.create_task(self._run())

        ready = asyncio.create_task(self._ready.wait())
        try:
            await asyncio.wait({ready, self._runner}, timeout=self.connect_timeout_seconds, return_when=asyncio.FIRST_COMPLETED)
        finally:
            ready.cancel()

        if self.is_connected:
            logger.info(f"Connected to remote server {self.server_id}")
            return

        reason = "connection timed out"
        if self._runner.done() and not self._runner.cancelled() and self._runner.exception() is not None:
            reason = str(self._runner.exception())
        await self.disconnect()
        raise ConnectionFailedError(self.server_id, reason)

    async def _run(self) -> None:
        async with AsyncExitStack() as stack:
            if self.config.protocol == "streamable-http":
                read_stream, write_stream, _ = await stack.enter_async_context(
                    streamablehttp_client(self.config.url, headers=self.config.headers or None)
                )
            else:
                read_stream, write_stream = await stack.enter_async_context(
                    sse_client(self.config.url, headers=self.config.headers or None)
                )
            session = await stack.enter_async_context(ClientSession(read_stream, write_stream))
            init = await session.initialize()

            self.server_info = {
                "name": init.serverInfo.name,
                "version": init.serverInfo.version,
                "instructions": init.instructions,
                "has_resources": init.capabilities.resources is not None,
                "has_tools": init.capabilities.tools is not None,
            }
            self.session = session
            self._ready.set()
            try:
                await self._stop.wait()
            finally:
                self.session = None

    async def disconnect(self) -> None:
        runner, self._runner = self._runner, None
        self.session = None
        if runner is None:
            return

        logger.info(f"Disconnecting from remote server {self.server_id}")
        self._stop.set()
        try:
            await asyncio.wait_for(runner, timeout=5.0)
        except asyncio.TimeoutError:
            runner.cancel()
            await asyncio.gather(runner, return_exceptions=True)
        except Exception as exc:
            logger.warning(f"Error during disconnect of {self.server_id}: {exc}")

    async def _call(self, operation: str, call: Callable[[ClientSession], Awaitable[T]], timeout_ms: Optional[int]) -> T:
        session = self.session
        if session is None or not self.is_connected:
            raise ConnectionFailedError(self.server_id, "not connected")

        timeout_ms = timeout_ms or self.request_timeout_ms
        try:
            return await asyncio.wait_for(call(session), timeout=timeout_ms / 1000)
        except asyncio.TimeoutError as exc:
            raise RequestTimeoutError(self.server_id, operation, timeout_ms) from exc
        except McpError as exc:
            raise ProtocolError(str(exc), {"server_id": self.server_id, "operation": operation}) from exc
        except GatewayError:
            raise
        except Exception as exc:
            logger.error(f"Remote call {operation} on {self.server_id} failed: {exc}")
            raise ConnectionFailedError(self.server_id, str(exc)) from exc

    async def read_resource(self, uri: str, timeout_ms: Optional[int] = None) -> Dict[str, Any]:
        result = await self._call(
            f"readResource:{new_operation_id()}",
            lambda session: session.read_resource(AnyUrl(uri)),
            timeout_ms,
        )
        return _dump(result)

    async def call_tool(self, name: str, params: Optional[Dict[str, Any]] = None, timeout_ms: Optional[int] = None) -> Dict[str, Any]:
        result = await self._call(
            f"callTool:{new_operation_id()}",
            lambda session: session.call_tool(name, params or {}),
            timeout_ms,
        )
        return _dump(result)

    async def get_capabilities(self, timeout_ms: Optional[int] = None) -> Dict[str, Any]:
        capabilities: Dict[str, Any] = {
            "name": self.server_info.get("name") or self.config.name or self.server_id,
            "version": self.server_info.get("version"),
            "instructions": self.server_info.get("instructions"),
            "tools": [],
            "resources": [],
        }
        if self.server_info.get("has_tools", True):
            tools = await self._call("listTools", lambda session: session.list_tools(), timeout_ms)
            capabilities["tools"] = [_dump(tool) for tool in tools.tools]
        if self.server_info.get("has_resources", True):
            resources = await self._call("listResources", lambda session: session.list_resources(), timeout_ms)
            capabilities["resources"] = [_dump(resource) for resource in resources.resources]
        return capabilities


ClientFactory = Callable[[RemoteServerConfig], RemoteServerClient]


class TransportClientManager:
    """
    Registry of live remote clients, at most one per server id.

    Clients are created on first use. A transport failure during a call
    drops the client so the next call reconnects.
    """

    def __init__(self, request_timeout_ms: int = 30000, client_factory: Optional[ClientFactory] = None):
        self.request_timeout_ms = request_timeout_ms
        self._client_factory = client_factory or (
            lambda config: RemoteServerClient(config, request_timeout_ms=self.request_timeout_ms)
        )
        self._clients: Dict[str, RemoteServerClient] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

    def get_server(self, server_id: str) -> Optional[RemoteServerClient]:
        client = self._clients.get(server_id)
        if client is not None and client.is_connected:
            return client
        return None

    async def connect_server(self, config: RemoteServerConfig) -> RemoteServerClient:
        if not config.enabled:
            raise ServerDisabledError(config.id)

        lock = self._locks.setdefault(config.id, asyncio.Lock())
        async with lock:
            client = self.get_server(config.id)
            if client is not None:
                return client

            stale = self._clients.pop(config.id, None)
            if stale is not None:
                await stale.disconnect()

            client = self._client_factory(config)
            try:
                await client.connect()
            except GatewayError:
                raise
            except Exception as exc:
                await client.disconnect()
                raise ConnectionFailedError(config.id, str(exc)) from exc
            self._clients[config.id] = client
            return client

    def _release_lock(self, server_id: str) -> None:
        lock = self._locks.get(server_id)
        if lock is not None and not lock.locked():
            del self._locks[server_id]

    async def disconnect_server(self, server_id: str) -> bool:
        client = self._clients.pop(server_id, None)
        self._release_lock(server_id)
        if client is None:
            return False
        await client.disconnect()
        return True

    async def read_resource(self, config: RemoteServerConfig, uri: str, timeout_ms: Optional[int] = None) -> Any:
        client = await self.connect_server(config)
        return await self._guard(config.id, client.read_resource(uri, timeout_ms))

    async def call_tool(
        self,
        config: RemoteServerConfig,
        name: str,
        params: Optional[Dict[str, Any]] = None,
        timeout_ms: Optional[int] = None,
    ) -> Any:
        client = await self.connect_server(config)
        return await self._guard(config.id, client.call_tool(name, params, timeout_ms))

    async def get_capabilities(self, config: RemoteServerConfig, timeout_ms: Optional[int] = None) -> Any:
        client = await self.connect_server(config)
        return await self._guard(config.id, client.get_capabilities(timeout_ms))

    async def _guard(self, server_id: str, call: Awaitable[T]) -> T:
        try:
            return await call
        except ConnectionFailedError:
            logger.warning(f"Dropping remote client {server_id} after transport failure")
            await self.disconnect_server(server_id)
            raise

    async def shutdown_all(self) -> None:
        for server_id in list(self._clients):
            try:
                await self.disconnect_server(server_id)
            except Exception as exc:
                logger.error(f"Error disconnecting {server_id}: {exc}")

    def list_servers(self) -> List[Dict[str, Any]]:
        return [
            {"server_id": server_id, "connected": client.is_connected, "url": client.config.url}
            for server_id, client in sorted(self._clients.items())
        ]
