"""
Unit tests for toolgate/external/remote.py - remote MCP clients.

The MCP SDK transport and session are replaced with mocks.
"""

import asyncio
from contextlib import asynccontextmanager
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from mcp.shared.exceptions import McpError
from mcp.types import ErrorData

from toolgate.errors import ConnectionFailedError, ProtocolError, RequestTimeoutError, ServerDisabledError
from toolgate.external.remote import RemoteServerClient, TransportClientManager
from toolgate.models import RemoteServerConfig


def make_session() -> MagicMock:
    session = MagicMock()
    init = MagicMock()
    init.serverInfo.name = "docs"
    init.serverInfo.version = "1.2.0"
    init.instructions = "Search the docs"
    init.capabilities.resources = None
    session.initialize = AsyncMock(return_value=init)

    tool = MagicMock()
    tool.model_dump.return_value = {"name": "search"}
    session.list_tools = AsyncMock(return_value=MagicMock(tools=[tool]))
    session.list_resources = AsyncMock()

    call_result = MagicMock()
    call_result.model_dump.return_value = {"content": [{"type": "text", "text": "found"}], "isError": False}
    session.call_tool = AsyncMock(return_value=call_result)
    return session


def patch_transport(session: MagicMock, fail: Exception = None):
    @asynccontextmanager
    async def fake_sse_client(url, headers=None):
        if fail is not None:
            raise fail
        yield MagicMock(), MagicMock()

    @asynccontextmanager
    async def fake_client_session(read_stream, write_stream):
        yield session

    return (
        patch("toolgate.external.remote.sse_client", fake_sse_client),
        patch("toolgate.external.remote.ClientSession", fake_client_session),
    )


@pytest.fixture
def remote_config(remote_config_data) -> RemoteServerConfig:
    return RemoteServerConfig(**remote_config_data)


class TestRemoteServerClient:
    """Tests for a single remote client."""

    @pytest.mark.asyncio
    async def test_connect_and_call_tool(self, remote_config):
        session = make_session()
        sse_patch, session_patch = patch_transport(session)
        with sse_patch, session_patch:
            client = RemoteServerClient(remote_config)
            await client.connect()
            try:
                assert client.is_connected
                result = await client.call_tool("search", {"q": "bolts"})
                assert result["content"][0]["text"] == "found"
                session.call_tool.assert_awaited_once_with("search", {"q": "bolts"})
            finally:
                await client.disconnect()
        assert not client.is_connected

    @pytest.mark.asyncio
    async def test_capabilities_skip_missing_resources(self, remote_config):
        session = make_session()
        sse_patch, session_patch = patch_transport(session)
        with sse_patch, session_patch:
            client = RemoteServerClient(remote_config)
            await client.connect()
            try:
                caps = await client.get_capabilities()
            finally:
                await client.disconnect()

        assert caps["name"] == "docs"
        assert caps["version"] == "1.2.0"
        assert caps["tools"] == [{"name": "search"}]
        assert caps["resources"] == []
        session.list_resources.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_connect_failure(self, remote_config):
        sse_patch, session_patch = patch_transport(make_session(), fail=OSError("refused"))
        with sse_patch, session_patch:
            client = RemoteServerClient(remote_config)
            with pytest.raises(ConnectionFailedError) as exc_info:
                await client.connect()
        assert exc_info.value.details["reason"] == "refused"
        assert not client.is_connected

    @pytest.mark.asyncio
    async def test_mcp_error_is_protocol_error(self, remote_config):
        session = make_session()
        session.call_tool = AsyncMock(side_effect=McpError(ErrorData(code=-32602, message="bad args")))
        sse_patch, session_patch = patch_transport(session)
        with sse_patch, session_patch:
            client = RemoteServerClient(remote_config)
            await client.connect()
            try:
                with pytest.raises(ProtocolError):
                    await client.call_tool("search", {})
                assert client.is_connected
            finally:
                await client.disconnect()

    @pytest.mark.asyncio
    async def test_timeout(self, remote_config):
        session = make_session()

        async def slow(*args, **kwargs):
            await asyncio.sleep(1)

        session.call_tool = AsyncMock(side_effect=slow)
        sse_patch, session_patch = patch_transport(session)
        with sse_patch, session_patch:
            client = RemoteServerClient(remote_config)
            await client.connect()
            try:
                with pytest.raises(RequestTimeoutError):
                    await client.call_tool("search", {}, timeout_ms=20)
            finally:
                await client.disconnect()

    @pytest.mark.asyncio
    async def test_call_when_not_connected(self, remote_config):
        client = RemoteServerClient(remote_config)
        with pytest.raises(ConnectionFailedError):
            await client.call_tool("search", {})


def make_fake_client(config):
    client = MagicMock()
    client.config = config
    client.is_connected = False

    async def connect():
        client.is_connected = True

    async def disconnect():
        client.is_connected = False

    client.connect = AsyncMock(side_effect=connect)
    client.disconnect = AsyncMock(side_effect=disconnect)
    client.call_tool = AsyncMock(return_value={"ok": True})
    client.read_resource = AsyncMock(return_value={"contents": []})
    client.get_capabilities = AsyncMock(return_value={"tools": []})
    return client


class TestTransportClientManager:
    """Tests for the client registry."""

    @pytest.mark.asyncio
    async def test_connect_is_idempotent(self, remote_config):
        factory = MagicMock(side_effect=make_fake_client)
        manager = TransportClientManager(client_factory=factory)

        first = await manager.connect_server(remote_config)
        second = await manager.connect_server(remote_config)

        assert first is second
        assert factory.call_count == 1
        assert manager.get_server("docs") is first

    @pytest.mark.asyncio
    async def test_disabled_server(self, remote_config):
        manager = TransportClientManager(client_factory=make_fake_client)
        disabled = remote_config.model_copy(update={"enabled": False})
        with pytest.raises(ServerDisabledError):
            await manager.connect_server(disabled)
        assert manager.get_server("docs") is None

    @pytest.mark.asyncio
    async def test_disconnect_is_idempotent(self, remote_config):
        manager = TransportClientManager(client_factory=make_fake_client)
        await manager.connect_server(remote_config)

        assert await manager.disconnect_server("docs") is True
        assert await manager.disconnect_server("docs") is False
        assert manager.get_server("docs") is None
        assert "docs" not in manager._locks

    @pytest.mark.asyncio
    async def test_calls_connect_lazily(self, remote_config):
        manager = TransportClientManager(client_factory=make_fake_client)
        assert await manager.call_tool(remote_config, "search", {"q": "x"}) == {"ok": True}
        assert await manager.read_resource(remote_config, "docs://index") == {"contents": []}
        assert await manager.get_capabilities(remote_config) == {"tools": []}

    @pytest.mark.asyncio
    async def test_transport_failure_drops_client(self, remote_config):
        clients = []

        def factory(config):
            client = make_fake_client(config)
            clients.append(client)
            return client

        manager = TransportClientManager(client_factory=factory)
        await manager.connect_server(remote_config)
        clients[0].call_tool.side_effect = ConnectionFailedError("docs", "stream closed")

        with pytest.raises(ConnectionFailedError):
            await manager.call_tool(remote_config, "search", {})
        assert manager.get_server("docs") is None

        assert await manager.call_tool(remote_config, "search", {}) == {"ok": True}
        assert len(clients) == 2

    @pytest.mark.asyncio
    async def test_connect_failure_is_not_registered(self, remote_config):
        def factory(config):
            client = make_fake_client(config)
            client.connect = AsyncMock(side_effect=ConnectionFailedError("docs", "refused"))
            return client

        manager = TransportClientManager(client_factory=factory)
        with pytest.raises(ConnectionFailedError):
            await manager.connect_server(remote_config)
        assert manager.list_servers() == []

    @pytest.mark.asyncio
    async def test_shutdown_all(self, remote_config):
        manager = TransportClientManager(client_factory=make_fake_client)
        client = await manager.connect_server(remote_config)
        await manager.shutdown_all()
        client.disconnect.assert_awaited_once()
        assert manager.list_servers() == []
