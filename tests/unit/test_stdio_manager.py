"""
Unit tests for toolgate/external/stdio_manager.py - StdioProcessManager.

These tests spawn tests/fixtures/echo_server.py as a real child process.
"""

import asyncio
import os
import signal
import sys

import pytest
import pytest_asyncio

from toolgate.errors import ProcessExitedError, ProtocolError, RequestTimeoutError, UnknownToolError
from toolgate.external.stdio_manager import ProcessState, StdioProcessManager, build_command, build_env
from toolgate.models import StdioServerConfig


@pytest_asyncio.fixture
async def manager():
    mgr = StdioProcessManager(request_timeout_ms=5000, startup_grace_seconds=5.0, stop_timeout_seconds=2.0)
    yield mgr
    await mgr.stop_all()


class TestCommandBuilding:
    """Tests for spawn parameter helpers."""

    def test_command_is_split_and_args_appended(self):
        config = StdioServerConfig(id="s1", command="node server.js --flag", args=["/tmp/dir"])
        assert build_command(config) == ["node", "server.js", "--flag", "/tmp/dir"]

    def test_env_carries_server_id(self):
        config = StdioServerConfig(id="s1", command="x", env={"EXTRA": "1"})
        env = build_env(config)
        assert env["MCP_SERVER_ID"] == "s1"
        assert env["EXTRA"] == "1"


class TestLifecycle:
    """Tests for starting and stopping processes."""

    @pytest.mark.asyncio
    async def test_start_and_status(self, manager, echo_config):
        assert manager.state("fs1") == ProcessState.STOPPED
        assert await manager.start_process(echo_config) is True

        assert manager.is_running("fs1")
        assert manager.state("fs1") == ProcessState.RUNNING
        status = manager.status("fs1")
        assert status["pid"] is not None
        assert status["pending"] == 0
        assert [p["server_id"] for p in manager.list_processes()] == ["fs1"]

    @pytest.mark.asyncio
    async def test_start_is_idempotent(self, manager, echo_config):
        assert await manager.start_process(echo_config)
        pid = manager.status("fs1")["pid"]
        assert await manager.start_process(echo_config)
        assert manager.status("fs1")["pid"] == pid

    @pytest.mark.asyncio
    async def test_missing_working_directory(self, manager, echo_config, tmp_path):
        config = echo_config.model_copy(update={"working_directory": str(tmp_path / "missing")})
        assert await manager.start_process(config) is False
        assert not manager.is_running("fs1")

    @pytest.mark.asyncio
    async def test_exit_during_startup(self, manager, tmp_path):
        config = StdioServerConfig(
            id="dies",
            command=f'"{sys.executable}" -c "import sys; sys.exit(3)"',
            working_directory=str(tmp_path),
        )
        assert await manager.start_process(config) is False
        assert manager.state("dies") == ProcessState.STOPPED

    @pytest.mark.asyncio
    async def test_stop_unknown_returns_false(self, manager):
        assert await manager.stop_process("nope") is False

    @pytest.mark.asyncio
    async def test_stop_releases_start_lock(self, manager, echo_config):
        await manager.start_process(echo_config)
        assert "fs1" in manager._start_locks

        await manager.stop_process("fs1")
        assert "fs1" not in manager._start_locks

    @pytest.mark.asyncio
    async def test_reap_idle(self, manager, echo_config):
        await manager.start_process(echo_config)
        await asyncio.sleep(0.05)
        assert await manager.reap_idle(0) == ["fs1"]
        assert not manager.is_running("fs1")


class TestRequests:
    """Tests for request/reply correlation."""

    @pytest.mark.asyncio
    async def test_round_trip(self, manager, echo_config):
        await manager.start_process(echo_config)
        result = await manager.request("fs1", "echo", {"text": "hi"}, op_id="r1")
        assert result == {"text": "hi"}
        assert manager.pending_count("fs1") == 0

    @pytest.mark.asyncio
    async def test_write_drain_tasks_are_tracked(self, manager, echo_config):
        await manager.start_process(echo_config)
        handle = manager._handles["fs1"]

        await asyncio.gather(*(manager.request("fs1", "echo", {"n": n}) for n in range(5)))
        for _ in range(50):
            if not handle.writers:
                break
            await asyncio.sleep(0.01)
        assert handle.writers == set()

    @pytest.mark.asyncio
    async def test_end_to_end_call_tool_then_stop(self, manager, echo_config):
        assert await manager.start_process(echo_config)
        assert await manager.call_tool("fs1", "echo", {"text": "ping"}) == {"text": "ping"}

        assert await manager.stop_process("fs1") is True
        with pytest.raises(ProcessExitedError):
            await manager.call_tool("fs1", "echo", {"text": "ping"})

        assert await manager.start_process(echo_config)
        assert await manager.call_tool("fs1", "echo", {"text": "again"}) == {"text": "again"}

    @pytest.mark.asyncio
    async def test_server_id_in_environment(self, manager, echo_config):
        await manager.start_process(echo_config)
        assert await manager.request("fs1", "whoami") == {"server_id": "fs1"}

    @pytest.mark.asyncio
    async def test_read_resource(self, manager, echo_config):
        await manager.start_process(echo_config)
        result = await manager.read_resource("fs1", "resource://status")
        assert result == {"uri": "resource://status", "contents": "ok"}

    @pytest.mark.asyncio
    async def test_error_reply(self, manager, echo_config):
        await manager.start_process(echo_config)
        with pytest.raises(ProtocolError) as exc_info:
            await manager.request("fs1", "fail")
        assert exc_info.value.message == "boom"
        assert manager.pending_count("fs1") == 0

    @pytest.mark.asyncio
    async def test_unknown_tool(self, manager, echo_config):
        await manager.start_process(echo_config)
        with pytest.raises(UnknownToolError):
            await manager.call_tool("fs1", "nope", {})

    @pytest.mark.asyncio
    async def test_timeout_leaves_process_running(self, echo_config):
        manager = StdioProcessManager(request_timeout_ms=50, startup_grace_seconds=5.0)
        try:
            await manager.start_process(echo_config)
            with pytest.raises(RequestTimeoutError):
                await manager.request("fs1", "hang")

            assert manager.pending_count("fs1") == 0
            assert manager.is_running("fs1")
            assert await manager.request("fs1", "echo", {"n": 1}, timeout_ms=5000) == {"n": 1}
        finally:
            await manager.stop_all()

    @pytest.mark.asyncio
    async def test_out_of_order_replies(self, manager, echo_config):
        await manager.start_process(echo_config)

        first = asyncio.create_task(manager.request("fs1", "defer", {"n": 1}, op_id="r1"))
        await asyncio.sleep(0)
        second = asyncio.create_task(manager.request("fs1", "echo", {"n": 2}, op_id="r2"))

        assert await second == {"n": 2}
        assert await first == {"n": 1}
        assert manager.pending_count("fs1") == 0

    @pytest.mark.asyncio
    async def test_malformed_line_between_replies(self, manager, echo_config):
        await manager.start_process(echo_config)

        first = asyncio.create_task(manager.request("fs1", "defer", {"n": 1}))
        await asyncio.sleep(0)
        second = asyncio.create_task(manager.request("fs1", "noisy", {"n": 2}))

        assert await asyncio.gather(first, second) == [{"n": 1}, {"n": 2}]
        assert manager.is_running("fs1")

    @pytest.mark.asyncio
    async def test_kill_fails_all_outstanding(self, manager, echo_config):
        await manager.start_process(echo_config)
        pid = manager.status("fs1")["pid"]

        calls = [asyncio.create_task(manager.request("fs1", "hang")) for _ in range(3)]
        await asyncio.sleep(0.1)
        assert manager.pending_count("fs1") == 3

        os.kill(pid, signal.SIGKILL)
        results = await asyncio.gather(*calls, return_exceptions=True)

        assert len(results) == 3
        assert all(isinstance(r, ProcessExitedError) for r in results)
        assert not manager.is_running("fs1")

        assert await manager.start_process(echo_config) is True
        assert await manager.call_tool("fs1", "echo", {"text": "back"}) == {"text": "back"}

    @pytest.mark.asyncio
    async def test_stop_fails_outstanding(self, manager, echo_config):
        await manager.start_process(echo_config)
        call = asyncio.create_task(manager.request("fs1", "hang"))
        await asyncio.sleep(0.05)

        await manager.stop_process("fs1")
        with pytest.raises(ProcessExitedError):
            await call


class TestCapabilities:
    """Tests for capability retrieval."""

    @pytest.mark.asyncio
    async def test_capabilities_from_server(self, manager, echo_config):
        await manager.start_process(echo_config)
        caps = await manager.get_capabilities("fs1")
        assert caps["name"] == "echo"

    @pytest.mark.asyncio
    async def test_capabilities_fallback(self, manager, echo_config):
        config = echo_config.model_copy(update={"env": {"ECHO_NO_CAPABILITIES": "1"}})
        await manager.start_process(config)
        caps = await manager.get_capabilities("fs1")
        assert caps["name"] == "Echo"
        assert any(tool["name"] == "echo" for tool in caps["tools"])

    @pytest.mark.asyncio
    async def test_capabilities_when_not_running(self, manager):
        with pytest.raises(ProcessExitedError):
            await manager.get_capabilities("fs1")
