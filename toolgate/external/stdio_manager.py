"""
Stdio process manager.

Spawns local tool servers and multiplexes concurrent calls over each
process's stdin/stdout. Requests are written as one JSON line each and
replies are correlated by operation id, never by arrival order.

Usage:
    manager = StdioProcessManager(request_timeout_ms=30000)
    await manager.start_process(StdioServerConfig(id="fs1", command="echo-server"))
    result = await manager.call_tool("fs1", "echo", {"text": "ping"})
    await manager.stop_process("fs1")
"""

from __future__ import annotations

import asyncio
import enum
import logging
import os
import shlex
import time
from collections import defaultdict
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Set

from toolgate.errors import ConnectionFailedError, GatewayError, ProcessExitedError, ProtocolError, UnknownToolError
from toolgate.external.pending import PendingOperations, wait_for_reply
from toolgate.external.protocol import (
    LineDecoder,
    decode_line,
    encode_message,
    is_ready_signal,
    new_operation_id,
    parse_reply,
)
from toolgate.models import StdioServerConfig

if TYPE_CHECKING:
    from toolgate.config import GatewaySettings

logger = logging.getLogger(__name__)

SERVER_ID_ENV = "MCP_SERVER_ID"
DEFAULT_REQUEST_TIMEOUT_MS = 30000


class ProcessState(str, enum.Enum):
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"


@dataclass(slots=True)
class ProcessHandle:
    server_id: str
    config: StdioServerConfig
    process: asyncio.subprocess.Process
    pending: PendingOperations
    decoder: LineDecoder = field(default_factory=LineDecoder)
    state: ProcessState = ProcessState.STARTING
    ready: asyncio.Event = field(default_factory=asyncio.Event)
    started_at: float = field(default_factory=time.time)
    last_activity: float = field(default_factory=time.time)
    last_error: Optional[str] = None
    tasks: List[asyncio.Task] = field(default_factory=list)
    writers: Set[asyncio.Task] = field(default_factory=set)

    @property
    def exited(self) -> bool:
        return self.process.returncode is not None

    def touch(self) -> None:
        self.last_activity = time.time()


def build_command(config: StdioServerConfig) -> List[str]:
    return shlex.split(config.command) + list(config.args)


def build_env(config: StdioServerConfig) -> Dict[str, str]:
    env = dict(os.environ)
    env.update(config.env)
    env[SERVER_ID_ENV] = config.id
    return env


def default_capabilities(config: StdioServerConfig, reason: str) -> Dict[str, Any]:
    return {
        "name": config.name or config.id,
        "version": "1.0.0",
        "instructions": f"stdio server capabilities could not be retrieved: {reason}",
        "resources": [
            {"name": "Status", "description": "Server status information", "uriTemplate": "resource://status"},
        ],
        "tools": [
            {
                "name": "echo",
                "description": "Echo the input back to the output",
                "parameters": {
                    "type": "object",
                    "properties": {"text": {"type": "string", "description": "Text to echo"}},
                    "required": ["text"],
                },
            }
        ],
    }


class StdioProcessManager:
    """
    Registry of locally spawned tool server processes.

    One instance is created per application and shared by reference. Each
    server id owns exactly one ProcessHandle; the handle is dropped when the
    process exits or is stopped so a later start re-spawns cleanly.
    """

    def __init__(
        self,
        request_timeout_ms: int = DEFAULT_REQUEST_TIMEOUT_MS,
        startup_grace_seconds: float = 2.0,
        stop_timeout_seconds: float = 5.0,
    ):
        self.request_timeout_ms = request_timeout_ms
        self.startup_grace_seconds = startup_grace_seconds
        self.stop_timeout_seconds = stop_timeout_seconds
        self._handles: Dict[str, ProcessHandle] = {}
        self._start_locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    @classmethod
    def from_settings(cls, settings: "GatewaySettings") -> "StdioProcessManager":
        return cls(
            request_timeout_ms=settings.request_timeout_ms,
            startup_grace_seconds=settings.startup_grace_seconds,
            stop_timeout_seconds=settings.stop_timeout_seconds,
        )

    # =========================
    # Lifecycle
    # =========================

    async def start_process(self, config: StdioServerConfig) -> bool:
        """Spawn the server unless it is already running. Returns success."""
        async with self._start_locks[config.id]:
            existing = self._handles.get(config.id)
            if existing is not None and not existing.exited:
                existing.config = config
                existing.touch()
                return True

            cwd = config.working_directory or os.getcwd()
            if not Path(cwd).is_dir():
                logger.error(f"Working directory does not exist for {config.id}: {cwd}")
                return False

            cmd = build_command(config)
            logger.info(f"Starting stdio server {config.id}: {' '.join(cmd)} (cwd={cwd})")

            try:
                process = await asyncio.create_subprocess_exec(
                    *cmd,
                    stdin=asyncio.subprocess.PIPE,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                    cwd=cwd,
                    env=build_env(config),
                )
            except (OSError, ValueError) as exc:
                logger.error(f"Failed to spawn stdio server {config.id}: {exc}")
                return False

            handle = ProcessHandle(
                server_id=config.id,
                config=config,
                process=process,
                pending=PendingOperations(config.id),
            )
            self._handles[config.id] = handle

            reader = asyncio.create_task(self._read_stdout(handle))
            handle.tasks.append(reader)
            handle.tasks.append(asyncio.create_task(self._log_stderr(handle)))
            watcher = asyncio.create_task(self._watch_exit(handle, reader))
            handle.tasks.append(watcher)

            return await self._wait_until_ready(handle, watcher)

    async def _wait_until_ready(self, handle: ProcessHandle, watcher: asyncio.Task) -> bool:
        ready = asyncio.create_task(handle.ready.wait())
        try:
            await asyncio.wait({ready, watcher}, timeout=self.startup_grace_seconds, return_when=asyncio.FIRST_COMPLETED)
        finally:
            ready.cancel()

        if handle.exited or watcher.done():
            logger.error(f"Stdio server {handle.server_id} exited during startup (code={handle.process.returncode})")
            return False

        handle.state = ProcessState.RUNNING
        logger.info(f"Stdio server {handle.server_id} is ready (pid={handle.process.pid})")
        return True

    def is_running(self, server_id: str) -> bool:
        handle = self._handles.get(server_id)
        return handle is not None and not handle.exited

    def state(self, server_id: str) -> ProcessState:
        handle = self._handles.get(server_id)
        if handle is None or handle.exited:
            return ProcessState.STOPPED
        return handle.state

    async def stop_process(self, server_id: str) -> bool:
        handle = self._handles.pop(server_id, None)
        if handle is None:
            return False
        self._release_lock(server_id)

        failed = handle.pending.fail_all(lambda: ProcessExitedError(server_id, "stopped"))
        if failed:
            logger.info(f"Failed {failed} pending operations for stopped server {server_id}")

        await self._terminate(handle)
        logger.info(f"Stdio server {server_id} stopped")
        return True

    def _release_lock(self, server_id: str) -> None:
        lock = self._start_locks.get(server_id)
        if lock is not None and not lock.locked():
            del self._start_locks[server_id]

    async def stop_all(self) -> None:
        for server_id in sorted(self._handles):
            try:
                await self.stop_process(server_id)
            except Exception as exc:
                logger.error(f"Error stopping {server_id}: {exc}")

    async def reap_idle(self, max_idle_seconds: float) -> List[str]:
        """Stop processes with no traffic for longer than ``max_idle_seconds``."""
        now = time.time()
        idle = [
            server_id
            for server_id, handle in self._handles.items()
            if now - handle.last_activity > max_idle_seconds and not len(handle.pending)
        ]
        for server_id in idle:
            logger.info(f"Terminating inactive stdio server {server_id}")
            await self.stop_process(server_id)
        return idle

    async def _terminate(self, handle: ProcessHandle) -> None:
        process = handle.process
        if process.returncode is None:
            try:
                if process.stdin is not None:
                    process.stdin.close()
                process.terminate()
                await asyncio.wait_for(process.wait(), timeout=self.stop_timeout_seconds)
            except ProcessLookupError:
                pass
            except asyncio.TimeoutError:
                logger.warning(f"Stdio server {handle.server_id} ignored SIGTERM, killing")
                process.kill()
                await process.wait()

        tasks = [*handle.tasks, *handle.writers]
        for task in tasks:
            if not task.done():
                task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    # =========================
    # Requests
    # =========================

    async def request(
        self,
        server_id: str,
        method: str,
        params: Optional[Dict[str, Any]] = None,
        *,
        op_id: Optional[str] = None,
        timeout_ms: Optional[int] = None,
    ) -> Any:
        envelope: Dict[str, Any] = {"id": op_id or new_operation_id(), "method": method}
        if params is not None:
            envelope["params"] = params
        return await self._send(server_id, envelope, timeout_ms)

    async def get_capabilities(self, server_id: str, timeout_ms: Optional[int] = None) -> Any:
        handle = self._require_handle(server_id)
        try:
            return await self._send(server_id, {"id": new_operation_id(), "type": "getCapabilities"}, timeout_ms)
        except ProcessExitedError:
            raise
        except GatewayError as exc:
            logger.warning(f"Capabilities unavailable for {server_id}: {exc.message}")
            return default_capabilities(handle.config, exc.message)

    async def read_resource(self, server_id: str, uri: str, timeout_ms: Optional[int] = None) -> Any:
        envelope = {"id": new_operation_id(), "type": "readResource", "resource": uri}
        return await self._send(server_id, envelope, timeout_ms)

    async def call_tool(
        self,
        server_id: str,
        name: str,
        params: Optional[Dict[str, Any]] = None,
        timeout_ms: Optional[int] = None,
    ) -> Any:
        envelope = {"id": new_operation_id(), "type": "callTool", "tool": name, "parameters": params or {}}
        try:
            return await self._send(server_id, envelope, timeout_ms)
        except ProtocolError as exc:
            if exc.message.startswith("Unknown tool"):
                raise UnknownToolError(server_id, name) from exc
            raise

    async def _send(self, server_id: str, envelope: Dict[str, Any], timeout_ms: Optional[int]) -> Any:
        handle = self._require_handle(server_id)
        method = str(envelope.get("method") or envelope.get("type"))
        op = handle.pending.register(envelope["id"], method, timeout_ms or self.request_timeout_ms)
        handle.touch()

        try:
            self._write(handle, envelope)
        except (OSError, RuntimeError) as exc:
            handle.last_error = str(exc)
            handle.pending.reject(op.op_id, ConnectionFailedError(server_id, f"write failed: {exc}"))
        else:
            writer = asyncio.create_task(self._drain(handle))
            handle.writers.add(writer)
            writer.add_done_callback(handle.writers.discard)

        return await wait_for_reply(handle.pending, op)

    def _require_handle(self, server_id: str) -> ProcessHandle:
        handle = self._handles.get(server_id)
        if handle is None or handle.exited:
            raise ProcessExitedError(server_id, "is not running")
        return handle

    def _write(self, handle: ProcessHandle, message: Dict[str, Any]) -> None:
        stdin = handle.process.stdin
        if stdin is None or stdin.is_closing():
            raise RuntimeError(f"stdin is not available for {handle.server_id}")
        logger.debug(f"Sending to {handle.server_id}: {message}")
        stdin.write(encode_message(message))

    async def _drain(self, handle: ProcessHandle) -> None:
        stdin = handle.process.stdin
        if stdin is None:
            return
        try:
            await stdin.drain()
        except (ConnectionError, OSError) as exc:
            # The exit watcher fails whatever is still pending.
            handle.last_error = str(exc)
            logger.warning(f"Write to {handle.server_id} failed: {exc}")

    # =========================
    # Output handling
    # =========================

    async def _read_stdout(self, handle: ProcessHandle) -> None:
        stdout = handle.process.stdout
        if stdout is None:
            return
        while True:
            chunk = await stdout.read(4096)
            if not chunk:
                break
            handle.touch()
            for line in handle.decoder.feed(chunk):
                self._handle_line(handle, line)

    def _handle_line(self, handle: ProcessHandle, line: bytes) -> None:
        try:
            message = decode_line(line)
        except ProtocolError as exc:
            logger.warning(f"[{handle.server_id}] skipping malformed line: {exc.message}")
            return

        if is_ready_signal(message):
            handle.ready.set()
            return

        reply = parse_reply(message)
        if reply is None:
            logger.debug(f"[{handle.server_id}] unsolicited message: {message}")
            return

        if reply.ok:
            settled = handle.pending.resolve(reply.id, reply.result)
        else:
            settled = handle.pending.reject(
                reply.id,
                ProtocolError(reply.error or "Unknown error", {"server_id": handle.server_id, "operation_id": reply.id}),
            )
        if not settled:
            logger.warning(f"[{handle.server_id}] reply for unknown or expired operation {reply.id}")

    async def _log_stderr(self, handle: ProcessHandle) -> None:
        stderr = handle.process.stderr
        if stderr is None:
            return
        while True:
            line = await stderr.readline()
            if not line:
                break
            handle.touch()
            logger.info(f"[{handle.server_id}] {line.decode('utf-8', errors='replace').rstrip()}")

    async def _watch_exit(self, handle: ProcessHandle, reader: asyncio.Task) -> None:
        # Let the reader consume the final lines before failing what is left.
        try:
            await reader
        except Exception as exc:
            handle.last_error = str(exc)
            logger.error(f"Error reading from {handle.server_id}: {exc}")
        code = await handle.process.wait()

        handle.state = ProcessState.STOPPED
        if self._handles.get(handle.server_id) is handle:
            del self._handles[handle.server_id]
            self._release_lock(handle.server_id)
            logger.warning(f"Stdio server {handle.server_id} exited with code {code}")

        failed = handle.pending.fail_all(lambda: ProcessExitedError(handle.server_id, f"exited with code {code}"))
        if failed:
            logger.info(f"Failed {failed} pending operations after {handle.server_id} exited")

    # =========================
    # Introspection
    # =========================

    def pending_count(self, server_id: str) -> int:
        handle = self._handles.get(server_id)
        return len(handle.pending) if handle else 0

    def status(self, server_id: str) -> Dict[str, Any]:
        handle = self._handles.get(server_id)
        if handle is None or handle.exited:
            return {"server_id": server_id, "state": ProcessState.STOPPED.value, "pid": None, "pending": 0}
        return {
            "server_id": server_id,
            "state": handle.state.value,
            "pid": handle.process.pid,
            "pending": len(handle.pending),
            "started_at": handle.started_at,
            "last_activity": handle.last_activity,
            "last_error": handle.last_error,
        }

    def list_processes(self) -> List[Dict[str, Any]]:
        return [self.status(server_id) for server_id in sorted(self._handles)]
