"""
Adapter for the filesystem tool server.

That server interleaves free-form diagnostic text with its JSON replies and
never announces readiness, so it gets its own process handling: readiness
is declared after a fixed delay, and replies are recovered from the raw
output with a brace scanner instead of a line decoder. The canonical file
tools are served locally, confined to the server's working directory.
"""

from __future__ import annotations

import asyncio
import logging
import os
import re
import time
from pathlib import Path
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Tuple

from toolgate.errors import (
    ConnectionFailedError,
    InvalidResourceError,
    ProcessExitedError,
    ProtocolError,
    ValidationFailedError,
)
from toolgate.external.pending import PendingOperations, wait_for_reply
from toolgate.external.protocol import DEFAULT_MAX_LINE_BYTES, encode_message, extract_json_objects, new_operation_id, parse_reply
from toolgate.external.stdio_manager import SERVER_ID_ENV, build_command
from toolgate.models import StdioServerConfig

if TYPE_CHECKING:
    from toolgate.config import GatewaySettings

logger = logging.getLogger(__name__)

FILESYSTEM_CAPABILITIES: Dict[str, Any] = {
    "name": "filesystem",
    "version": "1.0.0",
    "resources": [
        {"name": "Directory", "description": "Directory contents", "uriTemplate": "resource://directory/{path}"},
        {"name": "File", "description": "File contents", "uriTemplate": "resource://file/{path}"},
        {"name": "Status", "description": "Server status information", "uriTemplate": "resource://status"},
    ],
    "tools": [
        {
            "name": "readFile",
            "description": "Read a file from the filesystem",
            "parameters": {
                "type": "object",
                "properties": {
                    "path": {"type": "string", "description": "Path to the file"},
                    "encoding": {"type": "string", "description": "File encoding (default: utf-8)"},
                },
                "required": ["path"],
            },
        },
        {
            "name": "writeFile",
            "description": "Write a file to the filesystem",
            "parameters": {
                "type": "object",
                "properties": {
                    "path": {"type": "string", "description": "Path to the file"},
                    "content": {"type": "string", "description": "Content to write"},
                    "encoding": {"type": "string", "description": "File encoding (default: utf-8)"},
                },
                "required": ["path", "content"],
            },
        },
        {
            "name": "listFiles",
            "description": "List files in a directory",
            "parameters": {
                "type": "object",
                "properties": {"path": {"type": "string", "description": "Path to the directory"}},
                "required": ["path"],
            },
        },
    ],
}

LOCAL_TOOLS = frozenset({"readFile", "writeFile", "listFiles"})

_RESOURCE_RE = re.compile(r"^resource://([^/]+)/?(.*)$")
_FILESYSTEM_SERVER_RE = re.compile(r"server[-_]filesystem")


def parse_resource_uri(uri: str) -> Tuple[str, str]:
    """Split ``resource://<kind>/<path>`` into its kind and path."""
    match = _RESOURCE_RE.match(uri or "")
    if not match:
        raise InvalidResourceError(uri)
    kind, path = match.group(1), match.group(2)
    if kind not in ("status", "directory", "file"):
        raise InvalidResourceError(uri)
    if kind == "file" and not path:
        raise InvalidResourceError(uri)
    return kind, path


def is_filesystem_server(config: StdioServerConfig) -> bool:
    if config.adapter == "filesystem":
        return True
    return any(_FILESYSTEM_SERVER_RE.search(part) for part in [config.command, *config.args])


class FilesystemServerAdapter:
    """One filesystem server process plus its locally served tools."""

    def __init__(
        self,
        config: StdioServerConfig,
        request_timeout_ms: int = 30000,
        ready_delay_seconds: float = 2.0,
        stop_timeout_seconds: float = 2.0,
    ):
        self.config = config
        self.server_id = config.id
        self.root = Path(config.working_directory or os.getcwd()).resolve()
        self.request_timeout_ms = request_timeout_ms
        self.ready_delay_seconds = ready_delay_seconds
        self.stop_timeout_seconds = stop_timeout_seconds

        self.process: Optional[asyncio.subprocess.Process] = None
        self.pending = PendingOperations(config.id)
        self.started_at: Optional[float] = None
        self._buffer = ""
        self._ready = False
        self._tasks: List[asyncio.Task] = []

    # =========================
    # Lifecycle
    # =========================

    def is_running(self) -> bool:
        return self.process is not None and self.process.returncode is None and self._ready

    async def start(self) -> bool:
        if self.process is not None and self.process.returncode is None:
            return True
        if not self.root.is_dir():
            logger.error(f"Working directory does not exist for {self.server_id}: {self.root}")
            return False

        cmd = build_command(self.config)
        if not self.config.args:
            cmd.append(str(self.root))
        env = dict(os.environ)
        env.update(self.config.env)
        env[SERVER_ID_ENV] = self.server_id

        logger.info(f"Starting filesystem server {self.server_id}: {' '.join(cmd)}")
        try:
            self.process = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=str(self.root),
                env=env,
            )
        except (OSError, ValueError) as exc:
            logger.error(f"Failed to spawn filesystem server {self.server_id}: {exc}")
            self.process = None
            return False

        self._buffer = ""
        self._ready = False
        self.started_at = time.time()
        self._tasks = [
            asyncio.create_task(self._read_stdout(self.process)),
            asyncio.create_task(self._log_stderr(self.process)),
        ]

        # The server prints no ready marker; give it a fixed head start.
        try:
            await asyncio.wait_for(self.process.wait(), timeout=self.ready_delay_seconds)
        except asyncio.TimeoutError:
            self._ready = True
            logger.info(f"Filesystem server {self.server_id} is ready (pid={self.process.pid})")
            return True

        logger.error(f"Filesystem server {self.server_id} exited during startup (code={self.process.returncode})")
        await self._cleanup()
        return False

    async def stop(self) -> bool:
        failed = self.pending.fail_all(lambda: ProcessExitedError(self.server_id, "stopped"))
        if failed:
            logger.info(f"Failed {failed} pending operations for stopped server {self.server_id}")

        process = self.process
        if process is not None and process.returncode is None:
            try:
                process.terminate()
                await asyncio.wait_for(process.wait(), timeout=self.stop_timeout_seconds)
            except ProcessLookupError:
                pass
            except asyncio.TimeoutError:
                logger.warning(f"Filesystem server {self.server_id} ignored SIGTERM, killing")
                process.kill()
                await process.wait()

        await self._cleanup()
        logger.info(f"Filesystem server {self.server_id} stopped")
        return True

    async def _cleanup(self) -> None:
        self._ready = False
        self.process = None
        tasks, self._tasks = self._tasks, []
        for task in tasks:
            if not task.done():
                task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    # =========================
    # Operations
    # =========================

    async def get_capabilities(self) -> Dict[str, Any]:
        self._require_running()
        return FILESYSTEM_CAPABILITIES

    async def read_resource(self, uri: str, timeout_ms: Optional[int] = None) -> Any:
        self._require_running()
        kind, path = parse_resource_uri(uri)
        if kind == "status":
            return {
                "status": "running",
                "pid": self.process.pid if self.process else None,
                "started_at": self.started_at,
                "pending": len(self.pending),
            }
        if kind == "directory":
            return await self.call_tool("listFiles", {"path": path or "."}, timeout_ms)
        return await self.call_tool("readFile", {"path": path, "encoding": "utf-8"}, timeout_ms)

    async def call_tool(self, name: str, params: Optional[Dict[str, Any]] = None, timeout_ms: Optional[int] = None) -> Any:
        self._require_running()
        params = params or {}
        if name in LOCAL_TOOLS:
            return await asyncio.to_thread(self._run_local_tool, name, params)
        return await self._forward(name, params, timeout_ms or self.request_timeout_ms)

    def _require_running(self) -> None:
        if not self.is_running():
            raise ProcessExitedError(self.server_id, "is not running")

    async def _forward(self, method: str, params: Dict[str, Any], timeout_ms: int) -> Any:
        op = self.pending.register(new_operation_id(), method, timeout_ms)
        message = {"jsonrpc": "2.0", "id": op.op_id, "method": method, "params": params}
        try:
            stdin = self.process.stdin
            stdin.write(encode_message(message))
            await stdin.drain()
        except (AttributeError, ConnectionError, OSError) as exc:
            self.pending.reject(op.op_id, ConnectionFailedError(self.server_id, f"write failed: {exc}"))
        return await wait_for_reply(self.pending, op)

    # =========================
    # Local tools
    # =========================

    def _resolve(self, path: Any) -> Path:
        if not isinstance(path, str) or not path:
            raise ValidationFailedError("Parameter path must be a non-empty string")
        target = (self.root / path).resolve()
        if target != self.root and self.root not in target.parents:
            raise ValidationFailedError(f"Path is outside the working directory: {path}", {"root": str(self.root)})
        return target

    def _run_local_tool(self, name: str, params: Dict[str, Any]) -> Any:
        target = self._resolve(params.get("path"))
        encoding = params.get("encoding") or "utf-8"
        try:
            if name == "readFile":
                return target.read_text(encoding=encoding)
            if name == "writeFile":
                content = params.get("content")
                if not isinstance(content, str):
                    raise ValidationFailedError("Parameter content must be a string")
                target.write_text(content, encoding=encoding)
                return {"success": True, "path": str(target.relative_to(self.root))}
            return [
                {"name": entry.name, "is_directory": entry.is_dir(), "is_file": entry.is_file()}
                for entry in sorted(target.iterdir(), key=lambda p: p.name)
            ]
        except (OSError, LookupError) as exc:
            raise ProtocolError(f"{name} failed: {exc}", {"server_id": self.server_id, "path": str(target)}) from exc

    # =========================
    # Output handling
    # =========================

    async def _read_stdout(self, process: asyncio.subprocess.Process) -> None:
        stdout = process.stdout
        if stdout is None:
            return
        while True:
            chunk = await stdout.read(4096)
            if not chunk:
                break
            self.feed(chunk.decode("utf-8", errors="replace"))

        if self.process is process:
            code = await process.wait()
            logger.warning(f"Filesystem server {self.server_id} exited with code {code}")
            self._ready = False
            self.pending.fail_all(lambda: ProcessExitedError(self.server_id, f"exited with code {code}"))

    def feed(self, text: str) -> None:
        """Consume raw output and settle every complete reply found in it."""
        objects, self._buffer = extract_json_objects(self._buffer + text, max_pending_chars=DEFAULT_MAX_LINE_BYTES)
        for message in objects:
            reply = parse_reply(message)
            if reply is None or reply.id not in self.pending:
                logger.debug(f"[{self.server_id}] uncorrelated object: {message}")
                continue
            if reply.ok:
                self.pending.resolve(reply.id, reply.result)
            else:
                self.pending.reject(reply.id, ProtocolError(reply.error, {"server_id": self.server_id}))

    async def _log_stderr(self, process: asyncio.subprocess.Process) -> None:
        stderr = process.stderr
        if stderr is None:
            return
        while True:
            line = await stderr.readline()
            if not line:
                break
            logger.info(f"[{self.server_id}] {line.decode('utf-8', errors='replace').rstrip()}")


class FilesystemServerManager:
    """Registry of filesystem adapters keyed by server id."""

    def __init__(self, request_timeout_ms: int = 30000, ready_delay_seconds: float = 2.0, stop_timeout_seconds: float = 2.0):
        self.request_timeout_ms = request_timeout_ms
        self.ready_delay_seconds = ready_delay_seconds
        self.stop_timeout_seconds = stop_timeout_seconds
        self._servers: Dict[str, FilesystemServerAdapter] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

    @classmethod
    def from_settings(cls, settings: "GatewaySettings") -> "FilesystemServerManager":
        return cls(
            request_timeout_ms=settings.request_timeout_ms,
            ready_delay_seconds=settings.filesystem_ready_delay_seconds,
            stop_timeout_seconds=settings.stop_timeout_seconds,
        )

    def get_server(self, server_id: str) -> Optional[FilesystemServerAdapter]:
        return self._servers.get(server_id)

    def get_or_create(self, config: StdioServerConfig) -> FilesystemServerAdapter:
        adapter = self._servers.get(config.id)
        if adapter is None:
            adapter = FilesystemServerAdapter(
                config,
                request_timeout_ms=self.request_timeout_ms,
                ready_delay_seconds=self.ready_delay_seconds,
                stop_timeout_seconds=self.stop_timeout_seconds,
            )
            self._servers[config.id] = adapter
        return adapter

    async def start_server(self, config: StdioServerConfig) -> bool:
        lock = self._locks.setdefault(config.id, asyncio.Lock())
        async with lock:
            adapter = self.get_or_create(config)
            if adapter.is_running():
                return True
            return await adapter.start()

    async def stop_server(self, server_id: str) -> bool:
        adapter = self._servers.pop(server_id, None)
        if adapter is None:
            return False
        self._release_lock(server_id)
        return await adapter.stop()

    def _release_lock(self, server_id: str) -> None:
        lock = self._locks.get(server_id)
        if lock is not None and not lock.locked():
            del self._locks[server_id]

    async def stop_all(self) -> None:
        for server_id in list(self._servers):
            try:
                await self.stop_server(server_id)
            except Exception as exc:
                logger.error(f"Error stopping filesystem server {server_id}: {exc}")

    def list_servers(self) -> List[Dict[str, Any]]:
        return [
            {"server_id": server_id, "running": adapter.is_running(), "pending": len(adapter.pending)}
            for server_id, adapter in sorted(self._servers.items())
        ]
