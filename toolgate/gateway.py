"""
Gateway facade.

Single entry point the HTTP layer talks to. Resolves server ids against the
config store, routes dispatches to the right transport, and owns the
session/agent workflow.
"""

from __future__ import annotations

import copy
import logging
from typing import Any, Dict, List, Mapping, Optional

from toolgate.agent.agent import CadCamAgent
from toolgate.agent.context import ContextProcessor
from toolgate.config import GatewaySettings
from toolgate.errors import ConfigNotFoundError, ConnectionFailedError, ServerDisabledError
from toolgate.external.config import ServerConfigStore, YamlServerConfigStore
from toolgate.external.filesystem_adapter import FilesystemServerAdapter, FilesystemServerManager, is_filesystem_server
from toolgate.external.remote import TransportClientManager
from toolgate.external.stdio_manager import StdioProcessManager
from toolgate.models import (
    ActionRequest,
    CandidateAction,
    DispatchRequest,
    RawApplicationContext,
    RemoteServerConfig,
    ServerConfig,
    StdioServerConfig,
)
from toolgate.sessions import SessionManager

logger = logging.getLogger(__name__)


def deep_merge(base: Mapping[str, Any], delta: Mapping[str, Any]) -> Dict[str, Any]:
    """Merge ``delta`` into a copy of ``base``; nested dicts merge, everything else is replaced."""
    merged = copy.deepcopy(dict(base))
    for key, value in delta.items():
        if isinstance(value, Mapping) and isinstance(merged.get(key), Mapping):
            merged[key] = deep_merge(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


class Gateway:
    def __init__(
        self,
        settings: GatewaySettings,
        config_store: Optional[ServerConfigStore] = None,
        stdio: Optional[StdioProcessManager] = None,
        filesystem: Optional[FilesystemServerManager] = None,
        remote: Optional[TransportClientManager] = None,
        sessions: Optional[SessionManager] = None,
        agent: Optional[CadCamAgent] = None,
        context_processor: Optional[ContextProcessor] = None,
    ):
        self.settings = settings
        if config_store is None:
            config_store = YamlServerConfigStore(settings.servers_config_file)
            config_store.load()
        self.config_store = config_store
        self.stdio = stdio or StdioProcessManager.from_settings(settings)
        self.filesystem = filesystem or FilesystemServerManager.from_settings(settings)
        self.remote = remote or TransportClientManager(request_timeout_ms=settings.request_timeout_ms)
        self.sessions = sessions or SessionManager(history_limit=settings.session_history_limit)
        self.agent = agent or CadCamAgent()
        self.context_processor = context_processor or ContextProcessor(self.agent.action_handler)

    # =========================
    # Servers
    # =========================

    def resolve_server(self, server_id: str) -> ServerConfig:
        config = self.config_store.get(server_id)
        if config is None:
            raise ConfigNotFoundError(server_id)
        return config

    def _resolve_enabled(self, server_id: str) -> ServerConfig:
        config = self.resolve_server(server_id)
        if not config.enabled:
            raise ServerDisabledError(server_id)
        return config

    async def _ensure_stdio(self, config: StdioServerConfig) -> None:
        if self.stdio.is_running(config.id):
            return
        if not await self.stdio.start_process(config):
            raise ConnectionFailedError(config.id, "process failed to start")

    async def _ensure_filesystem(self, config: StdioServerConfig) -> FilesystemServerAdapter:
        if not await self.filesystem.start_server(config):
            raise ConnectionFailedError(config.id, "filesystem server failed to start")
        return self.filesystem.get_server(config.id)

    async def dispatch(self, server_id: str, request: DispatchRequest) -> Any:
        config = self._resolve_enabled(server_id)
        target = request.resource or request.tool
        logger.info(f"Dispatching {'resource' if request.resource else 'tool'} {target} to {server_id}")

        if isinstance(config, RemoteServerConfig):
            if request.resource:
                return await self.remote.read_resource(config, request.resource, request.timeout_ms)
            return await self.remote.call_tool(config, request.tool, request.params, request.timeout_ms)

        if is_filesystem_server(config):
            adapter = await self._ensure_filesystem(config)
            if request.resource:
                return await adapter.read_resource(request.resource, request.timeout_ms)
            return await adapter.call_tool(request.tool, request.params, request.timeout_ms)

        await self._ensure_stdio(config)
        if request.resource:
            return await self.stdio.read_resource(server_id, request.resource, request.timeout_ms)
        return await self.stdio.call_tool(server_id, request.tool, request.params, request.timeout_ms)

    async def server_capabilities(self, server_id: str) -> Any:
        config = self._resolve_enabled(server_id)
        if isinstance(config, RemoteServerConfig):
            return await self.remote.get_capabilities(config)
        if is_filesystem_server(config):
            adapter = await self._ensure_filesystem(config)
            return await adapter.get_capabilities()
        await self._ensure_stdio(config)
        return await self.stdio.get_capabilities(server_id)

    def server_status(self, server_id: str) -> Dict[str, Any]:
        config = self.resolve_server(server_id)
        status: Dict[str, Any] = {
            "server_id": server_id,
            "name": config.name or server_id,
            "transport": config.transport,
            "enabled": config.enabled,
        }
        if isinstance(config, RemoteServerConfig):
            status["running"] = self.remote.get_server(server_id) is not None
        elif is_filesystem_server(config):
            adapter = self.filesystem.get_server(server_id)
            status["running"] = adapter is not None and adapter.is_running()
            status["pending"] = len(adapter.pending) if adapter else 0
        else:
            process = self.stdio.status(server_id)
            status["running"] = process["state"] != "stopped"
            status["process"] = process
        return status

    async def stop_server(self, server_id: str) -> bool:
        config = self.resolve_server(server_id)
        if isinstance(config, RemoteServerConfig):
            return await self.remote.disconnect_server(server_id)
        if is_filesystem_server(config):
            return await self.filesystem.stop_server(server_id)
        return await self.stdio.stop_process(server_id)

    def list_servers(self) -> List[Dict[str, Any]]:
        return [self.server_status(config.id) for config in self.config_store.list()]

    async def reap_idle(self) -> List[str]:
        limit = self.settings.idle_process_timeout_seconds
        if limit <= 0:
            return []
        return await self.stdio.reap_idle(limit)

    # =========================
    # Sessions and actions
    # =========================

    def session(self, session_id: Optional[str] = None) -> Dict[str, Any]:
        if session_id:
            session, created = self.sessions.get_or_create_session(session_id)
        else:
            session, created = self.sessions.create_session(), True
        return {"session_id": session.id, "created": created}

    async def process_context(self, raw: RawApplicationContext) -> Dict[str, Any]:
        if raw.session_id:
            session, _ = self.sessions.get_or_create_session(raw.session_id)
        else:
            session = self.sessions.create_session()

        async with session.lock:
            context = self.context_processor.process(raw, session.history)
            session.update_context(context)
        return {"session_id": session.id, "context": context}

    def available_actions(self, session_id: str) -> List[CandidateAction]:
        session = self.sessions.require_session(session_id)
        return self.agent.get_available_actions(session)

    async def execute_action(self, request: ActionRequest) -> Dict[str, Any]:
        session = self.sessions.require_session(request.session_id)

        async with session.lock:
            result = self.agent.execute_action(request, session)
            session.record_action(request.action, request.parameters, result)
            if result.success and result.updated_context:
                session.update_context(deep_merge(session.context or {}, result.updated_context))
                logger.info(f"Context updated after action: {request.action}")

        if not result.success:
            return {"success": False, "error": result.message}
        return {
            "success": True,
            "result": {
                "message": result.message,
                "artifacts": [artifact.model_dump() for artifact in result.artifacts],
            },
        }

    async def shutdown(self) -> None:
        logger.info("Shutting down gateway")
        await self.stdio.stop_all()
        await self.filesystem.stop_all()
        await self.remote.shutdown_all()
