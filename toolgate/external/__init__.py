"""
External tool server integration.

Provides:
- Local stdio servers with id-correlated request/reply multiplexing
- An adapter for the noisy filesystem server
- MCP client sessions for remote servers
- The server configuration store
"""

from toolgate.external.config import ServerConfigStore, YamlServerConfigStore
from toolgate.external.filesystem_adapter import FilesystemServerAdapter, FilesystemServerManager
from toolgate.external.remote import RemoteServerClient, TransportClientManager
from toolgate.external.stdio_manager import StdioProcessManager

__all__ = [
    "ServerConfigStore",
    "YamlServerConfigStore",
    "FilesystemServerAdapter",
    "FilesystemServerManager",
    "RemoteServerClient",
    "TransportClientManager",
    "StdioProcessManager",
]
