"""
Server configuration store.

Holds the records the gateway resolves server ids against. Records are
loaded from a YAML file shaped like::

    servers:
      fs1:
        command: python echo_server.py
        working_directory: /srv/tools
        env:
          API_TOKEN: ${API_TOKEN}
      docs:
        url: https://tools.example.com/sse
        protocol: sse
"""

from __future__ import annotations

import logging
import os
import re
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Union

import yaml
from pydantic import ValidationError

from toolgate.errors import ValidationFailedError
from toolgate.models import RemoteServerConfig, ServerConfig, StdioServerConfig, parse_server_config

logger = logging.getLogger(__name__)

_ENV_PATTERN = re.compile(r"\$\{([^}]+)\}")


def substitute_env_vars(obj: Any) -> Any:
    """Recursively substitute ${VAR} patterns with environment values."""
    if isinstance(obj, str):

        def replace(match: re.Match) -> str:
            var_name = match.group(1)
            value = os.environ.get(var_name, "")
            if not value:
                logger.warning(f"Environment variable not set: {var_name}")
            return value

        return _ENV_PATTERN.sub(replace, obj)

    elif isinstance(obj, dict):
        return {k: substitute_env_vars(v) for k, v in obj.items()}

    elif isinstance(obj, list):
        return [substitute_env_vars(item) for item in obj]

    return obj


class ServerConfigStore:
    """In-memory map of server id to configuration record."""

    def __init__(self, servers: Optional[Iterable[ServerConfig]] = None):
        self._servers: Dict[str, ServerConfig] = {}
        for config in servers or []:
            self.add(config)

    def get(self, server_id: str) -> Optional[ServerConfig]:
        return self._servers.get(server_id)

    def add(self, config: Union[ServerConfig, Dict[str, Any]]) -> ServerConfig:
        if isinstance(config, dict):
            try:
                config = parse_server_config(config)
            except ValidationError as exc:
                raise ValidationFailedError(f"Invalid server config: {exc.error_count()} error(s)", {"errors": exc.errors()}) from exc
        self._servers[config.id] = config
        return config

    def remove(self, server_id: str) -> bool:
        return self._servers.pop(server_id, None) is not None

    def list(self) -> List[ServerConfig]:
        return [self._servers[server_id] for server_id in sorted(self._servers)]

    def __len__(self) -> int:
        return len(self._servers)


class YamlServerConfigStore(ServerConfigStore):
    """Store backed by a YAML file with ``${VAR}`` substitution."""

    def __init__(self, config_path: Union[str, Path]):
        super().__init__()
        self.config_path = Path(config_path)

    def load(self) -> Dict[str, Any]:
        """
        Load records from the YAML file, replacing what is in memory.

        Invalid records are logged and skipped so one bad entry does not
        take the rest down.

        Returns:
            Summary with ``loaded`` and ``failed`` server ids
        """
        results: Dict[str, Any] = {"loaded": [], "failed": []}
        self._servers = {}

        if not self.config_path.exists():
            logger.warning(f"Config file not found: {self.config_path}")
            return results

        logger.info(f"Loading server config from {self.config_path}")
        with open(self.config_path, "r") as f:
            raw = yaml.safe_load(f) or {}

        servers = substitute_env_vars(raw.get("servers") or {})
        for server_id, server_def in servers.items():
            if not server_def:
                continue
            try:
                self.add({**server_def, "id": str(server_id)})
                results["loaded"].append(server_id)
            except ValidationFailedError as e:
                logger.error(f"Failed to load server {server_id}: {e.message}")
                results["failed"].append({"server_id": server_id, "error": e.message})

        logger.info(f"Server config loaded: {len(results['loaded'])} loaded, {len(results['failed'])} failed")
        return results

    def save(self) -> None:
        servers: Dict[str, Any] = {}
        for config in self.list():
            record = config.model_dump(exclude={"id"}, exclude_defaults=True)
            if isinstance(config, RemoteServerConfig):
                record["url"] = config.url
            elif isinstance(config, StdioServerConfig):
                record["command"] = config.command
            servers[config.id] = record

        self.config_path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.config_path, "w") as f:
            yaml.safe_dump({"servers": servers}, f, default_flow_style=False, sort_keys=False)
        logger.info(f"Server config saved to {self.config_path}")
