"""
Shared pytest fixtures for toolgate tests.
"""

from __future__ import annotations

import shlex
import sys
from pathlib import Path
from typing import Any, Dict

import pytest

# Ensure the project root is in the Python path
PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from toolgate.config import GatewaySettings
from toolgate.external.config import ServerConfigStore
from toolgate.models import StdioServerConfig

FIXTURES_DIR = Path(__file__).parent / "fixtures"
ECHO_SERVER = FIXTURES_DIR / "echo_server.py"
FILESYSTEM_SERVER = FIXTURES_DIR / "server_filesystem.py"


def python_command(script: Path) -> str:
    return shlex.join([sys.executable, str(script)])


# ==================== Settings Fixtures ====================


@pytest.fixture
def settings(tmp_path: Path) -> GatewaySettings:
    """Settings with short timings and an isolated data directory."""
    return GatewaySettings(
        data_dir=str(tmp_path / "data"),
        request_timeout_ms=5000,
        startup_grace_seconds=5.0,
        filesystem_ready_delay_seconds=0.2,
        stop_timeout_seconds=2.0,
        idle_process_timeout_seconds=0,
    )


# ==================== Server Config Fixtures ====================


@pytest.fixture
def echo_config(tmp_path: Path) -> StdioServerConfig:
    return StdioServerConfig(
        id="fs1",
        name="Echo",
        command=python_command(ECHO_SERVER),
        working_directory=str(tmp_path),
    )


@pytest.fixture
def filesystem_config(tmp_path: Path) -> StdioServerConfig:
    workdir = tmp_path / "files"
    workdir.mkdir()
    return StdioServerConfig(
        id="files",
        name="Files",
        command=python_command(FILESYSTEM_SERVER),
        working_directory=str(workdir),
    )


@pytest.fixture
def remote_config_data() -> Dict[str, Any]:
    return {"id": "docs", "url": "http://127.0.0.1:9/sse", "protocol": "sse"}


@pytest.fixture
def config_store(echo_config, filesystem_config, remote_config_data) -> ServerConfigStore:
    store = ServerConfigStore([echo_config, filesystem_config])
    store.add(remote_config_data)
    store.add({"id": "off", "command": "true", "enabled": False})
    return store


# ==================== Context Fixtures ====================


@pytest.fixture
def cad_context_payload() -> Dict[str, Any]:
    """Raw application context as a client would post it."""
    return {
        "mode": "cad",
        "activeView": "3d",
        "selectedElements": [
            {"id": "face_1", "type": "face"},
            {"id": "test_cube_1", "type": "cube", "properties": {"color": "red"}},
        ],
        "activeTool": {"name": "select"},
        "currentProject": {"name": "Bracket", "fileType": "step"},
    }
