from __future__ import annotations

from functools import lru_cache
from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict


class GatewaySettings(BaseSettings):
    data_dir: str = "./toolgate_data"
    servers_config_path: str | None = None
    log_level: str = "info"
    cors_origins: str = "*"
    request_timeout_ms: int = 30000
    startup_grace_seconds: float = 2.0
    filesystem_ready_delay_seconds: float = 2.0
    stop_timeout_seconds: float = 5.0
    idle_process_timeout_seconds: int = 30 * 60
    idle_check_interval_seconds: int = 5 * 60
    session_history_limit: int = 50
    host: str = "0.0.0.0"
    port: int = 8000

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    @property
    def servers_config_file(self) -> Path:
        if self.servers_config_path:
            return Path(self.servers_config_path)
        return Path(self.data_dir) / "config" / "servers.yaml"

    @property
    def allowed_origins(self) -> list[str]:
        return [item.strip() for item in self.cors_origins.split(",") if item.strip()] or ["*"]


@lru_cache(maxsize=1)
def get_settings() -> GatewaySettings:
    return GatewaySettings()
