"""Configuration loading for Daybook."""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml


@dataclass
class ClientConfig:
    db_path: str = "~/.daybook/journal.db"


@dataclass
class SyncConfig:
    """Configuration for the sync engine."""

    enabled: bool = True
    server_url: str = "http://localhost:3000"
    chunk_size: int = 50
    debounce_seconds: float = 1.0
    startup_delay_seconds: float = 1.0
    base_interval_seconds: float = 10.0
    max_interval_seconds: float = 300.0  # 5 minutes
    timeout_seconds: float = 30.0
    retry_max_attempts: int = 1


@dataclass
class ServerConfig:
    host: str = "127.0.0.1"
    port: int = 3000
    db_path: str = "~/.daybook/server.db"


@dataclass
class Config:
    client: ClientConfig = field(default_factory=ClientConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    server: ServerConfig = field(default_factory=ServerConfig)


def _get_env(key: str, default: Any = None) -> Any:
    """Get environment variable with DAYBOOK_ prefix."""
    return os.environ.get(f"DAYBOOK_{key}", default)


def _apply_env_overrides(config: Config) -> Config:
    """Apply environment variable overrides to config."""
    # Client overrides
    if db_path := _get_env("CLIENT_DB_PATH"):
        config.client.db_path = db_path

    # Sync overrides
    if sync_enabled := _get_env("SYNC_ENABLED"):
        config.sync.enabled = sync_enabled.lower() in ("true", "1", "yes")
    if server_url := _get_env("SYNC_SERVER_URL"):
        config.sync.server_url = server_url
    if chunk_size := _get_env("SYNC_CHUNK_SIZE"):
        config.sync.chunk_size = int(chunk_size)
    if interval := _get_env("SYNC_INTERVAL"):
        config.sync.base_interval_seconds = float(interval)
    if max_interval := _get_env("SYNC_MAX_INTERVAL"):
        config.sync.max_interval_seconds = float(max_interval)

    # Server overrides
    if host := _get_env("SERVER_HOST"):
        config.server.host = host
    if port := _get_env("SERVER_PORT"):
        config.server.port = int(port)
    if server_db := _get_env("SERVER_DB_PATH"):
        config.server.db_path = server_db

    return config


def load_config(config_path: str | Path | None = None) -> Config:
    """Load configuration from YAML file with environment variable overrides.

    Args:
        config_path: Path to YAML config file. If None, uses default config.

    Returns:
        Loaded Config object.
    """
    config = Config()

    if config_path:
        path = Path(config_path)
        if path.exists():
            with open(path) as f:
                data = yaml.safe_load(f) or {}

            if "client" in data:
                config.client = ClientConfig(
                    db_path=data["client"].get("db_path", config.client.db_path)
                )

            # Parse sync config
            if "sync" in data:
                sync_data = data["sync"]
                config.sync = SyncConfig(
                    enabled=sync_data.get("enabled", config.sync.enabled),
                    server_url=sync_data.get("server_url", config.sync.server_url),
                    chunk_size=sync_data.get("chunk_size", config.sync.chunk_size),
                    debounce_seconds=sync_data.get(
                        "debounce_seconds", config.sync.debounce_seconds
                    ),
                    startup_delay_seconds=sync_data.get(
                        "startup_delay_seconds", config.sync.startup_delay_seconds
                    ),
                    base_interval_seconds=sync_data.get(
                        "base_interval_seconds", config.sync.base_interval_seconds
                    ),
                    max_interval_seconds=sync_data.get(
                        "max_interval_seconds", config.sync.max_interval_seconds
                    ),
                    timeout_seconds=sync_data.get(
                        "timeout_seconds", config.sync.timeout_seconds
                    ),
                    retry_max_attempts=sync_data.get(
                        "retry_max_attempts", config.sync.retry_max_attempts
                    ),
                )

            if "server" in data:
                server_data = data["server"]
                config.server = ServerConfig(
                    host=server_data.get("host", config.server.host),
                    port=server_data.get("port", config.server.port),
                    db_path=server_data.get("db_path", config.server.db_path),
                )

    return _apply_env_overrides(config)
