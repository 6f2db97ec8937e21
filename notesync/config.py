"""Configuration loading for notesync."""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml


@dataclass
class ServerConfig:
    host: str = "0.0.0.0"
    port: int = 3001


@dataclass
class StorageConfig:
    """Where the primary database and the mirror directory live."""

    data_dir: str = "~/.notesync/data"
    db_filename: str = "notes.db"
    mirror_dirname: str = "notes_files"

    @property
    def db_path(self) -> Path:
        return Path(self.data_dir).expanduser() / self.db_filename

    @property
    def mirror_path(self) -> Path:
        return Path(self.data_dir).expanduser() / self.mirror_dirname


@dataclass
class RemoteConfig:
    """Configuration for the optional cloud replica."""

    enabled: bool = False
    url: str = ""
    token: str | None = None
    timeout_seconds: float = 5.0

    @property
    def active(self) -> bool:
        """The replica is used only when enabled and a URL is set."""
        return self.enabled and bool(self.url)


@dataclass
class AuthConfig:
    """Static bearer tokens mapped to owner ids."""

    tokens: dict[str, str] = field(default_factory=dict)


@dataclass
class ClientConfig:
    """Configuration for the device-side sync client."""

    server_url: str = "http://localhost:3001"
    token: str = ""
    db_path: str = "~/.notesync/client/notes.db"
    state_path: str = "~/.notesync/client/sync_state.json"
    sync_interval_minutes: int = 5
    batch_size: int = 100
    max_retries: int = 3
    timeout_seconds: float = 30.0


@dataclass
class Config:
    server: ServerConfig = field(default_factory=ServerConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    remote: RemoteConfig = field(default_factory=RemoteConfig)
    auth: AuthConfig = field(default_factory=AuthConfig)
    client: ClientConfig = field(default_factory=ClientConfig)


def _get_env(key: str, default: Any = None) -> Any:
    """Get environment variable with NOTESYNC_ prefix."""
    return os.environ.get(f"NOTESYNC_{key}", default)


def _is_true(value: str) -> bool:
    return value.lower() in ("true", "1", "yes")


def _apply_env_overrides(config: Config) -> Config:
    """Apply environment variable overrides to config."""
    # Server overrides
    if host := _get_env("HOST"):
        config.server.host = host
    if port := _get_env("PORT"):
        config.server.port = int(port)

    # Storage overrides
    if data_dir := _get_env("DATA_DIR"):
        config.storage.data_dir = data_dir

    # Remote replica overrides
    if remote_enabled := _get_env("REMOTE_ENABLED"):
        config.remote.enabled = _is_true(remote_enabled)
    if remote_url := _get_env("REMOTE_URL"):
        config.remote.url = remote_url
    if remote_token := _get_env("REMOTE_TOKEN"):
        config.remote.token = remote_token
    if remote_timeout := _get_env("REMOTE_TIMEOUT"):
        config.remote.timeout_seconds = float(remote_timeout)

    # Client overrides
    if server_url := _get_env("CLIENT_SERVER_URL"):
        config.client.server_url = server_url
    if client_token := _get_env("CLIENT_TOKEN"):
        config.client.token = client_token
    if interval := _get_env("CLIENT_INTERVAL"):
        config.client.sync_interval_minutes = int(interval)

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

            if "server" in data:
                server_data = data["server"]
                config.server = ServerConfig(
                    host=server_data.get("host", config.server.host),
                    port=server_data.get("port", config.server.port),
                )

            if "storage" in data:
                storage_data = data["storage"]
                config.storage = StorageConfig(
                    data_dir=storage_data.get("data_dir", config.storage.data_dir),
                    db_filename=storage_data.get(
                        "db_filename", config.storage.db_filename
                    ),
                    mirror_dirname=storage_data.get(
                        "mirror_dirname", config.storage.mirror_dirname
                    ),
                )

            if "remote" in data:
                remote_data = data["remote"]
                config.remote = RemoteConfig(
                    enabled=remote_data.get("enabled", config.remote.enabled),
                    url=remote_data.get("url", config.remote.url),
                    token=remote_data.get("token"),
                    timeout_seconds=remote_data.get(
                        "timeout_seconds", config.remote.timeout_seconds
                    ),
                )

            if "auth" in data:
                auth_data = data["auth"] or {}
                tokens = auth_data.get("tokens") or {}
                config.auth = AuthConfig(
                    tokens={str(token): str(owner) for token, owner in tokens.items()}
                )

            if "client" in data:
                client_data = data["client"]
                config.client = ClientConfig(
                    server_url=client_data.get("server_url", config.client.server_url),
                    token=client_data.get("token", config.client.token),
                    db_path=client_data.get("db_path", config.client.db_path),
                    state_path=client_data.get("state_path", config.client.state_path),
                    sync_interval_minutes=client_data.get(
                        "sync_interval_minutes", config.client.sync_interval_minutes
                    ),
                    batch_size=client_data.get("batch_size", config.client.batch_size),
                    max_retries=client_data.get(
                        "max_retries", config.client.max_retries
                    ),
                    timeout_seconds=client_data.get(
                        "timeout_seconds", config.client.timeout_seconds
                    ),
                )

    # Apply environment variable overrides
    config = _apply_env_overrides(config)

    return config
