"""Settings and configuration management for CrateFlow."""

import json
from functools import lru_cache
from typing import Any, Dict, Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="CRATEFLOW_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # State database configuration
    state_db: str = Field(
        default="./crateflow.db",
        description="Path to SQLite state database",
    )

    # Container engine configuration
    docker_host: str | None = Field(
        default=None,
        description="Explicit engine URL, takes precedence over socket and fallback",
    )

    docker_socket_path: str = Field(
        default="/var/run/docker.sock",
        description="Local engine socket tried first at startup",
    )

    docker_fallback_url: str = Field(
        default="tcp://127.0.0.1:2375",
        description="Network engine endpoint used when the local socket is absent",
    )

    engine_timeout_s: float = Field(
        default=30.0,
        description="Deadline in seconds for a single engine call",
    )

    stop_timeout_s: int = Field(
        default=10,
        description="Grace period in seconds for stop and restart before the engine kills",
    )

    ownership_label: str = Field(
        default="nexus-crate-flow",
        description="Label marking engine objects as managed by this node",
    )

    containers_root: str = Field(
        default="/app/containers",
        description="Folder prefix recorded for auto-imported containers",
    )

    default_owner_id: str = Field(
        default="system",
        description="Owner assigned to auto-imported containers without an owner label",
    )

    # Log lifecycle configuration
    log_dir: str = Field(
        default="./logs",
        description="Root directory of per-container log files",
    )

    log_rotate_max_bytes: int = Field(
        default=10 * 1024 * 1024,
        description="Size in bytes above which a category log file is rotated",
    )

    log_retention_days: int = Field(
        default=30,
        description="Days to keep rotated log files",
    )

    log_watch_interval_s: float = Field(
        default=1.0,
        description="Polling interval in seconds for out-of-process log growth",
    )

    log_replay_lines: int = Field(
        default=50,
        description="Number of recent entries replayed to a new subscriber",
    )

    channel_queue_size: int = Field(
        default=1000,
        description="Outbound events buffered per channel connection before it is dropped",
    )

    # Reconciler schedules
    sync_interval_s: float = Field(
        default=300,
        description="Interval in seconds between registry sync ticks",
    )

    health_interval_s: float = Field(
        default=120,
        description="Interval in seconds between health monitor ticks",
    )

    orphan_interval_s: float = Field(
        default=3600,
        description="Interval in seconds between orphan cleanup ticks",
    )

    channel_cleanup_interval_s: float = Field(
        default=600,
        description="Interval in seconds between channel connection sweeps",
    )

    log_rotation_interval_s: float = Field(
        default=86400,
        description="Interval in seconds between log rotation passes",
    )

    log_cleanup_interval_s: float = Field(
        default=86400,
        description="Interval in seconds between rotated log retention passes",
    )

    startup_script_delay_s: float = Field(
        default=2.0,
        description="Delay in seconds before running the startup script after a restart",
    )

    drain_grace_s: int = Field(
        default=30,
        description="Grace period in seconds for draining background tasks during shutdown",
    )

    # Channel configuration
    ws_path: str = Field(
        default="/ws",
        description="Path of the real-time channel WebSocket endpoint",
    )

    default_working_dir: str = Field(
        default="/app",
        description="Working directory for channel commands that do not name one",
    )

    admin_role: str = Field(
        default="admin",
        description="Role allowed to access every container",
    )

    # Logging configuration
    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)",
    )

    log_format: str = Field(
        default="json",
        description="Log format (json or text)",
    )

    # Server configuration
    host: str = Field(
        default="0.0.0.0",
        description="Server host to bind to",
    )

    port: int = Field(
        default=8000,
        description="Server port to bind to",
    )

    path: str = Field(
        default="/mcp",
        description="Path of the MCP control endpoint",
    )

    # Identity configuration
    auth_mode: Literal["jwt", "static"] = Field(
        default="jwt",
        description="Token verification mode (jwt or static)",
    )

    jwt_secret: str | None = Field(
        default=None,
        description="Shared secret or public key used to verify access tokens",
    )

    jwt_algorithm: str = Field(
        default="HS256",
        description="Signature algorithm of access tokens",
    )

    jwt_issuer: str | None = Field(
        default=None,
        description="Expected token issuer",
    )

    jwt_audience: str | None = Field(
        default=None,
        description="Expected token audience",
    )

    static_tokens: str = Field(
        default="{}",
        description="JSON map of token to claims for static verification",
    )

    @property
    def static_tokens_map(self) -> Dict[str, Dict[str, Any]]:
        """Parse static tokens into a dictionary."""
        if not self.static_tokens.strip():
            return {}
        tokens = json.loads(self.static_tokens)
        if not isinstance(tokens, dict):
            raise ValueError("CRATEFLOW_STATIC_TOKENS must be a JSON object")
        return tokens


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
