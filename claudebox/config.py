"""
Configuration management for the claudebox broker.

Precedence: env vars > .env file > config.yaml > defaults

Config file: <data_dir>/config.yaml
"""

import logging
import os
from pathlib import Path
from typing import Any, Optional

import yaml
from pydantic import AliasChoices, Field, model_validator
from pydantic_settings import BaseSettings

from claudebox.lib.errors import ConfigError

logger = logging.getLogger(__name__)


def _resolve_data_dir() -> Path:
    """Resolve the data directory from env or default, before Settings init."""
    raw = os.environ.get("DATA_DIR", "")
    if raw:
        return Path(raw).expanduser().resolve()
    return Path("./data").resolve()


def _load_yaml_config(data_dir: Path) -> dict[str, Any]:
    """Load config.yaml from the data directory."""
    config_file = data_dir / "config.yaml"
    if not config_file.exists():
        return {}
    try:
        with open(config_file) as f:
            data = yaml.safe_load(f) or {}
        if not isinstance(data, dict):
            logger.warning(f"config.yaml is not a dict, ignoring: {config_file}")
            return {}
        return data
    except (OSError, yaml.YAMLError) as e:
        logger.warning(f"Error loading config.yaml: {e}")
        return {}


def get_config_path(data_dir: Path) -> Path:
    """Get the config.yaml path for a data directory."""
    return data_dir / "config.yaml"


class Settings(BaseSettings):
    """Broker configuration. Precedence: env vars > .env > config.yaml > defaults."""

    # Core settings
    data_dir: Path = Field(
        default=Path("./data"),
        description="Directory holding config.yaml and per-user workspaces",
    )
    port: int = Field(default=3000, description="HTTP server port")
    ws_port: Optional[int] = Field(
        default=None,
        description="Port advertised for WebSocket clients (defaults to port)",
    )
    host: str = Field(default="0.0.0.0", description="Server bind address")

    # Token verification
    jwt_secret: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("jwt_secret", "JWT_SECRET", "SUPABASE_JWT_SECRET"),
        description="Shared secret used to verify bearer tokens",
    )
    jwt_algorithm: str = Field(default="HS256", description="Token signing algorithm")
    jwt_audience: Optional[str] = Field(
        default="authenticated",
        description="Expected token audience; empty disables the audience check",
    )

    # Assistant backend credential injected into every sandbox
    anthropic_api_key: Optional[str] = Field(
        default=None,
        description="API key for the assistant backend (ANTHROPIC_API_KEY)",
    )

    # Sandbox
    sandbox_image: str = Field(default="claude-env", description="Sandbox image")
    sandbox_memory: str = Field(default="1g", description="Container memory limit")
    sandbox_cpus: str = Field(default="1.0", description="Container CPU limit")
    sandbox_pids_limit: int = Field(default=256, description="Container PID limit")
    sandbox_network_enabled: bool = Field(
        default=True,
        description="Allow outbound network from the sandbox (the assistant needs its API)",
    )
    sandbox_command: str = Field(
        default="claude",
        description="Command started inside the sandbox terminal",
    )
    sandbox_stop_timeout: int = Field(
        default=10,
        description="Seconds docker stop waits before killing the container",
    )
    sandbox_kill_timeout: float = Field(
        default=5.0,
        description="Seconds allowed for the force-remove fallback",
    )

    # Connections
    heartbeat_interval: float = Field(
        default=30.0,
        description="WebSocket ping interval; a missed pong closes the socket",
    )
    auth_close_delay: float = Field(
        default=0.25,
        description="Grace delay before closing a socket after failed auth",
    )
    max_message_length: int = Field(
        default=102400,
        description="Maximum input payload length in characters",
    )

    # Whitelisted commands
    command_silence_timeout: float = Field(
        default=0.5,
        description="Stop collecting command output after this much silence",
    )
    command_timeout: float = Field(
        default=5.0,
        description="Hard limit for collecting command output",
    )

    # Security
    cors_origins: str = Field(
        default="*",
        description="Comma-separated list of allowed CORS origins, or * for all",
    )

    # Logging
    log_level: str = Field(default="INFO", description="Log level")
    log_format: str = Field(
        default="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        description="Log format string",
    )

    # Development
    debug: bool = Field(default=False, description="Enable debug mode")
    reload: bool = Field(default=False, description="Enable auto-reload")

    model_config = {
        "env_prefix": "",
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "ignore",
        "populate_by_name": True,
    }

    @model_validator(mode="before")
    @classmethod
    def _inject_yaml_config(cls, data: Any) -> Any:
        """Inject config.yaml values as fallbacks below env vars and .env."""
        if not isinstance(data, dict):
            data = {}

        yaml_config = _load_yaml_config(_resolve_data_dir())

        for key, value in yaml_config.items():
            if key not in data or data[key] is None:
                env_val = os.environ.get(key.upper()) or os.environ.get(key)
                if env_val is None:
                    data[key] = value

        return data

    def missing_secrets(self) -> list[str]:
        """Names of required secrets that are not configured."""
        missing = []
        if not self.jwt_secret:
            missing.append("JWT_SECRET")
        if not self.anthropic_api_key:
            missing.append("ANTHROPIC_API_KEY")
        return missing

    def require_secrets(self) -> None:
        """Fail fast when a startup precondition is absent."""
        missing = self.missing_secrets()
        if missing:
            raise ConfigError(f"Missing required configuration: {', '.join(missing)}")

    @property
    def workspaces_dir(self) -> Path:
        """Root directory for per-user workspaces."""
        return self.data_dir / "workspaces"

    @property
    def advertised_ws_port(self) -> int:
        """Port clients should use for the WebSocket endpoint."""
        return self.ws_port or self.port

    @property
    def cors_origins_list(self) -> list[str]:
        """Parse CORS origins into a list."""
        if self.cors_origins == "*":
            return ["*"]
        return [o.strip() for o in self.cors_origins.split(",") if o.strip()]


# Global settings instance
settings = Settings()


def get_settings() -> Settings:
    """Get the global settings instance."""
    return settings


def reload_settings() -> Settings:
    """Reload settings from environment."""
    global settings
    settings = Settings()
    return settings
