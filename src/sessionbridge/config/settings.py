"""Configuration management for sessionbridge.

Loads settings from a YAML configuration file with environment variable
overrides. Supports .env files.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path

import yaml
from pydantic import BaseModel, Field, model_validator
from pydantic_settings import BaseSettings

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path("config/sessionbridge.yaml")


class ServerConfig(BaseModel):
    host: str = Field(default="0.0.0.0")
    port: int = Field(default=8775, ge=1, le=65535)
    service_name: str = Field(default="Session-Bridge")


class SessionsConfig(BaseModel):
    """Broker limits. All durations are in seconds."""

    default_timeout: float = Field(default=30.0, gt=0)
    idle_timeout: float = Field(default=1800.0, gt=0)
    reap_interval: float = Field(default=60.0, gt=0)
    buffer_max_chars: int = Field(default=100_000, gt=0)
    buffer_keep_chars: int = Field(default=50_000, gt=0)
    observer_queue_size: int = Field(default=1000, gt=0)

    @model_validator(mode="after")
    def _check_buffer_bounds(self) -> SessionsConfig:
        if self.buffer_keep_chars >= self.buffer_max_chars:
            raise ValueError("buffer_keep_chars must be smaller than buffer_max_chars")
        return self


class LocalShellConfig(BaseModel):
    shell_command: str = Field(default="/bin/bash")
    rows: int = Field(default=24, gt=0)
    cols: int = Field(default=120, gt=0)


class RemoteEngineConfig(BaseModel):
    engine_command: str = Field(default="pwsh")
    engine_args: list[str] = Field(
        default_factory=lambda: ["-NoLogo", "-NoProfile", "-NonInteractive", "-Command", "-"],
    )
    dispose_timeout: float = Field(default=5.0, gt=0)


class LoggingConfig(BaseModel):
    level: str = Field(default="INFO")
    format: str = Field(
        default="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    file: str | None = Field(default=None)


class Settings(BaseSettings):
    """Root configuration for the sessionbridge service.

    Loads from YAML file and supports environment variable overrides.
    Reads .env files automatically.
    """

    model_config = {
        "env_prefix": "SESSIONBRIDGE_",
        "env_nested_delimiter": "__",
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "ignore",
    }

    server: ServerConfig = Field(default_factory=ServerConfig)
    sessions: SessionsConfig = Field(default_factory=SessionsConfig)
    local: LocalShellConfig = Field(default_factory=LocalShellConfig)
    remote: RemoteEngineConfig = Field(default_factory=RemoteEngineConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)


def load_settings(config_path: Path | str | None = None) -> Settings:
    """Load settings from YAML + .env + environment variables.

    Priority: YAML file > env vars > .env file > defaults. A bare ``PORT``
    variable fills in the server port when the YAML file leaves it unset.
    """
    path = Path(config_path) if config_path else DEFAULT_CONFIG_PATH

    yaml_data = {}
    if path.exists():
        with open(path) as f:
            yaml_data = yaml.safe_load(f) or {}
        logger.info("Loaded configuration from %s", path)
    else:
        logger.warning("Config file %s not found, using defaults + env vars", path)

    _apply_env_overrides(yaml_data)

    return Settings(**yaml_data)


def _apply_env_overrides(yaml_data: dict) -> None:
    """Apply environment variable overrides for non-prefixed vars."""
    # PORT is what most process managers and PaaS runtimes set
    port = os.environ.get("PORT", "")
    if not port:
        return
    if "server" not in yaml_data or yaml_data["server"] is None:
        yaml_data["server"] = {}
    if not yaml_data["server"].get("port"):
        yaml_data["server"]["port"] = int(port)
