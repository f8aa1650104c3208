"""Configuration management for termrelay.

Loads settings from a YAML configuration file with environment variable
overrides (``TERMRELAY_`` prefix, ``__`` for nested sections). Supports
.env files.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Literal

import yaml
from pydantic import BaseModel, Field, SecretStr, field_validator
from pydantic_settings import BaseSettings

from termrelay.domain.models import ShellKind

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path("config/termrelay.yaml")

# Matches the tail of typical bash/zsh/sh/fish/PowerShell/cmd prompts
DEFAULT_PROMPT_PATTERN = r"(?:[$#%>❯]|PS [^\r\n]*>)\s?$"


class ServerConfig(BaseModel):
    host: str = Field(default="127.0.0.1")
    port: int = Field(default=8765, ge=1, le=65535)
    cors_origins: list[str] = Field(default_factory=list)


class ShellConfig(BaseModel):
    default_kind: ShellKind | None = Field(
        default=None, description="Preferred shell; None picks the host default"
    )
    working_directory: str | None = Field(default=None)
    fallback_to_default: bool = Field(
        default=True, description="Use the host default when a requested shell is missing"
    )
    terminate_grace_period: float = Field(default=2.0, gt=0)


class StreamingConfig(BaseModel):
    flush_interval: float = Field(default=0.016, gt=0, description="Seconds before a batch is flushed")
    max_batch_bytes: int = Field(default=16384, gt=0)
    window_size: int = Field(default=1024, gt=0, description="Chunks retained in memory per session")
    subscriber_queue_size: int = Field(default=256, gt=0)
    redaction_hold: float = Field(
        default=0.1, ge=0, description="Seconds an unterminated line may be held for redaction"
    )
    max_hold_chars: int = Field(default=4096, gt=0)


class SessionsConfig(BaseModel):
    max_sessions: int = Field(default=64, gt=0)
    idle_timeout: float | None = Field(default=None, gt=0, description="Seconds; None disables")
    restore_on_startup: bool = Field(default=True)
    health_check_interval: float = Field(default=5.0, gt=0)
    prompt_pattern: str | None = Field(
        default=DEFAULT_PROMPT_PATTERN,
        description="Regex matched against output tails to mark commands complete",
    )


class StorageConfig(BaseModel):
    backend: Literal["memory", "sqlite"] = Field(default="memory")
    sqlite_path: str = Field(default="~/.termrelay/sessions.db")
    max_chunks_per_session: int = Field(default=100_000, gt=0)
    suppress_redacted: bool = Field(
        default=True, description="Store redacted chunks without content"
    )


class RedactionPatternConfig(BaseModel):
    name: str
    pattern: str
    keep_prefix: bool = Field(default=False)


class SecurityConfig(BaseModel):
    redaction_enabled: bool = Field(default=True)
    marker: str = Field(default="[REDACTED]", min_length=1)
    extra_patterns: list[RedactionPatternConfig] = Field(default_factory=list)


class AuthConfig(BaseModel):
    tokens: dict[str, SecretStr] = Field(
        default_factory=dict, description="user id -> access token; empty allows everyone"
    )


class ClientConfig(BaseModel):
    base_url: str = Field(default="http://127.0.0.1:8765")
    token: SecretStr = Field(default=SecretStr(""))
    timeout: float = Field(default=10.0, gt=0)
    reconnect_initial_delay: float = Field(default=0.5, gt=0)
    reconnect_max_delay: float = Field(default=30.0, gt=0)
    reconnect_max_attempts: int | None = Field(default=None, gt=0)


class LoggingConfig(BaseModel):
    level: str = Field(default="INFO")
    format: str = Field(
        default="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    file: str | None = Field(default=None)

    @field_validator("level")
    @classmethod
    def _known_level(cls, value: str) -> str:
        if value.upper() not in logging.getLevelNamesMapping():
            raise ValueError(f"Unknown log level: {value}")
        return value.upper()


class Settings(BaseSettings):
    """Root configuration for termrelay.

    Loads from YAML file and supports environment variable overrides.
    Reads .env files automatically.
    """

    model_config = {
        "env_prefix": "TERMRELAY_",
        "env_nested_delimiter": "__",
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "ignore",
    }

    server: ServerConfig = Field(default_factory=ServerConfig)
    shell: ShellConfig = Field(default_factory=ShellConfig)
    streaming: StreamingConfig = Field(default_factory=StreamingConfig)
    sessions: SessionsConfig = Field(default_factory=SessionsConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    security: SecurityConfig = Field(default_factory=SecurityConfig)
    auth: AuthConfig = Field(default_factory=AuthConfig)
    client: ClientConfig = Field(default_factory=ClientConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)


def load_settings(config_path: Path | str | None = None) -> Settings:
    """Load settings from YAML + .env + environment variables.

    Priority: YAML file > env vars > .env file > defaults.
    ``TERMRELAY_TOKEN`` is a shortcut that sets one token for both the
    server and the client.
    """
    path = Path(config_path) if config_path else DEFAULT_CONFIG_PATH

    yaml_data: dict = {}
    if path.exists():
        with open(path) as f:
            yaml_data = yaml.safe_load(f) or {}
        logger.info("Loaded configuration from %s", path)
    else:
        logger.warning("Config file %s not found, using defaults + env vars", path)

    _apply_env_overrides(yaml_data)

    return Settings(**yaml_data)


def _apply_env_overrides(yaml_data: dict) -> None:
    """Apply the non-nested convenience environment variables."""
    token = os.environ.get("TERMRELAY_TOKEN", "")
    if not token:
        return
    auth = yaml_data.setdefault("auth", {}) or {}
    yaml_data["auth"] = auth
    tokens = auth.setdefault("tokens", {}) or {}
    auth["tokens"] = tokens
    tokens.setdefault("default", token)
    client = yaml_data.setdefault("client", {}) or {}
    yaml_data["client"] = client
    client.setdefault("token", token)
