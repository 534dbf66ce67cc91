"""Configuration loader -- reads config.yaml + .env, validates with Pydantic.

Resolves ${ENV_VAR} references in YAML values from environment variables.
Pipeline options may be spelled snake_case or camelCase (batch_size or
batchSize).
"""

from __future__ import annotations

import logging
import os
import re
from datetime import timedelta
from pathlib import Path
from typing import Any, Literal

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from core.duration import parse_duration

logger = logging.getLogger(__name__)

# Default home directory for the database and captured batches
DEFAULT_HOME = Path.home() / ".beacon"

HOME_ENV_VAR = "BEACON_HOME"


def _resolve_env_vars(value: Any) -> Any:
    """Recursively resolve ${ENV_VAR} references in config values."""
    if isinstance(value, str):
        pattern = re.compile(r"\$\{(\w+)\}")
        def replacer(match: re.Match) -> str:
            var_name = match.group(1)
            env_value = os.environ.get(var_name)
            if env_value is None:
                logger.warning("Environment variable %s not set", var_name)
                return match.group(0)  # leave unresolved
            return env_value
        return pattern.sub(replacer, value)
    elif isinstance(value, dict):
        return {k: _resolve_env_vars(v) for k, v in value.items()}
    elif isinstance(value, list):
        return [_resolve_env_vars(item) for item in value]
    return value


# ---------------------------------------------------------------------------
# Config models (Pydantic)
# ---------------------------------------------------------------------------

class ServerConfig(BaseModel):
    host: str = "127.0.0.1"
    port: int = 8340


class PipelineConfig(BaseModel):
    """Options for the durable event pipeline."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    database_name: str = "analytics_store"
    # Without an endpoint the pipeline runs local-only (no sync timer).
    api_endpoint: str | None = None
    batch_size: int = Field(default=20, ge=1)
    sync_interval: int = Field(default=60, ge=1)  # seconds
    retention_days: int = Field(default=90, ge=0)
    privacy_mode: Literal["standard", "enhanced"] = "enhanced"
    max_retries: int = Field(default=3, ge=1)

    request_timeout: str = "10s"
    headers: dict[str, str] = Field(default_factory=dict)
    retry_backoff: str = "0s"
    retry_backoff_max: str = "1h"
    max_batch_age: str | None = None
    sweep_interval: str = "1d"
    # Write batches to JSON files here instead of POSTing them.
    capture_dir: str | None = None

    @field_validator("request_timeout", "retry_backoff", "retry_backoff_max", "sweep_interval")
    @classmethod
    def _check_duration(cls, value: str) -> str:
        parse_duration(value)
        return value

    @field_validator("max_batch_age")
    @classmethod
    def _check_optional_duration(cls, value: str | None) -> str | None:
        if value is not None:
            parse_duration(value)
        return value

    @property
    def max_batch_age_delta(self) -> timedelta | None:
        return parse_duration(self.max_batch_age) if self.max_batch_age else None


class LoggingConfig(BaseModel):
    level: str = "INFO"


class AppConfig(BaseModel):
    """Top-level application configuration."""

    home_dir: str = str(DEFAULT_HOME)
    server: ServerConfig = Field(default_factory=ServerConfig)
    pipeline: PipelineConfig = Field(default_factory=PipelineConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @property
    def home_path(self) -> Path:
        """Resolved home directory as a Path."""
        return Path(self.home_dir).expanduser()


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------

def load_config(
    config_path: str | Path | None = None,
    env_path: str | Path | None = None,
) -> AppConfig:
    """Load configuration from YAML + .env files.

    1. Load .env into environment variables
    2. Load config.yaml and resolve ${ENV_VAR} references
    3. Validate against Pydantic models
    4. Create the home directory if needed
    """
    home = Path(os.environ.get(HOME_ENV_VAR, str(DEFAULT_HOME))).expanduser()

    if env_path is None:
        env_path = home / ".env"
    if config_path is None:
        config_path = home / "config.yaml"

    env_path = Path(env_path)
    config_path = Path(config_path)

    if env_path.exists():
        load_dotenv(env_path)
        logger.info("Loaded environment from %s", env_path)
    else:
        logger.debug("No .env file at %s", env_path)

    raw_config: dict = {}
    if config_path.exists():
        with open(config_path) as f:
            raw_config = yaml.safe_load(f) or {}
        logger.info("Loaded config from %s", config_path)
    else:
        logger.warning("No config file at %s, using defaults", config_path)

    resolved = _resolve_env_vars(raw_config)

    # Override home_dir if set via env
    if HOME_ENV_VAR in os.environ:
        resolved["home_dir"] = os.environ[HOME_ENV_VAR]

    config = AppConfig(**resolved)
    config.home_path.mkdir(parents=True, exist_ok=True)
    return config
