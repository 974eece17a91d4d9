"""
Configuration for s2-cli.

Settings come from S2_* environment variables (pydantic-settings); the
access token can also be stored in a small JSON config file written by
`s2-cli config set --token`.

Invariants:
    - All settings have defaults suitable for the hosted service
    - Batch limits never exceed the service ceilings
    - Tokens are never logged or included in error messages

How to change safely:
    - Add new settings with defaults that keep existing behavior
    - Keep the config file format backward compatible (extra keys ignored)
"""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field, ValidationError, field_validator
from pydantic_settings import BaseSettings

from .errors import ConfigError
from .session.append import DEFAULT_MAX_IN_FLIGHT
from .transport.http import DEFAULT_ENDPOINT
from .types import MAX_BATCH_METERED_BYTES, MAX_BATCH_RECORDS

logger = logging.getLogger(__name__)

CONFIG_PATH_ENV = "S2_CONFIG_PATH"


class S2Settings(BaseSettings):
    """s2-cli settings loaded from environment."""

    # Service connection
    auth_token: Optional[str] = Field(default=None, description="Access token (overrides config file)")
    endpoint: str = Field(default=DEFAULT_ENDPOINT, description="Service endpoint URL")
    request_timeout: float = Field(default=30.0, gt=0, description="Per-request timeout seconds")
    config_path: Optional[str] = Field(default=None, description="Config file location override")

    # Batching and pipelining
    max_batch_records: int = Field(
        default=MAX_BATCH_RECORDS, ge=1, le=MAX_BATCH_RECORDS, description="Records per append batch"
    )
    max_batch_bytes: int = Field(
        default=MAX_BATCH_METERED_BYTES,
        ge=1,
        le=MAX_BATCH_METERED_BYTES,
        description="Metered bytes per append batch",
    )
    max_in_flight: int = Field(
        default=DEFAULT_MAX_IN_FLIGHT, ge=1, description="Unacknowledged batches allowed in flight"
    )

    # Logging
    log_level: str = Field(default="WARNING", description="Logging level")
    log_format: str = Field(default="text", description="Log format (json, text)")

    model_config = {"env_prefix": "S2_"}

    @field_validator("log_format")
    @classmethod
    def _check_log_format(cls, value: str) -> str:
        value = value.lower()
        if value not in ("json", "text"):
            raise ValueError("log_format must be 'json' or 'text'")
        return value


class ConfigFile(BaseModel):
    """On-disk configuration written by `config set`."""

    token: str = Field(min_length=1)


def config_path(override: Optional[str] = None) -> Path:
    """Location of the config file (override, $S2_CONFIG_PATH or ~/.config/s2/config.json).

    Raises:
        ConfigError: If no home directory can be determined
    """
    override = override or os.getenv(CONFIG_PATH_ENV)
    if override:
        return Path(override)
    try:
        home = Path.home()
    except RuntimeError as e:
        raise ConfigError(f"Unable to determine home directory: {e}") from e
    return home / ".config" / "s2" / "config.json"


def create_config(path: Path, token: str) -> None:
    """Write the config file, creating parent directories.

    Raises:
        ConfigError: If the token is empty or the file cannot be written
    """
    try:
        config = ConfigFile(token=token)
    except ValidationError as e:
        raise ConfigError(f"Invalid token: {e.errors()[0]['msg']}", path=str(path)) from e

    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(config.model_dump(), indent=2))
        os.chmod(path, 0o600)
    except OSError as e:
        raise ConfigError(f"Failed to write config: {e}", path=str(path)) from e

    logger.info("Config saved", extra={"path": str(path)})


def load_config(path: Path) -> ConfigFile:
    """Load and validate the config file.

    Raises:
        ConfigError: If the file is missing, unreadable or invalid
    """
    try:
        raw = path.read_text()
    except FileNotFoundError as e:
        raise ConfigError(
            "No configuration found. Run `s2-cli config set --token ...` first.",
            path=str(path),
        ) from e
    except OSError as e:
        raise ConfigError(f"Failed to read config: {e}", path=str(path)) from e

    try:
        return ConfigFile.model_validate_json(raw)
    except ValidationError as e:
        raise ConfigError(f"Invalid config file: {e.errors()[0]['msg']}", path=str(path)) from e


def resolve_token(settings: S2Settings, path: Optional[Path] = None) -> str:
    """Access token from S2_AUTH_TOKEN, falling back to the config file."""
    if settings.auth_token:
        return settings.auth_token
    return load_config(path or config_path(settings.config_path)).token
