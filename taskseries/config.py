"""Settings management using pydantic-settings with optional YAML overlay."""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Optional

import yaml
from pydantic import Field, ValidationError as PydanticValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .exceptions import ConfigurationError

logger = logging.getLogger(__name__)

ENV_PREFIX = "TASKSERIES_"
DEFAULT_CONFIG_FILE = Path.home() / ".config" / "taskseries" / "config.yaml"


class PlannerSettings(BaseSettings):
    """Runtime configuration for the recurrence engine and its HTTP surface."""

    # Storage
    database_path: Path = Field(
        default_factory=lambda: Path.home() / ".local" / "share" / "taskseries" / "taskseries.db",
        description="SQLite database file",
    )
    busy_timeout_seconds: float = Field(
        default=5.0, description="Seconds to wait on a locked database before reporting a conflict"
    )
    conflict_retries: int = Field(
        default=1, ge=0, le=1, description="Internal retries of a conflicting mutation"
    )

    # Recurrence limits
    max_occurrences: int = Field(
        default=25, ge=1, description="Series-lifetime cap on generated occurrences"
    )
    max_duration_minutes: int = Field(
        default=1440, ge=1, description="Default ceiling for task duration"
    )

    # Authoring defaults
    default_timezone: str = Field(default="UTC", description="IANA zone used when none is given")
    default_icon: str = Field(default="Activity", description="Icon name used when none is given")

    # HTTP server
    server_host: str = Field(default="127.0.0.1", description="Host address for the API server")
    server_port: int = Field(default=8080, description="Port for the API server")

    # Logging
    log_level: str = Field(default="INFO", description="Console log level")
    debug: bool = Field(default=False, description="Enable debug logging")

    model_config = SettingsConfigDict(
        env_prefix=ENV_PREFIX,
        case_sensitive=False,
        extra="ignore",
    )

    @field_validator("log_level")
    @classmethod
    def _normalize_log_level(cls, value: str) -> str:
        level = value.upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"unknown log level {value!r}")
        return level

    @field_validator("database_path")
    @classmethod
    def _expand_database_path(cls, value: Path) -> Path:
        return Path(value).expanduser()


def _read_yaml(config_file: Path) -> dict[str, Any]:
    """Read a YAML settings file into a flat mapping.

    Raises:
        ConfigurationError: If the file cannot be read or is not a mapping
    """
    try:
        with config_file.open(encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except (OSError, yaml.YAMLError) as e:
        raise ConfigurationError(f"Could not load config from {config_file}: {e}") from e

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigurationError(f"Config file {config_file} must contain a mapping")
    return data


def load_settings(config_file: Optional[Path] = None, **overrides: Any) -> PlannerSettings:
    """Build settings from YAML, environment and explicit overrides.

    Precedence, highest first: ``overrides``, ``TASKSERIES_*`` environment
    variables, the YAML file, field defaults. Without ``config_file`` the
    default location is used when it exists.

    Args:
        config_file: Optional YAML file path
        **overrides: Field values that win over every other source

    Returns:
        Validated PlannerSettings

    Raises:
        ConfigurationError: If the YAML file or any resulting value is invalid
    """
    path = Path(config_file).expanduser() if config_file else DEFAULT_CONFIG_FILE
    file_values: dict[str, Any] = {}
    if config_file or path.exists():
        file_values = _read_yaml(path)
        logger.debug("Loaded %d settings from %s", len(file_values), path)

    env_keys = {key[len(ENV_PREFIX) :].lower() for key in os.environ if key.upper().startswith(ENV_PREFIX)}
    values = {k: v for k, v in file_values.items() if k.lower() not in env_keys}
    values.update(overrides)

    try:
        return PlannerSettings(**values)
    except PydanticValidationError as e:
        raise ConfigurationError(f"Invalid settings: {e}") from e
