"""
Configuration management for the session replication core.

This module provides centralized configuration loading and validation using
Pydantic settings. Values are read from environment variables or .env files,
with an optional environment-specific file layered on top.
"""

import os
import socket
from enum import Enum
from pathlib import Path
from typing import Optional, List, Tuple

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Environment(str, Enum):
    """Supported deployment environments."""
    DEVELOPMENT = "development"
    STAGING = "staging"
    PRODUCTION = "production"


def _detect_environment() -> Environment:
    """
    Detect the current environment from the ENVIRONMENT variable.

    Returns:
        Environment: The detected environment, defaults to DEVELOPMENT if not set.
    """
    env_value = os.environ.get("ENVIRONMENT", "development").lower().strip()
    try:
        return Environment(env_value)
    except ValueError:
        return Environment.DEVELOPMENT


def _get_env_files(environment: Environment) -> Tuple[str, ...]:
    """
    Get the .env files to load for the given environment.

    The base .env file is loaded first, then the environment-specific file
    (e.g. .env.production) overrides it.
    """
    return (".env", f".env.{environment.value}")


class Settings(BaseSettings):
    """
    Session manager settings loaded from environment variables.

    Store connection parameters are resolved once at startup; the manager
    refuses to start if they are missing or the store cannot be reached.
    """

    environment: Environment = Field(
        default=Environment.DEVELOPMENT,
        description="Deployment environment (development, staging, production)"
    )

    # Node identity
    worker_name: str = Field(
        default_factory=socket.gethostname,
        description="Identity of this node, recorded as lastNode on owned sessions"
    )

    # Redis connection
    redis_url: Optional[str] = Field(
        default=None,
        description="Redis connection URL for the shared session store"
    )
    redis_max_connections: int = Field(
        default=50,
        ge=1,
        le=10000,
        description="Maximum pooled Redis connections per process"
    )
    redis_pool_timeout: float = Field(
        default=20.0,
        gt=0,
        description="Seconds a request thread waits for a free pooled connection"
    )
    session_key_prefix: str = Field(
        default="session:",
        description="Namespace prefix prepended to session ids to form Redis keys"
    )

    # Session behaviour
    save_interval_sec: int = Field(
        default=20,
        ge=0,
        description="Minimum seconds between saves triggered only by access-time updates"
    )
    max_inactive_interval: int = Field(
        default=1800,
        description="Idle seconds before a session expires; negative means never"
    )
    session_serializer: str = Field(
        default="pickle",
        description="Attribute serializer: 'pickle' (object graphs, default) or 'json'"
    )
    session_cookie_name: str = Field(
        default="SESSIONID",
        description="Name of the cookie carrying the session id"
    )
    scavenge_interval_sec: float = Field(
        default=60.0,
        gt=0,
        description="Seconds between sweeps of expired sessions from the in-memory cache"
    )

    # Observability
    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)"
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    @field_validator("worker_name")
    @classmethod
    def validate_worker_name(cls, v: str) -> str:
        """Validate that worker_name is not empty."""
        if not v or not v.strip():
            raise ValueError("worker_name cannot be empty")
        return v.strip()

    @field_validator("redis_url")
    @classmethod
    def validate_redis_url(cls, v: Optional[str]) -> Optional[str]:
        """Validate that redis_url uses a scheme redis-py understands."""
        if v is None:
            return v
        v = v.strip()
        if not v:
            return None
        if not v.startswith(("redis://", "rediss://", "unix://")):
            raise ValueError("redis_url must start with redis://, rediss:// or unix://")
        return v

    @field_validator("session_key_prefix", "session_cookie_name")
    @classmethod
    def validate_not_blank(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("value cannot be empty")
        return v.strip()

    @field_validator("session_serializer")
    @classmethod
    def validate_session_serializer(cls, v: str) -> str:
        """Validate that session_serializer names a known serializer."""
        v = v.strip().lower()
        if v not in {"json", "pickle"}:
            raise ValueError("session_serializer must be 'json' or 'pickle'")
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate that log_level is a valid logging level."""
        valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        v = v.strip().upper()
        if v not in valid_levels:
            raise ValueError(f"log_level must be one of: {', '.join(sorted(valid_levels))}")
        return v

    @model_validator(mode="after")
    def validate_store_config(self) -> "Settings":
        """Require an explicit Redis URL outside development."""
        if not self.redis_url and self.environment != Environment.DEVELOPMENT:
            raise ValueError(
                "redis_url is required in non-development environments"
            )
        return self


class ConfigurationError(Exception):
    """Exception raised when configuration is missing, invalid or unusable."""

    def __init__(self, message: str, missing_fields: Optional[List[str]] = None,
                 invalid_fields: Optional[dict] = None):
        self.message = message
        self.missing_fields = missing_fields or []
        self.invalid_fields = invalid_fields or {}
        super().__init__(self.format_error_message())

    def format_error_message(self) -> str:
        """Format a descriptive error message listing all issues."""
        parts = [self.message]

        if self.missing_fields:
            parts.append(f"\nMissing required fields: {', '.join(self.missing_fields)}")

        if self.invalid_fields:
            invalid_parts = [f"  - {field}: {error}" for field, error in self.invalid_fields.items()]
            parts.append("\nInvalid field values:\n" + "\n".join(invalid_parts))

        return "".join(parts)


def create_settings_for_environment(environment: Optional[Environment] = None) -> Settings:
    """
    Create Settings for a specific environment.

    Args:
        environment: Optional environment override. If not provided, detected from
                    the ENVIRONMENT variable.

    Returns:
        Settings: Validated settings for the specified environment.

    Raises:
        ConfigurationError: If required settings are missing or invalid.
    """
    if environment is None:
        environment = _detect_environment()

    env_files = [f for f in _get_env_files(environment) if Path(f).exists()]

    try:
        class EnvironmentSettings(Settings):
            model_config = SettingsConfigDict(
                env_file=tuple(env_files) or None,
                env_file_encoding="utf-8",
                case_sensitive=False,
                extra="ignore"
            )

        return EnvironmentSettings()
    except Exception as e:
        missing_fields = []
        invalid_fields = {}

        # Pydantic ValidationError carries one entry per offending field
        if hasattr(e, 'errors'):
            for error in e.errors():
                field_name = '.'.join(str(loc) for loc in error.get('loc', [])) or "settings"
                if error.get('type') == 'missing':
                    missing_fields.append(field_name)
                else:
                    invalid_fields[field_name] = error.get('msg', str(error))

        raise ConfigurationError(
            f"Failed to load configuration for environment '{environment.value}'",
            missing_fields=missing_fields,
            invalid_fields=invalid_fields
        ) from e


# Global settings cache
_settings_cache: Optional[Settings] = None


def get_settings() -> Settings:
    """
    Get the application settings singleton.

    Raises:
        ConfigurationError: If required settings are missing or invalid.
    """
    global _settings_cache

    if _settings_cache is None:
        _settings_cache = create_settings_for_environment()

    return _settings_cache


def clear_settings_cache() -> None:
    """Clear the settings cache so the next get_settings() reloads."""
    global _settings_cache
    _settings_cache = None


def validate_startup(settings: Optional[Settings] = None) -> Settings:
    """
    Validate settings that must hold before the session manager starts.

    Args:
        settings: Settings to check; defaults to get_settings().

    Returns:
        The validated settings.

    Raises:
        ConfigurationError: If the store connection cannot be resolved.
    """
    settings = settings or get_settings()

    if not settings.redis_url:
        raise ConfigurationError(
            "Session store connection cannot be resolved",
            missing_fields=["redis_url"]
        )

    return settings
