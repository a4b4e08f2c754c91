"""Environment-based configuration using pydantic-settings.

Provides type-safe, validated configuration from environment variables
with sensible defaults. Supports .env files and nested configuration.

Example:
    >>> from taskweave.foundation.config import get_settings
    >>> settings = get_settings()
    >>> print(settings.pool.limit)
    8
    >>> print(settings.logging.level)
    'INFO'

    # Or with environment variables:
    # TASKWEAVE_POOL_LIMIT=16
    # TASKWEAVE_LOG_LEVEL=DEBUG
"""

from __future__ import annotations

from functools import lru_cache
from typing import Literal

from pydantic import Field, NonNegativeInt, PositiveFloat, computed_field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class LoggingSettings(BaseSettings):
    """Logging configuration."""

    model_config = SettingsConfigDict(
        env_prefix="TASKWEAVE_LOG_",
        extra="ignore",
    )

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"
    format: Literal["console", "json", "none"] = "console"
    colors: bool | None = Field(default=None, description="Force console colors (None = auto-detect)")


class PoolSettings(BaseSettings):
    """Task pool runner defaults."""

    model_config = SettingsConfigDict(
        env_prefix="TASKWEAVE_POOL_",
        extra="ignore",
    )

    limit: NonNegativeInt = Field(default=8, description="Capacity used when a runner gets no explicit source")
    name: str = Field(default="pool", description="Default runner name for log context")


class BridgeSettings(BaseSettings):
    """Push-pull bridge buffer defaults."""

    model_config = SettingsConfigDict(
        env_prefix="TASKWEAVE_BRIDGE_",
        extra="ignore",
    )

    maxsize: NonNegativeInt = Field(default=0, description="Queue bound, 0 = unbounded")
    overflow: Literal["block", "drop_newest", "drop_oldest", "error"] = "block"

    @field_validator("overflow", mode="before")
    @classmethod
    def _normalize_overflow(cls, v: str) -> str:
        return v.lower().replace("-", "_") if isinstance(v, str) else v

    @computed_field
    @property
    def bounded(self) -> bool:
        """Whether bridges apply an overflow policy at all."""
        return self.maxsize > 0


class StreamSettings(BaseSettings):
    """Pull combinator defaults."""

    model_config = SettingsConfigDict(
        env_prefix="TASKWEAVE_STREAM_",
        extra="ignore",
    )

    buffer_timeout: PositiveFloat | None = Field(
        default=None,
        description="Default flush timeout for buffer_stream, in seconds",
    )


class TaskweaveSettings(BaseSettings):
    """Root settings for taskweave.

    Loads configuration from environment variables with TASKWEAVE_ prefix.
    Supports nested configuration and .env files.

    Example environment variables:
        TASKWEAVE_DEBUG=true
        TASKWEAVE_POOL_LIMIT=4
        TASKWEAVE_BRIDGE_MAXSIZE=1000
        TASKWEAVE_BRIDGE_OVERFLOW=drop_oldest
        TASKWEAVE_LOG_FORMAT=json
    """

    model_config = SettingsConfigDict(
        env_prefix="TASKWEAVE_",
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        extra="ignore",
        validate_default=True,
    )

    debug: bool = Field(default=False, description="Enable debug mode")

    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    pool: PoolSettings = Field(default_factory=PoolSettings)
    bridge: BridgeSettings = Field(default_factory=BridgeSettings)
    stream: StreamSettings = Field(default_factory=StreamSettings)


@lru_cache(maxsize=1)
def get_settings() -> TaskweaveSettings:
    """Get the global settings instance (cached).

    Example:
        >>> settings = get_settings()
        >>> settings.debug
        False
    """
    return TaskweaveSettings()


def clear_settings_cache() -> None:
    """Clear the settings cache (useful for testing).

    After calling this, the next get_settings() call will
    reload configuration from environment.
    """
    get_settings.cache_clear()
