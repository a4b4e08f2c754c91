"""Configuration management using pydantic-settings.

Provides environment-based configuration with type safety and validation.
"""

from .settings import (
    BridgeSettings,
    LoggingSettings,
    PoolSettings,
    StreamSettings,
    TaskweaveSettings,
    clear_settings_cache,
    get_settings,
)

__all__ = [
    "BridgeSettings",
    "LoggingSettings",
    "PoolSettings",
    "StreamSettings",
    "TaskweaveSettings",
    "clear_settings_cache",
    "get_settings",
]
