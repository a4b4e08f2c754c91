"""Foundation - Core building blocks for taskweave.

Contains: error handling, config.
"""

from __future__ import annotations

__all__ = [
    # Errors
    "ErrorCode", "TaskFault", "classify_exception",
    "TaskweaveError", "SinkClosedError", "BridgeOverflowError", "CapacityError", "RoutingError",
    # Config
    "TaskweaveSettings", "get_settings", "clear_settings_cache",
    "LoggingSettings", "PoolSettings", "BridgeSettings", "StreamSettings",
]


def __getattr__(name: str):
    """Lazy imports to avoid circular dependencies."""
    if name in ("ErrorCode", "TaskFault", "classify_exception",
                "TaskweaveError", "SinkClosedError", "BridgeOverflowError", "CapacityError", "RoutingError"):
        from . import errors
        return getattr(errors, name)

    if name in ("TaskweaveSettings", "get_settings", "clear_settings_cache",
                "LoggingSettings", "PoolSettings", "BridgeSettings", "StreamSettings"):
        from . import config
        return getattr(config, name)

    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
