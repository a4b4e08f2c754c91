"""Structured logging module: context-aware logging for pools and streams."""

from .logging import (
    BoundLogger,
    ConsoleRenderer,
    JsonRenderer,
    LogEntry,
    LogRenderer,
    LogScope,
    MemoryRenderer,
    NoOpRenderer,
    StructuredLogger,
    configure_from_settings,
    configure_logging,
    get_logger,
    log_context,
    reset_logging,
)

__all__ = [
    "BoundLogger",
    "ConsoleRenderer",
    "JsonRenderer",
    "LogEntry",
    "LogRenderer",
    "LogScope",
    "MemoryRenderer",
    "NoOpRenderer",
    "StructuredLogger",
    "configure_from_settings",
    "configure_logging",
    "get_logger",
    "log_context",
    "reset_logging",
]
