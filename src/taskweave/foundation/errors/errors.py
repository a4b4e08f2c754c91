"""Standardized error handling for the scheduling engine.

Provides error codes, an exception hierarchy for misuse of the concurrency
primitives, and a structured fault record for task failures surfaced by the
pool runner. Uses Pydantic for validation and serialization.
"""

from __future__ import annotations

import traceback
from enum import StrEnum
from functools import lru_cache
from typing import Annotated, Self

from pydantic import BaseModel, ConfigDict, Field, computed_field, field_validator


class ErrorCode(StrEnum):
    """Standard error codes for task and primitive failures.

    Used for programmatic error handling by envelope consumers.
    """
    TASK_FAILED = "TASK_FAILED"
    SINK_CLOSED = "SINK_CLOSED"
    BUFFER_OVERFLOW = "BUFFER_OVERFLOW"
    CAPACITY = "CAPACITY"
    ROUTING = "ROUTING"
    TIMEOUT = "TIMEOUT"
    NETWORK_ERROR = "NETWORK_ERROR"
    INVALID_PARAMS = "INVALID_PARAMS"
    UNKNOWN = "UNKNOWN"


# Flattened pattern -> code mapping, checked in insertion order
_PATTERN_CODES: dict[str, ErrorCode] = {
    "timeout": ErrorCode.TIMEOUT,
    "connection": ErrorCode.NETWORK_ERROR,
    "network": ErrorCode.NETWORK_ERROR,
    "validation": ErrorCode.INVALID_PARAMS,
    "value": ErrorCode.INVALID_PARAMS,
    "type": ErrorCode.INVALID_PARAMS,
}
_PATTERN_KEYS = tuple(_PATTERN_CODES.keys())


@lru_cache(maxsize=256)
def _classify_cached(exc_key: str) -> ErrorCode:
    haystack = exc_key.lower()
    for pattern in _PATTERN_KEYS:
        if pattern in haystack:
            return _PATTERN_CODES[pattern]
    return ErrorCode.TASK_FAILED


def classify_exception(exc: BaseException) -> ErrorCode:
    """Map exception to error code via pattern matching on name/message."""
    if isinstance(exc, TaskweaveError):
        return exc.code
    return _classify_cached(f"{type(exc).__name__} {exc}")


class TaskweaveError(Exception):
    """Base exception for engine misuse and primitive failures."""

    code: ErrorCode = ErrorCode.UNKNOWN


class SinkClosedError(TaskweaveError):
    """Raised when pushing into a sink or buffer that already terminated."""

    code = ErrorCode.SINK_CLOSED


class BridgeOverflowError(TaskweaveError):
    """Raised by a bounded bridge buffer using the ``error`` overflow policy."""

    code = ErrorCode.BUFFER_OVERFLOW


class CapacityError(TaskweaveError):
    """Raised when a capacity source is released more often than acquired."""

    code = ErrorCode.CAPACITY


class RoutingError(TaskweaveError):
    """Raised when a distribute selector picks a sink that does not exist."""

    code = ErrorCode.ROUTING


class TaskFault(BaseModel):
    """Structured record of a failed task, suitable for serialization.

    Attributes:
        task_id: Id of the task that failed
        message: Human-readable error message
        code: Machine-readable error code
        exc_type: Name of the exception class
        details: Optional formatted traceback
    """

    model_config = ConfigDict(
        frozen=True,
        str_strip_whitespace=True,
        json_schema_extra={
            "title": "Task Fault",
            "description": "Structured error from a pooled task",
            "examples": [{
                "task_id": 3,
                "message": "upstream timed out",
                "code": "TIMEOUT",
                "exc_type": "TimeoutError",
            }],
        },
    )

    task_id: Annotated[int, Field(ge=0, description="Id assigned by the pool runner")]
    message: str = Field(default="", description="Human-readable error message")
    code: ErrorCode = Field(default=ErrorCode.UNKNOWN, description="Machine-readable classification")
    exc_type: str = Field(default="Exception", description="Exception class name")
    details: str | None = Field(default=None, description="Formatted traceback, if captured")

    @field_validator("message", mode="before")
    @classmethod
    def _ensure_message(cls, v: str | BaseException) -> str:
        """Accept exception objects and extract message."""
        return str(v) if isinstance(v, BaseException) else v

    @computed_field
    @property
    def is_retryable(self) -> bool:
        """Whether the failure is typically transient."""
        return self.code in _RETRYABLE_CODES

    @classmethod
    def from_exception(cls, task_id: int, exc: BaseException, *, include_trace: bool = False) -> Self:
        """Create from exception with auto-classification."""
        details = None
        if include_trace and exc.__traceback__ is not None:
            details = "".join(traceback.format_exception(exc))
        return cls(
            task_id=task_id,
            message=str(exc) or type(exc).__name__,
            code=classify_exception(exc),
            exc_type=type(exc).__name__,
            details=details,
        )

    def render(self) -> str:
        """Format fault for display."""
        text = f"task {self.task_id} failed [{self.code}] {self.exc_type}: {self.message}"
        return f"{text}\n{self.details}" if self.details else text

    __str__ = render


_RETRYABLE_CODES: frozenset[ErrorCode] = frozenset({
    ErrorCode.TIMEOUT,
    ErrorCode.NETWORK_ERROR,
})
