"""Unified error handling for taskweave.

- ErrorCode: Standard error codes for task failures
- TaskweaveError and subclasses: misuse of concurrency primitives
- TaskFault: structured record of a failed pooled task
"""

from .errors import (
    BridgeOverflowError,
    CapacityError,
    ErrorCode,
    RoutingError,
    SinkClosedError,
    TaskFault,
    TaskweaveError,
    classify_exception,
)
from .types import JsonDict, JsonMapping, JsonPrimitive, JsonValue

__all__ = [
    # Core errors
    "ErrorCode", "TaskFault", "classify_exception",
    # Exceptions
    "TaskweaveError", "SinkClosedError", "BridgeOverflowError", "CapacityError", "RoutingError",
    # Types
    "JsonDict", "JsonMapping", "JsonPrimitive", "JsonValue",
]
