"""Shared type aliases for structured context (logging fields, fault payloads)."""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any, Union

# JSON type aliases - Any for recursive slots to avoid Pydantic resolution issues
JsonPrimitive = Union[str, int, float, bool, None]
JsonValue = Union[JsonPrimitive, list[Any], dict[str, Any]]
JsonDict = dict[str, Any]
JsonMapping = Mapping[str, Any]
