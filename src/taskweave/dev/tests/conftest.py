"""Shared fixtures: isolated settings and captured logging per test."""

from __future__ import annotations

import os
from collections.abc import Iterator

import pytest

from taskweave.foundation.config import clear_settings_cache
from taskweave.runtime.observability import MemoryRenderer, NoOpRenderer, configure_logging


@pytest.fixture(autouse=True)
def _isolated_settings(monkeypatch: pytest.MonkeyPatch) -> Iterator[None]:
    """Drop cached settings and any TASKWEAVE_ variables from the host."""
    for key in [k for k in os.environ if k.startswith("TASKWEAVE_")]:
        monkeypatch.delenv(key)
    clear_settings_cache()
    configure_logging(renderer=NoOpRenderer())
    yield
    clear_settings_cache()


@pytest.fixture
def log_records() -> MemoryRenderer:
    """Capture structured log entries at DEBUG level."""
    renderer = MemoryRenderer()
    configure_logging(level="DEBUG", renderer=renderer)
    return renderer
