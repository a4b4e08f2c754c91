"""Resolution-order fan-in over a dynamic set of keyed iterators.

The mechanism behind race_streams() and the task pool runner: every live
iterator has at most one pull in flight; whichever resolves first is
reported first through ``on_settle``. A pull is re-issued only for the
key whose value was just delivered (``resume``).

Settlement callbacks run from the pull task's done-callback, so owners
observe completions as soon as they happen, independently of whether
anyone downstream is currently pulling.
"""

from __future__ import annotations

import asyncio
import functools
from collections.abc import Callable, Hashable
from dataclasses import dataclass
from typing import Any, Generic, TypeVar

from .iterator import Step, StructuredIterator

K = TypeVar("K", bound=Hashable)
T = TypeVar("T")

__all__ = ["Resolution", "Multiplexer"]


@dataclass(slots=True, frozen=True)
class Resolution(Generic[K, T]):
    """Outcome of one pull: a step, or the error the pull raised."""

    key: K
    step: Step[T] | None = None
    error: BaseException | None = None

    @property
    def finished(self) -> bool:
        """Whether the iterator behind ``key`` is done (completed or failed)."""
        return self.error is not None or (self.step is not None and self.step.done)


class Multiplexer(Generic[K, T]):
    """Keeps one outstanding pull per registered iterator.

    Example:
        >>> mux = Multiplexer(on_settle=ready.append)
        >>> mux.add("a", iterate(stream_a()))
        >>> mux.add("b", iterate(stream_b()))
        >>> # ... after delivering a value for key "a":
        >>> mux.resume("a")
    """

    __slots__ = ("_on_settle", "_iterators", "_pending", "_closed")

    def __init__(self, on_settle: Callable[[Resolution[K, T]], Any]) -> None:
        self._on_settle = on_settle
        self._iterators: dict[K, StructuredIterator[T]] = {}
        self._pending: dict[K, asyncio.Task[Step[T]]] = {}
        self._closed = False

    @property
    def live(self) -> int:
        """Iterators registered and not yet finished."""
        return len(self._iterators)

    def __contains__(self, key: object) -> bool:
        return key in self._iterators

    def add(self, key: K, iterator: StructuredIterator[T]) -> None:
        """Register ``iterator`` and issue its first pull."""
        if self._closed:
            raise RuntimeError("Multiplexer is closed")
        if key in self._iterators:
            raise KeyError(f"duplicate key {key!r}")
        self._iterators[key] = iterator
        self._arm(key)

    def resume(self, key: K) -> None:
        """Re-issue a pull for ``key`` after its last value was delivered."""
        if not self._closed and key in self._iterators and key not in self._pending:
            self._arm(key)

    def _arm(self, key: K) -> None:
        task = asyncio.ensure_future(self._iterators[key].next())
        self._pending[key] = task
        task.add_done_callback(functools.partial(self._settled, key))

    def _settled(self, key: K, task: asyncio.Task[Step[T]]) -> None:
        if self._closed or self._pending.get(key) is not task:
            return
        del self._pending[key]
        if task.cancelled():
            # cancelled from inside the iterator, not by us
            resolution: Resolution[K, T] = Resolution(key, error=asyncio.CancelledError())
        elif (exc := task.exception()) is not None:
            resolution = Resolution(key, error=exc)
        else:
            resolution = Resolution(key, step=task.result())
        if resolution.finished:
            del self._iterators[key]
        self._on_settle(resolution)

    async def aclose(self) -> list[K]:
        """Cancel in-flight pulls and return_() every live iterator.

        Returns the keys that were still live. Errors raised while closing
        iterators are collected and re-raised together once all are closed.
        """
        if self._closed:
            return []
        self._closed = True
        pending = list(self._pending.values())
        self._pending.clear()
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

        keys = list(self._iterators)
        iterators, self._iterators = list(self._iterators.values()), {}
        outcomes = await asyncio.gather(*(it.return_() for it in iterators), return_exceptions=True)
        errors = [e for e in outcomes if isinstance(e, Exception)]
        if errors:
            raise ExceptionGroup("errors while closing multiplexed iterators", errors)
        return keys
