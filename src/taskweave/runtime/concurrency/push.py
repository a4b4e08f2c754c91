"""Eager push combinators: sinks that forward values as they arrive.

A PushSink accepts next(value) at any time, plus return_() to complete
and throw(exc) to fail; both terminal calls propagate downstream and are
no-ops once the sink has terminated. Calls are not serialized: concurrent
pushes interleave unless the sink is wrapped in Serialized.

Example:
    >>> collect_even, collect_odd = CollectSink(), CollectSink()
    >>> router = Distribute([collect_even, collect_odd], lambda n: n % 2)
    >>> pipeline = MapSink(router, lambda n: n * 3)
    >>> for n in range(10):
    ...     await pipeline.next(n)
    >>> await pipeline.return_()
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable, Hashable, Sequence
from typing import Any, Generic, TypeVar

from taskweave.foundation.errors import RoutingError, SinkClosedError

from .iterator import IteratorState, iterate

T = TypeVar("T")
U = TypeVar("U")

__all__ = [
    "PushSink",
    "CallbackSink",
    "CollectSink",
    "Serialized",
    "MapSink",
    "FilterSink",
    "ReduceSink",
    "DedupeSink",
    "WindowSink",
    "BufferSink",
    "FlatMapSink",
    "Fork",
    "Distribute",
    "RoundRobinSink",
]


async def _call(func: Callable[..., Any], *args: Any) -> Any:
    result = func(*args)
    if asyncio.iscoroutine(result):
        result = await result
    return result


class PushSink(ABC, Generic[T]):
    """Base class for push-side consumers.

    Subclasses implement ``_on_next`` and usually ``_on_return``/``_on_throw``.
    """

    def __init__(self) -> None:
        self._state = IteratorState.CREATED
        self._error: BaseException | None = None

    @property
    def state(self) -> IteratorState:
        return self._state

    @property
    def closed(self) -> bool:
        return self._state.terminal

    @property
    def error(self) -> BaseException | None:
        return self._error

    async def next(self, value: T) -> None:
        """Deliver one value.

        Raises:
            SinkClosedError: If the sink already completed, failed or was cancelled
        """
        if self._state.terminal:
            raise SinkClosedError(f"{type(self).__name__} is {self._state.value}")
        self._state = IteratorState.RUNNING
        await self._on_next(value)

    async def return_(self) -> None:
        """Complete the sink. No-op once terminal."""
        if self._state.terminal:
            return
        self._state = IteratorState.COMPLETED
        await self._on_return()

    async def throw(self, exc: BaseException) -> None:
        """Fail the sink with ``exc``. No-op once terminal."""
        if self._state.terminal:
            return
        self._state, self._error = IteratorState.ERRORED, exc
        await self._on_throw(exc)

    @abstractmethod
    async def _on_next(self, value: T) -> None: ...

    async def _on_return(self) -> None:
        pass

    async def _on_throw(self, exc: BaseException) -> None:
        pass

    def __repr__(self) -> str:
        return f"<{type(self).__name__} state={self._state.value}>"


# ─────────────────────────────────────────────────────────────────────────────
# Terminal sinks
# ─────────────────────────────────────────────────────────────────────────────


class CallbackSink(PushSink[T]):
    """Calls ``on_next`` (sync or async) for each value."""

    def __init__(
        self,
        on_next: Callable[[T], Any],
        *,
        on_return: Callable[[], Any] | None = None,
        on_throw: Callable[[BaseException], Any] | None = None,
    ) -> None:
        super().__init__()
        self._callback = on_next
        self._return_cb = on_return
        self._throw_cb = on_throw

    async def _on_next(self, value: T) -> None:
        await _call(self._callback, value)

    async def _on_return(self) -> None:
        if self._return_cb is not None:
            await _call(self._return_cb)

    async def _on_throw(self, exc: BaseException) -> None:
        if self._throw_cb is not None:
            await _call(self._throw_cb, exc)


class CollectSink(PushSink[T]):
    """Collects values in order of arrival."""

    def __init__(self) -> None:
        super().__init__()
        self.values: list[T] = []

    @property
    def completed(self) -> bool:
        return self._state is IteratorState.COMPLETED

    async def _on_next(self, value: T) -> None:
        self.values.append(value)


class Serialized(PushSink[T]):
    """Queues concurrent calls and applies them one at a time in arrival order."""

    def __init__(self, downstream: PushSink[T]) -> None:
        super().__init__()
        self._downstream = downstream
        self._lock = asyncio.Lock()  # FIFO among waiters

    async def _on_next(self, value: T) -> None:
        async with self._lock:
            await self._downstream.next(value)

    async def _on_return(self) -> None:
        async with self._lock:
            await self._downstream.return_()

    async def _on_throw(self, exc: BaseException) -> None:
        async with self._lock:
            await self._downstream.throw(exc)


# ─────────────────────────────────────────────────────────────────────────────
# 1:1 transforms
# ─────────────────────────────────────────────────────────────────────────────


class _Forward(PushSink[T]):
    """Sink with a single downstream; terminal calls propagate."""

    def __init__(self, downstream: PushSink[Any]) -> None:
        super().__init__()
        self._downstream = downstream

    async def _on_return(self) -> None:
        await self._downstream.return_()

    async def _on_throw(self, exc: BaseException) -> None:
        await self._downstream.throw(exc)


class MapSink(_Forward[T]):
    def __init__(self, downstream: PushSink[Any], func: Callable[[T], Any]) -> None:
        super().__init__(downstream)
        self._func = func

    async def _on_next(self, value: T) -> None:
        await self._downstream.next(await _call(self._func, value))


class FilterSink(_Forward[T]):
    def __init__(self, downstream: PushSink[T], predicate: Callable[[T], bool | Awaitable[bool]]) -> None:
        super().__init__(downstream)
        self._predicate = predicate

    async def _on_next(self, value: T) -> None:
        if await _call(self._predicate, value):
            await self._downstream.next(value)


class ReduceSink(_Forward[T]):
    """Pushes the running accumulator downstream after every value."""

    def __init__(self, downstream: PushSink[U], func: Callable[[U, T], Any], initial: U) -> None:
        super().__init__(downstream)
        self._func = func
        self.accumulator = initial

    async def _on_next(self, value: T) -> None:
        self.accumulator = await _call(self._func, self.accumulator, value)
        await self._downstream.next(self.accumulator)


class DedupeSink(_Forward[T]):
    def __init__(self, downstream: PushSink[T], key: Callable[[T], Hashable] | None = None) -> None:
        super().__init__(downstream)
        self._key = key
        self._seen: set[Hashable] = set()

    async def _on_next(self, value: T) -> None:
        marker = value if self._key is None else await _call(self._key, value)
        if marker in self._seen:
            return
        self._seen.add(marker)
        await self._downstream.next(value)


class WindowSink(_Forward[T]):
    """Pushes fixed-size batches; completion flushes the partial batch first."""

    def __init__(self, downstream: PushSink[list[T]], size: int) -> None:
        if size < 1:
            raise ValueError("window size must be >= 1")
        super().__init__(downstream)
        self._size = size
        self._batch: list[T] = []

    async def _on_next(self, value: T) -> None:
        self._batch.append(value)
        if len(self._batch) >= self._size:
            batch, self._batch = self._batch, []
            await self._downstream.next(batch)

    async def _on_return(self) -> None:
        batch, self._batch = self._batch, []
        if batch:
            await self._downstream.next(batch)
        await super()._on_return()

    async def _on_throw(self, exc: BaseException) -> None:
        self._batch = []
        await super()._on_throw(exc)


class BufferSink(_Forward[T]):
    """Pushes a batch when ``predicate(latest)`` holds or ``timeout`` seconds
    pass after the batch's first value."""

    def __init__(
        self,
        downstream: PushSink[list[T]],
        predicate: Callable[[T], bool | Awaitable[bool]] | None = None,
        *,
        timeout: float | None = None,
    ) -> None:
        super().__init__(downstream)
        self._predicate = predicate
        self._timeout = timeout
        self._batch: list[T] = []
        self._timer: asyncio.Task[None] | None = None

    async def _on_next(self, value: T) -> None:
        self._batch.append(value)
        if self._timeout is not None and self._timer is None:
            self._timer = asyncio.create_task(self._flush_later(self._timeout))
        if self._predicate is not None and await _call(self._predicate, value):
            await self._flush()

    async def _flush_later(self, delay: float) -> None:
        await asyncio.sleep(delay)
        try:
            await self._flush()
        except Exception as exc:
            # no caller to raise into: fail the sink so the next call sees it
            await self.throw(exc)

    async def _flush(self) -> None:
        timer, self._timer = self._timer, None
        if timer is not None and timer is not asyncio.current_task():
            timer.cancel()
        batch, self._batch = self._batch, []
        if batch and not self._downstream.closed:
            await self._downstream.next(batch)

    async def _on_return(self) -> None:
        await self._flush()
        await super()._on_return()

    async def _on_throw(self, exc: BaseException) -> None:
        timer, self._timer = self._timer, None
        if timer is not None:
            timer.cancel()
        self._batch = []
        await super()._on_throw(exc)


class FlatMapSink(_Forward[T]):
    """Expands each value (via iterate()) and pushes the parts in order."""

    def __init__(self, downstream: PushSink[Any], func: Callable[[T], Any]) -> None:
        super().__init__(downstream)
        self._func = func

    async def _on_next(self, value: T) -> None:
        async with iterate(await _call(self._func, value)) as parts:
            async for part in parts:
                await self._downstream.next(part)


# ─────────────────────────────────────────────────────────────────────────────
# Divergent combinators
# ─────────────────────────────────────────────────────────────────────────────


class _Fanout(PushSink[T]):
    """Sink with several downstreams; terminal calls reach all of them."""

    def __init__(self, sinks: Sequence[PushSink[T]]) -> None:
        if not sinks:
            raise ValueError(f"{type(self).__name__} requires at least one sink")
        super().__init__()
        self._sinks = list(sinks)

    @property
    def sinks(self) -> list[PushSink[T]]:
        return list(self._sinks)

    async def _on_return(self) -> None:
        await asyncio.gather(*(s.return_() for s in self._sinks))

    async def _on_throw(self, exc: BaseException) -> None:
        await asyncio.gather(*(s.throw(exc) for s in self._sinks))


class Fork(_Fanout[T]):
    """Broadcast every value to every sink."""

    async def _on_next(self, value: T) -> None:
        await asyncio.gather(*(s.next(value) for s in self._sinks))


class Distribute(_Fanout[T]):
    """Route each value to ``sinks[selector(value)]``."""

    def __init__(self, sinks: Sequence[PushSink[T]], selector: Callable[[T], int | Awaitable[int]]) -> None:
        super().__init__(sinks)
        self._selector = selector

    async def _on_next(self, value: T) -> None:
        idx = await _call(self._selector, value)
        if not isinstance(idx, int) or not 0 <= idx < len(self._sinks):
            raise RoutingError(f"selector chose sink {idx!r}, have {len(self._sinks)}")
        await self._sinks[idx].next(value)


class RoundRobinSink(_Fanout[T]):
    """Route values to sinks in fixed rotating order regardless of content."""

    def __init__(self, sinks: Sequence[PushSink[T]]) -> None:
        super().__init__(sinks)
        self._position = 0

    async def _on_next(self, value: T) -> None:
        sink = self._sinks[self._position]
        self._position = (self._position + 1) % len(self._sinks)
        await sink.next(value)
