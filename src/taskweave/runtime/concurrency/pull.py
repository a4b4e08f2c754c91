"""Lazy pull combinators over structured iterators.

Every combinator is a StructuredIterator that does work only when pulled,
and propagates return_() to each upstream it wraps.

Key Operations:
    - source: Wrap a sync/async sequence with an optional completion value
    - map_stream / filter_stream / reduce_stream / dedupe_stream: 1:1 transforms
    - window_stream: Fixed-size batches
    - buffer_stream: Predicate- or timeout-flushed batches
    - flat_map_stream: Expand each item into many
    - concat_streams: Exhaust sources one after another
    - zip_streams: One item from every source per step
    - round_robin_streams: Cycle sources in declared order
    - race_streams: Yield in resolution order

Example:
    >>> pages = race_streams(crawl(site_a), crawl(site_b))
    >>> titles = map_stream(pages, extract_title)
    >>> async for batch in window_stream(titles, 50):
    ...     await index(batch)
"""

from __future__ import annotations

import asyncio
from collections import deque
from collections.abc import Awaitable, Callable, Hashable
from typing import Any, TypeVar

from taskweave.foundation.config import get_settings

from .iterator import GeneratorIterator, IteratorState, Step, StructuredIterator, iterate
from .multiplex import Multiplexer, Resolution
from .signal import WaitSignal

T = TypeVar("T")
U = TypeVar("U")

__all__ = [
    "Source",
    "Map",
    "Filter",
    "Reduce",
    "Dedupe",
    "Window",
    "Buffer",
    "FlatMap",
    "Concat",
    "Zip",
    "RoundRobin",
    "Race",
    "source",
    "map_stream",
    "filter_stream",
    "reduce_stream",
    "dedupe_stream",
    "window_stream",
    "buffer_stream",
    "flat_map_stream",
    "concat_streams",
    "zip_streams",
    "round_robin_streams",
    "race_streams",
]


async def _call(func: Callable[..., Any], *args: Any) -> Any:
    """Call a sync or async callable."""
    result = func(*args)
    if asyncio.iscoroutine(result):
        result = await result
    return result


async def _cancel(task: asyncio.Future[Any] | None) -> None:
    if task is not None and not task.done():
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)


# ─────────────────────────────────────────────────────────────────────────────
# Source & 1:1 transforms
# ─────────────────────────────────────────────────────────────────────────────


class Source(GeneratorIterator[T]):
    """Wraps a finite or infinite sequence.

    Completion yields ``final`` (or a sync generator's return value),
    distinct from the intermediate values.
    """

    def __init__(self, sequence: Any, *, final: Any = None) -> None:
        if hasattr(sequence, "__anext__") or hasattr(sequence, "__next__"):
            producer = sequence
        elif hasattr(sequence, "__aiter__"):
            producer = sequence.__aiter__()
        else:
            producer = iter(sequence)
        super().__init__(producer, final=final)


class _Transform(StructuredIterator[U]):
    """Single-upstream combinator.

    Subclasses implement ``_consume``, which turns one upstream step into
    an output step, or None to pull again. Pulls and injected errors
    share it, so a step the producer yields after recovering from throw()
    is filtered, batched or expanded like any other.
    """

    def __init__(self, upstream: Any) -> None:
        super().__init__()
        self._upstream: StructuredIterator[Any] = iterate(upstream)

    async def _next(self) -> Step[U]:
        return await self._drive(await self._upstream.next())

    async def _throw(self, exc: BaseException) -> Step[U]:
        # Forward injected errors to the producer
        return await self._drive(await self._upstream.throw(exc))

    async def _drive(self, step: Step[Any]) -> Step[U]:
        while (out := await self._consume(step)) is None:
            step = await self._upstream.next()
        return out

    async def _consume(self, step: Step[Any]) -> Step[U] | None:
        return step

    async def _cleanup(self) -> None:
        await self._upstream.return_()


class Map(_Transform[U]):
    """Apply ``func`` (sync or async) to each item."""

    def __init__(self, upstream: Any, func: Callable[[Any], U | Awaitable[U]]) -> None:
        super().__init__(upstream)
        self._func = func

    async def _consume(self, step: Step[Any]) -> Step[U] | None:
        if step.done:
            return step
        return Step(await _call(self._func, step.value))


class Filter(_Transform[T]):
    """Keep items for which ``predicate`` is truthy."""

    def __init__(self, upstream: Any, predicate: Callable[[T], bool | Awaitable[bool]]) -> None:
        super().__init__(upstream)
        self._predicate = predicate

    async def _consume(self, step: Step[Any]) -> Step[T] | None:
        if step.done or await _call(self._predicate, step.value):
            return step
        return None


class Reduce(_Transform[U]):
    """Yield the running accumulator on every pull, complete with the final one."""

    def __init__(self, upstream: Any, func: Callable[[U, Any], U | Awaitable[U]], initial: U) -> None:
        super().__init__(upstream)
        self._func = func
        self._acc = initial

    async def _consume(self, step: Step[Any]) -> Step[U] | None:
        if step.done:
            return Step(self._acc, True)
        self._acc = await _call(self._func, self._acc, step.value)
        return Step(self._acc)


class Dedupe(_Transform[T]):
    """Drop items whose key was already seen. Keys must be hashable."""

    def __init__(self, upstream: Any, key: Callable[[T], Hashable] | None = None) -> None:
        super().__init__(upstream)
        self._key = key
        self._seen: set[Hashable] = set()

    async def _consume(self, step: Step[Any]) -> Step[T] | None:
        if step.done:
            return step
        marker = step.value if self._key is None else await _call(self._key, step.value)
        if marker in self._seen:
            return None
        self._seen.add(marker)
        return step


class Window(_Transform[list[T]]):
    """Fixed-size batches; a trailing partial batch is flushed before completion."""

    def __init__(self, upstream: Any, size: int) -> None:
        if size < 1:
            raise ValueError("window size must be >= 1")
        super().__init__(upstream)
        self._size = size
        self._batch: list[T] = []

    async def _consume(self, step: Step[Any]) -> Step[list[T]] | None:
        if step.done:
            # a completed upstream repeats its completion step on the next pull
            return self._flush() if self._batch else Step(step.value, True)
        self._batch.append(step.value)
        return self._flush() if len(self._batch) >= self._size else None

    def _flush(self) -> Step[list[T]]:
        batch, self._batch = self._batch, []
        return Step(batch)


class Buffer(_Transform[list[T]]):
    """Batches flushed when ``predicate(latest)`` holds or ``timeout`` elapses.

    The timeout clock starts at a batch's first item. A pull still in flight
    when it fires is kept for the next batch, never cancelled.
    """

    def __init__(
        self,
        upstream: Any,
        predicate: Callable[[T], bool | Awaitable[bool]] | None = None,
        *,
        timeout: float | None = None,
    ) -> None:
        super().__init__(upstream)
        self._predicate = predicate
        self._timeout = timeout if timeout is not None else get_settings().stream.buffer_timeout
        self._inflight: asyncio.Task[Step[Any]] | None = None
        self._batch: list[T] = []
        self._deadline: float | None = None

    async def _next(self) -> Step[list[T]]:
        loop = asyncio.get_running_loop()
        while True:
            if self._inflight is None:
                self._inflight = asyncio.ensure_future(self._upstream.next())
            task = self._inflight
            remaining = None if self._deadline is None else max(0.0, self._deadline - loop.time())
            done, _ = await asyncio.wait({task}, timeout=remaining)
            if not done:
                return self._flush()
            self._inflight = None
            if task.cancelled():
                return Step(self._result, True)
            if (out := await self._consume(task.result())) is not None:
                return out

    async def _throw(self, exc: BaseException) -> Step[list[T]]:
        if (task := self._inflight) is not None:
            # the producer is mid-pull: its item joins the batch, then the error is injected
            self._inflight = None
            pending = await task
            if pending.done:
                raise exc
            self._add(pending.value)
        if (out := await self._consume(await self._upstream.throw(exc))) is not None:
            return out
        return await self._next()

    async def _consume(self, step: Step[Any]) -> Step[list[T]] | None:
        if step.done:
            return self._flush() if self._batch else Step(step.value, True)
        self._add(step.value)
        if self._predicate is not None and await _call(self._predicate, step.value):
            return self._flush()
        return None

    def _add(self, value: T) -> None:
        self._batch.append(value)
        if self._deadline is None and self._timeout is not None:
            self._deadline = asyncio.get_running_loop().time() + self._timeout

    def _flush(self) -> Step[list[T]]:
        batch, self._batch, self._deadline = self._batch, [], None
        return Step(batch)

    async def _cleanup(self) -> None:
        await _cancel(self._inflight)
        self._inflight = None
        await super()._cleanup()


class FlatMap(_Transform[U]):
    """Expand each item into many; ``func`` returns anything iterate() accepts.

    While an item's expansion is being drained, throw() is delivered to it
    first; an error the expansion does not handle goes on to the upstream.
    """

    def __init__(self, upstream: Any, func: Callable[[Any], Any]) -> None:
        super().__init__(upstream)
        self._func = func
        self._inner: StructuredIterator[U] | None = None

    async def _next(self) -> Step[U]:
        if self._inner is not None:
            if not (step := await self._inner.next()).done:
                return step
            self._inner = None
        return await super()._next()

    async def _throw(self, exc: BaseException) -> Step[U]:
        if (inner := self._inner) is None:
            return await super()._throw(exc)
        try:
            step = await inner.throw(exc)
        except Exception as err:
            # unhandled by the expansion: the upstream producer gets it next
            self._inner = None
            return await super()._throw(err)
        if not step.done:
            return step
        self._inner = None
        return await super()._next()

    async def _consume(self, step: Step[Any]) -> Step[U] | None:
        if step.done:
            return step
        self._inner = iterate(await _call(self._func, step.value))
        if not (first := await self._inner.next()).done:
            return first
        self._inner = None
        return None

    async def _cleanup(self) -> None:
        if self._inner is not None:
            await self._inner.return_()
        await super()._cleanup()


# ─────────────────────────────────────────────────────────────────────────────
# Multi-stream combinators
# ─────────────────────────────────────────────────────────────────────────────


class _Combine(StructuredIterator[T]):
    """Multi-upstream combinator."""

    def __init__(self, *sources: Any) -> None:
        super().__init__()
        self._sources: list[StructuredIterator[Any]] = [iterate(s) for s in sources]

    async def _cleanup(self) -> None:
        for it in self._sources:
            await it.return_()


class Concat(_Combine[T]):
    """Exhaust each source, errors included, before pulling the next."""

    def __init__(self, *sources: Any) -> None:
        super().__init__(*sources)
        self._index = 0

    async def _next(self) -> Step[T]:
        while self._index < len(self._sources):
            step = await self._sources[self._index].next()
            if not step.done:
                return step
            if self._index == len(self._sources) - 1:
                return step
            self._index += 1
        return Step(None, True)


class Zip(_Combine[tuple[Any, ...]]):
    """One item from every source per step; stops at the first completed source."""

    async def _next(self) -> Step[tuple[Any, ...]]:
        if not self._sources:
            return Step(None, True)
        items: list[Any] = []
        for it in self._sources:
            step = await it.next()
            if step.done:
                return Step(None, True)  # cleanup cancels the rest
            items.append(step.value)
        return Step(tuple(items))


class RoundRobin(_Combine[T]):
    """Cycle sources in declared order, skipping completed ones."""

    def __init__(self, *sources: Any) -> None:
        super().__init__(*sources)
        self._order: deque[int] = deque(range(len(self._sources)))

    async def _next(self) -> Step[T]:
        while self._order:
            idx = self._order[0]
            step = await self._sources[idx].next()
            if step.done:
                self._order.popleft()
                continue
            self._order.rotate(-1)
            return step
        return Step(None, True)


class Race(_Combine[T]):
    """Pull every live source at once and yield in resolution order.

    Output order follows which pull resolves first, not declaration order.
    With ``tagged=True`` each value is yielded as ``(source_index, value)``.
    The first error from any source cancels the rest and propagates.
    """

    def __init__(self, *sources: Any, tagged: bool = False) -> None:
        super().__init__(*sources)
        self._tagged = tagged
        self._ready: deque[Resolution[int, Any]] = deque()
        self._signal: WaitSignal[None] = WaitSignal()
        self._mux: Multiplexer[int, Any] = Multiplexer(self._on_settle)
        self._started = False

    def _on_settle(self, resolution: Resolution[int, Any]) -> None:
        self._ready.append(resolution)
        self._signal.signal()

    async def _next(self) -> Step[T]:
        if not self._started:
            self._started = True
            for idx, it in enumerate(self._sources):
                self._mux.add(idx, it)
        while True:
            if self._ready:
                res = self._ready.popleft()
                if res.error is not None:
                    raise res.error
                if res.step is None or res.step.done:
                    continue
                self._mux.resume(res.key)
                return Step((res.key, res.step.value) if self._tagged else res.step.value)
            if self._state is IteratorState.CANCELLED:
                return Step(self._result, True)
            if not self._mux.live:
                return Step(None, True)
            await self._signal.wait()

    async def _cleanup(self) -> None:
        self._ready.clear()
        self._signal.signal()  # release a parked puller
        await self._mux.aclose()
        await super()._cleanup()


# ─────────────────────────────────────────────────────────────────────────────
# Function API
# ─────────────────────────────────────────────────────────────────────────────


def source(sequence: Any, *, final: Any = None) -> Source[Any]:
    """Wrap a sync or async sequence."""
    return Source(sequence, final=final)


def map_stream(stream: Any, func: Callable[[Any], Any]) -> Map[Any]:
    """Map function over stream items."""
    return Map(stream, func)


def filter_stream(stream: Any, predicate: Callable[[Any], Any]) -> Filter[Any]:
    """Filter stream items by predicate."""
    return Filter(stream, predicate)


def reduce_stream(stream: Any, func: Callable[[Any, Any], Any], initial: Any) -> Reduce[Any]:
    """Running fold; completes with the final accumulator."""
    return Reduce(stream, func, initial)


def dedupe_stream(stream: Any, key: Callable[[Any], Hashable] | None = None) -> Dedupe[Any]:
    """Drop already-seen items."""
    return Dedupe(stream, key)


def window_stream(stream: Any, size: int) -> Window[Any]:
    """Group items into fixed-size batches."""
    return Window(stream, size)


def buffer_stream(
    stream: Any,
    predicate: Callable[[Any], Any] | None = None,
    *,
    timeout: float | None = None,
) -> Buffer[Any]:
    """Group items until ``predicate`` holds on the latest item or ``timeout`` elapses.

    Example:
        >>> # Flush on sentence end, or after 200ms of silence
        >>> async for batch in buffer_stream(tokens, lambda t: t.endswith("."), timeout=0.2):
        ...     render(batch)
    """
    return Buffer(stream, predicate, timeout=timeout)


def flat_map_stream(stream: Any, func: Callable[[Any], Any]) -> FlatMap[Any]:
    """Expand each item into a sub-sequence."""
    return FlatMap(stream, func)


def concat_streams(*streams: Any) -> Concat[Any]:
    """Chain multiple streams sequentially."""
    return Concat(*streams)


def zip_streams(*streams: Any) -> Zip:
    """Zip multiple streams together; stops when the shortest is exhausted."""
    return Zip(*streams)


def round_robin_streams(*streams: Any) -> RoundRobin[Any]:
    """Interleave streams in declared order until all are exhausted."""
    return RoundRobin(*streams)


def race_streams(*streams: Any, tagged: bool = False) -> Race[Any]:
    """Merge streams in resolution order.

    Example:
        >>> async for x in race_streams(slow(), fast()):
        ...     print(x)  # fast() items first, as they resolve
    """
    return Race(*streams, tagged=tagged)
