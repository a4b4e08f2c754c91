"""Structured iterators: stateful pull sequences with cooperative cancel.

A StructuredIterator is the contract every pull combinator, the bridge
buffer and the task pool runner implement:

    - next():    pull one Step(value, done)
    - return_(): cancel cooperatively, releasing upstream resources
    - throw():   inject an error the producer may handle or re-raise

Once an iterator reaches a terminal state (completed, errored, cancelled)
all three operations are no-ops that return the terminal step again.

Example:
    >>> it = iterate(fetch_pages())          # any async/sync generator
    >>> step = await it.next()
    >>> while not step.done:
    ...     handle(step.value)
    ...     step = await it.next()
    >>>
    >>> async with iterate(cursor_rows()) as rows:   # return_() on exit
    ...     async for row in rows:
    ...         ...
"""

from __future__ import annotations

import asyncio
import inspect
from abc import ABC, abstractmethod
from collections.abc import AsyncIterable, AsyncIterator, Awaitable, Iterable, Iterator
from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING, Any, Generic, TypeVar

if TYPE_CHECKING:
    from types import TracebackType

T = TypeVar("T")

__all__ = [
    "IteratorState",
    "Step",
    "StructuredIterator",
    "GeneratorIterator",
    "AwaitableIterator",
    "iterate",
]


class IteratorState(StrEnum):
    """Iterator lifecycle states."""
    CREATED = "created"      # No pull issued yet
    RUNNING = "running"      # Pulled at least once, not terminal
    COMPLETED = "completed"  # Producer exhausted
    ERRORED = "errored"      # Producer raised
    CANCELLED = "cancelled"  # return_() was called

    @property
    def terminal(self) -> bool:
        return self in _TERMINAL


_TERMINAL = frozenset({IteratorState.COMPLETED, IteratorState.ERRORED, IteratorState.CANCELLED})


@dataclass(slots=True, frozen=True)
class Step(Generic[T]):
    """One pull result. When ``done`` is true, ``value`` is the completion value."""

    value: T | None = None
    done: bool = False


class StructuredIterator(ABC, Generic[T]):
    """Base class for pull sequences with next/return_/throw.

    Subclasses implement ``_next`` and optionally ``_throw`` and ``_cleanup``.
    ``_cleanup`` runs exactly once, on whichever terminal path is taken
    first, and is where upstream iterators get their ``return_()``.
    """

    def __init__(self) -> None:
        self._state = IteratorState.CREATED
        self._result: Any = None
        self._released = False

    @property
    def state(self) -> IteratorState:
        return self._state

    @property
    def done(self) -> bool:
        """Whether the iterator reached a terminal state."""
        return self._state.terminal

    @property
    def result(self) -> Any:
        """Completion value (or the value passed to return_())."""
        return self._result

    # ─────────────────────────────────────────────────────────────────
    # Public protocol
    # ─────────────────────────────────────────────────────────────────

    async def next(self) -> Step[T]:
        """Pull the next step."""
        if self._state.terminal:
            return Step(self._result, True)
        self._state = IteratorState.RUNNING
        try:
            step = await self._next()
        except Exception:
            if not self._state.terminal:
                await self._settle(IteratorState.ERRORED, None)
            raise
        return await self._after(step)

    async def return_(self, value: Any = None) -> Step[T]:
        """Cancel cooperatively. Idempotent; releases resources once."""
        if self._state.terminal:
            return Step(self._result, True)
        await self._settle(IteratorState.CANCELLED, value)
        return Step(value, True)

    async def throw(self, exc: BaseException) -> Step[T]:
        """Inject ``exc``. The producer may handle it and yield, or re-raise."""
        if self._state.terminal:
            return Step(self._result, True)
        self._state = IteratorState.RUNNING
        try:
            step = await self._throw(exc)
        except Exception:
            if not self._state.terminal:
                await self._settle(IteratorState.ERRORED, None)
            raise
        return await self._after(step)

    # ─────────────────────────────────────────────────────────────────
    # Subclass hooks
    # ─────────────────────────────────────────────────────────────────

    @abstractmethod
    async def _next(self) -> Step[T]:
        """Produce the next step."""

    async def _throw(self, exc: BaseException) -> Step[T]:
        raise exc

    async def _cleanup(self) -> None:
        """Release resources and cancel upstreams."""

    # ─────────────────────────────────────────────────────────────────
    # Internals
    # ─────────────────────────────────────────────────────────────────

    async def _after(self, step: Step[T]) -> Step[T]:
        if self._state.terminal:
            # return_() raced with this pull
            return Step(self._result, True)
        if step.done:
            await self._settle(IteratorState.COMPLETED, step.value)
        return step

    async def _settle(self, state: IteratorState, result: Any) -> None:
        self._state, self._result = state, result
        if not self._released:
            self._released = True
            await self._cleanup()

    # ─────────────────────────────────────────────────────────────────
    # Python protocols
    # ─────────────────────────────────────────────────────────────────

    def __aiter__(self) -> AsyncIterator[T]:
        return self

    async def __anext__(self) -> T:
        step = await self.next()
        if step.done:
            raise StopAsyncIteration
        return step.value  # type: ignore[return-value]

    async def __aenter__(self) -> StructuredIterator[T]:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> bool:
        await self.return_()
        return False

    def __repr__(self) -> str:
        return f"<{type(self).__name__} state={self._state.value}>"


class GeneratorIterator(StructuredIterator[T]):
    """Structured iterator over an async or sync iterator/generator.

    A sync generator's ``return`` value becomes the completion value;
    otherwise ``final`` is used. Cleanup closes the generator.

    Async pulls run as a tracked task so return_() can cancel one that is
    still suspended inside the generator before closing it; the parked
    puller then receives the terminal step.
    """

    def __init__(self, producer: AsyncIterator[T] | Iterator[T], *, final: Any = None) -> None:
        super().__init__()
        self._producer = producer
        self._final = final
        self._is_async = hasattr(producer, "__anext__")
        self._inflight: asyncio.Task[Step[T]] | None = None

    async def _pull(self) -> Step[T]:
        try:
            return Step(await self._producer.__anext__())  # type: ignore[union-attr]
        except StopAsyncIteration:
            return Step(self._final, True)

    async def _next(self) -> Step[T]:
        if self._is_async:
            task = self._inflight = asyncio.ensure_future(self._pull())
            try:
                await asyncio.wait({task})
            except asyncio.CancelledError:
                task.cancel()  # left in _inflight for cleanup to await
                raise
            self._inflight = None
            if task.cancelled() and self._state is IteratorState.CANCELLED:
                return Step(self._result, True)
            return task.result()
        try:
            return Step(next(self._producer))  # type: ignore[arg-type]
        except StopIteration as stop:
            return Step(self._final if stop.value is None else stop.value, True)

    async def _throw(self, exc: BaseException) -> Step[T]:
        if self._is_async:
            athrow = getattr(self._producer, "athrow", None)
            if athrow is None:
                raise exc
            try:
                return Step(await athrow(exc))
            except StopAsyncIteration:
                return Step(self._final, True)
        throw = getattr(self._producer, "throw", None)
        if throw is None:
            raise exc
        try:
            return Step(throw(exc))
        except StopIteration as stop:
            return Step(self._final if stop.value is None else stop.value, True)

    async def _cleanup(self) -> None:
        if self._is_async:
            task, self._inflight = self._inflight, None
            if task is not None and not task.done():
                task.cancel()
                await asyncio.gather(task, return_exceptions=True)
            if (aclose := getattr(self._producer, "aclose", None)) is not None:
                await aclose()
        elif (close := getattr(self._producer, "close", None)) is not None:
            close()


class AwaitableIterator(StructuredIterator[T]):
    """A single awaitable as an iterator: no intermediate values, its result completes it."""

    def __init__(self, awaitable: Awaitable[T]) -> None:
        super().__init__()
        self._awaitable: Awaitable[T] | None = awaitable

    async def _next(self) -> Step[T]:
        awaitable, self._awaitable = self._awaitable, None
        if awaitable is None:
            return Step(None, True)
        return Step(await awaitable, True)

    async def _cleanup(self) -> None:
        awaitable, self._awaitable = self._awaitable, None
        if inspect.iscoroutine(awaitable):
            awaitable.close()  # never awaited
        elif isinstance(awaitable, asyncio.Future):
            awaitable.cancel()


def iterate(obj: Any, *, final: Any = None) -> StructuredIterator[Any]:
    """Coerce a producer into a StructuredIterator.

    Accepts, in order: a StructuredIterator (returned as-is), an async
    iterator or iterable, an awaitable (one completion value), or any sync
    iterable.

    Raises:
        TypeError: If ``obj`` is none of the above
    """
    if isinstance(obj, StructuredIterator):
        return obj
    if isinstance(obj, AsyncIterator):
        return GeneratorIterator(obj, final=final)
    if isinstance(obj, AsyncIterable):
        return GeneratorIterator(obj.__aiter__(), final=final)
    if inspect.isawaitable(obj):
        return AwaitableIterator(obj)
    if isinstance(obj, Iterator):
        return GeneratorIterator(obj, final=final)
    if isinstance(obj, Iterable):
        return GeneratorIterator(iter(obj), final=final)
    raise TypeError(f"cannot iterate over {type(obj).__name__!r}")
