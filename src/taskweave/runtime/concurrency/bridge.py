"""Push-pull bridge: decouple an eager producer from a lazy consumer.

The producer pushes at its own pace; the consumer pulls through the
StructuredIterator protocol. Internally a FIFO deque, a closed flag and a
WaitSignal. Closing never discards queued work: the consumer drains
everything already pushed before it observes completion.

By default the queue is unbounded, which lets a fast producer grow it
without limit. Pass ``maxsize`` (or set TASKWEAVE_BRIDGE_MAXSIZE) to bound
it and pick an OverflowPolicy for what happens when it is full.

Example:
    >>> jobs = BridgeBuffer()
    >>> runner = TaskPoolRunner(jobs, capacity=4)
    >>> async def discover():
    ...     async for url in crawl_frontier():
    ...         await jobs.push(lambda url=url: fetch(url))
    ...     jobs.close()
"""

from __future__ import annotations

import asyncio
from collections import deque
from concurrent.futures import Future
from enum import StrEnum
from typing import TypeVar

from taskweave.foundation.config import get_settings
from taskweave.foundation.errors import BridgeOverflowError, SinkClosedError
from taskweave.runtime.observability import get_logger

from .iterator import IteratorState, Step, StructuredIterator
from .push import PushSink
from .signal import WaitSignal

T = TypeVar("T")

__all__ = ["OverflowPolicy", "BridgeBuffer", "BridgeSink"]

log = get_logger("taskweave.bridge")


class OverflowPolicy(StrEnum):
    """What push() does when a bounded bridge is full."""
    BLOCK = "block"              # wait for the consumer to make room
    DROP_NEWEST = "drop_newest"  # discard the value being pushed
    DROP_OLDEST = "drop_oldest"  # evict the oldest queued value
    ERROR = "error"              # raise BridgeOverflowError


class BridgeBuffer(StructuredIterator[T]):
    """FIFO buffer with a push side and a pull side.

    Attributes:
        name: Label used in log context
        maxsize: Queue bound, 0 for unbounded
        overflow: Policy applied when a bounded queue is full
    """

    def __init__(
        self,
        maxsize: int | None = None,
        overflow: OverflowPolicy | str | None = None,
        *,
        name: str | None = None,
    ) -> None:
        super().__init__()
        settings = get_settings().bridge
        self.name = name or "bridge"
        self.maxsize = settings.maxsize if maxsize is None else maxsize
        if self.maxsize < 0:
            raise ValueError("maxsize must be >= 0")
        self.overflow = OverflowPolicy(overflow if overflow is not None else settings.overflow)
        self._queue: deque[T] = deque()
        self._closed = False
        self._error: BaseException | None = None
        self._readable: WaitSignal[None] = WaitSignal()
        self._writable: WaitSignal[None] = WaitSignal()
        self._dropped = 0
        self._loop: asyncio.AbstractEventLoop | None = None

    # ─────────────────────────────────────────────────────────────────
    # Introspection
    # ─────────────────────────────────────────────────────────────────

    def __len__(self) -> int:
        return len(self._queue)

    @property
    def closed(self) -> bool:
        """Whether the producer side is finished (closed or failed)."""
        return self._closed

    @property
    def dropped(self) -> int:
        """Values discarded by a DROP_* overflow policy."""
        return self._dropped

    @property
    def full(self) -> bool:
        return self.maxsize > 0 and len(self._queue) >= self.maxsize

    # ─────────────────────────────────────────────────────────────────
    # Producer side
    # ─────────────────────────────────────────────────────────────────

    def _check_open(self) -> None:
        if self._closed or self._state is IteratorState.CANCELLED:
            raise SinkClosedError(f"bridge {self.name!r} is closed")

    async def push(self, value: T) -> bool:
        """Enqueue ``value`` and wake the consumer.

        Returns:
            False if the value was discarded by DROP_NEWEST, else True

        Raises:
            SinkClosedError: If the producer closed or the consumer cancelled
            BridgeOverflowError: If full under the ERROR policy
        """
        self._bind_loop()
        self._check_open()
        while self.full:
            match self.overflow:
                case OverflowPolicy.BLOCK:
                    await self._writable.wait()
                    self._check_open()
                case OverflowPolicy.DROP_NEWEST:
                    self._dropped += 1
                    log.warning("bridge full, dropping newest", bridge=self.name, dropped=self._dropped)
                    return False
                case OverflowPolicy.DROP_OLDEST:
                    self._queue.popleft()
                    self._dropped += 1
                    log.warning("bridge full, dropping oldest", bridge=self.name, dropped=self._dropped)
                case OverflowPolicy.ERROR:
                    raise BridgeOverflowError(f"bridge {self.name!r} is full ({self.maxsize} items)")
        self._queue.append(value)
        self._readable.signal()
        return True

    def close(self) -> None:
        """Mark the producer side done. Queued values are still delivered."""
        if self._closed:
            return
        self._closed = True
        self._readable.signal()
        self._writable.signal()

    def fail(self, exc: BaseException) -> None:
        """Finish the producer side with an error.

        The consumer receives queued values first, then ``exc``; a consumer
        already parked in wait() is woken with it.
        """
        if self._closed:
            return
        self._closed, self._error = True, exc
        if not self._queue:
            self._readable.fail(exc)
        self._writable.signal()

    def sink(self) -> BridgeSink[T]:
        """Expose the producer side as a PushSink."""
        return BridgeSink(self)

    # Cross-thread producers

    def push_threadsafe(self, value: T, loop: asyncio.AbstractEventLoop | None = None) -> Future[bool]:
        """Schedule push() from another thread. Returns a concurrent Future."""
        return asyncio.run_coroutine_threadsafe(self.push(value), self._require_loop(loop))

    def close_threadsafe(self, loop: asyncio.AbstractEventLoop | None = None) -> None:
        """Schedule close() from another thread."""
        self._require_loop(loop).call_soon_threadsafe(self.close)

    def _bind_loop(self) -> None:
        if self._loop is None:
            self._loop = asyncio.get_running_loop()

    def _require_loop(self, loop: asyncio.AbstractEventLoop | None) -> asyncio.AbstractEventLoop:
        if (loop := loop or self._loop) is None:
            raise RuntimeError(
                "No event loop available. Either pass loop explicitly "
                "or push/pull once from within the loop first."
            )
        return loop

    # ─────────────────────────────────────────────────────────────────
    # Consumer side
    # ─────────────────────────────────────────────────────────────────

    async def pull(self) -> Step[T]:
        """Alias for next()."""
        return await self.next()

    async def _next(self) -> Step[T]:
        self._bind_loop()
        while True:
            if self._queue:
                value = self._queue.popleft()
                self._writable.signal()
                return Step(value)
            if self._state is IteratorState.CANCELLED:
                return Step(self._result, True)
            if self._error is not None:
                raise self._error
            if self._closed:
                return Step(None, True)
            await self._readable.wait()

    async def _cleanup(self) -> None:
        discarded = len(self._queue)
        self._queue.clear()
        if self._state is IteratorState.CANCELLED and discarded:
            log.debug("bridge cancelled with queued values", bridge=self.name, discarded=discarded)
        # unblock parked pullers and pushers
        self._readable.signal()
        self._writable.signal()

    def __repr__(self) -> str:
        return f"<BridgeBuffer {self.name!r} queued={len(self._queue)} closed={self._closed} state={self._state.value}>"


class BridgeSink(PushSink[T]):
    """Producer side of a BridgeBuffer as a push sink: next pushes, return_ closes, throw fails."""

    def __init__(self, bridge: BridgeBuffer[T]) -> None:
        super().__init__()
        self._bridge = bridge

    async def _on_next(self, value: T) -> None:
        await self._bridge.push(value)

    async def _on_return(self) -> None:
        self._bridge.close()

    async def _on_throw(self, exc: BaseException) -> None:
        self._bridge.fail(exc)
