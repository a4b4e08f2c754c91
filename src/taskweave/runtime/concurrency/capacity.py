"""Hierarchical counting semaphore for capacity-bounded pools.

A CapacitySource hands out units up to ``limit``. A child source also
consumes one unit of its parent per unit it grants, so several pools with
their own caps can share one global ceiling: two children at their own
limits still leave parent headroom for a third, while an idle child lets
its siblings burst past a naive fair share.

Grants are first-come first-served at every level. Releasing hands the
unit straight to the oldest waiter, so a late arrival can never barge
ahead of someone already queued.

Example:
    >>> shared = CapacitySource(8, name="global")
    >>> crawl = shared.child(4, name="crawl")
    >>> index = shared.child(6, name="index")
    >>> async with crawl:
    ...     await fetch(url)   # holds one crawl unit and one global unit
"""

from __future__ import annotations

import asyncio
from collections import deque
from typing import TYPE_CHECKING

from taskweave.foundation.errors import CapacityError
from taskweave.runtime.observability import get_logger

if TYPE_CHECKING:
    from types import TracebackType

__all__ = ["CapacitySource"]

log = get_logger("taskweave.capacity")


class CapacitySource:
    """Counting semaphore with an optional parent.

    Attributes:
        name: Label used in log context
        peak: Highest ``used`` ever observed
    """

    __slots__ = ("name", "peak", "_limit", "_used", "_parent", "_waiters")

    def __init__(self, limit: int, *, parent: CapacitySource | None = None, name: str | None = None) -> None:
        if limit < 0:
            raise ValueError("limit must be >= 0")
        self.name = name or "capacity"
        self.peak = 0
        self._limit = limit
        self._used = 0
        self._parent = parent  # non-owning
        self._waiters: deque[asyncio.Future[None]] = deque()

    @property
    def limit(self) -> int:
        return self._limit

    @property
    def used(self) -> int:
        return self._used

    @property
    def available(self) -> int:
        """Units free at this level, ignoring the parent."""
        return self._limit - self._used

    @property
    def waiting(self) -> int:
        """Acquirers queued at this level."""
        return sum(1 for f in self._waiters if not f.done())

    @property
    def parent(self) -> CapacitySource | None:
        return self._parent

    def child(self, limit: int, *, name: str | None = None) -> CapacitySource:
        """Create a source capped at ``limit`` that also draws from this one."""
        return CapacitySource(limit, parent=self, name=name)

    def locked(self) -> bool:
        """Whether acquire() would suspend right now."""
        if self._used >= self._limit or self.waiting:
            return True
        return self._parent is not None and self._parent.locked()

    # ─────────────────────────────────────────────────────────────────
    # Acquire / release
    # ─────────────────────────────────────────────────────────────────

    async def acquire(self) -> None:
        """Suspend until a unit is free here and at every ancestor, then take them.

        The local unit is reserved first, then the parent's. Cancellation
        while waiting gives back whatever was already taken.
        """
        await self._acquire_local()
        if self._parent is None:
            return
        try:
            await self._parent.acquire()
        except BaseException:
            self._release_local()
            raise

    def release(self) -> None:
        """Return one unit here and at every ancestor.

        Raises:
            CapacityError: If nothing is held
        """
        self._release_local()
        if self._parent is not None:
            self._parent.release()

    async def _acquire_local(self) -> None:
        if self._used < self._limit and not self.waiting:
            self._take()
            return
        future: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        self._waiters.append(future)
        log.debug("capacity contended", source=self.name, used=self._used, limit=self._limit,
                  waiting=len(self._waiters))
        try:
            await future
        except asyncio.CancelledError:
            if future.done() and not future.cancelled():
                # unit was handed over just before cancellation
                self._release_local()
            raise
        finally:
            if future in self._waiters:
                self._waiters.remove(future)

    def _take(self) -> None:
        self._used += 1
        self.peak = max(self.peak, self._used)

    def _release_local(self) -> None:
        if self._used <= 0:
            raise CapacityError(f"capacity source {self.name!r} released more than acquired")
        while self._waiters:
            future = self._waiters.popleft()
            if not future.done():
                future.set_result(None)  # hand-off: ``used`` stays the same
                return
        self._used -= 1

    # ─────────────────────────────────────────────────────────────────
    # Context manager
    # ─────────────────────────────────────────────────────────────────

    async def __aenter__(self) -> CapacitySource:
        await self.acquire()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        self.release()

    def __repr__(self) -> str:
        parent = f" parent={self._parent.name!r}" if self._parent is not None else ""
        return f"<CapacitySource {self.name!r} used={self._used}/{self._limit}{parent}>"
