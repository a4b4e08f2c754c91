"""Resettable one-shot gate used by the bridge buffer and the pool runner.

signal() wakes everyone currently parked in wait(); a signal fired while
nobody waits is simply unobserved, never stored as a debt for later
waiters. Each round of waiting gets a fresh future.
"""

from __future__ import annotations

import asyncio
from typing import Generic, TypeVar

T = TypeVar("T")

__all__ = ["WaitSignal"]


class WaitSignal(Generic[T]):
    """Gate with wait()/signal(value)/fail(exc).

    Example:
        >>> gate = WaitSignal()
        >>> waiter = asyncio.create_task(gate.wait())
        >>> await asyncio.sleep(0)
        >>> gate.signal("go")
        >>> await waiter
        'go'
    """

    __slots__ = ("_future", "_waiters")

    def __init__(self) -> None:
        self._future: asyncio.Future[T | None] | None = None
        self._waiters = 0

    @property
    def waiting(self) -> int:
        """Number of coroutines currently parked in wait()."""
        return self._waiters

    async def wait(self) -> T | None:
        """Suspend until the next signal(); raises if fail() is called meanwhile."""
        if self._future is None or self._future.done():
            self._future = asyncio.get_running_loop().create_future()
            self._future.add_done_callback(_consume)
        self._waiters += 1
        try:
            # shield: one cancelled waiter must not cancel the shared round
            return await asyncio.shield(self._future)
        finally:
            self._waiters -= 1

    def signal(self, value: T | None = None) -> bool:
        """Wake all current waiters with ``value``. Returns whether anyone was waiting."""
        future = self._take()
        if future is None:
            return False
        future.set_result(value)
        return True

    def fail(self, exc: BaseException) -> bool:
        """Raise ``exc`` in all current waiters. Returns whether anyone was waiting."""
        future = self._take()
        if future is None:
            return False
        future.set_exception(exc)
        return True

    def _take(self) -> asyncio.Future[T | None] | None:
        future, self._future = self._future, None
        if future is None or future.done() or self._waiters == 0:
            return None
        return future

    def __repr__(self) -> str:
        return f"<WaitSignal waiting={self._waiters}>"


def _consume(future: asyncio.Future[object]) -> None:
    # Mark exceptions as retrieved when every waiter was cancelled first
    if not future.cancelled():
        future.exception()
