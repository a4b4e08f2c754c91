"""Hierarchical, capacity-bounded task pool runner.

Consumes a pull source of starters (zero-argument callables that begin a
task and return its progress iterator) and runs them under a
CapacitySource, surfacing every progress value as a tagged envelope.

Scheduling:
    1. Pull the next starter. While the source has nothing, no unit is held.
    2. Acquire one capacity unit, then invoke the starter.
    3. Multiplex all running tasks in resolution order (one pull in flight
       per task, re-issued when its value is delivered).
    4. When a task finishes or fails its unit is released right away, from
       the pull's own completion, and the next starter is pulled without
       waiting for the consumer to take the Final/Error envelope.

Faults inside a starter or a task become ErrorEnvelopes and never stop the
pool. A fault in the task source stops new starts; running tasks finish,
then the fault propagates out of the envelope stream.

Known limitation: a task parked on indefinite outside input (not ordinary
I/O latency) still holds its unit, since the runner cannot tell "paused"
from "computing". Run such tasks outside the pool.

Example:
    >>> def starters():
    ...     for url in urls:
    ...         yield lambda url=url: fetch(url)   # coroutine -> one Final
    >>>
    >>> async for env in TaskPoolRunner(starters(), capacity=4).run_tasks():
    ...     match env:
    ...         case IntermediateEnvelope(task_id, value): progress(task_id, value)
    ...         case FinalEnvelope(task_id, value): done(task_id, value)
    ...         case ErrorEnvelope(task_id, error): failed(task_id, error)
"""

from __future__ import annotations

import asyncio
import itertools
import time
from collections import deque
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any, ClassVar, Generic, TypeVar, Union

from taskweave.foundation.config import get_settings
from taskweave.foundation.errors import TaskFault
from taskweave.runtime.observability import get_logger

from .capacity import CapacitySource
from .iterator import IteratorState, Step, StructuredIterator, iterate
from .multiplex import Multiplexer, Resolution
from .signal import WaitSignal

T = TypeVar("T")

__all__ = [
    "TaskState",
    "EnvelopeKind",
    "IntermediateEnvelope",
    "FinalEnvelope",
    "ErrorEnvelope",
    "ProgressEnvelope",
    "TaskRecord",
    "PoolStats",
    "TaskStream",
    "TaskPoolRunner",
    "run_tasks",
]


class TaskState(StrEnum):
    """Task lifecycle states."""
    PENDING = "pending"      # Pulled, waiting for a capacity unit
    RUNNING = "running"      # Starter invoked, iterator live
    COMPLETED = "completed"  # Iterator exhausted
    FAILED = "failed"        # Starter or iterator raised
    CANCELLED = "cancelled"  # Stream was cancelled while running


class EnvelopeKind(StrEnum):
    INTERMEDIATE = "intermediate"
    FINAL = "final"
    ERROR = "error"


# ─────────────────────────────────────────────────────────────────────────────
# Envelopes
# ─────────────────────────────────────────────────────────────────────────────


@dataclass(slots=True, frozen=True)
class IntermediateEnvelope(Generic[T]):
    """A progress value yielded by a running task."""

    task_id: int
    value: T
    kind: ClassVar[EnvelopeKind] = EnvelopeKind.INTERMEDIATE


@dataclass(slots=True, frozen=True)
class FinalEnvelope(Generic[T]):
    """The completion value of a finished task."""

    task_id: int
    value: T
    kind: ClassVar[EnvelopeKind] = EnvelopeKind.FINAL


@dataclass(slots=True, frozen=True)
class ErrorEnvelope:
    """A fault raised by a task's starter or iterator."""

    task_id: int
    error: BaseException
    kind: ClassVar[EnvelopeKind] = EnvelopeKind.ERROR

    @property
    def fault(self) -> TaskFault:
        """Serializable view of the error."""
        return TaskFault.from_exception(self.task_id, self.error)


ProgressEnvelope = Union[IntermediateEnvelope[Any], FinalEnvelope[Any], ErrorEnvelope]


# ─────────────────────────────────────────────────────────────────────────────
# Bookkeeping
# ─────────────────────────────────────────────────────────────────────────────


@dataclass(slots=True)
class TaskRecord:
    """Runner-side record of one task."""

    id: int
    state: TaskState = TaskState.PENDING
    started_at: float | None = None
    finished_at: float | None = None

    @property
    def elapsed(self) -> float | None:
        if self.started_at is None or self.finished_at is None:
            return None
        return self.finished_at - self.started_at


@dataclass(slots=True)
class PoolStats:
    """Counters for one run; the completion value of the envelope stream."""

    started: int = 0
    completed: int = 0
    failed: int = 0
    cancelled: int = 0
    peak_running: int = 0
    task_ids: list[int] = field(default_factory=list, repr=False)


# ─────────────────────────────────────────────────────────────────────────────
# Envelope stream
# ─────────────────────────────────────────────────────────────────────────────


class TaskStream(StructuredIterator[ProgressEnvelope]):
    """The envelope stream produced by TaskPoolRunner.run_tasks().

    The scheduler starts on the first pull. Cancelling the stream (return_())
    cancels the scheduler, closes every running task iterator and the task
    source, and gives back every unit the tasks held.
    """

    def __init__(self, tasks: StructuredIterator[Any], capacity: CapacitySource, *, name: str) -> None:
        super().__init__()
        self.name = name
        self.stats = PoolStats()
        self._tasks = tasks
        self._capacity = capacity
        self._signal: WaitSignal[None] = WaitSignal()
        self._mux: Multiplexer[int, Any] = Multiplexer(self._on_settle)
        self._running: dict[int, TaskRecord] = {}
        self._ready: deque[ProgressEnvelope] = deque()
        self._ids = itertools.count(1)
        self._scheduler: asyncio.Task[None] | None = None
        self._source_done = False
        self._source_error: Exception | None = None
        self._log = get_logger("taskweave.runner", pool=name)

    @property
    def running(self) -> list[TaskRecord]:
        """Records of tasks currently holding a capacity unit."""
        return list(self._running.values())

    # ─────────────────────────────────────────────────────────────────
    # Scheduler
    # ─────────────────────────────────────────────────────────────────

    def _ensure_started(self) -> None:
        if self._scheduler is None:
            self._scheduler = asyncio.create_task(self._schedule(), name=f"taskweave-{self.name}-scheduler")

    async def _schedule(self) -> None:
        try:
            while True:
                step = await self._tasks.next()
                if step.done:
                    break
                await self._launch(step.value)
        except Exception as exc:
            self._source_error = exc
            self._log.error("task source failed", error=repr(exc), running=len(self._running))
        self._source_done = True
        self._log.debug("task source exhausted", started=self.stats.started)
        self._signal.signal()

    async def _launch(self, starter: Any) -> None:
        record = TaskRecord(next(self._ids))
        await self._capacity.acquire()
        record.state, record.started_at = TaskState.RUNNING, time.monotonic()
        self.stats.started += 1
        self.stats.task_ids.append(record.id)
        try:
            if not callable(starter):
                raise TypeError(f"task starter must be callable, got {type(starter).__name__}")
            iterator = iterate(starter())
        except Exception as exc:
            self._capacity.release()
            self._finish(record, TaskState.FAILED)
            self._log.warning("task starter failed", task_id=record.id, error=repr(exc))
            self._emit(ErrorEnvelope(record.id, exc))
            return
        self._running[record.id] = record
        self.stats.peak_running = max(self.stats.peak_running, len(self._running))
        self._log.debug("task started", task_id=record.id, running=len(self._running))
        self._mux.add(record.id, iterator)

    def _on_settle(self, resolution: Resolution[int, Any]) -> None:
        record = self._running.get(resolution.key)
        if record is None:
            return
        if resolution.error is not None:
            self._release(record, TaskState.FAILED)
            self._log.warning("task failed", task_id=record.id, error=repr(resolution.error))
            self._emit(ErrorEnvelope(record.id, resolution.error))
        elif resolution.step is not None and resolution.step.done:
            self._release(record, TaskState.COMPLETED)
            self._log.debug("task completed", task_id=record.id, elapsed=record.elapsed)
            self._emit(FinalEnvelope(record.id, resolution.step.value))
        elif resolution.step is not None:
            self._emit(IntermediateEnvelope(record.id, resolution.step.value))

    def _release(self, record: TaskRecord, state: TaskState) -> None:
        del self._running[record.id]
        self._capacity.release()
        self._finish(record, state)

    def _finish(self, record: TaskRecord, state: TaskState) -> None:
        record.state, record.finished_at = state, time.monotonic()
        match state:
            case TaskState.COMPLETED: self.stats.completed += 1
            case TaskState.FAILED: self.stats.failed += 1
            case TaskState.CANCELLED: self.stats.cancelled += 1

    def _emit(self, envelope: ProgressEnvelope) -> None:
        self._ready.append(envelope)
        self._signal.signal()

    # ─────────────────────────────────────────────────────────────────
    # StructuredIterator hooks
    # ─────────────────────────────────────────────────────────────────

    async def _next(self) -> Step[ProgressEnvelope]:
        self._ensure_started()
        while True:
            if self._ready:
                envelope = self._ready.popleft()
                if isinstance(envelope, IntermediateEnvelope):
                    self._mux.resume(envelope.task_id)
                return Step(envelope)
            if self._state is IteratorState.CANCELLED:
                return Step(self._result, True)
            if self._source_done and not self._running:
                if self._source_error is not None:
                    raise self._source_error
                return Step(self.stats, True)
            await self._signal.wait()

    async def _cleanup(self) -> None:
        scheduler, self._scheduler = self._scheduler, None
        if scheduler is not None and not scheduler.done():
            scheduler.cancel()
            await asyncio.gather(scheduler, return_exceptions=True)
        # give units back before awaiting any iterator cleanup
        cancelled = list(self._running.values())
        for record in cancelled:
            self._release(record, TaskState.CANCELLED)
        if cancelled:
            self._log.info("pool cancelled", cancelled=len(cancelled))
        self._ready.clear()
        self._signal.signal()
        try:
            await self._mux.aclose()
        finally:
            await self._tasks.return_()


# ─────────────────────────────────────────────────────────────────────────────
# Runner
# ─────────────────────────────────────────────────────────────────────────────


class TaskPoolRunner:
    """Runs starters from ``tasks`` under ``capacity``.

    Args:
        tasks: Anything iterate() accepts yielding starters: a list, a
            generator discovering work as it goes, or a BridgeBuffer fed by
            an independent producer
        capacity: A CapacitySource (possibly a child of a shared one), an
            int limit, or None for TASKWEAVE_POOL_LIMIT
        name: Label used in log context
    """

    def __init__(
        self,
        tasks: Any,
        capacity: CapacitySource | int | None = None,
        *,
        name: str | None = None,
    ) -> None:
        settings = get_settings().pool
        self.name = name or settings.name
        if capacity is None:
            capacity = settings.limit
        if isinstance(capacity, int):
            capacity = CapacitySource(capacity, name=self.name)
        self.capacity = capacity
        self._tasks = tasks

    def run_tasks(self) -> TaskStream:
        """Start a stream of ProgressEnvelopes over the task source."""
        return TaskStream(iterate(self._tasks), self.capacity, name=self.name)

    def __aiter__(self) -> TaskStream:
        return self.run_tasks()

    def __repr__(self) -> str:
        return f"<TaskPoolRunner {self.name!r} capacity={self.capacity!r}>"


def run_tasks(
    tasks: Any,
    capacity: CapacitySource | int | None = None,
    *,
    name: str | None = None,
) -> TaskStream:
    """Shorthand for TaskPoolRunner(tasks, capacity, name=name).run_tasks()."""
    return TaskPoolRunner(tasks, capacity, name=name).run_tasks()
