"""Tests for the hierarchical, capacity-bounded task pool runner."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Callable, Iterator
from typing import Any

import pytest

from taskweave import (
    BridgeBuffer,
    CapacitySource,
    EnvelopeKind,
    ErrorCode,
    ErrorEnvelope,
    FinalEnvelope,
    IntermediateEnvelope,
    PoolStats,
    Step,
    TaskPoolRunner,
    clear_settings_cache,
    run_tasks,
)
from taskweave.runtime.concurrency import TaskState, TaskStream
from taskweave.runtime.observability import MemoryRenderer


# ─────────────────────────────────────────────────────────────────────────────
# Test Fixtures
# ─────────────────────────────────────────────────────────────────────────────


class Workload:
    """Factory for timed tasks that track how many run at once."""

    def __init__(self) -> None:
        self.running = 0
        self.peak = 0
        self.started: list[int] = []
        self.cancelled: list[int] = []

    async def sleep_then_return(self, n: int, seconds: float, *also: Workload) -> int:
        gauges = (self, *also)
        self.started.append(n)
        for g in gauges:
            g.running += 1
            g.peak = max(g.peak, g.running)
        try:
            await asyncio.sleep(seconds)
        except asyncio.CancelledError:
            self.cancelled.append(n)
            raise
        finally:
            for g in gauges:
                g.running -= 1
        return n

    def starter(self, n: int, seconds: float, *also: Workload) -> Callable[[], Any]:
        return lambda: self.sleep_then_return(n, seconds, *also)


async def collect(stream: TaskStream) -> tuple[list[Any], PoolStats]:
    """Pull every envelope, returning them with the completion value."""
    envelopes: list[Any] = []
    while not (step := await stream.next()).done:
        envelopes.append(step.value)
    return envelopes, step.value


def finals(envelopes: list[Any]) -> list[FinalEnvelope[Any]]:
    return [e for e in envelopes if isinstance(e, FinalEnvelope)]


def errors(envelopes: list[Any]) -> list[ErrorEnvelope]:
    return [e for e in envelopes if isinstance(e, ErrorEnvelope)]


async def value_of(n: int) -> int:
    await asyncio.sleep(0)
    return n


# ─────────────────────────────────────────────────────────────────────────────
# Scheduling
# ─────────────────────────────────────────────────────────────────────────────


class TestScheduling:
    """Capacity bound, resolution order, eager refill."""

    @pytest.mark.asyncio
    async def test_five_tasks_capacity_two(self) -> None:
        """Never more than two run, every task completes, the shortest early task finishes first."""
        work = Workload()
        delays = [0.06, 0.02, 0.04, 0.01, 0.03]
        starters = [work.starter(i + 1, d) for i, d in enumerate(delays)]

        envelopes, stats = await collect(TaskPoolRunner(starters, capacity=2).run_tasks())

        done = finals(envelopes)
        assert work.peak == 2
        assert sorted(e.task_id for e in done) == [1, 2, 3, 4, 5]
        assert done[0].task_id == 2
        assert all(e.value == e.task_id for e in done)
        assert stats.completed == 5 and stats.started == 5
        assert stats.peak_running == 2
        assert stats.task_ids == [1, 2, 3, 4, 5]

    @pytest.mark.asyncio
    async def test_intermediates_precede_final(self) -> None:
        async def progress() -> AsyncIterator[str]:
            for stage in ("fetch", "parse", "store"):
                await asyncio.sleep(0)
                yield stage

        envelopes, _ = await collect(run_tasks([progress], capacity=1))
        assert [(e.kind, e.value) for e in envelopes] == [
            (EnvelopeKind.INTERMEDIATE, "fetch"),
            (EnvelopeKind.INTERMEDIATE, "parse"),
            (EnvelopeKind.INTERMEDIATE, "store"),
            (EnvelopeKind.FINAL, None),
        ]

    @pytest.mark.asyncio
    async def test_sync_generator_return_is_final(self) -> None:
        def steps() -> Iterator[int]:
            yield 1
            return 99

        envelopes, _ = await collect(run_tasks([steps]))
        assert envelopes == [IntermediateEnvelope(1, 1), FinalEnvelope(1, 99)]

    @pytest.mark.asyncio
    async def test_slot_refilled_before_consumer_pulls_final(self) -> None:
        """A finished task frees its unit even while its Final waits unconsumed."""
        started: list[str] = []

        async def first() -> AsyncIterator[str]:
            started.append("A")
            yield "a-progress"
            await asyncio.sleep(0.01)

        async def second() -> str:
            started.append("B")
            return "b-done"

        cap = CapacitySource(1)
        stream = run_tasks([first, second], cap)

        assert await stream.next() == Step(IntermediateEnvelope(1, "a-progress"))
        await asyncio.sleep(0.05)  # consumer idle
        assert started == ["A", "B"]
        assert cap.used == 0

        rest, _ = await collect(stream)
        assert rest == [FinalEnvelope(1, None), FinalEnvelope(2, "b-done")]

    @pytest.mark.asyncio
    async def test_one_pull_in_flight_per_task(self) -> None:
        """A task is not pulled again until its last value is delivered."""
        produced: list[int] = []

        async def chatty() -> AsyncIterator[int]:
            for i in range(100):
                produced.append(i)
                yield i

        stream = run_tasks([chatty])
        assert (await stream.next()).value == IntermediateEnvelope(1, 0)
        await asyncio.sleep(0.02)
        assert produced == [0, 1]
        await stream.return_()

    @pytest.mark.asyncio
    async def test_dynamic_bridge_source(self) -> None:
        """The runner keeps waiting for work until the bridge is closed."""
        work = Workload()
        bridge: BridgeBuffer[Callable[[], Any]] = BridgeBuffer()

        async def produce() -> None:
            for n in (1, 2, 3):
                await bridge.push(work.starter(n, 0.01))
            await asyncio.sleep(0.05)
            await bridge.push(work.starter(4, 0.01))
            bridge.close()

        producer = asyncio.create_task(produce())
        envelopes, stats = await collect(run_tasks(bridge, capacity=2))
        await producer

        done = finals(envelopes)
        assert sorted(e.task_id for e in done) == [1, 2, 3, 4]
        assert done[-1].task_id == 4
        assert stats.completed == 4
        assert work.peak <= 2

    @pytest.mark.asyncio
    async def test_async_for_over_runner(self) -> None:
        kinds = [env.kind async for env in TaskPoolRunner([lambda: value_of(1)], capacity=1)]
        assert kinds == [EnvelopeKind.FINAL]


# ─────────────────────────────────────────────────────────────────────────────
# Faults
# ─────────────────────────────────────────────────────────────────────────────


class TestFaults:
    """Task, starter and source failures."""

    @pytest.mark.asyncio
    async def test_task_error_is_isolated(self, log_records: MemoryRenderer) -> None:
        async def boom() -> None:
            await asyncio.sleep(0)
            raise ValueError("boom")

        starters = [lambda: value_of(1), boom, lambda: value_of(3)]
        envelopes, stats = await collect(run_tasks(starters, capacity=3))

        assert sorted(e.task_id for e in finals(envelopes)) == [1, 3]
        [failure] = errors(envelopes)
        match failure:
            case ErrorEnvelope(task_id, ValueError() as exc):
                assert task_id == 2
                assert str(exc) == "boom"
            case _:
                pytest.fail(f"unexpected envelope {failure!r}")

        fault = failure.fault
        assert (fault.task_id, fault.code, fault.exc_type) == (2, ErrorCode.INVALID_PARAMS, "ValueError")
        assert (stats.completed, stats.failed) == (2, 1)

        [entry] = [e for e in log_records.entries if e.event == "task failed"]
        assert entry.level == "warning"
        assert entry.context["task_id"] == 2
        assert entry.context["pool"] == "pool"

    @pytest.mark.asyncio
    async def test_starter_failure_releases_unit(self) -> None:
        def bad_starter() -> Any:
            raise RuntimeError("no start")

        cap = CapacitySource(1)
        envelopes, stats = await collect(run_tasks([bad_starter, lambda: value_of(2)], cap))

        assert [e.kind for e in envelopes] == [EnvelopeKind.ERROR, EnvelopeKind.FINAL]
        assert isinstance(envelopes[0].error, RuntimeError)
        assert envelopes[1] == FinalEnvelope(2, 2)
        assert cap.used == 0
        assert stats.failed == 1

    @pytest.mark.asyncio
    async def test_non_callable_starter(self) -> None:
        envelopes, _ = await collect(run_tasks(["not a starter"]))
        [failure] = envelopes
        assert isinstance(failure.error, TypeError)

    @pytest.mark.asyncio
    async def test_source_error_after_active_tasks_finish(self, log_records: MemoryRenderer) -> None:
        work = Workload()

        async def tasks() -> AsyncIterator[Callable[[], Any]]:
            yield work.starter(1, 0.03)
            raise RuntimeError("source broke")

        envelopes: list[Any] = []
        with pytest.raises(RuntimeError, match="source broke"):
            async for env in run_tasks(tasks(), capacity=2):
                envelopes.append(env)

        assert envelopes == [FinalEnvelope(1, 1)]
        assert work.cancelled == []
        assert "task source failed" in log_records.events("error")


# ─────────────────────────────────────────────────────────────────────────────
# Cancellation & shared capacity
# ─────────────────────────────────────────────────────────────────────────────


class TestLifecycle:
    """Cancellation, nested capacity, settings defaults."""

    @pytest.mark.asyncio
    async def test_cancel_releases_capacity(self) -> None:
        work = Workload()
        cap = CapacitySource(2)
        stream = run_tasks([work.starter(n, 10) for n in (1, 2, 3)], cap)

        pending = asyncio.create_task(stream.next())
        await asyncio.sleep(0.02)
        assert cap.used == 2
        assert work.started == [1, 2]
        assert [r.state for r in stream.running] == [TaskState.RUNNING, TaskState.RUNNING]

        await stream.return_()
        assert cap.used == 0
        assert cap.waiting == 0
        assert sorted(work.cancelled) == [1, 2]
        assert (await pending).done
        assert stream.stats.cancelled == 2

        await stream.return_()  # idempotent
        assert cap.used == 0

    @pytest.mark.asyncio
    async def test_runners_share_parent_capacity(self) -> None:
        parent = CapacitySource(3, name="global")
        total, one, two = Workload(), Workload(), Workload()
        first = TaskPoolRunner([one.starter(n, 0.02, total) for n in range(4)], parent.child(2), name="one")
        second = TaskPoolRunner([two.starter(n, 0.02, total) for n in range(4)], parent.child(2), name="two")

        (_, stats_one), (_, stats_two) = await asyncio.gather(
            collect(first.run_tasks()), collect(second.run_tasks())
        )

        assert total.peak == 3
        assert one.peak <= 2 and two.peak <= 2
        assert stats_one.completed == stats_two.completed == 4
        assert parent.used == 0

    @pytest.mark.asyncio
    async def test_default_capacity_from_settings(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("TASKWEAVE_POOL_LIMIT", "3")
        clear_settings_cache()

        runner = TaskPoolRunner([])
        assert runner.capacity.limit == 3
        assert runner.name == "pool"

        envelopes, stats = await collect(runner.run_tasks())
        assert envelopes == []
        assert stats == PoolStats()

    def test_int_capacity_builds_source(self) -> None:
        runner = TaskPoolRunner([], capacity=5, name="crawl")
        assert isinstance(runner.capacity, CapacitySource)
        assert (runner.capacity.limit, runner.capacity.name) == (5, "crawl")
