"""Tests for lazy pull combinators."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Iterator
from typing import Any

import pytest

from taskweave import (
    IteratorState,
    Step,
    StructuredIterator,
    buffer_stream,
    concat_streams,
    dedupe_stream,
    filter_stream,
    flat_map_stream,
    iterate,
    map_stream,
    race_streams,
    reduce_stream,
    round_robin_streams,
    source,
    window_stream,
    zip_streams,
)


# ─────────────────────────────────────────────────────────────────────────────
# Test Fixtures
# ─────────────────────────────────────────────────────────────────────────────


async def drain(it: StructuredIterator[Any]) -> tuple[list[Any], Any]:
    """Pull to completion, returning (values, completion value)."""
    values: list[Any] = []
    while not (step := await it.next()).done:
        values.append(step.value)
    return values, step.value


async def delayed(*items: tuple[float, Any]) -> AsyncIterator[Any]:
    """Yield each value after its delay (seconds)."""
    for delay, value in items:
        await asyncio.sleep(delay)
        yield value


class Tracked:
    """Async generator factory recording pulls and cleanup."""

    def __init__(self) -> None:
        self.produced: list[int] = []
        self.closed = False

    async def gen(self, n: int = 100, delay: float = 0) -> AsyncIterator[int]:
        try:
            for i in range(n):
                if delay:
                    await asyncio.sleep(delay)
                self.produced.append(i)
                yield i
        finally:
            self.closed = True


# ─────────────────────────────────────────────────────────────────────────────
# Source & 1:1 transforms
# ─────────────────────────────────────────────────────────────────────────────


class TestTransforms:
    """Single-upstream combinators."""

    @pytest.mark.asyncio
    async def test_source_final_value(self) -> None:
        assert await drain(source([1, 2, 3], final="end")) == ([1, 2, 3], "end")

    @pytest.mark.asyncio
    async def test_source_infinite_is_lazy(self) -> None:
        def naturals() -> Iterator[int]:
            n = 0
            while True:
                yield n
                n += 1

        it = source(naturals())
        assert [(await it.next()).value for _ in range(3)] == [0, 1, 2]
        await it.return_()

    @pytest.mark.asyncio
    async def test_map_async_func(self) -> None:
        async def double(n: int) -> int:
            await asyncio.sleep(0)
            return n * 2

        assert await drain(map_stream(source([1, 2, 3], final="f"), double)) == ([2, 4, 6], "f")

    @pytest.mark.asyncio
    async def test_filter_passes_final_through(self) -> None:
        it = filter_stream(source(range(6), final="f"), lambda n: n % 2 == 0)
        assert await drain(it) == ([0, 2, 4], "f")

    @pytest.mark.asyncio
    async def test_reduce_running_and_final_accumulator(self) -> None:
        it = reduce_stream(source([1, 2, 3]), lambda acc, n: acc + n, 0)
        assert await drain(it) == ([1, 3, 6], 6)

    @pytest.mark.asyncio
    async def test_dedupe(self) -> None:
        assert (await drain(dedupe_stream(source([1, 2, 1, 3, 2]))))[0] == [1, 2, 3]

    @pytest.mark.asyncio
    async def test_dedupe_by_key(self) -> None:
        words = ["apple", "avocado", "banana", "blueberry", "cherry"]
        values, _ = await drain(dedupe_stream(source(words), key=lambda w: w[0]))
        assert values == ["apple", "banana", "cherry"]

    @pytest.mark.asyncio
    async def test_window_flushes_partial_tail(self) -> None:
        it = window_stream(source(range(7), final="f"), 3)
        assert await drain(it) == ([[0, 1, 2], [3, 4, 5], [6]], "f")

    def test_window_rejects_zero(self) -> None:
        with pytest.raises(ValueError):
            window_stream(source([]), 0)

    @pytest.mark.asyncio
    async def test_buffer_predicate(self) -> None:
        tokens = ["a", "b.", "c", "d.", "e"]
        values, _ = await drain(buffer_stream(source(tokens), lambda t: t.endswith(".")))
        assert values == [["a", "b."], ["c", "d."], ["e"]]

    @pytest.mark.asyncio
    async def test_buffer_timeout_keeps_inflight_pull(self) -> None:
        """A timeout flushes the batch; the pending pull's value lands in the next batch."""
        upstream = delayed((0, 1), (0, 2), (0.15, 3))
        values, _ = await drain(buffer_stream(upstream, timeout=0.03))
        assert values == [[1, 2], [3]]

    @pytest.mark.asyncio
    async def test_flat_map(self) -> None:
        values, _ = await drain(flat_map_stream(source([1, 2, 3]), lambda n: [n] * n))
        assert values == [1, 2, 2, 3, 3, 3]

    @pytest.mark.asyncio
    async def test_flat_map_async_inner(self) -> None:
        async def expand(n: int) -> AsyncIterator[str]:
            for i in range(n):
                yield f"{n}.{i}"

        values, _ = await drain(flat_map_stream(source([1, 2]), expand))
        assert values == ["1.0", "2.0", "2.1"]

    @pytest.mark.asyncio
    async def test_throw_forwarded_upstream(self) -> None:
        def resilient() -> Iterator[int]:
            try:
                yield 1
            except ValueError:
                yield -1

        it = map_stream(source(resilient()), lambda n: n * 10)
        assert (await it.next()).value == 10
        assert (await it.throw(ValueError())).value == -10

    @pytest.mark.asyncio
    async def test_return_propagates_upstream(self) -> None:
        probe = Tracked()
        it = map_stream(filter_stream(probe.gen(), lambda n: n > 0), str)
        assert (await it.next()).value == "1"
        await it.return_()
        assert probe.closed


# ─────────────────────────────────────────────────────────────────────────────
# Multi-stream combinators
# ─────────────────────────────────────────────────────────────────────────────


class TestCombinators:
    """concat, zip, round_robin, race."""

    @pytest.mark.asyncio
    async def test_concat_in_order_with_last_final(self) -> None:
        it = concat_streams(source([1, 2], final="a"), source([3], final="b"))
        assert await drain(it) == ([1, 2, 3], "b")

    @pytest.mark.asyncio
    async def test_concat_error_stops_before_next_source(self) -> None:
        async def broken() -> AsyncIterator[int]:
            yield 1
            raise RuntimeError("first failed")

        second = Tracked()
        it = concat_streams(broken(), second.gen(3))
        assert (await it.next()).value == 1
        with pytest.raises(RuntimeError):
            await it.next()
        assert second.produced == []

    @pytest.mark.asyncio
    async def test_zip_stops_at_shortest_and_cancels_rest(self) -> None:
        longer = Tracked()
        values, _ = await drain(zip_streams(longer.gen(10), source("ab")))
        assert values == [(0, "a"), (1, "b")]
        assert longer.closed

    @pytest.mark.asyncio
    async def test_round_robin_skips_completed(self) -> None:
        it = round_robin_streams(source([1, 2, 3]), source(["a"]), source([10, 20]))
        values, _ = await drain(it)
        assert values == [1, "a", 10, 2, 20, 3]

    @pytest.mark.asyncio
    async def test_race_resolution_order(self) -> None:
        """Values arrive in the order they resolve, not declaration order."""
        slow = delayed((0.08, "slow"))
        fast = delayed((0.01, "f1"), (0.01, "f2"))
        values, _ = await drain(race_streams(slow, fast))
        assert values == ["f1", "f2", "slow"]

    @pytest.mark.asyncio
    async def test_race_tagged(self) -> None:
        values, _ = await drain(race_streams(delayed((0.05, "x")), delayed((0, "y")), tagged=True))
        assert values == [(1, "y"), (0, "x")]

    @pytest.mark.asyncio
    async def test_race_pulls_only_delivering_source(self) -> None:
        """Only the source whose value was delivered gets a new pull."""
        eager = Tracked()
        it = race_streams(eager.gen(), delayed((1.0, "never")))
        assert (await it.next()).value == 0
        await asyncio.sleep(0.02)
        assert eager.produced == [0, 1]
        await it.return_()
        assert eager.closed

    @pytest.mark.asyncio
    async def test_race_error_cancels_siblings(self) -> None:
        async def broken() -> AsyncIterator[int]:
            await asyncio.sleep(0.01)
            raise RuntimeError("racer failed")
            yield 0  # pragma: no cover

        sibling = Tracked()
        it = race_streams(broken(), sibling.gen(5, delay=1.0))
        with pytest.raises(RuntimeError, match="racer failed"):
            await drain(it)
        assert sibling.closed

    @pytest.mark.asyncio
    async def test_race_empty(self) -> None:
        assert await drain(race_streams()) == ([], None)

    @pytest.mark.asyncio
    async def test_iterate_accepts_combinator_output(self) -> None:
        it = zip_streams(source([1, 2]), source([3, 4]))
        assert iterate(it) is it
        assert [pair async for pair in it] == [(1, 3), (2, 4)]

    @pytest.mark.asyncio
    async def test_cancel_releases_parked_race_puller(self) -> None:
        it = race_streams(delayed((1.0, "late")))
        parked = asyncio.create_task(it.next())
        await asyncio.sleep(0.01)

        await it.return_("stopped")
        assert await asyncio.wait_for(parked, 0.5) == Step("stopped", True)

    @pytest.mark.asyncio
    async def test_cancel_releases_parked_buffer_puller(self) -> None:
        it = buffer_stream(delayed((1.0, "late")), timeout=5)
        parked = asyncio.create_task(it.next())
        await asyncio.sleep(0.01)

        await it.return_()
        assert (await asyncio.wait_for(parked, 0.5)).done

    @pytest.mark.asyncio
    async def test_return_twice_same_terminal_state(self) -> None:
        first, second = Tracked(), Tracked()
        it = concat_streams(first.gen(3), second.gen(3))
        await it.next()

        assert await it.return_("x") == Step("x", True)
        assert await it.return_("y") == Step("x", True)
        assert it.state is IteratorState.CANCELLED
        assert first.closed
        assert first.produced == [0]


# ─────────────────────────────────────────────────────────────────────────────
# Cancellation & injected errors
# ─────────────────────────────────────────────────────────────────────────────


def recovering(before: list[Any], after: list[Any]) -> Iterator[Any]:
    """Yield ``before``; an injected ValueError switches to ``after``."""
    try:
        yield from before
    except ValueError:
        yield from after


PARKED_ON_UPSTREAM = {
    "source": source,
    "map": lambda up: map_stream(up, str),
    "filter": lambda up: filter_stream(up, bool),
    "reduce": lambda up: reduce_stream(up, lambda acc, n: acc + n, 0),
    "dedupe": dedupe_stream,
    "window": lambda up: window_stream(up, 2),
    "flat_map": lambda up: flat_map_stream(up, lambda n: [n, n]),
    "concat": lambda up: concat_streams(up, source([1])),
    "zip": lambda up: zip_streams(source([1, 2]), up),
    "round_robin": round_robin_streams,
}


class TestCancellation:
    """return_() while another coroutine is parked in next()."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("build", list(PARKED_ON_UPSTREAM.values()), ids=list(PARKED_ON_UPSTREAM))
    async def test_cancel_releases_parked_puller(self, build: Any) -> None:
        upstream = Tracked()
        it = build(upstream.gen(5, delay=1.0))
        parked = asyncio.create_task(it.next())
        await asyncio.sleep(0.01)

        assert await it.return_("stopped") == Step("stopped", True)
        assert await asyncio.wait_for(parked, 0.5) == Step("stopped", True)
        assert it.state is IteratorState.CANCELLED
        assert upstream.closed
        assert upstream.produced == []

    @pytest.mark.asyncio
    async def test_cancelled_puller_leaves_stream_closable(self) -> None:
        upstream = Tracked()
        it = map_stream(upstream.gen(5, delay=1.0), str)
        parked = asyncio.create_task(it.next())
        await asyncio.sleep(0.01)

        parked.cancel()
        with pytest.raises(asyncio.CancelledError):
            await parked
        await it.return_()
        assert upstream.closed
        assert it.state is IteratorState.CANCELLED


class TestThrow:
    """Steps recovered after throw() go through the transform like pulled ones."""

    @pytest.mark.asyncio
    async def test_filter_applies_predicate(self) -> None:
        it = filter_stream(source(recovering([1], [-1, 2])), lambda n: n >= 0)
        assert await it.next() == Step(1)
        assert await it.throw(ValueError()) == Step(2)

    @pytest.mark.asyncio
    async def test_dedupe_applies_seen_set(self) -> None:
        it = dedupe_stream(source(recovering([1], [1, 2])))
        assert await it.next() == Step(1)
        assert await it.throw(ValueError()) == Step(2)

    @pytest.mark.asyncio
    async def test_window_batches_recovered_items(self) -> None:
        it = window_stream(source(recovering([1, 2, 3, 4], ["r1", "r2", "r3"])), 3)
        assert await it.next() == Step([1, 2, 3])
        assert await it.throw(ValueError()) == Step(["r1", "r2", "r3"])
        assert (await it.next()).done

    @pytest.mark.asyncio
    async def test_buffer_batches_recovered_items(self) -> None:
        it = buffer_stream(source(recovering([1, "x."], ["r1", "r2."])), lambda t: str(t).endswith("."))
        assert await it.next() == Step([1, "x."])
        assert await it.throw(ValueError()) == Step(["r1", "r2."])

    @pytest.mark.asyncio
    async def test_buffer_throw_waits_for_inflight_pull(self) -> None:
        async def slow() -> AsyncIterator[Any]:
            try:
                yield 1
                await asyncio.sleep(0.1)
                yield 2
                yield 3
            except ValueError:
                yield "r"

        it = buffer_stream(slow(), timeout=0.03)
        assert await it.next() == Step([1])  # timed out, pull for 2 still in flight
        assert await it.throw(ValueError()) == Step([2, "r"])
        assert (await it.next()).done

    @pytest.mark.asyncio
    async def test_flat_map_expands_recovered_item(self) -> None:
        """An expansion without throw support hands the error to the outer producer."""
        it = flat_map_stream(source(recovering([1], [2])), lambda n: [10 * n, 10 * n + 1])
        assert await it.next() == Step(10)
        assert await it.throw(ValueError()) == Step(20)
        assert await it.next() == Step(21)

    @pytest.mark.asyncio
    async def test_flat_map_throw_reaches_active_expansion(self) -> None:
        def expand(n: int) -> Iterator[int]:
            try:
                yield 10 * n
            except ValueError:
                yield -n

        it = flat_map_stream(source([1, 2]), expand)
        assert await it.next() == Step(10)
        assert await it.throw(ValueError()) == Step(-1)
        assert await it.next() == Step(20)
