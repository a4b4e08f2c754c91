"""Pull/push stream combinators and the capacity-bounded task pool runner.

Key Components:
    - StructuredIterator: pull sequences with next/return_/throw
    - Pull combinators: map, filter, reduce, dedupe, window, buffer, flat_map,
      concat, zip, round_robin, race
    - Push combinators: MapSink ... FlatMapSink, Fork, Distribute, RoundRobinSink
    - BridgeBuffer: push at the producer's pace, pull at the consumer's
    - CapacitySource: hierarchical FIFO semaphore
    - TaskPoolRunner: runs a dynamic stream of tasks under a capacity ceiling

Example:
    >>> from taskweave.runtime.concurrency import BridgeBuffer, CapacitySource, TaskPoolRunner
    >>>
    >>> shared = CapacitySource(16)
    >>> jobs = BridgeBuffer()
    >>> async for env in TaskPoolRunner(jobs, shared.child(4)).run_tasks():
    ...     print(env.kind, env.task_id)
"""

from __future__ import annotations

# Iterator protocol
from .iterator import (
    AwaitableIterator,
    GeneratorIterator,
    IteratorState,
    Step,
    StructuredIterator,
    iterate,
)

# Capacity
from .capacity import CapacitySource

# Pull side
from .pull import (
    Buffer,
    Concat,
    Dedupe,
    Filter,
    FlatMap,
    Map,
    Race,
    Reduce,
    RoundRobin,
    Source,
    Window,
    Zip,
    buffer_stream,
    concat_streams,
    dedupe_stream,
    filter_stream,
    flat_map_stream,
    map_stream,
    race_streams,
    reduce_stream,
    round_robin_streams,
    source,
    window_stream,
    zip_streams,
)

# Push side
from .push import (
    BufferSink,
    CallbackSink,
    CollectSink,
    DedupeSink,
    Distribute,
    FilterSink,
    FlatMapSink,
    Fork,
    MapSink,
    PushSink,
    ReduceSink,
    RoundRobinSink,
    Serialized,
    WindowSink,
)

# Bridge
from .bridge import BridgeBuffer, BridgeSink, OverflowPolicy

# Runner
from .runner import (
    EnvelopeKind,
    ErrorEnvelope,
    FinalEnvelope,
    IntermediateEnvelope,
    PoolStats,
    ProgressEnvelope,
    TaskPoolRunner,
    TaskRecord,
    TaskState,
    TaskStream,
    run_tasks,
)

__all__ = [
    # Iterator
    "IteratorState", "Step", "StructuredIterator", "GeneratorIterator", "AwaitableIterator", "iterate",
    # Capacity
    "CapacitySource",
    # Pull
    "Source", "Map", "Filter", "Reduce", "Dedupe", "Window", "Buffer", "FlatMap",
    "Concat", "Zip", "RoundRobin", "Race",
    "source", "map_stream", "filter_stream", "reduce_stream", "dedupe_stream", "window_stream",
    "buffer_stream", "flat_map_stream", "concat_streams", "zip_streams", "round_robin_streams",
    "race_streams",
    # Push
    "PushSink", "CallbackSink", "CollectSink", "Serialized",
    "MapSink", "FilterSink", "ReduceSink", "DedupeSink", "WindowSink", "BufferSink", "FlatMapSink",
    "Fork", "Distribute", "RoundRobinSink",
    # Bridge
    "BridgeBuffer", "BridgeSink", "OverflowPolicy",
    # Runner
    "TaskPoolRunner", "TaskStream", "run_tasks", "TaskRecord", "TaskState", "PoolStats",
    "EnvelopeKind", "IntermediateEnvelope", "FinalEnvelope", "ErrorEnvelope", "ProgressEnvelope",
]
