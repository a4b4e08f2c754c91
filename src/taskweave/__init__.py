"""Taskweave - Composable async streams and a capacity-bounded task pool.

Lazy pull combinators and eager push combinators over one iterator
protocol, a bridge between the two, and a task pool runner that executes a
dynamically discovered stream of tasks under a (possibly shared) concurrency
ceiling, surfacing every task's progress as it happens.

Pull Streams:
    >>> from taskweave import source, map_stream, window_stream
    >>>
    >>> batches = window_stream(map_stream(source(range(10)), lambda n: n * n), 4)
    >>> async for batch in batches:
    ...     print(batch)        # [0, 1, 4, 9] [16, 25, 36, 49] [64, 81]

Push Pipelines:
    >>> from taskweave import CollectSink, Fork, MapSink
    >>>
    >>> left, right = CollectSink(), CollectSink()
    >>> sink = MapSink(Fork([left, right]), str.upper)
    >>> await sink.next("a")
    >>> await sink.return_()

Task Pool:
    >>> from taskweave import BridgeBuffer, CapacitySource, TaskPoolRunner
    >>>
    >>> shared = CapacitySource(8)
    >>> jobs = BridgeBuffer()
    >>> async for env in TaskPoolRunner(jobs, shared.child(3), name="crawl").run_tasks():
    ...     match env.kind:
    ...         case "intermediate": progress(env.task_id, env.value)
    ...         case "final": done(env.task_id, env.value)
    ...         case "error": log_failure(env.fault)

Configuration (environment, TASKWEAVE_ prefix):
    TASKWEAVE_POOL_LIMIT=8  TASKWEAVE_BRIDGE_MAXSIZE=0  TASKWEAVE_LOG_FORMAT=json
"""

from __future__ import annotations

__version__ = "0.1.0"

# Errors
from .foundation.errors import (
    BridgeOverflowError,
    CapacityError,
    ErrorCode,
    RoutingError,
    SinkClosedError,
    TaskFault,
    TaskweaveError,
    classify_exception,
)

# Config
from .foundation.config import TaskweaveSettings, clear_settings_cache, get_settings

# Logging
from .runtime.observability import configure_logging, get_logger

# Streams, bridge, capacity, runner
from .runtime.concurrency import (
    BridgeBuffer,
    BridgeSink,
    BufferSink,
    CallbackSink,
    CapacitySource,
    CollectSink,
    DedupeSink,
    Distribute,
    EnvelopeKind,
    ErrorEnvelope,
    FilterSink,
    FinalEnvelope,
    FlatMapSink,
    Fork,
    IntermediateEnvelope,
    IteratorState,
    MapSink,
    OverflowPolicy,
    PoolStats,
    ProgressEnvelope,
    PushSink,
    ReduceSink,
    RoundRobinSink,
    Serialized,
    Step,
    StructuredIterator,
    TaskPoolRunner,
    TaskState,
    WindowSink,
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
    run_tasks,
    source,
    window_stream,
    zip_streams,
)

__all__ = [
    # Version
    "__version__",
    # Errors
    "ErrorCode",
    "TaskFault",
    "classify_exception",
    "TaskweaveError",
    "SinkClosedError",
    "BridgeOverflowError",
    "CapacityError",
    "RoutingError",
    # Config
    "TaskweaveSettings",
    "get_settings",
    "clear_settings_cache",
    # Logging
    "configure_logging",
    "get_logger",
    # Iterator
    "IteratorState",
    "Step",
    "StructuredIterator",
    "iterate",
    # Pull
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
    # Push
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
    # Bridge
    "BridgeBuffer",
    "BridgeSink",
    "OverflowPolicy",
    # Capacity
    "CapacitySource",
    # Runner
    "TaskPoolRunner",
    "run_tasks",
    "TaskState",
    "PoolStats",
    "EnvelopeKind",
    "IntermediateEnvelope",
    "FinalEnvelope",
    "ErrorEnvelope",
    "ProgressEnvelope",
]
