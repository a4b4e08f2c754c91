"""Runtime - Execution flow and monitoring.

Contains: concurrency (streams, bridge, capacity, task pool), observability.
"""

from __future__ import annotations

__all__ = [
    # Concurrency
    "IteratorState", "Step", "StructuredIterator", "iterate",
    "CapacitySource",
    "source", "map_stream", "filter_stream", "reduce_stream", "dedupe_stream", "window_stream",
    "buffer_stream", "flat_map_stream", "concat_streams", "zip_streams", "round_robin_streams",
    "race_streams",
    "PushSink", "CallbackSink", "CollectSink", "Serialized",
    "MapSink", "FilterSink", "ReduceSink", "DedupeSink", "WindowSink", "BufferSink", "FlatMapSink",
    "Fork", "Distribute", "RoundRobinSink",
    "BridgeBuffer", "OverflowPolicy",
    "TaskPoolRunner", "run_tasks", "PoolStats", "TaskState",
    "IntermediateEnvelope", "FinalEnvelope", "ErrorEnvelope", "ProgressEnvelope",
    # Observability
    "BoundLogger", "get_logger", "configure_logging", "log_context",
]


def __getattr__(name: str):
    """Lazy imports to avoid circular dependencies."""
    if name in ("BoundLogger", "get_logger", "configure_logging", "log_context"):
        from . import observability
        return getattr(observability, name)

    if name in __all__:
        from . import concurrency
        return getattr(concurrency, name)

    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
