"""Engine observability — one event model for mutations, views and presence.

Aggregates events from:
- **Mutation queue**: enqueue, dispatch attempts, resolutions
- **Views**: reconciliation passes and merge view rebuilds
- **Presence pipeline**: aggregation passes and source failures

All events are frozen dataclasses with nanosecond timestamps.

Quick Start:
    >>> from lagless.observability import EngineCollector, EventLog
    >>> log = EventLog()
    >>> collector = EngineCollector(log)
    >>> # Pass collector to Engine(...) or directly to a MutationQueue

"""

from lagless.observability.collector import EngineCollector
from lagless.observability.events import (
    DispatchAttempted,
    EngineEvent,
    IntentEnqueued,
    IntentResolved,
    PipelineProfile,
    PresenceAggregated,
    ReconcilePassed,
    SourceFailed,
    TimelineBuilt,
    now_ns,
    scope_of,
)
from lagless.observability.log import EventLog
from lagless.observability.profiler import PipelineProfiler, compute_aggregate_stats

__all__ = [
    "DispatchAttempted",
    "EngineCollector",
    "EngineEvent",
    "EventLog",
    "IntentEnqueued",
    "IntentResolved",
    "PipelineProfile",
    "PipelineProfiler",
    "PresenceAggregated",
    "ReconcilePassed",
    "SourceFailed",
    "TimelineBuilt",
    "compute_aggregate_stats",
    "now_ns",
    "scope_of",
]
