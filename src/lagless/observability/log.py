"""Event log — bounded, thread-safe store of engine events.

Events are filed under a scope key (see ``scope_of``): the correlation id
for intent events, the view scope for reconcile and timeline events, the
source name for failures.  ``lifecycle`` replays one intent's history.

Thread Safety:
    All methods are protected by a ``threading.Lock``.

"""

import threading
from collections import Counter, deque
from typing import Any

from lagless.observability.events import (
    DispatchAttempted,
    EngineEvent,
    IntentEnqueued,
    IntentResolved,
    SourceFailed,
    scope_of,
)

type IntentEvent = IntentEnqueued | DispatchAttempted | IntentResolved


class EventLog:
    """Ring buffer of engine events; the oldest are dropped when full.

    Args:
        max_events: Maximum number of events to retain.

    """

    __slots__ = ("_events", "_lock", "_max_events")

    def __init__(self, max_events: int = 10_000) -> None:
        self._max_events = max_events
        self._events: deque[EngineEvent] = deque(maxlen=max_events)
        self._lock = threading.Lock()

    def append(self, event: EngineEvent) -> None:
        with self._lock:
            self._events.append(event)

    def query(
        self,
        *,
        event_type: type | None = None,
        since_ns: int = 0,
        scope: str | None = None,
        limit: int = 100,
    ) -> list[EngineEvent]:
        """Matching events, most recent first.

        Args:
            event_type: Only events of this type.
            since_ns: Only events stamped at or after this time.
            scope: Only events filed under exactly this key.
            limit: Maximum number of events to return.

        """
        with self._lock:
            snapshot = list(self._events)
        results: list[EngineEvent] = []
        for event in reversed(snapshot):
            if len(results) >= limit:
                break
            if event_type is not None and not isinstance(event, event_type):
                continue
            if event.timestamp_ns < since_ns:
                continue
            if scope is not None and scope_of(event) != scope:
                continue
            results.append(event)
        return results

    def lifecycle(self, correlation_id: str) -> list[IntentEvent]:
        """Everything recorded for one intent, oldest first."""
        with self._lock:
            snapshot = list(self._events)
        return [
            event
            for event in snapshot
            if isinstance(event, IntentEnqueued | DispatchAttempted | IntentResolved)
            and event.correlation_id == correlation_id
        ]

    def recent(self, n: int = 20) -> list[EngineEvent]:
        """The N most recent events, oldest first."""
        with self._lock:
            items = list(self._events)
        return items[-n:]

    def clear(self) -> int:
        """Drop every event; returns how many there were."""
        with self._lock:
            count = len(self._events)
            self._events.clear()
            return count

    def __len__(self) -> int:
        with self._lock:
            return len(self._events)

    def stats(self) -> dict[str, Any]:
        """Counts per event type, per intent outcome and per failing source."""
        with self._lock:
            events = list(self._events)
        return {
            "total": len(events),
            "max_events": self._max_events,
            "by_type": dict(Counter(type(e).__name__ for e in events)),
            "outcomes": dict(Counter(e.outcome for e in events if isinstance(e, IntentResolved))),
            "failed_sources": dict(
                Counter(e.source for e in events if isinstance(e, SourceFailed))
            ),
        }
