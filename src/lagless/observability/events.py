"""Unified event model for engine observability.

Defines event types for the mutation pipeline, the merge view and the
presence pipeline.

All events are frozen dataclasses with:
- ``timestamp_ns``: Monotonic nanosecond timestamp
- Descriptive fields for the specific event type

Thread Safety:
    All events are frozen (immutable) and safe to share across threads.

"""

import time
from dataclasses import dataclass
from typing import Literal

# ---------------------------------------------------------------------------
# Mutation pipeline events
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class IntentEnqueued:
    """A user action was queued and rendered optimistically.

    Attributes:
        correlation_id: Client-generated id of the intent.
        kind: Mutation kind (send-message, react, vote, pin, delete).
        target_id: Scope or entity the action applies to.
        timestamp_ns: Monotonic nanosecond timestamp.

    """

    correlation_id: str
    kind: str
    target_id: str
    timestamp_ns: int


@dataclass(frozen=True, slots=True)
class DispatchAttempted:
    """One network attempt for an intent finished.

    Attributes:
        correlation_id: Intent the attempt belongs to.
        attempt: 1-based attempt number.
        ok: True if the backend answered successfully.
        error: Error description for failed attempts.
        duration_ms: Time spent waiting on the backend.
        timestamp_ns: Monotonic nanosecond timestamp.

    """

    correlation_id: str
    attempt: int
    ok: bool
    error: str
    duration_ms: float
    timestamp_ns: int


@dataclass(frozen=True, slots=True)
class IntentResolved:
    """An intent left the pending state.

    Attributes:
        correlation_id: Intent that was resolved.
        kind: Mutation kind.
        outcome: What happened to the intent.
        tier: Matching tier that produced the evidence, if any.
        timestamp_ns: Monotonic nanosecond timestamp.

    """

    correlation_id: str
    kind: str
    outcome: Literal["confirmed", "failed", "reverted", "cancelled", "expired", "dismissed"]
    tier: str
    timestamp_ns: int


@dataclass(frozen=True, slots=True)
class ReconcilePassed:
    """A reconciliation pass ran against an authoritative snapshot.

    Attributes:
        scope: View scope the pass ran for.
        matched: Intents removed because evidence was found.
        kept: Intents still in flight.
        expired: Intents that ran out of time.
        duration_ms: Time spent matching.
        timestamp_ns: Monotonic nanosecond timestamp.

    """

    scope: str
    matched: int
    kept: int
    expired: int
    duration_ms: float
    timestamp_ns: int


# ---------------------------------------------------------------------------
# View events
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class TimelineBuilt:
    """The ordered merge view was rebuilt.

    Attributes:
        scope: View scope.
        entries: Visible entries after the merge.
        provisional: How many of them are placeholders.
        timestamp_ns: Monotonic nanosecond timestamp.

    """

    scope: str
    entries: int
    provisional: int
    timestamp_ns: int


# ---------------------------------------------------------------------------
# Presence events
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class PresenceAggregated:
    """The live rail was recomputed.

    Attributes:
        entries: Entries after dedup and cap.
        sessions_in: Active sessions considered.
        unknown_dropped: Sessions dropped because the owner is not a member.
        fallbacks: Group sessions routed to the generic shared room.
        timestamp_ns: Monotonic nanosecond timestamp.

    """

    entries: int
    sessions_in: int
    unknown_dropped: int
    fallbacks: int
    timestamp_ns: int


@dataclass(frozen=True, slots=True)
class SourceFailed:
    """A backend source failed and the engine degraded.

    Attributes:
        source: Which source or operation failed.
        error: Error description.
        timestamp_ns: Monotonic nanosecond timestamp.

    """

    source: str
    error: str
    timestamp_ns: int


# ---------------------------------------------------------------------------
# Profiling
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class PipelineProfile:
    """Per-stage timing of one reconciliation or presence pass.

    Attributes:
        pipeline: "reconcile" or "presence".
        trigger: Scope or reason that started the pass.
        stages: ``(stage, elapsed_ms)`` pairs in declaration order.
        total_ms: End-to-end time of the pass.
        timestamp_ns: Monotonic nanosecond timestamp.

    """

    pipeline: str
    trigger: str
    stages: tuple[tuple[str, float], ...]
    total_ms: float
    timestamp_ns: int

    def stage_ms(self, name: str) -> float:
        """Elapsed time of one stage (0.0 if it never ran)."""
        for stage, ms in self.stages:
            if stage == name:
                return ms
        return 0.0


# ---------------------------------------------------------------------------
# Union type
# ---------------------------------------------------------------------------

type EngineEvent = (
    IntentEnqueued
    | DispatchAttempted
    | IntentResolved
    | ReconcilePassed
    | TimelineBuilt
    | PresenceAggregated
    | SourceFailed
    | PipelineProfile
)


def now_ns() -> int:
    """Return the current monotonic clock value in nanoseconds."""
    return time.monotonic_ns()


def scope_of(event: EngineEvent) -> str:
    """Key an event is filed under: intent id, view scope, or source."""
    match event:
        case IntentEnqueued() | DispatchAttempted() | IntentResolved():
            return event.correlation_id
        case ReconcilePassed() | TimelineBuilt():
            return event.scope
        case SourceFailed():
            return event.source
        case PipelineProfile():
            return event.trigger
        case PresenceAggregated():
            return "presence"
    msg = f"Not an engine event: {event!r}"
    raise TypeError(msg)
