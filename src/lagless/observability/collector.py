"""Engine collector — the single recording surface for engine events.

Every component that wants to be observable receives an optional
``EngineCollector`` and calls one ``record_*`` method per event.  Failure
records also print a one-line notice to stderr so degradations are visible
during development without a log viewer.

Thread Safety:
    The collector delegates to ``EventLog`` which is internally locked.

"""

from __future__ import annotations

import sys

from lagless.observability.events import (
    DispatchAttempted,
    IntentEnqueued,
    IntentResolved,
    PipelineProfile,
    PresenceAggregated,
    ReconcilePassed,
    SourceFailed,
    TimelineBuilt,
    now_ns,
)
from lagless.observability.log import EventLog


class EngineCollector:
    """Unified event collector for the engine.

    Args:
        log: The EventLog to store events in.
        quiet: Suppress stderr notices for source failures.

    """

    __slots__ = ("_log", "_quiet")

    def __init__(self, log: EventLog | None = None, *, quiet: bool = False) -> None:
        self._log = log if log is not None else EventLog()
        self._quiet = quiet

    @property
    def log(self) -> EventLog:
        """The underlying event log."""
        return self._log

    # ----- Mutation pipeline -----

    def record_enqueue(self, correlation_id: str, kind: str, target_id: str) -> None:
        """Record a newly queued intent."""
        self._log.append(
            IntentEnqueued(
                correlation_id=correlation_id,
                kind=kind,
                target_id=target_id,
                timestamp_ns=now_ns(),
            )
        )

    def record_attempt(
        self,
        correlation_id: str,
        *,
        attempt: int,
        ok: bool,
        error: str = "",
        duration_ms: float = 0.0,
    ) -> None:
        """Record one dispatch attempt."""
        self._log.append(
            DispatchAttempted(
                correlation_id=correlation_id,
                attempt=attempt,
                ok=ok,
                error=error,
                duration_ms=duration_ms,
                timestamp_ns=now_ns(),
            )
        )

    def record_resolution(
        self,
        correlation_id: str,
        kind: str,
        *,
        outcome: str,
        tier: str = "",
    ) -> None:
        """Record an intent leaving the pending state."""
        self._log.append(
            IntentResolved(
                correlation_id=correlation_id,
                kind=kind,
                outcome=outcome,  # type: ignore[arg-type]
                tier=tier,
                timestamp_ns=now_ns(),
            )
        )

    def record_reconcile(
        self,
        scope: str,
        *,
        matched: int = 0,
        kept: int = 0,
        expired: int = 0,
        duration_ms: float = 0.0,
    ) -> None:
        """Record a reconciliation pass."""
        self._log.append(
            ReconcilePassed(
                scope=scope,
                matched=matched,
                kept=kept,
                expired=expired,
                duration_ms=duration_ms,
                timestamp_ns=now_ns(),
            )
        )

    # ----- Views -----

    def record_timeline(self, scope: str, *, entries: int, provisional: int) -> None:
        """Record a merge view rebuild."""
        self._log.append(
            TimelineBuilt(
                scope=scope,
                entries=entries,
                provisional=provisional,
                timestamp_ns=now_ns(),
            )
        )

    # ----- Presence -----

    def record_presence(
        self,
        *,
        entries: int,
        sessions_in: int,
        unknown_dropped: int = 0,
        fallbacks: int = 0,
    ) -> None:
        """Record a presence aggregation pass."""
        self._log.append(
            PresenceAggregated(
                entries=entries,
                sessions_in=sessions_in,
                unknown_dropped=unknown_dropped,
                fallbacks=fallbacks,
                timestamp_ns=now_ns(),
            )
        )

    def record_source_failure(self, source: str, exc: BaseException) -> None:
        """Record a failed backend source and print a notice to stderr."""
        error = f"{type(exc).__name__}: {exc}"
        self._log.append(SourceFailed(source=source, error=error, timestamp_ns=now_ns()))
        if not self._quiet:
            print(f"  Source failed ({source}): {error}", file=sys.stderr)

    # ----- Profiling -----

    def record_profile(self, profile: PipelineProfile) -> None:
        """Record a finished pipeline profile."""
        self._log.append(profile)
