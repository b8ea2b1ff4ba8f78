"""Pipeline profiler — measures per-stage latency of engine passes.

Records per-stage timing for one reconciliation or presence pass and emits
a ``PipelineProfile`` event to the ``EventLog``.

Thread Safety:
    A profiler is used from a single pass at a time (single-writer).
    Aggregate queries are protected by the underlying ``EventLog`` lock.

"""

from __future__ import annotations

import sys
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING

from lagless.observability.events import PipelineProfile, now_ns

if TYPE_CHECKING:
    from collections.abc import Sequence

    from lagless.observability.log import EventLog

RECONCILE_STAGES = ("fetch", "match", "merge")
PRESENCE_STAGES = ("sessions", "rooms", "slugs", "aggregate")


@dataclass(slots=True)
class _Timer:
    """Accumulates timing for a named pipeline stage."""

    name: str
    _start: float = 0.0
    elapsed_ms: float = 0.0

    def start(self) -> None:
        self._start = time.perf_counter()

    def stop(self) -> None:
        if self._start > 0:
            self.elapsed_ms += (time.perf_counter() - self._start) * 1000
            self._start = 0.0


class PipelineProfiler:
    """Records per-stage timing for a single pass.

    Usage::

        profiler = PipelineProfiler(event_log, "reconcile", RECONCILE_STAGES)

        profiler.begin("team:42")
        profiler.start("fetch")
        # ... fetch ...
        profiler.stop("fetch")
        profiler.start("match")
        # ... match ...
        profiler.stop("match")
        profiler.finish()

    After ``finish()``, a ``PipelineProfile`` event is appended to the log
    and, when verbose, a one-line summary is printed to stderr.

    """

    __slots__ = ("_log", "_pipeline", "_t0", "_timers", "_trigger", "_verbose")

    def __init__(
        self,
        log: EventLog,
        pipeline: str,
        stages: Sequence[str],
        *,
        verbose: bool = False,
    ) -> None:
        self._log = log
        self._pipeline = pipeline
        self._verbose = verbose
        self._trigger = ""
        self._t0 = 0.0
        self._timers: dict[str, _Timer] = {name: _Timer(name=name) for name in stages}

    def begin(self, trigger: str) -> None:
        """Start profiling a new pass."""
        self._trigger = trigger
        self._t0 = time.perf_counter()
        for timer in self._timers.values():
            timer.elapsed_ms = 0.0
            timer._start = 0.0

    def start(self, stage: str) -> None:
        """Start timing a named stage."""
        timer = self._timers.get(stage)
        if timer is not None:
            timer.start()

    def stop(self, stage: str) -> None:
        """Stop timing a named stage."""
        timer = self._timers.get(stage)
        if timer is not None:
            timer.stop()

    def finish(self) -> PipelineProfile:
        """Finish profiling and emit the ``PipelineProfile`` event.

        Returns the profile for testing / inspection.

        """
        total_ms = (time.perf_counter() - self._t0) * 1000 if self._t0 > 0 else 0.0

        profile = PipelineProfile(
            pipeline=self._pipeline,
            trigger=self._trigger,
            stages=tuple((t.name, t.elapsed_ms) for t in self._timers.values()),
            total_ms=total_ms,
            timestamp_ns=now_ns(),
        )

        self._log.append(profile)

        if self._verbose:
            self._print_summary(profile)

        return profile

    def _print_summary(self, p: PipelineProfile) -> None:
        """Print a one-line timing summary to stderr."""
        stages = ", ".join(f"{name}: {ms:.0f}ms" for name, ms in p.stages)
        print(
            f"  [{p.total_ms:.0f}ms] {p.pipeline} {p.trigger} ({stages})",
            file=sys.stderr,
        )


def compute_aggregate_stats(
    log: EventLog,
    *,
    pipeline: str | None = None,
    limit: int = 100,
) -> dict:
    """Compute aggregate latency statistics from recent ``PipelineProfile`` events.

    Returns a dict with p50, p95, p99, and per-stage averages.

    """
    profiles = [
        p
        for p in log.query(event_type=PipelineProfile, limit=limit)
        if pipeline is None or p.pipeline == pipeline
    ]
    if not profiles:
        return {"count": 0}

    totals = sorted(p.total_ms for p in profiles)
    count = len(totals)

    def percentile(data: list[float], pct: float) -> float:
        idx = int(len(data) * pct / 100)
        return data[min(idx, len(data) - 1)]

    stage_sums: dict[str, float] = {}
    for p in profiles:
        for name, ms in p.stages:
            stage_sums[name] = stage_sums.get(name, 0.0) + ms

    return {
        "count": count,
        "total_ms": {
            "p50": round(percentile(totals, 50), 1),
            "p95": round(percentile(totals, 95), 1),
            "p99": round(percentile(totals, 99), 1),
            "min": round(totals[0], 1),
            "max": round(totals[-1], 1),
        },
        "avg_by_stage_ms": {
            name: round(total / count, 1) for name, total in stage_sums.items()
        },
    }
