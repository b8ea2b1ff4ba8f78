"""Tests for lagless.observability — engine event observability."""

import io
import threading
from unittest.mock import patch

import pytest

from lagless.observability.collector import EngineCollector
from lagless.observability.events import (
    DispatchAttempted,
    IntentEnqueued,
    IntentResolved,
    PipelineProfile,
    PresenceAggregated,
    ReconcilePassed,
    SourceFailed,
    TimelineBuilt,
    scope_of,
)
from lagless.observability.log import EventLog


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _collector(max_events: int = 10_000) -> EngineCollector:
    return EngineCollector(EventLog(max_events), quiet=True)


def _send_lifecycle(collector: EngineCollector, cid: str, *, ok: bool = True) -> None:
    collector.record_enqueue(cid, "send-message", "team")
    collector.record_attempt(cid, attempt=1, ok=ok, error="" if ok else "OSError: reset")
    collector.record_resolution(cid, "send-message", outcome="confirmed" if ok else "failed")


# ---------------------------------------------------------------------------
# Scope keys
# ---------------------------------------------------------------------------


class TestScopeOf:
    """Every event is filed under the key a reader would look it up by."""

    @pytest.mark.parametrize(
        ("event", "key"),
        [
            (IntentEnqueued("c1", "vote", "poll", 0), "c1"),
            (DispatchAttempted("c1", 1, True, "", 0.1, 0), "c1"),
            (IntentResolved("c1", "vote", "confirmed", "response", 0), "c1"),
            (ReconcilePassed("team", 1, 0, 0, 0.1, 0), "team"),
            (TimelineBuilt("team", 3, 1, 0), "team"),
            (SourceFailed("presence.rooms", "x", 0), "presence.rooms"),
            (PipelineProfile("presence", "refresh", (), 0.1, 0), "refresh"),
            (PresenceAggregated(2, 3, 1, 0, 0), "presence"),
        ],
    )
    def test_keys(self, event: object, key: str) -> None:
        assert scope_of(event) == key

    def test_rejects_foreign_objects(self) -> None:
        with pytest.raises(TypeError):
            scope_of(object())


# ---------------------------------------------------------------------------
# EventLog
# ---------------------------------------------------------------------------


class TestEventLog:
    """Ring buffer queried by the views and the tests."""

    def test_oldest_events_dropped(self) -> None:
        collector = _collector(max_events=4)
        _send_lifecycle(collector, "c1")
        _send_lifecycle(collector, "c2")
        assert len(collector.log) == 4
        assert [type(e) for e in collector.log.lifecycle("c1")] == [IntentResolved]

    def test_lifecycle_in_order(self) -> None:
        collector = _collector()
        _send_lifecycle(collector, "c1", ok=False)
        _send_lifecycle(collector, "c2")
        events = collector.log.lifecycle("c1")
        assert [type(e) for e in events] == [IntentEnqueued, DispatchAttempted, IntentResolved]
        assert events[-1].outcome == "failed"

    def test_scope_is_exact(self) -> None:
        collector = _collector()
        _send_lifecycle(collector, "c1")
        _send_lifecycle(collector, "c10")
        assert {scope_of(e) for e in collector.log.query(scope="c1")} == {"c1"}

    def test_query_by_view_scope(self) -> None:
        collector = _collector()
        collector.record_reconcile("team-a", matched=1, kept=0, expired=0, duration_ms=0.1)
        collector.record_reconcile("team-b", matched=0, kept=1, expired=0, duration_ms=0.1)
        collector.record_timeline("team-b", entries=2, provisional=1)
        (passed,) = collector.log.query(event_type=ReconcilePassed, scope="team-b")
        assert passed.kept == 1
        assert len(collector.log.query(scope="team-b")) == 2

    def test_query_most_recent_first_with_limit(self) -> None:
        collector = _collector()
        for n in range(5):
            collector.record_enqueue(f"c{n}", "react", "p1")
        assert [e.correlation_id for e in collector.log.query(limit=2)] == ["c4", "c3"]

    def test_query_since(self) -> None:
        log = EventLog()
        log.append(IntentEnqueued("old", "react", "p1", timestamp_ns=10))
        log.append(IntentEnqueued("new", "react", "p1", timestamp_ns=20))
        assert [e.correlation_id for e in log.query(since_ns=15)] == ["new"]

    def test_recent_oldest_first(self) -> None:
        collector = _collector()
        _send_lifecycle(collector, "c1")
        assert [type(e) for e in collector.log.recent(2)] == [DispatchAttempted, IntentResolved]

    def test_clear(self) -> None:
        collector = _collector()
        _send_lifecycle(collector, "c1")
        assert collector.log.clear() == 3
        assert collector.log.lifecycle("c1") == []

    def test_stats(self) -> None:
        collector = _collector()
        _send_lifecycle(collector, "c1")
        _send_lifecycle(collector, "c2", ok=False)
        collector.record_source_failure("presence.rooms", OSError("reset"))
        collector.record_source_failure("presence.rooms", OSError("reset"))
        stats = collector.log.stats()
        assert stats["total"] == 8
        assert stats["by_type"]["IntentResolved"] == 2
        assert stats["outcomes"] == {"confirmed": 1, "failed": 1}
        assert stats["failed_sources"] == {"presence.rooms": 2}

    def test_concurrent_views_share_one_log(self) -> None:
        collector = _collector()

        def view(scope: str) -> None:
            for n in range(200):
                collector.record_timeline(scope, entries=n, provisional=0)

        threads = [threading.Thread(target=view, args=(f"team-{n}",)) for n in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert len(collector.log) == 800
        assert len(collector.log.query(scope="team-2", limit=1_000)) == 200


# ---------------------------------------------------------------------------
# EngineCollector
# ---------------------------------------------------------------------------


class TestEngineCollector:
    """One record_* method per event type."""

    def test_record_mutation_lifecycle(self) -> None:
        collector = EngineCollector(quiet=True)
        collector.record_enqueue("c1", "vote", "poll")
        collector.record_attempt("c1", attempt=1, ok=False, error="OSError: reset")
        collector.record_resolution("c1", "vote", outcome="failed")
        events = collector.log.recent(3)
        assert [type(e) for e in events] == [IntentEnqueued, DispatchAttempted, IntentResolved]
        assert events[2].outcome == "failed"

    def test_source_failure_prints_notice(self) -> None:
        collector = EngineCollector()
        buf = io.StringIO()
        with patch("sys.stderr", buf):
            collector.record_source_failure("presence.rooms", OSError("reset"))
        assert "Source failed (presence.rooms): OSError: reset" in buf.getvalue()
        (event,) = collector.log.query(event_type=SourceFailed)
        assert event.error == "OSError: reset"

    def test_quiet_suppresses_notice(self) -> None:
        collector = EngineCollector(quiet=True)
        buf = io.StringIO()
        with patch("sys.stderr", buf):
            collector.record_source_failure("records:team", TimeoutError())
        assert buf.getvalue() == ""

    def test_shared_log(self) -> None:
        log = EventLog()
        collector = EngineCollector(log)
        collector.record_timeline("team", entries=3, provisional=1)
        assert collector.log is log
        assert len(log) == 1
