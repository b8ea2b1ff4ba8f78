"""Tests for lagless.mutations.queue — optimistic mutation queue."""

from __future__ import annotations

import asyncio

import pytest

from conftest import FakeBackend, ManualClock
from lagless._errors import MutationError, MutationInFlightError, RejectedError
from lagless.config import LaglessConfig
from lagless.mutations.correlation import CorrelationRegistry
from lagless.mutations.queue import MutationQueue
from lagless.observability.collector import EngineCollector
from lagless.observability.events import DispatchAttempted, IntentResolved
from lagless.timeline.counters import CounterState
from lagless.timeline.records import ConfirmedRecord, message


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def queue(
    backend: FakeBackend,
    clock: ManualClock,
    config: LaglessConfig,
    registry: CorrelationRegistry,
    collector: EngineCollector,
) -> MutationQueue:
    return MutationQueue(
        backend,
        viewer_id="u1",
        registry=registry,
        config=config,
        collector=collector,
        clock=clock,
    )


def _outcomes(collector: EngineCollector, cid: str) -> list[str]:
    return [e.outcome for e in collector.log.lifecycle(cid) if isinstance(e, IntentResolved)]


# ---------------------------------------------------------------------------
# Enqueue (no event loop)
# ---------------------------------------------------------------------------


class TestEnqueue:
    """Synchronous enqueue: visible before any network activity."""

    def test_enqueue_appends_pending_intent(self, queue: MutationQueue, clock: ManualClock) -> None:
        cid = queue.enqueue("send-message", "team", {"text": "hi"})
        intent = queue.get(cid)
        assert cid == "c1"
        assert intent.is_pending
        assert intent.created_at == clock.now
        assert intent.author_id == "u1"
        assert not intent.dispatched

    def test_unknown_kind_raises(self, queue: MutationQueue) -> None:
        with pytest.raises(MutationError, match="Unknown mutation kind"):
            queue.enqueue("edit", "m1")  # type: ignore[arg-type]

    def test_unknown_correlation_id_raises(self, queue: MutationQueue) -> None:
        with pytest.raises(MutationError, match="Unknown correlation id"):
            queue.get("nope")

    def test_version_moves_on_enqueue(self, queue: MutationQueue) -> None:
        before = queue.version
        queue.enqueue("send-message", "team", {"text": "hi"})
        assert queue.version > before

    def test_reaction_overlay_applied(self, queue: MutationQueue) -> None:
        queue.counters.apply_snapshot("p1", None, CounterState(False, 2))
        queue.enqueue("react", "p1", {"reacted": True})
        assert queue.counters.get("p1") == CounterState(True, 3)

    def test_vote_overlay_moves_selection(self, queue: MutationQueue) -> None:
        queue.counters.apply_snapshot("poll", "o1", CounterState(True, 4))
        queue.counters.apply_snapshot("poll", "o2", CounterState(False, 1))
        queue.enqueue("vote", "poll", {"option_id": "o2"})
        assert queue.counters.get("poll", "o1") == CounterState(False, 3)
        assert queue.counters.get("poll", "o2") == CounterState(True, 2)

    def test_messages_are_independent(self, queue: MutationQueue) -> None:
        a = queue.enqueue("send-message", "team", {"text": "hi"})
        b = queue.enqueue("send-message", "team", {"text": "hi"})
        assert a != b
        assert len(queue.pending()) == 2


class TestSameTarget:
    """At most one unresolved non-correcting mutation per target."""

    def test_second_vote_raises(self, queue: MutationQueue) -> None:
        queue.enqueue("vote", "poll", {"option_id": "o1"})
        with pytest.raises(MutationInFlightError):
            queue.enqueue("vote", "poll", {"option_id": "o2"})

    def test_second_delete_returns_existing(self, queue: MutationQueue) -> None:
        first = queue.enqueue("delete", "m1")
        assert queue.enqueue("delete", "m1") == first
        assert len(queue) == 1

    def test_undispatched_toggle_is_cancelled(self, queue: MutationQueue) -> None:
        queue.counters.apply_snapshot("p1", None, CounterState(False, 2))
        first = queue.enqueue("react", "p1", {"reacted": True})
        assert queue.enqueue("react", "p1", {"reacted": False}) == first
        assert len(queue) == 0
        assert queue.counters.get("p1") == CounterState(False, 2)


# ---------------------------------------------------------------------------
# Resolve / cancel / dismiss
# ---------------------------------------------------------------------------


class TestLifecycle:
    """Explicit state transitions."""

    def test_confirm_removes(self, queue: MutationQueue, registry: CorrelationRegistry) -> None:
        cid = queue.enqueue("send-message", "team", {"text": "hi"})
        queue.resolve(cid, "confirmed")
        assert len(queue) == 0
        assert not registry.is_live(cid)

    def test_fail_reverts_overlay_and_restores_draft(self, queue: MutationQueue) -> None:
        queue.counters.apply_snapshot("p1", None, CounterState(False, 2))
        react = queue.enqueue("react", "p1", {"reacted": True})
        send = queue.enqueue("send-message", "team", {"text": "hello"})
        queue.resolve(react, "failed", error="nope")
        queue.resolve(send, "failed")
        assert queue.counters.get("p1") == CounterState(False, 2)
        assert queue.get(react).status == "reverted"
        assert queue.get(react).failure == "rejected"
        assert queue.take_draft("team") == "hello"
        assert queue.take_draft("team") is None
        assert [i.correlation_id for i in queue.failures()] == [react, send]

    def test_fail_records_failed_then_reverted(
        self, queue: MutationQueue, collector: EngineCollector
    ) -> None:
        cid = queue.enqueue("send-message", "team", {"text": "hi"})
        queue.resolve(cid, "failed")
        assert _outcomes(collector, cid) == ["failed", "reverted"]

    def test_resolve_twice_raises(self, queue: MutationQueue) -> None:
        cid = queue.enqueue("send-message", "team", {"text": "hi"})
        queue.resolve(cid, "failed")
        with pytest.raises(MutationError, match="not pending"):
            queue.resolve(cid, "confirmed")

    def test_unknown_outcome_raises(self, queue: MutationQueue) -> None:
        cid = queue.enqueue("send-message", "team", {"text": "hi"})
        with pytest.raises(MutationError, match="Unknown outcome"):
            queue.resolve(cid, "maybe")

    def test_cancel_undoes_overlay(self, queue: MutationQueue) -> None:
        queue.counters.apply_snapshot("p1", None, CounterState(True, 5))
        cid = queue.enqueue("react", "p1", {"reacted": False})
        queue.cancel(cid)
        assert queue.counters.get("p1") == CounterState(True, 5)
        assert len(queue) == 0

    def test_dismiss_only_failed(self, queue: MutationQueue) -> None:
        cid = queue.enqueue("send-message", "team", {"text": "hi"})
        with pytest.raises(MutationError, match="Only failed"):
            queue.dismiss(cid)
        queue.resolve(cid, "failed")
        queue.dismiss(cid)
        assert queue.failures() == ()


# ---------------------------------------------------------------------------
# reap_pending
# ---------------------------------------------------------------------------


class TestReapPending:
    """Evidence-based resolution against authoritative snapshots."""

    def test_lost_response_confirmed_by_evidence(self, queue: MutationQueue) -> None:
        cid = queue.enqueue("send-message", "team", {"text": "hi"})
        record = message("m1", "team", author_id="u1", body="hi", created_at=1_000.5)
        result = queue.reap_pending([record])
        assert result.removed_ids == {cid}
        assert len(queue) == 0

    def test_expired_intent_reverted(self, queue: MutationQueue, clock: ManualClock) -> None:
        cid = queue.enqueue("send-message", "team", {"text": "hi"})
        clock.advance(31)
        queue.reap_pending([])
        intent = queue.get(cid)
        assert intent.status == "reverted"
        assert intent.failure == "expired"
        assert queue.take_draft("team") == "hi"

    def test_acknowledged_intent_expires_as_confirmed(
        self, queue: MutationQueue, clock: ManualClock, collector: EngineCollector
    ) -> None:
        cid = queue.enqueue("pin", "p1", {"pinned": True})
        queue.get(cid).acknowledged = True
        clock.advance(31)
        queue.reap_pending([])
        assert len(queue) == 0
        assert _outcomes(collector, cid) == ["confirmed"]

    def test_surfaced_failure_dropped_on_next_sync(
        self, queue: MutationQueue, clock: ManualClock
    ) -> None:
        cid = queue.enqueue("send-message", "team", {"text": "hi"})
        clock.advance(31)
        queue.reap_pending([])
        assert [i.correlation_id for i in queue.failures()] == [cid]
        queue.reap_pending([])
        assert queue.failures() == ()

    def test_held_correction_not_reconciled(self, queue: MutationQueue) -> None:
        first = queue.enqueue("react", "p1", {"reacted": True})
        queue.get(first).dispatched = True
        held = queue.enqueue("react", "p1", {"reacted": False})
        assert queue.get(held).blocked_by == first
        reaction = ConfirmedRecord("r", "reaction", "p1", is_selected_by_viewer=False)
        queue.reap_pending([reaction])
        assert queue.get(held).is_pending

    def test_reapply_overlays_after_snapshot(self, queue: MutationQueue) -> None:
        queue.counters.apply_snapshot("p1", None, CounterState(False, 2))
        queue.enqueue("react", "p1", {"reacted": True})
        queue.counters.apply_snapshot("p1", None, CounterState(False, 3))
        assert queue.reapply_overlays() == 1
        assert queue.counters.get("p1") == CounterState(True, 4)

    def test_evidence_on_a_later_pass(
        self, queue: MutationQueue, clock: ManualClock, collector: EngineCollector
    ) -> None:
        """Quiet passes keep the intent; the first pass with evidence removes it."""
        cid = queue.enqueue("send-message", "team", {"text": "hi"})
        for _ in range(4):
            clock.advance(5)
            result = queue.reap_pending([])
            assert [i.correlation_id for i in result.to_keep] == [cid]
        record = message("m1", "team", author_id="u1", body="hi", created_at=1_012.0)
        queue.reap_pending([record])
        assert len(queue) == 0
        assert _outcomes(collector, cid) == ["confirmed"]
        assert queue.take_draft("team") is None

    def test_repeated_text_not_matched_to_earlier_message(
        self, queue: MutationQueue, clock: ManualClock
    ) -> None:
        first = queue.enqueue("send-message", "team", {"text": "hi"})
        record = message("m1", "team", author_id="u1", body="hi", created_at=1_000.0, correlation_id=first)
        queue.reap_pending([record])
        clock.advance(2)
        second = queue.enqueue("send-message", "team", {"text": "hi"})
        queue.reap_pending([record])
        assert queue.get(second).is_pending

    def test_repeated_text_without_echo_not_matched(
        self, queue: MutationQueue, clock: ManualClock
    ) -> None:
        queue.enqueue("send-message", "team", {"text": "hi"})
        record = message("m1", "team", author_id="u1", body="hi", created_at=1_000.0)
        queue.reap_pending([record])
        assert queue.settled_ids == {"m1"}
        clock.advance(2)
        second = queue.enqueue("send-message", "team", {"text": "hi"})
        queue.reap_pending([record])
        assert queue.get(second).is_pending

    def test_delete_absent_before_first_sighting_stays_pending(self, queue: MutationQueue) -> None:
        cid = queue.enqueue("delete", "m1")
        queue.reap_pending([])
        assert queue.get(cid).is_pending

    def test_delete_confirmed_once_target_disappears(self, queue: MutationQueue) -> None:
        cid = queue.enqueue("delete", "m1")
        queue.reap_pending([message("m1", "team", author_id="u1", body="x", created_at=1.0)])
        assert queue.get(cid).is_pending
        queue.reap_pending([])
        assert len(queue) == 0


# ---------------------------------------------------------------------------
# Dispatch
# ---------------------------------------------------------------------------


class TestDispatch:
    """Background delivery on the running event loop."""

    @pytest.mark.asyncio
    async def test_message_acknowledged_with_server_id(
        self, queue: MutationQueue, backend: FakeBackend
    ) -> None:
        backend.message_ids = iter(["42"])
        cid = queue.enqueue("send-message", "team", {"text": "hi"})
        await queue.drain()
        intent = queue.get(cid)
        assert intent.is_pending
        assert intent.acknowledged
        assert intent.server_id == "42"
        assert backend.calls == [("send_message", ("team", "hi", cid))]

    @pytest.mark.asyncio
    async def test_reaction_response_confirms_and_writes_counter(
        self, queue: MutationQueue, backend: FakeBackend
    ) -> None:
        backend.seed("feed", ConfirmedRecord("r", "reaction", "p1", aggregate_count=7))
        queue.counters.apply_snapshot("p1", None, CounterState(False, 6))
        queue.enqueue("react", "p1", {"reacted": True})
        await queue.drain()
        assert len(queue) == 0
        assert queue.counters.get("p1") == CounterState(True, 8)

    @pytest.mark.asyncio
    async def test_vote_response_writes_every_option(
        self, queue: MutationQueue, backend: FakeBackend
    ) -> None:
        backend.seed(
            "feed",
            ConfirmedRecord("o1", "poll_option", "poll", aggregate_count=3),
            ConfirmedRecord("o2", "poll_option", "poll", aggregate_count=1),
        )
        queue.enqueue("vote", "poll", {"option_id": "o2"})
        await queue.drain()
        assert queue.counters.options("poll") == {
            "o1": CounterState(False, 3),
            "o2": CounterState(True, 2),
        }

    @pytest.mark.asyncio
    async def test_transient_failures_retried(
        self, queue: MutationQueue, backend: FakeBackend, collector: EngineCollector
    ) -> None:
        backend.fail("send_message", OSError("reset"))
        cid = queue.enqueue("send-message", "team", {"text": "hi"})
        await queue.drain()
        assert queue.get(cid).attempts == 2
        assert queue.get(cid).acknowledged
        attempts = collector.log.query(event_type=DispatchAttempted, scope=cid)
        assert [a.ok for a in reversed(attempts)] == [False, True]

    @pytest.mark.asyncio
    async def test_exhausted_retries_stay_pending(
        self, queue: MutationQueue, backend: FakeBackend
    ) -> None:
        backend.offline.add("send_message")
        cid = queue.enqueue("send-message", "team", {"text": "hi"})
        await queue.drain()
        intent = queue.get(cid)
        assert intent.is_pending
        assert intent.attempts == 3
        assert intent.failure == "transient"
        assert backend.count("send_message") == 3

    @pytest.mark.asyncio
    async def test_rejection_reverts_immediately(
        self, queue: MutationQueue, backend: FakeBackend
    ) -> None:
        backend.fail("cast_vote", RejectedError("already voted"))
        queue.counters.apply_snapshot("poll", "o1", CounterState(False, 3))
        cid = queue.enqueue("vote", "poll", {"option_id": "o1"})
        await queue.drain()
        intent = queue.get(cid)
        assert intent.status == "reverted"
        assert intent.failure == "rejected"
        assert intent.error == "already voted"
        assert backend.count("cast_vote") == 1
        assert queue.counters.get("poll", "o1") == CounterState(False, 3)

    @pytest.mark.asyncio
    async def test_unexpected_error_fails_only_that_intent(
        self, queue: MutationQueue, backend: FakeBackend
    ) -> None:
        backend.fail("pin_post", ValueError("bad payload"))
        pin = queue.enqueue("pin", "p1", {"pinned": True})
        send = queue.enqueue("send-message", "team", {"text": "still works"})
        await queue.drain()
        assert queue.get(pin).status == "reverted"
        assert "ValueError" in queue.get(pin).error
        assert queue.get(send).acknowledged

    @pytest.mark.asyncio
    async def test_cancelled_intent_response_ignored(
        self, queue: MutationQueue, backend: FakeBackend
    ) -> None:
        backend.gate = asyncio.Event()
        backend.seed("feed", ConfirmedRecord("r", "reaction", "p1", aggregate_count=0))
        cid = queue.enqueue("react", "p1", {"reacted": True})
        await asyncio.sleep(0)
        assert queue.get(cid).dispatched
        queue.cancel(cid)
        backend.gate.set()
        await queue.drain()
        assert len(queue) == 0
        # The late snapshot is not written back.
        assert queue.counters.get("p1") == CounterState(False, 0)

    @pytest.mark.asyncio
    async def test_held_correction_dispatched_after_confirmation(
        self, queue: MutationQueue, backend: FakeBackend
    ) -> None:
        backend.gate = asyncio.Event()
        backend.seed("feed", ConfirmedRecord("r", "reaction", "p1", aggregate_count=0))
        first = queue.enqueue("react", "p1", {"reacted": True})
        await asyncio.sleep(0)
        held = queue.enqueue("react", "p1", {"reacted": False})
        assert queue.get(held).blocked_by == first
        assert queue.counters.get("p1") == CounterState(False, 0)
        backend.gate.set()
        await queue.drain()
        assert backend.count("toggle_reaction") == 2
        assert len(queue) == 0
        assert queue.counters.get("p1") == CounterState(False, 0)

    @pytest.mark.asyncio
    async def test_held_correction_cancelled_when_first_fails(
        self, queue: MutationQueue, backend: FakeBackend
    ) -> None:
        backend.gate = asyncio.Event()
        backend.fail("toggle_reaction", RejectedError("post gone"))
        first = queue.enqueue("react", "p1", {"reacted": True})
        await asyncio.sleep(0)
        held = queue.enqueue("react", "p1", {"reacted": False})
        backend.gate.set()
        await queue.drain()
        assert queue.get(first).status == "reverted"
        with pytest.raises(MutationError):
            queue.get(held)
        assert backend.count("toggle_reaction") == 1

    def test_dispatch_waiting_without_loop(self, queue: MutationQueue) -> None:
        queue.enqueue("send-message", "team", {"text": "hi"})
        assert queue.dispatch_waiting() == 0
        assert queue.in_flight == 0

    @pytest.mark.asyncio
    async def test_dispatch_waiting_picks_up_offline_enqueues(
        self, queue: MutationQueue, backend: FakeBackend
    ) -> None:
        loop = asyncio.get_running_loop()
        # Enqueue from a thread with no running loop.
        cid = await loop.run_in_executor(
            None, lambda: queue.enqueue("send-message", "team", {"text": "hi"})
        )
        assert backend.count("send_message") == 0
        assert queue.dispatch_waiting() == 1
        assert queue.dispatch_waiting() == 0
        await queue.drain()
        assert queue.get(cid).acknowledged
