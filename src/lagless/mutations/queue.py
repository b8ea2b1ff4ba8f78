"""Optimistic mutation queue — one entry per in-flight user action.

``enqueue`` appends a pending intent synchronously so the caller can render
it immediately, applies its counter overlay, and schedules the network
request on the running event loop.  Resolution happens either from the
backend response or, evidence-based, from ``reap_pending`` on the next
authoritative refresh.

Lifecycle:
    pending -> confirmed              (removed; the record carries the truth)
    pending -> failed -> reverted     (overlay undone, compose draft restored,
                                       kept until dismissed or the next sync)
    pending -> cancelled              (removed; request is not recalled)

Single-writer: one queue per view; nothing outside the documented entry
points touches the intents.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable, Mapping, Sequence
from typing import TYPE_CHECKING, Any

from lagless._errors import (
    MutationError,
    MutationInFlightError,
    RejectedError,
    TransientBackendError,
)
from lagless._types import MUTATION_KINDS
from lagless.config import LaglessConfig
from lagless.mutations.correlation import CorrelationRegistry
from lagless.mutations.intents import MutationIntent
from lagless.mutations.matcher import ReconcileResult, reconcile
from lagless.timeline.counters import CounterBoard, CounterState

if TYPE_CHECKING:
    from lagless._types import FailureKind, MutationKind
    from lagless.backend import Backend
    from lagless.observability.collector import EngineCollector
    from lagless.timeline.records import ConfirmedRecord

_TRANSIENT = (TransientBackendError, OSError, TimeoutError)


class MutationQueue:
    """Holds pending intents for one view and drives their delivery.

    Args:
        backend: Remote store the requests are sent to.
        viewer_id: Profile id of the acting user.
        registry: Correlation id source (shared across views of one engine).
        counters: Counter board receiving optimistic overlays and snapshots.
        config: Engine configuration.
        collector: Optional event collector.
        clock: Wall-clock source in seconds.

    """

    def __init__(
        self,
        backend: Backend,
        *,
        viewer_id: str,
        registry: CorrelationRegistry | None = None,
        counters: CounterBoard | None = None,
        config: LaglessConfig | None = None,
        collector: EngineCollector | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._backend = backend
        self._viewer_id = viewer_id
        self._registry = registry if registry is not None else CorrelationRegistry()
        self._counters = counters if counters is not None else CounterBoard()
        self._config = config if config is not None else LaglessConfig()
        self._collector = collector
        self._clock = clock
        # Insertion-ordered: iteration order is enqueue order.
        self._intents: dict[str, MutationIntent] = {}
        self._drafts: dict[str, str] = {}
        self._surfaced: set[str] = set()
        # Server ids of messages already confirmed in this view.
        self._settled: set[str] = set()
        # Displayable record ids from the last snapshot, None before the first.
        self._seen: frozenset[str] | None = None
        self._scheduled: set[str] = set()
        self._tasks: set[asyncio.Task[None]] = set()
        self._version = 0

    # ----- Introspection -----

    @property
    def version(self) -> int:
        """Incremented on every change visible to the merge view."""
        return self._version

    @property
    def counters(self) -> CounterBoard:
        return self._counters

    @property
    def settled_ids(self) -> frozenset[str]:
        """Server ids of confirmed messages; no other send may match them."""
        return frozenset(self._settled)

    @property
    def in_flight(self) -> int:
        """Number of dispatch tasks still running."""
        return len(self._tasks)

    def intents(self) -> tuple[MutationIntent, ...]:
        return tuple(self._intents.values())

    def pending(self) -> tuple[MutationIntent, ...]:
        return tuple(i for i in self._intents.values() if i.is_pending)

    def failures(self) -> tuple[MutationIntent, ...]:
        """Failed intents awaiting dismissal, oldest first."""
        return tuple(
            i for i in self._intents.values() if i.status in ("failed", "reverted")
        )

    def get(self, correlation_id: str) -> MutationIntent:
        try:
            return self._intents[correlation_id]
        except KeyError:
            msg = f"Unknown correlation id: {correlation_id!r}"
            raise MutationError(msg) from None

    def take_draft(self, scope_id: str) -> str | None:
        """Return and clear the compose text restored by a reverted send."""
        return self._drafts.pop(scope_id, None)

    # ----- Entry points -----

    def enqueue(
        self,
        kind: MutationKind,
        target_id: str,
        payload: Mapping[str, Any] | None = None,
    ) -> str:
        """Append a pending intent and schedule its request.

        Returns:
            The correlation id to render the optimistic state under.  For a
            toggle that cancels a not-yet-sent one, the cancelled intent's id.

        Raises:
            MutationError: Unknown kind.
            MutationInFlightError: A vote is already unresolved on the poll.

        """
        if kind not in MUTATION_KINDS:
            msg = f"Unknown mutation kind: {kind!r}"
            raise MutationError(msg)
        payload = dict(payload or {})

        blocked_by: str | None = None
        if kind != "send-message":
            existing = self._unresolved_on(kind, target_id)
            if existing is not None:
                if kind == "vote":
                    msg = f"A vote on {target_id!r} is still unresolved ({existing.correlation_id})"
                    raise MutationInFlightError(msg)
                if kind == "delete":
                    return existing.correlation_id
                if not existing.dispatched:
                    # Correction before anything was sent: nothing to send at all.
                    self.cancel(existing.correlation_id)
                    return existing.correlation_id
                blocked_by = existing.correlation_id

        intent = MutationIntent(
            correlation_id=self._registry.new_correlation_id(),
            kind=kind,
            target_id=target_id,
            payload=payload,
            created_at=self._clock(),
            author_id=self._viewer_id,
            blocked_by=blocked_by,
        )
        self._intents[intent.correlation_id] = intent
        self._apply_overlays(intent)
        self._touch()

        if self._collector is not None:
            self._collector.record_enqueue(intent.correlation_id, kind, target_id)

        if blocked_by is None:
            self._schedule(intent)
        return intent.correlation_id

    def resolve(
        self,
        correlation_id: str,
        outcome: str,
        *,
        error: str = "",
        failure: FailureKind | None = None,
        tier: str = "",
    ) -> None:
        """Move a pending intent to ``confirmed`` or ``failed``.

        Confirmed intents are removed.  Failed intents are reverted
        immediately: counter overlays are undone and a message's text is
        restored as the compose draft.

        """
        intent = self.get(correlation_id)
        if not intent.is_pending:
            msg = f"Intent {correlation_id!r} is {intent.status}, not pending"
            raise MutationError(msg)

        if outcome == "confirmed":
            intent.status = "confirmed"
            if intent.kind == "send-message" and intent.server_id is not None:
                self._settled.add(intent.server_id)
            self._remove(intent)
            self._record(intent, "confirmed", tier)
            self._release_blocked(intent, proceed=True)
        elif outcome == "failed":
            intent.status = "failed"
            intent.failure = failure or "rejected"
            if error:
                intent.error = error
            self._record(intent, "failed", tier)
            self._revert(intent)
            self._release_blocked(intent, proceed=False)
        else:
            msg = f"Unknown outcome {outcome!r} (expected 'confirmed' or 'failed')"
            raise MutationError(msg)
        self._touch()

    def cancel(self, correlation_id: str) -> None:
        """Withdraw a pending intent and undo its optimistic effect.

        An already-issued request is not recalled; its response is ignored.

        """
        intent = self.get(correlation_id)
        if not intent.is_pending:
            msg = f"Intent {correlation_id!r} is {intent.status}, not pending"
            raise MutationError(msg)
        intent.status = "cancelled"
        self._undo_overlays(intent)
        self._remove(intent)
        self._record(intent, "cancelled")
        self._release_blocked(intent, proceed=False)
        self._touch()

    def dismiss(self, correlation_id: str) -> None:
        """Drop a failed intent once the user has seen it."""
        intent = self.get(correlation_id)
        if intent.status not in ("failed", "reverted"):
            msg = f"Only failed intents can be dismissed; {correlation_id!r} is {intent.status}"
            raise MutationError(msg)
        self._remove(intent)
        self._record(intent, "dismissed")
        self._touch()

    def reap_pending(
        self,
        confirmed: Sequence[ConfirmedRecord],
        *,
        now: float | None = None,
    ) -> ReconcileResult:
        """Resolve pending intents against an authoritative snapshot.

        Intents with evidence in ``confirmed`` are confirmed even if their
        response was lost.  Intents past their validity window are reverted,
        unless the backend already acknowledged them.  Failures surfaced by
        an earlier sync are dropped.
        A delete counts as confirmed by absence only when its target was in
        the previous snapshot.

        """
        now = self._clock() if now is None else now

        for intent in [i for i in self._intents.values() if i.correlation_id in self._surfaced]:
            self._remove(intent)
        self._surfaced.clear()

        candidates = [i for i in self._intents.values() if i.is_pending and i.blocked_by is None]
        result = reconcile(
            candidates,
            confirmed,
            now=now,
            ttl_s=self._config.intent_ttl_s,
            clock_skew_s=self._config.clock_skew_s,
            settled=self._settled,
            previous=self._seen,
        )
        self._seen = frozenset(r.record_id for r in confirmed if r.is_displayable)

        for match in result.to_remove:
            if match.intent.is_pending:
                if match.record is not None and match.intent.kind == "send-message":
                    match.intent.server_id = match.record.record_id
                self.resolve(match.intent.correlation_id, "confirmed", tier=match.tier)
        for intent in result.expired:
            if not intent.is_pending:
                continue
            if intent.acknowledged:
                self.resolve(intent.correlation_id, "confirmed", tier="acknowledged")
            else:
                self._record(intent, "expired")
                self.resolve(
                    intent.correlation_id,
                    "failed",
                    failure="expired",
                    error=intent.error or "no confirmation before expiry",
                )

        self._surfaced = {i.correlation_id for i in self.failures()}
        self._touch()
        return result

    def reapply_overlays(self) -> int:
        """Re-apply overlays of still-pending intents on top of fresh counters.

        Call after writing an authoritative snapshot into the counter board,
        which replaces every overlay it touches.

        Returns:
            Number of intents whose overlays were re-applied.

        """
        count = 0
        for intent in self.pending():
            if intent.kind not in ("react", "vote"):
                continue
            intent.overlays.clear()
            self._apply_overlays(intent)
            count += 1
        if count:
            self._touch()
        return count

    def dispatch_waiting(self) -> int:
        """Schedule pending intents that have no request running.

        Used when intents were enqueued outside a running event loop.

        Returns:
            Number of intents scheduled.

        """
        count = 0
        for intent in self.pending():
            if intent.blocked_by is None and intent.correlation_id not in self._scheduled:
                if self._schedule(intent):
                    count += 1
        return count

    async def drain(self) -> None:
        """Wait until every dispatch task (including follow-ups) has finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks))

    # ----- Delivery -----

    def _schedule(self, intent: MutationIntent) -> bool:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return False  # no loop yet; dispatch_waiting() picks it up
        self._scheduled.add(intent.correlation_id)
        task = loop.create_task(self._dispatch(intent), name=f"lagless-{intent.correlation_id}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return True

    async def _dispatch(self, intent: MutationIntent) -> None:
        """Send one intent, retrying transient failures.

        After the last transient failure the intent stays pending: expiry
        reverts it, and a late success is still picked up by evidence.

        """
        max_attempts = self._config.max_attempts
        for attempt in range(1, max_attempts + 1):
            if not intent.is_pending:
                return
            intent.dispatched = True
            intent.attempts = attempt
            t0 = time.perf_counter()
            try:
                response = await self._send(intent)
            except RejectedError as exc:
                self._record_attempt(intent, attempt, t0, exc)
                if intent.is_pending:
                    self.resolve(intent.correlation_id, "failed", error=str(exc), failure="rejected")
                return
            except _TRANSIENT as exc:
                self._record_attempt(intent, attempt, t0, exc)
                intent.error = f"{type(exc).__name__}: {exc}"
                intent.failure = "transient"
                if attempt < max_attempts:
                    await asyncio.sleep(self._config.retry_backoff_s * attempt)
                continue
            except Exception as exc:
                # Unknown backend failure: fail this one entry, keep the view alive.
                self._record_attempt(intent, attempt, t0, exc)
                if intent.is_pending:
                    self.resolve(
                        intent.correlation_id,
                        "failed",
                        error=f"{type(exc).__name__}: {exc}",
                        failure="rejected",
                    )
                return
            self._record_attempt(intent, attempt, t0, None)
            if intent.is_pending and intent.correlation_id in self._intents:
                intent.failure = None
                self._apply_response(intent, response)
            return

    async def _send(self, intent: MutationIntent) -> Any:
        payload = intent.payload
        match intent.kind:
            case "send-message":
                return await self._backend.send_message(
                    intent.target_id, intent.text, intent.correlation_id
                )
            case "react":
                return await self._backend.toggle_reaction(intent.target_id)
            case "vote":
                return await self._backend.cast_vote(intent.target_id, str(payload["option_id"]))
            case "pin":
                return await self._backend.pin_post(
                    intent.target_id, bool(payload.get("pinned", True))
                )
            case "delete":
                return await self._backend.delete_post(intent.target_id)
        msg = f"Cannot dispatch intent of kind {intent.kind!r}"
        raise MutationError(msg)

    def _apply_response(self, intent: MutationIntent, response: Any) -> None:
        match intent.kind:
            case "send-message":
                intent.server_id = str(response.message_id)
                intent.acknowledged = True
                self._touch()
            case "react":
                self._counters.apply_snapshot(
                    intent.target_id,
                    None,
                    CounterState(
                        is_selected_by_viewer=bool(response.is_reacted),
                        aggregate_count=int(response.reaction_count),
                    ),
                )
                self.resolve(intent.correlation_id, "confirmed", tier="response")
            case "vote":
                for tally in response:
                    self._counters.apply_snapshot(
                        intent.target_id,
                        str(tally.option_id),
                        CounterState(
                            is_selected_by_viewer=bool(tally.is_selected_by_viewer),
                            aggregate_count=int(tally.vote_count),
                        ),
                    )
                self.resolve(intent.correlation_id, "confirmed", tier="response")
            case _:
                intent.acknowledged = True
                self._touch()

    # ----- Overlays and rollback -----

    def _apply_overlays(self, intent: MutationIntent) -> None:
        payload = intent.payload
        if intent.kind == "react":
            intent.overlays.append(
                self._counters.apply_optimistic(
                    intent.target_id, selected=bool(payload.get("reacted", True))
                )
            )
        elif intent.kind == "vote":
            option_id = str(payload["option_id"])
            for other, state in self._counters.options(intent.target_id).items():
                if other != option_id and state.is_selected_by_viewer:
                    intent.overlays.append(
                        self._counters.apply_optimistic(intent.target_id, other, selected=False)
                    )
            intent.overlays.append(
                self._counters.apply_optimistic(intent.target_id, option_id, selected=True)
            )

    def _undo_overlays(self, intent: MutationIntent) -> None:
        for token in reversed(intent.overlays):
            self._counters.revert(token)
        intent.overlays.clear()

    def _revert(self, intent: MutationIntent) -> None:
        """failed -> reverted: undo the optimistic effect, restore input."""
        self._undo_overlays(intent)
        if intent.kind == "send-message" and intent.text:
            self._drafts[intent.target_id] = intent.text
        intent.status = "reverted"
        self._record(intent, "reverted")

    def _release_blocked(self, blocker: MutationIntent, *, proceed: bool) -> None:
        """Start or drop corrections that waited on ``blocker``."""
        for held in [i for i in self._intents.values() if i.blocked_by == blocker.correlation_id]:
            if not held.is_pending:
                continue
            if proceed:
                held.blocked_by = None
                # The blocker's response may have overwritten the counter.
                self._undo_overlays(held)
                self._apply_overlays(held)
                self._schedule(held)
            else:
                self.cancel(held.correlation_id)

    # ----- Helpers -----

    def _unresolved_on(self, kind: str, target_id: str) -> MutationIntent | None:
        for intent in reversed(self._intents.values()):
            if intent.is_pending and intent.kind == kind and intent.target_id == target_id:
                return intent
        return None

    def _remove(self, intent: MutationIntent) -> None:
        self._intents.pop(intent.correlation_id, None)
        self._scheduled.discard(intent.correlation_id)
        self._registry.release(intent.correlation_id)

    def _touch(self) -> None:
        self._version += 1

    def _record(self, intent: MutationIntent, outcome: str, tier: str = "") -> None:
        if self._collector is not None:
            self._collector.record_resolution(
                intent.correlation_id, intent.kind, outcome=outcome, tier=tier
            )

    def _record_attempt(
        self,
        intent: MutationIntent,
        attempt: int,
        t0: float,
        exc: BaseException | None,
    ) -> None:
        if self._collector is not None:
            self._collector.record_attempt(
                intent.correlation_id,
                attempt=attempt,
                ok=exc is None,
                error="" if exc is None else f"{type(exc).__name__}: {exc}",
                duration_ms=(time.perf_counter() - t0) * 1000,
            )

    def __len__(self) -> int:
        return len(self._intents)
