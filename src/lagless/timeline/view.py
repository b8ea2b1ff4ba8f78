"""Timeline view — the per-scope store behind one chat or post feed.

A view owns everything one screen needs:

- the ``MutationQueue`` holding the viewer's pending actions,
- the ``CounterBoard`` with reaction and poll state,
- the last confirmed snapshot from the backend,
- the ``ScrollAnchor`` deciding whether updates follow the bottom.

Authoritative data arrives either pushed (``apply_refresh``) or polled
(``refresh`` / the loop started by ``start``).  Each pass writes counters,
reaps pending intents against the snapshot, and invalidates the memoized
timeline.

Thread Safety:
    Single writer.  All entry points run on the owning event loop.

"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable, Sequence
from typing import TYPE_CHECKING

from lagless._errors import MutationError
from lagless.config import LaglessConfig
from lagless.mutations.queue import MutationQueue
from lagless.observability.profiler import RECONCILE_STAGES, PipelineProfiler
from lagless.timeline.counters import CounterBoard, CounterState
from lagless.timeline.merge import TimelineEntry, build_timeline, count_provisional
from lagless.timeline.scroll import ScrollAnchor

if TYPE_CHECKING:
    from lagless.backend import Backend
    from lagless.mutations.correlation import CorrelationRegistry
    from lagless.mutations.intents import MutationIntent
    from lagless.mutations.matcher import ReconcileResult
    from lagless.observability.collector import EngineCollector
    from lagless.timeline.records import ConfirmedRecord
    from lagless.timeline.scroll import AnchorState


class TimelineView:
    """Optimistic timeline for one scope (chat room, team channel, feed).

    Args:
        backend: Remote store.
        scope_id: Chat room / channel id the view shows.
        viewer_id: Profile id of the acting user.
        registry: Correlation id source shared across views.
        config: Engine configuration.
        collector: Optional event collector.
        clock: Wall-clock source in seconds.

    """

    def __init__(
        self,
        backend: Backend,
        scope_id: str,
        *,
        viewer_id: str,
        registry: CorrelationRegistry | None = None,
        config: LaglessConfig | None = None,
        collector: EngineCollector | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._backend = backend
        self._scope_id = scope_id
        self._config = config if config is not None else LaglessConfig()
        self._collector = collector
        self._counters = CounterBoard()
        self._queue = MutationQueue(
            backend,
            viewer_id=viewer_id,
            registry=registry,
            counters=self._counters,
            config=self._config,
            collector=collector,
            clock=clock,
        )
        self._anchor = ScrollAnchor(self._config.scroll_threshold_px)
        self._profiler: PipelineProfiler | None = None
        if collector is not None:
            self._profiler = PipelineProfiler(
                collector.log, "reconcile", RECONCILE_STAGES, verbose=self._config.verbose
            )

        self._records: tuple[ConfirmedRecord, ...] = ()
        self._snapshot_version = 0
        self._memo_key: tuple[int, int] | None = None
        self._timeline: tuple[TimelineEntry, ...] = ()
        self._loop_task: asyncio.Task[None] | None = None
        self._closed = False

    # ----- Accessors -----

    @property
    def scope_id(self) -> str:
        return self._scope_id

    @property
    def queue(self) -> MutationQueue:
        return self._queue

    @property
    def counters(self) -> CounterBoard:
        return self._counters

    @property
    def anchor(self) -> ScrollAnchor:
        return self._anchor

    @property
    def records(self) -> tuple[ConfirmedRecord, ...]:
        """Last confirmed snapshot."""
        return self._records

    @property
    def is_running(self) -> bool:
        return self._loop_task is not None and not self._loop_task.done()

    # ----- Mutations -----

    def send_message(self, text: str) -> str:
        """Show ``text`` immediately and send it.

        Raises:
            MutationError: The text is blank.

        """
        body = text.strip()
        if not body:
            msg = "Cannot send an empty message"
            raise MutationError(msg)
        correlation_id = self._queue.enqueue("send-message", self._scope_id, {"text": body})
        self._anchor.jump_to_latest()
        return correlation_id

    def toggle_reaction(self, post_id: str) -> str:
        """Flip the viewer's reaction on a post."""
        desired = not self._counters.get(post_id).is_selected_by_viewer
        return self._queue.enqueue("react", post_id, {"reacted": desired})

    def cast_vote(self, poll_id: str, option_id: str) -> str:
        """Vote for one option of a poll.

        Raises:
            MutationInFlightError: A vote on this poll is still unresolved.

        """
        return self._queue.enqueue("vote", poll_id, {"option_id": option_id})

    def set_pinned(self, post_id: str, pinned: bool = True) -> str | None:
        """Pin or unpin a post.  Returns None when it is already in that state."""
        if self._effective_pinned(post_id) == pinned:
            return None
        return self._queue.enqueue("pin", post_id, {"pinned": pinned})

    def delete(self, target_id: str) -> str:
        """Hide a message or post immediately and delete it server-side."""
        return self._queue.enqueue("delete", target_id)

    def cancel(self, correlation_id: str) -> None:
        self._queue.cancel(correlation_id)

    def dismiss(self, correlation_id: str) -> None:
        self._queue.dismiss(correlation_id)

    def take_draft(self) -> str | None:
        """Compose text restored by a failed send, if any."""
        return self._queue.take_draft(self._scope_id)

    # ----- Authoritative data -----

    def apply_refresh(self, records: Sequence[ConfirmedRecord]) -> ReconcileResult:
        """Adopt a pushed snapshot and reconcile pending intents against it."""
        if self._profiler is not None:
            self._profiler.begin(self._scope_id)
        return self._adopt(records)

    async def refresh(self) -> ReconcileResult | None:
        """Fetch the scope's records and reconcile.

        A failed fetch keeps the previous snapshot and returns None.  Intents
        enqueued outside an event loop are dispatched here.

        """
        self._queue.dispatch_waiting()
        profiler = self._profiler
        if profiler is not None:
            profiler.begin(self._scope_id)
            profiler.start("fetch")
        try:
            records = await self._backend.fetch_records(self._scope_id)
        except Exception as exc:
            if self._collector is not None:
                self._collector.record_source_failure(f"records:{self._scope_id}", exc)
            return None
        if profiler is not None:
            profiler.stop("fetch")
        return self._adopt(records)

    def _adopt(self, records: Sequence[ConfirmedRecord]) -> ReconcileResult:
        profiler = self._profiler
        t0 = time.perf_counter()
        if profiler is not None:
            profiler.start("match")
        self._records = tuple(records)
        self._snapshot_version += 1
        self._counters.apply_records(self._records)
        result = self._queue.reap_pending(self._records)
        self._queue.reapply_overlays()
        if profiler is not None:
            profiler.stop("match")
            profiler.start("merge")
        self.get_timeline()
        if profiler is not None:
            profiler.stop("merge")
            profiler.finish()
        if self._collector is not None:
            self._collector.record_reconcile(
                self._scope_id,
                matched=len(result.to_remove),
                kept=len(result.to_keep),
                expired=len(result.expired),
                duration_ms=(time.perf_counter() - t0) * 1000,
            )
        return result

    # ----- Reconcile loop -----

    def start(self) -> asyncio.Task[None]:
        """Start polling every ``reconcile_interval_s`` on the running loop."""
        if self._closed:
            msg = f"View {self._scope_id!r} is closed"
            raise MutationError(msg)
        if self._loop_task is None or self._loop_task.done():
            self._loop_task = asyncio.get_running_loop().create_task(
                self._run(), name=f"lagless-view-{self._scope_id}"
            )
        return self._loop_task

    async def _run(self) -> None:
        while True:
            await self.refresh()
            await asyncio.sleep(self._config.reconcile_interval_s)

    def close(self) -> None:
        """Stop scheduling reconciliation passes.

        Dispatches already in flight keep running; their responses still
        land in the queue.
        """
        self._closed = True
        if self._loop_task is not None:
            self._loop_task.cancel()

    async def aclose(self) -> None:
        """Close and wait for the polling loop to unwind."""
        self.close()
        task, self._loop_task = self._loop_task, None
        if task is not None:
            try:
                await task
            except asyncio.CancelledError:
                pass

    async def drain(self) -> None:
        """Wait for every in-flight dispatch to finish."""
        await self._queue.drain()

    # ----- Read side -----

    def get_timeline(self) -> tuple[TimelineEntry, ...]:
        """Merged timeline, rebuilt only when the queue or snapshot changed."""
        key = (self._queue.version, self._snapshot_version)
        if key == self._memo_key:
            return self._timeline
        self._timeline = build_timeline(
            self._records,
            self._queue.intents(),
            clock_skew_s=self._config.clock_skew_s,
            settled=self._queue.settled_ids,
        )
        self._memo_key = key
        if self._collector is not None:
            self._collector.record_timeline(
                self._scope_id,
                entries=len(self._timeline),
                provisional=count_provisional(self._timeline),
            )
        return self._timeline

    def get_counter(self, target_id: str, option_id: str | None = None) -> CounterState:
        return self._counters.get(target_id, option_id)

    def failures(self) -> tuple[MutationIntent, ...]:
        """Failed actions the viewer has not dismissed yet."""
        return self._queue.failures()

    def is_pinned_to_latest(self) -> bool:
        return self._anchor.is_pinned_to_latest

    def report_scroll(
        self,
        scroll_top: float,
        scroll_height: float,
        client_height: float,
    ) -> AnchorState:
        return self._anchor.report_scroll(scroll_top, scroll_height, client_height)

    def report_content(self, scroll_height: float) -> bool:
        """Content height changed.  True means scroll to the bottom."""
        return self._anchor.report_content(scroll_height)

    # ----- Helpers -----

    def _effective_pinned(self, post_id: str) -> bool:
        for intent in reversed(self._queue.pending()):
            if intent.kind == "pin" and intent.target_id == post_id:
                return bool(intent.payload.get("pinned", True))
        pinned = False
        for record in self._records:
            if record.record_id == post_id and record.is_displayable:
                pinned = record.is_pinned
        return pinned
