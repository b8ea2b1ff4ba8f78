"""Shared test fixtures for lagless."""

from __future__ import annotations

import asyncio
import itertools
from collections.abc import Iterable, Iterator, Sequence
from dataclasses import replace

import pytest

from lagless._errors import TransientBackendError
from lagless.backend import PollTally, ReactionSnapshot, SendReceipt, TeamSlug
from lagless.config import LaglessConfig
from lagless.mutations.correlation import CorrelationRegistry
from lagless.observability.collector import EngineCollector
from lagless.observability.log import EventLog
from lagless.presence.aggregator import ActiveSession, RoomAssignment
from lagless.timeline.records import ConfirmedRecord


class ManualClock:
    """Wall clock that only moves when told to."""

    def __init__(self, now: float = 1_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeBackend:
    """In-memory record store implementing the ``Backend`` protocol.

    Records live in one flat list per scope.  Failures are scripted per
    method name: ``fail()`` queues exceptions for the next calls and
    ``offline`` makes every call of a method raise a transient error.
    While ``gate`` is set to an unset event, mutation calls block on it.
    """

    def __init__(self, clock: ManualClock | None = None) -> None:
        self.clock = clock or ManualClock()
        self.records: dict[str, list[ConfirmedRecord]] = {}
        self.sessions: list[ActiveSession] = []
        self.rooms: list[RoomAssignment] = []
        self.slugs: dict[str, str] = {}
        self.calls: list[tuple[str, tuple[object, ...]]] = []
        self.offline: set[str] = set()
        self.message_ids: Iterator[str] = (str(n) for n in itertools.count(1))
        self.echo_correlation = True
        self.tombstones = False
        self.gate: asyncio.Event | None = None
        self._failures: dict[str, list[BaseException]] = {}

    # ----- Scripting -----

    def seed(self, scope_id: str, *records: ConfirmedRecord) -> None:
        self.records.setdefault(scope_id, []).extend(records)

    def fail(self, method: str, *errors: BaseException) -> None:
        self._failures.setdefault(method, []).extend(errors)

    def count(self, method: str) -> int:
        return sum(1 for name, _ in self.calls if name == method)

    async def _enter(self, method: str, *args: object, gated: bool = True) -> None:
        self.calls.append((method, args))
        if gated and self.gate is not None:
            await self.gate.wait()
        if method in self.offline:
            msg = f"{method}: network unreachable"
            raise TransientBackendError(msg)
        queued = self._failures.get(method)
        if queued:
            raise queued.pop(0)

    # ----- Mutations -----

    async def send_message(self, scope_id: str, text: str, correlation_id: str) -> SendReceipt:
        await self._enter("send_message", scope_id, text, correlation_id)
        message_id = next(self.message_ids)
        self.seed(
            scope_id,
            ConfirmedRecord(
                record_id=message_id,
                kind="message",
                target_id=scope_id,
                author_id="u1",
                body=text,
                created_at=self.clock(),
                correlation_id=correlation_id if self.echo_correlation else None,
            ),
        )
        return SendReceipt(message_id=message_id)

    async def toggle_reaction(self, post_id: str) -> ReactionSnapshot:
        await self._enter("toggle_reaction", post_id)
        for scope, record in self._find(lambda r: r.kind == "reaction" and r.target_id == post_id):
            reacted = not record.is_selected_by_viewer
            count = max(0, record.aggregate_count + (1 if reacted else -1))
            self._swap(scope, record, is_selected_by_viewer=reacted, aggregate_count=count)
            return ReactionSnapshot(reaction_count=count, is_reacted=reacted)
        self.seed(
            "feed",
            ConfirmedRecord(
                record_id=f"r-{post_id}",
                kind="reaction",
                target_id=post_id,
                is_selected_by_viewer=True,
                aggregate_count=1,
            ),
        )
        return ReactionSnapshot(reaction_count=1, is_reacted=True)

    async def cast_vote(self, poll_id: str, option_id: str) -> Sequence[PollTally]:
        await self._enter("cast_vote", poll_id, option_id)
        tallies: list[PollTally] = []
        for scope, record in self._find(lambda r: r.kind == "poll_option" and r.target_id == poll_id):
            selected = record.record_id == option_id
            count = record.aggregate_count
            if selected and not record.is_selected_by_viewer:
                count += 1
            elif not selected and record.is_selected_by_viewer:
                count -= 1
            self._swap(scope, record, is_selected_by_viewer=selected, aggregate_count=count)
            tallies.append(PollTally(record.record_id, count, selected))
        return tallies

    async def pin_post(self, post_id: str, pinned: bool) -> None:
        await self._enter("pin_post", post_id, pinned)
        for scope, record in self._find(lambda r: r.is_displayable and r.record_id == post_id):
            self._swap(scope, record, is_pinned=pinned)

    async def delete_post(self, target_id: str) -> None:
        await self._enter("delete_post", target_id)
        for scope, record in self._find(lambda r: r.is_displayable and r.record_id == target_id):
            if self.tombstones:
                self._swap(scope, record, is_deleted=True, body="")
            else:
                self.records[scope].remove(record)

    # ----- Queries -----

    async def fetch_records(self, scope_id: str) -> Sequence[ConfirmedRecord]:
        await self._enter("fetch_records", scope_id, gated=False)
        return list(self.records.get(scope_id, ()))

    async def list_active_sessions(self, profile_ids: Sequence[str]) -> Sequence[ActiveSession]:
        await self._enter("list_active_sessions", tuple(profile_ids), gated=False)
        wanted = set(profile_ids)
        return [s for s in self.sessions if s.profile_id in wanted]

    async def list_room_assignments(self, session_ids: Sequence[str]) -> Sequence[RoomAssignment]:
        await self._enter("list_room_assignments", tuple(session_ids), gated=False)
        wanted = set(session_ids)
        return [r for r in self.rooms if r.session_id in wanted]

    async def resolve_team_slugs(self, team_ids: Sequence[str]) -> Sequence[TeamSlug]:
        await self._enter("resolve_team_slugs", tuple(team_ids), gated=False)
        return [TeamSlug(t, self.slugs[t]) for t in team_ids if t in self.slugs]

    # ----- Helpers -----

    def _find(self, predicate) -> Iterable[tuple[str, ConfirmedRecord]]:
        return [
            (scope, record)
            for scope, records in self.records.items()
            for record in records
            if predicate(record)
        ]

    def _swap(self, scope: str, record: ConfirmedRecord, **changes: object) -> None:
        rows = self.records[scope]
        rows[rows.index(record)] = replace(record, **changes)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def backend(clock: ManualClock) -> FakeBackend:
    return FakeBackend(clock)


@pytest.fixture
def config() -> LaglessConfig:
    """Defaults, without retry delays."""
    return LaglessConfig(retry_backoff_s=0.0)


@pytest.fixture
def registry() -> CorrelationRegistry:
    return CorrelationRegistry(prefix="c")


@pytest.fixture
def collector() -> EngineCollector:
    return EngineCollector(EventLog(), quiet=True)
