"""Presence pipeline — explicit refresh of the three presence sources.

Instead of recomputing the rail on every unrelated state change, the
pipeline keeps one snapshot per source and recomputes only when:

- a refresh tick fires (``run()`` every ``presence_interval_s``), or
- a source is invalidated (``invalidate()`` / ``set_directory()``).

Stale sources are refetched in dependency order (sessions need directory
ids, rooms need group session ids, slugs need team ids).  An unchanged
result keeps the previous snapshot object, and aggregation is memoized on
the identity of its input snapshots.

Failure handling:
    A failed source query never propagates.  It is recorded, the source
    stays stale for the next pass, and the rail degrades: no sessions means
    an empty rail, no rooms or slugs means fallback destinations.
"""

from __future__ import annotations

import asyncio
from collections.abc import Iterable, Mapping
from types import MappingProxyType
from typing import TYPE_CHECKING

from lagless._errors import PresenceError
from lagless.config import LaglessConfig
from lagless.observability.profiler import PRESENCE_STAGES, PipelineProfiler
from lagless.presence.aggregator import (
    ActiveSession,
    DirectoryMember,
    PresenceEntry,
    RoomAssignment,
    aggregate_presence_with_stats,
)

if TYPE_CHECKING:
    from lagless._types import PresenceSource
    from lagless.backend import Backend
    from lagless.observability.collector import EngineCollector

# Invalidating a source also invalidates everything derived from it.
# Rooms follow sessions only when the session list actually changes.
_DOWNSTREAM: dict[str, tuple[str, ...]] = {
    "directory": ("sessions", "rooms"),
    "sessions": (),
    "rooms": (),
    "slugs": (),
}


class PresencePipeline:
    """Keeps the live rail current for one directory scope.

    Args:
        backend: Remote store providing sessions, rooms and slugs.
        config: Engine configuration (limit, routes, cadence).
        collector: Optional event collector.

    """

    def __init__(
        self,
        backend: Backend,
        *,
        config: LaglessConfig | None = None,
        collector: EngineCollector | None = None,
    ) -> None:
        self._backend = backend
        self._config = config if config is not None else LaglessConfig()
        self._collector = collector
        self._profiler: PipelineProfiler | None = None
        if collector is not None:
            self._profiler = PipelineProfiler(
                collector.log, "presence", PRESENCE_STAGES, verbose=self._config.verbose
            )

        self._directory: Mapping[str, DirectoryMember] = MappingProxyType({})
        self._sessions: tuple[ActiveSession, ...] = ()
        self._rooms: tuple[RoomAssignment, ...] = ()
        self._slugs: Mapping[str, str] = MappingProxyType({})
        self._stale: set[str] = {"sessions", "rooms"}
        self._failed: set[str] = set()

        self._memo_inputs: tuple[object, ...] | None = None
        self._entries: tuple[PresenceEntry, ...] = ()
        self._passes = 0

        self._stopping: asyncio.Event | None = None
        self._task: asyncio.Task[None] | None = None

    # ----- Accessors -----

    @property
    def entries(self) -> tuple[PresenceEntry, ...]:
        return self._entries

    def get_presence(self) -> tuple[PresenceEntry, ...]:
        """Current rail, as computed by the last refresh."""
        return self._entries

    @property
    def stale_sources(self) -> frozenset[str]:
        return frozenset(self._stale)

    @property
    def failed_sources(self) -> frozenset[str]:
        """Sources whose last query failed."""
        return frozenset(self._failed)

    @property
    def aggregation_passes(self) -> int:
        """How many times aggregation actually ran (memo misses)."""
        return self._passes

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    # ----- Invalidation -----

    def set_directory(self, members: Iterable[DirectoryMember]) -> None:
        """Replace the directory.  Sessions are refetched only if it changed."""
        directory = {m.profile_id: m for m in members}
        if directory == dict(self._directory):
            return
        self._directory = MappingProxyType(directory)
        self.invalidate("directory")

    def invalidate(self, source: PresenceSource) -> None:
        """Mark a source (and what depends on it) for refetch."""
        if source not in _DOWNSTREAM:
            msg = f"Unknown presence source: {source!r}"
            raise PresenceError(msg)
        if source == "slugs":
            self._slugs = MappingProxyType({})
            self._stale.add("slugs")
        elif source != "directory":
            self._stale.add(source)
        self._stale.update(_DOWNSTREAM[source])

    # ----- Refresh -----

    async def refresh(self) -> tuple[PresenceEntry, ...]:
        """Refetch stale sources and recompute the rail if an input changed."""
        profiler = self._profiler
        if profiler is not None:
            profiler.begin("refresh")

        if "sessions" in self._stale:
            if profiler is not None:
                profiler.start("sessions")
            await self._refresh_sessions()
            if profiler is not None:
                profiler.stop("sessions")

        if "rooms" in self._stale:
            if profiler is not None:
                profiler.start("rooms")
            await self._refresh_rooms()
            if profiler is not None:
                profiler.stop("rooms")

        if profiler is not None:
            profiler.start("slugs")
        await self._refresh_slugs()
        if profiler is not None:
            profiler.stop("slugs")

        if profiler is not None:
            profiler.start("aggregate")
        self._aggregate()
        if profiler is not None:
            profiler.stop("aggregate")
            profiler.finish()

        return self._entries

    async def _refresh_sessions(self) -> None:
        profile_ids = sorted(self._directory)
        if not profile_ids:
            rows: tuple[ActiveSession, ...] = ()
        else:
            try:
                rows = tuple(await self._backend.list_active_sessions(profile_ids))
            except Exception as exc:
                self._source_failed("sessions", exc)
                self._replace_sessions(())
                return
        self._failed.discard("sessions")
        self._stale.discard("sessions")
        self._replace_sessions(rows)

    async def _refresh_rooms(self) -> None:
        group_ids = sorted({s.session_id for s in self._sessions if s.mode == "group"})
        if not group_ids:
            rows: tuple[RoomAssignment, ...] = ()
        else:
            try:
                rows = tuple(await self._backend.list_room_assignments(group_ids))
            except Exception as exc:
                self._source_failed("rooms", exc)
                self._rooms = ()
                return
        self._failed.discard("rooms")
        self._stale.discard("rooms")
        if rows != self._rooms:
            self._rooms = rows

    async def _refresh_slugs(self) -> None:
        """Resolve slugs for team ids not seen before (slugs rarely change)."""
        missing = sorted({r.team_id for r in self._rooms} - set(self._slugs))
        if not missing:
            self._stale.discard("slugs")
            return
        try:
            rows = await self._backend.resolve_team_slugs(missing)
        except Exception as exc:
            self._source_failed("slugs", exc)
            self._stale.add("slugs")
            return
        self._failed.discard("slugs")
        self._stale.discard("slugs")
        resolved = {row.team_id: row.slug for row in rows if row.slug}
        if resolved:
            self._slugs = MappingProxyType({**self._slugs, **resolved})

    def _replace_sessions(self, rows: tuple[ActiveSession, ...]) -> None:
        if rows != self._sessions:
            self._sessions = rows
            self._stale.add("rooms")

    def _aggregate(self) -> None:
        inputs = (self._directory, self._sessions, self._rooms, self._slugs)
        if self._memo_inputs is not None and all(
            a is b for a, b in zip(inputs, self._memo_inputs, strict=True)
        ):
            return
        entries, stats = aggregate_presence_with_stats(
            self._sessions,
            self._rooms,
            self._directory,
            team_slugs=self._slugs,
            config=self._config,
        )
        self._memo_inputs = inputs
        self._entries = entries
        self._passes += 1
        if self._collector is not None:
            self._collector.record_presence(
                entries=stats.entries,
                sessions_in=stats.sessions_in,
                unknown_dropped=stats.unknown_dropped,
                fallbacks=stats.fallbacks,
            )

    def _source_failed(self, source: str, exc: BaseException) -> None:
        self._failed.add(source)
        if self._collector is not None:
            self._collector.record_source_failure(f"presence.{source}", exc)

    # ----- Refresh loop -----

    def start(self) -> asyncio.Task[None]:
        """Start the periodic refresh loop on the running event loop."""
        if self._task is not None and not self._task.done():
            return self._task
        self._stopping = asyncio.Event()
        self._task = asyncio.get_running_loop().create_task(
            self.run(), name="lagless-presence"
        )
        return self._task

    async def run(self) -> None:
        """Refresh every ``presence_interval_s`` until ``stop()``."""
        if self._stopping is None:
            self._stopping = asyncio.Event()
        stopping = self._stopping
        while not stopping.is_set():
            # Sessions are live data: every tick refetches them.
            self.invalidate("sessions")
            await self.refresh()
            try:
                await asyncio.wait_for(stopping.wait(), timeout=self._config.presence_interval_s)
            except TimeoutError:
                continue

    def stop(self) -> None:
        if self._stopping is not None:
            self._stopping.set()

    async def aclose(self) -> None:
        """Stop the loop and wait for the current pass to finish."""
        self.stop()
        if self._task is not None:
            await self._task
            self._task = None
