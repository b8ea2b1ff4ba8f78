"""Engine — the upward facade the presentation layer talks to.

One engine per signed-in viewer.  It shares a correlation registry, an
event collector and the presence pipeline across every open view, so
correlation ids never collide between scopes and all events land in one
log.
"""

from __future__ import annotations

import time
from collections.abc import Callable, Iterable
from typing import TYPE_CHECKING

from lagless.config import LaglessConfig
from lagless.mutations.correlation import CorrelationRegistry
from lagless.observability.collector import EngineCollector
from lagless.observability.log import EventLog
from lagless.presence.pipeline import PresencePipeline
from lagless.timeline.view import TimelineView

if TYPE_CHECKING:
    from lagless.backend import Backend
    from lagless.presence.aggregator import DirectoryMember, PresenceEntry


class Engine:
    """Owns the views and the presence pipeline for one viewer.

    Args:
        backend: Remote store shared by every component.
        viewer_id: Profile id of the signed-in user.
        config: Engine configuration (defaults if omitted).
        collector: Event collector; one is created if omitted.
        registry: Correlation id source; one is created if omitted.
        clock: Wall-clock source in seconds.

    """

    def __init__(
        self,
        backend: Backend,
        *,
        viewer_id: str,
        config: LaglessConfig | None = None,
        collector: EngineCollector | None = None,
        registry: CorrelationRegistry | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._backend = backend
        self._viewer_id = viewer_id
        self._config = config if config is not None else LaglessConfig()
        self._collector = (
            collector
            if collector is not None
            else EngineCollector(EventLog(self._config.max_events))
        )
        self._clock = clock
        self._registry = registry if registry is not None else CorrelationRegistry()
        self._presence = PresencePipeline(
            backend, config=self._config, collector=self._collector
        )
        self._views: dict[str, TimelineView] = {}
        # Closed views whose dispatches may still be running.
        self._closed: list[TimelineView] = []

    @property
    def config(self) -> LaglessConfig:
        return self._config

    @property
    def collector(self) -> EngineCollector:
        return self._collector

    @property
    def registry(self) -> CorrelationRegistry:
        return self._registry

    @property
    def presence(self) -> PresencePipeline:
        return self._presence

    def views(self) -> tuple[TimelineView, ...]:
        return tuple(self._views.values())

    # ----- Views -----

    def open_view(self, scope_id: str) -> TimelineView:
        """Return the view for ``scope_id``, creating it on first use."""
        view = self._views.get(scope_id)
        if view is None:
            view = TimelineView(
                self._backend,
                scope_id,
                viewer_id=self._viewer_id,
                registry=self._registry,
                config=self._config,
                collector=self._collector,
                clock=self._clock,
            )
            self._views[scope_id] = view
        return view

    def close_view(self, scope_id: str) -> None:
        """Stop polling ``scope_id`` and forget the view.

        In-flight dispatches of the view still complete; ``aclose`` waits
        for them.
        """
        view = self._views.pop(scope_id, None)
        if view is not None:
            view.close()
            self._closed = [v for v in self._closed if v.queue.in_flight]
            self._closed.append(view)

    # ----- Presence -----

    def set_directory(self, members: Iterable[DirectoryMember]) -> None:
        self._presence.set_directory(members)

    def get_presence(self) -> tuple[PresenceEntry, ...]:
        return self._presence.get_presence()

    async def refresh_presence(self) -> tuple[PresenceEntry, ...]:
        return await self._presence.refresh()

    # ----- Lifecycle -----

    async def aclose(self, *, drain: bool = True) -> None:
        """Stop every loop.  With ``drain``, wait for in-flight dispatches."""
        views = [*self._views.values(), *self._closed]
        self._views.clear()
        self._closed.clear()
        for view in views:
            await view.aclose()
        await self._presence.aclose()
        if drain:
            for view in views:
                await view.drain()
