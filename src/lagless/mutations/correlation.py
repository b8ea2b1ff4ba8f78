"""Correlation registry — client-side ids for in-flight mutations.

Ids are ``<prefix><n>`` where the prefix is random per registry (one per
engine session) and ``n`` is a monotonically increasing counter, so ids
never collide within a session and are unlikely to collide across them.
"""

from __future__ import annotations

import itertools
import uuid


class CorrelationRegistry:
    """Generates correlation ids and tracks which ones are still live.

    Args:
        prefix: Fixed id prefix.  Defaults to a short random token.

    """

    __slots__ = ("_counter", "_live", "_prefix")

    def __init__(self, prefix: str | None = None) -> None:
        self._prefix = prefix if prefix is not None else f"c{uuid.uuid4().hex[:8]}-"
        self._counter = itertools.count(1)
        self._live: set[str] = set()

    @property
    def prefix(self) -> str:
        return self._prefix

    def new_correlation_id(self) -> str:
        """Return a fresh, locally unique correlation id and mark it live."""
        correlation_id = f"{self._prefix}{next(self._counter)}"
        self._live.add(correlation_id)
        return correlation_id

    def is_live(self, correlation_id: str) -> bool:
        return correlation_id in self._live

    def release(self, correlation_id: str) -> None:
        """Forget an id once its intent is gone.  Unknown ids are ignored."""
        self._live.discard(correlation_id)

    def __len__(self) -> int:
        return len(self._live)
