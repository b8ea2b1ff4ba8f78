"""Mutation intents — locally created, not-yet-confirmed user actions."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from lagless._types import FailureKind, IntentStatus, MutationKind
    from lagless.timeline.counters import OverlayToken


@dataclass(slots=True)
class MutationIntent:
    """One in-flight user action.

    Owned by the ``MutationQueue`` from enqueue until it is confirmed,
    cancelled, or dismissed after failing.

    Attributes:
        correlation_id: Client-generated id.
        kind: Action kind.
        target_id: Scope for send-message, entity id otherwise.
        payload: Kind-specific arguments (``text``, ``reacted``,
            ``option_id``, ``pinned``).
        created_at: Wall-clock creation time in seconds.
        author_id: Viewer who issued the action.
        status: Lifecycle state.
        attempts: Network attempts made so far.
        dispatched: A network request has been issued.
        acknowledged: The backend accepted the request.
        server_id: Record id echoed by the backend.
        error: Last error description.
        failure: Why the intent failed, once it has.
        blocked_by: Correlation id this correction waits on.
        overlays: Counter overlays to undo on revert.

    """

    correlation_id: str
    kind: MutationKind
    target_id: str
    payload: Mapping[str, Any]
    created_at: float
    author_id: str
    status: IntentStatus = "pending"
    attempts: int = 0
    dispatched: bool = False
    acknowledged: bool = False
    server_id: str | None = None
    error: str = ""
    failure: FailureKind | None = None
    blocked_by: str | None = None
    overlays: list[OverlayToken] = field(default_factory=list)

    @property
    def is_pending(self) -> bool:
        return self.status == "pending"

    @property
    def text(self) -> str:
        """Message text for send-message intents (empty otherwise)."""
        return str(self.payload.get("text", ""))

    def expires_at(self, ttl_s: float) -> float:
        return self.created_at + ttl_s
