"""Confirmed records — the authoritative rows returned by the backend.

One frozen shape covers messages, posts, reaction counters and poll
options so the matcher and the merge view can treat a refresh as a single
flat snapshot.  The engine never mutates these.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from lagless._types import RecordKind


@dataclass(frozen=True, slots=True)
class ConfirmedRecord:
    """An authoritative row as returned by the remote store.

    Attributes:
        record_id: Entity id (message id, post id, option id, ...).
        kind: What the row represents.
        target_id: For message/post the scope it belongs to; for reaction
            the post id; for poll_option the poll id.
        author_id: Author profile id (message/post).
        body: Text content (message/post).
        created_at: Server timestamp in seconds since the epoch.
        correlation_id: Client correlation id echoed by the backend, if any.
        is_selected_by_viewer: Viewer's own reaction / vote is set.
        aggregate_count: Reaction count or vote count.
        is_pinned: Post is pinned.
        is_deleted: Tombstone for a deleted message or post.

    """

    record_id: str
    kind: RecordKind
    target_id: str
    author_id: str | None = None
    body: str = ""
    created_at: float = 0.0
    correlation_id: str | None = None
    is_selected_by_viewer: bool = False
    aggregate_count: int = 0
    is_pinned: bool = False
    is_deleted: bool = False

    @property
    def is_displayable(self) -> bool:
        """True for rows that render as timeline entries."""
        return self.kind in ("message", "post")


def message(
    record_id: str,
    scope_id: str,
    *,
    author_id: str,
    body: str,
    created_at: float,
    correlation_id: str | None = None,
) -> ConfirmedRecord:
    """Build a confirmed chat message record."""
    return ConfirmedRecord(
        record_id=record_id,
        kind="message",
        target_id=scope_id,
        author_id=author_id,
        body=body,
        created_at=created_at,
        correlation_id=correlation_id,
    )
