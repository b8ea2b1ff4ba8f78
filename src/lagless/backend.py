"""Backend protocol — the remote record store as seen by the engine.

The engine only ever talks to the store through these request/response and
query operations.  Implementations raise ``TransientBackendError`` (or let
``OSError`` / ``TimeoutError`` escape) when a request did not complete, and
``RejectedError`` when the server refused it.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol

if TYPE_CHECKING:
    from lagless.presence.aggregator import ActiveSession, RoomAssignment
    from lagless.timeline.records import ConfirmedRecord


@dataclass(frozen=True, slots=True)
class SendReceipt:
    """Response of ``send_message``."""

    message_id: str


@dataclass(frozen=True, slots=True)
class ReactionSnapshot:
    """Response of ``toggle_reaction``: the post's counter after the toggle."""

    reaction_count: int
    is_reacted: bool


@dataclass(frozen=True, slots=True)
class PollTally:
    """One option row returned by ``cast_vote``."""

    option_id: str
    vote_count: int
    is_selected_by_viewer: bool


@dataclass(frozen=True, slots=True)
class TeamSlug:
    """Route slug of a team."""

    team_id: str
    slug: str


class Backend(Protocol):
    """Async operations consumed from the remote record store."""

    async def send_message(
        self, scope_id: str, text: str, correlation_id: str
    ) -> SendReceipt: ...

    async def toggle_reaction(self, post_id: str) -> ReactionSnapshot: ...

    async def cast_vote(self, poll_id: str, option_id: str) -> Sequence[PollTally]: ...

    async def pin_post(self, post_id: str, pinned: bool) -> None: ...

    async def delete_post(self, target_id: str) -> None: ...

    async def fetch_records(self, scope_id: str) -> Sequence[ConfirmedRecord]: ...

    async def list_active_sessions(
        self, profile_ids: Sequence[str]
    ) -> Sequence[ActiveSession]: ...

    async def list_room_assignments(
        self, session_ids: Sequence[str]
    ) -> Sequence[RoomAssignment]: ...

    async def resolve_team_slugs(self, team_ids: Sequence[str]) -> Sequence[TeamSlug]: ...
