"""Presence aggregator — one deduplicated "who is live" list.

Joins three independently refreshing collections:

- active broadcast sessions,
- room-to-session assignments (group sessions inside a team room),
- the team directory (who is in scope, plus profile metadata),

and resolves every surviving session to a navigable destination.

The sources may disagree at any instant (a session can end between two
queries).  Missing optional joins degrade instead of failing: no room row
means the generic shared room, no avatar means a deterministic placeholder.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from typing import TYPE_CHECKING
from urllib.parse import quote

from lagless.config import LaglessConfig

if TYPE_CHECKING:
    from lagless._types import StreamMode


@dataclass(frozen=True, slots=True)
class ActiveSession:
    """A live broadcast as reported by the backend.

    Attributes:
        session_id: Backend session id.
        profile_id: Broadcasting profile.
        mode: "solo" or "group"; None is treated as solo.
        started_at: Start time in seconds since the epoch.

    """

    session_id: str
    profile_id: str
    mode: StreamMode | None
    started_at: float


@dataclass(frozen=True, slots=True)
class RoomAssignment:
    """A group session placed inside a team room."""

    session_id: str
    team_id: str


@dataclass(frozen=True, slots=True)
class DirectoryMember:
    """A profile known to the team directory."""

    profile_id: str
    username: str | None = None
    display_name: str | None = None
    avatar_url: str | None = None


@dataclass(frozen=True, slots=True)
class PresenceEntry:
    """One live profile in the rail."""

    profile_id: str
    username: str
    display_name: str
    avatar_url: str
    session_id: str
    mode: StreamMode
    destination: str


@dataclass(frozen=True, slots=True)
class PresenceStats:
    """Counters describing one aggregation pass."""

    sessions_in: int
    unknown_dropped: int
    fallbacks: int
    entries: int


def aggregate_presence(
    active_sessions: Iterable[ActiveSession],
    room_assignments: Iterable[RoomAssignment],
    directory: Mapping[str, DirectoryMember],
    *,
    team_slugs: Mapping[str, str] | None = None,
    config: LaglessConfig | None = None,
) -> tuple[PresenceEntry, ...]:
    """Join sessions, rooms and directory into the live rail."""
    entries, _ = aggregate_presence_with_stats(
        active_sessions,
        room_assignments,
        directory,
        team_slugs=team_slugs,
        config=config,
    )
    return entries


def aggregate_presence_with_stats(
    active_sessions: Iterable[ActiveSession],
    room_assignments: Iterable[RoomAssignment],
    directory: Mapping[str, DirectoryMember],
    *,
    team_slugs: Mapping[str, str] | None = None,
    config: LaglessConfig | None = None,
) -> tuple[tuple[PresenceEntry, ...], PresenceStats]:
    """Same as ``aggregate_presence`` but also returns pass statistics.

    Steps:
        1. Keep sessions whose owner is a directory member.
        2. Keep the most recent session per profile (ties: highest id).
        3. Resolve destinations: solo -> per-user route; group -> team room
           when an assignment and slug exist, else the shared fallback room.
        4. Order newest first (then by profile id) and cap at the limit.

    """
    config = config if config is not None else LaglessConfig()
    slugs = team_slugs or {}
    rooms: dict[str, str] = {}
    for row in room_assignments:
        # Several rows for one session: the last one read wins.
        rooms[row.session_id] = row.team_id

    sessions_in = 0
    unknown = 0
    newest: dict[str, ActiveSession] = {}
    for session in active_sessions:
        sessions_in += 1
        if session.profile_id not in directory:
            unknown += 1
            continue
        current = newest.get(session.profile_id)
        if current is None or _recency(session) > _recency(current):
            newest[session.profile_id] = session

    fallbacks = 0
    built: list[PresenceEntry] = []
    for profile_id, session in newest.items():
        member = directory[profile_id]
        username = member.username or "unknown"
        display_name = member.display_name or username
        mode: StreamMode = "group" if session.mode == "group" else "solo"

        if mode == "solo":
            destination = config.solo_destination(username)
        else:
            slug = slugs.get(rooms.get(session.session_id, ""))
            if slug:
                destination = config.team_room_destination(slug)
            else:
                destination = config.group_fallback_route
                fallbacks += 1

        built.append(
            PresenceEntry(
                profile_id=profile_id,
                username=username,
                display_name=display_name,
                avatar_url=member.avatar_url or placeholder_avatar(display_name, config),
                session_id=session.session_id,
                mode=mode,
                destination=destination,
            )
        )

    started = {pid: s.started_at for pid, s in newest.items()}
    built.sort(key=lambda e: (-started[e.profile_id], e.profile_id))
    entries = tuple(built[: config.presence_limit])
    stats = PresenceStats(
        sessions_in=sessions_in,
        unknown_dropped=unknown,
        fallbacks=fallbacks,
        entries=len(entries),
    )
    return entries, stats


def placeholder_avatar(name: str, config: LaglessConfig | None = None) -> str:
    """Deterministic avatar URL built from the first letter of ``name``."""
    config = config if config is not None else LaglessConfig()
    initial = (name.strip()[:1] or "?").upper()
    return config.avatar_placeholder.format(initial=quote(initial, safe=""))


def _recency(session: ActiveSession) -> tuple[float, tuple[int, int | str]]:
    return session.started_at, _natural_id(session.session_id)


def _natural_id(session_id: str) -> tuple[int, int | str]:
    """Order numeric ids numerically, and after any non-numeric id."""
    text = str(session_id)
    if text.isdigit():
        return (1, int(text))
    return (0, text)
