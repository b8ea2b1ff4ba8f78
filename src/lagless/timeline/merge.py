"""Ordered merge view — confirmed history plus provisional placeholders.

``build_timeline`` is pure and deterministic: the same inputs always give
the same tuple of entries, so re-renders never reorder anything.

Algorithm:
    1. De-duplicate confirmed message/post records by id (last version wins).
    2. Hide targets of pending deletes; overlay pending pins.
    3. Project each pending send-message intent into a ``PendingEntry``
       stamped with the intent's creation time.
    4. Sort by ``(timestamp, insertion index)``; confirmed rows are inserted
       before placeholders, so ties never jitter.
    5. Drop every placeholder the matcher can already resolve against the
       confirmed rows, so one logical action is never shown twice.
"""

from __future__ import annotations

from collections.abc import Collection, Iterable, Sequence
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Literal

from lagless.mutations.matcher import reconcile

if TYPE_CHECKING:
    from lagless.mutations.intents import MutationIntent
    from lagless.timeline.records import ConfirmedRecord


@dataclass(frozen=True, slots=True)
class ConfirmedEntry:
    """A timeline row backed by an authoritative record."""

    entry_id: str
    author_id: str | None
    body: str
    timestamp: float
    kind: str = "message"
    is_pinned: bool = False
    is_deleted: bool = False
    tag: Literal["confirmed"] = field(default="confirmed", init=False)

    @property
    def provisional(self) -> bool:
        return False


@dataclass(frozen=True, slots=True)
class PendingEntry:
    """A placeholder for a message the server has not confirmed yet."""

    entry_id: str
    author_id: str | None
    body: str
    timestamp: float
    correlation_id: str
    server_id: str | None = None
    tag: Literal["pending"] = field(default="pending", init=False)

    @property
    def provisional(self) -> bool:
        return True


type TimelineEntry = ConfirmedEntry | PendingEntry


def build_timeline(
    confirmed: Sequence[ConfirmedRecord],
    pending: Iterable[MutationIntent],
    *,
    clock_skew_s: float = 5.0,
    settled: Collection[str] = (),
) -> tuple[TimelineEntry, ...]:
    """Merge confirmed records with still-pending intents for display.

    ``settled`` holds server ids of messages already confirmed, which no
    placeholder may be folded into.
    """
    intents = [i for i in pending if i.is_pending]

    hidden = {i.target_id for i in intents if i.kind == "delete"}
    pin_overlay: dict[str, bool] = {}
    for intent in intents:
        if intent.kind == "pin":
            pin_overlay[intent.target_id] = bool(intent.payload.get("pinned", True))

    latest: dict[str, ConfirmedRecord] = {}
    order: dict[str, int] = {}
    for position, record in enumerate(confirmed):
        if not record.is_displayable:
            continue
        latest[record.record_id] = record
        order.setdefault(record.record_id, position)

    rows: list[tuple[float, int, TimelineEntry]] = []
    for record_id, record in latest.items():
        if record_id in hidden:
            continue
        entry = ConfirmedEntry(
            entry_id=record_id,
            author_id=record.author_id,
            body=record.body,
            timestamp=record.created_at,
            kind=record.kind,
            is_pinned=pin_overlay.get(record_id, record.is_pinned),
            is_deleted=record.is_deleted,
        )
        rows.append((entry.timestamp, order[record_id], entry))

    messages = [i for i in intents if i.kind == "send-message"]
    resolved = reconcile(
        messages, confirmed, clock_skew_s=clock_skew_s, settled=settled
    ).removed_ids
    base = len(confirmed)
    for offset, intent in enumerate(messages):
        if intent.correlation_id in resolved:
            continue
        placeholder = PendingEntry(
            entry_id=intent.correlation_id,
            author_id=intent.author_id,
            body=intent.text,
            timestamp=intent.created_at,
            correlation_id=intent.correlation_id,
            server_id=intent.server_id,
        )
        rows.append((placeholder.timestamp, base + offset, placeholder))

    rows.sort(key=lambda row: (row[0], row[1]))
    return tuple(entry for _, _, entry in rows)


def count_provisional(entries: Iterable[TimelineEntry]) -> int:
    """Number of placeholder entries."""
    return sum(1 for entry in entries if entry.tag == "pending")


def render_key(entry: TimelineEntry) -> str:
    """Stable key for the presentation layer.

    A placeholder whose server id is known shares its key with the confirmed
    entry that will replace it, so the swap does not remount the row.
    """
    match entry:
        case ConfirmedEntry(entry_id=record_id):
            return record_id
        case PendingEntry(server_id=str() as server_id):
            return server_id
        case PendingEntry(correlation_id=correlation_id):
            return correlation_id
    msg = f"Not a timeline entry: {entry!r}"
    raise TypeError(msg)
