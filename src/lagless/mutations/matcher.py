"""Reconciliation matcher — resolves pending intents against server truth.

Matches confirmed records to pending intents in two tiers:

1. Correlation: the record echoes the intent's correlation id, or carries
   the server id the backend returned for the intent.
2. Semantic: "the viewer's action on this target" is visible in the
   snapshot.  Used for mutations represented by aggregate counters that
   never carry a client id (reaction toggle, vote), and as a fallback for
   messages whose response was lost.

Tier 1 runs for every intent before tier 2 so a strong match is never
stolen by a weaker one.  The function is pure: it only reads its inputs.
"""

from __future__ import annotations

from collections.abc import Collection, Iterable, Sequence
from dataclasses import dataclass
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from lagless._types import MatchTier
    from lagless.mutations.intents import MutationIntent
    from lagless.timeline.records import ConfirmedRecord


@dataclass(frozen=True, slots=True)
class Match:
    """Evidence that a pending intent took effect server-side.

    Attributes:
        intent: The resolved intent.
        record: The confirmed record that proves it (None when the proof is
            the absence of a deleted target).
        tier: Which matching tier produced the evidence.

    """

    intent: MutationIntent
    record: ConfirmedRecord | None
    tier: MatchTier


@dataclass(frozen=True, slots=True)
class ReconcileResult:
    """Outcome of one reconciliation pass.

    Attributes:
        to_remove: Intents with server evidence, safe to drop.
        to_keep: Intents still in flight within their validity window.
        expired: Intents with no evidence past their validity window.

    """

    to_remove: tuple[Match, ...]
    to_keep: tuple[MutationIntent, ...]
    expired: tuple[MutationIntent, ...]

    @property
    def removed_ids(self) -> frozenset[str]:
        return frozenset(m.intent.correlation_id for m in self.to_remove)


def reconcile(
    pending: Iterable[MutationIntent],
    confirmed: Sequence[ConfirmedRecord],
    *,
    now: float | None = None,
    ttl_s: float = 30.0,
    clock_skew_s: float = 5.0,
    settled: Collection[str] = (),
    previous: Collection[str] | None = None,
) -> ReconcileResult:
    """Match pending intents against a confirmed snapshot.

    Args:
        pending: Intents to resolve; non-pending ones are ignored.
        confirmed: The authoritative snapshot.
        now: Current time.  When None nothing expires.
        ttl_s: Validity window of an intent.
        clock_skew_s: How far before intent creation a record may be
            stamped and still match by content.
        settled: Server ids of messages confirmed earlier; never matched
            by content again.
        previous: Record ids present in the previous snapshot.  A missing
            delete target only counts as evidence if it was seen there.

    """
    intents = sorted(
        (i for i in pending if i.is_pending),
        key=lambda i: (i.created_at, i.correlation_id),
    )
    index = _RecordIndex(confirmed)
    index.settle(settled)
    matched: dict[str, Match] = {}

    for intent in intents:
        record = _match_correlation(intent, index)
        if record is not None:
            index.consume(record)
            matched[intent.correlation_id] = Match(intent, record, "correlation")

    for intent in intents:
        if intent.correlation_id in matched:
            continue
        found, record = _match_semantic(intent, index, clock_skew_s, previous)
        if found:
            if record is not None and intent.kind == "send-message":
                index.consume(record)
            matched[intent.correlation_id] = Match(intent, record, "semantic")

    keep: list[MutationIntent] = []
    expired: list[MutationIntent] = []
    for intent in intents:
        if intent.correlation_id in matched:
            continue
        if now is not None and now >= intent.expires_at(ttl_s):
            expired.append(intent)
        else:
            keep.append(intent)

    return ReconcileResult(
        to_remove=tuple(matched[i.correlation_id] for i in intents if i.correlation_id in matched),
        to_keep=tuple(keep),
        expired=tuple(expired),
    )


class _RecordIndex:
    """Lookup tables over one snapshot, with per-pass consumption."""

    __slots__ = (
        "_by_correlation",
        "_by_id",
        "_settled",
        "_consumed",
        "messages",
        "reactions",
        "options",
    )

    def __init__(self, records: Sequence[ConfirmedRecord]) -> None:
        self._by_correlation: dict[str, ConfirmedRecord] = {}
        self._by_id: dict[str, ConfirmedRecord] = {}
        self._settled: frozenset[str] = frozenset()
        self._consumed: set[int] = set()
        self.messages: list[ConfirmedRecord] = []
        self.reactions: dict[str, ConfirmedRecord] = {}
        self.options: dict[str, list[ConfirmedRecord]] = {}
        for record in records:
            if record.correlation_id:
                self._by_correlation[record.correlation_id] = record
            if record.kind == "reaction":
                self.reactions[record.target_id] = record
            elif record.kind == "poll_option":
                self.options.setdefault(record.target_id, []).append(record)
            else:
                self._by_id[record.record_id] = record
                if record.kind == "message":
                    self.messages.append(record)

    def by_correlation(self, correlation_id: str) -> ConfirmedRecord | None:
        record = self._by_correlation.get(correlation_id)
        return None if record is None or self.is_consumed(record) else record

    def by_id(self, record_id: str) -> ConfirmedRecord | None:
        return self._by_id.get(record_id)

    def settle(self, record_ids: Iterable[str]) -> None:
        self._settled = frozenset(record_ids)

    def belongs_elsewhere(self, record: ConfirmedRecord, intent: MutationIntent) -> bool:
        """True when the record is already tied to a different action."""
        if record.correlation_id and record.correlation_id != intent.correlation_id:
            return True
        return record.record_id in self._settled

    def consume(self, record: ConfirmedRecord) -> None:
        self._consumed.add(id(record))

    def is_consumed(self, record: ConfirmedRecord) -> bool:
        return id(record) in self._consumed


def _match_correlation(
    intent: MutationIntent, index: _RecordIndex
) -> ConfirmedRecord | None:
    record = index.by_correlation(intent.correlation_id)
    if record is not None:
        return record
    if intent.server_id is not None:
        record = index.by_id(intent.server_id)
        if record is not None and not index.is_consumed(record):
            return record
    return None


def _match_semantic(
    intent: MutationIntent,
    index: _RecordIndex,
    clock_skew_s: float,
    previous: Collection[str] | None,
) -> tuple[bool, ConfirmedRecord | None]:
    """Return ``(found, record)`` for the intent's semantic key."""
    payload = intent.payload
    match intent.kind:
        case "send-message":
            earliest = intent.created_at - clock_skew_s
            for record in index.messages:
                if (
                    not index.is_consumed(record)
                    and not index.belongs_elsewhere(record, intent)
                    and record.target_id == intent.target_id
                    and record.author_id == intent.author_id
                    and record.body == intent.text
                    and record.created_at >= earliest
                ):
                    return True, record
            return False, None
        case "react":
            record = index.reactions.get(intent.target_id)
            wanted = bool(payload.get("reacted", True))
            if record is not None and record.is_selected_by_viewer == wanted:
                return True, record
            return False, None
        case "vote":
            # At most one vote per viewer per poll: any selected option
            # resolves the intent, whichever option id was echoed.
            for record in index.options.get(intent.target_id, ()):
                if record.is_selected_by_viewer:
                    return True, record
            return False, None
        case "pin":
            record = index.by_id(intent.target_id)
            wanted = bool(payload.get("pinned", True))
            if record is not None and record.is_pinned == wanted:
                return True, record
            return False, None
        case "delete":
            record = index.by_id(intent.target_id)
            if record is None:
                # Absent now, present before: removed.
                return previous is not None and intent.target_id in previous, None
            if record.is_deleted:
                return True, record
            return False, None
    return False, None
