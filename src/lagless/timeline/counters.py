"""Reaction and poll counters with optimistic overlays.

Each counter is keyed by ``(target_id, option_id)`` where ``option_id`` is
None for reactions.  Optimistic deltas are applied on user action and
rolled back on failure; any authoritative snapshot overwrites the counter
wholesale and bumps its version, so a late rollback never undoes newer
server truth.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass

from lagless.timeline.records import ConfirmedRecord

type CounterKey = tuple[str, str | None]


@dataclass(frozen=True, slots=True)
class CounterState:
    """What the viewer sees for one reaction or poll option."""

    is_selected_by_viewer: bool = False
    aggregate_count: int = 0


@dataclass(frozen=True, slots=True)
class OverlayToken:
    """Handle returned by ``apply_optimistic`` to undo one overlay.

    Attributes:
        key: Counter the overlay was applied to.
        prior: State before the overlay.
        version: Counter version right after the overlay.

    """

    key: CounterKey
    prior: CounterState
    version: int


class CounterBoard:
    """Viewer-facing counter state for reactions and poll options."""

    def __init__(self) -> None:
        self._states: dict[CounterKey, CounterState] = {}
        self._versions: dict[CounterKey, int] = {}

    def get(self, target_id: str, option_id: str | None = None) -> CounterState:
        return self._states.get((target_id, option_id), CounterState())

    def options(self, poll_id: str) -> dict[str, CounterState]:
        """All known option states of a poll, keyed by option id."""
        return {
            option: state
            for (target, option), state in self._states.items()
            if target == poll_id and option is not None
        }

    def apply_optimistic(
        self,
        target_id: str,
        option_id: str | None = None,
        *,
        selected: bool,
    ) -> OverlayToken:
        """Set the viewer's selection and adjust the count accordingly."""
        key = (target_id, option_id)
        prior = self._states.get(key, CounterState())
        delta = 0
        if selected and not prior.is_selected_by_viewer:
            delta = 1
        elif not selected and prior.is_selected_by_viewer:
            delta = -1
        self._states[key] = CounterState(
            is_selected_by_viewer=selected,
            aggregate_count=max(0, prior.aggregate_count + delta),
        )
        version = self._bump(key)
        return OverlayToken(key=key, prior=prior, version=version)

    def revert(self, token: OverlayToken) -> bool:
        """Undo an overlay unless a newer write has landed since.

        Returns:
            True if the prior state was restored.

        """
        if self._versions.get(token.key, 0) != token.version:
            return False
        self._states[token.key] = token.prior
        self._bump(token.key)
        return True

    def apply_snapshot(
        self,
        target_id: str,
        option_id: str | None,
        state: CounterState,
    ) -> None:
        """Overwrite a counter with authoritative state."""
        key = (target_id, option_id)
        self._states[key] = state
        self._bump(key)

    def apply_records(self, records: Iterable[ConfirmedRecord]) -> int:
        """Overwrite every counter present in a confirmed snapshot.

        Returns:
            Number of counters written.

        """
        written = 0
        for record in records:
            if record.kind == "reaction":
                option_id = None
            elif record.kind == "poll_option":
                option_id = record.record_id
            else:
                continue
            self.apply_snapshot(
                record.target_id,
                option_id,
                CounterState(
                    is_selected_by_viewer=record.is_selected_by_viewer,
                    aggregate_count=record.aggregate_count,
                ),
            )
            written += 1
        return written

    def _bump(self, key: CounterKey) -> int:
        version = self._versions.get(key, 0) + 1
        self._versions[key] = version
        return version

    def __len__(self) -> int:
        return len(self._states)
