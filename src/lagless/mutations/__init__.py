"""Mutation layer — the viewer's own actions from tap to confirmation.

Issues correlation ids, keeps pending intents with their optimistic
overlays, delivers them, and matches them against server truth.
"""

from lagless.mutations.batch import BatchResult, run_batch
from lagless.mutations.correlation import CorrelationRegistry
from lagless.mutations.intents import MutationIntent
from lagless.mutations.matcher import Match, ReconcileResult, reconcile
from lagless.mutations.queue import MutationQueue

__all__ = [
    "BatchResult",
    "CorrelationRegistry",
    "Match",
    "MutationIntent",
    "MutationQueue",
    "ReconcileResult",
    "reconcile",
    "run_batch",
]
