"""Partial-failure batches — independent sub-operations run side by side.

Used for multi-part actions (e.g. creating a post and uploading its media)
where one part failing must not undo the others.  The caller gets a
per-part account and decides what to retry.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from typing import Any


@dataclass(frozen=True, slots=True)
class BatchResult:
    """Per-part outcome of ``run_batch``.

    Attributes:
        succeeded: Part name -> returned value.
        failed: Part name -> raised exception.

    """

    succeeded: Mapping[str, Any] = field(default_factory=dict)
    failed: Mapping[str, BaseException] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.failed

    @property
    def partial(self) -> bool:
        """Some parts succeeded and some failed."""
        return bool(self.succeeded) and bool(self.failed)

    def describe(self) -> str:
        """One line naming exactly which parts failed."""
        if not self.failed:
            return f"All {len(self.succeeded)} parts succeeded"
        parts = ", ".join(
            f"{name} ({type(exc).__name__}: {exc})" for name, exc in self.failed.items()
        )
        return f"{len(self.failed)} of {len(self.succeeded) + len(self.failed)} parts failed: {parts}"


async def run_batch(operations: Mapping[str, Callable[[], Awaitable[Any]]]) -> BatchResult:
    """Run every operation concurrently and collect each outcome by name.

    A failing part never cancels or rolls back the others.  Cancellation of
    the batch itself still propagates.

    """
    names = list(operations)
    outcomes = await asyncio.gather(
        *(operations[name]() for name in names), return_exceptions=True
    )
    succeeded: dict[str, Any] = {}
    failed: dict[str, BaseException] = {}
    for name, outcome in zip(names, outcomes, strict=True):
        if isinstance(outcome, asyncio.CancelledError):
            raise outcome
        if isinstance(outcome, BaseException):
            failed[name] = outcome
        else:
            succeeded[name] = outcome
    return BatchResult(succeeded=succeeded, failed=failed)
