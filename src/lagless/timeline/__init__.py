"""Timeline layer — what one scope looks like right now.

Confirmed records plus provisional placeholders, reaction and poll
counters, and the scroll anchor deciding whether updates follow the bottom.
"""

from lagless.timeline.counters import CounterBoard, CounterState
from lagless.timeline.merge import (
    ConfirmedEntry,
    PendingEntry,
    TimelineEntry,
    build_timeline,
    render_key,
)
from lagless.timeline.records import ConfirmedRecord
from lagless.timeline.scroll import ScrollAnchor

__all__ = [
    "ConfirmedEntry",
    "ConfirmedRecord",
    "CounterBoard",
    "CounterState",
    "PendingEntry",
    "ScrollAnchor",
    "TimelineEntry",
    "build_timeline",
    "render_key",
]
