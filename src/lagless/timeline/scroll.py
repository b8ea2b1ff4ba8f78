"""Scroll anchor controller — follow new content or keep the reading position.

Two states: ``pinned`` (new content scrolls into view automatically) and
``free`` (the viewer is reading history and the viewport stays put).  The
state is re-evaluated on scroll events and on every content change, because
new entries move the bottom even when the viewer does nothing.
"""

from __future__ import annotations

from typing import Literal

type AnchorState = Literal["pinned", "free"]


class ScrollAnchor:
    """Decides whether a timeline update should scroll to the bottom.

    Args:
        threshold_px: The viewer counts as "at the latest" while the
            distance to the bottom does not exceed this.

    """

    __slots__ = ("_client_height", "_scroll_height", "_scroll_top", "_state", "_threshold")

    def __init__(self, threshold_px: int = 120) -> None:
        self._threshold = threshold_px
        self._state: AnchorState = "pinned"
        self._scroll_top = 0.0
        self._scroll_height = 0.0
        self._client_height = 0.0

    @property
    def state(self) -> AnchorState:
        return self._state

    @property
    def is_pinned_to_latest(self) -> bool:
        return self._state == "pinned"

    @property
    def distance_from_bottom(self) -> float:
        return max(0.0, self._scroll_height - (self._scroll_top + self._client_height))

    def report_scroll(
        self,
        scroll_top: float,
        scroll_height: float,
        client_height: float,
    ) -> AnchorState:
        """Viewer scrolled: update the geometry and re-evaluate."""
        self._scroll_top = scroll_top
        self._scroll_height = scroll_height
        self._client_height = client_height
        self._evaluate()
        return self._state

    def report_content(self, scroll_height: float) -> bool:
        """Content changed height.  Returns True if the view must scroll down.

        While pinned every update follows the bottom.  While free the
        viewport stays where it is, unless the content shrank back within
        the threshold, which re-pins it.

        """
        self._scroll_height = scroll_height
        if self._state == "free":
            self._evaluate()
            if self._state == "free":
                return False
        self._follow()
        return True

    def jump_to_latest(self) -> None:
        """Force the pinned state (e.g. the viewer just sent a message)."""
        self._state = "pinned"
        self._follow()

    def _follow(self) -> None:
        self._scroll_top = max(0.0, self._scroll_height - self._client_height)

    def _evaluate(self) -> None:
        self._state = "free" if self.distance_from_bottom > self._threshold else "pinned"
