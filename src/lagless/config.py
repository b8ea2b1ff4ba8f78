"""Lagless configuration.

LaglessConfig is the central configuration object, frozen after creation.
"""

from dataclasses import dataclass, fields
from urllib.parse import quote

from lagless._errors import ConfigError


@dataclass(frozen=True, slots=True)
class LaglessConfig:
    """Configuration for the optimistic-update engine.

    Attributes:
        intent_ttl_s: Seconds a pending intent may wait for confirmation
            before its optimistic effect is reverted.
        max_attempts: Delivery attempts per intent on transient failures.
        retry_backoff_s: Base delay between attempts (grows linearly).
        clock_skew_s: Tolerance when matching a message by content against a
            record stamped slightly before the intent was created.
        scroll_threshold_px: Distance from the bottom beyond which the
            viewer is considered to be reading history.
        presence_limit: Maximum entries in the live rail.
        presence_interval_s: Presence refresh cadence.
        reconcile_interval_s: Reconciliation poll cadence per view.
        solo_route: Destination template for solo broadcasts.
        team_room_route: Destination template for team room broadcasts.
        group_fallback_route: Destination for group broadcasts without a room.
        avatar_placeholder: Avatar URL template used when a profile has none.
        max_events: Event log ring-buffer size.
        verbose: Print one-line pipeline summaries to stderr.

    """

    intent_ttl_s: float = 30.0
    max_attempts: int = 3
    retry_backoff_s: float = 0.5
    clock_skew_s: float = 5.0
    scroll_threshold_px: int = 120
    presence_limit: int = 6
    presence_interval_s: float = 30.0
    reconcile_interval_s: float = 5.0
    solo_route: str = "/live/{username}"
    team_room_route: str = "/teams/room/{slug}"
    group_fallback_route: str = "/room/live-central"
    avatar_placeholder: str = (
        "https://ui-avatars.com/api/?name={initial}&background=111827&color=fff"
    )
    max_events: int = 10_000
    verbose: bool = False

    def __post_init__(self) -> None:
        _check_types(self)
        if self.intent_ttl_s <= 0:
            msg = f"intent_ttl_s must be positive, got {self.intent_ttl_s}"
            raise ConfigError(msg)
        if self.max_attempts < 1:
            msg = f"max_attempts must be at least 1, got {self.max_attempts}"
            raise ConfigError(msg)
        if self.retry_backoff_s < 0 or self.clock_skew_s < 0:
            msg = "retry_backoff_s and clock_skew_s must not be negative"
            raise ConfigError(msg)
        if self.scroll_threshold_px < 0:
            msg = f"scroll_threshold_px must not be negative, got {self.scroll_threshold_px}"
            raise ConfigError(msg)
        if self.presence_limit < 1:
            msg = f"presence_limit must be at least 1, got {self.presence_limit}"
            raise ConfigError(msg)
        if self.presence_interval_s <= 0 or self.reconcile_interval_s <= 0:
            msg = "refresh intervals must be positive"
            raise ConfigError(msg)
        if "{username}" not in self.solo_route:
            msg = "solo_route must contain a {username} placeholder"
            raise ConfigError(msg)
        if "{slug}" not in self.team_room_route:
            msg = "team_room_route must contain a {slug} placeholder"
            raise ConfigError(msg)

    def solo_destination(self, username: str) -> str:
        """Destination of a solo broadcast by ``username``."""
        return self.solo_route.format(username=quote(username, safe=""))

    def team_room_destination(self, slug: str) -> str:
        """Destination of a team room broadcast."""
        return self.team_room_route.format(slug=slug)


def _check_types(config: LaglessConfig) -> None:
    """Reject values whose type does not match the field (ints pass as floats)."""
    for f in fields(config):
        value = getattr(config, f.name)
        expected = f.type
        if isinstance(value, bool) and expected is not bool:
            ok = False
        elif expected is float:
            ok = isinstance(value, (int, float))
        else:
            ok = isinstance(value, expected)
        if not ok:
            msg = f"{f.name} must be {expected.__name__}, got {type(value).__name__} {value!r}"
            raise ConfigError(msg)
