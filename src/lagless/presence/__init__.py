"""Presence layer — who is live right now and where to join them."""

from lagless.presence.aggregator import (
    ActiveSession,
    DirectoryMember,
    PresenceEntry,
    RoomAssignment,
    aggregate_presence,
)
from lagless.presence.pipeline import PresencePipeline

__all__ = [
    "ActiveSession",
    "DirectoryMember",
    "PresenceEntry",
    "PresencePipeline",
    "RoomAssignment",
    "aggregate_presence",
]
