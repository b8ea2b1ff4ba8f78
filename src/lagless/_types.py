"""Shared type definitions for lagless."""

from typing import Literal

# User actions that can be applied optimistically
type MutationKind = Literal["send-message", "react", "vote", "pin", "delete"]

# Intent lifecycle
type IntentStatus = Literal["pending", "confirmed", "failed", "reverted", "cancelled"]

# Why an intent failed
type FailureKind = Literal["transient", "rejected", "expired"]

# Which matching tier resolved an intent
type MatchTier = Literal["correlation", "semantic"]

# Kinds of authoritative rows
type RecordKind = Literal["message", "post", "reaction", "poll_option"]

# Broadcast mode of a live session
type StreamMode = Literal["solo", "group"]

# Presence source names
type PresenceSource = Literal["directory", "sessions", "rooms", "slugs"]

MUTATION_KINDS: frozenset[str] = frozenset({"send-message", "react", "vote", "pin", "delete"})
