"""Lagless error hierarchy.

All lagless-specific errors inherit from LaglessError for easy catching.
"""


class LaglessError(Exception):
    """Base error for all lagless operations."""


class ConfigError(LaglessError):
    """Invalid or missing configuration."""


class MutationError(LaglessError):
    """Misuse of the mutation queue (unknown id, bad kind, bad outcome)."""


class MutationInFlightError(MutationError):
    """A non-correcting mutation was issued on a target with one unresolved."""


class BackendError(LaglessError):
    """Error reported by the remote record store."""


class TransientBackendError(BackendError):
    """The request never completed; safe to retry."""


class RejectedError(BackendError):
    """The server answered with a semantic error (e.g. duplicate vote)."""


class PresenceError(LaglessError):
    """A presence source could not be read."""
