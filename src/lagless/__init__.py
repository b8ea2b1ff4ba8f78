"""Lagless — optimistic updates and reconciliation for live social apps.

Shows the viewer's own actions (messages, reactions, votes, pins, deletes)
immediately, delivers them in the background, and reconciles them against
authoritative data without flicker or duplicates.

Quick start::

    import lagless

    engine = lagless.Engine(backend, viewer_id="u1")
    view = engine.open_view("team-42")
    view.send_message("hi")          # visible at once
    view.start()                     # poll and reconcile in the background

Parts:

    mutations   Correlation ids, the optimistic queue, the matcher
    timeline    Counters, the merged timeline, scroll anchoring
    presence    The live-now rail and its refresh pipeline

"""

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from lagless.config import LaglessConfig
    from lagless.engine import Engine

# PEP 703: Declare this module as free-threading safe
_Py_mod_gil = 0

__version__ = "0.1.0-dev"
__all__ = [
    "Engine",
    "LaglessConfig",
    "__version__",
    "load_config",
]


def __getattr__(name: str) -> object:
    """Lazy imports for the public API.

    Keeps ``import lagless`` fast while providing a clean top-level API.
    """
    if name == "Engine":
        from lagless.engine import Engine

        return Engine

    if name == "LaglessConfig":
        from lagless.config import LaglessConfig

        return LaglessConfig

    if name == "load_config":
        from lagless.config_loader import load_config

        return load_config

    msg = f"module {__name__!r} has no attribute {name!r}"
    raise AttributeError(msg)
