"""
Engine module: load/save pipelines, notifications and background loops.
"""

from reliastore.engine.events import (
    EventBus,
    EventKind,
    LoadedEvent,
    SavedEvent,
    RejectedEvent,
    ConflictEvent,
)
from reliastore.engine.persistence import (
    PersistenceEngine,
    SaveOutcome,
    apply_deltas,
)
from reliastore.engine.lifecycle import LifecycleScheduler, SweepReport

__all__ = [
    "EventBus",
    "EventKind",
    "LoadedEvent",
    "SavedEvent",
    "RejectedEvent",
    "ConflictEvent",
    "PersistenceEngine",
    "SaveOutcome",
    "apply_deltas",
    "LifecycleScheduler",
    "SweepReport",
]
