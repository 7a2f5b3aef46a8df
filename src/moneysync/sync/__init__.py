"""Offline-first synchronization: change queue, cursors, resolver and engine."""

from .change_queue import ChangeQueueStore, FailureOutcome
from .conflicts import ConflictResolver, Resolution
from .cursors import CursorTracker
from .engine import SyncEngine
from .events import SyncEvent, SyncEventBus, SyncEventKind
from .local_store import LocalEntityStore
from .models import (
    ChangeOperation,
    ChangeRecord,
    ConflictDescriptor,
    DeadLetter,
    EntitySnapshot,
    EntityType,
    SyncErrorEntry,
    SyncErrorKind,
    SyncResult,
    SyncStatus,
)

__all__ = [
    "ChangeOperation",
    "ChangeQueueStore",
    "ChangeRecord",
    "ConflictDescriptor",
    "ConflictResolver",
    "CursorTracker",
    "DeadLetter",
    "EntitySnapshot",
    "EntityType",
    "FailureOutcome",
    "LocalEntityStore",
    "Resolution",
    "SyncEngine",
    "SyncErrorEntry",
    "SyncErrorKind",
    "SyncEvent",
    "SyncEventBus",
    "SyncEventKind",
    "SyncResult",
    "SyncStatus",
]
