"""In-process event stream for sync activity.

Observers subscribe to an event kind and receive every event of that kind
emitted after a sync cycle commits. A failing observer is logged and never
affects the cycle that emitted the event.
"""

import logging
from collections import defaultdict
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from moneysync.utils.clock import utcnow

logger = logging.getLogger(__name__)


class SyncEventKind(str, Enum):
    CHANGE_APPLIED = "change_applied"
    CONFLICT = "conflict"
    ERROR = "error"
    CYCLE_COMPLETED = "cycle_completed"


@dataclass(frozen=True)
class SyncEvent:
    kind: SyncEventKind
    device_id: str
    data: Any
    emitted_at: datetime = field(default_factory=utcnow)


Subscriber = Callable[[SyncEvent], None]


class SyncEventBus:
    """Fan-out of sync events to subscribers."""

    def __init__(self) -> None:
        self._subscribers: dict[SyncEventKind, list[Subscriber]] = defaultdict(list)

    def subscribe(self, kind: SyncEventKind | str, callback: Subscriber) -> Callable[[], None]:
        """Register a callback for one event kind.

        Returns:
            Callable: Function that removes the subscription
        """
        kind = SyncEventKind(kind)
        self._subscribers[kind].append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers[kind]:
                self._subscribers[kind].remove(callback)

        return unsubscribe

    def emit(self, kind: SyncEventKind, device_id: str, data: Any = None) -> None:
        event = SyncEvent(kind=kind, device_id=device_id, data=data)
        for callback in list(self._subscribers[kind]):
            try:
                callback(event)
            except Exception as e:
                logger.error(f"Subscriber for {kind.value} events failed: {e}")
