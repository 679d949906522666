"""Typed in-process event bus.

Handlers subscribe to an event class; publishing an instance calls every
handler registered for that exact class. Handler failures are logged and do
not stop delivery to the remaining handlers.
"""

import logging
import threading
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Callable, Optional, TypeVar

__all__ = [
    "EventBus",
    "RecordsMerged",
    "RecordDeleted",
    "AllDataCleared",
    "GoalsUpdated",
    "CloudSyncFailed",
    "ConnectivityChanged",
]

logger = logging.getLogger(__name__)

E = TypeVar("E")


@dataclass(frozen=True)
class RecordsMerged:
    """Inbound changes were committed to the local store."""

    workout_ids: frozenset = field(default_factory=frozenset)
    template_ids: frozenset = field(default_factory=frozenset)
    source: str = "companion"


@dataclass(frozen=True)
class RecordDeleted:
    kind: str
    record_id: str


@dataclass(frozen=True)
class AllDataCleared:
    pass


@dataclass(frozen=True)
class GoalsUpdated:
    goals: tuple = ()


@dataclass(frozen=True)
class CloudSyncFailed:
    record_id: Optional[str]
    message: str


@dataclass(frozen=True)
class ConnectivityChanged:
    online: bool


class EventBus:
    """Routes events to handlers keyed by event type."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._subscribers: dict[type, list[Callable]] = defaultdict(list)

    def subscribe(self, event_type: type[E], handler: Callable[[E], None]) -> None:
        """Register a handler for one event class."""
        with self._lock:
            self._subscribers[event_type].append(handler)

    def unsubscribe(self, event_type: type[E], handler: Callable[[E], None]) -> None:
        with self._lock:
            handlers = self._subscribers.get(event_type, [])
            if handler in handlers:
                handlers.remove(handler)

    def publish(self, event: object) -> None:
        """Deliver an event to every handler subscribed to its class."""
        with self._lock:
            handlers = list(self._subscribers.get(type(event), []))
        for handler in handlers:
            try:
                handler(event)
            except Exception:
                logger.exception(f"Event handler failed for {type(event).__name__}")
