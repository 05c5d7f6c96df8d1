"""
Explicit event channel for engine notifications.

Engines publish ``MemoryEvent``s (stored, updated, adapted, executed,
retrieved, consolidated) to an ``EventChannel``; observers subscribe to it
explicitly. A failing observer is logged and never affects the engine.
"""

import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from ..telemetry import get_logger

logger = get_logger(__name__)

Observer = Callable[["MemoryEvent"], None]


@dataclass(frozen=True)
class MemoryEvent:
    """A single notification emitted by an engine."""

    kind: str                 # e.g. "record_stored", "behavior_adapted"
    engine: str               # "semantic" | "procedural"
    agent_id: str
    user_id: str
    record_id: Optional[str] = None
    payload: Dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)


class EventChannel:
    """Synchronous fan-out to subscribed observers."""

    def __init__(self):
        self._observers: List[Observer] = []

    def subscribe(self, observer: Observer) -> Callable[[], None]:
        """Register an observer; returns a callable that unsubscribes it."""
        self._observers.append(observer)

        def unsubscribe() -> None:
            if observer in self._observers:
                self._observers.remove(observer)

        return unsubscribe

    def publish(self, event: MemoryEvent) -> None:
        for observer in list(self._observers):
            try:
                observer(event)
            except Exception as e:
                logger.warning("observer_failed", kind=event.kind, error=str(e))

    def __len__(self) -> int:
        return len(self._observers)


class EventRecorder:
    """Observer that keeps the most recent events in memory."""

    def __init__(self, max_events: int = 1000):
        self.max_events = max_events
        self.events: List[MemoryEvent] = []

    def __call__(self, event: MemoryEvent) -> None:
        self.events.append(event)
        if len(self.events) > self.max_events:
            del self.events[: len(self.events) - self.max_events]

    def kinds(self) -> List[str]:
        return [e.kind for e in self.events]
