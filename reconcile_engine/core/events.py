"""Event emitters for deploy streams."""

import logging
from abc import ABC, abstractmethod
from collections import deque
from typing import Iterable

from reconcile_engine.core.events_model import DeployEvent
from reconcile_engine.core.logging_setup import redact

logger = logging.getLogger(__name__)


ALLOWED_EVENTS = {
    "info",
    "stdout",
    "stderr",
    "success",
    "error",
    "complete",
    "config_unchanged",
}


class EventEmitter(ABC):
    """Abstract event emitter."""

    @abstractmethod
    def emit(self, events: Iterable[DeployEvent]) -> None:
        """Emit one or more events."""
        pass


class LoggingEventEmitter(EventEmitter):
    """Writes deploy events to the log and keeps them in memory."""

    def __init__(self, max_events: int = 1000):
        self.events = deque(maxlen=max_events)

    def emit(self, events: Iterable[DeployEvent]) -> None:
        for event in events:
            if event.event_type not in ALLOWED_EVENTS:
                raise ValueError(f"Invalid event type: {event.event_type}")

            self.events.append(event)

            level = logging.ERROR if event.event_type in ("error", "stderr") else logging.INFO
            logger.log(level, f"[{event.stack}] {event.event_type}: {redact(event.message)}")


class MultiEventEmitter:
    """Fan-out to multiple emitters."""

    def __init__(self, emitters: Iterable[EventEmitter]):
        self._emitters = list(emitters)

    def emit(self, events: Iterable[DeployEvent]):
        events = list(events)
        for emitter in self._emitters:
            emitter.emit(events)


class NullEventEmitter(EventEmitter):
    """No-op emitter (used when events are not needed)."""

    def emit(self, events: Iterable[DeployEvent]) -> None:
        pass
