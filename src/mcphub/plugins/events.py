"""Lifecycle event channel.

The supervisor publishes one event per state transition. Publishing happens
synchronously inside the serialized transition, so each subscriber sees a
worker's events in the order the transitions happened.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import AsyncIterator, Dict, FrozenSet, Optional

from .models import WorkerState, utcnow

logger = logging.getLogger(__name__)


class EventKind(str, Enum):
    """Lifecycle event types."""
    STARTING = "starting"
    STARTED = "started"
    FAILED = "failed"
    STOPPING = "stopping"
    STOPPED = "stopped"
    UNLOADED = "unloaded"


STATE_EVENTS = {
    WorkerState.STARTING: EventKind.STARTING,
    WorkerState.RUNNING: EventKind.STARTED,
    WorkerState.FAILED: EventKind.FAILED,
    WorkerState.STOPPING: EventKind.STOPPING,
    WorkerState.STOPPED: EventKind.STOPPED,
}


@dataclass(frozen=True)
class LifecycleEvent:
    """One worker lifecycle transition."""
    name: str
    kind: EventKind
    state: WorkerState
    restart_count: int = 0
    at: datetime = field(default_factory=utcnow)
    error: Optional[str] = None
    terminal: bool = False          # Failed with no restart coming

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "kind": self.kind.value,
            "state": self.state.value,
            "restart_count": self.restart_count,
            "at": self.at.isoformat(),
            "error": self.error,
            "terminal": self.terminal,
        }


_CLOSED = object()


class EventSubscription:
    """Bounded queue of events for one consumer."""

    def __init__(
        self,
        bus: "EventBus",
        names: Optional[FrozenSet[str]] = None,
        kinds: Optional[FrozenSet[EventKind]] = None,
        max_queue_size: int = 1000,
    ):
        self.id = str(uuid.uuid4())
        self.names = names
        self.kinds = kinds
        self._bus = bus
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=max_queue_size)
        self.dropped = 0

    def matches(self, event: LifecycleEvent) -> bool:
        if self.names and event.name not in self.names:
            return False
        if self.kinds and event.kind not in self.kinds:
            return False
        return True

    def _offer(self, item: object) -> None:
        if self._queue.full():
            # Drop the oldest event
            try:
                self._queue.get_nowait()
                self.dropped += 1
            except asyncio.QueueEmpty:
                pass
        self._queue.put_nowait(item)

    async def get(self, timeout_s: Optional[float] = None) -> Optional[LifecycleEvent]:
        """Next event, or None once the subscription is closed."""
        item = await asyncio.wait_for(self._queue.get(), timeout_s)
        if item is _CLOSED:
            self._queue.put_nowait(_CLOSED)
            return None
        return item

    def drain(self) -> list:
        """Events already queued, without waiting."""
        events = []
        while not self._queue.empty():
            item = self._queue.get_nowait()
            if item is _CLOSED:
                self._queue.put_nowait(_CLOSED)
                break
            events.append(item)
        return events

    def close(self) -> None:
        self._bus.unsubscribe(self)

    def __aiter__(self) -> AsyncIterator[LifecycleEvent]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[LifecycleEvent]:
        while True:
            event = await self.get()
            if event is None:
                return
            yield event


class EventBus:
    """In-process fan-out of lifecycle events."""

    def __init__(self, max_queue_size: int = 1000):
        self._subscriptions: Dict[str, EventSubscription] = {}
        self._max_queue_size = max_queue_size
        self._closed = False

    def subscribe(
        self,
        names: Optional[FrozenSet[str]] = None,
        kinds: Optional[FrozenSet[EventKind]] = None,
    ) -> EventSubscription:
        sub = EventSubscription(self, names=names, kinds=kinds, max_queue_size=self._max_queue_size)
        if self._closed:
            sub._offer(_CLOSED)
        else:
            self._subscriptions[sub.id] = sub
        return sub

    def unsubscribe(self, subscription: EventSubscription) -> None:
        if self._subscriptions.pop(subscription.id, None) is not None:
            subscription._offer(_CLOSED)

    def publish(self, event: LifecycleEvent) -> None:
        if self._closed:
            return
        for sub in list(self._subscriptions.values()):
            if sub.matches(event):
                sub._offer(event)

    def close(self) -> None:
        """End every subscription's iteration."""
        self._closed = True
        for sub in list(self._subscriptions.values()):
            self.unsubscribe(sub)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions)
