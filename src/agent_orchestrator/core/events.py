"""In-process event bus for live dashboard updates.

Publishers hand over ``{type, payload, timestamp}`` events; subscribers either
register a callback or take a bounded queue they drain at their own pace
(the SSE endpoint does this). Delivery is best effort: a full subscriber
queue drops the event, a failing callback is logged and skipped.
"""

import logging
import queue
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Callable

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Event:
    type: str
    payload: dict = field(default_factory=dict)
    timestamp: int = 0

    def to_dict(self) -> dict:
        return {"type": self.type, "payload": self.payload, "timestamp": self.timestamp}


class EventBus:
    """Thread-safe publish/subscribe channel."""

    def __init__(self, history_size: int = 200):
        self._lock = threading.Lock()
        self._queues: list[queue.Queue] = []
        self._callbacks: dict[int, Callable[[Event], None]] = {}
        self._next_id = 0
        self._history: deque[Event] = deque(maxlen=history_size)

    def publish(self, event_type: str, payload: dict | None = None) -> Event:
        """Publish an event to all subscribers. Returns the published event."""
        event = Event(
            type=event_type,
            payload=dict(payload or {}),
            timestamp=int(time.time() * 1000),
        )
        with self._lock:
            self._history.append(event)
            queues = list(self._queues)
            callbacks = list(self._callbacks.values())

        for q in queues:
            try:
                q.put_nowait(event)
            except queue.Full:
                logger.warning("Subscriber queue full, dropping %s event", event.type)

        for callback in callbacks:
            try:
                callback(event)
            except Exception:
                logger.exception("Event callback failed for %s", event.type)

        return event

    def subscribe(self, maxsize: int = 256) -> queue.Queue:
        """Subscribe with a queue that receives every future event."""
        q: queue.Queue = queue.Queue(maxsize=maxsize)
        with self._lock:
            self._queues.append(q)
        return q

    def unsubscribe(self, q: queue.Queue) -> None:
        with self._lock:
            if q in self._queues:
                self._queues.remove(q)

    def add_listener(self, callback: Callable[[Event], None]) -> int:
        """Register a callback invoked synchronously on publish. Returns a listener id."""
        with self._lock:
            self._next_id += 1
            self._callbacks[self._next_id] = callback
            return self._next_id

    def remove_listener(self, listener_id: int) -> None:
        with self._lock:
            self._callbacks.pop(listener_id, None)

    def recent(self, event_type: str | None = None, limit: int | None = None) -> list[Event]:
        """Recently published events, oldest first."""
        with self._lock:
            events = list(self._history)
        if event_type:
            events = [e for e in events if e.type == event_type]
        if limit:
            events = events[-limit:]
        return events
