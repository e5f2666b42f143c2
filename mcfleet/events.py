from __future__ import annotations

from collections import deque
from threading import Condition, Lock
from typing import Any

from .models import utc_now


class Subscription:
    """One observer's queue. Bounded; the oldest event is dropped when full."""

    def __init__(self, bus: EventBus, maxsize: int):
        self._bus = bus
        self._queue: deque[dict[str, Any]] = deque(maxlen=max(1, maxsize))
        self._cond = Condition()
        self.closed = False
        self.dropped = 0

    def put(self, event: dict[str, Any]) -> None:
        with self._cond:
            if self.closed:
                return
            if len(self._queue) == self._queue.maxlen:
                self.dropped += 1
            self._queue.append(event)
            self._cond.notify()

    def get(self, timeout: float | None = None) -> dict[str, Any] | None:
        """Next event, or None on timeout or once closed."""
        with self._cond:
            if not self._queue and not self.closed:
                self._cond.wait(timeout)
            if self._queue:
                return self._queue.popleft()
            return None

    def drain(self) -> list[dict[str, Any]]:
        with self._cond:
            items = list(self._queue)
            self._queue.clear()
            return items

    def close(self) -> None:
        self._bus.unsubscribe(self)
        with self._cond:
            self.closed = True
            self._cond.notify_all()


class EventBus:
    """In-process publish/subscribe for status, log and job events.

    publish() never blocks on a slow observer.
    """

    def __init__(self, queue_size: int = 1000):
        self.queue_size = queue_size
        self._lock = Lock()
        self._subs: list[Subscription] = []

    def subscribe(self) -> Subscription:
        sub = Subscription(self, self.queue_size)
        with self._lock:
            self._subs.append(sub)
        return sub

    def unsubscribe(self, sub: Subscription) -> None:
        with self._lock:
            if sub in self._subs:
                self._subs.remove(sub)

    def publish(self, event: dict[str, Any]) -> None:
        event.setdefault("ts", utc_now())
        with self._lock:
            subs = list(self._subs)
        for sub in subs:
            sub.put(event)

    def publish_status(self, workload_id: str, status: str) -> None:
        self.publish({"type": "status", "workloadId": workload_id, "status": status})

    def publish_log(self, workload_id: str, line: str) -> None:
        self.publish({"type": "log", "workloadId": workload_id, "line": line})

    def publish_deleted(self, workload_id: str) -> None:
        self.publish({"type": "deleted", "workloadId": workload_id})
