"""In-process push channel for task row changes."""

from __future__ import annotations

import queue
from dataclasses import dataclass, field
from datetime import datetime
from threading import Lock
from typing import Any

from ..models import Task


@dataclass(slots=True, frozen=True)
class TaskEvent:
    """Snapshot of a task row emitted after every store write."""

    task_id: str
    owner: str
    status: str
    stage: str
    progress: dict[str, Any]
    error: str | None
    updated_at: datetime

    @classmethod
    def from_task(cls, task: Task) -> "TaskEvent":
        return cls(
            task_id=task.task_id,
            owner=task.owner,
            status=task.status.value,
            stage=task.stage,
            progress=task.progress.model_dump(),
            error=task.error,
            updated_at=task.updated_at,
        )

    def to_payload(self) -> dict[str, Any]:
        return {
            "task_id": self.task_id,
            "owner": self.owner,
            "status": self.status,
            "stage": self.stage,
            "progress": dict(self.progress),
            "error": self.error,
            "updated_at": self.updated_at.isoformat(),
        }


@dataclass(eq=False)
class Subscription:
    """Bounded mailbox handed to one listener.

    When the mailbox is full the oldest event is dropped; listeners are
    expected to fall back to polling for anything they miss.
    """

    bus: "TaskEventBus"
    owner: str | None = None
    maxsize: int = 256
    closed: bool = False
    _queue: queue.Queue = field(init=False, repr=False)

    def __post_init__(self) -> None:
        self._queue = queue.Queue(maxsize=self.maxsize)

    def offer(self, event: TaskEvent) -> None:
        if self.closed:
            return
        if self.owner is not None and event.owner != self.owner:
            return
        while True:
            try:
                self._queue.put_nowait(event)
                return
            except queue.Full:
                try:
                    self._queue.get_nowait()
                except queue.Empty:
                    pass

    def get(self, timeout: float | None = None) -> TaskEvent | None:
        """Return the next event, or ``None`` when nothing arrives in time."""

        if self.closed and self._queue.empty():
            return None
        try:
            return self._queue.get(timeout=timeout)
        except queue.Empty:
            return None

    def close(self) -> None:
        if not self.closed:
            self.closed = True
            self.bus.unsubscribe(self)

    def __enter__(self) -> "Subscription":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


class TaskEventBus:
    """Thread-safe fan-out of :class:`TaskEvent` to live subscriptions."""

    def __init__(self, maxsize: int = 256) -> None:
        self.maxsize = maxsize
        self._subscriptions: list[Subscription] = []
        self._lock = Lock()

    def subscribe(self, owner: str | None = None) -> Subscription:
        subscription = Subscription(bus=self, owner=owner, maxsize=self.maxsize)
        with self._lock:
            self._subscriptions.append(subscription)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        with self._lock:
            if subscription in self._subscriptions:
                self._subscriptions.remove(subscription)

    def publish(self, event: TaskEvent) -> None:
        with self._lock:
            targets = list(self._subscriptions)
        for subscription in targets:
            subscription.offer(event)

    def publish_task(self, task: Task) -> None:
        self.publish(TaskEvent.from_task(task))

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscriptions)


__all__ = ["Subscription", "TaskEvent", "TaskEventBus"]
