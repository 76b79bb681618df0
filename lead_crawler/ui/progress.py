"""Client-side task progress: mirror, push/poll watcher and Rich rendering."""

from __future__ import annotations

import time
from dataclasses import dataclass
from datetime import datetime
from threading import Lock
from typing import Any, Callable, Mapping, Protocol

import structlog
from pydantic import TypeAdapter
from rich.console import Console
from rich.errors import LiveError
from rich.progress import (
    BarColumn,
    Progress,
    SpinnerColumn,
    TaskID,
    TaskProgressColumn,
    TextColumn,
    TimeElapsedColumn,
)

from ..errors import TaskNotFoundError
from ..infra.events import TaskEvent
from ..models import Task, TERMINAL_STATUSES, TaskStatus

_DATETIME = TypeAdapter(datetime)
_TERMINAL_VALUES = {status.value for status in TERMINAL_STATUSES}


@dataclass(slots=True, frozen=True)
class ProgressSnapshot:
    """The client's view of one task at one point in time."""

    task_id: str
    status: str
    stage: str = ""
    current: int = 0
    total: int = 0
    message: str = ""
    error: str | None = None
    updated_at: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in _TERMINAL_VALUES

    @property
    def fraction(self) -> float:
        if self.total <= 0:
            return 0.0
        return min(1.0, self.current / self.total)

    @classmethod
    def from_update(cls, update: "Task | TaskEvent | Mapping[str, Any]") -> "ProgressSnapshot":
        if isinstance(update, Task):
            payload: Mapping[str, Any] = update.model_dump(mode="json")
        elif isinstance(update, TaskEvent):
            payload = update.to_payload()
        else:
            payload = update
        progress = payload.get("progress") or {}
        status = payload.get("status")
        if isinstance(status, TaskStatus):
            status = status.value
        updated_at = payload.get("updated_at")
        return cls(
            task_id=str(payload["task_id"]),
            status=str(status),
            stage=str(payload.get("stage") or ""),
            current=int(progress.get("current") or 0),
            total=int(progress.get("total") or 0),
            message=str(progress.get("message") or ""),
            error=payload.get("error"),
            updated_at=_DATETIME.validate_python(updated_at) if updated_at else None,
        )


class TaskProgressMirror:
    """Latest known snapshot per task, fed from both push and poll channels.

    ``apply`` returns True only when the task's status differs from the last
    one seen, so replaying the same update is harmless. Updates older than the
    stored snapshot are ignored.
    """

    def __init__(self) -> None:
        self._entries: dict[str, ProgressSnapshot] = {}
        self._lock = Lock()

    def apply(self, update: "Task | TaskEvent | Mapping[str, Any] | ProgressSnapshot") -> bool:
        snapshot = update if isinstance(update, ProgressSnapshot) else ProgressSnapshot.from_update(update)
        with self._lock:
            previous = self._entries.get(snapshot.task_id)
            if (
                previous is not None
                and previous.updated_at is not None
                and snapshot.updated_at is not None
                and snapshot.updated_at < previous.updated_at
            ):
                return False
            self._entries[snapshot.task_id] = snapshot
        return previous is None or previous.status != snapshot.status

    def get(self, task_id: str) -> ProgressSnapshot | None:
        with self._lock:
            return self._entries.get(task_id)

    def snapshots(self) -> list[ProgressSnapshot]:
        with self._lock:
            return list(self._entries.values())

    def forget(self, task_id: str) -> None:
        with self._lock:
            self._entries.pop(task_id, None)


class PushChannel(Protocol):
    closed: bool

    def get(self, timeout: float | None = None) -> Any: ...

    def close(self) -> None: ...


class ProgressWatcher:
    """Follow one task until it reaches a terminal status.

    Push events are applied as they arrive. Whenever a full poll interval
    passes without a push event for the task, the task is fetched instead, so
    a missing or dead push channel only costs latency.
    """

    def __init__(
        self,
        fetch_task: Callable[[str], "Task | Mapping[str, Any] | None"],
        subscribe: Callable[[str], PushChannel] | None = None,
        poll_interval: float = 5.0,
        mirror: TaskProgressMirror | None = None,
        on_update: Callable[[ProgressSnapshot, bool], None] | None = None,
        sleep: Callable[[float], None] = time.sleep,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        if poll_interval <= 0:
            raise ValueError("poll_interval must be > 0")
        self.fetch_task = fetch_task
        self.subscribe = subscribe
        self.poll_interval = poll_interval
        self.mirror = mirror or TaskProgressMirror()
        self.on_update = on_update
        self._sleep = sleep
        self._monotonic = monotonic
        self.logger = structlog.get_logger("lead_crawler.ui.watcher")

    def watch(self, task_id: str, timeout: float | None = None) -> ProgressSnapshot:
        deadline = None if timeout is None else self._monotonic() + timeout
        channel = self._open_channel(task_id)
        try:
            snapshot = self._poll(task_id)
            next_poll = self._monotonic() + self.poll_interval
            while snapshot is None or not snapshot.is_terminal:
                now = self._monotonic()
                if deadline is not None and now >= deadline:
                    raise TimeoutError(f"Task {task_id} did not finish within {timeout} seconds")
                wait = max(0.0, next_poll - now)
                if deadline is not None:
                    wait = min(wait, max(0.0, deadline - now))
                if channel is not None and not getattr(channel, "closed", False):
                    try:
                        update = channel.get(timeout=wait)
                    except Exception as exc:  # noqa: BLE001
                        self.logger.warning("push_channel_failed", task_id=task_id, error=str(exc))
                        channel = None
                        update = None
                    if update is not None:
                        pushed = self._apply(task_id, update)
                        if pushed is not None:
                            snapshot = self.mirror.get(task_id)
                            next_poll = self._monotonic() + self.poll_interval
                            continue
                else:
                    self._sleep(wait)
                if self._monotonic() >= next_poll:
                    latest = self._poll(task_id)
                    snapshot = latest or snapshot
                    next_poll = self._monotonic() + self.poll_interval
            return snapshot
        finally:
            if channel is not None:
                channel.close()

    # ------------------------------------------------------------------
    def _open_channel(self, task_id: str) -> PushChannel | None:
        if self.subscribe is None:
            return None
        try:
            return self.subscribe(task_id)
        except Exception as exc:  # noqa: BLE001
            self.logger.warning("push_channel_unavailable", task_id=task_id, error=str(exc))
            return None

    def _poll(self, task_id: str) -> ProgressSnapshot | None:
        try:
            update = self.fetch_task(task_id)
        except TaskNotFoundError:
            raise
        except Exception as exc:  # noqa: BLE001
            self.logger.warning("progress_poll_failed", task_id=task_id, error=str(exc))
            return self.mirror.get(task_id)
        if update is None:
            raise TaskNotFoundError(task_id)
        self._apply(task_id, update)
        return self.mirror.get(task_id)

    def _apply(self, task_id: str, update: Any) -> bool | None:
        snapshot = update if isinstance(update, ProgressSnapshot) else ProgressSnapshot.from_update(update)
        if snapshot.task_id != task_id:
            return None
        changed = self.mirror.apply(snapshot)
        if self.on_update is not None:
            self.on_update(self.mirror.get(task_id) or snapshot, changed)
        return changed


class TaskProgressReporter:
    """Render a task's stage progress as a Rich progress row."""

    def __init__(self, enabled: bool = True, console: Console | None = None) -> None:
        self.enabled = enabled
        self._console = console
        self._progress: Progress | None = None
        self._task_id: TaskID | None = None

    def start(self, label: str, total: int = 0) -> None:
        if not self.enabled:
            return
        if self._console is None:
            self._console = Console()
        if not self._console.is_terminal:
            self.enabled = False
            return
        self._progress = Progress(
            SpinnerColumn(style="cyan"),
            TextColumn("[bold blue]{task.fields[label]:<24}", justify="left"),
            BarColumn(bar_width=None, complete_style="green", finished_style="green"),
            TaskProgressColumn(show_speed=False),
            TextColumn("[magenta]{task.fields[stage]:<16}"),
            TextColumn("[dim]{task.fields[message]}"),
            TimeElapsedColumn(),
            console=self._console,
            transient=False,
            expand=True,
        )
        try:
            self._progress.__enter__()
        except LiveError:
            self.enabled = False
            self._progress = None
            return
        self._task_id = self._progress.add_task(
            "task", total=total or None, label=label[:24], stage="queued", message="Waiting…"
        )

    def update(self, snapshot: ProgressSnapshot, changed: bool = False) -> None:
        if self._progress is None or self._task_id is None:
            return
        self._progress.update(
            self._task_id,
            total=snapshot.total or None,
            completed=snapshot.current,
            stage=snapshot.stage,
            message=snapshot.error or snapshot.message,
        )

    def close(self) -> None:
        if self._progress is not None:
            self._progress.__exit__(None, None, None)
            self._progress = None
            self._task_id = None


__all__ = [
    "ProgressSnapshot",
    "ProgressWatcher",
    "PushChannel",
    "TaskProgressMirror",
    "TaskProgressReporter",
]
