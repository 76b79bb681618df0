"""Polling worker that claims pending tasks and runs their pipelines."""

from __future__ import annotations

from concurrent.futures import Future, wait as wait_futures
from functools import partial
from threading import Lock
from typing import Any, Callable, Protocol

from ..config import WorkerConfig
from ..engine import ThreadPoolManager
from ..errors import LeadCrawlerError
from ..infra import TaskStore
from ..logging_conf import configure_logging
from ..models import Task
from .apsched_adapter import APSchedulerAdapter

PIPELINE_POOL = "pipeline"
POLL_JOB_ID = "task-worker::poll"


class Runnable(Protocol):
    def run(self) -> Any: ...


class TaskWorker:
    """Background scheduler for lead-generation tasks.

    Every tick first recovers tasks stuck in ``running`` (reset to pending, or
    failed once the retry limit is reached), then claims up to
    ``max_concurrent - active`` pending tasks and hands each to a fresh
    orchestrator on the ``pipeline`` executor. Nothing raised while handling a
    task escapes the tick.
    """

    def __init__(
        self,
        store: TaskStore,
        orchestrator_factory: Callable[[Task], Runnable],
        thread_pool: ThreadPoolManager,
        config: WorkerConfig | None = None,
        scheduler: APSchedulerAdapter | None = None,
    ) -> None:
        self.store = store
        self.orchestrator_factory = orchestrator_factory
        self.thread_pool = thread_pool
        self.config = config or WorkerConfig()
        self.scheduler = scheduler
        self.logger = configure_logging().bind(component="worker")
        self.running = False
        self._active: dict[str, Future] = {}
        self._lock = Lock()
        self._tick_lock = Lock()

    # ------------------------------------------------------------------
    def start(self) -> None:
        if self.running:
            return
        if self.scheduler is None:
            self.scheduler = APSchedulerAdapter()
        self.scheduler.schedule_interval(POLL_JOB_ID, self.tick, self.config.poll_interval_seconds)
        self.scheduler.start()
        self.running = True
        self.logger.info(
            "worker_started",
            poll_interval=self.config.poll_interval_seconds,
            max_concurrent=self.config.max_concurrent,
        )
        self.tick()

    def stop(self, wait: bool = True, timeout: float | None = None) -> None:
        """Stop polling; with ``wait`` block until in-flight pipelines finish."""

        if self.scheduler is not None and self.running:
            self.scheduler.remove(POLL_JOB_ID)
            self.scheduler.shutdown()
        self.running = False
        if wait:
            with self._lock:
                pending = list(self._active.values())
            if pending:
                wait_futures(pending, timeout=timeout)
        self.logger.info("worker_stopped", in_flight=self.active_count)

    # ------------------------------------------------------------------
    @property
    def active_ids(self) -> list[str]:
        with self._lock:
            return sorted(self._active)

    @property
    def active_count(self) -> int:
        with self._lock:
            return len(self._active)

    def status(self) -> dict[str, Any]:
        active = self.active_ids
        return {
            "running": self.running,
            "active_tasks": active,
            "active_count": len(active),
            "max_concurrent": self.config.max_concurrent,
            "available": max(0, self.config.max_concurrent - len(active)),
            "poll_interval_seconds": self.config.poll_interval_seconds,
            "max_retries": self.config.max_retries,
        }

    def tick(self) -> list[str]:
        """Run one polling cycle; returns the ids dispatched in this cycle."""

        if not self._tick_lock.acquire(blocking=False):
            return []
        try:
            self.recover_stuck()
            return self.dispatch()
        except Exception as exc:  # noqa: BLE001
            self.logger.error("worker_tick_failed", error=str(exc), exc_info=True)
            return []
        finally:
            self._tick_lock.release()

    def recover_stuck(self) -> None:
        stuck = self.store.list_stuck(self.config.stuck_timeout_minutes, self.config.stuck_batch_limit)
        for task in stuck:
            if task.task_id in self.active_ids:
                continue
            try:
                if task.retry_count >= self.config.max_retries:
                    self.store.fail(
                        task.task_id,
                        f"Task exceeded retry limit ({self.config.max_retries}) after stalling",
                    )
                    self.logger.warning("stuck_task_failed", task_id=task.task_id, retries=task.retry_count)
                else:
                    self.store.reset_to_pending(task.task_id)
                    self.logger.warning("stuck_task_reset", task_id=task.task_id, retry=task.retry_count + 1)
            except LeadCrawlerError as exc:
                self.logger.info("stuck_task_skipped", task_id=task.task_id, error=str(exc))

    def dispatch(self) -> list[str]:
        available = self.config.max_concurrent - self.active_count
        if available <= 0:
            self.logger.debug("worker_at_capacity", active=self.active_count)
            return []
        dispatched: list[str] = []
        for task in self.store.list_pending(available):
            if not self.store.claim(task.task_id):
                continue
            self.logger.info("task_claimed", task_id=task.task_id, kind=task.kind.value)
            try:
                claimed = self.store.get(task.task_id) or task
                orchestrator = self.orchestrator_factory(claimed)
                executor = self.thread_pool.get(PIPELINE_POOL, max_workers=self.config.max_concurrent)
                with self._lock:
                    future = executor.submit(self._run_pipeline, orchestrator, task.task_id)
                    self._active[task.task_id] = future
            except Exception as exc:  # noqa: BLE001
                self.logger.error("task_dispatch_failed", task_id=task.task_id, error=str(exc))
                self._fail_quietly(task.task_id, f"Dispatch failed: {exc}")
                continue
            future.add_done_callback(partial(self._finished, task.task_id))
            dispatched.append(task.task_id)
        return dispatched

    # ------------------------------------------------------------------
    def _run_pipeline(self, orchestrator: Runnable, task_id: str) -> Any:
        try:
            return orchestrator.run()
        except Exception as exc:  # noqa: BLE001
            self.logger.error("pipeline_crashed", task_id=task_id, error=str(exc), exc_info=True)
            self._fail_quietly(task_id, str(exc) or exc.__class__.__name__)
            return None

    def _finished(self, task_id: str, future: Future) -> None:
        with self._lock:
            # A requeued task may already be running again under a newer future.
            if self._active.get(task_id) is future:
                del self._active[task_id]
        outcome = None if future.cancelled() else future.result()
        status = getattr(getattr(outcome, "status", None), "value", None)
        self.logger.info("task_finished", task_id=task_id, status=status)

    def _fail_quietly(self, task_id: str, reason: str) -> None:
        try:
            self.store.fail(task_id, reason)
        except Exception as exc:  # noqa: BLE001
            self.logger.error("task_fail_write_failed", task_id=task_id, error=str(exc))


__all__ = ["PIPELINE_POOL", "POLL_JOB_ID", "TaskWorker"]
