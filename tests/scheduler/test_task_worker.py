from __future__ import annotations

import time
from threading import Event

import pytest

from lead_crawler.config import WorkerConfig
from lead_crawler.models import TaskKind, TaskStatus
from lead_crawler.orchestrator import PipelineOutcome
from lead_crawler.scheduler import TaskWorker
from lead_crawler.scheduler.worker import POLL_JOB_ID


class BlockingRun:
    def __init__(self, task, gate: Event, started: list[str]) -> None:
        self.task = task
        self.gate = gate
        self.started = started

    def run(self) -> PipelineOutcome:
        self.started.append(self.task.task_id)
        self.gate.wait(timeout=5)
        return PipelineOutcome(task_id=self.task.task_id, status=TaskStatus.COMPLETED)


class RecordingAdapter:
    def __init__(self) -> None:
        self.calls: list[tuple] = []

    def schedule_interval(self, job_id, callback, seconds):  # noqa: ANN001
        self.calls.append(("schedule", job_id, seconds))

    def start(self) -> None:
        self.calls.append(("start",))

    def remove(self, job_id) -> None:  # noqa: ANN001
        self.calls.append(("remove", job_id))

    def shutdown(self, wait: bool = False) -> None:  # noqa: ARG002
        self.calls.append(("shutdown",))


def _wait_until(predicate, timeout: float = 5.0) -> None:
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("condition not reached in time")
        time.sleep(0.01)


def _pending(store, count: int) -> list[str]:
    return [store.create(TaskKind.QUERY_SEARCH, "alice", query=f"query {n}").task_id for n in range(count)]


def test_dispatch_respects_capacity(store, thread_pool) -> None:
    ids = _pending(store, 3)
    gate = Event()
    started: list[str] = []
    worker = TaskWorker(
        store,
        lambda task: BlockingRun(task, gate, started),
        thread_pool,
        WorkerConfig(max_concurrent=2),
    )

    first = worker.tick()
    second = worker.tick()

    assert first == ids[:2]
    assert second == []
    assert worker.active_ids == sorted(ids[:2])
    assert worker.status()["available"] == 0
    assert store.get(ids[2]).status is TaskStatus.PENDING

    gate.set()
    _wait_until(lambda: worker.active_count == 0)
    assert worker.tick() == [ids[2]]
    worker.stop(wait=True, timeout=5)
    assert sorted(started) == sorted(ids)


def test_factory_failure_fails_the_task_and_keeps_ticking(store, thread_pool) -> None:
    ids = _pending(store, 2)
    gate = Event()
    gate.set()

    def factory(task):
        if task.task_id == ids[0]:
            raise RuntimeError("missing credentials")
        return BlockingRun(task, gate, [])

    worker = TaskWorker(store, factory, thread_pool, WorkerConfig(max_concurrent=2))
    dispatched = worker.tick()

    assert dispatched == [ids[1]]
    failed = store.get(ids[0])
    assert failed.status is TaskStatus.FAILED
    assert failed.error == "Dispatch failed: missing credentials"


def test_crashing_pipeline_is_marked_failed(store, thread_pool) -> None:
    (task_id,) = _pending(store, 1)

    class Crash:
        def run(self):
            raise RuntimeError("boom")

    worker = TaskWorker(store, lambda task: Crash(), thread_pool)
    worker.tick()
    _wait_until(lambda: store.get(task_id).status is TaskStatus.FAILED)
    assert store.get(task_id).error == "boom"
    _wait_until(lambda: worker.active_count == 0)


def test_stuck_task_is_retried_then_failed(store, thread_pool, clock) -> None:
    (task_id,) = _pending(store, 1)
    worker = TaskWorker(store, lambda task: None, thread_pool, WorkerConfig(max_retries=3))

    for attempt in range(1, 4):
        assert store.claim(task_id)
        clock.advance(minutes=31)
        worker.recover_stuck()
        task = store.get(task_id)
        assert task.status is TaskStatus.PENDING
        assert task.retry_count == attempt

    assert store.claim(task_id)
    clock.advance(minutes=31)
    worker.recover_stuck()
    final = store.get(task_id)
    assert final.status is TaskStatus.FAILED
    assert final.retry_count == 3
    assert "retry limit (3)" in final.error


def test_recent_running_task_is_not_stuck(store, thread_pool, clock) -> None:
    (task_id,) = _pending(store, 1)
    store.claim(task_id)
    clock.advance(minutes=10)
    TaskWorker(store, lambda task: None, thread_pool).recover_stuck()
    assert store.get(task_id).status is TaskStatus.RUNNING


def test_tick_swallows_store_errors(store, thread_pool, monkeypatch) -> None:
    worker = TaskWorker(store, lambda task: None, thread_pool)

    def broken(*args, **kwargs):
        raise RuntimeError("database is locked")

    monkeypatch.setattr(store, "list_stuck", broken)
    assert worker.tick() == []


def test_start_schedules_polling_and_stop_removes_it(store, thread_pool) -> None:
    adapter = RecordingAdapter()
    worker = TaskWorker(
        store,
        lambda task: None,
        thread_pool,
        WorkerConfig(poll_interval_seconds=2),
        scheduler=adapter,  # type: ignore[arg-type]
    )

    worker.start()
    worker.start()
    assert worker.status()["running"] is True
    worker.stop()

    assert adapter.calls == [
        ("schedule", POLL_JOB_ID, 2),
        ("start",),
        ("remove", POLL_JOB_ID),
        ("shutdown",),
    ]
    assert worker.running is False


@pytest.mark.parametrize("field", ["max_concurrent", "stuck_batch_limit"])
def test_worker_config_rejects_non_positive_limits(field: str) -> None:
    with pytest.raises(ValueError):
        WorkerConfig(**{field: 0})


def test_requeued_task_is_dispatched_again(store, thread_pool) -> None:
    (task_id,) = _pending(store, 1)
    runs: list[int] = []

    class FlakyOnce:
        def __init__(self, task) -> None:
            self.task = task

        def run(self) -> PipelineOutcome:
            runs.append(self.task.retry_count)
            if self.task.retry_count == 0:
                store.reset_to_pending(self.task.task_id, "provider timeout")
                return PipelineOutcome(task_id=self.task.task_id, status=TaskStatus.PENDING)
            store.complete(self.task.task_id, [])
            return PipelineOutcome(task_id=self.task.task_id, status=TaskStatus.COMPLETED)

    worker = TaskWorker(store, FlakyOnce, thread_pool)

    assert worker.tick() == [task_id]
    _wait_until(lambda: worker.active_count == 0)
    assert store.get(task_id).status is TaskStatus.PENDING

    assert worker.tick() == [task_id]
    _wait_until(lambda: store.get(task_id).status is TaskStatus.COMPLETED)
    _wait_until(lambda: worker.active_count == 0)
    assert runs == [0, 1]
    assert store.get(task_id).retry_count == 1
