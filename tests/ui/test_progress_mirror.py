from __future__ import annotations

import io
from datetime import datetime, timedelta, timezone

from rich.console import Console

from lead_crawler.models import TaskKind
from lead_crawler.ui import ProgressSnapshot, TaskProgressMirror, TaskProgressReporter

T0 = datetime(2024, 5, 1, 9, 0, tzinfo=timezone.utc)


def _update(status: str, current: int = 0, at: datetime = T0, task_id: str = "t1") -> dict:
    return {
        "task_id": task_id,
        "status": status,
        "stage": "scraping",
        "progress": {"current": current, "total": 4, "message": f"{status} {current}"},
        "error": None,
        "updated_at": at.isoformat(),
    }


def test_mirror_reports_only_status_changes() -> None:
    mirror = TaskProgressMirror()

    assert mirror.apply(_update("pending")) is True
    assert mirror.apply(_update("pending")) is False
    assert mirror.apply(_update("running", 1, T0 + timedelta(seconds=1))) is True
    assert mirror.apply(_update("running", 2, T0 + timedelta(seconds=2))) is False
    assert mirror.get("t1").current == 2


def test_mirror_ignores_stale_updates() -> None:
    mirror = TaskProgressMirror()
    mirror.apply(_update("completed", 4, T0 + timedelta(seconds=10)))

    assert mirror.apply(_update("running", 2, T0 + timedelta(seconds=5))) is False
    assert mirror.get("t1").status == "completed"
    mirror.forget("t1")
    assert mirror.snapshots() == []


def test_snapshot_from_store_task(store) -> None:
    task = store.create(TaskKind.DIRECT_URL, "alice", url="https://acme.test")
    snapshot = ProgressSnapshot.from_update(task)

    assert snapshot.task_id == task.task_id
    assert snapshot.status == "pending"
    assert snapshot.total == 4
    assert snapshot.fraction == 0.0
    assert snapshot.updated_at == task.updated_at
    assert not snapshot.is_terminal


def test_snapshot_fraction_is_capped() -> None:
    snapshot = ProgressSnapshot(task_id="t1", status="completed", current=9, total=4)
    assert snapshot.fraction == 1.0
    assert snapshot.is_terminal


def test_reporter_disables_itself_off_terminal() -> None:
    reporter = TaskProgressReporter(console=Console(file=io.StringIO()))
    reporter.start("dentists in Dubai", total=7)
    reporter.update(ProgressSnapshot(task_id="t1", status="running", current=1, total=7))
    reporter.close()
    assert reporter.enabled is False
