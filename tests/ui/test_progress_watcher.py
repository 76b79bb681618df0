from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from lead_crawler.errors import TaskNotFoundError
from lead_crawler.ui import ProgressWatcher

T0 = datetime(2024, 5, 1, 9, 0, tzinfo=timezone.utc)


class Ticker:
    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps: list[float] = []

    def monotonic(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


class ScriptedChannel:
    """Hands out queued events; an empty get just lets the clock run."""

    def __init__(self, ticker: Ticker, events: list[dict]) -> None:
        self.ticker = ticker
        self.events = list(events)
        self.closed = False
        self.close_calls = 0

    def get(self, timeout: float | None = None):
        if self.events:
            return self.events.pop(0)
        self.ticker.now += timeout or 0.0
        return None

    def close(self) -> None:
        self.close_calls += 1


def _payload(status: str, seconds: int, task_id: str = "t1") -> dict:
    return {
        "task_id": task_id,
        "status": status,
        "stage": status,
        "progress": {"current": seconds, "total": 7, "message": ""},
        "error": None,
        "updated_at": (T0 + timedelta(seconds=seconds)).isoformat(),
    }


def test_polls_until_terminal_without_push() -> None:
    ticker = Ticker()
    script = [_payload("pending", 0), _payload("running", 1), _payload("running", 2), _payload("completed", 3)]
    fetches: list[str] = []

    def fetch(task_id: str) -> dict:
        fetches.append(task_id)
        return script[min(len(fetches), len(script)) - 1]

    seen: list[tuple[str, bool]] = []
    watcher = ProgressWatcher(
        fetch,
        poll_interval=5,
        on_update=lambda snapshot, changed: seen.append((snapshot.status, changed)),
        sleep=ticker.sleep,
        monotonic=ticker.monotonic,
    )

    final = watcher.watch("t1")

    assert final.status == "completed"
    assert len(fetches) == 4
    assert ticker.sleeps == [5, 5, 5]
    assert [changed for _, changed in seen] == [True, True, False, True]


def test_push_events_finish_without_extra_polls() -> None:
    ticker = Ticker()
    fetches: list[str] = []

    def fetch(task_id: str) -> dict:
        fetches.append(task_id)
        return _payload("running", 1)

    channel = ScriptedChannel(
        ticker,
        [_payload("running", 2, task_id="other"), _payload("running", 2), _payload("completed", 3)],
    )
    watcher = ProgressWatcher(
        fetch,
        subscribe=lambda task_id: channel,
        poll_interval=5,
        sleep=ticker.sleep,
        monotonic=ticker.monotonic,
    )

    final = watcher.watch("t1")

    assert final.status == "completed"
    assert final.current == 3
    assert fetches == ["t1"]
    assert channel.close_calls == 1
    assert watcher.mirror.get("other") is None


def test_quiet_push_channel_falls_back_to_polling() -> None:
    ticker = Ticker()
    responses = iter([_payload("running", 1), _payload("failed", 2)])
    channel = ScriptedChannel(ticker, [])
    watcher = ProgressWatcher(
        lambda task_id: next(responses),
        subscribe=lambda task_id: channel,
        poll_interval=5,
        sleep=ticker.sleep,
        monotonic=ticker.monotonic,
    )

    final = watcher.watch("t1")

    assert final.status == "failed"
    assert ticker.now == 5


def test_broken_subscribe_still_polls() -> None:
    ticker = Ticker()
    responses = iter([_payload("running", 1), _payload("cancelled", 2)])

    def subscribe(task_id: str):
        raise ConnectionError("stream refused")

    watcher = ProgressWatcher(
        lambda task_id: next(responses),
        subscribe=subscribe,
        poll_interval=2,
        sleep=ticker.sleep,
        monotonic=ticker.monotonic,
    )
    assert watcher.watch("t1").status == "cancelled"


def test_timeout_and_missing_task() -> None:
    ticker = Ticker()
    watcher = ProgressWatcher(
        lambda task_id: _payload("running", 1),
        poll_interval=5,
        sleep=ticker.sleep,
        monotonic=ticker.monotonic,
    )
    with pytest.raises(TimeoutError):
        watcher.watch("t1", timeout=12)
    assert ticker.now == 12

    missing = ProgressWatcher(lambda task_id: None, sleep=ticker.sleep, monotonic=ticker.monotonic)
    with pytest.raises(TaskNotFoundError):
        missing.watch("t1")


def test_poll_interval_must_be_positive() -> None:
    with pytest.raises(ValueError):
        ProgressWatcher(lambda task_id: None, poll_interval=0)


def test_events_for_other_tasks_do_not_hold_off_polling() -> None:
    ticker = Ticker()
    responses = iter([_payload("running", 1), _payload("completed", 2)])
    fetches: list[str] = []

    def fetch(task_id: str) -> dict:
        fetches.append(task_id)
        return next(responses)

    class BusyNeighbourChannel:
        closed = False

        def get(self, timeout: float | None = None) -> dict:
            ticker.now += 1
            return _payload("running", int(ticker.now), task_id="neighbour")

        def close(self) -> None:
            pass

    watcher = ProgressWatcher(
        fetch,
        subscribe=lambda task_id: BusyNeighbourChannel(),
        poll_interval=5,
        sleep=ticker.sleep,
        monotonic=ticker.monotonic,
    )

    final = watcher.watch("t1", timeout=30)

    assert final.status == "completed"
    assert fetches == ["t1", "t1"]
    assert ticker.now == 5
