from __future__ import annotations

import time

from conftest import FakeQueryGenerator, FakeScrapeClient, FakeSearchClient
from lead_crawler.config import GlobalConfig, PipelineConfig, WorkerConfig
from lead_crawler.models import TaskKind, TaskStatus
from lead_crawler.orchestrator import PipelineFactory
from lead_crawler.scheduler import TaskWorker
from lead_crawler.services import QueryGroup, ScrapedPage, SearchHit


def _wait_for_terminal(store, task_ids, timeout: float = 10.0) -> None:
    deadline = time.monotonic() + timeout
    while not all(store.get(task_id).is_terminal for task_id in task_ids):
        if time.monotonic() > deadline:
            raise AssertionError("tasks did not finish in time")
        time.sleep(0.02)


def test_worker_drives_tasks_to_completion(store, thread_pool) -> None:
    factory = PipelineFactory(
        store,
        thread_pool,
        GlobalConfig(pipeline=PipelineConfig(scrape_fanout=2)),
        query_generator=FakeQueryGenerator([QueryGroup(["bakery porto"], "pt", "PT")]),
        search_client=FakeSearchClient(
            {"bakery porto": [SearchHit(name="Pão Quente", url="https://pao.test")]}
        ),
        scrape_client=FakeScrapeClient(
            {
                "https://pao.test": ScrapedPage(url="https://pao.test", email="ola@pao.test"),
                "https://direct.test": ScrapedPage(url="https://direct.test", email="hi@direct.test"),
            }
        ),
    )
    worker = TaskWorker(store, factory, thread_pool, WorkerConfig(max_concurrent=2))
    search = store.create(TaskKind.QUERY_SEARCH, "alice", query="bakeries in Porto")
    direct = store.create(TaskKind.DIRECT_URL, "alice", url="https://direct.test")

    assert worker.tick() == [search.task_id, direct.task_id]
    _wait_for_terminal(store, [search.task_id, direct.task_id])
    worker.stop(wait=True, timeout=5)

    finished = store.get(search.task_id)
    assert finished.status is TaskStatus.COMPLETED
    assert [candidate.name for candidate in finished.result] == ["Pão Quente"]
    assert store.get(direct.task_id).progress.message == "Found 1 new contacts"
    assert {contact.email for contact in store.list_contacts("alice")} == {"ola@pao.test", "hi@direct.test"}
