"""Shared fixtures: temporary home, task store with a controllable clock, fake collaborators."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Iterable, Sequence

import pytest

from lead_crawler.config import ConfigLocator, ConfigRepository, GlobalConfig, PipelineConfig
from lead_crawler.engine import DeduplicationEngine, ParallelScrapeExecutor, ThreadPoolManager
from lead_crawler.errors import ScrapeError, SearchError
from lead_crawler.infra import SQLiteManager, TaskStore
from lead_crawler.models import Candidate, Task
from lead_crawler.orchestrator import PipelineOrchestrator
from lead_crawler.services import QueryGroup, ScrapedPage, SearchHit, SearchQuery


class FakeClock:
    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2024, 5, 1, 9, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now = self.now + timedelta(**kwargs)


class FakeQueryGenerator:
    def __init__(self, groups: Sequence[QueryGroup] = (), error: Exception | None = None) -> None:
        self.groups = list(groups)
        self.error = error
        self.calls: list[str] = []

    def generate(self, intent: str) -> list[QueryGroup]:
        self.calls.append(intent)
        if self.error is not None:
            raise self.error
        return list(self.groups)


class FakeSearchClient:
    def __init__(
        self,
        hits: dict[str, list[SearchHit]] | None = None,
        failing: Iterable[str] = (),
        transient: bool = False,
    ) -> None:
        self.hits = hits or {}
        self.failing = set(failing)
        self.transient = transient
        self.calls: list[SearchQuery] = []

    def search(self, query: SearchQuery) -> list[SearchHit]:
        self.calls.append(query)
        if query.query in self.failing:
            raise SearchError(f"search failed for {query.query}", transient=self.transient)
        return list(self.hits.get(query.query, []))


class FakeScrapeClient:
    """Scrape by lookup; any chunk containing a url from ``failing`` raises."""

    def __init__(self, pages: dict[str, ScrapedPage] | None = None, failing: Iterable[str] = ()) -> None:
        self.pages = pages or {}
        self.failing = set(failing)
        self.calls: list[list[str]] = []

    def scrape(self, urls: Sequence[str], concurrency: int) -> list[ScrapedPage]:
        self.calls.append(list(urls))
        if self.failing.intersection(urls):
            raise ScrapeError("scrape sub-job failed")
        return [self.pages.get(url, ScrapedPage(url=url, title=url)) for url in urls]


@pytest.fixture(autouse=True)
def lead_home(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    home = tmp_path / "home"
    home.mkdir()
    monkeypatch.setenv("LEAD_CRAWLER_HOME", str(home))
    for name in ("OPENAI_API_KEY", "OPENAI_ASSISTANT_ID", "APIFY_API_TOKEN"):
        monkeypatch.delenv(name, raising=False)
    return home


@pytest.fixture
def temp_config_repository(lead_home: Path) -> ConfigRepository:
    return ConfigRepository(ConfigLocator(project_root=lead_home))


@pytest.fixture
def sample_global_config(tmp_path: Path) -> GlobalConfig:
    return GlobalConfig(database_path=tmp_path / "leads.db", thread_pool_workers=4)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store(tmp_path: Path, clock: FakeClock) -> Iterable[TaskStore]:
    manager = SQLiteManager()
    task_store = TaskStore(manager, tmp_path / "data" / "leads.db", clock=clock)
    yield task_store
    manager.close_all()


@pytest.fixture
def thread_pool() -> Iterable[ThreadPoolManager]:
    manager = ThreadPoolManager(default_workers=4)
    yield manager
    manager.shutdown(wait=True)


@pytest.fixture
def make_candidate() -> Callable[..., Candidate]:
    def _builder(name: str = "Acme", email: str | None = None, **overrides: Any) -> Candidate:
        base: dict[str, Any] = {
            "name": name,
            "email": email,
            "source_url": f"https://{name.lower().replace(' ', '-')}.example.com",
        }
        base.update(overrides)
        return Candidate(**base)

    return _builder


@pytest.fixture
def make_pipeline(store: TaskStore, thread_pool: ThreadPoolManager) -> Callable[..., PipelineOrchestrator]:
    def _builder(
        task: Task,
        *,
        generator: FakeQueryGenerator | None = None,
        search: FakeSearchClient | None = None,
        scrape: FakeScrapeClient | None = None,
        config: PipelineConfig | None = None,
        max_retries: int = 3,
    ) -> PipelineOrchestrator:
        pipeline_config = config or PipelineConfig(scrape_fanout=3)
        return PipelineOrchestrator(
            task,
            store,
            query_generator=generator or FakeQueryGenerator(),
            search_client=search or FakeSearchClient(),
            scraper=ParallelScrapeExecutor(scrape or FakeScrapeClient(), thread_pool, concurrency=2),
            dedup=DeduplicationEngine(store, batch_size=pipeline_config.dedup_batch_size),
            thread_pool=thread_pool,
            config=pipeline_config,
            max_retries=max_retries,
        )

    return _builder

