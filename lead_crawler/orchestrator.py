"""Per-task pipeline: query generation, search, scraping, filtering, dedup, ranking and saving."""

from __future__ import annotations

import time
from concurrent.futures import Future, TimeoutError as FutureTimeoutError
from dataclasses import dataclass, field
from typing import Callable

import structlog

from .config import GlobalConfig, PipelineConfig
from .engine import DeduplicationEngine, ParallelScrapeExecutor, RelevanceRanker, ThreadPoolManager
from .errors import (
    CollaboratorError,
    QueryGenerationError,
    SearchError,
    TaskCancelledError,
    TaskNotFoundError,
    TaskStateError,
)
from .infra import TaskStore
from .logging_conf import release_task_logger, task_logger
from .models import Candidate, PersistResult, Task, TaskKind, TaskStatus, is_http_url
from .services import GeoSearchClient, QueryGenerator, QueryGroup, ScrapeClient, SearchHit, SearchQuery

SEARCH_POOL = "search"


@dataclass(slots=True)
class PipelineContext:
    """Everything one run has produced so far; each stage fills in its part."""

    task: Task
    queries: list[SearchQuery] = field(default_factory=list)
    failed_queries: int = 0
    hits: list[SearchHit] = field(default_factory=list)
    urls: list[str] = field(default_factory=list)
    names: dict[str, str] = field(default_factory=dict)
    places: dict[str, SearchHit] = field(default_factory=dict)
    candidates: list[Candidate] = field(default_factory=list)
    with_email: list[Candidate] = field(default_factory=list)
    unique: list[Candidate] = field(default_factory=list)
    duplicates: int = 0
    selected: list[Candidate] = field(default_factory=list)
    below_cutoff: int = 0
    persisted: PersistResult = field(default_factory=PersistResult)

    def summary(self) -> dict:
        # Places without an email are reported as search hits, never as found contacts.
        return {
            "queries": [query.query for query in self.queries],
            "failed_queries": self.failed_queries,
            "search_hits": len(self.hits),
            "websites": len(self.urls),
            "scraped": len(self.candidates),
            "with_email": len(self.with_email),
            "duplicates": self.duplicates,
            "below_cutoff": self.below_cutoff,
            "found": len(self.selected),
            "persisted": self.persisted.inserted,
            "already_existing": self.persisted.already_existing,
        }


@dataclass(slots=True)
class Stage:
    name: str
    run: Callable[[PipelineContext], PipelineContext]
    label: str


@dataclass(slots=True)
class PipelineOutcome:
    task_id: str
    status: TaskStatus
    persisted: int = 0
    error: str | None = None


class PipelineOrchestrator:
    """Drive one claimed task through its stages.

    Built fresh for every claimed task and thrown away afterwards. After each
    stage the task's progress is written back; that write fails with
    :class:`TaskCancelledError` once the user has cancelled the task, which
    ends the run without touching the task again.

    A transient collaborator failure puts the task back in the queue while
    ``retry_count < max_retries``; past that, or for any other error, the task
    is failed.
    """

    def __init__(
        self,
        task: Task,
        store: TaskStore,
        *,
        query_generator: QueryGenerator | None,
        search_client: GeoSearchClient | None,
        scraper: ParallelScrapeExecutor,
        dedup: DeduplicationEngine,
        thread_pool: ThreadPoolManager,
        config: PipelineConfig | None = None,
        default_language: str = "en",
        default_region: str = "US",
        max_retries: int = 3,
        parallel_tasks: int = 1,
    ) -> None:
        self.task = task
        self.store = store
        self.query_generator = query_generator
        self.search_client = search_client
        self.scraper = scraper
        self.dedup = dedup
        self.thread_pool = thread_pool
        self.config = config or PipelineConfig()
        self.default_language = default_language
        self.default_region = default_region
        self.max_retries = max_retries
        self.parallel_tasks = max(1, parallel_tasks)
        self.logger: structlog.BoundLogger = structlog.get_logger("lead_crawler.pipeline").bind(
            task_id=task.task_id
        )

    # ------------------------------------------------------------------
    def stages(self) -> list[Stage]:
        scrape = [
            Stage("scraping", self._scrape, "Scraping websites for contact details"),
            Stage("filtering", self._filter, "Keeping organisations with an email"),
            Stage("deduplication", self._deduplicate, "Checking against saved contacts"),
        ]
        save = Stage("saving", self._save, "Saving new contacts")
        if self.task.kind is TaskKind.DIRECT_URL:
            return [*scrape, save]
        return [
            Stage("query-generation", self._generate_queries, "Generating search queries"),
            Stage("searching", self._search, "Searching for organisations"),
            Stage("aggregation", self._aggregate, "Merging search results"),
            *scrape,
            Stage("relevance", self._rank, "Ranking contacts by relevance"),
            save,
        ]

    def run(self) -> PipelineOutcome:
        """Execute every stage; never raises, the outcome carries the final status."""

        task_id = self.task.task_id
        self.logger = task_logger(task_id).bind(component="pipeline", kind=self.task.kind.value)
        context = PipelineContext(task=self.task)
        if self.task.kind is TaskKind.DIRECT_URL:
            context.urls = [self.task.url] if self.task.url else []
        stages = self.stages()
        total = len(stages)
        current = "queued"
        self.logger.info("pipeline_started", stages=[stage.name for stage in stages])
        try:
            for index, stage in enumerate(stages, start=1):
                current = stage.name
                self.store.update_progress(task_id, stage.name, index - 1, total, stage.label)
                started = time.monotonic()
                context = stage.run(context)
                self.logger.info(
                    "stage_completed",
                    stage=stage.name,
                    elapsed=round(time.monotonic() - started, 3),
                )
                if index < total:
                    self.store.update_progress(task_id, stage.name, index, total, self._describe(stage.name, context))
        except TaskCancelledError as exc:
            self.logger.info("pipeline_stopped", stage=current, status=exc.status)
            return PipelineOutcome(task_id=task_id, status=TaskStatus(exc.status))
        except Exception as exc:  # noqa: BLE001
            reason = str(exc) or exc.__class__.__name__
            transient = isinstance(exc, CollaboratorError) and exc.transient
            if transient and self.task.retry_count < self.max_retries:
                return self._requeue(current, reason)
            if transient:
                reason = f"Task exceeded retry limit ({self.max_retries}): {reason}"
            self.logger.error("pipeline_failed", stage=current, error=reason, exc_info=True)
            status = TaskStatus.FAILED
            try:
                status = self.store.fail(task_id, reason).status
            except Exception as store_exc:  # noqa: BLE001
                self.logger.error("fail_write_failed", error=str(store_exc))
            return PipelineOutcome(task_id=task_id, status=status, error=reason)
        else:
            self.logger.info("pipeline_completed", **context.summary())
            return PipelineOutcome(
                task_id=task_id,
                status=TaskStatus.COMPLETED,
                persisted=context.persisted.inserted,
            )
        finally:
            release_task_logger(task_id)

    def _requeue(self, stage: str, reason: str) -> PipelineOutcome:
        task_id = self.task.task_id
        try:
            task = self.store.reset_to_pending(task_id, reason)
        except TaskStateError as exc:
            self.logger.info("pipeline_requeue_skipped", stage=stage, status=exc.status)
            return PipelineOutcome(task_id=task_id, status=TaskStatus(exc.status), error=reason)
        except TaskNotFoundError:
            self.logger.error("pipeline_requeue_failed", stage=stage, error=reason)
            return PipelineOutcome(task_id=task_id, status=TaskStatus.FAILED, error=reason)
        self.logger.warning("pipeline_requeued", stage=stage, error=reason, retry=task.retry_count)
        return PipelineOutcome(task_id=task_id, status=task.status, error=reason)

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------
    def _generate_queries(self, context: PipelineContext) -> PipelineContext:
        intent = context.task.query or ""
        if self.query_generator is None:
            raise QueryGenerationError("No query generator configured", transient=False)
        try:
            groups = self.query_generator.generate(intent)
        except CollaboratorError as exc:
            if not self.config.fallback_to_intent_query:
                raise
            self.logger.warning("query_generation_fallback", error=str(exc))
            groups = [QueryGroup(queries=[intent], language=self.default_language, region=self.default_region)]

        seen: set[str] = set()
        queries: list[SearchQuery] = []
        for group in groups:
            for text in group.queries:
                text = text.strip()
                if not text or text in seen:
                    continue
                seen.add(text)
                queries.append(SearchQuery(query=text, language=group.language, region=group.region))
        context.queries = queries[: self.config.max_queries]
        if not context.queries:
            raise QueryGenerationError("Query generation returned no usable queries", transient=False)
        self.logger.info(
            "queries_accepted",
            accepted=len(context.queries),
            offered=sum(len(group.queries) for group in groups),
        )
        return context

    def _search(self, context: PipelineContext) -> PipelineContext:
        if self.search_client is None:
            raise SearchError("No search client configured", transient=False)
        # One slot per query of every task the worker may run at once.
        executor = self.thread_pool.get(SEARCH_POOL, max_workers=self.config.max_queries * self.parallel_tasks)
        futures: list[tuple[SearchQuery, Future[list[SearchHit]]]] = [
            (query, executor.submit(self.search_client.search, query)) for query in context.queries
        ]
        deadline = time.monotonic() + self.config.search_timeout_seconds
        last_error = ""
        retryable = True
        for query, future in futures:
            try:
                hits = future.result(timeout=max(0.0, deadline - time.monotonic()))
            except Exception as exc:  # noqa: BLE001
                future.cancel()
                last_error = str(exc) or exc.__class__.__name__
                if not isinstance(exc, FutureTimeoutError) and not (
                    isinstance(exc, CollaboratorError) and exc.transient
                ):
                    retryable = False
                context.failed_queries += 1
                self.logger.warning("search_query_failed", query=query.query, error=last_error)
                continue
            context.hits.extend(hits)
        if context.queries and context.failed_queries == len(context.queries):
            raise SearchError(f"All {len(context.queries)} searches failed: {last_error}", transient=retryable)
        return context

    def _aggregate(self, context: PipelineContext) -> PipelineContext:
        seen: set[str] = set()
        skipped = 0
        for hit in context.hits:
            if not is_http_url(hit.url):
                skipped += 1
                continue
            url = hit.url.strip()
            key = url.lower()
            if key in seen:
                continue
            seen.add(key)
            context.urls.append(url)
            context.places[url] = hit
            if hit.name:
                context.names[url] = hit.name
        self.logger.info("hits_aggregated", websites=len(context.urls), skipped_without_website=skipped)
        return context

    def _scrape(self, context: PipelineContext) -> PipelineContext:
        context.candidates = self.scraper.scrape_parallel(
            context.urls,
            fanout=self.config.scrape_fanout,
            names=context.names,
        )
        return context

    def _filter(self, context: PipelineContext) -> PipelineContext:
        context.with_email = [candidate for candidate in context.candidates if candidate.has_email]
        return context

    def _deduplicate(self, context: PipelineContext) -> PipelineContext:
        result = self.dedup.filter_new(context.task.owner, context.with_email)
        context.unique = result.unique
        context.duplicates = result.duplicate_count
        context.selected = list(result.unique)
        return context

    def _rank(self, context: PipelineContext) -> PipelineContext:
        ranking = RelevanceRanker(context.task.query or "").rank(
            context.unique,
            context.places,
            limit=context.task.result_count,
        )
        context.selected = ranking.ranked
        context.below_cutoff = ranking.dropped
        self.logger.info(
            "contacts_ranked",
            kept=len(ranking.ranked),
            dropped=ranking.dropped,
            top_score=max(ranking.scores.values(), default=0),
        )
        return context

    def _save(self, context: PipelineContext) -> PipelineContext:
        task = context.task
        context.persisted = self.store.persist_contacts(task.owner, task.task_id, context.selected)
        self.store.complete(task.task_id, context.selected, context.summary())
        return context

    @staticmethod
    def _describe(stage: str, context: PipelineContext) -> str:
        if stage == "query-generation":
            return f"Generated {len(context.queries)} search queries"
        if stage == "searching":
            return f"Search returned {len(context.hits)} places"
        if stage == "aggregation":
            return f"{len(context.urls)} unique websites to scrape"
        if stage == "scraping":
            return f"Scraped {len(context.candidates)} websites"
        if stage == "filtering":
            return f"{len(context.with_email)} organisations with an email"
        if stage == "deduplication":
            return f"{len(context.unique)} new contacts, {context.duplicates} already known"
        if stage == "relevance":
            return f"Kept {len(context.selected)} most relevant contacts"
        return stage


class PipelineFactory:
    """Build a fresh :class:`PipelineOrchestrator` for each claimed task."""

    def __init__(
        self,
        store: TaskStore,
        thread_pool: ThreadPoolManager,
        config: GlobalConfig,
        *,
        query_generator: QueryGenerator | None,
        search_client: GeoSearchClient | None,
        scrape_client: ScrapeClient,
    ) -> None:
        self.store = store
        self.thread_pool = thread_pool
        self.config = config
        self.query_generator = query_generator
        self.search_client = search_client
        self.scrape_client = scrape_client

    def __call__(self, task: Task) -> PipelineOrchestrator:
        pipeline = self.config.pipeline
        worker = self.config.worker
        scraper = ParallelScrapeExecutor(
            self.scrape_client,
            self.thread_pool,
            pipeline.scrape_concurrency,
            pool_size=pipeline.scrape_fanout * worker.max_concurrent,
        )
        return PipelineOrchestrator(
            task,
            self.store,
            query_generator=self.query_generator,
            search_client=self.search_client,
            scraper=scraper,
            dedup=DeduplicationEngine(self.store, batch_size=pipeline.dedup_batch_size),
            thread_pool=self.thread_pool,
            config=pipeline,
            default_language=self.config.services.default_language,
            default_region=self.config.services.default_region,
            max_retries=worker.max_retries,
            parallel_tasks=worker.max_concurrent,
        )


__all__ = [
    "PipelineContext",
    "PipelineFactory",
    "PipelineOrchestrator",
    "PipelineOutcome",
    "Stage",
]
