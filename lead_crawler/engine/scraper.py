"""Fan a url list out over several scrape sub-jobs and gather the candidates."""

from __future__ import annotations

from concurrent.futures import Future, as_completed
from typing import Mapping, Sequence, TypeVar
from urllib.parse import urlparse

import structlog

from ..services.base import ScrapeClient, ScrapedPage
from ..models import Candidate
from .thread_pool import ThreadPoolManager

T = TypeVar("T")

SCRAPE_POOL = "scrape"


def split_chunks(items: Sequence[T], fanout: int) -> list[list[T]]:
    """Split ``items`` into ``fanout`` contiguous chunks.

    Every chunk but the last holds ``len(items) // fanout`` items; the last one
    takes the remainder. ``fanout`` is clamped to ``1..len(items)``.
    """

    if not items:
        return []
    fanout = max(1, min(fanout, len(items)))
    size = len(items) // fanout
    chunks = [list(items[index * size : (index + 1) * size]) for index in range(fanout - 1)]
    chunks.append(list(items[(fanout - 1) * size :]))
    return chunks


class ParallelScrapeExecutor:
    """Run scrape sub-jobs side by side; a failing sub-job costs only its own chunk.

    ``pool_size`` sizes the shared ``scrape`` executor when it is first created;
    it should cover the sub-jobs of every task running at the same time.
    """

    def __init__(
        self,
        client: ScrapeClient,
        thread_pool: ThreadPoolManager,
        concurrency: int = 5,
        logger: structlog.BoundLogger | None = None,
        pool_size: int | None = None,
    ) -> None:
        self.client = client
        self.thread_pool = thread_pool
        self.concurrency = concurrency
        self.pool_size = pool_size
        self.logger = logger or structlog.get_logger("lead_crawler.scraper")

    def scrape_parallel(
        self,
        urls: Sequence[str],
        fanout: int = 10,
        names: Mapping[str, str] | None = None,
    ) -> list[Candidate]:
        chunks = split_chunks(list(urls), fanout)
        if not chunks:
            return []
        executor = self.thread_pool.get(SCRAPE_POOL, max_workers=self.pool_size or max(len(chunks), fanout))
        futures: dict[Future[list[ScrapedPage]], int] = {
            executor.submit(self.client.scrape, chunk, self.concurrency): index
            for index, chunk in enumerate(chunks)
        }
        self.logger.info("scrape_fanout_started", urls=len(urls), chunks=len(chunks))

        known_names = {url.lower(): name for url, name in (names or {}).items() if name}
        candidates: list[Candidate] = []
        failed_pages = 0
        for future in as_completed(futures):
            index = futures[future]
            try:
                pages = future.result()
            except Exception as exc:  # noqa: BLE001
                self.logger.warning(
                    "scrape_chunk_failed",
                    chunk=index,
                    size=len(chunks[index]),
                    error=str(exc),
                )
                continue
            for page in pages:
                if page.failed:
                    failed_pages += 1
                    continue
                candidates.append(self._to_candidate(page, known_names))
        self.logger.info(
            "scrape_fanout_finished",
            candidates=len(candidates),
            failed_pages=failed_pages,
        )
        return candidates

    @staticmethod
    def _to_candidate(page: ScrapedPage, known_names: Mapping[str, str]) -> Candidate:
        name = known_names.get(page.url.lower()) or (page.title or "").strip() or urlparse(page.url).netloc
        return Candidate(
            name=name or page.url,
            email=page.email,
            all_emails=tuple(page.all_emails),
            source_url=page.url,
            description=page.description,
        )


__all__ = ["ParallelScrapeExecutor", "SCRAPE_POOL", "split_chunks"]
