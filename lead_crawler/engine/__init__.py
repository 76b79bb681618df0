"""Engine components: deduplication, relevance ranking, parallel scraping and thread pools."""

from .dedup import DeduplicationEngine, DeduplicationResult
from .relevance import RankedCandidates, RelevanceRanker
from .scraper import ParallelScrapeExecutor, split_chunks
from .thread_pool import ThreadPoolManager

__all__ = [
    "DeduplicationEngine",
    "DeduplicationResult",
    "ParallelScrapeExecutor",
    "RankedCandidates",
    "RelevanceRanker",
    "ThreadPoolManager",
    "split_chunks",
]
