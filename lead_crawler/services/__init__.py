"""External collaborators: query generation, geo search and website scraping."""

from __future__ import annotations

from ..config import GlobalConfig
from .apify_client import ApifyClient
from .base import (
    GeoSearchClient,
    QueryGenerator,
    QueryGroup,
    ScrapeClient,
    ScrapedPage,
    SearchHit,
    SearchQuery,
)
from .http_scraper import HttpScrapeClient
from .openai_client import OpenAIQueryGenerator


def build_scrape_client(config: GlobalConfig, apify: ApifyClient | None = None) -> ScrapeClient:
    """Select the scrape backend named in ``services.scrape_backend``."""

    if config.services.scrape_backend == "http":
        return HttpScrapeClient(config.services)
    return apify or ApifyClient(config.services, results_per_query=config.pipeline.results_per_query)


__all__ = [
    "ApifyClient",
    "GeoSearchClient",
    "HttpScrapeClient",
    "OpenAIQueryGenerator",
    "QueryGenerator",
    "QueryGroup",
    "ScrapeClient",
    "ScrapedPage",
    "SearchHit",
    "SearchQuery",
    "build_scrape_client",
]
