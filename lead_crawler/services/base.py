"""Collaborator contracts and the records they exchange with the pipeline."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Protocol, Sequence

import httpx


@dataclass(slots=True)
class QueryGroup:
    """Queries the AI produced for one language/region pair."""

    queries: list[str]
    language: str = "en"
    region: str = "US"


@dataclass(slots=True, frozen=True)
class SearchQuery:
    query: str
    language: str = "en"
    region: str = "US"


@dataclass(slots=True)
class SearchHit:
    """One place returned by the geo search."""

    name: str
    url: str | None = None
    address: str | None = None
    phone: str | None = None
    category: str | None = None
    rating: float | None = None
    reviews_count: int | None = None


@dataclass(slots=True)
class ScrapedPage:
    """Outcome of scraping one url; ``error`` is set when the page could not be read."""

    url: str
    title: str | None = None
    email: str | None = None
    all_emails: list[str] = field(default_factory=list)
    description: str = ""
    error: str | None = None

    @property
    def failed(self) -> bool:
        return bool(self.error)


def error_message(response: httpx.Response) -> str:
    """Best-effort upstream error text from a failed JSON API response."""

    try:
        payload = response.json()
    except ValueError:
        return response.reason_phrase
    if isinstance(payload, dict):
        error = payload.get("error")
        if isinstance(error, dict) and error.get("message"):
            return str(error["message"])
    return response.reason_phrase


class QueryGenerator(Protocol):
    def generate(self, intent: str) -> list[QueryGroup]: ...


class GeoSearchClient(Protocol):
    def search(self, query: SearchQuery) -> list[SearchHit]: ...


class ScrapeClient(Protocol):
    def scrape(self, urls: Sequence[str], concurrency: int) -> list[ScrapedPage]: ...


__all__ = [
    "GeoSearchClient",
    "QueryGenerator",
    "QueryGroup",
    "ScrapeClient",
    "ScrapedPage",
    "SearchHit",
    "SearchQuery",
    "error_message",
]
