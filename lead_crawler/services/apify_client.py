"""Apify actor runs backing the geo search and remote website scraping."""

from __future__ import annotations

import time
from typing import Any, Callable, Sequence

import httpx
import structlog

from ..config import ServicesConfig
from ..errors import CollaboratorError, ScrapeError, SearchError
from .base import ScrapedPage, SearchHit, SearchQuery, error_message

_FAILED_RUN_STATES = {"FAILED", "ABORTED", "TIMED-OUT"}


def _as_number(value: Any, kind: Callable[[Any], Any]) -> Any:
    if value in (None, ""):
        return None
    try:
        return kind(value)
    except (TypeError, ValueError):
        return None

# Runs inside the web-scraper actor for every start url.
PAGE_FUNCTION = """
async function pageFunction(context) {
    const $ = context.jQuery;
    const url = context.request.url;
    const pattern = /[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\\.[a-zA-Z]{2,}/g;
    try {
        const title = $('title').first().text().trim() || $('h1').first().text().trim();
        const found = new Set();
        $('a[href^="mailto:"]').each((_, el) => {
            const address = ($(el).attr('href') || '').replace(/^mailto:/i, '').split('?')[0].trim();
            if (address) found.add(address.toLowerCase());
        });
        ($('body').text().match(pattern) || []).forEach((address) => found.add(address.toLowerCase()));
        const allEmails = [...found].filter((address) => !/\\.(png|jpe?g|gif|svg|css|js|pdf)$/i.test(address));
        const description = $('meta[name="description"]').attr('content') || '';
        return {
            url,
            title,
            email: allEmails.length ? allEmails[0] : null,
            allEmails,
            description: description.substring(0, 500),
        };
    } catch (error) {
        return { url, title: null, email: null, allEmails: [], description: '', scrapingError: error.message };
    }
}
"""


class ApifyClient:
    """Start an actor run, wait for it to finish and read its dataset.

    ``search`` drives the Google Maps actor, ``scrape`` the generic web
    scraper. Both are blocking and meant to be called from worker threads.
    """

    def __init__(
        self,
        config: ServicesConfig,
        results_per_query: int = 10,
        client: httpx.Client | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.config = config
        self.results_per_query = results_per_query
        self._client = client or httpx.Client(base_url=config.apify_base_url, timeout=config.request_timeout)
        self._sleep = sleep
        self.logger = structlog.get_logger("lead_crawler.services.apify")

    def close(self) -> None:
        self._client.close()

    # ------------------------------------------------------------------
    def search(self, query: SearchQuery) -> list[SearchHit]:
        run_input = {
            "searchStringsArray": [query.query],
            "maxCrawledPlacesPerSearch": self.results_per_query,
            "language": query.language,
            "countryCode": query.region.lower(),
            "scrapeReviewsCount": 0,
            "scrapeImages": False,
            "includePeopleAlsoSearch": False,
        }
        try:
            items = self._run_actor(self.config.google_maps_actor, run_input)
        except CollaboratorError as exc:
            raise SearchError(f"Geo search failed for {query.query!r}: {exc}", transient=exc.transient) from exc
        hits = [self._to_hit(item) for item in items if isinstance(item, dict)]
        self.logger.info("search_completed", query=query.query, hits=len(hits))
        return hits

    def scrape(self, urls: Sequence[str], concurrency: int) -> list[ScrapedPage]:
        if not urls:
            return []
        run_input = {
            "startUrls": [{"url": url} for url in urls],
            "pageFunction": PAGE_FUNCTION,
            "injectJQuery": True,
            "proxyConfiguration": {"useApifyProxy": True},
            "maxCrawlingDepth": 0,
            "maxRequestRetries": 3,
            "maxConcurrency": concurrency,
            "pageLoadTimeoutSecs": 120,
        }
        try:
            items = self._run_actor(self.config.web_scraper_actor, run_input)
        except CollaboratorError as exc:
            raise ScrapeError(f"Scrape run failed for {len(urls)} urls: {exc}", transient=exc.transient) from exc
        pages = [self._to_page(item) for item in items if isinstance(item, dict)]
        self.logger.info("scrape_completed", urls=len(urls), pages=len(pages))
        return pages

    # ------------------------------------------------------------------
    def _run_actor(self, actor: str, run_input: dict[str, Any]) -> list[Any]:
        if not self.config.apify_token:
            raise CollaboratorError("APIFY_API_TOKEN is not configured", transient=False)
        run = self._call("POST", f"/acts/{actor}/runs", json=run_input)["data"]
        run_id = run["id"]
        self.logger.debug("actor_run_started", actor=actor, run_id=run_id)
        deadline = time.monotonic() + self.config.apify_max_wait_seconds
        while True:
            status_payload = self._call("GET", f"/actor-runs/{run_id}")["data"]
            status = status_payload.get("status")
            if status == "SUCCEEDED":
                dataset_id = status_payload.get("defaultDatasetId") or run.get("defaultDatasetId")
                items = self._call("GET", f"/datasets/{dataset_id}/items", params={"clean": "true", "format": "json"})
                return items if isinstance(items, list) else []
            if status in _FAILED_RUN_STATES:
                message = status_payload.get("statusMessage") or "unknown error"
                raise CollaboratorError(f"Run {status}: {message}", transient=status == "TIMED-OUT")
            if time.monotonic() >= deadline:
                raise CollaboratorError(f"Run {run_id} did not finish in time")
            self._sleep(self.config.apify_poll_interval_seconds)

    def _call(self, method: str, path: str, **kwargs: Any) -> Any:
        headers = {"Authorization": f"Bearer {self.config.apify_token}"}
        try:
            response = self._client.request(method, path, headers=headers, **kwargs)
        except httpx.HTTPError as exc:
            raise CollaboratorError(f"Apify request failed: {exc}") from exc
        if response.is_error:
            raise CollaboratorError(
                f"Apify {method} {path} returned {response.status_code}: {error_message(response)}",
                transient=response.status_code >= 500 or response.status_code == 429,
            )
        return response.json()

    @staticmethod
    def _to_hit(item: dict[str, Any]) -> SearchHit:
        return SearchHit(
            name=str(item.get("title") or item.get("name") or "").strip(),
            url=item.get("website") or item.get("url") or None,
            address=item.get("address"),
            phone=item.get("phone"),
            category=item.get("categoryName"),
            rating=_as_number(item.get("totalScore"), float),
            reviews_count=_as_number(item.get("reviewsCount"), int),
        )

    @staticmethod
    def _to_page(item: dict[str, Any]) -> ScrapedPage:
        all_emails = [str(email) for email in item.get("allEmails") or [] if email]
        return ScrapedPage(
            url=str(item.get("url") or item.get("website") or ""),
            title=item.get("title") or item.get("organizationName"),
            email=item.get("email") or None,
            all_emails=all_emails,
            description=str(item.get("description") or ""),
            error=item.get("scrapingError") or None,
        )


__all__ = ["ApifyClient", "PAGE_FUNCTION"]
