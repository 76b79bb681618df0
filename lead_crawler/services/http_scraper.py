"""Direct website scraping with httpx and selectolax."""

from __future__ import annotations

import re
from concurrent.futures import ThreadPoolExecutor
from typing import Sequence
from urllib.parse import unquote, urlparse

import httpx
import structlog
from selectolax.parser import HTMLParser

from ..config import ServicesConfig
from ..models import EMAIL_PATTERN
from .base import ScrapedPage

_ASSET_SUFFIX = re.compile(r"\.(png|jpe?g|gif|svg|webp|css|js|pdf)$", re.IGNORECASE)
_DESCRIPTION_LIMIT = 500


def extract_page(url: str, html: str) -> ScrapedPage:
    """Pull title, description and contact addresses out of an HTML document."""

    tree = HTMLParser(html)
    title_node = tree.css_first("title") or tree.css_first("h1")
    title = title_node.text(strip=True) if title_node else None

    description = ""
    for selector in ('meta[name="description"]', 'meta[property="og:description"]'):
        node = tree.css_first(selector)
        if node and node.attributes.get("content"):
            description = node.attributes["content"].strip()
            break

    found: list[str] = []
    for node in tree.css('a[href^="mailto:"]'):
        href = node.attributes.get("href") or ""
        address = unquote(href.split(":", 1)[1].split("?", 1)[0]).strip()
        if address:
            found.append(address)
    body = tree.body
    if body is not None:
        found.extend(EMAIL_PATTERN.findall(body.text(separator=" ")))

    emails: list[str] = []
    for address in found:
        address = address.strip().lower()
        if not address or _ASSET_SUFFIX.search(address) or address in emails:
            continue
        emails.append(address)

    return ScrapedPage(
        url=url,
        title=title or None,
        email=emails[0] if emails else None,
        all_emails=emails,
        description=description[:_DESCRIPTION_LIMIT],
    )


class HttpScrapeClient:
    """Fetch pages directly instead of through a hosted scraper."""

    def __init__(self, config: ServicesConfig, client: httpx.Client | None = None) -> None:
        self.config = config
        self._client = client or httpx.Client(
            follow_redirects=True,
            timeout=config.request_timeout,
            headers={"User-Agent": config.user_agent},
        )
        self.logger = structlog.get_logger("lead_crawler.services.http_scraper")

    def close(self) -> None:
        self._client.close()

    def scrape(self, urls: Sequence[str], concurrency: int) -> list[ScrapedPage]:
        if not urls:
            return []
        workers = max(1, min(concurrency, len(urls)))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="lead-http") as executor:
            return list(executor.map(self._scrape_one, urls))

    def _scrape_one(self, url: str) -> ScrapedPage:
        try:
            response = self._client.get(url)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            self.logger.warning("page_fetch_failed", url=url, error=str(exc))
            return ScrapedPage(url=url, error=str(exc) or exc.__class__.__name__)
        content_type = response.headers.get("content-type", "")
        if content_type and "html" not in content_type:
            return ScrapedPage(url=url, title=urlparse(url).netloc, description="")
        return extract_page(url, response.text)


__all__ = ["HttpScrapeClient", "extract_page"]
