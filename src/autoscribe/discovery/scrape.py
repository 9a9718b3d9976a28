from __future__ import annotations

from typing import Any
from urllib.parse import urljoin

from bs4 import BeautifulSoup

from ..models import DiscoveryResult, SourceConfig, SourceType
from ..utils import collapse_whitespace
from .base import Discoverer


class ScrapeDiscoverer(Discoverer):
    """Listing pages scraped with CSS selectors from the source options.

    Options: ``container_selector``, ``link_selector`` (default ``a``),
    ``title_selector``, ``excerpt_selector``, ``image_selector``,
    ``date_selector`` and ``next_selector`` for pagination.
    """

    source_type = SourceType.SCRAPE

    def _discover(self, source: SourceConfig, campaign_id: str, result: DiscoveryResult) -> None:
        if not source.url:
            self.parse_error(result, None, "scrape source has no url")
            return
        options = source.options
        keywords = self.keyword_filter(source)
        max_depth = self.max_depth(source)
        page_url: str | None = source.url
        depth = 1
        seen_pages: set[str] = set()
        while page_url:
            if depth > max_depth:
                self.depth_exceeded(result, page_url, depth)
                return
            if page_url in seen_pages:
                return
            seen_pages.add(page_url)
            response = self.fetch(page_url, result, headers=options.get("http_headers"))
            if response is None:
                return
            soup = BeautifulSoup(response.content, "html.parser")
            container_selector = options.get("container_selector")
            containers = soup.select(container_selector) if container_selector else [soup]
            if not containers:
                self.parse_error(result, page_url, f"container not found: {container_selector}")
            for container in containers:
                result.found_count += 1
                raw = extract_item(container, options, page_url)
                if raw is None:
                    self.drop(result, "missing_link", url=page_url)
                    continue
                if not keywords.accepts(raw["title"], raw["excerpt"]):
                    self.drop(result, "keywords", url=raw["url"])
                    continue
                self.emit(raw, source, campaign_id, result)
            page_url = _next_page(soup, options.get("next_selector"), page_url)
            depth += 1


def extract_item(container: Any, options: dict[str, Any], base_url: str) -> dict[str, Any] | None:
    link_node = container.select_one(options.get("link_selector") or "a")
    if link_node is None or not link_node.get("href"):
        return None
    url = urljoin(base_url, link_node["href"])
    title = ""
    if options.get("title_selector"):
        title = _select_text(container, options["title_selector"])
    if not title:
        title = collapse_whitespace(link_node.get_text())
    excerpt = _select_text(container, options.get("excerpt_selector"))
    media: list[str] = []
    if options.get("image_selector"):
        image = container.select_one(options["image_selector"])
        src = image.get("src") or image.get("data-src") if image is not None else None
        if src:
            media.append(urljoin(base_url, src))
    published = None
    if options.get("date_selector"):
        date_node = container.select_one(options["date_selector"])
        if date_node is not None:
            published = date_node.get("datetime") or collapse_whitespace(date_node.get_text())
    return {
        "title": title,
        "url": url,
        "excerpt": excerpt,
        "published_at": published,
        "media_urls": media,
        "raw_metadata": {"page_url": base_url},
    }


def _select_text(container: Any, selector: str | None) -> str:
    if not selector:
        return ""
    node = container.select_one(selector)
    if node is None:
        return ""
    return collapse_whitespace(node.get_text(" "))


def _next_page(soup: Any, selector: str | None, base_url: str) -> str | None:
    if not selector:
        return None
    node = soup.select_one(selector)
    if node is None or not node.get("href"):
        return None
    return urljoin(base_url, node["href"])
