from __future__ import annotations

import re
from typing import Any
from urllib.parse import urlsplit

from bs4 import BeautifulSoup

from ..models import DiscoveryResult, SourceConfig, SourceType
from ..utils import collapse_whitespace
from .base import Discoverer

_EXTENSION_RE = re.compile(r"\.(html|htm|php|asp|aspx)$", re.IGNORECASE)


class SitemapDiscoverer(Discoverer):
    """XML sitemaps, including sitemap indexes and the news/image extensions."""

    source_type = SourceType.SITEMAP

    def _discover(self, source: SourceConfig, campaign_id: str, result: DiscoveryResult) -> None:
        if not source.url:
            self.parse_error(result, None, "sitemap source has no url")
            return
        pattern = source.options.get("url_pattern")
        self._pattern = re.compile(pattern) if pattern else None
        self._keywords = self.keyword_filter(source)
        self._limit = int(source.options.get("max_items") or 0)
        self._visited: set[str] = set()
        self._walk(source.url, 1, self.max_depth(source), source, campaign_id, result)

    def _walk(
        self,
        url: str,
        depth: int,
        max_depth: int,
        source: SourceConfig,
        campaign_id: str,
        result: DiscoveryResult,
    ) -> None:
        if depth > max_depth:
            self.depth_exceeded(result, url, depth)
            return
        if url in self._visited:
            return
        self._visited.add(url)
        response = self.fetch(url, result)
        if response is None:
            return
        soup = BeautifulSoup(response.content, "html.parser")
        index = soup.find("sitemapindex")
        if index is not None:
            for node in index.find_all("sitemap"):
                loc = _text(node.find("loc"))
                if loc:
                    self._walk(loc, depth + 1, max_depth, source, campaign_id, result)
            return
        urlset = soup.find("urlset")
        if urlset is None:
            self.parse_error(result, url, "document is neither urlset nor sitemapindex")
            return
        for node in urlset.find_all("url", recursive=False):
            if self._limit and len(result.items) >= self._limit:
                return
            raw = url_entry_to_raw(node)
            if raw is None:
                self.parse_error(result, url, "url entry without loc")
                continue
            result.found_count += 1
            if self._pattern and not self._pattern.search(raw["url"]):
                self.drop(result, "url_pattern", url=raw["url"])
                continue
            if not self._keywords.accepts(raw["title"], " ".join(raw["categories"])):
                self.drop(result, "keywords", url=raw["url"])
                continue
            self.emit(raw, source, campaign_id, result)


def url_entry_to_raw(node: Any) -> dict[str, Any] | None:
    loc = _text(node.find("loc"))
    if not loc:
        return None
    news = node.find("news:news")
    news_title = _text(news.find("news:title")) if news is not None else ""
    keywords = _text(news.find("news:keywords")) if news is not None else ""
    published = _text(news.find("news:publication_date")) if news is not None else ""
    raw: dict[str, Any] = {
        "title": news_title or title_from_url(loc),
        "url": loc,
        "excerpt": "",
        "published_at": published or _text(node.find("lastmod")) or None,
        "media_urls": [
            _text(image.find("image:loc"))
            for image in node.find_all("image:image")
            if _text(image.find("image:loc"))
        ],
        "categories": [word.strip() for word in keywords.split(",") if word.strip()],
        "raw_metadata": {
            "lastmod": _text(node.find("lastmod")) or None,
            "changefreq": _text(node.find("changefreq")) or None,
        },
    }
    priority = _text(node.find("priority"))
    if priority:
        try:
            raw["priority"] = int(round(float(priority) * 100))
        except ValueError:
            pass
    if news is not None:
        publication = news.find("news:publication")
        if publication is not None:
            raw["raw_metadata"]["publication"] = _text(publication.find("news:name")) or None
            raw["raw_metadata"]["language"] = _text(publication.find("news:language")) or None
    return raw


def title_from_url(url: str) -> str:
    split = urlsplit(url)
    path = split.path.strip("/")
    if not path:
        return split.hostname or ""
    last = _EXTENSION_RE.sub("", path.split("/")[-1])
    words = last.replace("-", " ").replace("_", " ")
    return collapse_whitespace(words).title()


def _text(node: Any) -> str:
    if node is None:
        return ""
    return collapse_whitespace(node.get_text())
