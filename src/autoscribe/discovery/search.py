from __future__ import annotations

import logging
import re
import threading
from datetime import datetime, timedelta
from typing import Any, Callable

import feedparser

from ..models import DiscoveryResult, SourceConfig, SourceType
from ..utils import domain_of, log_event, parse_datetime
from .base import Discoverer
from .feed import entry_to_raw
from .filters import FreshnessFilter, SourcePolicy

NEWSAPI_URL = "https://newsapi.org/v2/everything"
SERPAPI_URL = "https://serpapi.com/search.json"
GOOGLE_NEWS_URL = "https://news.google.com/rss/search"

_RELATIVE_RE = re.compile(r"(\d+)\s+(minute|hour|day|week)s?\s+ago", re.IGNORECASE)
_RELATIVE_UNITS = {"minute": 60, "hour": 3600, "day": 86400, "week": 604800}


class ProviderCircuit:
    """Consecutive failures per (campaign, provider).

    A provider whose streak reached the threshold is skipped until the
    cooldown since its last failure has elapsed. Any success clears it.
    """

    def __init__(self) -> None:
        self._streaks: dict[tuple[str, str], tuple[int, datetime]] = {}
        self._lock = threading.Lock()

    def is_open(
        self, campaign_id: str, provider: str, now: datetime, threshold: int, cooldown: timedelta
    ) -> bool:
        if threshold <= 0:
            return False
        with self._lock:
            streak, last_failure = self._streaks.get((campaign_id, provider), (0, now))
        return streak >= threshold and now - last_failure < cooldown

    def record(self, campaign_id: str, provider: str, ok: bool, now: datetime) -> int:
        key = (campaign_id, provider)
        with self._lock:
            if ok:
                self._streaks.pop(key, None)
                return 0
            streak = self._streaks.get(key, (0, now))[0] + 1
            self._streaks[key] = (streak, now)
            return streak

    def reset(self) -> None:
        with self._lock:
            self._streaks.clear()


PROVIDER_CIRCUIT = ProviderCircuit()


class SearchDiscoverer(Discoverer):
    """News search APIs filtered by freshness, source policy and keywords.

    ``options.providers`` is an ordered fallback list of ``newsapi``,
    ``serpapi``, ``searxng`` and ``google_news``; the first provider that
    returns articles wins. ``options.provider`` names a single one.
    Accepted items get a freshness-based priority.
    """

    source_type = SourceType.SEARCH
    circuit: ProviderCircuit = PROVIDER_CIRCUIT

    def _discover(self, source: SourceConfig, campaign_id: str, result: DiscoveryResult) -> None:
        options = source.options
        articles = self._search(source, campaign_id, result)
        if not articles:
            return
        freshness = FreshnessFilter.from_option(
            options.get("freshness_window") or self.config.freshness_window
        )
        policy = SourcePolicy(options.get("source_mode") or "allow", options.get("sources"))
        keywords = self.keyword_filter(source)
        now = self.now
        for raw in articles:
            result.found_count += 1
            published = parse_datetime(raw.get("published_at"))
            if not policy.accepts(raw.get("url")):
                self.drop(result, "source_policy", url=raw.get("url"))
                continue
            if not freshness.accepts(published, now):
                self.drop(result, "freshness", url=raw.get("url"))
                continue
            if not keywords.accepts(raw.get("title"), raw.get("excerpt")):
                self.drop(result, "keywords", url=raw.get("url"))
                continue
            if source.options.get("priority") is None:
                raw["priority"] = freshness.score(published, now)
            self.emit(raw, source, campaign_id, result)

    def _search(
        self, source: SourceConfig, campaign_id: str, result: DiscoveryResult
    ) -> list[dict[str, Any]]:
        chain = provider_chain(source.options)
        fetchers = self._providers()
        now = self.now
        cooldown = timedelta(seconds=self.config.provider_cooldown_seconds)
        for provider in chain:
            fetcher = fetchers.get(provider)
            if fetcher is None:
                self.parse_error(result, source.url, f"unknown search provider: {provider}")
                continue
            threshold = self.config.provider_failure_threshold
            if self.circuit.is_open(campaign_id, provider, now, threshold, cooldown):
                log_event(
                    self.logger,
                    logging.WARNING,
                    "search_provider_skipped",
                    campaign_id=campaign_id,
                    provider=provider,
                )
                continue
            articles = fetcher(source, result)
            streak = self.circuit.record(campaign_id, provider, bool(articles), now)
            if articles:
                log_event(
                    self.logger,
                    logging.DEBUG,
                    "search_provider_used",
                    campaign_id=campaign_id,
                    provider=provider,
                    articles=len(articles),
                )
                return articles
            log_event(
                self.logger,
                logging.INFO,
                "search_provider_empty" if articles is not None else "search_provider_failed",
                campaign_id=campaign_id,
                provider=provider,
                streak=streak,
            )
        return []

    def _providers(self) -> dict[str, Callable[[SourceConfig, DiscoveryResult], list | None]]:
        return {
            "newsapi": self._newsapi,
            "serpapi": self._serpapi,
            "searxng": self._searxng,
            "google_news": self._google_news,
        }

    def _newsapi(self, source: SourceConfig, result: DiscoveryResult) -> list[dict] | None:
        options = source.options
        url = provider_endpoint(source, "newsapi", NEWSAPI_URL)
        data = self.fetch_json(
            url,
            result,
            params={
                "q": options.get("query"),
                "sortBy": options.get("sort_by") or "publishedAt",
                "pageSize": int(options.get("max_results") or 10),
                "language": options.get("language") or "en",
            },
            headers={"X-Api-Key": str(provider_option(options, "newsapi", "api_key") or "")},
        )
        if data is None:
            return None
        if not isinstance(data, dict) or data.get("status") == "error":
            message = data.get("message") if isinstance(data, dict) else "unexpected payload"
            self.parse_error(result, url, f"newsapi error: {message}")
            return None
        return self.convert_entries(result, url, data.get("articles") or [], parse_newsapi_article)

    def _serpapi(self, source: SourceConfig, result: DiscoveryResult) -> list[dict] | None:
        options = source.options
        url = provider_endpoint(source, "serpapi", SERPAPI_URL)
        data = self.fetch_json(
            url,
            result,
            params={
                "engine": "google_news",
                "q": options.get("query"),
                "gl": str(options.get("country") or "us").lower(),
                "hl": str(options.get("language") or "en").lower(),
                "num": int(options.get("max_results") or 10),
                "api_key": provider_option(options, "serpapi", "api_key"),
            },
        )
        if data is None:
            return None
        if not isinstance(data, dict) or data.get("error"):
            message = data.get("error") if isinstance(data, dict) else "unexpected payload"
            self.parse_error(result, url, f"serpapi error: {message}")
            return None
        now = self.now
        articles = self.convert_entries(
            result,
            url,
            data.get("top_stories") or [],
            lambda story: parse_serpapi_story(story, now),
        )
        articles.extend(
            self.convert_entries(
                result,
                url,
                data.get("news_results") or [],
                lambda entry: parse_serpapi_result(entry, now),
            )
        )
        return articles

    def _searxng(self, source: SourceConfig, result: DiscoveryResult) -> list[dict] | None:
        options = source.options
        base = provider_endpoint(source, "searxng", None)
        if not base:
            self.parse_error(result, None, "searxng source has no url")
            return None
        url = base.rstrip("/") + "/search"
        data = self.fetch_json(
            url,
            result,
            params={
                "q": options.get("query"),
                "format": "json",
                "categories": options.get("categories") or "news",
                "language": options.get("language"),
                "safesearch": str(options.get("safesearch") or 0),
            },
        )
        if data is None:
            return None
        if not isinstance(data, dict):
            self.parse_error(result, url, "searxng returned unexpected payload")
            return None
        limit = int(options.get("max_results") or 10)
        entries = data.get("results") or []
        if isinstance(entries, list):
            entries = entries[:limit]
        return self.convert_entries(result, url, entries, parse_searxng_result)

    def _google_news(self, source: SourceConfig, result: DiscoveryResult) -> list[dict] | None:
        options = source.options
        url = provider_endpoint(source, "google_news", GOOGLE_NEWS_URL)
        language = str(options.get("language") or "en").lower()
        country = str(options.get("country") or "us").upper()
        response = self.fetch(
            url,
            result,
            params={
                "q": options.get("query"),
                "hl": language,
                "gl": country,
                "ceid": f"{country}:{language}",
            },
        )
        if response is None:
            return None
        parsed = feedparser.parse(response.content)
        if parsed.bozo and not parsed.entries:
            self.parse_error(result, url, str(parsed.bozo_exception))
            return None
        limit = int(options.get("max_results") or 10)
        return self.convert_entries(
            result, url, list(parsed.entries)[:limit], parse_google_news_entry
        )


def provider_chain(options: dict[str, Any]) -> list[str]:
    """Ordered provider names from ``providers`` or the single ``provider``."""
    providers = options.get("providers")
    if isinstance(providers, str):
        providers = providers.split(",")
    if not providers:
        providers = [options.get("provider") or "newsapi"]
    chain: list[str] = []
    for name in providers:
        name = str(name).strip().lower()
        if name and name not in chain:
            chain.append(name)
    return chain


def provider_option(options: dict[str, Any], provider: str, key: str) -> Any:
    return options.get(f"{provider}_{key}") or options.get(key)


def provider_endpoint(source: SourceConfig, provider: str, default: str | None) -> str | None:
    # The source url only overrides the endpoint of a single-provider source.
    override = source.options.get(f"{provider}_url")
    if override:
        return str(override)
    if source.url and len(provider_chain(source.options)) == 1:
        return source.url
    return default


def parse_newsapi_article(article: dict[str, Any]) -> dict[str, Any]:
    source = article.get("source")
    url = article.get("url") or ""
    return {
        "title": article.get("title") or "",
        "url": url,
        "excerpt": article.get("description") or "",
        "body": article.get("content"),
        "published_at": article.get("publishedAt"),
        "author": article.get("author"),
        "media_urls": [article["urlToImage"]] if article.get("urlToImage") else [],
        "raw_metadata": {
            "source": source.get("name") if isinstance(source, dict) else source,
            "source_domain": domain_of(url),
        },
    }


def parse_google_news_entry(entry: Any) -> dict[str, Any]:
    raw = entry_to_raw(entry)
    source = entry.get("source") or {}
    raw["raw_metadata"] = {
        "source": source.get("title") if isinstance(source, dict) else source,
        "source_domain": domain_of(raw["url"]),
    }
    return raw


def parse_serpapi_story(story: dict[str, Any], now: datetime) -> dict[str, Any]:
    url = story.get("link") or ""
    source = story.get("source")
    return {
        "title": story.get("title") or "",
        "url": url,
        "excerpt": story.get("snippet") or "",
        "published_at": parse_relative_date(story.get("date"), now),
        "media_urls": [story["thumbnail"]] if story.get("thumbnail") else [],
        "raw_metadata": {
            "source": source.get("name") if isinstance(source, dict) else source,
            "source_domain": domain_of(url),
            "top_story": True,
        },
    }


def parse_serpapi_result(entry: dict[str, Any], now: datetime) -> dict[str, Any]:
    raw = parse_serpapi_story(entry, now)
    raw["raw_metadata"]["top_story"] = False
    return raw


def parse_searxng_result(entry: dict[str, Any]) -> dict[str, Any]:
    url = entry.get("url") or ""
    return {
        "title": entry.get("title") or "",
        "url": url,
        "excerpt": entry.get("content") or entry.get("snippet") or "",
        "published_at": entry.get("publishedDate") or entry.get("publishedDateTimestamp"),
        "media_urls": [entry["img_src"]] if entry.get("img_src") else [],
        "raw_metadata": {"engine": entry.get("engine"), "source_domain": domain_of(url)},
    }


def parse_relative_date(value: Any, now: datetime) -> datetime | None:
    """Parse ``"2 hours ago"`` style dates as well as absolute ones."""
    if not value:
        return None
    match = _RELATIVE_RE.search(str(value))
    if match:
        seconds = int(match.group(1)) * _RELATIVE_UNITS[match.group(2).lower()]
        return now - timedelta(seconds=seconds)
    return parse_datetime(value)
