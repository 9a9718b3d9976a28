from __future__ import annotations

import logging
from typing import Any

import feedparser

from ..models import DiscoveryResult, SourceConfig, SourceType
from ..utils import log_event, parse_datetime
from .base import Discoverer


class FeedDiscoverer(Discoverer):
    source_type = SourceType.FEED

    def _discover(self, source: SourceConfig, campaign_id: str, result: DiscoveryResult) -> None:
        if not source.url:
            self.parse_error(result, None, "feed source has no url")
            return
        response = self.fetch(source.url, result, headers=source.options.get("http_headers"))
        if response is None:
            return
        parsed = feedparser.parse(response.content)
        entries = parsed.entries or []
        if parsed.bozo and not entries:
            self.parse_error(result, source.url, str(parsed.bozo_exception))
            return
        if parsed.bozo:
            log_event(
                self.logger,
                logging.WARNING,
                "feed_parse_warning",
                url=source.url,
                error=str(parsed.bozo_exception),
            )
        keywords = self.keyword_filter(source)
        limit = int(source.options.get("max_items") or 0)
        for entry in entries:
            if limit and len(result.items) >= limit:
                break
            result.found_count += 1
            raw = entry_to_raw(entry)
            if not keywords.accepts(raw["title"], raw["excerpt"]):
                self.drop(result, "keywords", url=raw["url"])
                continue
            self.emit(raw, source, campaign_id, result)


def entry_to_raw(entry: Any) -> dict[str, Any]:
    published = parse_datetime(
        entry.get("published_parsed")
        or entry.get("updated_parsed")
        or entry.get("published")
        or entry.get("updated")
    )
    content = entry.get("content") or []
    body = content[0].get("value") if content else None
    return {
        "title": entry.get("title") or "",
        "url": entry.get("link") or "",
        "item_id": None,
        "excerpt": entry.get("summary") or entry.get("description") or "",
        "body": body,
        "published_at": published,
        "author": entry.get("author"),
        "media_urls": _entry_media(entry),
        "categories": [tag.get("term") for tag in entry.get("tags") or [] if tag.get("term")],
        "raw_metadata": {
            "feed_id": entry.get("id"),
            "comments": entry.get("comments"),
        },
    }


def _entry_media(entry: Any) -> list[str]:
    urls: list[str] = []
    for media in entry.get("media_content") or []:
        if media.get("url"):
            urls.append(media["url"])
    for thumb in entry.get("media_thumbnail") or []:
        if thumb.get("url"):
            urls.append(thumb["url"])
    for enclosure in entry.get("enclosures") or []:
        if str(enclosure.get("type") or "").startswith("image/") and enclosure.get("href"):
            urls.append(enclosure["href"])
    return urls
