from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Iterable

from bs4 import BeautifulSoup

from .models import DiscoveredItem, SourceType
from .utils import (
    collapse_whitespace,
    log_event,
    normalize_url,
    parse_datetime,
    sha256_hex,
    to_iso,
    truncate,
    utc_now,
)

DEFAULT_PRIORITY = 50
EXCERPT_LENGTH = 500

_logger = logging.getLogger("autoscribe.fingerprint")


def compute_fingerprint(
    source_type: SourceType | str,
    item_id: str | None,
    canonical_url: str | None,
    title: str | None,
) -> str:
    kind = source_type.value if isinstance(source_type, SourceType) else str(source_type)
    native = (item_id or "").strip()
    if native:
        return sha256_hex(f"{kind}:id:{native}")
    url = normalize_url(canonical_url or "")
    if url:
        return sha256_hex(f"url:{url}")
    return sha256_hex(f"title:{collapse_whitespace(title or '').lower()}")


def calculate_priority(
    published_at: datetime | None,
    now: datetime | None = None,
    base: int = DEFAULT_PRIORITY,
) -> int:
    priority = base
    if published_at is not None:
        age_hours = ((now or utc_now()) - published_at).total_seconds() / 3600
        if age_hours < 24:
            priority += 20
        elif age_hours < 72:
            priority += 10
    return clamp_priority(priority)


def clamp_priority(value: Any) -> int:
    try:
        number = int(value)
    except (TypeError, ValueError):
        return DEFAULT_PRIORITY
    return max(0, min(100, number))


def strip_html(value: str | None) -> str:
    if not value:
        return ""
    if "<" not in value:
        return collapse_whitespace(value)
    return collapse_whitespace(BeautifulSoup(value, "html.parser").get_text(" "))


def normalize(
    raw: dict[str, Any],
    source_type: SourceType,
    campaign_id: str,
    *,
    default_priority: int = DEFAULT_PRIORITY,
    excerpt_length: int = EXCERPT_LENGTH,
    now: datetime | None = None,
    logger: logging.Logger | None = None,
) -> DiscoveredItem | None:
    """Build a DiscoveredItem from a family-specific raw mapping.

    Returns None (and logs ``item_dropped``) when the item has no title or
    nothing that identifies it. Never raises on malformed input.
    """
    logger = logger or _logger
    try:
        return _normalize(
            raw, source_type, campaign_id, default_priority, excerpt_length, now, logger
        )
    except (TypeError, ValueError, AttributeError, KeyError) as exc:
        _drop(logger, source_type, campaign_id, "malformed", error=exc)
        return None


def _normalize(
    raw: dict[str, Any],
    source_type: SourceType,
    campaign_id: str,
    default_priority: int,
    excerpt_length: int,
    now: datetime | None,
    logger: logging.Logger,
) -> DiscoveredItem | None:
    if not isinstance(raw, dict):
        _drop(logger, source_type, campaign_id, "not_a_mapping")
        return None
    title = collapse_whitespace(strip_html(_as_text(raw.get("title"))))
    url = _as_text(raw.get("url") or raw.get("canonical_url") or raw.get("link")).strip()
    item_id = _as_text(raw.get("item_id")).strip() or None
    if not title:
        _drop(logger, source_type, campaign_id, "missing_title", url=url or None)
        return None
    if not url and not item_id:
        _drop(logger, source_type, campaign_id, "missing_url", title=title[:80])
        return None
    canonical_url = normalize_url(url) if url else None
    published = parse_datetime(raw.get("published_at"))
    if raw.get("priority") is not None:
        priority = clamp_priority(raw.get("priority"))
    else:
        priority = calculate_priority(published, now=now, base=default_priority)
    excerpt = truncate(strip_html(_as_text(raw.get("excerpt"))), excerpt_length)
    body = _as_text(raw.get("body")) or None
    return DiscoveredItem(
        source_type=source_type,
        campaign_id=campaign_id,
        item_id=item_id,
        content_fingerprint=compute_fingerprint(source_type, item_id, canonical_url, title),
        title=title,
        canonical_url=canonical_url,
        excerpt=excerpt,
        body=body,
        published_at=to_iso(published),
        author=_as_text(raw.get("author")).strip() or None,
        media_urls=_unique(raw.get("media_urls") or ()),
        categories=frozenset(
            collapse_whitespace(str(category))
            for category in raw.get("categories") or ()
            if category and collapse_whitespace(str(category))
        ),
        raw_metadata=dict(raw.get("raw_metadata") or {}),
        priority=priority,
    )


def _drop(
    logger: logging.Logger,
    source_type: SourceType,
    campaign_id: str,
    reason: str,
    **fields: Any,
) -> None:
    log_event(
        logger,
        logging.INFO,
        "item_dropped",
        source_type=source_type.value,
        campaign_id=campaign_id,
        reason=reason,
        **fields,
    )


def _as_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    return str(value)


def _unique(values: Iterable[Any]) -> tuple[str, ...]:
    seen: list[str] = []
    for value in values:
        if not value:
            continue
        text = str(value).strip()
        if text and text not in seen:
            seen.append(text)
    return tuple(seen)
