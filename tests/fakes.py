from __future__ import annotations

import threading
from datetime import datetime, timedelta, timezone
from typing import Any

from autoscribe.errors import TransformError, TransportError
from autoscribe.fingerprint import normalize
from autoscribe.models import Credential, DiscoveredItem, QueueItem, SourceType, TransformResult
from autoscribe.storage import upsert_campaign
from autoscribe.transport import FetchResult, build_url

START = datetime(2026, 1, 5, 12, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, start: datetime = START) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class FakeTransport:
    """Serves canned responses by URL; query strings are matched when registered."""

    def __init__(self, pages: dict[str, Any] | None = None) -> None:
        self.pages = dict(pages or {})
        self.calls: list[str] = []

    def fetch(self, url, *, params=None, headers=None):
        full = build_url(url, params)
        self.calls.append(full)
        body = self.pages.get(full, self.pages.get(url))
        if body is None:
            raise TransportError(f"not found: {full}", status=404)
        if isinstance(body, Exception):
            raise body
        if isinstance(body, str):
            body = body.encode("utf-8")
        return FetchResult(url=full, status=200, content=body)


class FakeTransformer:
    """Returns or raises per provider; a list of outcomes is consumed in order."""

    def __init__(self, outcomes: dict[str, Any] | None = None) -> None:
        self.outcomes = dict(outcomes or {})
        self.calls: list[tuple[str, str, str]] = []
        self._lock = threading.Lock()

    def transform(self, payload, provider, credential: Credential, parameters):
        with self._lock:
            self.calls.append((payload["title"], provider, credential.credential_id))
            outcome = self.outcomes.get(provider, "ok")
            if isinstance(outcome, list):
                outcome = outcome.pop(0) if outcome else "ok"
        if isinstance(outcome, Exception):
            raise outcome
        return TransformResult(
            content=f"rewritten {payload['title']}",
            title=payload["title"],
            provider=provider,
            model="fake",
        )


class FakePublisher:
    def __init__(self, error: Exception | None = None) -> None:
        self.error = error
        self.published: list[int] = []

    def publish(self, result: TransformResult, campaign_id: str, item: QueueItem) -> str:
        if self.error is not None:
            raise self.error
        self.published.append(item.id)
        return f"published/{campaign_id}/{item.id}"


def transient(kind: str = "transport_error", rate_limited: bool = False) -> TransformError:
    return TransformError(kind, f"{kind} from provider", transient=True, rate_limited=rate_limited)


def permanent(kind: str = "provider_rejected") -> TransformError:
    return TransformError(kind, f"{kind} from provider", transient=False)


def make_item(
    title: str = "Story",
    *,
    campaign_id: str = "c1",
    url: str | None = None,
    priority: int | None = None,
    published_at: str | None = None,
    raw_metadata: dict[str, Any] | None = None,
) -> DiscoveredItem:
    raw = {
        "title": title,
        "url": url or f"https://example.com/{title.lower().replace(' ', '-')}",
        "priority": priority,
        "published_at": published_at,
        "raw_metadata": raw_metadata or {},
    }
    item = normalize(raw, SourceType.FEED, campaign_id, now=START)
    assert item is not None
    return item


def add_campaign(conn, campaign_id: str = "c1", **fields: Any) -> None:
    entry = {"id": campaign_id, "provider_chain": ["p1"], "sources": []}
    entry.update(fields)
    upsert_campaign(conn, entry)
