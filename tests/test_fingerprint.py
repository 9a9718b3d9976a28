from datetime import timedelta

from autoscribe.fingerprint import calculate_priority, compute_fingerprint, normalize
from autoscribe.models import SourceType

from fakes import START


def test_fingerprint_prefers_native_id_over_url():
    by_id = compute_fingerprint(SourceType.VIDEO, "abc123", "https://youtube.com/watch?v=abc123", "T")
    moved = compute_fingerprint(SourceType.VIDEO, "abc123", "https://youtu.be/abc123", "Other")
    assert by_id == moved


def test_fingerprint_ignores_tracking_params_and_www():
    first = compute_fingerprint(SourceType.FEED, None, "https://www.example.com/a/?utm_source=x", "A")
    second = compute_fingerprint(SourceType.SEARCH, None, "https://example.com/a#top", "B")
    assert first == second


def test_fingerprint_falls_back_to_title():
    first = compute_fingerprint(SourceType.SCRAPE, None, None, "  Hello   World ")
    second = compute_fingerprint(SourceType.SCRAPE, None, "", "hello world")
    assert first == second


def test_normalize_builds_item():
    raw = {
        "title": "<b>Launch</b> day",
        "url": "https://www.example.com/launch?utm_medium=rss",
        "excerpt": "<p>All the " + "x" * 600 + "</p>",
        "published_at": "2026-01-05T10:00:00Z",
        "categories": ["News", " News ", ""],
        "media_urls": ["https://img/1.png", "https://img/1.png"],
    }
    item = normalize(raw, SourceType.FEED, "c1", now=START)
    assert item is not None
    assert item.title == "Launch day"
    assert item.canonical_url == "https://example.com/launch"
    assert item.excerpt.endswith("...")
    assert len(item.excerpt) == 503
    assert item.categories == frozenset({"News"})
    assert item.media_urls == ("https://img/1.png",)
    assert item.published_at.startswith("2026-01-05T10:00:00")
    assert item.priority == 70


def test_normalize_drops_missing_title_and_url(caplog):
    caplog.set_level("INFO")
    assert normalize({"url": "https://example.com/x"}, SourceType.FEED, "c1") is None
    assert normalize({"title": "No link"}, SourceType.FEED, "c1") is None
    assert normalize(["not", "a", "dict"], SourceType.FEED, "c1") is None
    reasons = [record.getMessage() for record in caplog.records]
    assert any("reason=missing_title" in message for message in reasons)
    assert any("reason=missing_url" in message for message in reasons)
    assert any("reason=not_a_mapping" in message for message in reasons)


def test_normalize_accepts_native_id_without_url():
    item = normalize({"title": "Video", "item_id": "v1"}, SourceType.VIDEO, "c1")
    assert item is not None
    assert item.canonical_url is None
    assert item.item_id == "v1"


def test_explicit_priority_is_clamped():
    item = normalize({"title": "T", "url": "https://e.com/t", "priority": 250}, SourceType.FEED, "c1")
    assert item.priority == 100


def test_calculate_priority_recency_bands():
    assert calculate_priority(START - timedelta(hours=2), START) == 70
    assert calculate_priority(START - timedelta(hours=48), START) == 60
    assert calculate_priority(START - timedelta(days=10), START) == 50
    assert calculate_priority(None, START) == 50
