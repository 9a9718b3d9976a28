from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class SourceType(str, Enum):
    FEED = "feed"
    SITEMAP = "sitemap"
    SCRAPE = "scrape"
    SEARCH = "search"
    VIDEO = "video"
    MARKETPLACE = "marketplace"


class QueueStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


TERMINAL_STATUSES = frozenset({QueueStatus.COMPLETED, QueueStatus.FAILED, QueueStatus.SKIPPED})


class EnqueueOutcome(str, Enum):
    INSERTED = "inserted"
    DUPLICATE_UPDATED = "duplicate_updated"
    DUPLICATE_IGNORED = "duplicate_ignored"


class CredentialStatus(str, Enum):
    ACTIVE = "active"
    RATE_LIMITED = "rate_limited"
    SUSPENDED = "suspended"


class RotationStrategy(str, Enum):
    ROUND_ROBIN = "round_robin"
    LEAST_USED = "least_used"
    RANDOM = "random"
    PRIORITY = "priority"

    @classmethod
    def parse(cls, value: str | None) -> "RotationStrategy":
        try:
            return cls(str(value or "").strip().lower())
        except ValueError:
            return cls.ROUND_ROBIN


@dataclass(frozen=True)
class DiscoveredItem:
    source_type: SourceType
    campaign_id: str
    item_id: str | None
    content_fingerprint: str
    title: str
    canonical_url: str | None
    excerpt: str = ""
    body: str | None = None
    published_at: str | None = None
    author: str | None = None
    media_urls: tuple[str, ...] = ()
    categories: frozenset[str] = frozenset()
    raw_metadata: dict[str, Any] = field(default_factory=dict)
    priority: int = 50

    def payload(self) -> dict[str, Any]:
        return {
            "source_type": self.source_type.value,
            "item_id": self.item_id,
            "title": self.title,
            "excerpt": self.excerpt,
            "body": self.body,
            "canonical_url": self.canonical_url,
            "published_at": self.published_at,
            "author": self.author,
            "media_urls": list(self.media_urls),
            "categories": sorted(self.categories),
            "raw_metadata": dict(self.raw_metadata),
        }


@dataclass(frozen=True)
class QueueItem:
    id: int
    campaign_id: str
    status: QueueStatus
    item: DiscoveredItem
    retry_count: int
    discovered_at: str
    last_error_kind: str | None = None
    last_error_message: str | None = None
    processing_started_at: str | None = None
    processed_at: str | None = None
    not_before: str | None = None
    result_reference: str | None = None

    @property
    def priority(self) -> int:
        return self.item.priority

    @property
    def content_fingerprint(self) -> str:
        return self.item.content_fingerprint


@dataclass(frozen=True)
class Credential:
    credential_id: str
    provider: str
    key_material: str = field(repr=False)
    label: str | None
    per_minute_limit: int
    per_day_limit: int
    current_minute_count: int
    current_day_count: int
    minute_window_reset_at: str
    day_window_reset_at: str
    status: CredentialStatus
    consecutive_failure_count: int
    last_used_at: str | None
    priority: int

    def is_available(self) -> bool:
        if self.status != CredentialStatus.ACTIVE:
            return False
        if self.per_minute_limit > 0 and self.current_minute_count >= self.per_minute_limit:
            return False
        if self.per_day_limit > 0 and self.current_day_count >= self.per_day_limit:
            return False
        return True


@dataclass(frozen=True)
class SourceConfig:
    source_type: SourceType
    url: str | None
    name: str | None = None
    options: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class Campaign:
    campaign_id: str
    name: str
    status: str
    sources: tuple[SourceConfig, ...]
    provider_chain: tuple[str, ...]
    rotation_strategy: RotationStrategy = RotationStrategy.ROUND_ROBIN
    max_concurrent: int = 5
    max_retries: int | None = None
    parameters: dict[str, Any] = field(default_factory=dict)
    discovery_error_streak: int = 0
    last_discovery_at: str | None = None

    @property
    def is_active(self) -> bool:
        return self.status == "active"


@dataclass(frozen=True)
class DiscoveryError:
    kind: str
    source_url: str | None
    message: str


@dataclass
class DiscoveryResult:
    items: list[DiscoveredItem] = field(default_factory=list)
    errors: list[DiscoveryError] = field(default_factory=list)
    found_count: int = 0
    dropped_count: int = 0
    depth_exceeded: bool = False

    def merge(self, other: "DiscoveryResult") -> None:
        self.items.extend(other.items)
        self.errors.extend(other.errors)
        self.found_count += other.found_count
        self.dropped_count += other.dropped_count
        self.depth_exceeded = self.depth_exceeded or other.depth_exceeded

    @property
    def failed(self) -> bool:
        return bool(self.errors) and not self.items and self.found_count == 0


@dataclass(frozen=True)
class TransformResult:
    content: str
    title: str | None = None
    provider: str | None = None
    model: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
