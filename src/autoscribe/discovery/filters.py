from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Iterable

from ..utils import domain_of

_WINDOW_RE = re.compile(r"^(\d+)([hdw])$")
_WINDOW_UNITS = {"h": 3600, "d": 86400, "w": 604800}
DEFAULT_WINDOW = timedelta(hours=24)


def parse_window(value: str | None) -> timedelta:
    """Parse ``24h`` / ``3d`` / ``1w``; anything else means 24 hours."""
    match = _WINDOW_RE.match(str(value or "").strip().lower())
    if not match:
        return DEFAULT_WINDOW
    seconds = int(match.group(1)) * _WINDOW_UNITS[match.group(2)]
    if seconds <= 0:
        return DEFAULT_WINDOW
    return timedelta(seconds=seconds)


@dataclass(frozen=True)
class FreshnessFilter:
    window: timedelta

    @classmethod
    def from_option(cls, value: str | None) -> "FreshnessFilter":
        return cls(parse_window(value))

    def accepts(self, published_at: datetime | None, now: datetime) -> bool:
        # Undated items count as published now.
        if published_at is None:
            return True
        return published_at >= now - self.window

    def score(self, published_at: datetime | None, now: datetime) -> int:
        if published_at is None:
            return 100
        age = max((now - published_at).total_seconds(), 0.0)
        value = 100 * (1 - age / self.window.total_seconds())
        return int(max(0, min(100, value)))


class SourcePolicy:
    """Allow or block items by the domain of their URL."""

    def __init__(self, mode: str = "allow", sources: Iterable[str] | None = None) -> None:
        self.mode = mode if mode in {"allow", "block"} else "allow"
        self.sources = [
            _strip_www(str(entry).strip().lower()) for entry in sources or [] if str(entry).strip()
        ]

    def accepts(self, url: str | None) -> bool:
        if not self.sources:
            return self.mode == "allow"
        domain = domain_of(url or "")
        if not domain:
            return False
        listed = any(_matches(domain, pattern) for pattern in self.sources)
        return listed if self.mode == "allow" else not listed


def _strip_www(value: str) -> str:
    return value[4:] if value.startswith("www.") else value


def _matches(domain: str, pattern: str) -> bool:
    if domain == pattern:
        return True
    if "*" in pattern:
        regex = "^" + ".*".join(re.escape(part) for part in pattern.split("*")) + "$"
        return re.match(regex, domain) is not None
    return domain.endswith("." + pattern)


class KeywordFilter:
    def __init__(
        self,
        include: Iterable[str] | None = None,
        exclude: Iterable[str] | None = None,
    ) -> None:
        self.include = [str(word).lower() for word in include or [] if str(word).strip()]
        self.exclude = [str(word).lower() for word in exclude or [] if str(word).strip()]

    def accepts(self, *texts: str | None) -> bool:
        combined = " ".join(text or "" for text in texts).lower()
        if any(word in combined for word in self.exclude):
            return False
        if self.include and not any(word in combined for word in self.include):
            return False
        return True
