from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Callable, ClassVar

from ..config import DiscoveryConfig
from ..errors import PARSE_ERROR, TRANSPORT_ERROR, TransportError
from ..fingerprint import normalize
from ..models import DiscoveredItem, DiscoveryError, DiscoveryResult, SourceConfig, SourceType
from ..transport import FetchResult, Transport
from ..utils import log_event, utc_now
from .filters import KeywordFilter

# Raised by entry converters when an API returns a malformed element.
ENTRY_ERRORS = (TypeError, AttributeError, KeyError, ValueError)


class Discoverer:
    """Base class for one source family.

    Subclasses implement ``_discover`` and push items into the result as
    they go, so anything gathered before a transport failure is kept.
    """

    source_type: ClassVar[SourceType]

    def __init__(
        self,
        transport: Transport,
        config: DiscoveryConfig,
        logger: logging.Logger | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.transport = transport
        self.config = config
        self.logger = logger or logging.getLogger(f"autoscribe.discovery.{self.source_type.value}")
        self.clock = clock
        self._now: datetime | None = None

    def discover(self, source: SourceConfig, campaign_id: str) -> DiscoveryResult:
        result = DiscoveryResult()
        self._now = self.clock()
        try:
            self._discover(source, campaign_id, result)
        except Exception as exc:  # noqa: BLE001
            # Items gathered before the failure are kept.
            result.errors.append(DiscoveryError(PARSE_ERROR, source.url, f"unexpected error: {exc!r}"))
            log_event(
                self.logger,
                logging.ERROR,
                "source_discovery_crashed",
                source_type=self.source_type.value,
                campaign_id=campaign_id,
                url=source.url,
                error=repr(exc),
            )
        log_event(
            self.logger,
            logging.WARNING if result.failed else logging.INFO,
            "source_discovered",
            source_type=self.source_type.value,
            campaign_id=campaign_id,
            url=source.url,
            found=result.found_count,
            accepted=len(result.items),
            dropped=result.dropped_count,
            errors=len(result.errors),
        )
        return result

    def _discover(self, source: SourceConfig, campaign_id: str, result: DiscoveryResult) -> None:
        raise NotImplementedError

    @property
    def now(self) -> datetime:
        return self._now or self.clock()

    def max_depth(self, source: SourceConfig) -> int:
        try:
            value = int(source.options.get("max_depth", self.config.max_depth))
        except (TypeError, ValueError):
            value = self.config.max_depth
        return max(1, min(value, self.config.max_depth))

    def fetch(
        self,
        url: str,
        result: DiscoveryResult,
        *,
        params: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
    ) -> FetchResult | None:
        try:
            return self.transport.fetch(url, params=params, headers=headers)
        except TransportError as exc:
            result.errors.append(DiscoveryError(TRANSPORT_ERROR, url, str(exc)))
            log_event(
                self.logger,
                logging.WARNING,
                "source_fetch_failed",
                source_type=self.source_type.value,
                url=url,
                status=exc.status,
                error=exc,
            )
            return None

    def fetch_json(
        self,
        url: str,
        result: DiscoveryResult,
        *,
        params: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
    ) -> Any | None:
        response = self.fetch(url, result, params=params, headers=headers)
        if response is None:
            return None
        try:
            return response.json()
        except ValueError as exc:
            self.parse_error(result, url, str(exc))
            return None

    def parse_error(self, result: DiscoveryResult, url: str | None, message: str) -> None:
        result.errors.append(DiscoveryError(PARSE_ERROR, url, message))
        log_event(
            self.logger,
            logging.WARNING,
            "source_parse_error",
            source_type=self.source_type.value,
            url=url,
            error=message,
        )

    def convert_entries(
        self,
        result: DiscoveryResult,
        url: str | None,
        entries: Any,
        convert: Callable[[Any], Any],
    ) -> list[Any]:
        """Apply ``convert`` to each raw entry, skipping the malformed ones.

        A skipped entry counts as found and dropped and is recorded as a
        parse error; the remaining entries are still converted.
        """
        if not isinstance(entries, list):
            self.parse_error(result, url, f"expected a list of entries, got {type(entries).__name__}")
            return []
        converted: list[Any] = []
        for index, entry in enumerate(entries):
            try:
                converted.append(convert(entry))
            except ENTRY_ERRORS as exc:
                result.found_count += 1
                result.dropped_count += 1
                self.parse_error(result, url, f"malformed entry {index}: {exc!r}")
        return converted

    def depth_exceeded(self, result: DiscoveryResult, url: str | None, depth: int) -> None:
        result.depth_exceeded = True
        log_event(
            self.logger,
            logging.WARNING,
            "depth_exceeded",
            source_type=self.source_type.value,
            url=url,
            depth=depth,
        )

    def keyword_filter(self, source: SourceConfig) -> KeywordFilter:
        return KeywordFilter(
            source.options.get("include_keywords"), source.options.get("exclude_keywords")
        )

    def emit(
        self,
        raw: dict[str, Any],
        source: SourceConfig,
        campaign_id: str,
        result: DiscoveryResult,
    ) -> DiscoveredItem | None:
        if raw.get("priority") is None and source.options.get("priority") is not None:
            raw = dict(raw, priority=source.options.get("priority"))
        item = normalize(
            raw,
            self.source_type,
            campaign_id,
            default_priority=self.config.default_priority,
            excerpt_length=self.config.excerpt_length,
            now=self.now,
            logger=self.logger,
        )
        if item is None:
            result.dropped_count += 1
            return None
        result.items.append(item)
        return item

    def drop(self, result: DiscoveryResult, reason: str, **fields: Any) -> None:
        result.dropped_count += 1
        log_event(
            self.logger,
            logging.DEBUG,
            "item_filtered",
            source_type=self.source_type.value,
            reason=reason,
            **fields,
        )
