from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable

from ..config import DiscoveryConfig
from ..errors import ConfigError
from ..models import SourceType
from ..transport import Transport
from ..utils import utc_now
from .base import Discoverer
from .feed import FeedDiscoverer
from .marketplace import MarketplaceDiscoverer
from .scrape import ScrapeDiscoverer
from .search import SearchDiscoverer
from .sitemap import SitemapDiscoverer
from .video import VideoDiscoverer

DISCOVERERS: dict[SourceType, type[Discoverer]] = {
    SourceType.FEED: FeedDiscoverer,
    SourceType.SITEMAP: SitemapDiscoverer,
    SourceType.SCRAPE: ScrapeDiscoverer,
    SourceType.SEARCH: SearchDiscoverer,
    SourceType.VIDEO: VideoDiscoverer,
    SourceType.MARKETPLACE: MarketplaceDiscoverer,
}


def build_discoverer(
    source_type: SourceType,
    transport: Transport,
    config: DiscoveryConfig,
    logger: logging.Logger | None = None,
    clock: Callable[[], datetime] = utc_now,
) -> Discoverer:
    try:
        discoverer_cls = DISCOVERERS[source_type]
    except KeyError as exc:
        raise ConfigError(f"no discoverer registered for {source_type}") from exc
    return discoverer_cls(transport, config, logger=logger, clock=clock)


__all__ = ["DISCOVERERS", "Discoverer", "build_discoverer"]
