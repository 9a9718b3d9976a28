from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Callable

from .config import SignalsConfig
from .credentials import CredentialPool
from .events import QUEUE_ITEM_COMPLETED, QUEUE_ITEM_FAILED, QUEUE_ITEM_RETRIED
from .storage import count_events_since, list_campaigns, list_queue_snapshots
from .utils import to_iso, utc_now

_FAILURE_EVENTS = (QUEUE_ITEM_FAILED, QUEUE_ITEM_RETRIED)


def backlog_growing(conn: Any, campaign_id: str, snapshots: int = 3) -> bool:
    """True when the last ``snapshots`` pending counts strictly increase."""
    counts = list_queue_snapshots(conn, campaign_id, snapshots)
    if len(counts) < max(2, snapshots):
        return False
    return all(later > earlier for earlier, later in zip(counts, counts[1:]))


def exhausted_providers(pool: CredentialPool, providers: list[str] | None = None) -> list[str]:
    return pool.exhausted_providers(providers)


def campaign_error_rate(
    conn: Any,
    campaign_id: str,
    window: timedelta,
    clock: Callable[[], datetime] = utc_now,
) -> float:
    since = to_iso(clock() - window) or ""
    failures = count_events_since(conn, campaign_id, _FAILURE_EVENTS, since)
    successes = count_events_since(conn, campaign_id, (QUEUE_ITEM_COMPLETED,), since)
    attempts = failures + successes
    if attempts == 0:
        return 0.0
    return failures / attempts


def collect_signals(
    conn: Any,
    pool: CredentialPool,
    config: SignalsConfig,
    clock: Callable[[], datetime] = utc_now,
) -> dict[str, Any]:
    window = timedelta(minutes=config.error_rate_window_minutes)
    campaigns: dict[str, dict[str, Any]] = {}
    for campaign in list_campaigns(conn):
        rate = campaign_error_rate(conn, campaign.campaign_id, window, clock)
        campaigns[campaign.campaign_id] = {
            "status": campaign.status,
            "backlog_growing": backlog_growing(conn, campaign.campaign_id, config.backlog_snapshots),
            "error_rate": round(rate, 4),
            "error_rate_high": rate >= config.error_rate_threshold,
            "discovery_error_streak": campaign.discovery_error_streak,
        }
    return {
        "generated_at": to_iso(clock()),
        "exhausted_providers": exhausted_providers(pool),
        "campaigns": campaigns,
    }
