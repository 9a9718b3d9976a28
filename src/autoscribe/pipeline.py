from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable

from .config import Config
from .credentials import CredentialPool
from .db import connect_db
from .discovery import build_discoverer
from .dispatch import Orchestrator
from .errors import CampaignNotFound
from .events import CAMPAIGN_PAUSED, EventRecorder
from .models import DiscoveryResult, EnqueueOutcome
from .providers import LLMTransformer, MarkdownPublisher, Publisher, Transformer
from .queue import WorkQueue
from .storage import (
    get_campaign,
    record_discovery_outcome,
    record_discovery_run,
    set_campaign_status,
)
from .transport import HttpTransport, Transport
from .utils import log_event, to_iso, utc_now


class DiscoveryRunner:
    """Runs every source of a campaign and feeds the results into the queue."""

    def __init__(
        self,
        conn: Any,
        config: Config,
        queue: WorkQueue,
        transport: Transport,
        events: EventRecorder | None = None,
        logger: logging.Logger | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.conn = conn
        self.config = config
        self.queue = queue
        self.transport = transport
        self.logger = logger or logging.getLogger("autoscribe.pipeline")
        self.events = events or EventRecorder(None, self.logger, clock)
        self.clock = clock

    def run_discovery(self, campaign_id: str) -> dict[str, int]:
        campaign = get_campaign(self.conn, campaign_id)
        if campaign is None:
            raise CampaignNotFound(f"campaign not found: {campaign_id}")
        if not campaign.is_active:
            log_event(
                self.logger,
                logging.INFO,
                "campaign_skipped",
                campaign_id=campaign_id,
                status=campaign.status,
            )
            return {"queued": 0, "skipped": 0, "total": 0}

        started_at = to_iso(self.clock()) or ""
        result = DiscoveryResult()
        for source in campaign.sources:
            discoverer = build_discoverer(
                source.source_type,
                self.transport,
                self.config.discovery,
                clock=self.clock,
            )
            result.merge(discoverer.discover(source, campaign_id))

        outcomes = self.queue.enqueue_many(result.items)
        queued = outcomes[EnqueueOutcome.INSERTED.value]
        total = len(result.items) + result.dropped_count
        skipped = total - queued
        # Every source failed without yielding anything.
        failed = bool(campaign.sources) and result.failed
        finished_at = to_iso(self.clock()) or ""
        streak = record_discovery_outcome(self.conn, campaign_id, failed, finished_at)
        record_discovery_run(
            self.conn,
            campaign_id,
            started_at,
            finished_at,
            "error" if failed else "ok",
            result.found_count,
            queued,
            skipped,
            "; ".join(f"{error.kind}: {error.message}" for error in result.errors[:5]) or None,
        )
        log_event(
            self.logger,
            logging.WARNING if failed else logging.INFO,
            "discovery_completed",
            campaign_id=campaign_id,
            queued=queued,
            skipped=skipped,
            total=total,
            duplicates=outcomes[EnqueueOutcome.DUPLICATE_UPDATED.value]
            + outcomes[EnqueueOutcome.DUPLICATE_IGNORED.value],
            errors=len(result.errors),
            depth_exceeded=result.depth_exceeded,
        )
        threshold = self.config.discovery.auto_pause_after
        if failed and threshold > 0 and streak >= threshold:
            if set_campaign_status(self.conn, campaign_id, "paused"):
                self.events.emit(CAMPAIGN_PAUSED, campaign_id=campaign_id, error_streak=streak)
        return {"queued": queued, "skipped": skipped, "total": total}


@dataclass
class Services:
    conn: Any
    config: Config
    events: EventRecorder
    queue: WorkQueue
    pool: CredentialPool
    discovery: DiscoveryRunner
    orchestrator: Orchestrator

    def run_discovery(self, campaign_id: str) -> dict[str, int]:
        return self.discovery.run_discovery(campaign_id)

    def run_dispatch(self, max_batch_per_campaign: int | None = None) -> dict[str, int]:
        return run_dispatch(self, max_batch_per_campaign)


def build_services(
    config: Config,
    conn: Any | None = None,
    *,
    transport: Transport | None = None,
    transformer: Transformer | None = None,
    publisher: Publisher | None = None,
    logger: logging.Logger | None = None,
    clock: Callable[[], datetime] = utc_now,
) -> Services:
    logger = logger or logging.getLogger("autoscribe")
    if conn is None:
        conn = connect_db(config.paths.state_db)
    events = EventRecorder(conn, logging.getLogger("autoscribe.events"), clock)
    queue = WorkQueue(conn, config.queue, events, clock=clock)
    pool = CredentialPool(conn, config.rotation, events, clock=clock)
    runner = DiscoveryRunner(
        conn,
        config,
        queue,
        transport or HttpTransport(config.http),
        events,
        logger=logging.getLogger("autoscribe.pipeline"),
        clock=clock,
    )
    orchestrator = Orchestrator(
        conn,
        config,
        queue,
        pool,
        transformer or LLMTransformer(config.providers, default_timeout=config.http.timeout_seconds),
        publisher or MarkdownPublisher(config.paths.output_dir),
        events=events,
        clock=clock,
    )
    log_event(logger, logging.DEBUG, "services_ready", backend=getattr(conn, "backend", "sqlite"))
    return Services(
        conn=conn,
        config=config,
        events=events,
        queue=queue,
        pool=pool,
        discovery=runner,
        orchestrator=orchestrator,
    )


def run_dispatch(services: Services, max_batch_per_campaign: int | None = None) -> dict[str, int]:
    """Reclaim expired leases, then run one dispatch cycle."""
    services.queue.reclaim_stalled(services.config.queue.lease_ttl_seconds)
    return services.orchestrator.run_dispatch(max_batch_per_campaign)
