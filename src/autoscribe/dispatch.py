from __future__ import annotations

import logging
from collections import deque
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable

from .config import Config
from .credentials import CredentialPool
from .errors import NO_CREDENTIAL_AVAILABLE, PUBLISH_ERROR, TRANSPORT_ERROR, TransformError
from .events import EventRecorder
from .models import Campaign, Credential, QueueItem, QueueStatus, TransformResult
from .providers import Publisher, Transformer
from .queue import WorkQueue
from .storage import get_campaign, list_campaigns, record_queue_snapshot
from .utils import log_event, to_iso, utc_now


@dataclass
class _Attempt:
    campaign: Campaign
    item: QueueItem
    position: int = 0
    last_error: TransformError | None = None

    @property
    def chain(self) -> tuple[str, ...]:
        return self.campaign.provider_chain


class Orchestrator:
    """Leases queued work and runs it through each campaign's provider chain.

    Queue transitions, credential bookkeeping and publishing all happen on the
    calling thread. Only the transformation call is handed to the worker pool,
    so no storage transaction is ever open across a network call.
    """

    def __init__(
        self,
        conn: Any,
        config: Config,
        queue: WorkQueue,
        pool: CredentialPool,
        transformer: Transformer,
        publisher: Publisher,
        campaigns: Callable[[str], Campaign | None] | None = None,
        events: EventRecorder | None = None,
        logger: logging.Logger | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.conn = conn
        self.config = config
        self.queue = queue
        self.pool = pool
        self.transformer = transformer
        self.publisher = publisher
        self.campaigns = campaigns or (lambda campaign_id: get_campaign(conn, campaign_id))
        self.logger = logger or logging.getLogger("autoscribe.dispatch")
        self.events = events or EventRecorder(None, self.logger, clock)
        self.clock = clock

    def run_dispatch(self, max_batch_per_campaign: int | None = None) -> dict[str, int]:
        max_batch = (
            max_batch_per_campaign
            if max_batch_per_campaign is not None
            else self.config.dispatch.max_batch_per_campaign
        )
        counts = {"completed": 0, "failed": 0, "retried": 0}
        attempts: deque[_Attempt] = deque()
        for campaign, batch in self._eligible_campaigns(max_batch):
            for item in self.queue.lease_next(campaign.campaign_id, batch):
                attempts.append(_Attempt(campaign=campaign, item=item))
        leased = len(attempts)
        if attempts:
            self._process(attempts, counts)
        self._record_snapshots()
        log_event(self.logger, logging.INFO, "dispatch_completed", leased=leased, **counts)
        return counts

    def _eligible_campaigns(self, max_batch: int) -> list[tuple[Campaign, int]]:
        selected: list[tuple[Campaign, int]] = []
        limit = self.config.dispatch.max_concurrent_campaigns
        for campaign_id in self.queue.campaigns_with_pending():
            if len(selected) >= limit:
                break
            campaign = self.campaigns(campaign_id)
            if campaign is None or not campaign.is_active:
                continue
            capacity = campaign.max_concurrent - self.queue.count_processing(campaign_id)
            if capacity <= 0:
                log_event(
                    self.logger,
                    logging.DEBUG,
                    "campaign_at_capacity",
                    campaign_id=campaign_id,
                    max_concurrent=campaign.max_concurrent,
                )
                continue
            selected.append((campaign, min(max_batch, capacity)))
        return selected

    def _process(self, attempts: deque[_Attempt], counts: dict[str, int]) -> None:
        max_calls = max(1, self.config.dispatch.max_concurrent_calls)
        running: dict[Future, tuple[_Attempt, Credential]] = {}
        with ThreadPoolExecutor(max_workers=max_calls) as executor:
            while attempts or running:
                while attempts and len(running) < max_calls:
                    attempt = attempts.popleft()
                    credential = self._acquire(attempt)
                    if credential is None:
                        self._fail_unavailable(attempt, counts)
                        continue
                    provider = attempt.chain[attempt.position]
                    future = executor.submit(
                        self.transformer.transform,
                        attempt.item.item.payload(),
                        provider,
                        credential,
                        _parameters_for(attempt.campaign, provider),
                    )
                    running[future] = (attempt, credential)
                if not running:
                    continue
                done, _ = wait(list(running), return_when=FIRST_COMPLETED)
                for future in done:
                    attempt, credential = running.pop(future)
                    retry = self._handle_outcome(future, attempt, credential, counts)
                    if retry:
                        # Fallback attempts keep their place ahead of untouched items.
                        attempts.appendleft(attempt)

    def _acquire(self, attempt: _Attempt) -> Credential | None:
        while attempt.position < len(attempt.chain):
            provider = attempt.chain[attempt.position]
            credential = self.pool.acquire(provider, attempt.campaign.rotation_strategy)
            if credential is not None:
                return credential
            log_event(
                self.logger,
                logging.INFO,
                "provider_unavailable",
                campaign_id=attempt.campaign.campaign_id,
                item_id=attempt.item.id,
                provider=provider,
            )
            attempt.position += 1
        return None

    def _handle_outcome(
        self,
        future: Future,
        attempt: _Attempt,
        credential: Credential,
        counts: dict[str, int],
    ) -> bool:
        """Apply one transformation outcome; True means try the next provider."""
        provider = attempt.chain[attempt.position]
        try:
            result: TransformResult = future.result()
        except TransformError as exc:
            error = exc
        except Exception as exc:  # noqa: BLE001
            log_event(
                self.logger,
                logging.ERROR,
                "transform_crashed",
                campaign_id=attempt.campaign.campaign_id,
                item_id=attempt.item.id,
                provider=provider,
                error=str(exc),
            )
            error = TransformError(TRANSPORT_ERROR, str(exc), transient=True)
        else:
            self.pool.record_success(credential.credential_id)
            self._publish(attempt, result, counts)
            return False

        log_event(
            self.logger,
            logging.WARNING,
            "transform_failed",
            campaign_id=attempt.campaign.campaign_id,
            item_id=attempt.item.id,
            provider=provider,
            kind=error.kind,
            transient=error.transient,
        )
        if not error.transient:
            self.pool.record_failure(credential.credential_id, is_rate_limit=False)
            self._fail(attempt, error.kind, str(error), retryable=False, counts=counts)
            return False
        self.pool.record_failure(credential.credential_id, is_rate_limit=error.rate_limited)
        attempt.last_error = error
        attempt.position += 1
        if attempt.position < len(attempt.chain):
            return True
        self._fail(attempt, error.kind, str(error), retryable=True, counts=counts)
        return False

    def _publish(self, attempt: _Attempt, result: TransformResult, counts: dict[str, int]) -> None:
        item = attempt.item
        try:
            reference = self.publisher.publish(result, attempt.campaign.campaign_id, item)
        except Exception as exc:  # noqa: BLE001
            log_event(
                self.logger,
                logging.ERROR,
                "publish_failed",
                campaign_id=attempt.campaign.campaign_id,
                item_id=item.id,
                error=str(exc),
            )
            self._fail(attempt, PUBLISH_ERROR, str(exc), retryable=True, counts=counts)
            return
        if self.queue.complete(item.id, reference):
            counts["completed"] += 1

    def _fail_unavailable(self, attempt: _Attempt, counts: dict[str, int]) -> None:
        # A transient error earlier in this cycle is the more useful cause to keep.
        if attempt.last_error is not None:
            kind, message = attempt.last_error.kind, str(attempt.last_error)
        else:
            kind = NO_CREDENTIAL_AVAILABLE
            message = "no credential available for " + ", ".join(attempt.chain)
        self._fail(attempt, kind, message, retryable=True, counts=counts)

    def _fail(
        self,
        attempt: _Attempt,
        kind: str,
        message: str,
        *,
        retryable: bool,
        counts: dict[str, int],
    ) -> None:
        status = self.queue.fail(
            attempt.item.id,
            kind,
            message,
            retryable=retryable,
            max_retries=attempt.campaign.max_retries,
        )
        if status == QueueStatus.PENDING:
            counts["retried"] += 1
        elif status == QueueStatus.FAILED:
            counts["failed"] += 1

    def _record_snapshots(self) -> None:
        now = to_iso(self.clock()) or ""
        for campaign in list_campaigns(self.conn, active_only=True):
            record_queue_snapshot(
                self.conn,
                campaign.campaign_id,
                self.queue.count_pending(campaign.campaign_id),
                now,
            )


def _parameters_for(campaign: Campaign, provider: str) -> dict[str, Any]:
    params = campaign.parameters.get(provider)
    return dict(params) if isinstance(params, dict) else {}
