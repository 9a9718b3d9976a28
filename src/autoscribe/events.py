from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Callable

from .storage import insert_pipeline_event
from .utils import log_event, to_iso, utc_now

QUEUE_ITEM_CREATED = "queue_item_created"
QUEUE_ITEM_LEASED = "queue_item_leased"
QUEUE_ITEM_COMPLETED = "queue_item_completed"
QUEUE_ITEM_FAILED = "queue_item_failed"
QUEUE_ITEM_RETRIED = "queue_item_retried"
QUEUE_ITEM_RECLAIMED = "queue_item_reclaimed"
QUEUE_ITEM_REQUEUED = "queue_item_requeued"
QUEUE_ITEM_SKIPPED = "queue_item_skipped"
CREDENTIAL_RATE_LIMITED = "credential_rate_limited"
CREDENTIAL_SUSPENDED = "credential_suspended"
CREDENTIAL_REACTIVATED = "credential_reactivated"
CAMPAIGN_PAUSED = "campaign_paused"

WARNING_EVENTS = frozenset(
    {QUEUE_ITEM_FAILED, CREDENTIAL_RATE_LIMITED, CREDENTIAL_SUSPENDED, CAMPAIGN_PAUSED}
)


class EventRecorder:
    """Structured state-transition events.

    Every event is logged as ``event=<name> key=value``. When a connection is
    supplied the event is also appended to ``pipeline_events`` so health
    signals can be derived later. Callers emit after their own transaction
    has finished.
    """

    def __init__(
        self,
        conn: Any | None = None,
        logger: logging.Logger | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._conn = conn
        self._logger = logger or logging.getLogger("autoscribe.events")
        self._clock = clock

    def emit(
        self,
        event: str,
        *,
        campaign_id: str | None = None,
        subject_id: str | int | None = None,
        **fields: Any,
    ) -> None:
        level = logging.WARNING if event in WARNING_EVENTS else logging.INFO
        log_fields: dict[str, Any] = {}
        if campaign_id is not None:
            log_fields["campaign_id"] = campaign_id
        if subject_id is not None:
            log_fields["subject_id"] = subject_id
        log_fields.update(fields)
        log_event(self._logger, level, event, **log_fields)
        if self._conn is None:
            return
        insert_pipeline_event(
            self._conn,
            to_iso(self._clock()) or "",
            event,
            campaign_id,
            str(subject_id) if subject_id is not None else None,
            fields,
        )
