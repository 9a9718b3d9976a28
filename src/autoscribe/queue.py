from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Iterable

from .config import QueueConfig
from .errors import LEASE_EXPIRED, LEASE_EXPIRED_MAX_RETRY
from .events import (
    QUEUE_ITEM_COMPLETED,
    QUEUE_ITEM_CREATED,
    QUEUE_ITEM_FAILED,
    QUEUE_ITEM_LEASED,
    QUEUE_ITEM_RECLAIMED,
    QUEUE_ITEM_REQUEUED,
    QUEUE_ITEM_RETRIED,
    QUEUE_ITEM_SKIPPED,
    EventRecorder,
)
from .models import DiscoveredItem, EnqueueOutcome, QueueItem, QueueStatus
from .storage import QUEUE_COLUMNS, row_to_queue_item
from .utils import json_dumps, log_event, to_iso, utc_now


class WorkQueue:
    """Durable, deduplicated work queue backed by ``queue_items``.

    State machine::

        pending -> processing -> completed | failed | pending (retry)
        pending -> skipped
        failed  -> pending (operator requeue only)

    Every mutation is a conditional update on the current status inside one
    storage transaction, so overlapping dispatch runs (threads or processes)
    never lease the same row twice.
    """

    def __init__(
        self,
        conn: Any,
        config: QueueConfig,
        events: EventRecorder | None = None,
        logger: logging.Logger | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.conn = conn
        self.config = config
        self.logger = logger or logging.getLogger("autoscribe.queue")
        self.events = events or EventRecorder(None, self.logger, clock)
        self.clock = clock

    def _now(self) -> str:
        return to_iso(self.clock()) or ""

    def _lock_clause(self) -> str:
        if getattr(self.conn, "backend", "sqlite") == "postgres":
            return " FOR UPDATE SKIP LOCKED"
        return ""

    def enqueue(self, item: DiscoveredItem) -> EnqueueOutcome:
        now = self._now()
        payload = item.payload()
        with self.conn.transaction():
            cursor = self.conn.execute(
                """
                INSERT OR IGNORE INTO queue_items
                    (campaign_id, content_fingerprint, source_type, item_id, title, excerpt,
                     body, canonical_url, published_at, author, media_json, categories_json,
                     raw_metadata_json, priority, status, retry_count, discovered_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 'pending', 0, ?, ?)
                """,
                (
                    item.campaign_id,
                    item.content_fingerprint,
                    item.source_type.value,
                    item.item_id,
                    item.title,
                    item.excerpt,
                    item.body,
                    item.canonical_url,
                    item.published_at,
                    item.author,
                    json_dumps(payload["media_urls"]),
                    json_dumps(payload["categories"]),
                    json_dumps(payload["raw_metadata"]),
                    item.priority,
                    now,
                    now,
                ),
            )
            if cursor.rowcount == 1:
                outcome = EnqueueOutcome.INSERTED
            else:
                outcome = self._merge_duplicate(item, now)
            row = self.conn.execute(
                "SELECT id FROM queue_items WHERE campaign_id = ? AND content_fingerprint = ?",
                (item.campaign_id, item.content_fingerprint),
            ).fetchone()
        item_id = row[0] if row else None
        if outcome == EnqueueOutcome.INSERTED:
            self.events.emit(
                QUEUE_ITEM_CREATED,
                campaign_id=item.campaign_id,
                subject_id=item_id,
                source_type=item.source_type.value,
                priority=item.priority,
            )
        else:
            log_event(
                self.logger,
                logging.DEBUG,
                "queue_item_duplicate",
                campaign_id=item.campaign_id,
                item_id=item_id,
                outcome=outcome.value,
            )
        return outcome

    def _merge_duplicate(self, item: DiscoveredItem, now: str) -> EnqueueOutcome:
        cursor = self.conn.execute(
            f"""
            SELECT id, status, priority FROM queue_items
            WHERE campaign_id = ? AND content_fingerprint = ?
            {'FOR UPDATE' if self._lock_clause() else ''}
            """,
            (item.campaign_id, item.content_fingerprint),
        )
        existing = cursor.fetchone()
        if not existing or existing[1] != QueueStatus.PENDING.value:
            return EnqueueOutcome.DUPLICATE_IGNORED
        priority = max(int(existing[2]), item.priority)
        cursor = self.conn.execute(
            """
            UPDATE queue_items
            SET raw_metadata_json = ?, priority = ?, updated_at = ?
            WHERE id = ? AND status = 'pending'
            """,
            (json_dumps(dict(item.raw_metadata)), priority, now, existing[0]),
        )
        if cursor.rowcount != 1:
            return EnqueueOutcome.DUPLICATE_IGNORED
        return EnqueueOutcome.DUPLICATE_UPDATED

    def enqueue_many(self, items: Iterable[DiscoveredItem]) -> dict[str, int]:
        counts = {outcome.value: 0 for outcome in EnqueueOutcome}
        for item in items:
            counts[self.enqueue(item).value] += 1
        return counts

    def lease_next(self, campaign_id: str, max_batch: int) -> list[QueueItem]:
        if max_batch <= 0:
            return []
        now = self._now()
        leased_ids: list[int] = []
        with self.conn.transaction():
            cursor = self.conn.execute(
                f"""
                SELECT id FROM queue_items
                WHERE campaign_id = ? AND status = 'pending'
                  AND (not_before IS NULL OR not_before <= ?)
                ORDER BY priority DESC, discovered_at ASC, id ASC
                LIMIT ?{self._lock_clause()}
                """,
                (campaign_id, now, max_batch),
            )
            for (item_id,) in cursor.fetchall():
                updated = self.conn.execute(
                    """
                    UPDATE queue_items
                    SET status = 'processing', processing_started_at = ?, updated_at = ?
                    WHERE id = ? AND status = 'pending'
                    """,
                    (now, now, item_id),
                )
                if updated.rowcount == 1:
                    leased_ids.append(int(item_id))
            items = self._fetch_many(leased_ids)
        for item in items:
            self.events.emit(
                QUEUE_ITEM_LEASED,
                campaign_id=campaign_id,
                subject_id=item.id,
                priority=item.priority,
            )
        return items

    def reclaim_stalled(self, lease_ttl_seconds: int | None = None) -> int:
        ttl = lease_ttl_seconds if lease_ttl_seconds is not None else self.config.lease_ttl_seconds
        current = self.clock()
        now = to_iso(current) or ""
        cutoff = to_iso(current - timedelta(seconds=ttl)) or ""
        reclaimed: list[tuple[int, str, QueueStatus]] = []
        with self.conn.transaction():
            cursor = self.conn.execute(
                f"""
                SELECT id, campaign_id, retry_count, processing_started_at FROM queue_items
                WHERE status = 'processing' AND processing_started_at < ?
                ORDER BY id{self._lock_clause()}
                """,
                (cutoff,),
            )
            for item_id, campaign_id, retry_count, started_at in cursor.fetchall():
                if int(retry_count) >= self.config.max_retries:
                    updated = self.conn.execute(
                        """
                        UPDATE queue_items
                        SET status = 'failed', last_error_kind = ?, last_error_message = ?,
                            processed_at = ?, updated_at = ?
                        WHERE id = ? AND status = 'processing' AND processing_started_at = ?
                        """,
                        (
                            LEASE_EXPIRED_MAX_RETRY,
                            f"lease expired after {ttl}s",
                            now,
                            now,
                            item_id,
                            started_at,
                        ),
                    )
                    status = QueueStatus.FAILED
                else:
                    updated = self.conn.execute(
                        """
                        UPDATE queue_items
                        SET status = 'pending', retry_count = retry_count + 1,
                            last_error_kind = ?, last_error_message = ?,
                            processing_started_at = NULL, updated_at = ?
                        WHERE id = ? AND status = 'processing' AND processing_started_at = ?
                        """,
                        (LEASE_EXPIRED, f"lease expired after {ttl}s", now, item_id, started_at),
                    )
                    status = QueueStatus.PENDING
                if updated.rowcount == 1:
                    reclaimed.append((int(item_id), campaign_id, status))
        for item_id, campaign_id, status in reclaimed:
            if status == QueueStatus.FAILED:
                self.events.emit(
                    QUEUE_ITEM_FAILED,
                    campaign_id=campaign_id,
                    subject_id=item_id,
                    error_kind=LEASE_EXPIRED_MAX_RETRY,
                )
            else:
                self.events.emit(QUEUE_ITEM_RECLAIMED, campaign_id=campaign_id, subject_id=item_id)
        return len(reclaimed)

    def complete(self, item_id: int, result_reference: str | None) -> bool:
        now = self._now()
        with self.conn.transaction():
            cursor = self.conn.execute(
                """
                UPDATE queue_items
                SET status = 'completed', result_reference = ?, processed_at = ?,
                    last_error_kind = NULL, last_error_message = NULL, updated_at = ?
                WHERE id = ? AND status = 'processing'
                """,
                (result_reference, now, now, item_id),
            )
            campaign_id = self._campaign_of(item_id)
        if cursor.rowcount != 1:
            log_event(self.logger, logging.WARNING, "queue_complete_rejected", item_id=item_id)
            return False
        self.events.emit(
            QUEUE_ITEM_COMPLETED,
            campaign_id=campaign_id,
            subject_id=item_id,
            result_reference=result_reference,
        )
        return True

    def fail(
        self,
        item_id: int,
        error_kind: str,
        error_message: str,
        retryable: bool,
        max_retries: int | None = None,
    ) -> QueueStatus | None:
        """Record a processing failure.

        Retryable failures below the retry limit go back to ``pending`` with a
        ``not_before`` backoff; everything else is terminal. Returns the new
        status, or None when the item was not in ``processing``.
        """
        limit = self.config.max_retries if max_retries is None else max_retries
        current = self.clock()
        now = to_iso(current) or ""
        with self.conn.transaction():
            row = self.conn.execute(
                f"""
                SELECT campaign_id, retry_count FROM queue_items
                WHERE id = ? AND status = 'processing'
                {'FOR UPDATE' if self._lock_clause() else ''}
                """,
                (item_id,),
            ).fetchone()
            if not row:
                status = None
            elif retryable and int(row[1]) < limit:
                delay = self.backoff_seconds(int(row[1]))
                not_before = to_iso(current + timedelta(seconds=delay))
                self.conn.execute(
                    """
                    UPDATE queue_items
                    SET status = 'pending', retry_count = retry_count + 1,
                        last_error_kind = ?, last_error_message = ?,
                        processing_started_at = NULL, not_before = ?, updated_at = ?
                    WHERE id = ? AND status = 'processing'
                    """,
                    (error_kind, error_message, not_before, now, item_id),
                )
                status = QueueStatus.PENDING
            else:
                self.conn.execute(
                    """
                    UPDATE queue_items
                    SET status = 'failed', last_error_kind = ?, last_error_message = ?,
                        processed_at = ?, updated_at = ?
                    WHERE id = ? AND status = 'processing'
                    """,
                    (error_kind, error_message, now, now, item_id),
                )
                status = QueueStatus.FAILED
        if status is None:
            log_event(self.logger, logging.WARNING, "queue_fail_rejected", item_id=item_id)
            return None
        event = QUEUE_ITEM_RETRIED if status == QueueStatus.PENDING else QUEUE_ITEM_FAILED
        self.events.emit(
            event,
            campaign_id=row[0],
            subject_id=item_id,
            error_kind=error_kind,
            retry_count=int(row[1]) + (1 if status == QueueStatus.PENDING else 0),
        )
        return status

    def backoff_seconds(self, retry_count: int) -> int:
        delay = self.config.backoff_base_seconds * (2**retry_count)
        return int(min(delay, self.config.backoff_max_seconds))

    def requeue(self, item_id: int) -> bool:
        now = self._now()
        with self.conn.transaction():
            cursor = self.conn.execute(
                """
                UPDATE queue_items
                SET status = 'pending', retry_count = 0, not_before = NULL,
                    processing_started_at = NULL, processed_at = NULL, updated_at = ?
                WHERE id = ? AND status = 'failed'
                """,
                (now, item_id),
            )
            campaign_id = self._campaign_of(item_id)
        if cursor.rowcount != 1:
            return False
        self.events.emit(QUEUE_ITEM_REQUEUED, campaign_id=campaign_id, subject_id=item_id)
        return True

    def skip(self, item_id: int, reason: str) -> bool:
        now = self._now()
        with self.conn.transaction():
            cursor = self.conn.execute(
                """
                UPDATE queue_items
                SET status = 'skipped', last_error_message = ?, processed_at = ?, updated_at = ?
                WHERE id = ? AND status = 'pending'
                """,
                (reason, now, now, item_id),
            )
            campaign_id = self._campaign_of(item_id)
        if cursor.rowcount != 1:
            return False
        self.events.emit(QUEUE_ITEM_SKIPPED, campaign_id=campaign_id, subject_id=item_id, reason=reason)
        return True

    def get(self, item_id: int) -> QueueItem | None:
        items = self._fetch_many([item_id])
        return items[0] if items else None

    def stats(self, campaign_id: str | None = None) -> dict[str, int]:
        counts = {status.value: 0 for status in QueueStatus}
        if campaign_id:
            cursor = self.conn.execute(
                "SELECT status, COUNT(*) FROM queue_items WHERE campaign_id = ? GROUP BY status",
                (campaign_id,),
            )
        else:
            cursor = self.conn.execute("SELECT status, COUNT(*) FROM queue_items GROUP BY status")
        for status, count in cursor.fetchall():
            counts[status] = int(count)
        counts["total"] = sum(counts.values())
        return counts

    def campaigns_with_pending(self) -> list[str]:
        """Campaigns with leasable work, oldest waiting item first."""
        cursor = self.conn.execute(
            """
            SELECT campaign_id, MIN(discovered_at) AS oldest
            FROM queue_items
            WHERE status = 'pending' AND (not_before IS NULL OR not_before <= ?)
            GROUP BY campaign_id
            ORDER BY oldest ASC, campaign_id ASC
            """,
            (self._now(),),
        )
        return [row[0] for row in cursor.fetchall()]

    def count_processing(self, campaign_id: str) -> int:
        return self._count(campaign_id, QueueStatus.PROCESSING)

    def count_pending(self, campaign_id: str) -> int:
        return self._count(campaign_id, QueueStatus.PENDING)

    def cleanup(self, days: int | None = None) -> int:
        days = self.config.retention_days if days is None else days
        cutoff = to_iso(self.clock() - timedelta(days=days))
        with self.conn.transaction():
            cursor = self.conn.execute(
                """
                DELETE FROM queue_items
                WHERE status IN ('completed', 'failed', 'skipped')
                  AND processed_at IS NOT NULL AND processed_at < ?
                """,
                (cutoff,),
            )
        removed = cursor.rowcount or 0
        log_event(self.logger, logging.INFO, "queue_cleanup", removed=removed, days=days)
        return removed

    def _count(self, campaign_id: str, status: QueueStatus) -> int:
        row = self.conn.execute(
            "SELECT COUNT(*) FROM queue_items WHERE campaign_id = ? AND status = ?",
            (campaign_id, status.value),
        ).fetchone()
        return int(row[0]) if row else 0

    def _campaign_of(self, item_id: int) -> str | None:
        row = self.conn.execute(
            "SELECT campaign_id FROM queue_items WHERE id = ?", (item_id,)
        ).fetchone()
        return row[0] if row else None

    def _fetch_many(self, ids: list[int]) -> list[QueueItem]:
        if not ids:
            return []
        placeholders = ",".join(["?"] * len(ids))
        cursor = self.conn.execute(
            f"""
            SELECT {QUEUE_COLUMNS} FROM queue_items
            WHERE id IN ({placeholders})
            ORDER BY priority DESC, discovered_at ASC, id ASC
            """,
            tuple(ids),
        )
        return [row_to_queue_item(row) for row in cursor.fetchall()]
