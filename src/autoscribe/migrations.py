from __future__ import annotations

import logging
import sqlite3
from typing import Callable

from .utils import utc_now_iso

Migration = Callable[[sqlite3.Connection], None]


def apply_migrations(conn: sqlite3.Connection) -> None:
    # Schema changes go through new migration versions only.
    logger = logging.getLogger("autoscribe.migrations")
    conn.execute("BEGIN IMMEDIATE")
    try:
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS schema_migrations (
                version TEXT PRIMARY KEY,
                applied_at TEXT NOT NULL
            )
            """
        )
        applied = {
            row[0]
            for row in conn.execute("SELECT version FROM schema_migrations").fetchall()
        }
        for version, migration in _get_migrations():
            if version in applied:
                logger.debug("migration_skipped version=%s", version)
                continue
            migration(conn)
            conn.execute(
                "INSERT OR IGNORE INTO schema_migrations (version, applied_at) VALUES (?, ?)",
                (version, utc_now_iso()),
            )
            logger.info("migration_applied version=%s", version)
        conn.execute("COMMIT")
    except Exception:
        conn.execute("ROLLBACK")
        raise


def _get_migrations() -> list[tuple[str, Migration]]:
    return [
        ("001_initial_schema", _migration_initial_schema),
        ("002_observability", _migration_observability),
    ]


def _migration_initial_schema(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS settings (
            key TEXT PRIMARY KEY,
            value_json TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS campaigns (
            id TEXT PRIMARY KEY,
            name TEXT NOT NULL,
            status TEXT NOT NULL DEFAULT 'active',
            config_json TEXT NOT NULL,
            discovery_error_streak INTEGER NOT NULL DEFAULT 0,
            last_discovery_at TEXT NULL,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS queue_items (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            campaign_id TEXT NOT NULL,
            content_fingerprint TEXT NOT NULL,
            source_type TEXT NOT NULL,
            item_id TEXT NULL,
            title TEXT NOT NULL,
            excerpt TEXT NULL,
            body TEXT NULL,
            canonical_url TEXT NULL,
            published_at TEXT NULL,
            author TEXT NULL,
            media_json TEXT NULL,
            categories_json TEXT NULL,
            raw_metadata_json TEXT NULL,
            priority INTEGER NOT NULL DEFAULT 50,
            status TEXT NOT NULL DEFAULT 'pending',
            retry_count INTEGER NOT NULL DEFAULT 0,
            last_error_kind TEXT NULL,
            last_error_message TEXT NULL,
            discovered_at TEXT NOT NULL,
            processing_started_at TEXT NULL,
            processed_at TEXT NULL,
            not_before TEXT NULL,
            result_reference TEXT NULL,
            updated_at TEXT NOT NULL,
            UNIQUE(campaign_id, content_fingerprint)
        )
        """
    )
    conn.execute(
        """
        CREATE INDEX IF NOT EXISTS idx_queue_items_lease
        ON queue_items (campaign_id, status, priority DESC, discovered_at ASC)
        """
    )
    conn.execute(
        """
        CREATE INDEX IF NOT EXISTS idx_queue_items_processing
        ON queue_items (status, processing_started_at)
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS credentials (
            id TEXT PRIMARY KEY,
            provider TEXT NOT NULL,
            label TEXT NULL,
            key_id TEXT NOT NULL,
            key_blob TEXT NOT NULL,
            per_minute_limit INTEGER NOT NULL DEFAULT 0,
            per_day_limit INTEGER NOT NULL DEFAULT 0,
            current_minute_count INTEGER NOT NULL DEFAULT 0,
            current_day_count INTEGER NOT NULL DEFAULT 0,
            minute_window_reset_at TEXT NOT NULL,
            day_window_reset_at TEXT NOT NULL,
            status TEXT NOT NULL DEFAULT 'active',
            rate_limited_until TEXT NULL,
            consecutive_failure_count INTEGER NOT NULL DEFAULT 0,
            last_used_at TEXT NULL,
            priority INTEGER NOT NULL DEFAULT 100,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
        """
    )
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_credentials_provider ON credentials (provider, status)"
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS rotation_state (
            provider TEXT PRIMARY KEY,
            cursor INTEGER NOT NULL DEFAULT 0,
            updated_at TEXT NOT NULL
        )
        """
    )


def _migration_observability(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS pipeline_events (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            ts TEXT NOT NULL,
            event TEXT NOT NULL,
            campaign_id TEXT NULL,
            subject_id TEXT NULL,
            fields_json TEXT NULL
        )
        """
    )
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_pipeline_events_campaign ON pipeline_events (campaign_id, ts)"
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS queue_snapshots (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            campaign_id TEXT NOT NULL,
            ts TEXT NOT NULL,
            pending_count INTEGER NOT NULL
        )
        """
    )
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_queue_snapshots_campaign ON queue_snapshots (campaign_id, ts)"
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS discovery_runs (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            campaign_id TEXT NOT NULL,
            started_at TEXT NOT NULL,
            finished_at TEXT NOT NULL,
            status TEXT NOT NULL,
            found_count INTEGER NOT NULL DEFAULT 0,
            queued_count INTEGER NOT NULL DEFAULT 0,
            skipped_count INTEGER NOT NULL DEFAULT 0,
            error TEXT NULL
        )
        """
    )
