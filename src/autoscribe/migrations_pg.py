from __future__ import annotations

import logging

from .utils import utc_now_iso


def apply_migrations_pg(conn) -> None:
    logger = logging.getLogger("autoscribe.migrations")
    with conn.transaction():
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
        if "pg_bootstrap_001" not in applied:
            _bootstrap_schema(conn)
            conn.execute(
                "INSERT INTO schema_migrations (version, applied_at) VALUES (?, ?)",
                ("pg_bootstrap_001", utc_now_iso()),
            )
            logger.info("migration_applied version=pg_bootstrap_001")
        if "pg_observability_002" not in applied:
            _migrate_observability(conn)
            conn.execute(
                "INSERT INTO schema_migrations (version, applied_at) VALUES (?, ?)",
                ("pg_observability_002", utc_now_iso()),
            )
            logger.info("migration_applied version=pg_observability_002")


def _bootstrap_schema(conn) -> None:
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
            id BIGSERIAL PRIMARY KEY,
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


def _migrate_observability(conn) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS pipeline_events (
            id BIGSERIAL PRIMARY KEY,
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
            id BIGSERIAL PRIMARY KEY,
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
            id BIGSERIAL PRIMARY KEY,
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
