from __future__ import annotations

import json
from typing import Any, Iterable

from .models import (
    Campaign,
    DiscoveredItem,
    QueueItem,
    QueueStatus,
    RotationStrategy,
    SourceConfig,
    SourceType,
)
from .utils import json_dumps, json_loads, utc_now_iso

QUEUE_COLUMNS = """
    id, campaign_id, content_fingerprint, source_type, item_id, title, excerpt, body,
    canonical_url, published_at, author, media_json, categories_json, raw_metadata_json,
    priority, status, retry_count, last_error_kind, last_error_message, discovered_at,
    processing_started_at, processed_at, not_before, result_reference
"""


def get_setting(conn: Any, key: str, default: object) -> object:
    cursor = conn.execute("SELECT value_json FROM settings WHERE key = ?", (key,))
    row = cursor.fetchone()
    if not row:
        return default
    try:
        return json.loads(row[0])
    except json.JSONDecodeError:
        return default


def set_setting(conn: Any, key: str, value: object) -> None:
    payload = json_dumps(value)
    now = utc_now_iso()
    conn.execute(
        """
        INSERT INTO settings (key, value_json, updated_at)
        VALUES (?, ?, ?)
        ON CONFLICT(key) DO UPDATE SET value_json = excluded.value_json,
            updated_at = excluded.updated_at
        """,
        (key, payload, now),
    )
    conn.commit()


def upsert_campaign(conn: Any, entry: dict[str, Any]) -> None:
    campaign_id = str(entry["id"])
    config = {
        "sources": [
            {
                "type": source.get("type"),
                "url": source.get("url"),
                "name": source.get("name"),
                "options": source.get("options") or {},
            }
            for source in entry.get("sources") or []
        ],
        "provider_chain": list(entry.get("provider_chain") or []),
        "rotation_strategy": entry.get("rotation_strategy") or "round_robin",
        "max_concurrent": int(entry.get("max_concurrent") or 5),
        "max_retries": entry.get("max_retries"),
        "parameters": entry.get("parameters") or {},
    }
    now = utc_now_iso()
    conn.execute(
        """
        INSERT INTO campaigns (id, name, status, config_json, created_at, updated_at)
        VALUES (?, ?, ?, ?, ?, ?)
        ON CONFLICT(id) DO UPDATE SET name = excluded.name, status = excluded.status,
            config_json = excluded.config_json, updated_at = excluded.updated_at
        """,
        (
            campaign_id,
            str(entry.get("name") or campaign_id),
            entry.get("status") or "active",
            json_dumps(config),
            now,
            now,
        ),
    )
    conn.commit()


def get_campaign(conn: Any, campaign_id: str) -> Campaign | None:
    cursor = conn.execute(
        """
        SELECT id, name, status, config_json, discovery_error_streak, last_discovery_at
        FROM campaigns WHERE id = ?
        """,
        (campaign_id,),
    )
    row = cursor.fetchone()
    if not row:
        return None
    return _row_to_campaign(row)


def list_campaigns(conn: Any, active_only: bool = False) -> list[Campaign]:
    sql = """
        SELECT id, name, status, config_json, discovery_error_streak, last_discovery_at
        FROM campaigns
    """
    if active_only:
        sql += " WHERE status = 'active'"
    sql += " ORDER BY id"
    cursor = conn.execute(sql)
    return [_row_to_campaign(row) for row in cursor.fetchall()]


def set_campaign_status(conn: Any, campaign_id: str, status: str) -> bool:
    cursor = conn.execute(
        "UPDATE campaigns SET status = ?, updated_at = ? WHERE id = ?",
        (status, utc_now_iso(), campaign_id),
    )
    conn.commit()
    return cursor.rowcount == 1


def record_discovery_outcome(conn: Any, campaign_id: str, failed: bool, now_iso: str) -> int:
    """Update the consecutive discovery failure streak and return its new value."""
    if failed:
        conn.execute(
            """
            UPDATE campaigns
            SET discovery_error_streak = discovery_error_streak + 1,
                last_discovery_at = ?, updated_at = ?
            WHERE id = ?
            """,
            (now_iso, now_iso, campaign_id),
        )
    else:
        conn.execute(
            """
            UPDATE campaigns
            SET discovery_error_streak = 0, last_discovery_at = ?, updated_at = ?
            WHERE id = ?
            """,
            (now_iso, now_iso, campaign_id),
        )
    conn.commit()
    row = conn.execute(
        "SELECT discovery_error_streak FROM campaigns WHERE id = ?", (campaign_id,)
    ).fetchone()
    return int(row[0]) if row else 0


def record_discovery_run(
    conn: Any,
    campaign_id: str,
    started_at: str,
    finished_at: str,
    status: str,
    found_count: int,
    queued_count: int,
    skipped_count: int,
    error: str | None,
) -> None:
    conn.execute(
        """
        INSERT INTO discovery_runs
            (campaign_id, started_at, finished_at, status, found_count, queued_count,
             skipped_count, error)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            campaign_id,
            started_at,
            finished_at,
            status,
            found_count,
            queued_count,
            skipped_count,
            error,
        ),
    )
    conn.commit()


def insert_pipeline_event(
    conn: Any,
    ts: str,
    event: str,
    campaign_id: str | None,
    subject_id: str | None,
    fields: dict[str, object],
) -> None:
    conn.execute(
        """
        INSERT INTO pipeline_events (ts, event, campaign_id, subject_id, fields_json)
        VALUES (?, ?, ?, ?, ?)
        """,
        (ts, event, campaign_id, subject_id, json_dumps(fields) if fields else None),
    )
    conn.commit()


def list_pipeline_events(
    conn: Any,
    event: str | None = None,
    campaign_id: str | None = None,
    limit: int = 100,
) -> list[dict[str, object]]:
    clauses: list[str] = []
    params: list[object] = []
    if event:
        clauses.append("event = ?")
        params.append(event)
    if campaign_id:
        clauses.append("campaign_id = ?")
        params.append(campaign_id)
    where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
    params.append(limit)
    cursor = conn.execute(
        f"""
        SELECT id, ts, event, campaign_id, subject_id, fields_json
        FROM pipeline_events
        {where}
        ORDER BY id DESC
        LIMIT ?
        """,
        tuple(params),
    )
    return [
        {
            "id": row[0],
            "ts": row[1],
            "event": row[2],
            "campaign_id": row[3],
            "subject_id": row[4],
            "fields": json_loads(row[5], {}),
        }
        for row in cursor.fetchall()
    ]


def count_events_since(conn: Any, campaign_id: str, events: Iterable[str], since_iso: str) -> int:
    names = list(events)
    if not names:
        return 0
    placeholders = ",".join(["?"] * len(names))
    cursor = conn.execute(
        f"""
        SELECT COUNT(*) FROM pipeline_events
        WHERE campaign_id = ? AND ts >= ? AND event IN ({placeholders})
        """,
        (campaign_id, since_iso, *names),
    )
    row = cursor.fetchone()
    return int(row[0]) if row else 0


def record_queue_snapshot(conn: Any, campaign_id: str, pending_count: int, ts: str) -> None:
    conn.execute(
        "INSERT INTO queue_snapshots (campaign_id, ts, pending_count) VALUES (?, ?, ?)",
        (campaign_id, ts, pending_count),
    )
    conn.commit()


def list_queue_snapshots(conn: Any, campaign_id: str, limit: int) -> list[int]:
    """Return the most recent pending counts, oldest first."""
    cursor = conn.execute(
        """
        SELECT pending_count FROM queue_snapshots
        WHERE campaign_id = ?
        ORDER BY ts DESC, id DESC
        LIMIT ?
        """,
        (campaign_id, limit),
    )
    counts = [int(row[0]) for row in cursor.fetchall()]
    counts.reverse()
    return counts


def _row_to_campaign(row: Any) -> Campaign:
    config = json_loads(row[3], {})
    sources = []
    for source in config.get("sources") or []:
        try:
            source_type = SourceType(source.get("type"))
        except ValueError:
            continue
        sources.append(
            SourceConfig(
                source_type=source_type,
                url=source.get("url"),
                name=source.get("name"),
                options=dict(source.get("options") or {}),
            )
        )
    max_retries = config.get("max_retries")
    return Campaign(
        campaign_id=row[0],
        name=row[1],
        status=row[2],
        sources=tuple(sources),
        provider_chain=tuple(config.get("provider_chain") or ()),
        rotation_strategy=RotationStrategy.parse(config.get("rotation_strategy")),
        max_concurrent=int(config.get("max_concurrent") or 5),
        max_retries=int(max_retries) if max_retries is not None else None,
        parameters=dict(config.get("parameters") or {}),
        discovery_error_streak=int(row[4] or 0),
        last_discovery_at=row[5],
    )


def row_to_queue_item(row: Any) -> QueueItem:
    item = DiscoveredItem(
        source_type=SourceType(row[3]),
        campaign_id=row[1],
        item_id=row[4],
        content_fingerprint=row[2],
        title=row[5],
        canonical_url=row[8],
        excerpt=row[6] or "",
        body=row[7],
        published_at=row[9],
        author=row[10],
        media_urls=tuple(json_loads(row[11], [])),
        categories=frozenset(json_loads(row[12], [])),
        raw_metadata=json_loads(row[13], {}),
        priority=int(row[14]),
    )
    return QueueItem(
        id=int(row[0]),
        campaign_id=row[1],
        status=QueueStatus(row[15]),
        item=item,
        retry_count=int(row[16]),
        discovered_at=row[19],
        last_error_kind=row[17],
        last_error_message=row[18],
        processing_started_at=row[20],
        processed_at=row[21],
        not_before=row[22],
        result_reference=row[23],
    )
