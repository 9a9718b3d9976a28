from datetime import timedelta

from autoscribe.credentials import CredentialPool
from autoscribe.health import backlog_growing, campaign_error_rate, collect_signals
from autoscribe.storage import insert_pipeline_event, record_queue_snapshot
from autoscribe.utils import to_iso

from fakes import add_campaign


def _snapshots(conn, clock, *counts):
    for count in counts:
        record_queue_snapshot(conn, "c1", count, to_iso(clock()))
        clock.advance(60)


def _event(conn, clock, event, minutes_ago=0):
    ts = to_iso(clock() - timedelta(minutes=minutes_ago))
    insert_pipeline_event(conn, ts, event, "c1", "1", {})


def test_backlog_growing_needs_strict_increase(conn, clock):
    _snapshots(conn, clock, 1, 2)
    assert not backlog_growing(conn, "c1")
    _snapshots(conn, clock, 3)
    assert backlog_growing(conn, "c1")
    _snapshots(conn, clock, 3)
    assert not backlog_growing(conn, "c1")


def test_campaign_error_rate_uses_window(conn, clock):
    assert campaign_error_rate(conn, "c1", timedelta(hours=1), clock) == 0.0
    _event(conn, clock, "queue_item_failed", minutes_ago=5)
    _event(conn, clock, "queue_item_retried", minutes_ago=5)
    _event(conn, clock, "queue_item_retried", minutes_ago=5)
    _event(conn, clock, "queue_item_completed", minutes_ago=5)
    _event(conn, clock, "queue_item_failed", minutes_ago=120)
    assert campaign_error_rate(conn, "c1", timedelta(hours=1), clock) == 0.75


def test_collect_signals(conn, config, clock):
    add_campaign(conn)
    pool = CredentialPool(conn, config.rotation, clock=clock)
    pool.add_credential("p1", "k", credential_id="cred_p1")
    pool.add_credential("p2", "k", per_minute_limit=1, credential_id="cred_p2")
    _snapshots(conn, clock, 1, 4, 9)
    pool.acquire("p2")
    _event(conn, clock, "queue_item_failed")

    signals = collect_signals(conn, pool, config.signals, clock)

    assert signals["exhausted_providers"] == ["p2"]
    campaign = signals["campaigns"]["c1"]
    assert campaign["backlog_growing"] is True
    assert campaign["error_rate"] == 1.0
    assert campaign["error_rate_high"] is True
    assert campaign["status"] == "active"
    assert signals["generated_at"] == to_iso(clock())
