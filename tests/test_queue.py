import threading
from dataclasses import replace

from autoscribe.db import connect_db
from autoscribe.errors import LEASE_EXPIRED, LEASE_EXPIRED_MAX_RETRY, TRANSPORT_ERROR
from autoscribe.events import EventRecorder
from autoscribe.models import EnqueueOutcome, QueueStatus
from autoscribe.queue import WorkQueue
from autoscribe.storage import list_pipeline_events

from fakes import make_item


def _queue(conn, config, clock, **overrides):
    queue_config = replace(config.queue, **overrides) if overrides else config.queue
    return WorkQueue(conn, queue_config, EventRecorder(conn, clock=clock), clock=clock)


def test_enqueue_deduplicates_by_fingerprint(conn, config, clock):
    queue = _queue(conn, config, clock)
    item = make_item("Launch")
    assert queue.enqueue(item) == EnqueueOutcome.INSERTED
    assert queue.enqueue(item) == EnqueueOutcome.DUPLICATE_UPDATED
    assert queue.enqueue(make_item("Launch", campaign_id="c2")) == EnqueueOutcome.INSERTED
    assert queue.stats("c1")["total"] == 1
    created = list_pipeline_events(conn, event="queue_item_created")
    assert len(created) == 2


def test_pending_duplicate_refreshes_metadata_and_raises_priority(conn, config, clock):
    queue = _queue(conn, config, clock)
    queue.enqueue(make_item("Launch", priority=40))
    queue.enqueue(make_item("Launch", priority=20, raw_metadata={"rank": 3}))
    [leased] = queue.lease_next("c1", 1)
    assert leased.priority == 40
    assert leased.item.raw_metadata == {"rank": 3}

    queue.enqueue(make_item("Other", priority=10))
    queue.enqueue(make_item("Other", priority=90))
    assert queue.lease_next("c1", 1)[0].priority == 90


def test_terminal_duplicate_is_ignored(conn, config, clock):
    queue = _queue(conn, config, clock)
    item = make_item("Launch")
    queue.enqueue(item)
    [leased] = queue.lease_next("c1", 1)
    assert queue.complete(leased.id, "ref-1")
    assert queue.enqueue(item) == EnqueueOutcome.DUPLICATE_IGNORED
    assert queue.get(leased.id).status == QueueStatus.COMPLETED
    assert queue.get(leased.id).result_reference == "ref-1"


def test_processing_duplicate_is_ignored(conn, config, clock):
    queue = _queue(conn, config, clock)
    item = make_item("Launch")
    queue.enqueue(item)
    queue.lease_next("c1", 1)
    assert queue.enqueue(item) == EnqueueOutcome.DUPLICATE_IGNORED


def test_lease_orders_by_priority_then_age(conn, config, clock):
    queue = _queue(conn, config, clock)
    queue.enqueue(make_item("Low", priority=10))
    clock.advance(1)
    queue.enqueue(make_item("High", priority=90))
    clock.advance(1)
    queue.enqueue(make_item("Mid old", priority=50))
    clock.advance(1)
    queue.enqueue(make_item("Mid new", priority=50))
    leased = queue.lease_next("c1", 3)
    assert [item.item.title for item in leased] == ["High", "Mid old", "Mid new"]
    assert all(item.status == QueueStatus.PROCESSING for item in leased)
    assert queue.lease_next("c1", 0) == []
    assert [item.item.title for item in queue.lease_next("c1", 5)] == ["Low"]


def test_concurrent_leases_never_share_an_item(conn, config, clock):
    queue = _queue(conn, config, clock)
    for index in range(30):
        queue.enqueue(make_item(f"Story {index}"))

    leased: list[int] = []
    lock = threading.Lock()

    def worker():
        worker_conn = connect_db(config.paths.state_db)
        worker_queue = WorkQueue(worker_conn, config.queue, clock=clock)
        try:
            while True:
                batch = worker_queue.lease_next("c1", 4)
                if not batch:
                    return
                with lock:
                    leased.extend(item.id for item in batch)
        finally:
            worker_conn.close()

    threads = [threading.Thread(target=worker) for _ in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert len(leased) == 30
    assert len(set(leased)) == 30
    assert queue.stats("c1")["processing"] == 30


def test_retry_bound_then_terminal_failure(conn, config, clock):
    queue = _queue(conn, config, clock, max_retries=3)
    queue.enqueue(make_item("Flaky"))
    statuses = []
    for _ in range(4):
        [leased] = queue.lease_next("c1", 1)
        statuses.append(queue.fail(leased.id, TRANSPORT_ERROR, "timeout", retryable=True))
    assert statuses == [QueueStatus.PENDING] * 3 + [QueueStatus.FAILED]
    item = queue.get(leased.id)
    assert item.retry_count == 3
    assert item.last_error_kind == TRANSPORT_ERROR
    assert queue.lease_next("c1", 1) == []


def test_permanent_failure_is_terminal(conn, config, clock):
    queue = _queue(conn, config, clock)
    queue.enqueue(make_item("Rejected"))
    [leased] = queue.lease_next("c1", 1)
    assert queue.fail(leased.id, "provider_rejected", "policy", retryable=False) == QueueStatus.FAILED
    assert queue.get(leased.id).retry_count == 0


def test_fail_requires_processing(conn, config, clock):
    queue = _queue(conn, config, clock)
    queue.enqueue(make_item("Idle"))
    item_id = queue.stats()["total"]
    assert queue.fail(item_id, TRANSPORT_ERROR, "x", retryable=True) is None
    assert not queue.complete(item_id, "ref")


def test_retry_backoff_delays_next_lease(conn, config, clock):
    queue = _queue(conn, config, clock, backoff_base_seconds=60, backoff_max_seconds=600)
    queue.enqueue(make_item("Later"))
    [leased] = queue.lease_next("c1", 1)
    queue.fail(leased.id, TRANSPORT_ERROR, "timeout", retryable=True)
    assert queue.lease_next("c1", 1) == []
    assert queue.campaigns_with_pending() == []
    clock.advance(60)
    assert [item.id for item in queue.lease_next("c1", 1)] == [leased.id]
    assert queue.backoff_seconds(0) == 60
    assert queue.backoff_seconds(2) == 240
    assert queue.backoff_seconds(10) == 600


def test_reclaim_returns_expired_lease_to_pending(conn, config, clock):
    queue = _queue(conn, config, clock)
    queue.enqueue(make_item("Stalled"))
    [leased] = queue.lease_next("c1", 1)
    clock.advance(59)
    assert queue.reclaim_stalled(60) == 0
    clock.advance(2)
    assert queue.reclaim_stalled(60) == 1
    item = queue.get(leased.id)
    assert item.status == QueueStatus.PENDING
    assert item.retry_count == 1
    assert item.last_error_kind == LEASE_EXPIRED
    assert item.processing_started_at is None
    assert list_pipeline_events(conn, event="queue_item_reclaimed")


def test_reclaim_fails_item_at_retry_limit(conn, config, clock):
    queue = _queue(conn, config, clock, max_retries=1)
    queue.enqueue(make_item("Stalled"))
    queue.lease_next("c1", 1)
    clock.advance(61)
    queue.reclaim_stalled(60)
    [leased] = queue.lease_next("c1", 1)
    clock.advance(61)
    assert queue.reclaim_stalled(60) == 1
    item = queue.get(leased.id)
    assert item.status == QueueStatus.FAILED
    assert item.last_error_kind == LEASE_EXPIRED_MAX_RETRY


def test_requeue_and_skip(conn, config, clock):
    queue = _queue(conn, config, clock)
    queue.enqueue(make_item("Broken"))
    queue.enqueue(make_item("Unwanted"))
    [broken] = queue.lease_next("c1", 1)
    queue.fail(broken.id, "provider_rejected", "bad", retryable=False)
    assert queue.requeue(broken.id)
    assert not queue.requeue(broken.id)
    requeued = queue.get(broken.id)
    assert requeued.status == QueueStatus.PENDING
    assert requeued.retry_count == 0

    unwanted_id = next(i for i in (1, 2) if i != broken.id)
    assert queue.skip(unwanted_id, "operator")
    assert queue.get(unwanted_id).status == QueueStatus.SKIPPED
    stats = queue.stats("c1")
    assert stats["pending"] == 1
    assert stats["skipped"] == 1
    assert stats["total"] == 2


def test_cleanup_removes_old_terminal_items(conn, config, clock):
    queue = _queue(conn, config, clock)
    queue.enqueue(make_item("Done"))
    queue.enqueue(make_item("Waiting"))
    [done] = queue.lease_next("c1", 1)
    queue.complete(done.id, "ref")
    clock.advance(31 * 86400)
    assert queue.cleanup(30) == 1
    assert queue.get(done.id) is None
    assert queue.stats("c1")["pending"] == 1
