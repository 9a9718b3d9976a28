import threading
from dataclasses import replace

from autoscribe.credentials import CredentialPool
from autoscribe.db import connect_db
from autoscribe.dispatch import Orchestrator
from autoscribe.events import EventRecorder
from autoscribe.models import CredentialStatus, QueueStatus
from autoscribe.queue import WorkQueue
from autoscribe.storage import list_queue_snapshots

from fakes import FakePublisher, FakeTransformer, add_campaign, make_item, permanent, transient


def _build(conn, config, clock, transformer, publisher=None, **dispatch):
    if dispatch:
        config = replace(config, dispatch=replace(config.dispatch, **dispatch))
    events = EventRecorder(conn, clock=clock)
    queue = WorkQueue(conn, config.queue, events, clock=clock)
    pool = CredentialPool(conn, config.rotation, events, clock=clock)
    orchestrator = Orchestrator(
        conn,
        config,
        queue,
        pool,
        transformer,
        publisher or FakePublisher(),
        events=events,
        clock=clock,
    )
    return queue, pool, orchestrator


def _enqueue(queue, *titles, campaign_id="c1"):
    for title in titles:
        queue.enqueue(make_item(title, campaign_id=campaign_id))
    return [item.id for item in _all(queue, campaign_id)]


def _all(queue, campaign_id):
    rows = queue.conn.execute(
        "SELECT id FROM queue_items WHERE campaign_id = ? ORDER BY id", (campaign_id,)
    ).fetchall()
    return [queue.get(row[0]) for row in rows]


def test_successful_items_are_published_and_completed(conn, config, clock):
    add_campaign(conn)
    transformer = FakeTransformer()
    publisher = FakePublisher()
    queue, pool, orchestrator = _build(conn, config, clock, transformer, publisher)
    pool.add_credential("p1", "k", credential_id="cred_p1")
    ids = _enqueue(queue, "First", "Second")

    assert orchestrator.run_dispatch() == {"completed": 2, "failed": 0, "retried": 0}

    for item_id in ids:
        item = queue.get(item_id)
        assert item.status == QueueStatus.COMPLETED
        assert item.result_reference == f"published/c1/{item_id}"
    assert sorted(publisher.published) == ids
    assert {call[2] for call in transformer.calls} == {"cred_p1"}
    assert pool.get("cred_p1").current_day_count == 2


def test_fallback_chain_exhaustion_retries_remaining_items(conn, config, clock):
    add_campaign(conn, provider_chain=["P1", "P2"])
    queue, pool, orchestrator = _build(conn, config, clock, FakeTransformer())
    pool.add_credential("P2", "k", per_day_limit=1, credential_id="cred_p2")
    ids = _enqueue(queue, "Alpha", "Beta")

    counts = orchestrator.run_dispatch()

    assert counts == {"completed": 1, "failed": 0, "retried": 1}
    statuses = {queue.get(item_id).status for item_id in ids}
    assert statuses == {QueueStatus.COMPLETED, QueueStatus.PENDING}
    [retried] = [queue.get(i) for i in ids if queue.get(i).status == QueueStatus.PENDING]
    assert retried.last_error_kind == "no_credential_available"
    assert retried.retry_count == 1
    assert pool.get("cred_p2").current_day_count == 1


def test_concurrent_dispatchers_share_one_quota(conn, config, clock):
    config = replace(
        config, queue=replace(config.queue, backoff_base_seconds=60, backoff_max_seconds=60)
    )
    add_campaign(conn, provider_chain=["P1", "P2"])
    queue, pool, _ = _build(conn, config, clock, FakeTransformer())
    pool.add_credential("P2", "k", per_day_limit=1, credential_id="cred_p2")
    ids = _enqueue(queue, "Alpha", "Beta")

    totals = {"completed": 0, "failed": 0, "retried": 0}
    lock = threading.Lock()

    def worker():
        worker_conn = connect_db(config.paths.state_db)
        try:
            _, _, orchestrator = _build(worker_conn, config, clock, FakeTransformer())
            counts = orchestrator.run_dispatch(max_batch_per_campaign=1)
            with lock:
                for key, value in counts.items():
                    totals[key] += value
        finally:
            worker_conn.close()

    threads = [threading.Thread(target=worker) for _ in range(2)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert totals == {"completed": 1, "failed": 0, "retried": 1}
    statuses = sorted(queue.get(item_id).status.value for item_id in ids)
    assert statuses == ["completed", "pending"]
    assert pool.get("cred_p2").current_day_count == 1


def test_transient_failure_moves_to_next_provider(conn, config, clock):
    add_campaign(conn, provider_chain=["p1", "p2"])
    transformer = FakeTransformer({"p1": transient("rate_limited", rate_limited=True)})
    queue, pool, orchestrator = _build(conn, config, clock, transformer)
    pool.add_credential("p1", "k", credential_id="cred_p1")
    pool.add_credential("p2", "k", credential_id="cred_p2")
    [item_id] = _enqueue(queue, "Story")

    assert orchestrator.run_dispatch() == {"completed": 1, "failed": 0, "retried": 0}
    assert [call[1] for call in transformer.calls] == ["p1", "p2"]
    assert pool.get("cred_p1").status == CredentialStatus.RATE_LIMITED
    assert queue.get(item_id).status == QueueStatus.COMPLETED


def test_transient_failure_on_last_provider_retries_item(conn, config, clock):
    add_campaign(conn)
    transformer = FakeTransformer({"p1": transient("timeout")})
    queue, pool, orchestrator = _build(conn, config, clock, transformer)
    pool.add_credential("p1", "k", credential_id="cred_p1")
    [item_id] = _enqueue(queue, "Story")

    assert orchestrator.run_dispatch() == {"completed": 0, "failed": 0, "retried": 1}
    item = queue.get(item_id)
    assert item.status == QueueStatus.PENDING
    assert item.last_error_kind == "timeout"
    assert pool.get("cred_p1").consecutive_failure_count == 1


def test_permanent_failure_stops_the_chain(conn, config, clock):
    add_campaign(conn, provider_chain=["p1", "p2"])
    transformer = FakeTransformer({"p1": permanent()})
    queue, pool, orchestrator = _build(conn, config, clock, transformer)
    pool.add_credential("p1", "k", credential_id="cred_p1")
    pool.add_credential("p2", "k", credential_id="cred_p2")
    [item_id] = _enqueue(queue, "Story")

    assert orchestrator.run_dispatch() == {"completed": 0, "failed": 1, "retried": 0}
    assert [call[1] for call in transformer.calls] == ["p1"]
    item = queue.get(item_id)
    assert item.status == QueueStatus.FAILED
    assert item.last_error_kind == "provider_rejected"
    assert pool.get("cred_p1").consecutive_failure_count == 1


def test_unexpected_transformer_error_is_transient(conn, config, clock):
    add_campaign(conn)
    transformer = FakeTransformer({"p1": RuntimeError("boom")})
    queue, pool, orchestrator = _build(conn, config, clock, transformer)
    pool.add_credential("p1", "k")
    [item_id] = _enqueue(queue, "Story")

    assert orchestrator.run_dispatch()["retried"] == 1
    assert queue.get(item_id).last_error_kind == "transport_error"


def test_publish_error_retries_without_penalising_credential(conn, config, clock):
    add_campaign(conn)
    publisher = FakePublisher(error=OSError("disk full"))
    queue, pool, orchestrator = _build(conn, config, clock, FakeTransformer(), publisher)
    pool.add_credential("p1", "k", credential_id="cred_p1")
    [item_id] = _enqueue(queue, "Story")

    assert orchestrator.run_dispatch() == {"completed": 0, "failed": 0, "retried": 1}
    item = queue.get(item_id)
    assert item.last_error_kind == "publish_error"
    assert pool.get("cred_p1").consecutive_failure_count == 0


def test_campaign_retry_limit_overrides_queue_default(conn, config, clock):
    add_campaign(conn, max_retries=0)
    transformer = FakeTransformer({"p1": transient()})
    queue, pool, orchestrator = _build(conn, config, clock, transformer)
    pool.add_credential("p1", "k")
    [item_id] = _enqueue(queue, "Story")

    assert orchestrator.run_dispatch() == {"completed": 0, "failed": 1, "retried": 0}
    assert queue.get(item_id).status == QueueStatus.FAILED


def test_campaign_concurrency_cap_counts_inflight_items(conn, config, clock):
    add_campaign(conn, max_concurrent=2)
    queue, pool, orchestrator = _build(conn, config, clock, FakeTransformer())
    pool.add_credential("p1", "k")
    _enqueue(queue, "One", "Two", "Three", "Four")
    [held] = queue.lease_next("c1", 1)

    counts = orchestrator.run_dispatch()

    assert counts["completed"] == 1
    assert queue.get(held.id).status == QueueStatus.PROCESSING
    assert queue.stats("c1")["pending"] == 2


def test_max_concurrent_campaigns_limits_each_cycle(conn, config, clock):
    add_campaign(conn, "alpha")
    add_campaign(conn, "beta")
    queue, pool, orchestrator = _build(
        conn, config, clock, FakeTransformer(), max_concurrent_campaigns=1
    )
    pool.add_credential("p1", "k")
    _enqueue(queue, "Story", campaign_id="alpha")
    _enqueue(queue, "Story", campaign_id="beta")

    assert orchestrator.run_dispatch()["completed"] == 1
    assert queue.count_pending("alpha") + queue.count_pending("beta") == 1
    assert orchestrator.run_dispatch()["completed"] == 1


def test_paused_campaigns_are_not_dispatched(conn, config, clock):
    add_campaign(conn, status="paused")
    transformer = FakeTransformer()
    queue, pool, orchestrator = _build(conn, config, clock, transformer)
    pool.add_credential("p1", "k")
    _enqueue(queue, "Story")

    assert orchestrator.run_dispatch() == {"completed": 0, "failed": 0, "retried": 0}
    assert transformer.calls == []
    assert queue.count_pending("c1") == 1


def test_dispatch_records_backlog_snapshots(conn, config, clock):
    add_campaign(conn)
    queue, pool, orchestrator = _build(conn, config, clock, FakeTransformer())
    _enqueue(queue, "One", "Two")

    orchestrator.run_dispatch()
    clock.advance(60)
    _enqueue(queue, "Three")
    orchestrator.run_dispatch()

    assert list_queue_snapshots(conn, "c1", 5) == [2, 3]


def test_unreadable_credential_falls_back_to_next_provider(conn, config, clock):
    add_campaign(conn, provider_chain=["p1", "p2"])
    transformer = FakeTransformer()
    queue, pool, orchestrator = _build(conn, config, clock, transformer)
    pool.add_credential("p1", "k1", credential_id="cred_p1")
    pool.add_credential("p2", "k2", credential_id="cred_p2")
    conn.execute("UPDATE credentials SET key_blob = 'x' WHERE id = 'cred_p1'")
    ids = _enqueue(queue, "Alpha", "Beta")

    assert orchestrator.run_dispatch() == {"completed": 2, "failed": 0, "retried": 0}

    assert {queue.get(item_id).status for item_id in ids} == {QueueStatus.COMPLETED}
    assert {call[1] for call in transformer.calls} == {"p2"}
    assert pool.get("cred_p1").status == CredentialStatus.SUSPENDED
