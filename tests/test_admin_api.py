import pytest
from fastapi.testclient import TestClient

from autoscribe.admin import app
from autoscribe.credentials import CredentialPool
from autoscribe.queue import WorkQueue

from fakes import add_campaign, make_item


@pytest.fixture
def client(config_path, monkeypatch):
    monkeypatch.setenv("AS_CONFIG_PATH", str(config_path))
    return TestClient(app)


def test_health_is_public(client, monkeypatch):
    monkeypatch.setenv("AS_ADMIN_TOKEN", "secret")
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["ok"] is True


def test_admin_token_required_when_configured(client, monkeypatch):
    monkeypatch.setenv("AS_ADMIN_TOKEN", "secret")
    assert client.get("/signals").status_code == 401
    assert client.get("/signals", headers={"X-Admin-Token": "wrong"}).status_code == 401
    response = client.get("/signals", headers={"X-Admin-Token": "secret"})
    assert response.status_code == 200
    assert response.json()["exhausted_providers"] == []


def test_queue_stats_and_requeue(client, conn, config):
    queue = WorkQueue(conn, config.queue)
    queue.enqueue(make_item("Broken"))
    [leased] = queue.lease_next("c1", 1)
    queue.fail(leased.id, "provider_rejected", "bad request", retryable=False)

    stats = client.get("/queue/stats", params={"campaign_id": "c1"}).json()
    assert stats["failed"] == 1
    assert stats["total"] == 1

    assert client.post(f"/queue/{leased.id}/requeue").json() == {
        "status": "ok",
        "item_id": leased.id,
    }
    assert client.post(f"/queue/{leased.id}/requeue").status_code == 409
    assert client.get("/queue/stats").json()["pending"] == 1


def test_credentials_listing_hides_keys(client, conn, config):
    pool = CredentialPool(conn, config.rotation)
    pool.add_credential("openai", "sk-very-secret", label="main", credential_id="cred_main")

    response = client.get("/credentials", params={"provider": "openai"})
    assert response.status_code == 200
    [entry] = response.json()
    assert entry["id"] == "cred_main"
    assert entry["status"] == "active"
    assert "sk-very-secret" not in response.text

    assert client.post("/credentials/cred_main/reactivate").status_code == 409
    for _ in range(5):
        pool.record_failure("cred_main", is_rate_limit=False)
    assert client.post("/credentials/cred_main/reactivate").status_code == 200
    assert pool.get("cred_main").status.value == "active"


def test_discover_and_dispatch(client, conn):
    assert client.post("/campaigns/missing/discover").status_code == 404

    add_campaign(conn)
    response = client.post("/campaigns/c1/discover")
    assert response.status_code == 200
    assert response.json() == {"queued": 0, "skipped": 0, "total": 0}

    response = client.post("/dispatch", json={"max_batch_per_campaign": 1})
    assert response.status_code == 200
    assert response.json() == {"completed": 0, "failed": 0, "retried": 0}
