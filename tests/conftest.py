from __future__ import annotations

import base64

import pytest
import yaml

from autoscribe.config import load_config
from autoscribe.db import connect_db
from autoscribe.discovery.search import PROVIDER_CIRCUIT

from fakes import FakeClock


@pytest.fixture(autouse=True)
def _runtime_env(monkeypatch):
    key = base64.urlsafe_b64encode(b"a" * 32).decode("utf-8")
    monkeypatch.setenv("AS_MASTER_KEY", key)
    monkeypatch.setenv("AS_KEY_ID", "v1")
    monkeypatch.delenv("AS_DB_URL", raising=False)
    monkeypatch.delenv("AS_CONFIG_PATH", raising=False)
    monkeypatch.delenv("AS_ADMIN_TOKEN", raising=False)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def config_path(tmp_path):
    path = tmp_path / "config.yml"
    data_dir = tmp_path / "data"
    path.write_text(
        yaml.safe_dump(
            {
                "paths": {
                    "data_dir": str(data_dir),
                    "state_db": str(data_dir / "state.sqlite3"),
                    "output_dir": str(tmp_path / "output"),
                },
                "queue": {"backoff_base_seconds": 0, "backoff_max_seconds": 0},
            }
        ),
        encoding="utf-8",
    )
    return path


@pytest.fixture
def config(config_path):
    return load_config(str(config_path))


@pytest.fixture
def conn(config):
    conn = connect_db(config.paths.state_db)
    yield conn
    conn.close()


@pytest.fixture(autouse=True)
def _reset_search_circuit():
    PROVIDER_CIRCUIT.reset()
    yield
    PROVIDER_CIRCUIT.reset()
