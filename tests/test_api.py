"""HTTP surface: health, metrics and trade queries."""

import duckdb
import pytest
from conftest import make_event
from fastapi.testclient import TestClient

from tradeflow.api import main as api_main
from tradeflow.api.main import app
from tradeflow.storage.sink import StorageSink, TradeRow


@pytest.fixture
def client(db_path, monkeypatch):
    monkeypatch.setenv("TRADEFLOW__STORAGE__DB_PATH", str(db_path))
    with TestClient(app) as c:
        yield c


def _store(db_path, *trade_ids):
    sink = StorageSink(db_path)
    sink.write_batch([TradeRow.from_event(make_event(i), partition=0, offset=i) for i in trade_ids])
    sink.close()


def test_health(client):
    r = client.get("/health")
    assert r.status_code == 200
    body = r.json()
    assert body["status"] == "ok"
    assert body["pipeline_running"] is False


def test_metrics_snapshot(client):
    r = client.get("/metrics")
    assert r.status_code == 200
    body = r.json()
    assert body["counters"]["rows_written"] == 0
    assert "latency_ms" in body


def test_trade_stats_empty(client):
    r = client.get("/trades/stats")
    assert r.status_code == 200
    assert r.json()["total_trades"] == 0
    assert r.json()["by_pair"] == []


def test_trade_stats_and_recent(client, db_path):
    _store(db_path, 1, 2, 3)

    stats = client.get("/trades/stats").json()
    assert stats["total_trades"] == 3
    assert stats["by_pair"][0]["pair"] == "BTC-USDT"
    assert stats["by_pair"][0]["missing"] == 0

    recent = client.get("/trades/recent", params={"limit": 2, "pair": "BTC-USDT"}).json()
    assert [t["trade_id"] for t in recent] == [3, 2]
    assert recent[0]["price"] == "30000.5"
    assert recent[0]["quantity"] == "0.001"
    assert recent[0]["side"] == "buyer_maker"


def test_recent_limit_validated(client):
    assert client.get("/trades/recent", params={"limit": 0}).status_code == 422


def test_standalone_server_opens_existing_store_read_only(db_path, monkeypatch):
    _store(db_path, 1)
    modes = []
    real_get_connection = api_main.get_connection

    def recording(path, read_only=False):
        modes.append(read_only)
        return real_get_connection(path, read_only=read_only)

    monkeypatch.setattr(api_main, "get_connection", recording)
    monkeypatch.setenv("TRADEFLOW__STORAGE__DB_PATH", str(db_path))
    with TestClient(app) as c:
        assert c.get("/trades/stats").json()["total_trades"] == 1

    assert modes == [True]


def test_locked_store_is_reported_as_unavailable(db_path, monkeypatch):
    _store(db_path, 1)

    def locked(path, read_only=False):
        raise duckdb.IOException("Could not set lock on file: Conflicting lock is held")

    monkeypatch.setattr(api_main, "get_connection", locked)
    monkeypatch.setenv("TRADEFLOW__STORAGE__DB_PATH", str(db_path))
    with TestClient(app) as c:
        r = c.get("/trades/recent")

    assert r.status_code == 503
    assert r.json()["code"] == "storage_unavailable"
