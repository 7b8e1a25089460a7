"""
Tests for backend/app/server.py routes.

The lifespan is not entered; monitor_service globals are pointed at an
in-memory store, a fixed-clock trade log and a coordinator with fake
collaborators.
"""

import pytest
from fastapi.testclient import TestClient

import config as cfgmod
import monitor_service
from monitor import MonitorCoordinator
from server import app

from conftest import NIFTY_CE


@pytest.fixture
def client(kv, trade_log, market_data, broker, session, paper_mode, monkeypatch):
    coordinator = MonitorCoordinator(
        market_data=market_data,
        trade_log=trade_log,
        store=kv,
        broker=broker,
        session_provider=lambda: session,
        hma_period=4,
        market_open_fn=lambda: True,
    )
    monkeypatch.setattr(monitor_service, "_store", kv)
    monkeypatch.setattr(monitor_service, "_trade_log", trade_log)
    monkeypatch.setattr(monitor_service, "_coordinator", coordinator)
    for key in ("poll_seconds", "retention_days", "broker_access_token", "history_resolution"):
        monkeypatch.setitem(cfgmod.config, key, cfgmod.config.get(key))
    return TestClient(app)


ENTRY = {
    "symbol": NIFTY_CE.lower(),
    "contract_type": "CE",
    "lots": 2,
    "target_points": 50,
    "stop_loss_points": 30,
}

LOGGED = {
    "id": "trade_1750395600000_abc123def",
    "timestamp": "2025-06-20T05:00:00+00:00",
    "symbol": NIFTY_CE,
    "action": "SELL",
    "quantity": 75,
    "price": 160.0,
    "order_type": "MARKET",
    "status": "COMPLETED",
    "pnl": 3750.0,
    "remarks": "target hit",
    "trading_mode": "PAPER",
}


class TestMonitorRoutes:

    def test_health(self, client):
        assert client.get("/api/").json()["status"] == "running"

    def test_add_list_remove(self, client):
        resp = client.post("/api/monitor", json=ENTRY)
        assert resp.status_code == 200
        state = resp.json()["entry"]
        assert state["status"] == "WAITING"
        assert state["entry"]["symbol"] == NIFTY_CE
        assert state["lot_size"] == 75
        entry_id = state["entry"]["id"]

        assert [item["entry"]["id"] for item in client.get("/api/monitor").json()] == [entry_id]
        assert client.get(f"/api/monitor/{entry_id}").status_code == 200

        resp = client.delete(f"/api/monitor/{entry_id}")
        assert resp.status_code == 200
        assert resp.json()["active"] is False
        assert client.get("/api/monitor").json() == []

    def test_duplicate_is_400(self, client):
        client.post("/api/monitor", json=ENTRY)
        resp = client.post("/api/monitor", json=ENTRY)
        assert resp.status_code == 400
        assert "already being monitored" in resp.json()["detail"]

    @pytest.mark.parametrize(
        "override",
        [{"contract_type": "FUT"}, {"lots": 0}, {"target_points": 0}, {"symbol": ""}],
    )
    def test_invalid_entry_is_422(self, client, override):
        assert client.post("/api/monitor", json={**ENTRY, **override}).status_code == 422

    def test_unknown_entry_is_404(self, client):
        assert client.get("/api/monitor/mon_missing").status_code == 404
        assert client.delete("/api/monitor/mon_missing").status_code == 404
        assert client.post("/api/monitor/mon_missing/rearm").status_code == 404

    def test_rearm_waiting_is_400(self, client):
        entry_id = client.post("/api/monitor", json=ENTRY).json()["entry"]["entry"]["id"]
        assert client.post(f"/api/monitor/{entry_id}/rearm").status_code == 400

    def test_clear(self, client):
        client.post("/api/monitor", json=ENTRY)
        assert client.post("/api/monitor/clear").json()["removed"] == 1

    def test_status(self, client):
        data = client.get("/api/status").json()
        assert data["is_active"] is False
        assert data["monitored"] == 0
        assert data["hma_period"] == 4


class TestAddSymbolService:
    """The service layer sees raw dicts; explicit zeros must not fall back to defaults."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "override",
        [{"lots": 0}, {"target_points": 0}, {"stop_loss_points": 0}, {"lots": None}, {"entry_method": "STOP"}],
    )
    async def test_invalid_values_rejected(self, client, override):
        result = await monitor_service.add_symbol({**ENTRY, **override})
        assert result["status"] == "error"
        assert monitor_service.list_monitored() == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize("missing", ["target_points", "stop_loss_points"])
    async def test_missing_exit_points_rejected(self, client, missing):
        data = {k: v for k, v in ENTRY.items() if k != missing}
        result = await monitor_service.add_symbol(data)
        assert result["status"] == "error"
        assert missing in result["message"]

    @pytest.mark.asyncio
    async def test_lots_and_entry_method_default(self, client):
        data = {k: v for k, v in ENTRY.items() if k != "lots"}
        result = await monitor_service.add_symbol(data)
        assert result["status"] == "success"
        assert result["entry"]["entry"]["lots"] == 1
        assert result["entry"]["entry"]["entry_method"] == "MARKET"


class TestTradeLogRoutes:

    def test_import_query_stats_export_clear(self, client):
        resp = client.post("/api/trade-logs/import", json={"logs": {"2025-06-20": [LOGGED]}})
        assert resp.status_code == 200
        assert resp.json()["imported"] == 1

        assert client.get("/api/trade-logs/dates").json() == ["2025-06-20"]
        logs = client.get("/api/trade-logs", params={"date": "2025-06-20"}).json()
        assert [item["id"] for item in logs] == [LOGGED["id"]]
        assert client.get("/api/trade-logs", params={"action": "BUY"}).json() == []

        stats = client.get("/api/trade-logs/stats").json()
        assert stats["today_trades"] == 1
        assert stats["win_rate"] == 100.0

        exported = client.get("/api/trade-logs/export").json()
        assert exported["logs"]["2025-06-20"][0]["pnl"] == 3750.0

        assert client.delete("/api/trade-logs").json()["removed"] == 1
        assert client.get("/api/trade-logs").json() == []

    def test_import_bad_date_is_400(self, client):
        resp = client.post("/api/trade-logs/import", json={"logs": {"June 20": [LOGGED]}})
        assert resp.status_code == 400

    def test_import_without_logs_is_422(self, client):
        assert client.post("/api/trade-logs/import", json={"version": 1}).status_code == 422

    def test_bad_date_query_is_422(self, client):
        assert client.get("/api/trade-logs", params={"date": "20-06-2025"}).status_code == 422


class TestConfigRoutes:

    def test_indices_include_lot_sizes(self, client):
        nifty = next(i for i in client.get("/api/indices").json() if i["key"] == "NIFTY")
        assert nifty["lot_size"] == 75

    def test_update_clamps_and_persists(self, client, kv):
        resp = client.post("/api/config/update", json={"poll_seconds": 0.1, "retention_days": 30})
        assert resp.status_code == 200
        assert set(resp.json()["updated"]) == {"poll_seconds", "retention_days"}
        assert cfgmod.config["poll_seconds"] == 1.0
        assert monitor_service.get_trade_log().retention_days == 30

    def test_config_hides_credentials(self, client):
        data = client.get("/api/config").json()
        assert "broker_access_token" not in data
        assert "has_credentials" in data

    def test_live_mode_requires_session(self, client):
        cfgmod.config["broker_access_token"] = ""
        resp = client.post("/api/config/mode", params={"mode": "live"})
        assert resp.status_code == 400
        assert cfgmod.config["trading_mode"] == "paper"

    def test_paper_mode_and_invalid_mode(self, client):
        assert client.post("/api/config/mode", params={"mode": "paper"}).json()["mode"] == "paper"
        assert client.post("/api/config/mode", params={"mode": "demo"}).status_code == 422

    def test_invalid_history_resolution_rejected(self, client):
        before = cfgmod.config["poll_seconds"]
        resp = client.post("/api/config/update", json={"history_resolution": "5m", "poll_seconds": 30})
        assert resp.status_code == 400
        assert cfgmod.config["poll_seconds"] == before

    def test_history_resolution_update(self, client):
        resp = client.post("/api/config/update", json={"history_resolution": "15"})
        assert resp.status_code == 200
        assert cfgmod.config["history_resolution"] == "15"
