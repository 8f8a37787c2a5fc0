import os

import pytest
from fastapi.testclient import TestClient

# Unit tests must not build real exchange, wallet or LLM clients.
os.environ["AGENTS_DISABLE_ORCHESTRATOR"] = "1"

from src.api.app import app, set_orchestrator
from src.risk.engine import RiskEngine, RiskLimits
from src.trader.orchestrator import CycleOrchestrator, OrchestratorDeps
from src.trading.executor import TradeExecutor
from tests.fakes import FakeClock, FakeExchange, FakeOracle, MemoryHistory


@pytest.fixture
def client():
    clock = FakeClock()
    exchange = FakeExchange()
    deps = OrchestratorDeps(
        exchange=exchange,
        oracle=FakeOracle(),
        risk=RiskEngine(RiskLimits(), clock=clock),
        executor=TradeExecutor(exchange, {"trading": {}}),
        history=MemoryHistory(),
    )
    config = {"agents": {"manual_approval_required": True, "stage_timeout_seconds": 5}, "trading": {}}
    set_orchestrator(CycleOrchestrator(deps, config, clock=clock))
    with TestClient(app) as c:
        yield c
    set_orchestrator(None)


def test_api_health_ok(client):
    resp = client.get("/api/health")
    assert resp.status_code == 200
    data = resp.json()
    assert data["status"] == "ok"
    assert data["orchestrator_ready"] is True
    assert data["running"] is False


def test_api_status_reports_limits(client):
    resp = client.get("/api/status")
    assert resp.status_code == 200
    data = resp.json()
    assert data["running"] is False
    assert data["config"]["max_leverage"] == 5.0
    assert data["daily_stats"]["trades"] == 0


def test_api_cycle_then_history(client):
    resp = client.post("/api/cycle", json={"symbol": "btcusdt"})
    assert resp.status_code == 200
    assert resp.json()["status"] == "awaiting_approval"

    history = client.get("/api/history", params={"limit": 2}).json()
    assert [h["stage"] for h in history] == ["execute", "assess"]


def test_api_start_and_stop(client):
    started = client.post("/api/start").json()
    assert started["started"] is True
    assert started["status"]["running"] is True
    assert client.post("/api/start").json()["started"] is False

    stopped = client.post("/api/stop").json()
    assert stopped == {"stopped": True, "running": False}


def test_api_positions_empty(client):
    resp = client.get("/api/positions")
    assert resp.status_code == 200
    assert resp.json() == {"active": [], "history": []}


def test_api_prompts_lists_templates(client):
    data = client.get("/api/prompts").json()
    assert set(data) == {"candidate", "optimize", "execution"}


def test_api_without_orchestrator_returns_503():
    set_orchestrator(None)
    with TestClient(app) as c:
        assert c.get("/api/status").status_code == 503
        assert c.get("/api/health").json()["orchestrator_ready"] is False
