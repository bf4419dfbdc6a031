"""
Tests for the market API endpoints.

Runs the full application (lifespan included) with the scheduler off and
persistence disabled. Validates routing, request validation, response
schemas, error mapping and security headers.
"""

from dataclasses import replace

import pytest
from fastapi.testclient import TestClient

from papertrade.core.config import Settings
from papertrade.main import create_app
from papertrade.shared.security.rate_limiting import limiter

API = "/api/v1"


@pytest.fixture
def client():
    limiter.reset()
    settings = Settings(
        scheduler_enabled=False,
        simulation_seed=7,
        database_url=None,
        optimizer_timeout_seconds=5.0,
    )
    with TestClient(create_app(settings)) as client:
        yield client


def _tick(client, times=1):
    for _ in range(times):
        response = client.post(f"{API}/realtime/scheduler/run/tick")
        assert response.json()["status"] == "completed"


# =====================================================================
# Health & security
# =====================================================================

class TestHealth:
    def test_health(self, client):
        response = client.get(f"{API}/health")
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "ok"
        assert body["cycle"] == 0
        assert body["degraded"] is False

    def test_health_follows_cycles(self, client):
        _tick(client, 2)
        assert client.get(f"{API}/health").json()["cycle"] == 2


class TestSecurityHeaders:
    """Tests for security headers on responses."""

    def test_security_headers_present(self, client):
        response = client.get(f"{API}/health")
        assert response.headers["X-Content-Type-Options"] == "nosniff"
        assert response.headers["X-Frame-Options"] == "DENY"
        assert response.headers["Referrer-Policy"] == "strict-origin-when-cross-origin"
        assert "connect-src" in response.headers["Content-Security-Policy"]
        assert response.headers["Cache-Control"] == "no-store"


# =====================================================================
# Instruments & index
# =====================================================================

class TestInstrumentEndpoints:
    def test_list_instruments(self, client):
        response = client.get(f"{API}/market/instruments")
        assert response.status_code == 200
        body = response.json()
        assert body["cycle"] == 0
        assert len(body["instruments"]) == 10
        nabil = next(i for i in body["instruments"] if i["symbol"] == "NABIL")
        assert nabil["current_price"] == 850.0
        assert nabil["previous_close"] == 850.0

    def test_list_reflects_latest_cycle(self, client):
        _tick(client)
        body = client.get(f"{API}/market/instruments").json()
        assert body["cycle"] == 1
        for item in body["instruments"]:
            assert item["day_low"] <= item["current_price"] <= item["day_high"]

    def test_filter_by_sector(self, client):
        response = client.get(f"{API}/market/instruments", params={"sector": "hydropower"})
        assert response.status_code == 200
        symbols = [i["symbol"] for i in response.json()["instruments"]]
        assert symbols == ["CHCL", "UPPER"]

    def test_search(self, client):
        body = client.get(f"{API}/market/instruments", params={"q": "insurance"}).json()
        assert [i["symbol"] for i in body["instruments"]] == ["LICN", "NLIC"]

    def test_top_gainers(self, client):
        _tick(client, 5)
        body = client.get(
            f"{API}/market/instruments", params={"sort": "gainers", "limit": 3}
        ).json()
        changes = [i["change_percent"] for i in body["instruments"]]
        assert len(changes) == 3
        assert changes == sorted(changes, reverse=True)
        everything = client.get(f"{API}/market/instruments").json()["instruments"]
        assert changes[0] == max(i["change_percent"] for i in everything)

    def test_halted_flag(self, client):
        market = client.app.state.market.market
        scb = market.snapshot.states["SCB"]
        market.restore(
            {
                "SCB": replace(
                    scb,
                    current_price=342.0,
                    day_low=342.0,
                    change=-38.0,
                    change_percent=-10.5,
                )
            }
        )
        body = client.get(f"{API}/market/instruments").json()
        halted = [i["symbol"] for i in body["instruments"] if i["halted"]]
        assert halted == ["SCB"]
        assert body["cycle"] == market.snapshot.cycle

    @pytest.mark.parametrize(
        "params",
        [{"sort": "volume"}, {"limit": 0}, {"q": ""}],
    )
    def test_invalid_list_query_returns_422(self, client, params):
        response = client.get(f"{API}/market/instruments", params=params)
        assert response.status_code == 422

    def test_get_instrument(self, client):
        _tick(client, 3)
        response = client.get(f"{API}/market/instruments/nabil", params={"history_limit": 2})
        assert response.status_code == 200
        body = response.json()
        assert body["instrument"]["symbol"] == "NABIL"
        assert len(body["history"]) == 2
        assert body["history"][-1]["price"] == body["instrument"]["current_price"]

    def test_unknown_symbol_returns_404(self, client):
        response = client.get(f"{API}/market/instruments/XYZ")
        assert response.status_code == 404
        assert response.json() == {"error": "Symbol not found", "detail": "XYZ"}

    def test_negative_history_limit_rejected(self, client):
        response = client.get(f"{API}/market/instruments/NABIL", params={"history_limit": -1})
        assert response.status_code == 422

    def test_index(self, client):
        response = client.get(f"{API}/market/index")
        assert response.status_code == 200
        body = response.json()
        assert body["value"] == pytest.approx(1000.0)
        assert len(body["constituents"]) == 10


class TestCandleEndpoint:
    def test_one_day_series(self, client):
        response = client.get(f"{API}/market/instruments/NABIL/candles", params={"timeframe": "1D"})
        assert response.status_code == 200
        body = response.json()
        assert body["source"] == "simulated"
        assert len(body["candles"]) == 78
        assert body["candles"][0]["open"] == 850.0

        again = client.get(f"{API}/market/instruments/NABIL/candles", params={"timeframe": "1D"})
        assert again.json()["candles"] == body["candles"]

    def test_point_count(self, client):
        response = client.get(
            f"{API}/market/instruments/SCB/candles",
            params={"timeframe": "1Y", "point_count": 12},
        )
        assert len(response.json()["candles"]) == 12

    def test_unknown_timeframe_returns_422(self, client):
        response = client.get(f"{API}/market/instruments/NABIL/candles", params={"timeframe": "2H"})
        assert response.status_code == 422
        assert response.json()["error"] == "Unknown timeframe"

    def test_unknown_source_rejected(self, client):
        response = client.get(
            f"{API}/market/instruments/NABIL/candles", params={"source": "live"}
        )
        assert response.status_code == 422

    def test_replay_source(self, client):
        _tick(client, 3)
        response = client.get(
            f"{API}/market/instruments/NABIL/candles", params={"source": "replay"}
        )
        assert response.status_code == 200
        assert response.json()["candles"]

    def test_stored_source_without_database(self, client):
        response = client.get(
            f"{API}/market/instruments/NABIL/candles", params={"source": "stored"}
        )
        assert response.status_code == 503
        assert response.json()["error"] == "Service unavailable"


# =====================================================================
# Allocations
# =====================================================================

class TestAllocationEndpoint:
    """Tests for POST /api/v1/market/allocations."""

    def test_two_bank_portfolio(self, client):
        response = client.post(
            f"{API}/market/allocations",
            json={
                "budget": 100000,
                "candidates": [
                    {"symbol": "NABIL", "unit_price": 850, "return_score": 5},
                    {"symbol": "SCB", "unit_price": 380, "return_score": 3},
                ],
            },
            headers={"X-Session-Id": "two-banks"},
        )
        assert response.status_code == 200
        body = response.json()
        best = max(
            5 * a + 3 * ((100_000 - 850 * a) // 380) for a in range(100_000 // 850 + 1)
        )
        assert body["total_cost"] <= 100000
        assert body["achieved_score"] == pytest.approx(best)
        assert body["remaining_cash"] == pytest.approx(100000 - body["total_cost"])

    def test_budget_below_every_price(self, client):
        response = client.post(
            f"{API}/market/allocations",
            json={
                "budget": 100,
                "candidates": [{"symbol": "SCB", "unit_price": 380, "return_score": 3}],
            },
        )
        assert response.status_code == 200
        body = response.json()
        assert body["lines"] == []
        assert body["total_cost"] == 0
        assert body["budget_utilization"] == 0
        assert body["infeasible_reason"] == "budget"

    def test_universe_without_momentum(self, client):
        response = client.post(f"{API}/market/allocations", json={"budget": 50000})
        assert response.status_code == 200
        body = response.json()
        assert len(body["quantities"]) == 10
        assert body["infeasible_reason"] == "no_positive_scores"

    @pytest.mark.parametrize("budget", [0, -100])
    def test_non_positive_budget_rejected(self, client, budget):
        response = client.post(f"{API}/market/allocations", json={"budget": budget})
        assert response.status_code == 422

    def test_invalid_candidate_rejected(self, client):
        response = client.post(
            f"{API}/market/allocations",
            json={
                "budget": 1000,
                "candidates": [{"symbol": "SCB", "unit_price": 0, "return_score": 3}],
            },
        )
        assert response.status_code == 422

    def test_budget_axis_too_fine(self, client):
        response = client.post(
            f"{API}/market/allocations",
            json={
                "budget": 1e12,
                "candidates": [{"symbol": "SCB", "unit_price": 380, "return_score": 3}],
            },
        )
        assert response.status_code == 422
        assert response.json()["error"] == "Allocation infeasible"

    def test_rate_limited_per_session(self, client):
        payload = {
            "budget": 1000,
            "candidates": [{"symbol": "SCB", "unit_price": 380, "return_score": 3}],
        }
        headers = {"X-Session-Id": "busy-session"}
        codes = [
            client.post(f"{API}/market/allocations", json=payload, headers=headers).status_code
            for _ in range(11)
        ]
        assert codes[:10] == [200] * 10
        assert codes[10] == 429

        other = client.post(
            f"{API}/market/allocations", json=payload, headers={"X-Session-Id": "calm-session"}
        )
        assert other.status_code == 200


# =====================================================================
# Admin & realtime
# =====================================================================

class TestAdminEndpoints:
    def test_reset(self, client):
        _tick(client, 3)
        response = client.post(f"{API}/market/admin/reset")
        assert response.status_code == 200
        body = response.json()
        assert body["action"] == "reset"
        assert body["cycle"] == 4
        assert body["index_value"] == pytest.approx(1000.0)

        instruments = client.get(f"{API}/market/instruments").json()["instruments"]
        nabil = next(i for i in instruments if i["symbol"] == "NABIL")
        assert nabil["current_price"] == nabil["previous_close"] == 850.0

    def test_session_close(self, client):
        _tick(client, 2)
        response = client.post(f"{API}/market/admin/session-close")
        assert response.status_code == 200
        body = response.json()
        assert body["action"] == "session_close"
        assert body["archived_symbols"] == []

        for item in client.get(f"{API}/market/instruments").json()["instruments"]:
            assert item["change"] == 0.0


class TestRealtimeEndpoints:
    def test_scheduler_status(self, client):
        body = client.get(f"{API}/realtime/scheduler/status").json()
        assert body["running"] is False
        assert body["market"]["cycle"] == 0

    def test_unknown_task(self, client):
        response = client.post(f"{API}/realtime/scheduler/run/rebalance")
        assert response.status_code == 200
        assert response.json()["status"] == "failed"

    def test_stream_status(self, client):
        body = client.get(f"{API}/realtime/stream/status").json()
        assert body["active_connections"] == 0
        assert "recent_events" in body

    def test_websocket_session(self, client):
        with client.websocket_connect(f"{API}/realtime/ws/market") as ws:
            assert ws.receive_json()["event"] == "connected"

            ws.send_json({"action": "ping"})
            assert ws.receive_json()["event"] == "pong"

            ws.send_json({"action": "subscribe", "symbols": ["NABIL"]})
            assert ws.receive_json() == {"event": "subscribed", "symbols": ["NABIL"]}

            ws.send_json({"action": "identify", "session_id": "s1"})
            assert ws.receive_json() == {"event": "identified", "session_id": "s1"}
