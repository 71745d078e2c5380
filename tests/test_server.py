"""Flask status API."""

from unittest import mock

import pytest

from treasury_sdk.chain_client import ChainRPCError
from treasury_sdk.oneinch_client import OneInchAPIError
from treasury_sdk.server import create_app

from conftest import TEST_ADDRESS, USDC


@pytest.fixture
def oneinch():
    api = mock.Mock()
    api.chain_id = 137
    api.quote_amount.side_effect = lambda src, dst, amount: amount * 2
    return api


@pytest.fixture
def chain():
    client = mock.Mock()
    client.rpc_url = "https://rpc.example"
    client.block_number.return_value = 123
    return client


@pytest.fixture
def client(manager, oneinch, chain):
    app = create_app(manager, oneinch, chain)
    app.testing = True
    return app.test_client()


class TestHealth:

    def test_health(self, client):
        resp = client.get("/health")
        assert resp.status_code == 200
        assert resp.get_json()["ok"] is True

    def test_polygon(self, client, chain):
        assert client.get("/health/polygon").get_json()["block"] == 123
        chain.block_number.side_effect = ChainRPCError(-1, "down")
        assert client.get("/health/polygon").status_code == 503

    def test_oneinch(self, client, oneinch):
        assert client.get("/health/oneinch").status_code == 200
        oneinch.healthcheck.side_effect = OneInchAPIError(500, "down")
        assert client.get("/health/oneinch").status_code == 503

    def test_unconfigured(self, manager):
        client = create_app(manager).test_client()
        assert client.get("/health/oneinch").status_code == 503
        assert client.get("/health/polygon").status_code == 503


class TestPlans:

    def test_status_counts(self, client, plan):
        data = client.get("/api/status").get_json()
        assert data["plans"] == {"total": 1, "active": 1, "complete": 0}
        assert data["open_orders"] == 0

    def test_list_and_get(self, client, plan):
        data = client.get("/api/plans").get_json()
        assert data["count"] == 1
        assert data["plans"][0]["plan_id"] == plan.plan_id

        assert client.get("/api/plans?active=false").get_json()["count"] == 0

        detail = client.get(f"/api/plans/{plan.plan_id}").get_json()
        assert len(detail["tranches"]) == 4
        assert detail["progress"]["total_tranches"] == 4

    def test_unknown_plan(self, client):
        assert client.get("/api/plans/nope").status_code == 404
        assert client.post("/api/plans/nope/cancel").status_code == 404

    def test_create_plan(self, client, manager):
        resp = client.post("/api/plans", json={
            "maker": TEST_ADDRESS,
            "src_token": "USDC",
            "dst_token": "WPOL",
            "total_amount": "20",
            "tranche_count": 4,
            "interval_seconds": 120,
            "start_ts": 1_700_000_000,
        })
        assert resp.status_code == 201
        plan = resp.get_json()["plan"]
        assert plan["src_token"] == USDC
        assert plan["total_amount"] == "20000000"
        assert plan["tranches"][0]["target_amount_estimate"] == "10000000"
        assert manager.get_plan(plan["plan_id"]) is not None

    def test_create_plan_invalid(self, client):
        resp = client.post("/api/plans", json={
            "maker": TEST_ADDRESS, "src_token": "USDC", "dst_token": "WPOL",
            "total_amount": "20", "tranche_count": 4, "interval_seconds": 5,
        })
        assert resp.status_code == 400
        assert "Interval too short" in resp.get_json()["error"]

    def test_create_plan_no_body(self, client):
        assert client.post("/api/plans").status_code == 400

    def test_cancel(self, client, manager, plan):
        resp = client.post(f"/api/plans/{plan.plan_id}/cancel")
        assert resp.status_code == 200
        assert resp.get_json() == {"success": True, "live_orders": []}
        assert not manager.get_plan(plan.plan_id).active

    def test_repeated_create_in_same_second(self, client, manager):
        body = {"maker": TEST_ADDRESS, "src_token": "USDC", "dst_token": "WPOL",
                "total_units": 20_000_000, "tranche_count": 4, "interval_seconds": 120,
                "start_ts": 1_700_000_000, "estimate": False}
        with mock.patch("time.time", return_value=1_700_000_000):
            first = client.post("/api/plans", json=body)
            second = client.post("/api/plans", json=body)
        assert first.status_code == second.status_code == 201
        assert first.get_json()["plan"]["plan_id"] != second.get_json()["plan"]["plan_id"]
        assert len(manager.list_plans()) == 2
