"""Tests for the approval API."""

from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from relayci.api import create_app
from relayci.gates import GateStatus, GateTable


@pytest.fixture()
def gates() -> GateTable:
    table = GateTable()
    table.request("production", "r1")
    table.request("staging", "r2")
    table.decide("r2/staging", "approve", "alice")
    return table


@pytest.fixture()
def client(gates) -> TestClient:
    return TestClient(create_app(gates))


class TestApprovalApi:
    def test_health(self, client):
        assert client.get("/health").json() == {"ok": True}

    def test_list_pending(self, client):
        resp = client.get("/gates", params={"status": "pending"})
        assert resp.status_code == 200
        assert [g["id"] for g in resp.json()] == ["r1/production"]

    def test_list_all(self, client):
        assert {g["id"] for g in client.get("/gates").json()} == {"r1/production", "r2/staging"}

    def test_list_unknown_status(self, client):
        assert client.get("/gates", params={"status": "maybe"}).status_code == 400

    def test_get_gate(self, client):
        body = client.get("/gates/r2/staging").json()
        assert body["status"] == "approved"
        assert body["actor"] == "alice"
        assert body["decided_at"] is not None

    def test_get_unknown_gate(self, client):
        assert client.get("/gates/r9/production").status_code == 404

    def test_approve(self, client, gates):
        resp = client.post(
            "/gates/r1/production/decision",
            json={"decision": "approve", "actor": "bob", "comment": "ship it"},
        )
        assert resp.status_code == 200
        assert resp.json() == {"id": "r1/production", "status": "approved"}
        assert gates.get("r1/production").comment == "ship it"

    def test_second_decision_returns_first(self, client):
        client.post("/gates/r1/production/decision", json={"decision": "reject", "actor": "bob"})
        resp = client.post("/gates/r1/production/decision", json={"decision": "approve", "actor": "carol"})
        assert resp.json()["status"] == "rejected"

    def test_invalid_decision(self, client, gates):
        resp = client.post("/gates/r1/production/decision", json={"decision": "maybe", "actor": "bob"})
        assert resp.status_code == 400
        assert gates.get("r1/production").status == GateStatus.PENDING

    def test_decide_unknown_gate(self, client):
        resp = client.post("/gates/r9/production/decision", json={"decision": "approve", "actor": "bob"})
        assert resp.status_code == 404
