"""
Integration tests for the lending API
Tests end-to-end workflows using FastAPI TestClient
"""

import pytest
from datetime import timedelta
from fastapi.testclient import TestClient

import lending_core.api.deps as deps
from lending_core.schedule import utc_today
from lending_core.api import app
from lending_core.api.deps import LendingSystem
from lending_core.config import LendingConfig


OFFICER = {"X-Actor-Id": "officer-1"}


@pytest.fixture
def client():
    """Test client backed by an in-memory lending system"""
    original_system = deps.lending_system
    deps.lending_system = LendingSystem(LendingConfig(database_url="memory://"))

    yield TestClient(app)

    deps.lending_system = original_system


def _create_loan(client, **overrides):
    body = {
        "client_id": "client-1",
        "loan_amount": "10000.00",
        "interest_rate": "12",
        "term_months": 12,
    }
    body.update(overrides)
    r = client.post("/loans", json=body)
    assert r.status_code == 201
    return r.json()


def _active_loan(client):
    loan = _create_loan(client)
    r = client.post(f"/loans/{loan['id']}/approve", json={"approved_amount": "10000.00"}, headers=OFFICER)
    assert r.status_code == 200
    return r.json()


class TestHealthEndpoints:

    def test_health(self, client):
        r = client.get("/health")
        assert r.status_code == 200
        assert r.json()["status"] == "healthy"


class TestLoanFlow:
    """End-to-end loan lifecycle"""

    def test_create_and_get(self, client):
        loan = _create_loan(client, purpose="Equipment")
        assert loan["status"] == "pending"
        assert loan["remaining_balance"] == "10000.00"
        assert loan["installment_amount"] == "888.49"

        r = client.get(f"/loans/{loan['id']}")
        assert r.status_code == 200
        assert r.json()["purpose"] == "Equipment"

    def test_approve_and_pay(self, client):
        loan = _active_loan(client)
        assert loan["status"] == "active"
        assert loan["next_due_date"] is not None
        assert loan["is_overdue"] is False

        r = client.post(f"/loans/{loan['id']}/payments", json={
            "amount": "888.49",
            "payment_method": "cash"
        }, headers={"X-Actor-Id": "teller-1"})
        assert r.status_code == 201
        data = r.json()
        assert data["loan"]["remaining_balance"] == "9111.51"
        assert data["payment"]["processed_by"] == "teller-1"
        assert data["paid_off"] is False

        payments = client.get(f"/loans/{loan['id']}/payments").json()["payments"]
        assert len(payments) == 1

        check = client.get(f"/loans/{loan['id']}/balance-check").json()
        assert check["consistent"] is True

    def test_list_loans(self, client):
        _create_loan(client)
        _active_loan(client)
        _create_loan(client, client_id="client-2")

        assert len(client.get("/loans").json()["loans"]) == 3
        assert len(client.get("/loans", params={"client_id": "client-2"}).json()["loans"]) == 1
        assert len(client.get("/loans", params={"status": "active"}).json()["loans"]) == 1

    def test_reject(self, client):
        loan = _create_loan(client)
        r = client.post(f"/loans/{loan['id']}/reject", json={"notes": "Incomplete file"}, headers=OFFICER)
        assert r.status_code == 200
        assert r.json()["status"] == "rejected"

    def test_delete(self, client):
        loan = _create_loan(client)
        assert client.delete(f"/loans/{loan['id']}").status_code == 200
        assert client.get(f"/loans/{loan['id']}").status_code == 404


class TestErrorMapping:
    """LendingError kinds map to HTTP status codes"""

    def test_validation_error(self, client):
        r = client.post("/loans", json={
            "client_id": "client-1", "loan_amount": "-1", "interest_rate": "5", "term_months": 12
        })
        assert r.status_code == 400
        assert r.json()["error"]["kind"] == "validation"

    def test_not_found(self, client):
        r = client.get("/loans/does-not-exist")
        assert r.status_code == 404
        assert r.json()["error"]["details"]["entity_id"] == "does-not-exist"

    def test_conflict_on_second_approval(self, client):
        loan = _active_loan(client)
        r = client.post(f"/loans/{loan['id']}/approve", json={"approved_amount": "10000.00"}, headers=OFFICER)
        assert r.status_code == 409

    def test_domain_error_on_paid_off_loan(self, client):
        loan = _active_loan(client)
        body = {"amount": "10000.00", "payment_method": "cash"}
        assert client.post(f"/loans/{loan['id']}/payments", json=body).json()["paid_off"] is True

        r = client.post(f"/loans/{loan['id']}/payments", json=body)
        assert r.status_code == 422
        assert r.json()["error"]["kind"] == "domain"

    def test_malformed_body_is_a_validation_error(self, client):
        r = client.post("/loans", json={
            "client_id": "client-1", "loan_amount": "1000", "interest_rate": "5", "term_months": "twelve"
        })
        assert r.status_code == 400
        error = r.json()["error"]
        assert error["kind"] == "validation"
        assert error["details"]["errors"][0]["loc"][-1] == "term_months"

    def test_missing_field_is_a_validation_error(self, client):
        loan = _active_loan(client)
        r = client.post(f"/loans/{loan['id']}/payments", json={"amount": "10.00"})
        assert r.status_code == 400
        assert r.json()["error"]["kind"] == "validation"

    def test_malformed_amount_string(self, client):
        r = client.post("/loans", json={
            "client_id": "client-1", "loan_amount": "1e3", "interest_rate": "5", "term_months": 12
        })
        assert r.status_code == 400
        assert client.get("/loans").json()["loans"] == []

    def test_approval_requires_actor(self, client):
        loan = _create_loan(client)
        r = client.post(f"/loans/{loan['id']}/approve", json={"approved_amount": "100"})
        assert r.status_code == 400


class TestPaymentEndpoints:

    def test_scheduled_payment_lifecycle(self, client):
        loan = _active_loan(client)
        tomorrow = (utc_today() + timedelta(days=1)).isoformat()
        r = client.post(f"/loans/{loan['id']}/scheduled-payments", json={
            "amount": "500.00",
            "payment_date": tomorrow,
            "payment_method": "online",
            "reference_number": "WEB-42"
        })
        assert r.status_code == 201
        payment = r.json()
        assert payment["status"] == "pending"

        r = client.post(f"/payments/{payment['id']}/complete")
        assert r.status_code == 200
        assert r.json()["loan"]["remaining_balance"] == "9500.00"

    def test_reverse_payment(self, client):
        loan = _active_loan(client)
        payment = client.post(f"/loans/{loan['id']}/payments", json={
            "amount": "888.49", "payment_method": "cash"
        }).json()["payment"]

        assert client.delete(f"/payments/{payment['id']}").status_code == 400

        r = client.delete(f"/payments/{payment['id']}", headers={"X-Actor-Id": "admin"})
        assert r.status_code == 200
        assert r.json()["loan"]["remaining_balance"] == "10000.00"
        assert client.get(f"/payments/{payment['id']}").status_code == 404

    def test_cancel_scheduled(self, client):
        loan = _active_loan(client)
        tomorrow = (utc_today() + timedelta(days=1)).isoformat()
        client.post(f"/loans/{loan['id']}/scheduled-payments", json={
            "amount": "100.00", "payment_date": tomorrow, "payment_method": "cash"
        })
        r = client.post(f"/loans/{loan['id']}/scheduled-payments/cancel")
        assert r.json()["cancelled"] == 1

    def test_audit_integrity(self, client):
        _active_loan(client)
        data = client.get("/audit/integrity").json()
        assert data["enabled"] is True
        assert data["valid"] is True
        assert data["total_events"] == 2
