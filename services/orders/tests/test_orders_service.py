"""API tests for the orders service against a throwaway SQLite database.

The service modules are imported fresh for every test with ``DATABASE_URL``
pointing at a temporary file, the way the service reads it in production.
"""

import importlib
import sys
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

SERVICE_DIR = Path(__file__).resolve().parents[1]


@pytest.fixture
def client(tmp_path, monkeypatch):
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path / 'orders.db'}")
    monkeypatch.syspath_prepend(str(SERVICE_DIR))
    for name in ("main", "repo"):
        sys.modules.pop(name, None)
    main = importlib.import_module("main")
    with TestClient(main.app) as c:
        yield c
    for name in ("main", "repo"):
        sys.modules.pop(name, None)


def order_payload(**overrides):
    payload = {
        "items": [{"product_id": 1, "name": "Shirt", "unit_price": "25.00", "quantity": 2}],
        "subtotal": "50.00",
        "total": "59.99",
        "currency": "USD",
        "shipping_address": {
            "first_name": "Jane",
            "last_name": "Doe",
            "address1": "1 Main St",
            "city": "Napa",
            "state": "CA",
            "postal_code": "94559",
            "country": "US",
        },
        "shipping_rate": {"carrier": "USPS", "service": "Ground", "rate": "9.99", "estimated_days": 3},
        "billing": {"name": "Jane Doe", "email": "jane@example.com"},
        "payment_method": "stripe",
        "payment_details": {"provider_reference": "pi_123", "status": "succeeded"},
    }
    payload.update(overrides)
    return payload


def test_health(client):
    assert client.get("/health").json() == {"ok": True}


def test_create_and_read_order(client):
    r = client.post("/orders", json=order_payload(), headers={"X-Request-ID": "rid-1"})
    assert r.status_code == 201
    assert r.headers["X-Request-ID"] == "rid-1"
    body = r.json()
    assert body["status"] == "confirmed"
    assert body["total"] == "59.99"
    assert body["payment_details"]["provider_reference"] == "pi_123"

    r2 = client.get(f"/orders/{body['id']}")
    assert r2.status_code == 200
    assert r2.json()["public_id"] == body["public_id"]


def test_unknown_order_is_404(client):
    r = client.get("/orders/999")
    assert r.status_code == 404
    assert r.json()["detail"] == "NOT_FOUND"


def test_idempotent_replay_returns_same_order(client):
    headers = {"Idempotency-Key": "checkout-key-1"}
    r1 = client.post("/orders", json=order_payload(), headers=headers)
    assert r1.status_code == 201
    assert "Idempotent-Replay" not in r1.headers

    r2 = client.post("/orders", json=order_payload(), headers=headers)
    assert r2.status_code == 200
    assert r2.headers.get("Idempotent-Replay") == "true"
    assert r2.json()["id"] == r1.json()["id"]


def test_idempotency_conflict_on_different_payload(client):
    headers = {"Idempotency-Key": "checkout-key-2"}
    assert client.post("/orders", json=order_payload(), headers=headers).status_code == 201

    other = order_payload(payment_details={"provider_reference": "pi_other"})
    r = client.post("/orders", json=other, headers=headers)
    assert r.status_code == 409
    assert r.json()["detail"] == "IDEMPOTENCY_CONFLICT"


def test_orders_without_key_are_not_deduplicated(client):
    first = client.post("/orders", json=order_payload()).json()
    second = client.post("/orders", json=order_payload()).json()
    assert first["id"] != second["id"]


def test_total_must_match_items_and_shipping(client):
    r = client.post("/orders", json=order_payload(total="50.00"))
    assert r.status_code == 422


@pytest.mark.parametrize(
    "overrides",
    [
        {"items": []},
        {"payment_method": "paypal"},
        {"payment_details": {}},
        {"currency": "usd"},
    ],
)
def test_invalid_payloads_are_rejected(client, overrides):
    assert client.post("/orders", json=order_payload(**overrides)).status_code == 422
