"""Unit tests for the checkout HTTP clients.

``httpx.AsyncClient.request`` is monkeypatched so the tests check what the
clients send (headers, retries) and how they map responses, without any
network.
"""

from decimal import Decimal

import httpx
import pytest

from apps.checkout import http_adapters
from apps.checkout.domain import BillingIdentity, Parcel, ShippingAddress, ShippingSelection
from apps.checkout.http_adapters import (
    CircuitBreaker,
    HttpOrderServiceClient,
    HttpPaymentBackend,
    HttpShippingClient,
)
from gateway.middleware import REQUEST_ID_CTX

BILLING = BillingIdentity(name="Jane Doe", email="jane@example.com")


class DummyResp:
    """Minimal httpx-like response stub for adapter tests."""

    def __init__(self, status_code=200, json_data=None):
        self.status_code = status_code
        self._json = json_data if json_data is not None else {}

    def raise_for_status(self):
        if self.status_code >= 400:
            raise httpx.HTTPStatusError("err", request=None, response=None)

    def json(self):
        return self._json


@pytest.fixture(autouse=True)
def fast_retries(settings):
    settings.HTTP_RETRY_MAX = 3
    settings.HTTP_RETRY_BACKOFF_BASE = 0.0
    for cb in (http_adapters._orders_cb, http_adapters._payments_cb, http_adapters._shipping_cb):
        cb.on_success()


def patch_request(monkeypatch, responder):
    calls = []

    async def fake_request(self, method, url, json=None, params=None, headers=None, **kw):
        calls.append({"method": method, "url": url, "json": json, "params": params, "headers": dict(headers or {})})
        result = responder(len(calls), method, url)
        if isinstance(result, Exception):
            raise result
        return result

    monkeypatch.setattr(httpx.AsyncClient, "request", fake_request, raising=True)
    return calls


@pytest.mark.asyncio
async def test_create_order_sends_idempotency_key_and_request_id(monkeypatch):
    calls = patch_request(monkeypatch, lambda n, m, u: DummyResp(201, {"id": 7}))
    token = REQUEST_ID_CTX.set("req-123")
    try:
        order = await HttpOrderServiceClient(base_url="http://orders").create_order({"total": "59.99"}, "idem-1")
    finally:
        REQUEST_ID_CTX.reset(token)

    assert order == {"id": 7}
    assert calls[0]["url"] == "http://orders/orders"
    assert calls[0]["headers"]["Idempotency-Key"] == "idem-1"
    assert calls[0]["headers"]["X-Request-ID"] == "req-123"


@pytest.mark.asyncio
async def test_create_order_replay_200_is_success(monkeypatch):
    patch_request(monkeypatch, lambda n, m, u: DummyResp(200, {"id": 7}))
    assert await HttpOrderServiceClient(base_url="http://orders").create_order({}, "idem-1") == {"id": 7}


@pytest.mark.asyncio
async def test_create_order_is_never_retried_on_5xx(monkeypatch):
    calls = patch_request(monkeypatch, lambda n, m, u: DummyResp(503))
    with pytest.raises(httpx.HTTPStatusError):
        await HttpOrderServiceClient(base_url="http://orders").create_order({}, "idem-1")
    assert len(calls) == 1


@pytest.mark.asyncio
async def test_create_order_conflict_raises(monkeypatch):
    calls = patch_request(monkeypatch, lambda n, m, u: DummyResp(409, {"detail": "IDEMPOTENCY_CONFLICT"}))
    with pytest.raises(httpx.HTTPStatusError):
        await HttpOrderServiceClient(base_url="http://orders").create_order({}, "idem-1")
    assert len(calls) == 1


@pytest.mark.asyncio
async def test_create_order_network_error_propagates(monkeypatch):
    calls = patch_request(monkeypatch, lambda n, m, u: httpx.ConnectError("boom"))
    with pytest.raises(httpx.ConnectError):
        await HttpOrderServiceClient(base_url="http://orders").create_order({}, "idem-1")
    assert len(calls) == 1


@pytest.mark.asyncio
async def test_safekey_status_poll_retries_on_5xx(monkeypatch):
    def responder(n, method, url):
        if n == 1:
            return DummyResp(500)
        return DummyResp(200, {"payment_id": "sk_1", "status": "completed"})

    calls = patch_request(monkeypatch, responder)
    result = await HttpPaymentBackend(base_url="http://payments").get_safekey_status("sk_1")
    assert result["status"] == "completed"
    assert len(calls) == 2
    assert calls[1]["headers"]["X-Retry-Count"] == "1"


@pytest.mark.asyncio
async def test_read_gives_up_after_max_attempts(monkeypatch):
    calls = patch_request(monkeypatch, lambda n, m, u: httpx.ReadTimeout("slow"))
    with pytest.raises(httpx.ReadTimeout):
        await HttpPaymentBackend(base_url="http://payments").verify_crypto_payment("stripe", "c_1")
    assert len(calls) == 3


@pytest.mark.asyncio
async def test_money_moving_post_is_sent_once(monkeypatch):
    calls = patch_request(monkeypatch, lambda n, m, u: httpx.ConnectError("boom"))
    with pytest.raises(httpx.ConnectError):
        await HttpPaymentBackend(base_url="http://payments").process_google_pay("tok", Decimal("59.99"), "USD", BILLING)
    assert len(calls) == 1


@pytest.mark.asyncio
async def test_decline_maps_to_unsuccessful_result(monkeypatch):
    calls = patch_request(monkeypatch, lambda n, m, u: DummyResp(402, {"detail": "Insufficient funds"}))
    result = await HttpPaymentBackend(base_url="http://payments").process_apple_pay(
        {"paymentData": "x"}, Decimal("59.99"), "USD", BILLING
    )
    assert result == {"success": False, "error": "Insufficient funds"}
    assert calls[0]["json"]["amount"] == "59.99"
    assert calls[0]["url"] == "http://payments/apple-pay/payments"


@pytest.mark.asyncio
async def test_payment_intent_failure_raises(monkeypatch):
    patch_request(monkeypatch, lambda n, m, u: DummyResp(400, {"detail": "Invalid amount"}))
    with pytest.raises(ValueError) as e:
        await HttpPaymentBackend(base_url="http://payments").create_payment_intent(Decimal("0"), "USD", BILLING)
    assert str(e.value) == "Invalid amount"


@pytest.mark.asyncio
async def test_exchange_rates_are_keyed_by_coin(monkeypatch):
    body = {"rates": [{"cryptocurrency": "bitcoin", "rate": "45000"}, {"cryptocurrency": "usdc", "rate": "1.00"}]}
    calls = patch_request(monkeypatch, lambda n, m, u: DummyResp(200, body))
    rates = await HttpPaymentBackend(base_url="http://payments").get_crypto_exchange_rates("USD")
    assert rates == {"bitcoin": "45000", "usdc": "1.00"}
    assert calls[0]["params"] == {"currency": "USD"}


@pytest.mark.asyncio
async def test_shipping_rates_are_parsed(monkeypatch):
    body = {"rates": [{"carrier": "USPS", "service": "Ground", "rate": "9.99", "estimated_days": 3}]}
    calls = patch_request(monkeypatch, lambda n, m, u: DummyResp(200, body))
    address = ShippingAddress(
        first_name="Jane", last_name="Doe", address1="1 Main St", city="Napa", state="CA", postal_code="94559"
    )
    parcel = Parcel(length=Decimal("10"), width=Decimal("8"), height=Decimal("4"), weight=Decimal("2"))

    rates = await HttpShippingClient(base_url="http://shipping").get_rates({"city": "Napa"}, address, parcel)

    assert rates == [ShippingSelection("USPS", "Ground", Decimal("9.99"), 3)]
    assert calls[0]["json"]["address_to"]["postal_code"] == "94559"
    assert calls[0]["json"]["parcel"]["weight"] == "2"


@pytest.mark.asyncio
async def test_open_circuit_short_circuits(monkeypatch, settings):
    calls = patch_request(monkeypatch, lambda n, m, u: DummyResp(200, {}))
    cb = http_adapters._shipping_cb
    for _ in range(cb.fail_threshold):
        cb.on_failure()
    try:
        with pytest.raises(RuntimeError) as e:
            address = ShippingAddress(
                first_name="Jane", last_name="Doe", address1="1 Main St", city="Napa", state="CA", postal_code="94559"
            )
            parcel = Parcel(length=Decimal("1"), width=Decimal("1"), height=Decimal("1"), weight=Decimal("1"))
            await HttpShippingClient(base_url="http://shipping").get_rates({}, address, parcel)
        assert str(e.value) == "CIRCUIT_OPEN"
        assert calls == []
    finally:
        cb.on_success()


def test_circuit_breaker_half_open_probe(monkeypatch):
    now = {"t": 100.0}
    monkeypatch.setattr(http_adapters.time, "monotonic", lambda: now["t"])
    cb = CircuitBreaker("test", fail_threshold=2, reset_timeout=10)

    cb.on_failure()
    assert cb.state == "CLOSED"
    cb.on_failure()
    assert cb.state == "OPEN"

    now["t"] += 10
    assert cb.before_call() == "HALF_OPEN"
    with pytest.raises(RuntimeError) as e:
        cb.before_call()
    assert str(e.value) == "CIRCUIT_HALF_OPEN_BUSY"

    cb.on_failure()
    assert cb.state == "OPEN"
    now["t"] += 10
    cb.before_call()
    cb.on_success()
    assert cb.state == "CLOSED"
