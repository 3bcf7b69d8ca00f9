"""HTTP adapter clients with retries, circuit breakers, and context headers.

This module implements concrete async HTTP clients for the checkout ports
using ``httpx``. It adds:

- Request correlation: propagates ``X-Request-ID`` from a ContextVar set by
    the gateway middleware.
- Circuit breaker per downstream service (orders, payments, shipping) to
    avoid hammering unhealthy dependencies, with HALF_OPEN probing after a
    timeout.
- Retry policy with exponential backoff for transport errors and 5xx, applied
    to read calls only (status polls, verification, exchange rates, rate
    quotes). Calls that move money or create orders are sent exactly once.
- Order idempotency: the orders client sends the checkout session's
    ``Idempotency-Key`` header.
"""

import asyncio
import threading
import time
from decimal import Decimal
from typing import Any, List, Optional

import httpx
from django.conf import settings
from django.utils.module_loading import import_string

from .domain import BillingIdentity, OrderServicePort, Parcel, ShippingAddress, ShippingSelection, ShippingServicePort
from .schemas import ShippingRateIn

REQUEST_ID_CTX = import_string("gateway.middleware.REQUEST_ID_CTX")


# ---------------- Circuit Breaker ---------------- #

class CircuitBreaker:
    """Minimal circuit breaker with CLOSED/OPEN/HALF_OPEN states.

    Transitions:
    - CLOSED → OPEN when failures reach ``fail_threshold``.
    - OPEN → HALF_OPEN after ``reset_timeout`` seconds.
    - HALF_OPEN → CLOSED on a successful probe; only one probe may be in
      flight; a failed probe opens the circuit again.

    Guarded by a lock so the same breaker can be shared between worker
    threads, each running its own event loop.
    """

    def __init__(self, name: str, fail_threshold: int, reset_timeout: float):
        self.name = name
        self.fail_threshold = fail_threshold
        self.reset_timeout = reset_timeout
        self._lock = threading.RLock()
        self._failures = 0
        self._state = "CLOSED"  # CLOSED | OPEN | HALF_OPEN
        self._opened_at = 0.0
        self._half_open_probe_in_flight = False

    @property
    def state(self) -> str:
        with self._lock:
            if self._state == "OPEN" and (time.monotonic() - self._opened_at) >= self.reset_timeout:
                self._state = "HALF_OPEN"
                self._half_open_probe_in_flight = False
            return self._state

    def before_call(self) -> str:
        """Return the state at call time.

        Raises:
            RuntimeError: ``CIRCUIT_OPEN`` or ``CIRCUIT_HALF_OPEN_BUSY``.
        """
        with self._lock:
            st = self.state
            if st == "OPEN":
                raise RuntimeError("CIRCUIT_OPEN")
            if st == "HALF_OPEN":
                if self._half_open_probe_in_flight:
                    raise RuntimeError("CIRCUIT_HALF_OPEN_BUSY")
                self._half_open_probe_in_flight = True
            return st

    def on_success(self):
        with self._lock:
            self._failures = 0
            self._state = "CLOSED"
            self._half_open_probe_in_flight = False

    def on_failure(self):
        with self._lock:
            self._failures += 1
            if self._state == "HALF_OPEN" or (self._failures >= self.fail_threshold and self._state != "OPEN"):
                self._state = "OPEN"
                self._opened_at = time.monotonic()
                self._half_open_probe_in_flight = False

    def on_finish(self):
        with self._lock:
            if self._state == "HALF_OPEN":
                self._half_open_probe_in_flight = False


def _breaker(name: str) -> CircuitBreaker:
    return CircuitBreaker(
        name,
        getattr(settings, "HTTP_CIRCUIT_FAIL_THRESHOLD", 5),
        getattr(settings, "HTTP_CIRCUIT_RESET_TIMEOUT", 30.0),
    )


# Per-service instances
_orders_cb = _breaker("orders")
_payments_cb = _breaker("payments")
_shipping_cb = _breaker("shipping")


# ---------------- Helpers ---------------- #

def _request_headers(extra: Optional[dict] = None) -> dict:
    """Build base headers including X-Request-ID and any extras."""
    headers: dict[str, str] = {}
    rid = REQUEST_ID_CTX.get()
    if rid and rid != "-":
        headers["X-Request-ID"] = rid
    if extra:
        headers.update(extra)
    return headers


def _retry_policy():
    """Return retry configuration as (max_attempts, backoff_base_seconds)."""
    return (
        max(1, getattr(settings, "HTTP_RETRY_MAX", 3)),
        getattr(settings, "HTTP_RETRY_BACKOFF_BASE", 0.15),
    )


def _should_retry(resp: Optional[httpx.Response], exc: Optional[Exception]) -> bool:
    """Retries are attempted only on transport exceptions or HTTP 5xx."""
    if exc is not None:
        return True
    if resp is not None and 500 <= resp.status_code < 600:
        return True
    return False


def _money(value: Decimal) -> str:
    return str(value.quantize(Decimal("0.01")))


def _billing(billing: BillingIdentity) -> dict:
    return {"name": billing.name, "email": billing.email}


class _ServiceClient:
    """Base for the per-service clients.

    ``_send`` runs one request through the service's circuit breaker. With
    ``retry=True`` transport errors and 5xx are retried with exponential
    backoff; otherwise the request is attempted once. Non-5xx responses are
    returned to the caller, which maps business statuses.
    """

    breaker: CircuitBreaker
    base_url_setting: str

    def __init__(self, base_url: str | None = None, timeout: float | None = None):
        self.base_url = (base_url or getattr(settings, self.base_url_setting)).rstrip("/")
        self.timeout = timeout or getattr(settings, "HTTP_TIMEOUT_SECS", 5.0)

    async def _send(
        self,
        method: str,
        path: str,
        *,
        json: Any = None,
        params: Optional[dict] = None,
        headers: Optional[dict] = None,
        retry: bool = False,
    ) -> httpx.Response:
        max_attempts, backoff = _retry_policy() if retry else (1, 0.0)
        tries = 0

        # CIRCUIT: precheck
        state = self.breaker.before_call()
        hdrs = _request_headers({"X-Circuit-State": state, "X-Retry-Count": "0", **(headers or {})})

        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                while True:
                    resp = None
                    exc = None
                    try:
                        resp = await client.request(
                            method, f"{self.base_url}{path}", json=json, params=params, headers=hdrs
                        )
                        if not _should_retry(resp, None):
                            self.breaker.on_success()  # 4xx are business outcomes
                            return resp
                    except httpx.RequestError as e:
                        exc = e

                    tries += 1
                    hdrs["X-Retry-Count"] = str(tries)

                    if tries >= max_attempts:
                        self.breaker.on_failure()
                        if exc:
                            raise exc
                        resp.raise_for_status()

                    sleep_s = backoff * (2 ** (tries - 1))  # exponential backoff
                    cap = getattr(settings, "HTTP_RETRY_MAX_SLEEP", 0.5)
                    await asyncio.sleep(min(sleep_s, cap))
        finally:
            self.breaker.on_finish()


# ---------------- Orders Adapter ---------------- #

class HttpOrderServiceClient(_ServiceClient, OrderServicePort):
    """HTTP client for the order service. Order creation is never retried."""

    breaker = _orders_cb
    base_url_setting = "ORDERS_BASE_URL"

    async def create_order(self, payload: dict, idempotency_key: str) -> dict:
        """Create the order.

        Business mappings:
        - 201 → new order; 200 → replay of an order already created with
          this key. Both return the order body.
        - anything else raises.

        Raises:
            httpx.RequestError: For network/transport errors.
            httpx.HTTPStatusError: For any other status, including 409
                ``IDEMPOTENCY_CONFLICT``.
        """
        resp = await self._send("POST", "/orders", json=payload, headers={"Idempotency-Key": idempotency_key})
        if resp.status_code in (200, 201):
            return resp.json()
        resp.raise_for_status()
        raise httpx.HTTPStatusError(f"unexpected status {resp.status_code}", request=None, response=resp)

    async def get_order(self, order_id: int) -> Optional[dict]:
        resp = await self._send("GET", f"/orders/{order_id}", retry=True)
        if resp.status_code == 404:
            return None
        resp.raise_for_status()
        return resp.json()


# ---------------- Shipping Adapter ---------------- #

class HttpShippingClient(_ServiceClient, ShippingServicePort):
    """HTTP client for rate quotes. Quotes are reads and are retried."""

    breaker = _shipping_cb
    base_url_setting = "SHIPPING_BASE_URL"

    async def get_rates(self, from_address: dict, to_address: ShippingAddress, parcel: Parcel) -> List[ShippingSelection]:
        payload = {
            "address_from": dict(from_address),
            "address_to": {
                "first_name": to_address.first_name,
                "last_name": to_address.last_name,
                "address1": to_address.address1,
                "address2": to_address.address2,
                "city": to_address.city,
                "state": to_address.state,
                "postal_code": to_address.postal_code,
                "country": to_address.country,
                "phone": to_address.phone,
            },
            "parcel": {
                "length": str(parcel.length),
                "width": str(parcel.width),
                "height": str(parcel.height),
                "weight": str(parcel.weight),
            },
        }
        resp = await self._send("POST", "/rates", json=payload, retry=True)
        resp.raise_for_status()
        return [ShippingRateIn.model_validate(r).to_domain() for r in resp.json().get("rates", [])]


# ---------------- Payments Adapter ---------------- #

class HttpPaymentBackend(_ServiceClient):
    """HTTP client for the payment backend service.

    Charge-creating calls are sent once; a lost response surfaces as an
    error to the adapter instead of a second charge. Status polls,
    verification and exchange rates are retried.
    """

    breaker = _payments_cb
    base_url_setting = "PAYMENTS_BASE_URL"

    async def _post_once(self, path: str, payload: dict) -> dict:
        resp = await self._send("POST", path, json=payload)
        if resp.status_code in (200, 201):
            return resp.json()
        if resp.status_code in (400, 402, 409, 422):
            # declines and validation errors carry a user-facing message
            return {"success": False, "error": _error_detail(resp)}
        resp.raise_for_status()
        return resp.json()

    async def _read(self, method: str, path: str, payload: dict | None = None) -> dict:
        resp = await self._send(method, path, json=payload, retry=True)
        resp.raise_for_status()
        return resp.json()

    async def create_payment_intent(self, amount: Decimal, currency: str, billing: BillingIdentity) -> dict:
        data = await self._post_once(
            "/payment-intents", {"amount": _money(amount), "currency": currency, "billing": _billing(billing)}
        )
        if data.get("success") is False:
            raise ValueError(data.get("error") or "PAYMENT_INTENT_FAILED")
        return data

    async def create_safekey_payment(
        self, amount: Decimal, currency: str, mobile_number: str, card_number: str, billing: BillingIdentity
    ) -> dict:
        data = await self._post_once(
            "/safekey/payments",
            {
                "amount": _money(amount),
                "currency": currency,
                "mobile_number": mobile_number,
                "card_number": card_number,
                "billing": _billing(billing),
            },
        )
        if data.get("success") is False:
            raise ValueError(data.get("error") or "SAFEKEY_INITIATION_FAILED")
        return data

    async def get_safekey_status(self, payment_id: str) -> dict:
        return await self._read("GET", f"/safekey/payments/{payment_id}")

    async def validate_apple_pay_merchant(self, validation_url: str, domain_name: str) -> dict:
        resp = await self._send(
            "POST", "/apple-pay/validate-merchant", json={"validation_url": validation_url, "domain_name": domain_name}
        )
        resp.raise_for_status()
        return resp.json()

    async def process_apple_pay(self, token: Any, amount: Decimal, currency: str, billing: BillingIdentity) -> dict:
        return await self._post_once(
            "/apple-pay/payments",
            {"token": token, "amount": _money(amount), "currency": currency, "billing": _billing(billing)},
        )

    async def process_google_pay(self, token: str, amount: Decimal, currency: str, billing: BillingIdentity) -> dict:
        return await self._post_once(
            "/google-pay/payments",
            {"token": token, "amount": _money(amount), "currency": currency, "billing": _billing(billing)},
        )

    async def get_crypto_exchange_rates(self, currency: str) -> dict:
        resp = await self._send("GET", "/crypto/exchange-rates", params={"currency": currency}, retry=True)
        resp.raise_for_status()
        return {r["cryptocurrency"]: r["rate"] for r in resp.json().get("rates", [])}

    async def create_crypto_payment(
        self, provider: str, amount: Decimal, currency: str, cryptocurrency: str, billing: BillingIdentity
    ) -> dict:
        data = await self._post_once(
            f"/crypto/{provider}/payments",
            {
                "amount": _money(amount),
                "currency": currency,
                "cryptocurrency": cryptocurrency,
                "billing": _billing(billing),
            },
        )
        if data.get("success") is False:
            raise ValueError(data.get("error") or "CRYPTO_PAYMENT_FAILED")
        return data

    async def verify_crypto_payment(self, provider: str, payment_id: str) -> dict:
        return await self._read("POST", "/crypto/verify", {"provider": provider, "payment_id": payment_id})


def _error_detail(resp) -> str:
    try:
        body = resp.json()
    except ValueError:
        return f"HTTP {resp.status_code}"
    if isinstance(body, dict):
        detail = body.get("detail") or body.get("error")
        if isinstance(detail, str):
            return detail
    return f"HTTP {resp.status_code}"
