"""In-process stub adapters for the checkout ports.

These stubs implement ``OrderServicePort``, ``ShippingServicePort`` and
``PaymentBackend`` without any network calls. They are intended for unit
tests and local development where deterministic behavior is useful and the
downstream services are not running.
"""

import itertools
import uuid
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Dict, List

from .domain import (
    BillingIdentity,
    OrderServicePort,
    Parcel,
    ShippingAddress,
    ShippingSelection,
    ShippingServicePort,
)

EXCHANGE_RATES = {
    "bitcoin": Decimal("45000"),
    "ethereum": Decimal("3200"),
    "usdc": Decimal("1.00"),
    "litecoin": Decimal("100"),
}
CHARGE_TTL_MINUTES = {"stripe": 15, "coinbase": 60}


class OrderServiceStub(OrderServicePort):
    """Records orders in memory and deduplicates on the idempotency key.

    ``calls`` keeps every ``create_order`` invocation so tests can assert how
    often the order service was reached.
    """

    def __init__(self):
        self.calls: List[dict] = []
        self.orders: Dict[str, dict] = {}
        self._ids = itertools.count(1)

    async def create_order(self, payload: dict, idempotency_key: str) -> dict:
        self.calls.append({"payload": payload, "idempotency_key": idempotency_key})
        if idempotency_key in self.orders:
            return self.orders[idempotency_key]
        order = {"id": next(self._ids), "status": "confirmed", **payload}
        self.orders[idempotency_key] = order
        return order


class ShippingServiceStub(ShippingServicePort):
    """Quotes a single flat USPS Ground rate."""

    RATES = [ShippingSelection(carrier="USPS", service="Ground", rate=Decimal("9.99"), estimated_days=3)]

    async def get_rates(self, from_address: dict, to_address: ShippingAddress, parcel: Parcel) -> List[ShippingSelection]:
        return list(self.RATES)


class PaymentBackendStub:
    """Deterministic ``PaymentBackend``.

    SafeKey payments report ``completed`` once they have been polled
    ``safekey_polls_to_complete`` times, and crypto charges likewise after
    ``crypto_polls_to_complete`` verifications. Card, Apple Pay and Google
    Pay payments succeed for positive amounts.
    """

    def __init__(self, safekey_polls_to_complete: int = 1, crypto_polls_to_complete: int = 1):
        self.safekey_polls_to_complete = safekey_polls_to_complete
        self.crypto_polls_to_complete = crypto_polls_to_complete
        self.payments: Dict[str, dict] = {}

    def _reject(self, amount: Decimal) -> dict | None:
        if amount <= 0:
            return {"success": False, "error": "Invalid amount"}
        return None

    async def create_payment_intent(self, amount, currency, billing: BillingIdentity) -> dict:
        intent_id = f"pi_{uuid.uuid4().hex[:16]}"
        return {"id": intent_id, "client_secret": f"{intent_id}_secret_{uuid.uuid4().hex[:8]}"}

    async def create_safekey_payment(self, amount, currency, mobile_number, card_number, billing) -> dict:
        payment_id = f"safekey_{uuid.uuid4().hex[:12]}"
        record = {
            "payment_id": payment_id,
            "auth_reference": f"auth_{uuid.uuid4().hex[:10]}",
            "status": "pending_authorization",
            "polls": 0,
        }
        self.payments[payment_id] = record
        return {k: record[k] for k in ("payment_id", "auth_reference", "status")}

    async def get_safekey_status(self, payment_id: str) -> dict:
        record = self.payments[payment_id]
        record["polls"] += 1
        if record["polls"] >= self.safekey_polls_to_complete:
            record["status"] = "completed"
        return {"payment_id": payment_id, "status": record["status"], "auth_reference": record["auth_reference"]}

    async def validate_apple_pay_merchant(self, validation_url: str, domain_name: str) -> dict:
        return {"merchantSessionIdentifier": uuid.uuid4().hex, "domainName": domain_name}

    async def process_apple_pay(self, token, amount, currency, billing) -> dict:
        return self._reject(amount) or {"success": True, "transaction_id": f"ap_{uuid.uuid4().hex[:12]}"}

    async def process_google_pay(self, token, amount, currency, billing) -> dict:
        return self._reject(amount) or {"success": True, "transaction_id": f"gp_{uuid.uuid4().hex[:12]}"}

    async def get_crypto_exchange_rates(self, currency: str) -> dict:
        return {coin: str(rate) for coin, rate in EXCHANGE_RATES.items()}

    async def create_crypto_payment(self, provider, amount, currency, cryptocurrency, billing) -> dict:
        payment_id = f"{provider}_crypto_{uuid.uuid4().hex[:12]}"
        rate = EXCHANGE_RATES[cryptocurrency]
        expires_at = datetime.now(timezone.utc) + timedelta(minutes=CHARGE_TTL_MINUTES[provider])
        record = {
            "payment_id": payment_id,
            "status": "pending",
            "crypto_amount": str((Decimal(amount) / rate).quantize(Decimal("0.00000001"))),
            "exchange_rate": str(rate),
            "wallet_address": f"{cryptocurrency[:3]}1{uuid.uuid4().hex[:30]}",
            "expires_at": expires_at.isoformat(),
            "polls": 0,
        }
        self.payments[payment_id] = record
        return {k: v for k, v in record.items() if k != "polls"}

    async def verify_crypto_payment(self, provider: str, payment_id: str) -> dict:
        record = self.payments[payment_id]
        record["polls"] += 1
        if record["polls"] >= self.crypto_polls_to_complete:
            record["status"] = "completed"
            record.setdefault("transaction_hash", f"0x{uuid.uuid4().hex}")
        return {"payment_id": payment_id, "status": record["status"], "transaction_hash": record.get("transaction_hash", "")}
