"""Payment backend API built with FastAPI.

This module plays the provider-facing side of the storefront checkout: card
payment intents, SafeKey mobile authorizations, Apple Pay / Google Pay
charges and cryptocurrency charges. Nothing here talks to a real provider;
payments are recorded through ``repo.PaymentsRepo`` so the checkout can
poll them, and the ``approve``/``decline``/``confirm`` endpoints stand in
for the customer's phone and the blockchain.

Pending SafeKey authorizations and crypto charges expire; a poll after the
expiry reports ``expired``.
"""

import logging
import os
import secrets
import time
import uuid
from datetime import timedelta
from decimal import Decimal
from typing import Annotated, Any, Literal, Optional
from urllib.parse import urlparse

from fastapi import Body, FastAPI, Header, HTTPException, Query, Request
from pydantic import BaseModel, Field, constr, field_validator
from pythonjsonlogger import jsonlogger
from sqlalchemy import select, text
from sqlalchemy.exc import IntegrityError

from repo import IdempotencyKey, PaymentsRepo, canonical_hash, engine, get_session, utcnow

app = FastAPI(title="Payments Service")

Currency = constr(pattern=r"^[A-Z]{3}$")
Amount = Annotated[Decimal, Field(gt=0, max_digits=12, decimal_places=2)]
CryptoCurrency = Literal["bitcoin", "ethereum", "usdc", "litecoin"]

EXCHANGE_RATES = {
    "bitcoin": Decimal("45000"),
    "ethereum": Decimal("3200"),
    "usdc": Decimal("1.00"),
    "litecoin": Decimal("100"),
}
RATES_CURRENCY = "USD"
CHARGE_TTL_MINUTES = {"stripe": 15, "coinbase": 60}
WALLET_PREFIXES = {"bitcoin": "1", "ethereum": "0x", "usdc": "0x", "litecoin": "L"}
SAFEKEY_AUTH_WINDOW_SECS = int(os.getenv("SAFEKEY_AUTH_WINDOW_SECS", "300"))
MERCHANT_DISPLAY_NAME = os.getenv("MERCHANT_DISPLAY_NAME", "Storefront")


@app.on_event("startup")
def _startup_db():
    # wait briefly until the DB accepts connections
    deadline = time.time() + 30
    while True:
        try:
            with engine.connect() as conn:
                conn.execute(text("select 1"))
            break
        except Exception:
            if time.time() > deadline:
                raise
            time.sleep(1)


logger = logging.getLogger("payments")
if not logger.handlers:
    h = logging.StreamHandler()
    h.setFormatter(jsonlogger.JsonFormatter("%(asctime)s %(levelname)s %(name)s %(message)s %(request_id)s"))
    logger.addHandler(h)
    logger.setLevel(logging.INFO)


class BillingIn(BaseModel):
    name: str = Field(min_length=2, max_length=50)
    email: str = Field(min_length=5, max_length=50)


class IntentRequest(BaseModel):
    """Request body for a card payment intent.

    Attributes:
        amount: Positive amount in major units (e.g. ``"59.99"``).
        currency: Three-letter ISO currency code.
        billing: Optional cardholder identity.
    """

    amount: Amount
    currency: Currency
    billing: Optional[BillingIn] = None


class SafeKeyRequest(BaseModel):
    amount: Amount
    currency: Currency
    mobile_number: str
    card_number: str
    billing: Optional[BillingIn] = None

    @field_validator("mobile_number")
    @classmethod
    def _mobile(cls, v: str) -> str:
        digits = v.replace(" ", "").replace("-", "").removeprefix("+")
        if not digits.isdigit() or not 10 <= len(digits) <= 15:
            raise ValueError("INVALID_MOBILE_NUMBER")
        return digits

    @field_validator("card_number")
    @classmethod
    def _card(cls, v: str) -> str:
        digits = v.replace(" ", "")
        if not digits.isdigit() or not 13 <= len(digits) <= 19:
            raise ValueError("INVALID_CARD_NUMBER")
        return digits


class MerchantValidationRequest(BaseModel):
    validation_url: str
    domain_name: str = Field(min_length=1)


class WalletPaymentRequest(BaseModel):
    """Apple Pay / Google Pay charge; ``token`` is the wallet payment token."""

    token: Any
    amount: Amount
    currency: Currency
    billing: Optional[BillingIn] = None

    @field_validator("token")
    @classmethod
    def _token(cls, v):
        if v in (None, "", {}, []):
            raise ValueError("MISSING_TOKEN")
        return v


class CryptoPaymentRequest(BaseModel):
    amount: Amount
    currency: Currency
    cryptocurrency: CryptoCurrency
    billing: Optional[BillingIn] = None


class CryptoVerifyRequest(BaseModel):
    provider: Literal["stripe", "coinbase"]
    payment_id: str = Field(min_length=1)


class CryptoConfirmRequest(BaseModel):
    transaction_hash: Optional[str] = None


def _cents(amount: Decimal) -> int:
    return int(amount * 100)


def _wallet_address(cryptocurrency: str) -> str:
    return f"{WALLET_PREFIXES[cryptocurrency]}{secrets.token_hex(16)}"


def _safekey_view(p: dict) -> dict:
    details = p["details"]
    body = {
        "payment_id": p["id"],
        "status": p["status"],
        "auth_reference": details.get("auth_reference", ""),
        "expires_at": p["expires_at"],
    }
    if details.get("message"):
        body["message"] = details["message"]
    return body


def _new_intent(req: IntentRequest) -> dict:
    intent_id = f"pi_{uuid.uuid4().hex[:24]}"
    payment = PaymentsRepo().create(
        intent_id,
        kind="intent",
        status="requires_payment_method",
        amount_cents=_cents(req.amount),
        currency=req.currency,
        details={"client_secret": f"{intent_id}_secret_{secrets.token_hex(12)}"},
    )
    logger.info("payment intent created", extra={"payment_id": intent_id})
    return payment


def _intent_view(p: dict) -> dict:
    return {
        "id": p["id"],
        "client_secret": p["details"]["client_secret"],
        "amount": str(Decimal(p["amount_cents"]) / 100),
        "currency": p["currency"],
        "status": p["status"],
    }


@app.get("/health")
def health():
    """Liveness/health probe endpoint."""
    return {"ok": True}


@app.post("/payment-intents", status_code=201)
def create_payment_intent(
    req: IntentRequest,
    idempotency_key: Annotated[Optional[str], Header(alias="Idempotency-Key")] = None,
):
    """Create a card payment intent the client confirms with the card SDK.

    When an ``Idempotency-Key`` header is given, a retry with the same payload
    returns the intent created first; a different payload gets 409.
    """
    payload_hash = canonical_hash(req.model_dump(mode="json"))

    if not idempotency_key:
        return _intent_view(_new_intent(req))

    with get_session() as s:
        try:
            s.add(IdempotencyKey(key=idempotency_key, request_hash=payload_hash))
            s.commit()
        except IntegrityError:
            s.rollback()
            rec = s.execute(
                select(IdempotencyKey).where(IdempotencyKey.key == idempotency_key).with_for_update()
            ).scalars().first()
            if not rec:
                raise HTTPException(status_code=500, detail="IDEMPOTENCY_LOOKUP_ERROR")
            if rec.request_hash != payload_hash:
                raise HTTPException(status_code=409, detail="IDEMPOTENCY_CONFLICT")
            if rec.payment_id:
                return _intent_view(PaymentsRepo().get(rec.payment_id))

        intent = _new_intent(req)
        rec = s.get(IdempotencyKey, idempotency_key)
        rec.payment_id = intent["id"]
        s.add(rec)
        s.commit()
        return _intent_view(intent)


# ---------------- SafeKey ---------------- #

@app.post("/safekey/payments", status_code=201)
def create_safekey_payment(req: SafeKeyRequest):
    """Start a SafeKey payment; the customer authorizes it on their phone."""
    payment_id = f"safekey_{int(time.time() * 1000)}_{secrets.token_hex(5)}"
    payment = PaymentsRepo().create(
        payment_id,
        kind="safekey",
        status="pending_authorization",
        amount_cents=_cents(req.amount),
        currency=req.currency,
        details={
            "auth_reference": f"auth_{secrets.token_hex(6)}",
            "mobile_masked": "*" * (len(req.mobile_number) - 4) + req.mobile_number[-4:],
            "card_last4": req.card_number[-4:],
        },
        expires_at=utcnow() + timedelta(seconds=SAFEKEY_AUTH_WINDOW_SECS),
    )
    logger.info("safekey payment pending", extra={"payment_id": payment_id})
    return {"success": True, **_safekey_view(payment)}


@app.get("/safekey/payments/{payment_id}")
def get_safekey_payment(payment_id: str):
    payment = PaymentsRepo().get(payment_id, kind="safekey")
    if payment is None:
        raise HTTPException(status_code=404, detail="NOT_FOUND")
    return _safekey_view(payment)


def _settle_safekey(payment_id: str, status: str, **details) -> dict:
    repo = PaymentsRepo()
    if repo.get(payment_id, kind="safekey") is None:
        raise HTTPException(status_code=404, detail="NOT_FOUND")
    payment = repo.transition(payment_id, "pending", status, **details)
    if payment is None:
        raise HTTPException(status_code=409, detail="NOT_PENDING")
    logger.info("safekey payment settled", extra={"payment_id": payment_id, "status": status})
    return _safekey_view(payment)


@app.post("/safekey/payments/{payment_id}/approve")
def approve_safekey_payment(payment_id: str):
    """Simulate the customer approving the push notification."""
    return _settle_safekey(payment_id, "completed")


@app.post("/safekey/payments/{payment_id}/decline")
def decline_safekey_payment(payment_id: str):
    return _settle_safekey(payment_id, "declined", message="Declined on device")


# ---------------- Wallets ---------------- #

@app.post("/apple-pay/validate-merchant")
def validate_apple_pay_merchant(req: MerchantValidationRequest):
    """Return an opaque merchant session for the Apple Pay sheet.

    The validation URL handed to the browser must be an https URL on an
    ``apple.com`` host.
    """
    url = urlparse(req.validation_url)
    host = url.hostname or ""
    if url.scheme != "https" or not (host == "apple.com" or host.endswith(".apple.com")):
        raise HTTPException(status_code=400, detail="INVALID_VALIDATION_URL")
    now_ms = int(time.time() * 1000)
    return {
        "merchantSessionIdentifier": uuid.uuid4().hex,
        "domainName": req.domain_name,
        "displayName": MERCHANT_DISPLAY_NAME,
        "nonce": secrets.token_hex(8),
        "epochTimestamp": now_ms,
        "expiresAt": now_ms + 3_600_000,
    }


def _wallet_charge(kind: str, prefix: str, req: WalletPaymentRequest) -> dict:
    transaction_id = f"{prefix}_{int(time.time() * 1000)}_{secrets.token_hex(5)}"
    PaymentsRepo().create(
        transaction_id,
        kind=kind,
        status="completed",
        amount_cents=_cents(req.amount),
        currency=req.currency,
        details={},
    )
    logger.info("wallet payment captured", extra={"payment_id": transaction_id, "wallet": kind})
    return {"success": True, "transaction_id": transaction_id, "payment_method": kind}


@app.post("/apple-pay/payments", status_code=201)
def process_apple_pay(req: WalletPaymentRequest):
    return _wallet_charge("apple_pay", "apple_pay", req)


@app.post("/google-pay/payments", status_code=201)
def process_google_pay(req: WalletPaymentRequest):
    return _wallet_charge("google_pay", "google_pay", req)


# ---------------- Crypto ---------------- #

@app.get("/crypto/exchange-rates")
def crypto_exchange_rates(currency: str = Query(default=RATES_CURRENCY)):
    if currency != RATES_CURRENCY:
        raise HTTPException(status_code=400, detail="UNSUPPORTED_CURRENCY")
    return {
        "currency": currency,
        "rates": [{"cryptocurrency": coin, "rate": str(rate)} for coin, rate in EXCHANGE_RATES.items()],
    }


@app.post("/crypto/{provider}/payments", status_code=201)
def create_crypto_payment(provider: str, req: CryptoPaymentRequest):
    """Create a pending crypto charge with a wallet address and expiry.

    Charges processed by ``stripe`` expire after 15 minutes, ``coinbase``
    charges after 60.
    """
    if provider not in CHARGE_TTL_MINUTES:
        raise HTTPException(status_code=404, detail="UNKNOWN_PROVIDER")
    if req.currency != RATES_CURRENCY:
        raise HTTPException(status_code=400, detail="UNSUPPORTED_CURRENCY")

    rate = EXCHANGE_RATES[req.cryptocurrency]
    payment_id = f"{provider}_crypto_{int(time.time() * 1000)}_{secrets.token_hex(5)}"
    payment = PaymentsRepo().create(
        payment_id,
        kind="crypto",
        status="pending",
        amount_cents=_cents(req.amount),
        currency=req.currency,
        provider=provider,
        details={
            "cryptocurrency": req.cryptocurrency,
            "crypto_amount": str((req.amount / rate).quantize(Decimal("0.00000001"))),
            "exchange_rate": str(rate),
            "wallet_address": _wallet_address(req.cryptocurrency),
        },
        expires_at=utcnow() + timedelta(minutes=CHARGE_TTL_MINUTES[provider]),
    )
    logger.info("crypto payment pending", extra={"payment_id": payment_id, "provider": provider})
    return {
        "success": True,
        "payment_id": payment_id,
        "status": payment["status"],
        "provider": provider,
        "expires_at": payment["expires_at"],
        **payment["details"],
    }


@app.post("/crypto/verify")
def verify_crypto_payment(req: CryptoVerifyRequest):
    payment = PaymentsRepo().get(req.payment_id, kind="crypto")
    if payment is None or payment["provider"] != req.provider:
        raise HTTPException(status_code=404, detail="NOT_FOUND")
    body = {
        "payment_id": payment["id"],
        "status": payment["status"],
        "transaction_hash": payment["details"].get("transaction_hash", ""),
    }
    if payment["status"] == "expired":
        body["error"] = "Payment expired"
    elif payment["status"] == "pending":
        body["error"] = "Payment not completed"
    return body


@app.post("/crypto/payments/{payment_id}/confirm")
def confirm_crypto_payment(payment_id: str, req: Annotated[Optional[CryptoConfirmRequest], Body()] = None):
    """Simulate the transfer landing on chain."""
    repo = PaymentsRepo()
    if repo.get(payment_id, kind="crypto") is None:
        raise HTTPException(status_code=404, detail="NOT_FOUND")
    tx_hash = (req.transaction_hash if req else None) or f"0x{secrets.token_hex(32)}"
    payment = repo.transition(payment_id, "pending", "completed", transaction_hash=tx_hash)
    if payment is None:
        raise HTTPException(status_code=409, detail="NOT_PENDING")
    logger.info("crypto payment confirmed", extra={"payment_id": payment_id})
    return {"payment_id": payment_id, "status": payment["status"], "transaction_hash": tx_hash}


@app.middleware("http")
async def add_request_id(request: Request, call_next):
    rid = request.headers.get("X-Request-ID") or str(uuid.uuid4())
    request.state.request_id = rid
    try:
        response = await call_next(request)
    finally:
        logger.info("request handled", extra={"request_id": rid, "path": request.url.path, "method": request.method})
    response.headers["X-Request-ID"] = rid
    return response
