"""Payment adapters: one strategy per payment method.

Every adapter exposes ``async initiate(grand_total, billing)`` and returns a
``PaymentOutcome``. Provider and network errors are caught here and
normalized; nothing provider-specific escapes to the orchestrator.

The adapters differ in shape:

- ``StripeAdapter``: server-created payment intent, then one SDK
  confirmation call.
- ``SquareAdapter``: one card tokenization round trip.
- ``SafeKeyAdapter``: server initiation, then polling of the authorization
  status until the phone approves or the window closes.
- ``ApplePayAdapter``: a provider session driving two callbacks (merchant
  validation, payment authorization) plus a cancel callback.
- ``GooglePayAdapter``: load tokenized payment data, then one server call.
- ``CryptoAdapter``: server creates a pending charge, then polling of the
  verify endpoint until settled, expired or the ceiling is hit.

Provider SDKs and the payment backend are injected, so each flow can be
driven by fakes in tests.
"""

import asyncio
import logging
from decimal import Decimal
from typing import Any, Awaitable, Callable, Optional, Protocol

from django.conf import settings

from .domain import BillingIdentity, ErrorKind, PaymentMethod, PaymentOutcome

logger = logging.getLogger("checkout")

CRYPTO_CURRENCIES = ("bitcoin", "ethereum", "usdc", "litecoin")
CRYPTO_PROVIDERS = ("stripe", "coinbase")


# ---- Backend port ----
class PaymentBackend(Protocol):
    """Server halves of the payment flows.

    Implemented in-process by ``adapters.PaymentBackendStub`` and over HTTP
    by ``http_adapters.HttpPaymentBackend``. Amounts are ``Decimal`` in the
    checkout currency.
    """

    async def create_payment_intent(self, amount: Decimal, currency: str, billing: BillingIdentity) -> dict: ...

    async def create_safekey_payment(
        self, amount: Decimal, currency: str, mobile_number: str, card_number: str, billing: BillingIdentity
    ) -> dict: ...

    async def get_safekey_status(self, payment_id: str) -> dict: ...

    async def validate_apple_pay_merchant(self, validation_url: str, domain_name: str) -> dict: ...

    async def process_apple_pay(self, token: Any, amount: Decimal, currency: str, billing: BillingIdentity) -> dict: ...

    async def process_google_pay(self, token: str, amount: Decimal, currency: str, billing: BillingIdentity) -> dict: ...

    async def get_crypto_exchange_rates(self, currency: str) -> dict: ...

    async def create_crypto_payment(
        self, provider: str, amount: Decimal, currency: str, cryptocurrency: str, billing: BillingIdentity
    ) -> dict: ...

    async def verify_crypto_payment(self, provider: str, payment_id: str) -> dict: ...


# ---- Provider SDK seams ----
class StripeSdk(Protocol):
    async def confirm_payment(self, client_secret: str, billing: BillingIdentity) -> dict:
        """Return ``{"payment_intent": {...}}`` or ``{"error": {"message": ...}}``."""
        ...


class SquareCard(Protocol):
    async def tokenize(self) -> dict:
        """Return ``{"status": "OK", "token": ...}`` or ``{"status": ..., "errors": [...]}``."""
        ...


class ApplePaySession(Protocol):
    """Provider-native payment sheet.

    The provider calls ``on_validate_merchant``, ``on_payment_authorized``
    and ``on_cancel`` with an event dict once ``begin()`` is called.
    """

    STATUS_SUCCESS: int
    STATUS_FAILURE: int

    on_validate_merchant: Optional[Callable[[dict], None]]
    on_payment_authorized: Optional[Callable[[dict], None]]
    on_cancel: Optional[Callable[[dict], None]]

    def begin(self) -> None: ...

    def complete_merchant_validation(self, merchant_session: dict) -> None: ...

    def complete_payment(self, status: int) -> None: ...

    def abort(self) -> None: ...


class GooglePaymentsClient(Protocol):
    async def load_payment_data(self, request: dict) -> dict: ...


class GooglePayError(Exception):
    """Raised by ``GooglePaymentsClient.load_payment_data``.

    ``status_code`` is ``"CANCELED"`` when the user closed the sheet.
    """

    def __init__(self, status_code: str, message: str = ""):
        super().__init__(message or status_code)
        self.status_code = status_code


# ---- Helpers ----
def _amount(value: Decimal) -> str:
    return str(value.quantize(Decimal("0.01")))


def _confirmed(reference: Any, label: str, **details) -> PaymentOutcome:
    """Success outcome, or a provider failure when the provider gave no reference.

    An order cannot be recorded without a provider reference, so a
    reference-less success is not treated as a captured payment.
    """
    if not reference:
        logger.warning("payment.missing_reference", extra={"flow": label})
        return PaymentOutcome.failure(f"{label} payment could not be confirmed")
    return PaymentOutcome.ok(str(reference), **details)


async def poll_until(
    check: Callable[[], Awaitable[Optional[PaymentOutcome]]],
    interval: float,
    ceiling: float,
    **timeout_details,
) -> PaymentOutcome:
    """Call ``check`` every ``interval`` seconds until it returns an outcome.

    The first check happens after one interval. When ``ceiling`` seconds
    elapse the loop is cancelled and a timeout outcome is returned; no
    check runs after that point. Cancelling the caller stops the loop too.
    """

    async def _loop() -> PaymentOutcome:
        while True:
            await asyncio.sleep(interval)
            outcome = await check()
            if outcome is not None:
                return outcome

    try:
        return await asyncio.wait_for(_loop(), timeout=ceiling)
    except asyncio.TimeoutError:
        return PaymentOutcome.timed_out(**timeout_details)


# ---- Adapters ----
class StripeAdapter:
    """Card payment through a server-created Stripe payment intent."""

    method = PaymentMethod.STRIPE

    def __init__(self, backend: PaymentBackend, sdk: StripeSdk, currency: str | None = None):
        self.backend = backend
        self.sdk = sdk
        self.currency = currency or getattr(settings, "CHECKOUT_CURRENCY", "USD")

    async def initiate(self, grand_total: Decimal, billing: BillingIdentity) -> PaymentOutcome:
        try:
            intent = await self.backend.create_payment_intent(grand_total, self.currency, billing)
            client_secret = intent["client_secret"]
        except Exception as e:
            logger.warning("payment.stripe.intent_failed", exc_info=True)
            return PaymentOutcome.failure(str(e) or "Could not start card payment")

        try:
            result = await self.sdk.confirm_payment(client_secret, billing)
        except Exception as e:
            logger.warning("payment.stripe.confirm_failed", exc_info=True)
            return PaymentOutcome.failure(str(e) or "Card payment failed")

        error = result.get("error")
        if error:
            return PaymentOutcome.failure(error.get("message") or "Card payment failed")
        payment_intent = result.get("payment_intent") or {}
        reference = payment_intent.get("id") or intent.get("id")
        return _confirmed(reference, "Card", status=payment_intent.get("status", "succeeded"))


class SquareAdapter:
    """Card tokenization through the Square card widget.

    Re-initializing the widget after an error is up to the caller; this
    adapter only runs the single tokenize round trip.
    """

    method = PaymentMethod.SQUARE

    def __init__(self, card: SquareCard):
        self.card = card

    async def initiate(self, grand_total: Decimal, billing: BillingIdentity) -> PaymentOutcome:
        try:
            result = await self.card.tokenize()
        except Exception as e:
            logger.warning("payment.square.tokenize_failed", exc_info=True)
            return PaymentOutcome.failure(str(e) or "Card tokenization failed")

        if result.get("status") == "OK" and result.get("token"):
            return PaymentOutcome.ok(result["token"], source="square_card")
        errors = result.get("errors") or []
        message = errors[0].get("message") if errors else None
        return PaymentOutcome.failure(message or "Card tokenization failed")


class SafeKeyAdapter:
    """Mobile-approved card payment.

    The backend sends a push to the customer's phone; this adapter then
    polls the authorization status until it is approved, declined, expired,
    or the authorization window closes.
    """

    method = PaymentMethod.SAFEKEY

    def __init__(
        self,
        backend: PaymentBackend,
        mobile_number: str,
        card_number: str,
        poll_interval: float | None = None,
        timeout: float | None = None,
        currency: str | None = None,
    ):
        self.backend = backend
        self.mobile_number = (mobile_number or "").strip()
        self.card_number = (card_number or "").replace(" ", "")
        self.poll_interval = poll_interval if poll_interval is not None else getattr(settings, "SAFEKEY_POLL_INTERVAL_SECS", 2.0)
        self.timeout = timeout if timeout is not None else getattr(settings, "SAFEKEY_AUTH_TIMEOUT_SECS", 120.0)
        self.currency = currency or getattr(settings, "CHECKOUT_CURRENCY", "USD")

    async def initiate(self, grand_total: Decimal, billing: BillingIdentity) -> PaymentOutcome:
        if not self.mobile_number or not self.card_number:
            return PaymentOutcome.failure(
                "Mobile number and card number are required for SafeKey payments", ErrorKind.VALIDATION
            )

        try:
            started = await self.backend.create_safekey_payment(
                grand_total, self.currency, self.mobile_number, self.card_number, billing
            )
            payment_id = started["payment_id"]
            if not payment_id:
                raise ValueError("SafeKey payment could not be started")
        except Exception as e:
            logger.warning("payment.safekey.initiate_failed", exc_info=True)
            return PaymentOutcome.failure(str(e) or "SafeKey payment could not be started")

        auth_reference = started.get("auth_reference", "")
        logger.info("payment.safekey.pending", extra={"payment_id": payment_id})

        async def check() -> Optional[PaymentOutcome]:
            try:
                result = await self.backend.get_safekey_status(payment_id)
            except Exception:
                logger.warning("payment.safekey.poll_failed", exc_info=True, extra={"payment_id": payment_id})
                return None
            status = result.get("status")
            if status == "completed":
                return _confirmed(
                    result.get("auth_reference") or auth_reference or payment_id,
                    "SafeKey",
                    payment_id=payment_id,
                )
            if status in ("declined", "failed"):
                return PaymentOutcome.failure(result.get("message") or "SafeKey payment was declined")
            if status == "expired":
                return PaymentOutcome.failure("SafeKey authorization expired. Please try again.")
            return None

        return await poll_until(check, self.poll_interval, self.timeout, payment_id=payment_id)


class ApplePayAdapter:
    """Apple Pay through a provider-native payment session.

    Merchant validation must complete before the sheet proceeds and payment
    authorization must complete before it closes. A cancel at any point
    yields a ``cancelled`` outcome. Repeated callbacks are ignored.
    """

    method = PaymentMethod.APPLE_PAY

    def __init__(
        self,
        backend: PaymentBackend,
        session_factory: Callable[[dict], ApplePaySession],
        config: dict | None = None,
        currency: str | None = None,
    ):
        self.backend = backend
        self.session_factory = session_factory
        self.config = config or getattr(settings, "APPLE_PAY", {})
        self.currency = currency or getattr(settings, "CHECKOUT_CURRENCY", "USD")

    def payment_request(self, grand_total: Decimal) -> dict:
        return {
            "countryCode": self.config.get("country_code", "US"),
            "currencyCode": self.currency,
            "supportedNetworks": list(self.config.get("supported_networks", [])),
            "merchantCapabilities": ["supports3DS", "supportsEMV", "supportsCredit", "supportsDebit"],
            "total": {"label": self.config.get("merchant_name", "Storefront"), "amount": _amount(grand_total)},
        }

    async def initiate(self, grand_total: Decimal, billing: BillingIdentity) -> PaymentOutcome:
        loop = asyncio.get_running_loop()
        done: asyncio.Future = loop.create_future()
        tasks: set[asyncio.Task] = set()
        seen = {"validated": False, "authorized": False}
        session = self.session_factory(self.payment_request(grand_total))

        def finish(outcome: PaymentOutcome) -> None:
            if not done.done():
                done.set_result(outcome)

        def abort() -> None:
            try:
                session.abort()
            except Exception:
                logger.warning("payment.apple_pay.abort_failed", exc_info=True)

        def spawn(step: str, callback, event: dict) -> None:
            async def guarded() -> None:
                try:
                    await callback(event)
                except asyncio.CancelledError:
                    raise
                except Exception:
                    # the sheet can reject completion calls, e.g. once it is no longer active
                    logger.warning("payment.apple_pay.session_error", exc_info=True, extra={"step": step})
                    abort()
                    finish(PaymentOutcome.failure("Apple Pay payment failed"))

            task = loop.create_task(guarded())
            tasks.add(task)
            task.add_done_callback(tasks.discard)

        async def validate_merchant(event: dict) -> None:
            try:
                merchant_session = await self.backend.validate_apple_pay_merchant(
                    event.get("validation_url", ""), self.config.get("domain_name", "")
                )
            except Exception:
                logger.warning("payment.apple_pay.merchant_validation_failed", exc_info=True)
                abort()
                finish(PaymentOutcome.failure("Apple Pay merchant validation failed"))
                return
            session.complete_merchant_validation(merchant_session)

        async def authorize_payment(event: dict) -> None:
            token = (event.get("payment") or {}).get("token")
            try:
                result = await self.backend.process_apple_pay(token, grand_total, self.currency, billing)
            except Exception as e:
                logger.warning("payment.apple_pay.process_failed", exc_info=True)
                result = {"success": False, "error": str(e)}
            if result.get("success"):
                outcome = _confirmed(result.get("transaction_id"), "Apple Pay", wallet="apple_pay")
            else:
                outcome = PaymentOutcome.failure(result.get("error") or "Apple Pay payment failed")
            # the outcome is settled before the sheet is completed
            finish(outcome)
            session.complete_payment(session.STATUS_SUCCESS if outcome.success else session.STATUS_FAILURE)

        def on_validate_merchant(event: dict) -> None:
            if seen["validated"] or done.done():
                logger.info("payment.apple_pay.duplicate_callback", extra={"callback": "validate_merchant"})
                return
            seen["validated"] = True
            spawn("validate_merchant", validate_merchant, event)

        def on_payment_authorized(event: dict) -> None:
            if not seen["validated"]:
                logger.info("payment.apple_pay.out_of_order_callback", extra={"callback": "payment_authorized"})
                return
            if seen["authorized"] or done.done():
                logger.info("payment.apple_pay.duplicate_callback", extra={"callback": "payment_authorized"})
                return
            seen["authorized"] = True
            spawn("payment_authorized", authorize_payment, event)

        def on_cancel(event: dict | None = None) -> None:
            finish(PaymentOutcome.cancelled(self.method))

        session.on_validate_merchant = on_validate_merchant
        session.on_payment_authorized = on_payment_authorized
        session.on_cancel = on_cancel

        try:
            try:
                session.begin()
            except Exception:
                logger.warning("payment.apple_pay.begin_failed", exc_info=True)
                return PaymentOutcome.failure("Apple Pay is not available")
            return await done
        except asyncio.CancelledError:
            abort()
            raise
        finally:
            for task in list(tasks):
                task.cancel()


class GooglePayAdapter:
    """Google Pay: tokenized payment data from the sheet, then one server call."""

    method = PaymentMethod.GOOGLE_PAY

    def __init__(
        self,
        backend: PaymentBackend,
        client: GooglePaymentsClient,
        config: dict | None = None,
        currency: str | None = None,
    ):
        self.backend = backend
        self.client = client
        self.config = config or getattr(settings, "GOOGLE_PAY", {})
        self.currency = currency or getattr(settings, "CHECKOUT_CURRENCY", "USD")

    def payment_data_request(self, grand_total: Decimal) -> dict:
        return {
            "apiVersion": 2,
            "apiVersionMinor": 0,
            "allowedPaymentMethods": [
                {
                    "type": "CARD",
                    "parameters": {
                        "allowedAuthMethods": ["PAN_ONLY", "CRYPTOGRAM_3DS"],
                        "allowedCardNetworks": list(self.config.get("supported_networks", [])),
                    },
                    "tokenizationSpecification": {
                        "type": "PAYMENT_GATEWAY",
                        "parameters": {
                            "gateway": self.config.get("gateway", ""),
                            "gatewayMerchantId": self.config.get("gateway_merchant_id", ""),
                        },
                    },
                }
            ],
            "merchantInfo": {
                "merchantId": self.config.get("merchant_id", ""),
                "merchantName": self.config.get("merchant_name", ""),
            },
            "transactionInfo": {
                "totalPriceStatus": "FINAL",
                "totalPrice": _amount(grand_total),
                "currencyCode": self.currency,
            },
        }

    async def initiate(self, grand_total: Decimal, billing: BillingIdentity) -> PaymentOutcome:
        try:
            payment_data = await self.client.load_payment_data(self.payment_data_request(grand_total))
        except GooglePayError as e:
            if e.status_code == "CANCELED":
                return PaymentOutcome.cancelled(self.method)
            return PaymentOutcome.failure(str(e) or "Google Pay payment failed")
        except Exception as e:
            logger.warning("payment.google_pay.load_failed", exc_info=True)
            return PaymentOutcome.failure(str(e) or "Google Pay payment failed")

        try:
            token = payment_data["paymentMethodData"]["tokenizationData"]["token"]
        except (KeyError, TypeError):
            return PaymentOutcome.failure("Google Pay returned no payment token")

        try:
            result = await self.backend.process_google_pay(token, grand_total, self.currency, billing)
        except Exception as e:
            logger.warning("payment.google_pay.process_failed", exc_info=True)
            return PaymentOutcome.failure(str(e) or "Google Pay payment failed")
        if not result.get("success"):
            return PaymentOutcome.failure(result.get("error") or "Google Pay payment failed")
        return _confirmed(result.get("transaction_id"), "Google Pay", wallet="google_pay")


class CryptoAdapter:
    """Cryptocurrency payment settled out of band.

    The backend returns a pending charge (wallet address, crypto amount,
    expiry) and the adapter polls verification until the charge settles,
    expires or the polling ceiling is reached. Transient verification errors
    are logged and polling continues.
    """

    method = PaymentMethod.CRYPTO

    def __init__(
        self,
        backend: PaymentBackend,
        cryptocurrency: str = "bitcoin",
        provider: str = "stripe",
        poll_interval: float | None = None,
        ceiling: float | None = None,
        currency: str | None = None,
        on_pending: Callable[[dict], None] | None = None,
    ):
        self.backend = backend
        self.cryptocurrency = cryptocurrency
        self.provider = provider
        self.poll_interval = poll_interval if poll_interval is not None else getattr(settings, "CRYPTO_POLL_INTERVAL_SECS", 5.0)
        self.ceiling = ceiling if ceiling is not None else getattr(settings, "CRYPTO_POLL_CEILING_SECS", 1800.0)
        self.currency = currency or getattr(settings, "CHECKOUT_CURRENCY", "USD")
        self.on_pending = on_pending

    async def quote(self, grand_total: Decimal) -> Decimal:
        """Estimated amount of ``cryptocurrency`` for ``grand_total``."""
        rates = await self.backend.get_crypto_exchange_rates(self.currency)
        rate = Decimal(str(rates[self.cryptocurrency]))
        return (grand_total / rate).quantize(Decimal("0.00000001"))

    async def initiate(self, grand_total: Decimal, billing: BillingIdentity) -> PaymentOutcome:
        if self.cryptocurrency not in CRYPTO_CURRENCIES or self.provider not in CRYPTO_PROVIDERS:
            return PaymentOutcome.failure("Unsupported cryptocurrency or provider", ErrorKind.VALIDATION)

        try:
            charge = await self.backend.create_crypto_payment(
                self.provider, grand_total, self.currency, self.cryptocurrency, billing
            )
            payment_id = charge["payment_id"]
            if not payment_id:
                raise ValueError("Crypto payment could not be created")
        except Exception as e:
            logger.warning("payment.crypto.create_failed", exc_info=True)
            return PaymentOutcome.failure(str(e) or "Crypto payment could not be created")

        if self.on_pending is not None:
            # shows the wallet address / amount to the customer
            try:
                self.on_pending(charge)
            except Exception:
                logger.warning("payment.crypto.on_pending_failed", exc_info=True, extra={"payment_id": payment_id})
        logger.info("payment.crypto.pending", extra={"payment_id": payment_id, "provider": self.provider})

        async def check() -> Optional[PaymentOutcome]:
            try:
                result = await self.backend.verify_crypto_payment(self.provider, payment_id)
            except Exception:
                logger.warning("payment.crypto.poll_failed", exc_info=True, extra={"payment_id": payment_id})
                return None
            status = result.get("status")
            if status == "completed":
                return _confirmed(
                    payment_id,
                    "Crypto",
                    provider=self.provider,
                    cryptocurrency=self.cryptocurrency,
                    crypto_amount=str(charge.get("crypto_amount", "")),
                    transaction_hash=result.get("transaction_hash", ""),
                )
            if status == "expired" or "expired" in (result.get("error") or ""):
                return PaymentOutcome.failure("Payment expired. Please try again.")
            if status == "failed":
                return PaymentOutcome.failure(result.get("error") or "Crypto payment failed")
            return None

        return await poll_until(check, self.poll_interval, self.ceiling, payment_id=payment_id)
