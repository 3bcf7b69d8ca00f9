"""Domain models, ports and orchestrator for checkout.

This module contains the value objects exchanged during a checkout, the
protocol definitions (ports) for the collaborators the checkout depends on
(order service, shipping service, payment adapters) and the
``CheckoutOrchestrator`` state machine that drives a single checkout
session from address collection to a confirmed order.

State machine::

    collecting_address -> selecting_payment -> authorizing
        -> confirmed | failed | needs_support

``failed`` allows a retry (optionally with another payment method).
``needs_support`` means the payment was captured but the order could not be
recorded; it is never retried automatically.
"""

import asyncio
import logging
import re
import uuid
from dataclasses import asdict, dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Protocol

from apps.cart.domain import Cart, CartState

logger = logging.getLogger("checkout")

TIMEOUT_MESSAGE = "Payment verification timed out"
ORDER_NOT_RECORDED_MESSAGE = (
    "Payment was successful but order creation failed. Please contact support."
)

BILLING_NAME_RE = re.compile(r"^[A-Za-z ]{2,50}$")
BILLING_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
COUNTRY_RE = re.compile(r"^[A-Z]{2}$")
# (min, max) length of each address field once stripped
ADDRESS_LIMITS = {
    "first_name": (1, 50),
    "last_name": (1, 50),
    "address1": (1, 200),
    "address2": (0, 200),
    "city": (1, 100),
    "state": (2, 50),
    "postal_code": (3, 12),
    "country": (2, 2),
    "phone": (0, 30),
}
CENTS = Decimal("0.01")


# ---- Enums ----
class PaymentMethod(str, Enum):
    """Payment methods offered at checkout."""

    STRIPE = "stripe"
    SQUARE = "square"
    SAFEKEY = "safekey"
    APPLE_PAY = "apple_pay"
    GOOGLE_PAY = "google_pay"
    CRYPTO = "crypto"

    @property
    def label(self) -> str:
        return {
            PaymentMethod.STRIPE: "Card",
            PaymentMethod.SQUARE: "Square",
            PaymentMethod.SAFEKEY: "SafeKey",
            PaymentMethod.APPLE_PAY: "Apple Pay",
            PaymentMethod.GOOGLE_PAY: "Google Pay",
            PaymentMethod.CRYPTO: "Crypto",
        }[self]


class CheckoutStatus(str, Enum):
    COLLECTING_ADDRESS = "collecting_address"
    SELECTING_PAYMENT = "selecting_payment"
    AUTHORIZING = "authorizing"
    CONFIRMED = "confirmed"
    FAILED = "failed"
    NEEDS_SUPPORT = "needs_support"


class ErrorKind(str, Enum):
    """Category of a checkout error, so users can tell a timeout from a decline."""

    VALIDATION = "validation"
    PROVIDER = "provider"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"
    ORDER_NOT_RECORDED = "order_not_recorded"


class CheckoutValidationError(ValueError):
    """Raised with a short upper-case code when a checkout step is rejected.

    The session is left unchanged whenever this is raised.
    """

    def __init__(self, code: str):
        super().__init__(code)
        self.code = code


# ---- Value objects ----
@dataclass(frozen=True)
class ShippingSelection:
    """A shipping rate as quoted by the shipping service.

    Attributes:
        carrier: Carrier name, e.g. ``USPS``.
        service: Service level, e.g. ``Ground``.
        rate: Price of the shipment in the checkout currency.
        estimated_days: Estimated transit time in days.
    """

    carrier: str
    service: str
    rate: Decimal
    estimated_days: int

    def to_dict(self) -> dict:
        return {
            "carrier": self.carrier,
            "service": self.service,
            "rate": str(self.rate),
            "estimated_days": self.estimated_days,
        }


@dataclass(frozen=True)
class BillingIdentity:
    name: str
    email: str


@dataclass(frozen=True)
class ShippingAddress:
    first_name: str
    last_name: str
    address1: str
    city: str
    state: str
    postal_code: str
    country: str = "US"
    address2: str = ""
    phone: str = ""


@dataclass(frozen=True)
class Parcel:
    """Package dimensions (inches) and weight (pounds) used for rate quotes."""

    length: Decimal
    width: Decimal
    height: Decimal
    weight: Decimal


@dataclass(frozen=True)
class PaymentOutcome:
    """Normalized result of a payment adapter.

    Attributes:
        success: True when the provider confirmed the payment.
        provider_reference: Provider-side identifier (intent id, token,
            charge id...). Empty on failure.
        error_message: User-facing message on failure.
        error_kind: Category of the failure.
        details: Extra provider data forwarded to the order as payment details.
    """

    success: bool
    provider_reference: str = ""
    error_message: Optional[str] = None
    error_kind: Optional[ErrorKind] = None
    details: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def ok(cls, provider_reference: str, **details) -> "PaymentOutcome":
        return cls(success=True, provider_reference=provider_reference, details=details)

    @classmethod
    def failure(cls, message: str, kind: ErrorKind = ErrorKind.PROVIDER, **details) -> "PaymentOutcome":
        return cls(success=False, error_message=message, error_kind=kind, details=details)

    @classmethod
    def timed_out(cls, **details) -> "PaymentOutcome":
        return cls.failure(TIMEOUT_MESSAGE, ErrorKind.TIMEOUT, **details)

    @classmethod
    def cancelled(cls, method: PaymentMethod) -> "PaymentOutcome":
        return cls.failure(f"{method.label} payment was cancelled", ErrorKind.CANCELLED)


@dataclass(frozen=True)
class CheckoutError:
    kind: ErrorKind
    message: str


@dataclass
class CheckoutSession:
    """State of the single in-progress checkout.

    ``grand_total`` and ``idempotency_key`` are set the first time the
    session enters ``authorizing`` and never change afterwards, so a retry
    charges the same amount and a replayed order is deduplicated downstream.
    """

    cart_snapshot: CartState
    status: CheckoutStatus = CheckoutStatus.COLLECTING_ADDRESS
    shipping_address: Optional[ShippingAddress] = None
    shipping: Optional[ShippingSelection] = None
    billing: Optional[BillingIdentity] = None
    payment_method: Optional[PaymentMethod] = None
    grand_total: Optional[Decimal] = None
    idempotency_key: Optional[str] = None
    last_error: Optional[CheckoutError] = None
    order: Optional[dict] = None
    success_observed: bool = False

    @property
    def is_frozen(self) -> bool:
        return self.grand_total is not None


def validate_billing(billing: BillingIdentity) -> None:
    """Raise ``INVALID_BILLING`` unless name and email pass the billing rules.

    Name: 2-50 characters, letters and spaces only. Email: 5-50 characters
    in ``local@domain.tld`` form.
    """
    name = (billing.name or "").strip()
    email = (billing.email or "").strip()
    if not BILLING_NAME_RE.match(name):
        raise CheckoutValidationError("INVALID_BILLING")
    if not 5 <= len(email) <= 50 or not BILLING_EMAIL_RE.match(email):
        raise CheckoutValidationError("INVALID_BILLING")


def validate_shipping_address(address: ShippingAddress) -> ShippingAddress:
    """Return ``address`` stripped with an upper-case country code.

    These are the rules the order service applies to a recorded order, so an
    address accepted here cannot make order creation fail after payment.

    Raises:
        CheckoutValidationError: ``INVALID_ADDRESS``.
    """
    cleaned = {}
    for name, (low, high) in ADDRESS_LIMITS.items():
        value = getattr(address, name)
        if value is None:
            value = ""
        if not isinstance(value, str):
            raise CheckoutValidationError("INVALID_ADDRESS")
        value = value.strip()
        if not low <= len(value) <= high:
            raise CheckoutValidationError("INVALID_ADDRESS")
        cleaned[name] = value
    cleaned["country"] = cleaned["country"].upper()
    if not COUNTRY_RE.match(cleaned["country"]):
        raise CheckoutValidationError("INVALID_ADDRESS")
    return ShippingAddress(**cleaned)


# ---- Ports (DIP) ----
class OrderServicePort(Protocol):
    """Port for the service that records orders."""

    async def create_order(self, payload: dict, idempotency_key: str) -> dict:
        """Create an order and return its record.

        Implementations must deduplicate on ``idempotency_key``.

        Raises:
            Exception: Any failure means the order may not be recorded.
        """
        raise NotImplementedError()


class ShippingServicePort(Protocol):
    async def get_rates(
        self, from_address: dict, to_address: ShippingAddress, parcel: Parcel
    ) -> List[ShippingSelection]:
        raise NotImplementedError()


class PaymentAdapter(Protocol):
    """Common contract of the six payment flows.

    ``initiate`` runs the whole provider protocol (token exchange, callbacks,
    polling) and always resolves to a ``PaymentOutcome``. Cancelling the
    awaiting task must stop any background work the adapter started.
    """

    method: PaymentMethod

    async def initiate(self, grand_total: Decimal, billing: BillingIdentity) -> PaymentOutcome:
        raise NotImplementedError()


# ---- Orchestrator ----
class CheckoutOrchestrator:
    """Drives one checkout session over a cart.

    Args:
        cart: The owner's ``Cart`` aggregate; locked while authorizing.
        order_service: ``OrderServicePort`` called once per confirmed payment.
        shipping_service: ``ShippingServicePort`` used for rate quotes.
        adapters: Registry of ``PaymentAdapter`` by ``PaymentMethod``.
        store_address: Origin address for shipping quotes.
        currency: ISO currency code sent with the order.
    """

    def __init__(
        self,
        cart: Cart,
        order_service: OrderServicePort,
        shipping_service: ShippingServicePort,
        adapters: Optional[Mapping[PaymentMethod, PaymentAdapter]] = None,
        store_address: Optional[dict] = None,
        currency: str = "USD",
    ):
        self.cart = cart
        self.order_service = order_service
        self.shipping_service = shipping_service
        self.adapters: Dict[PaymentMethod, PaymentAdapter] = dict(adapters or {})
        self.store_address = store_address or {}
        self.currency = currency
        self._session: Optional[CheckoutSession] = None
        self._inflight: Optional[asyncio.Task] = None

    @property
    def session(self) -> Optional[CheckoutSession]:
        return self._session

    # -- collecting_address --
    def start(self) -> CheckoutSession:
        """Open a session over the current cart.

        Raises:
            CheckoutValidationError: ``SESSION_ACTIVE`` if a session exists,
                ``EMPTY_CART`` if the cart has no lines.
        """
        if self._session is not None:
            raise CheckoutValidationError("SESSION_ACTIVE")
        snapshot = self.cart.snapshot()
        if snapshot.is_empty:
            raise CheckoutValidationError("EMPTY_CART")
        self._session = CheckoutSession(cart_snapshot=snapshot)
        logger.info("checkout.started", extra={"cart_total": str(snapshot.total)})
        return self._session

    def set_shipping_address(self, address: ShippingAddress) -> CheckoutSession:
        session = self._require_editable()
        address = validate_shipping_address(address)
        if address != session.shipping_address:
            # a new destination invalidates any quoted rate
            session.shipping = None
            session.status = CheckoutStatus.COLLECTING_ADDRESS
        session.shipping_address = address
        return session

    async def fetch_shipping_rates(self, parcel: Parcel) -> List[ShippingSelection]:
        session = self._require_session()
        if session.shipping_address is None:
            raise CheckoutValidationError("ADDRESS_REQUIRED")
        rates = await self.shipping_service.get_rates(self.store_address, session.shipping_address, parcel)
        logger.info("checkout.shipping_rates", extra={"count": len(rates)})
        return rates

    def choose_shipping(self, selection: ShippingSelection) -> CheckoutSession:
        session = self._require_editable()
        if session.shipping_address is None:
            raise CheckoutValidationError("ADDRESS_REQUIRED")
        if selection.rate < 0 or selection.rate != selection.rate.quantize(CENTS):
            raise CheckoutValidationError("INVALID_SHIPPING")
        session.shipping = selection
        if session.status == CheckoutStatus.COLLECTING_ADDRESS:
            session.status = CheckoutStatus.SELECTING_PAYMENT
        return session

    # -- selecting_payment --
    def set_billing_identity(self, billing: BillingIdentity) -> CheckoutSession:
        session = self._require_session()
        if session.status in (CheckoutStatus.AUTHORIZING, CheckoutStatus.NEEDS_SUPPORT):
            raise CheckoutValidationError("ILLEGAL_TRANSITION")
        validate_billing(billing)
        session.billing = BillingIdentity(name=billing.name.strip(), email=billing.email.strip())
        return session

    def select_payment_method(self, method, adapter: Optional[PaymentAdapter] = None) -> CheckoutSession:
        """Choose the payment method, optionally registering its adapter.

        Allowed while selecting a payment and after a failure; in both cases
        the session ends in ``selecting_payment``.
        """
        session = self._require_session()
        if session.status not in (CheckoutStatus.SELECTING_PAYMENT, CheckoutStatus.FAILED):
            raise CheckoutValidationError("ILLEGAL_TRANSITION")
        try:
            method = PaymentMethod(method)
        except ValueError:
            raise CheckoutValidationError("UNKNOWN_PAYMENT_METHOD")
        if adapter is not None:
            self.adapters[method] = adapter
        if method not in self.adapters:
            raise CheckoutValidationError("PAYMENT_METHOD_UNAVAILABLE")
        session.payment_method = method
        session.status = CheckoutStatus.SELECTING_PAYMENT
        return session

    # -- authorizing --
    async def authorize(self) -> CheckoutSession:
        """Run the selected payment flow and react to its outcome.

        The first call freezes the grand total, locks the cart and generates
        the idempotency key; retries after a failure reuse all three.

        Returns:
            CheckoutSession: The session in its resulting state. On
                ``confirmed`` it is no longer the orchestrator's active session.

        Raises:
            CheckoutValidationError: ``SHIPPING_REQUIRED``,
                ``BILLING_REQUIRED``, ``PAYMENT_METHOD_REQUIRED`` or
                ``ILLEGAL_TRANSITION``.
        """
        session = self._require_session()
        if session.status not in (CheckoutStatus.SELECTING_PAYMENT, CheckoutStatus.FAILED):
            raise CheckoutValidationError("ILLEGAL_TRANSITION")
        if session.shipping is None:
            raise CheckoutValidationError("SHIPPING_REQUIRED")
        if session.billing is None:
            raise CheckoutValidationError("BILLING_REQUIRED")
        if session.payment_method is None or session.payment_method not in self.adapters:
            raise CheckoutValidationError("PAYMENT_METHOD_REQUIRED")

        if not session.is_frozen:
            self.cart.lock()
            session.cart_snapshot = self.cart.snapshot()
            if session.cart_snapshot.is_empty:
                self.cart.unlock()
                raise CheckoutValidationError("EMPTY_CART")
            session.grand_total = session.cart_snapshot.total + session.shipping.rate
            session.idempotency_key = str(uuid.uuid4())

        session.status = CheckoutStatus.AUTHORIZING
        session.last_error = None
        method = session.payment_method
        adapter = self.adapters[method]
        logger.info(
            "checkout.authorizing",
            extra={"payment_method": method.value, "grand_total": str(session.grand_total)},
        )

        self._inflight = asyncio.ensure_future(adapter.initiate(session.grand_total, session.billing))
        try:
            outcome = await self._inflight
        except asyncio.CancelledError:
            if self._session is not session:
                logger.info("checkout.authorize.abandoned", extra={"payment_method": method.value})
                return session
            raise
        except Exception as e:
            logger.exception("checkout.adapter_error", extra={"payment_method": method.value})
            outcome = PaymentOutcome.failure(str(e) or "Payment failed", ErrorKind.PROVIDER)
        finally:
            self._inflight = None

        if self._session is not session:
            logger.info("checkout.outcome_after_abandon", extra={"payment_method": method.value})
            return session
        await self.handle_payment_outcome(outcome)
        return session

    async def handle_payment_outcome(self, outcome: PaymentOutcome) -> Optional[CheckoutSession]:
        """React to an adapter result. This is the only path that creates orders.

        The success flag is set before the first await, so a duplicated
        success (re-fired callback, concurrent delivery) is ignored and the
        order service is called at most once per session.
        """
        session = self._session
        if session is None or session.status != CheckoutStatus.AUTHORIZING:
            logger.warning("checkout.outcome_ignored", extra={"success": outcome.success})
            return session
        if session.success_observed:
            logger.warning("checkout.duplicate_success_ignored", extra={"ref": outcome.provider_reference})
            return session

        if not outcome.success:
            session.status = CheckoutStatus.FAILED
            session.last_error = CheckoutError(
                kind=outcome.error_kind or ErrorKind.PROVIDER,
                message=outcome.error_message or "Payment failed",
            )
            logger.info(
                "checkout.payment_failed",
                extra={"kind": session.last_error.kind.value, "error": session.last_error.message},
            )
            return session

        session.success_observed = True
        payload = self._order_payload(session, outcome)
        try:
            order = await self.order_service.create_order(payload, idempotency_key=session.idempotency_key)
        except Exception:
            # money has moved; never retried from here
            logger.exception(
                "checkout.order_not_recorded",
                extra={"idempotency_key": session.idempotency_key, "ref": outcome.provider_reference},
            )
            session.status = CheckoutStatus.NEEDS_SUPPORT
            session.last_error = CheckoutError(ErrorKind.ORDER_NOT_RECORDED, ORDER_NOT_RECORDED_MESSAGE)
            return session

        session.order = order
        session.status = CheckoutStatus.CONFIRMED
        self.cart.unlock()
        self.cart.clear_cart()
        self._session = None
        logger.info("checkout.confirmed", extra={"order_id": (order or {}).get("id")})
        return session

    async def abandon(self) -> None:
        """Leave the checkout: stop in-flight payment work and release the cart."""
        task = self._inflight
        self._session = None
        if task is not None and not task.done():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
        self.cart.unlock()
        logger.info("checkout.abandoned")

    # -- internals --
    def _require_session(self) -> CheckoutSession:
        if self._session is None:
            raise CheckoutValidationError("NO_ACTIVE_SESSION")
        return self._session

    def _require_editable(self) -> CheckoutSession:
        session = self._require_session()
        if session.is_frozen:
            raise CheckoutValidationError("TOTAL_FROZEN")
        return session

    def _order_payload(self, session: CheckoutSession, outcome: PaymentOutcome) -> dict:
        return {
            "idempotency_key": session.idempotency_key,
            "items": [
                {
                    "product_id": line.product_id,
                    "name": line.name,
                    "unit_price": str(line.unit_price),
                    "quantity": line.quantity,
                }
                for line in session.cart_snapshot.lines
            ],
            "subtotal": str(session.cart_snapshot.total),
            "total": str(session.grand_total),
            "currency": self.currency,
            "shipping_address": asdict(session.shipping_address),
            "shipping_rate": session.shipping.to_dict(),
            "billing": {"name": session.billing.name, "email": session.billing.email},
            "payment_method": session.payment_method.value,
            "payment_details": {"provider_reference": outcome.provider_reference, **outcome.details},
        }
