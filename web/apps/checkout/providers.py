"""Service provider helpers for wiring the checkout with its ports.

``get_checkout_orchestrator`` returns a ``CheckoutOrchestrator`` bound to a
cart. When ``settings.USE_HTTP_ADAPTERS`` is truthy the order, shipping and
payment backends are the HTTP clients; otherwise the in-process stubs are
used, which is what tests and local development rely on.

``PAYMENT_ADAPTERS`` is the registry mapping each ``PaymentMethod`` to its
adapter class; ``build_payment_adapter`` instantiates one with the shared
payment backend plus the method-specific inputs (SDK seams, phone number,
chosen coin...).
"""

from django.conf import settings

from apps.cart.domain import Cart

from .adapters import OrderServiceStub, PaymentBackendStub, ShippingServiceStub
from .domain import CheckoutOrchestrator, PaymentAdapter, PaymentMethod
from .http_adapters import HttpOrderServiceClient, HttpPaymentBackend, HttpShippingClient
from .payment_adapters import (
    ApplePayAdapter,
    CryptoAdapter,
    GooglePayAdapter,
    SafeKeyAdapter,
    SquareAdapter,
    StripeAdapter,
)

PAYMENT_ADAPTERS = {
    PaymentMethod.STRIPE: StripeAdapter,
    PaymentMethod.SQUARE: SquareAdapter,
    PaymentMethod.SAFEKEY: SafeKeyAdapter,
    PaymentMethod.APPLE_PAY: ApplePayAdapter,
    PaymentMethod.GOOGLE_PAY: GooglePayAdapter,
    PaymentMethod.CRYPTO: CryptoAdapter,
}

# Methods whose adapter talks to the payment backend
_BACKED = {
    PaymentMethod.STRIPE,
    PaymentMethod.SAFEKEY,
    PaymentMethod.APPLE_PAY,
    PaymentMethod.GOOGLE_PAY,
    PaymentMethod.CRYPTO,
}


def _use_http() -> bool:
    return bool(getattr(settings, "USE_HTTP_ADAPTERS", True))


def get_payment_backend():
    return HttpPaymentBackend() if _use_http() else PaymentBackendStub()


def get_order_service():
    return HttpOrderServiceClient() if _use_http() else OrderServiceStub()


def get_shipping_service():
    return HttpShippingClient() if _use_http() else ShippingServiceStub()


def build_payment_adapter(method, backend=None, **inputs) -> PaymentAdapter:
    """Instantiate the adapter registered for ``method``.

    Args:
        method: A ``PaymentMethod`` or its string value.
        backend: Payment backend to use; defaults to ``get_payment_backend()``.
        **inputs: Method-specific constructor arguments, e.g. ``sdk`` for
            Stripe, ``card`` for Square, ``mobile_number``/``card_number``
            for SafeKey, ``session_factory`` for Apple Pay, ``client`` for
            Google Pay, ``cryptocurrency``/``provider`` for crypto.

    Raises:
        ValueError: If ``method`` is not a known payment method.
    """
    method = PaymentMethod(method)
    adapter_cls = PAYMENT_ADAPTERS[method]
    if method in _BACKED:
        inputs["backend"] = backend or get_payment_backend()
    return adapter_cls(**inputs)


def get_checkout_orchestrator(cart: Cart, adapters=None) -> CheckoutOrchestrator:
    """Return a ``CheckoutOrchestrator`` over ``cart`` wired from settings."""
    return CheckoutOrchestrator(
        cart=cart,
        order_service=get_order_service(),
        shipping_service=get_shipping_service(),
        adapters=adapters,
        store_address=getattr(settings, "STORE_ADDRESS", {}),
        currency=getattr(settings, "CHECKOUT_CURRENCY", "USD"),
    )
