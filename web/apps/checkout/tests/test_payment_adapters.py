"""Unit tests for the six payment adapters.

Provider SDKs are replaced by small fakes that mimic the callback or
request/response shape of the real client; the payment backend is the
in-process stub unless a test needs a specific failure.
"""

import asyncio
from decimal import Decimal

import pytest

from apps.checkout.adapters import PaymentBackendStub
from apps.checkout.domain import BillingIdentity, ErrorKind, PaymentMethod
from apps.checkout.payment_adapters import (
    ApplePayAdapter,
    CryptoAdapter,
    GooglePayAdapter,
    GooglePayError,
    SafeKeyAdapter,
    SquareAdapter,
    StripeAdapter,
    poll_until,
)

BILLING = BillingIdentity(name="Jane Doe", email="jane@example.com")
TOTAL = Decimal("59.99")


# ---- Stripe ----
class FakeStripe:
    def __init__(self, result):
        self.result = result
        self.calls = []

    async def confirm_payment(self, client_secret, billing):
        self.calls.append(client_secret)
        return self.result


@pytest.mark.asyncio
async def test_stripe_success_uses_intent_reference():
    sdk = FakeStripe({"payment_intent": {"id": "pi_123", "status": "succeeded"}})
    outcome = await StripeAdapter(PaymentBackendStub(), sdk).initiate(TOTAL, BILLING)
    assert outcome.success is True
    assert outcome.provider_reference == "pi_123"
    assert len(sdk.calls) == 1
    assert sdk.calls[0].startswith("pi_")


@pytest.mark.asyncio
async def test_stripe_error_message_is_surfaced_verbatim():
    sdk = FakeStripe({"error": {"message": "Your card was declined."}})
    outcome = await StripeAdapter(PaymentBackendStub(), sdk).initiate(TOTAL, BILLING)
    assert outcome.success is False
    assert outcome.error_message == "Your card was declined."
    assert outcome.error_kind == ErrorKind.PROVIDER
    assert len(sdk.calls) == 1


@pytest.mark.asyncio
async def test_stripe_backend_failure_skips_confirmation():
    class DownBackend(PaymentBackendStub):
        async def create_payment_intent(self, amount, currency, billing):
            raise ConnectionError("payments unreachable")

    sdk = FakeStripe({})
    outcome = await StripeAdapter(DownBackend(), sdk).initiate(TOTAL, BILLING)
    assert outcome.success is False
    assert outcome.error_message == "payments unreachable"
    assert sdk.calls == []


@pytest.mark.asyncio
async def test_stripe_confirmation_without_intent_id_is_a_failure():
    class AnonymousIntent(PaymentBackendStub):
        async def create_payment_intent(self, amount, currency, billing):
            return {"client_secret": "secret_only"}

    sdk = FakeStripe({"payment_intent": {"status": "succeeded"}})
    outcome = await StripeAdapter(AnonymousIntent(), sdk).initiate(TOTAL, BILLING)
    assert outcome.success is False
    assert outcome.error_kind == ErrorKind.PROVIDER
    assert outcome.error_message == "Card payment could not be confirmed"


# ---- Square ----
class FakeCard:
    def __init__(self, result):
        self.result = result

    async def tokenize(self):
        return self.result


@pytest.mark.asyncio
async def test_square_ok_token_is_reference():
    outcome = await SquareAdapter(FakeCard({"status": "OK", "token": "cnon:abc"})).initiate(TOTAL, BILLING)
    assert outcome.success is True
    assert outcome.provider_reference == "cnon:abc"


@pytest.mark.asyncio
async def test_square_first_error_message():
    card = FakeCard({"status": "Invalid", "errors": [{"message": "Card number is invalid"}, {"message": "other"}]})
    outcome = await SquareAdapter(card).initiate(TOTAL, BILLING)
    assert outcome.success is False
    assert outcome.error_message == "Card number is invalid"


# ---- SafeKey ----
@pytest.mark.asyncio
async def test_safekey_polls_until_completed():
    backend = PaymentBackendStub(safekey_polls_to_complete=3)
    adapter = SafeKeyAdapter(backend, "5551234567", "4111 1111 1111 1111", poll_interval=0.001, timeout=5)
    outcome = await adapter.initiate(TOTAL, BILLING)
    assert outcome.success is True
    assert outcome.provider_reference.startswith("auth_")
    (record,) = backend.payments.values()
    assert record["polls"] == 3


@pytest.mark.asyncio
async def test_safekey_requires_mobile_and_card():
    outcome = await SafeKeyAdapter(PaymentBackendStub(), "", "4111111111111111").initiate(TOTAL, BILLING)
    assert outcome.success is False
    assert outcome.error_kind == ErrorKind.VALIDATION


@pytest.mark.asyncio
async def test_safekey_declined_on_phone():
    class DecliningBackend(PaymentBackendStub):
        async def get_safekey_status(self, payment_id):
            return {"payment_id": payment_id, "status": "declined", "message": "Declined on device"}

    adapter = SafeKeyAdapter(DecliningBackend(), "5551234567", "4111111111111111", poll_interval=0.001, timeout=5)
    outcome = await adapter.initiate(TOTAL, BILLING)
    assert outcome.success is False
    assert outcome.error_message == "Declined on device"
    assert outcome.error_kind == ErrorKind.PROVIDER


@pytest.mark.asyncio
async def test_safekey_times_out_with_distinct_message():
    backend = PaymentBackendStub(safekey_polls_to_complete=10_000)
    adapter = SafeKeyAdapter(backend, "5551234567", "4111111111111111", poll_interval=0.01, timeout=0.05)
    outcome = await adapter.initiate(TOTAL, BILLING)
    assert outcome.success is False
    assert outcome.error_kind == ErrorKind.TIMEOUT
    assert outcome.error_message == "Payment verification timed out"


# ---- Apple Pay ----
class FakeApplePaySession:
    """Mimics the browser session: begin() triggers merchant validation,
    completing validation triggers authorization."""

    STATUS_SUCCESS = 0
    STATUS_FAILURE = 1

    def __init__(self, request, authorize_times=1, cancel_on_begin=False):
        self.request = request
        self.authorize_times = authorize_times
        self.cancel_on_begin = cancel_on_begin
        self.completed = []
        self.aborted = False
        self.merchant_session = None
        self.on_validate_merchant = None
        self.on_payment_authorized = None
        self.on_cancel = None

    def begin(self):
        loop = asyncio.get_running_loop()
        if self.cancel_on_begin:
            loop.call_soon(self.on_cancel, {})
            return
        event = {"validation_url": "https://apple-pay-gateway.apple.com/paymentservices/startSession"}
        loop.call_soon(self.on_validate_merchant, event)
        loop.call_soon(self.on_validate_merchant, event)

    def complete_merchant_validation(self, merchant_session):
        self.merchant_session = merchant_session
        loop = asyncio.get_running_loop()
        for _ in range(self.authorize_times):
            loop.call_soon(self.on_payment_authorized, {"payment": {"token": {"paymentData": "opaque"}}})

    def complete_payment(self, status):
        self.completed.append(status)

    def abort(self):
        self.aborted = True


def apple_factory(sessions, session_cls=FakeApplePaySession, **kwargs):
    def factory(request):
        session = session_cls(request, **kwargs)
        sessions.append(session)
        return session

    return factory


@pytest.mark.asyncio
async def test_apple_pay_two_callbacks_complete_payment():
    sessions = []
    adapter = ApplePayAdapter(PaymentBackendStub(), apple_factory(sessions))
    outcome = await adapter.initiate(TOTAL, BILLING)

    assert outcome.success is True
    assert outcome.provider_reference.startswith("ap_")
    (session,) = sessions
    assert session.merchant_session is not None
    assert session.completed == [FakeApplePaySession.STATUS_SUCCESS]
    assert session.request["total"]["amount"] == "59.99"


@pytest.mark.asyncio
async def test_apple_pay_duplicate_authorization_is_ignored():
    calls = {"n": 0}

    class CountingBackend(PaymentBackendStub):
        async def process_apple_pay(self, token, amount, currency, billing):
            calls["n"] += 1
            return await super().process_apple_pay(token, amount, currency, billing)

    sessions = []
    adapter = ApplePayAdapter(CountingBackend(), apple_factory(sessions, authorize_times=2))
    outcome = await adapter.initiate(TOTAL, BILLING)
    assert outcome.success is True
    assert calls["n"] == 1
    assert sessions[0].completed == [FakeApplePaySession.STATUS_SUCCESS]


@pytest.mark.asyncio
async def test_apple_pay_merchant_validation_failure_aborts():
    class NoMerchant(PaymentBackendStub):
        async def validate_apple_pay_merchant(self, validation_url, domain_name):
            raise RuntimeError("bad merchant certificate")

    sessions = []
    outcome = await ApplePayAdapter(NoMerchant(), apple_factory(sessions)).initiate(TOTAL, BILLING)
    assert outcome.success is False
    assert outcome.error_kind == ErrorKind.PROVIDER
    assert sessions[0].aborted is True
    assert sessions[0].completed == []


@pytest.mark.asyncio
async def test_apple_pay_user_cancel_is_distinct_outcome():
    sessions = []
    adapter = ApplePayAdapter(PaymentBackendStub(), apple_factory(sessions, cancel_on_begin=True))
    outcome = await adapter.initiate(TOTAL, BILLING)
    assert outcome.success is False
    assert outcome.error_kind == ErrorKind.CANCELLED
    assert outcome.error_message == "Apple Pay payment was cancelled"


@pytest.mark.asyncio
async def test_apple_pay_declined_completes_with_failure():
    class Declining(PaymentBackendStub):
        async def process_apple_pay(self, token, amount, currency, billing):
            return {"success": False, "error": "Insufficient funds"}

    sessions = []
    outcome = await ApplePayAdapter(Declining(), apple_factory(sessions)).initiate(TOTAL, BILLING)
    assert outcome.error_message == "Insufficient funds"
    assert sessions[0].completed == [FakeApplePaySession.STATUS_FAILURE]


class RejectingValidationSession(FakeApplePaySession):
    def complete_merchant_validation(self, merchant_session):
        raise RuntimeError("InvalidAccessError: session is not active")


class RejectingCompletionSession(FakeApplePaySession):
    def complete_payment(self, status):
        raise RuntimeError("InvalidAccessError: session is not active")


class EarlyAuthorizationSession(FakeApplePaySession):
    def begin(self):
        asyncio.get_running_loop().call_soon(self.on_payment_authorized, {"payment": {"token": "early"}})
        super().begin()


@pytest.mark.asyncio
async def test_apple_pay_rejected_merchant_validation_ends_in_failure():
    sessions = []
    adapter = ApplePayAdapter(PaymentBackendStub(), apple_factory(sessions, RejectingValidationSession))
    outcome = await asyncio.wait_for(adapter.initiate(TOTAL, BILLING), 2)
    assert outcome.success is False
    assert outcome.error_kind == ErrorKind.PROVIDER
    assert sessions[0].aborted is True
    assert sessions[0].completed == []


@pytest.mark.asyncio
async def test_apple_pay_charge_stands_when_sheet_rejects_completion():
    sessions = []
    adapter = ApplePayAdapter(PaymentBackendStub(), apple_factory(sessions, RejectingCompletionSession))
    outcome = await asyncio.wait_for(adapter.initiate(TOTAL, BILLING), 2)
    assert outcome.success is True
    assert outcome.provider_reference.startswith("ap_")


@pytest.mark.asyncio
async def test_apple_pay_authorization_before_validation_is_ignored():
    tokens = []

    class Recording(PaymentBackendStub):
        async def process_apple_pay(self, token, amount, currency, billing):
            tokens.append(token)
            return await super().process_apple_pay(token, amount, currency, billing)

    sessions = []
    adapter = ApplePayAdapter(Recording(), apple_factory(sessions, EarlyAuthorizationSession))
    outcome = await asyncio.wait_for(adapter.initiate(TOTAL, BILLING), 2)
    assert outcome.success is True
    assert tokens == [{"paymentData": "opaque"}]


@pytest.mark.asyncio
async def test_apple_pay_success_without_transaction_id_is_a_failure():
    class NoReference(PaymentBackendStub):
        async def process_apple_pay(self, token, amount, currency, billing):
            return {"success": True, "transaction_id": ""}

    sessions = []
    outcome = await ApplePayAdapter(NoReference(), apple_factory(sessions)).initiate(TOTAL, BILLING)
    assert outcome.success is False
    assert outcome.error_kind == ErrorKind.PROVIDER
    assert sessions[0].completed == [FakeApplePaySession.STATUS_FAILURE]


# ---- Google Pay ----
class FakeGoogleClient:
    def __init__(self, data=None, error=None):
        self.data = data
        self.error = error
        self.requests = []

    async def load_payment_data(self, request):
        self.requests.append(request)
        if self.error:
            raise self.error
        return self.data


@pytest.mark.asyncio
async def test_google_pay_token_sent_to_backend():
    seen = {}

    class Recording(PaymentBackendStub):
        async def process_google_pay(self, token, amount, currency, billing):
            seen["token"] = token
            return await super().process_google_pay(token, amount, currency, billing)

    client = FakeGoogleClient({"paymentMethodData": {"tokenizationData": {"token": "gp-token"}}})
    outcome = await GooglePayAdapter(Recording(), client).initiate(TOTAL, BILLING)
    assert outcome.success is True
    assert seen["token"] == "gp-token"
    assert client.requests[0]["transactionInfo"]["totalPrice"] == "59.99"


@pytest.mark.asyncio
async def test_google_pay_canceled_sheet():
    client = FakeGoogleClient(error=GooglePayError("CANCELED"))
    outcome = await GooglePayAdapter(PaymentBackendStub(), client).initiate(TOTAL, BILLING)
    assert outcome.error_kind == ErrorKind.CANCELLED
    assert outcome.error_message == "Google Pay payment was cancelled"


@pytest.mark.asyncio
async def test_google_pay_missing_token():
    client = FakeGoogleClient({"paymentMethodData": {}})
    outcome = await GooglePayAdapter(PaymentBackendStub(), client).initiate(TOTAL, BILLING)
    assert outcome.success is False
    assert outcome.error_kind == ErrorKind.PROVIDER


@pytest.mark.asyncio
async def test_google_pay_success_without_transaction_id_is_a_failure():
    class NoReference(PaymentBackendStub):
        async def process_google_pay(self, token, amount, currency, billing):
            return {"success": True}

    client = FakeGoogleClient({"paymentMethodData": {"tokenizationData": {"token": "gp-token"}}})
    outcome = await GooglePayAdapter(NoReference(), client).initiate(TOTAL, BILLING)
    assert outcome.success is False
    assert outcome.error_message == "Google Pay payment could not be confirmed"


# ---- Crypto ----
@pytest.mark.asyncio
async def test_crypto_polls_until_completed_and_reports_pending_charge():
    pending = []
    backend = PaymentBackendStub(crypto_polls_to_complete=2)
    adapter = CryptoAdapter(backend, cryptocurrency="ethereum", poll_interval=0.001, ceiling=5, on_pending=pending.append)
    outcome = await adapter.initiate(TOTAL, BILLING)
    assert outcome.success is True
    assert outcome.details["cryptocurrency"] == "ethereum"
    assert pending[0]["status"] == "pending"
    assert pending[0]["wallet_address"]


@pytest.mark.asyncio
async def test_crypto_pending_callback_errors_do_not_stop_polling():
    def broken_display(charge):
        raise RuntimeError("display gone")

    backend = PaymentBackendStub(crypto_polls_to_complete=1)
    adapter = CryptoAdapter(backend, poll_interval=0.001, ceiling=5, on_pending=broken_display)
    outcome = await adapter.initiate(TOTAL, BILLING)
    assert outcome.success is True


@pytest.mark.asyncio
async def test_crypto_expired_stops_polling():
    class Expiring(PaymentBackendStub):
        def __init__(self):
            super().__init__()
            self.verifications = 0

        async def verify_crypto_payment(self, provider, payment_id):
            self.verifications += 1
            return {"payment_id": payment_id, "status": "expired"}

    backend = Expiring()
    outcome = await CryptoAdapter(backend, poll_interval=0.001, ceiling=5).initiate(TOTAL, BILLING)
    assert outcome.success is False
    assert outcome.error_message == "Payment expired. Please try again."
    assert backend.verifications == 1


@pytest.mark.asyncio
async def test_crypto_transient_poll_errors_keep_polling():
    class Flaky(PaymentBackendStub):
        def __init__(self):
            super().__init__()
            self.verifications = 0

        async def verify_crypto_payment(self, provider, payment_id):
            self.verifications += 1
            if self.verifications < 3:
                raise ConnectionError("blip")
            return {"payment_id": payment_id, "status": "completed"}

    backend = Flaky()
    outcome = await CryptoAdapter(backend, poll_interval=0.001, ceiling=5).initiate(TOTAL, BILLING)
    assert outcome.success is True
    assert backend.verifications == 3


@pytest.mark.asyncio
async def test_crypto_rejects_unknown_coin():
    outcome = await CryptoAdapter(PaymentBackendStub(), cryptocurrency="dogecoin").initiate(TOTAL, BILLING)
    assert outcome.error_kind == ErrorKind.VALIDATION


@pytest.mark.asyncio
async def test_crypto_quote_uses_exchange_rate():
    adapter = CryptoAdapter(PaymentBackendStub(), cryptocurrency="usdc")
    assert await adapter.quote(TOTAL) == Decimal("59.99000000")


@pytest.mark.asyncio
async def test_poll_until_never_checks_after_ceiling():
    checks = {"n": 0}

    async def check():
        checks["n"] += 1
        return None

    outcome = await poll_until(check, interval=0.01, ceiling=0.035)
    assert outcome.error_kind == ErrorKind.TIMEOUT
    after = checks["n"]
    await asyncio.sleep(0.05)
    assert checks["n"] == after


def test_adapters_declare_their_method():
    assert StripeAdapter.method == PaymentMethod.STRIPE
    assert CryptoAdapter.method == PaymentMethod.CRYPTO
