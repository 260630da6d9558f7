"""Unit tests for StripeService.

Tests verify the service logic without making actual Stripe API calls.
All Stripe interactions are mocked; webhook signatures are computed locally.

Test categories:
- Initialization and credential retrieval
- PaymentIntents (rental charges and manual-capture holds)
- Hold capture, cancellation and refunds
- verify_webhook_signature()
- Error mapping
"""

import hashlib
import hmac
import json
import time
from unittest.mock import MagicMock, patch

import pytest
import stripe

from rental_core.services.ssm_service import SSMServiceError
from rental_core.services.stripe_service import StripeService, StripeServiceError

# === Test Configuration ===

TEST_SECRET_KEY = "sk_test_abc123xyz"
TEST_WEBHOOK_SECRET = "whsec_test_secret123"


def sign(payload: bytes, secret: str = TEST_WEBHOOK_SECRET, timestamp: int | None = None) -> str:
    """Build a Stripe-Signature header for a payload."""
    timestamp = timestamp or int(time.time())
    signed = f"{timestamp}.{payload.decode()}".encode()
    digest = hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"


# === Test Fixtures ===


@pytest.fixture
def mock_ssm_service():
    """Mock SSM service for credential retrieval."""
    with patch("rental_core.services.stripe_service.get_ssm_service") as mock_get_ssm:
        mock_ssm = MagicMock()
        mock_ssm.get_parameter.side_effect = lambda param: {
            "/rentals/dev/stripe/secret_key": TEST_SECRET_KEY,
            "/rentals/dev/stripe/webhook_secret": TEST_WEBHOOK_SECRET,
        }[param]
        mock_get_ssm.return_value = mock_ssm
        yield mock_ssm


@pytest.fixture
def stripe_service(mock_ssm_service, monkeypatch) -> StripeService:
    """StripeService reading credentials from the mocked SSM."""
    monkeypatch.delenv("STRIPE_SECRET_KEY", raising=False)
    monkeypatch.delenv("STRIPE_WEBHOOK_SECRET", raising=False)
    monkeypatch.delenv("STRIPE_CURRENCY", raising=False)
    return StripeService(environment="dev")


@pytest.fixture
def mock_stripe_client():
    """Mock Stripe client for API calls."""
    with patch("rental_core.services.stripe_service.StripeClient") as mock_client_class:
        mock_client = MagicMock()
        mock_client_class.return_value = mock_client
        yield mock_client


def fake_intent(**overrides):
    intent = MagicMock()
    intent.id = "pi_test_1"
    intent.status = "requires_payment_method"
    intent.client_secret = "pi_test_1_secret"
    intent.amount = 7450
    intent.amount_capturable = 0
    intent.amount_received = 0
    intent.payment_method = None
    intent.latest_charge = None
    intent.cancellation_reason = None
    for key, value in overrides.items():
        setattr(intent, key, value)
    return intent


# === Initialization ===


class TestInitialization:
    """Credential handling."""

    def test_client_lazy_initialized(self, stripe_service, mock_ssm_service):
        """No credentials are read until the first API call."""
        assert stripe_service._client is None
        mock_ssm_service.get_parameter.assert_not_called()

    def test_reads_secret_key_from_ssm(self, stripe_service):
        with patch("rental_core.services.stripe_service.StripeClient") as client_class:
            stripe_service._get_client()
        client_class.assert_called_once_with(TEST_SECRET_KEY)

    def test_environment_variable_wins(self, mock_ssm_service, monkeypatch):
        monkeypatch.setenv("STRIPE_SECRET_KEY", "sk_test_from_env")
        service = StripeService(environment="dev")

        with patch("rental_core.services.stripe_service.StripeClient") as client_class:
            service._get_client()

        client_class.assert_called_once_with("sk_test_from_env")
        mock_ssm_service.get_parameter.assert_not_called()

    def test_missing_secret_is_configuration_error(self, stripe_service, mock_ssm_service):
        mock_ssm_service.get_parameter.side_effect = SSMServiceError("not found", not_found=True)

        with pytest.raises(StripeServiceError) as exc_info:
            stripe_service._get_client()

        assert exc_info.value.is_configuration_error is True

    def test_default_currency_is_cad(self, stripe_service):
        assert stripe_service.currency == "cad"


# === PaymentIntents ===


class TestCreatePaymentIntent:
    """Tests for create_payment_intent()."""

    def test_rental_charge(self, stripe_service, mock_stripe_client):
        mock_stripe_client.payment_intents.create.return_value = fake_intent()

        result = stripe_service.create_payment_intent(
            amount_cents=7450,
            metadata={"booking_id": "BK-1"},
            idempotency_key="pi_BK-1_7450_4550",
            customer_id="cus_1",
        )

        assert result["id"] == "pi_test_1"
        assert result["client_secret"] == "pi_test_1_secret"
        call = mock_stripe_client.payment_intents.create.call_args
        params = call.kwargs["params"]
        assert params["amount"] == 7450
        assert params["currency"] == "cad"
        assert params["customer"] == "cus_1"
        assert "capture_method" not in params
        assert call.kwargs["options"] == {"idempotency_key": "pi_BK-1_7450_4550"}

    def test_manual_capture_hold(self, stripe_service, mock_stripe_client):
        mock_stripe_client.payment_intents.create.return_value = fake_intent()

        stripe_service.create_payment_intent(
            amount_cents=35000,
            metadata={"type": "deposit_hold"},
            idempotency_key="deposit_hold_BK-1_35000_first",
            capture_method="manual",
        )

        params = mock_stripe_client.payment_intents.create.call_args.kwargs["params"]
        assert params["capture_method"] == "manual"
        assert params["automatic_payment_methods"]["allow_redirects"] == "never"

    def test_preserves_stripe_error_code(self, stripe_service, mock_stripe_client):
        mock_stripe_client.payment_intents.create.side_effect = stripe.InvalidRequestError(
            "Amount too small", "amount", code="amount_too_small"
        )

        with pytest.raises(StripeServiceError) as exc_info:
            stripe_service.create_payment_intent(
                amount_cents=1, metadata={}, idempotency_key="k"
            )

        assert exc_info.value.stripe_error_code == "amount_too_small"
        assert exc_info.value.is_configuration_error is False

    def test_authentication_error_is_configuration_error(self, stripe_service, mock_stripe_client):
        mock_stripe_client.payment_intents.create.side_effect = stripe.AuthenticationError("bad key")

        with pytest.raises(StripeServiceError) as exc_info:
            stripe_service.create_payment_intent(amount_cents=100, metadata={}, idempotency_key="k")

        assert exc_info.value.is_configuration_error is True


class TestCustomers:
    def test_reuses_existing_customer(self, stripe_service, mock_stripe_client):
        existing = MagicMock()
        existing.id = "cus_existing"
        mock_stripe_client.customers.list.return_value = MagicMock(data=[existing])

        assert stripe_service.find_or_create_customer(email="jane@example.com") == "cus_existing"
        mock_stripe_client.customers.create.assert_not_called()

    def test_creates_customer(self, stripe_service, mock_stripe_client):
        mock_stripe_client.customers.list.return_value = MagicMock(data=[])
        mock_stripe_client.customers.create.return_value = MagicMock(id="cus_new")

        result = stripe_service.find_or_create_customer(
            email="jane@example.com", name="Jane", user_id="user-123"
        )

        assert result == "cus_new"
        params = mock_stripe_client.customers.create.call_args.kwargs["params"]
        assert params == {
            "email": "jane@example.com",
            "name": "Jane",
            "metadata": {"user_id": "user-123"},
        }


class TestHoldOperations:
    """Capture, cancel and card details."""

    def test_capture_passes_amount_and_key(self, stripe_service, mock_stripe_client):
        mock_stripe_client.payment_intents.capture.return_value = fake_intent(
            status="succeeded", latest_charge="ch_1"
        )

        result = stripe_service.capture_payment_intent("pi_hold_1", 9550)

        assert result["latest_charge"] == "ch_1"
        call = mock_stripe_client.payment_intents.capture.call_args
        assert call.args == ("pi_hold_1",)
        assert call.kwargs["params"] == {"amount_to_capture": 9550}
        assert call.kwargs["options"] == {"idempotency_key": "capture_pi_hold_1_9550"}

    def test_cancel(self, stripe_service, mock_stripe_client):
        mock_stripe_client.payment_intents.cancel.return_value = fake_intent(status="canceled")

        result = stripe_service.cancel_payment_intent("pi_hold_1")

        assert result["status"] == "canceled"
        assert mock_stripe_client.payment_intents.cancel.call_args.kwargs["params"] == {
            "cancellation_reason": "requested_by_customer"
        }

    def test_cancel_unexpected_state_code(self, stripe_service, mock_stripe_client):
        mock_stripe_client.payment_intents.cancel.side_effect = stripe.InvalidRequestError(
            "already canceled", None, code="payment_intent_unexpected_state"
        )

        with pytest.raises(StripeServiceError) as exc_info:
            stripe_service.cancel_payment_intent("pi_hold_1")

        assert exc_info.value.stripe_error_code == "payment_intent_unexpected_state"

    def test_card_details(self, stripe_service, mock_stripe_client):
        method = MagicMock()
        method.card.brand = "visa"
        method.card.last4 = "4242"
        method.billing_details.name = "Jane Driver"
        mock_stripe_client.payment_methods.retrieve.return_value = method

        assert stripe_service.get_card_details("pm_1") == {
            "brand": "visa",
            "last4": "4242",
            "holder": "Jane Driver",
        }

    def test_list_charges(self, stripe_service, mock_stripe_client):
        charge = MagicMock(id="ch_1", status="succeeded", captured=True, amount_captured=12000, created=1)
        mock_stripe_client.charges.list.return_value = MagicMock(data=[charge])

        result = stripe_service.list_charges("pi_hold_1")

        assert result == [
            {"id": "ch_1", "status": "succeeded", "captured": True, "amount_captured": 12000, "created": 1}
        ]


class TestCreateRefund:
    def test_partial_refund(self, stripe_service, mock_stripe_client):
        mock_stripe_client.refunds.create.return_value = MagicMock(
            id="re_1", amount=5000, status="succeeded"
        )

        result = stripe_service.create_refund(
            payment_intent_id="pi_1", amount_cents=5000, reason="Booking voided"
        )

        assert result == {"refund_id": "re_1", "amount": 5000, "status": "succeeded"}
        assert mock_stripe_client.refunds.create.call_args.kwargs["params"] == {
            "payment_intent": "pi_1",
            "amount": 5000,
            "metadata": {"reason": "Booking voided"},
        }

    def test_full_refund_omits_amount(self, stripe_service, mock_stripe_client):
        mock_stripe_client.refunds.create.return_value = MagicMock(
            id="re_2", amount=30000, status="pending"
        )

        stripe_service.create_refund(payment_intent_id="pi_1")

        assert mock_stripe_client.refunds.create.call_args.kwargs["params"] == {"payment_intent": "pi_1"}


# === Webhooks ===


class TestVerifyWebhookSignature:
    """verify_webhook_signature() with locally signed payloads."""

    payload = json.dumps(
        {"id": "evt_1", "object": "event", "type": "payment_intent.succeeded", "data": {"object": {}}}
    ).encode()

    def test_valid_signature_returns_plain_dict(self, stripe_service):
        result = stripe_service.verify_webhook_signature(self.payload, sign(self.payload))

        assert result["id"] == "evt_1"
        assert result["type"] == "payment_intent.succeeded"
        assert isinstance(result, dict)

    def test_wrong_secret(self, stripe_service):
        with pytest.raises(StripeServiceError) as exc_info:
            stripe_service.verify_webhook_signature(
                self.payload, sign(self.payload, secret="whsec_other")
            )

        assert "Invalid webhook signature" in str(exc_info.value)
        assert exc_info.value.is_configuration_error is False

    def test_stale_timestamp(self, stripe_service):
        old = int(time.time()) - 3600

        with pytest.raises(StripeServiceError):
            stripe_service.verify_webhook_signature(self.payload, sign(self.payload, timestamp=old))

    def test_tampered_payload(self, stripe_service):
        header = sign(self.payload)
        tampered = self.payload.replace(b"evt_1", b"evt_2")

        with pytest.raises(StripeServiceError):
            stripe_service.verify_webhook_signature(tampered, header)

    def test_missing_webhook_secret(self, stripe_service, mock_ssm_service):
        mock_ssm_service.get_parameter.side_effect = SSMServiceError("missing", not_found=True)

        with pytest.raises(StripeServiceError) as exc_info:
            stripe_service.verify_webhook_signature(self.payload, sign(self.payload))

        assert exc_info.value.is_configuration_error is True


def test_compute_payload_hash():
    assert StripeService.compute_payload_hash(b"abc") == hashlib.sha256(b"abc").hexdigest()
