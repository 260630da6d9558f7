"""Stripe payment service for payment intents, deposit holds and webhooks.

Provides integration with Stripe using the v8+ StripeClient pattern.
Credentials come from STRIPE_SECRET_KEY / STRIPE_WEBHOOK_SECRET when set,
otherwise from SSM Parameter Store.
"""

import hashlib
import json
import logging
import os
from functools import lru_cache
from typing import Any

import stripe
from stripe import StripeClient

from .ssm_service import SSMServiceError, get_ssm_service

logger = logging.getLogger(__name__)


class StripeServiceError(Exception):
    """Raised when a Stripe operation fails."""

    def __init__(
        self,
        message: str,
        stripe_error_code: str | None = None,
        is_configuration_error: bool = False,
    ) -> None:
        """Initialize with message and optional Stripe error code.

        Args:
            message: Human-readable error message.
            stripe_error_code: Stripe-specific error code if available.
            is_configuration_error: True when credentials are missing or rejected.
        """
        super().__init__(message)
        self.stripe_error_code = stripe_error_code
        self.is_configuration_error = is_configuration_error


def _wrap(action: str, e: stripe.StripeError) -> StripeServiceError:
    error_code = getattr(e, "code", None)
    logger.error("Stripe %s failed: %s (code: %s)", action, str(e), error_code)
    return StripeServiceError(
        f"Failed to {action}: {e}",
        stripe_error_code=error_code,
        is_configuration_error=isinstance(e, stripe.AuthenticationError),
    )


class StripeService:
    """Service for Stripe payment operations.

    Handles:
    - Customer lookup/creation by email
    - PaymentIntents for rental charges and manual-capture deposit holds
    - Hold capture, cancellation and refunds
    - Webhook signature validation

    Usage:
        stripe_svc = get_stripe_service()
        intent = stripe_svc.create_payment_intent(
            amount_cents=7450,
            metadata={"booking_id": "BK-123"},
            idempotency_key="pi_BK-123_7450",
        )
    """

    def __init__(self, environment: str | None = None) -> None:
        """Initialize Stripe service.

        Args:
            environment: Environment name (dev, prod). Defaults to ENVIRONMENT env var.
        """
        self._environment = environment or os.environ.get("ENVIRONMENT", "dev")
        self._ssm = get_ssm_service()
        self._client: StripeClient | None = None
        self._webhook_secret: str | None = None
        self.currency = os.environ.get("STRIPE_CURRENCY", "cad").lower()

    def _get_secret(self, env_var: str, parameter: str) -> str:
        value = os.environ.get(env_var)
        if value:
            return value
        try:
            return self._ssm.get_parameter(f"/rentals/{self._environment}/stripe/{parameter}")
        except SSMServiceError as e:
            raise StripeServiceError(
                f"Stripe {parameter} not configured: {e}",
                is_configuration_error=True,
            ) from e

    def _get_client(self) -> StripeClient:
        """Get or create the Stripe client (lazy initialization).

        Raises:
            StripeServiceError: If credentials cannot be retrieved.
        """
        if self._client is None:
            secret_key = self._get_secret("STRIPE_SECRET_KEY", "secret_key")
            self._client = StripeClient(secret_key)
            logger.info("Stripe client initialized for environment: %s", self._environment)
        return self._client

    def _get_webhook_secret(self) -> str:
        if self._webhook_secret is None:
            self._webhook_secret = self._get_secret("STRIPE_WEBHOOK_SECRET", "webhook_secret")
        return self._webhook_secret

    def find_or_create_customer(
        self,
        *,
        email: str,
        name: str | None = None,
        phone: str | None = None,
        user_id: str | None = None,
    ) -> str:
        """Return the Stripe customer ID for an email, creating one if needed.

        Raises:
            StripeServiceError: If the lookup or creation fails.
        """
        client = self._get_client()
        try:
            existing = client.customers.list(params={"email": email, "limit": 1})
            if existing.data:
                return str(existing.data[0].id)

            params: dict[str, Any] = {"email": email}
            if name:
                params["name"] = name
            if phone:
                params["phone"] = phone
            if user_id:
                params["metadata"] = {"user_id": user_id}
            customer = client.customers.create(params=params)
            logger.info("Stripe customer created: %s", customer.id)
            return str(customer.id)
        except stripe.StripeError as e:
            raise _wrap("upsert customer", e) from e

    def create_payment_intent(
        self,
        *,
        amount_cents: int,
        metadata: dict[str, str],
        idempotency_key: str,
        customer_id: str | None = None,
        description: str | None = None,
        capture_method: str = "automatic",
    ) -> dict[str, Any]:
        """Create a PaymentIntent.

        ``capture_method="manual"`` creates an authorization hold.

        Returns:
            Dict with id, client_secret, status and amount.

        Raises:
            StripeServiceError: If creation fails.
        """
        client = self._get_client()
        params: dict[str, Any] = {
            "amount": amount_cents,
            "currency": self.currency,
            "metadata": metadata,
            "automatic_payment_methods": {"enabled": True},
        }
        if capture_method == "manual":
            params["capture_method"] = "manual"
            # Holds are confirmed on-session with a card element
            params["automatic_payment_methods"] = {"enabled": True, "allow_redirects": "never"}
        if customer_id:
            params["customer"] = customer_id
        if description:
            params["description"] = description

        try:
            intent = client.payment_intents.create(
                params=params,
                options={"idempotency_key": idempotency_key},
            )
            logger.info(
                "PaymentIntent %s created (%s, %d cents)",
                intent.id,
                capture_method,
                amount_cents,
            )
            return self._intent_to_dict(intent)
        except stripe.StripeError as e:
            raise _wrap("create payment intent", e) from e

    def retrieve_payment_intent(self, payment_intent_id: str) -> dict[str, Any]:
        """Retrieve a PaymentIntent as a plain dict."""
        client = self._get_client()
        try:
            return self._intent_to_dict(client.payment_intents.retrieve(payment_intent_id))
        except stripe.StripeError as e:
            raise _wrap("retrieve payment intent", e) from e

    def cancel_payment_intent(
        self,
        payment_intent_id: str,
        reason: str = "requested_by_customer",
    ) -> dict[str, Any]:
        """Cancel a PaymentIntent, releasing any authorization hold."""
        client = self._get_client()
        try:
            intent = client.payment_intents.cancel(
                payment_intent_id,
                params={"cancellation_reason": reason},
            )
            logger.info("PaymentIntent %s canceled (%s)", payment_intent_id, reason)
            return self._intent_to_dict(intent)
        except stripe.StripeError as e:
            raise _wrap("cancel payment intent", e) from e

    def capture_payment_intent(
        self,
        payment_intent_id: str,
        amount_cents: int,
    ) -> dict[str, Any]:
        """Capture part or all of an authorized hold.

        Stripe releases whatever is not captured.
        """
        client = self._get_client()
        try:
            intent = client.payment_intents.capture(
                payment_intent_id,
                params={"amount_to_capture": amount_cents},
                options={"idempotency_key": f"capture_{payment_intent_id}_{amount_cents}"},
            )
            logger.info("PaymentIntent %s captured %d cents", payment_intent_id, amount_cents)
            return self._intent_to_dict(intent)
        except stripe.StripeError as e:
            raise _wrap("capture payment intent", e) from e

    def get_card_details(self, payment_method_id: str) -> dict[str, str | None]:
        """Return brand, last4 and holder name for a card payment method."""
        client = self._get_client()
        try:
            method = client.payment_methods.retrieve(payment_method_id)
        except stripe.StripeError as e:
            raise _wrap("retrieve payment method", e) from e

        card = getattr(method, "card", None)
        billing = getattr(method, "billing_details", None)
        return {
            "brand": getattr(card, "brand", None) if card else None,
            "last4": getattr(card, "last4", None) if card else None,
            "holder": getattr(billing, "name", None) if billing else None,
        }

    def list_charges(self, payment_intent_id: str) -> list[dict[str, Any]]:
        """List charges for a PaymentIntent, newest first."""
        client = self._get_client()
        try:
            charges = client.charges.list(params={"payment_intent": payment_intent_id, "limit": 10})
        except stripe.StripeError as e:
            raise _wrap("list charges", e) from e

        return [
            {
                "id": charge.id,
                "status": charge.status,
                "captured": bool(charge.captured),
                "amount_captured": charge.amount_captured,
                "created": charge.created,
            }
            for charge in charges.data
        ]

    def create_refund(
        self,
        *,
        payment_intent_id: str,
        amount_cents: int | None = None,
        reason: str | None = None,
    ) -> dict[str, Any]:
        """Create a refund for a payment.

        Args:
            payment_intent_id: Stripe PaymentIntent ID (pi_xxx).
            amount_cents: Refund amount in cents. If None, full refund.
            reason: Reason for refund (for records).

        Returns:
            Dict with refund_id, amount and status.

        Raises:
            StripeServiceError: If refund creation fails.
        """
        client = self._get_client()

        params: dict[str, Any] = {"payment_intent": payment_intent_id}
        if amount_cents is not None:
            params["amount"] = amount_cents
        if reason:
            params["metadata"] = {"reason": reason}

        try:
            refund = client.refunds.create(params=params)
            logger.info("Refund %s created for PaymentIntent %s", refund.id, payment_intent_id)
            return {
                "refund_id": refund.id,
                "amount": refund.amount,
                "status": refund.status,
            }
        except stripe.StripeError as e:
            raise _wrap("create refund", e) from e

    def verify_webhook_signature(self, payload: bytes, signature: str) -> dict[str, Any]:
        """Verify a webhook signature and parse the event.

        Args:
            payload: Raw request body bytes.
            signature: Stripe-Signature header value.

        Returns:
            Parsed Stripe event as a plain dict.

        Raises:
            StripeServiceError: If the secret is missing or the signature is invalid.
        """
        webhook_secret = self._get_webhook_secret()

        try:
            event = stripe.Webhook.construct_event(payload, signature, webhook_secret)
        except stripe.SignatureVerificationError as e:
            logger.warning("Invalid webhook signature: %s", str(e))
            raise StripeServiceError("Invalid webhook signature") from e
        except ValueError as e:
            logger.warning("Unparseable webhook payload: %s", str(e))
            raise StripeServiceError("Invalid webhook payload") from e

        logger.info("Webhook signature verified for event: %s", event.id)
        # Typed parsing happens downstream on the plain JSON body
        parsed: dict[str, Any] = json.loads(payload)
        return parsed

    @staticmethod
    def _intent_to_dict(intent: Any) -> dict[str, Any]:
        return {
            "id": intent.id,
            "status": intent.status,
            "client_secret": intent.client_secret,
            "amount": intent.amount,
            "amount_capturable": getattr(intent, "amount_capturable", 0),
            "amount_received": getattr(intent, "amount_received", 0),
            "payment_method": getattr(intent, "payment_method", None),
            "latest_charge": getattr(intent, "latest_charge", None),
            "cancellation_reason": getattr(intent, "cancellation_reason", None),
        }

    @staticmethod
    def compute_payload_hash(payload: bytes) -> str:
        """Compute SHA-256 hash of a webhook payload."""
        return hashlib.sha256(payload).hexdigest()


@lru_cache(maxsize=1)
def get_stripe_service() -> StripeService:
    """Get the shared StripeService instance (singleton pattern)."""
    return StripeService()
