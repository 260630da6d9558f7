"""Security-deposit authorization holds.

Deposit state machine on ``booking.deposit_status``::

    none -> authorizing -> requires_payment -> authorized -> captured | released | expired | canceled
                        \\-> failed

``authorizing`` and ``requires_payment`` are written here; ``authorized``,
``captured``, ``expired`` and ``canceled`` normally arrive through webhooks.
"""

import datetime as dt
import os
from decimal import Decimal
from typing import Any

from botocore.exceptions import BotoCoreError, ClientError

from rental_core.models.booking import Booking
from rental_core.models.deposit import (
    DepositHoldRequest,
    DepositHoldResult,
    DepositLedgerEntry,
    DepositReleaseResult,
    DepositSyncResult,
)
from rental_core.models.enums import (
    TERMINAL_BOOKING_STATUSES,
    DepositStatus,
    LedgerAction,
    NotificationTemplate,
)
from rental_core.models.errors import BookingError, ErrorCode
from rental_core.models.notification import NotificationRequest
from rental_core.utils.logging import get_logger, log_payment_operation
from rental_core.utils.money import from_cents, to_cents

from .audit_log import AuditLogService
from .bookings import BookingRepository, utc_now
from .notifications import NotificationOutbox
from .payment_intents import raise_for_stripe_error
from .stripe_service import StripeService, StripeServiceError, get_stripe_service

logger = get_logger(__name__)

# Card networks keep an uncaptured authorization for about seven days
HOLD_VALIDITY = dt.timedelta(days=7)

DEFAULT_DEPOSIT_AMOUNT = Decimal("350.00")

# Stripe intent status -> deposit_status
STRIPE_STATUS_MAP: dict[str, DepositStatus] = {
    "requires_payment_method": DepositStatus.REQUIRES_PAYMENT,
    "requires_confirmation": DepositStatus.REQUIRES_PAYMENT,
    "requires_action": DepositStatus.AUTHORIZING,
    "processing": DepositStatus.AUTHORIZING,
    "requires_capture": DepositStatus.AUTHORIZED,
    "succeeded": DepositStatus.CAPTURED,
}


def hold_expiry(now: dt.datetime | None = None) -> str:
    return ((now or utc_now()) + HOLD_VALIDITY).isoformat()


def default_deposit_amount() -> Decimal:
    value = os.environ.get("DEFAULT_DEPOSIT_AMOUNT")
    return Decimal(value) if value else DEFAULT_DEPOSIT_AMOUNT


def deposit_hold_intent_id(booking: Booking) -> str:
    """The booking's hold PaymentIntent ID. Raises DEPOSIT_HOLD_MISSING when unset."""
    if not booking.stripe_deposit_pi_id:
        raise BookingError(
            ErrorCode.DEPOSIT_HOLD_MISSING, details={"bookingId": booking.booking_id}
        )
    return booking.stripe_deposit_pi_id


def map_stripe_status(intent: dict[str, Any]) -> DepositStatus | None:
    """Deposit status implied by a PaymentIntent, or None if unknown."""
    status = intent.get("status")
    if status == "canceled":
        if intent.get("cancellation_reason") == "automatic":
            return DepositStatus.EXPIRED
        return DepositStatus.CANCELED
    return STRIPE_STATUS_MAP.get(status or "")


class DepositHoldService:
    """Creates, releases and reconciles deposit holds on bookings."""

    def __init__(
        self,
        repository: BookingRepository | None = None,
        stripe_service: StripeService | None = None,
        audit_log: AuditLogService | None = None,
        outbox: NotificationOutbox | None = None,
    ) -> None:
        self._repo = repository or BookingRepository()
        self._stripe = stripe_service or get_stripe_service()
        self._audit = audit_log or AuditLogService(self._repo.db)
        self._outbox = outbox or NotificationOutbox(self._repo.db)

    # === Create ===

    def create_deposit_hold(self, request: DepositHoldRequest) -> DepositHoldResult:
        """Create a manual-capture PaymentIntent for the booking's deposit.

        Idempotent: a booking whose hold is already authorized gets its
        existing intent back and nothing is written.

        Raises:
            BookingError: BOOKING_NOT_FOUND, INVALID_STATE_TRANSITION or a Stripe error.
        """
        booking = self._repo.require_booking(request.booking_id)

        if booking.has_deposit_hold:
            return self._existing_hold(booking)

        if booking.status in TERMINAL_BOOKING_STATUSES:
            raise BookingError(
                ErrorCode.INVALID_STATE_TRANSITION,
                details={"status": booking.status.value},
            )

        amount = request.amount or (
            booking.deposit_amount if booking.deposit_amount > 0 else default_deposit_amount()
        )
        amount_cents = to_cents(amount)

        self._repo.update_booking(
            booking.booking_id, {"deposit_status": DepositStatus.AUTHORIZING.value}
        )

        try:
            result = self._create_hold(booking, request, amount_cents)
        except StripeServiceError as e:
            self._mark_failed(request, str(e))
            raise_for_stripe_error(e)
        except Exception as e:
            self._mark_failed(request, str(e))
            raise

        log_payment_operation(
            logger,
            "create_deposit_hold",
            booking_id=booking.booking_id,
            payment_intent_id=result.payment_intent_id,
            amount_cents=amount_cents,
            status=result.deposit_status.value,
        )
        return result

    def _existing_hold(self, booking: Booking) -> DepositHoldResult:
        pi_id = deposit_hold_intent_id(booking)
        try:
            intent = self._stripe.retrieve_payment_intent(pi_id)
        except StripeServiceError as e:
            raise_for_stripe_error(e)

        logger.info(
            "Deposit already authorized for booking %s, returning %s",
            booking.booking_id,
            intent["id"],
        )
        return DepositHoldResult(
            payment_intent_id=intent["id"],
            client_secret=intent.get("client_secret"),
            expires_at=booking.deposit_expires_at,
            amount_cents=to_cents(booking.deposit_amount) or int(intent.get("amount") or 0),
            deposit_status=DepositStatus.AUTHORIZED,
            already_authorized=True,
        )

    def _create_hold(
        self,
        booking: Booking,
        request: DepositHoldRequest,
        amount_cents: int,
    ) -> DepositHoldResult:
        customer_id = request.customer_id
        if not customer_id:
            profile = self._repo.get_profile(booking.user_id) or {}
            if profile.get("email"):
                customer_id = self._stripe.find_or_create_customer(
                    email=profile["email"],
                    name=profile.get("full_name"),
                    phone=profile.get("phone"),
                    user_id=booking.user_id,
                )

        intent = self._stripe.create_payment_intent(
            amount_cents=amount_cents,
            customer_id=customer_id,
            capture_method="manual",
            description=f"Security deposit for booking {booking.booking_code or booking.booking_id}",
            metadata={
                "booking_id": booking.booking_id,
                "booking_code": booking.booking_code or "",
                "user_id": booking.user_id,
                "type": "deposit_hold",
            },
            # A new key per previous intent so a failed hold can be retried
            idempotency_key=(
                f"deposit_hold_{booking.booking_id}_{amount_cents}_"
                f"{booking.stripe_deposit_pi_id or 'first'}"
            ),
        )

        expires_at = hold_expiry()
        self._repo.update_booking(
            booking.booking_id,
            {
                "deposit_status": DepositStatus.REQUIRES_PAYMENT.value,
                "stripe_deposit_pi_id": intent["id"],
                "stripe_deposit_client_secret": intent["client_secret"],
                "deposit_amount": from_cents(amount_cents),
                "deposit_expires_at": expires_at,
            },
        )

        self._repo.append_ledger(
            DepositLedgerEntry(
                booking_id=booking.booking_id,
                action=LedgerAction.STRIPE_HOLD,
                amount=from_cents(amount_cents),
                reason="Deposit authorization hold created",
                created_by=request.actor_id,
                stripe_pi_id=intent["id"],
            )
        )
        self._audit.record(
            "deposit_hold_created",
            booking.booking_id,
            user_id=request.actor_id,
            new_data={
                "payment_intent_id": intent["id"],
                "amount_cents": amount_cents,
                "expires_at": expires_at,
            },
        )

        return DepositHoldResult(
            payment_intent_id=intent["id"],
            client_secret=intent["client_secret"],
            expires_at=expires_at,
            amount_cents=amount_cents,
            deposit_status=DepositStatus.REQUIRES_PAYMENT,
        )

    def _mark_failed(self, request: DepositHoldRequest, error: str) -> None:
        """Best-effort rollback of ``authorizing`` after a failed hold."""
        logger.error("Deposit hold failed for booking %s: %s", request.booking_id, error)
        try:
            self._repo.update_booking(
                request.booking_id, {"deposit_status": DepositStatus.FAILED.value}
            )
        except (ClientError, BotoCoreError) as e:
            logger.warning(
                "Could not mark deposit failed for booking %s: %s", request.booking_id, e
            )

    # === Release ===

    def release_deposit_hold(
        self,
        booking_id: str,
        actor_id: str,
        reason: str = "Deposit released",
        bypass_status_check: bool = False,
    ) -> DepositReleaseResult:
        """Cancel the authorization so the customer's funds are freed.

        Raises:
            BookingError: BOOKING_NOT_FOUND, INVALID_STATE_TRANSITION,
                DEPOSIT_NOT_AUTHORIZED or a Stripe error.
        """
        booking = self._repo.require_booking(booking_id)

        if booking.deposit_status == DepositStatus.RELEASED:
            return DepositReleaseResult(
                booking_id=booking_id,
                payment_intent_id=booking.stripe_deposit_pi_id,
                deposit_status=DepositStatus.RELEASED,
                already_released=True,
            )

        if not bypass_status_check and booking.status not in TERMINAL_BOOKING_STATUSES:
            raise BookingError(
                ErrorCode.INVALID_STATE_TRANSITION,
                details={
                    "status": booking.status.value,
                    "message": "Deposit can only be released after the rental is completed or cancelled",
                },
            )

        if not booking.has_deposit_hold:
            raise BookingError(
                ErrorCode.DEPOSIT_NOT_AUTHORIZED,
                details={"depositStatus": booking.deposit_status.value},
            )

        pi_id = deposit_hold_intent_id(booking)
        self.cancel_hold(pi_id)

        self._repo.update_booking(
            booking_id,
            {
                "deposit_status": DepositStatus.RELEASED.value,
                "deposit_released_at": utc_now().isoformat(),
            },
        )
        self._repo.append_ledger(
            DepositLedgerEntry(
                booking_id=booking_id,
                action=LedgerAction.RELEASE,
                amount=booking.deposit_amount,
                reason=reason,
                created_by=actor_id,
                stripe_pi_id=pi_id,
            )
        )
        self._audit.record(
            "deposit_released",
            booking_id,
            user_id=actor_id,
            old_data={"deposit_status": booking.deposit_status.value},
            new_data={"deposit_status": DepositStatus.RELEASED.value, "reason": reason},
        )
        self._outbox.enqueue(
            NotificationRequest(
                booking_id=booking_id,
                template_type=NotificationTemplate.DEPOSIT_RELEASED,
                dedupe_suffix=pi_id,
            )
        )

        log_payment_operation(
            logger,
            "release_deposit_hold",
            booking_id=booking_id,
            payment_intent_id=pi_id,
            status=DepositStatus.RELEASED.value,
        )
        return DepositReleaseResult(
            booking_id=booking_id,
            payment_intent_id=pi_id,
            deposit_status=DepositStatus.RELEASED,
        )

    def cancel_hold(self, payment_intent_id: str) -> None:
        """Cancel an intent, tolerating one that is already canceled."""
        try:
            self._stripe.cancel_payment_intent(payment_intent_id, reason="requested_by_customer")
        except StripeServiceError as e:
            if e.stripe_error_code != "payment_intent_unexpected_state":
                raise_for_stripe_error(e)
            try:
                intent = self._stripe.retrieve_payment_intent(payment_intent_id)
            except StripeServiceError as retrieve_error:
                raise_for_stripe_error(retrieve_error)
            if intent.get("status") != "canceled":
                raise_for_stripe_error(e)
            logger.info("PaymentIntent %s was already canceled", payment_intent_id)

    # === Sync ===

    def sync_deposit_status(self, booking_id: str, actor_id: str) -> DepositSyncResult:
        """Pull the hold's state from Stripe and store it on the booking.

        Raises:
            BookingError: BOOKING_NOT_FOUND, DEPOSIT_HOLD_MISSING or a Stripe error.
        """
        booking = self._repo.require_booking(booking_id)
        pi_id = deposit_hold_intent_id(booking)

        try:
            intent = self._stripe.retrieve_payment_intent(pi_id)
            charges = self._stripe.list_charges(pi_id)
        except StripeServiceError as e:
            raise_for_stripe_error(e)

        previous = booking.deposit_status
        mapped = map_stripe_status(intent) or previous
        # Our own release cancels the intent; keep the more specific status
        if previous == DepositStatus.RELEASED and mapped == DepositStatus.CANCELED:
            mapped = previous

        fields: dict[str, Any] = {"deposit_status": mapped.value}
        if mapped == DepositStatus.AUTHORIZED and not booking.deposit_authorized_at:
            fields["deposit_authorized_at"] = utc_now().isoformat()

        captured = [c for c in charges if c.get("captured")]
        charge_id = captured[0]["id"] if captured else intent.get("latest_charge")
        if charge_id:
            fields["stripe_deposit_charge_id"] = charge_id
        if mapped == DepositStatus.CAPTURED and captured:
            fields["deposit_captured_amount"] = from_cents(int(captured[0]["amount_captured"] or 0))

        if intent.get("payment_method"):
            fields["stripe_deposit_pm_id"] = intent["payment_method"]
            fields.update(self._card_fields(intent["payment_method"]))

        self._repo.update_booking(booking_id, fields)
        self._repo.append_ledger(
            DepositLedgerEntry(
                booking_id=booking_id,
                action=LedgerAction.STATUS_SYNC,
                amount=booking.deposit_amount,
                reason=f"{previous.value} -> {mapped.value} (stripe: {intent.get('status')})",
                created_by=actor_id,
                stripe_pi_id=pi_id,
                stripe_charge_id=charge_id,
            )
        )

        log_payment_operation(
            logger,
            "sync_deposit_status",
            booking_id=booking_id,
            payment_intent_id=pi_id,
            status=mapped.value,
            previous_status=previous.value,
        )
        return DepositSyncResult(
            booking_id=booking_id,
            payment_intent_id=pi_id,
            stripe_status=str(intent.get("status")),
            previous_status=previous,
            deposit_status=mapped,
            charge_id=charge_id,
            changed=mapped != previous,
        )

    def _card_fields(self, payment_method_id: str) -> dict[str, str]:
        return fetch_card_fields(self._stripe, payment_method_id)


def fetch_card_fields(stripe_service: StripeService, payment_method_id: str) -> dict[str, str]:
    """Booking card columns for a payment method. Missing details are not an error."""
    try:
        card = stripe_service.get_card_details(payment_method_id)
    except StripeServiceError as e:
        logger.warning("Card details unavailable for %s: %s", payment_method_id, e)
        return {}
    fields = {}
    if card.get("brand"):
        fields["card_type"] = str(card["brand"])
    if card.get("last4"):
        fields["card_last_four"] = str(card["last4"])
    if card.get("holder"):
        fields["card_holder_name"] = str(card["holder"])
    return fields
