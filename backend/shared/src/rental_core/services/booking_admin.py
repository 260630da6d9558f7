"""Operator actions that end a booking: voiding and closing the account.

Both refuse terminal bookings with INVALID_STATE_TRANSITION before touching
Stripe or the database. Stripe calls happen before the booking write so a
provider failure leaves the booking unchanged.
"""

from rental_core.models.booking import (
    AdditionalCharge,
    Booking,
    CloseAccountResult,
    VoidBookingResult,
)
from rental_core.models.deposit import DepositLedgerEntry
from rental_core.models.enums import (
    TERMINAL_BOOKING_STATUSES,
    BookingStatus,
    DepositStatus,
    LedgerAction,
    NotificationTemplate,
    PaymentType,
    TransactionStatus,
)
from rental_core.models.errors import BookingError, ErrorCode
from rental_core.models.notification import NotificationRequest
from rental_core.utils.logging import get_logger, log_payment_operation
from rental_core.utils.money import Amount, from_cents, to_cents

from .audit_log import AuditLogService
from .bookings import BookingRepository, utc_now
from .deposit_holds import DepositHoldService, deposit_hold_intent_id
from .notifications import NotificationOutbox
from .payment_intents import raise_for_stripe_error
from .stripe_service import StripeService, StripeServiceError, get_stripe_service

logger = get_logger(__name__)

CUSTOMER_ISSUE_ALERT = "customer_issue"


def _require_open(booking: Booking) -> None:
    if booking.status in TERMINAL_BOOKING_STATUSES:
        raise BookingError(
            ErrorCode.INVALID_STATE_TRANSITION,
            details={"bookingId": booking.booking_id, "status": booking.status.value},
        )


class BookingAdminService:
    """Void and close-account operations for staff and admins."""

    def __init__(
        self,
        repository: BookingRepository | None = None,
        stripe_service: StripeService | None = None,
        audit_log: AuditLogService | None = None,
        outbox: NotificationOutbox | None = None,
        deposit_holds: DepositHoldService | None = None,
    ) -> None:
        self._repo = repository or BookingRepository()
        self._stripe = stripe_service or get_stripe_service()
        self._audit = audit_log or AuditLogService(self._repo.db)
        self._outbox = outbox or NotificationOutbox(self._repo.db)
        self._holds = deposit_holds or DepositHoldService(
            self._repo, self._stripe, self._audit, self._outbox
        )

    def _update_open_booking(self, booking: Booking, fields: dict) -> Booking:
        """Write ``fields`` only while the booking is still non-terminal."""
        terminal = {f":t{i}": s.value for i, s in enumerate(sorted(TERMINAL_BOOKING_STATUSES))}
        updated = self._repo.update_booking(
            booking.booking_id,
            fields,
            condition=f"NOT #bst IN ({', '.join(terminal)})",
            condition_values=terminal,
            condition_names={"#bst": "status"},
        )
        if updated is None:
            raise BookingError(
                ErrorCode.INVALID_STATE_TRANSITION,
                details={"bookingId": booking.booking_id},
            )
        return updated

    # === Void ===

    def void_booking(
        self,
        booking_id: str,
        reason: str,
        actor_id: str,
        refund_amount: Amount | None = None,
        panel_source: str = "admin",
    ) -> VoidBookingResult:
        """Cancel a booking, optionally refunding part of what was paid.

        The refund row itself is recorded by the charge.refunded webhook.

        Raises:
            BookingError: BOOKING_NOT_FOUND, INVALID_STATE_TRANSITION or a Stripe error.
        """
        booking = self._repo.require_booking(booking_id)
        _require_open(booking)

        refund_id = None
        refund_cents = None
        if refund_amount is not None and to_cents(refund_amount) > 0:
            refund_id, refund_cents = self._refund(booking, to_cents(refund_amount), reason)

        updated = self._update_open_booking(
            booking,
            {"status": BookingStatus.CANCELLED.value, "notes": f"VOIDED: {reason}"},
        )

        self._audit.record(
            "booking_voided",
            booking_id,
            user_id=actor_id,
            old_data=booking.snapshot(),
            new_data={
                **updated.snapshot(),
                "reason": reason,
                "panel_source": panel_source,
                "refund_id": refund_id,
                "refund_amount_cents": refund_cents,
            },
        )
        alert_id = self._repo.create_admin_alert(
            booking_id,
            CUSTOMER_ISSUE_ALERT,
            title=f"Booking {booking.booking_code or booking_id} voided",
            message=f"Voided from {panel_source} panel: {reason}",
            user_id=booking.user_id,
        )
        logger.info("Booking %s voided by %s", booking_id, actor_id)

        return VoidBookingResult(
            booking_id=booking_id,
            previous_status=booking.status,
            status=updated.status,
            refund_id=refund_id,
            refund_amount_cents=refund_cents,
            alert_id=alert_id,
        )

    def _refund(self, booking: Booking, requested_cents: int, reason: str) -> tuple[str | None, int]:
        rentals = [
            p
            for p in self._repo.list_payments(booking.booking_id)
            if p.get("payment_type") == PaymentType.RENTAL.value
            and p.get("status") == TransactionStatus.COMPLETED.value
            and str(p.get("transaction_id", "")).startswith("pi_")
        ]
        if not rentals:
            logger.warning("No card payment to refund for booking %s", booking.booking_id)
            return None, 0

        latest = max(rentals, key=lambda p: p.get("created_at", ""))
        refund_cents = min(requested_cents, self._repo.completed_rental_cents(booking.booking_id))
        try:
            refund = self._stripe.create_refund(
                payment_intent_id=latest["transaction_id"],
                amount_cents=refund_cents,
                reason=f"Booking voided: {reason}",
            )
        except StripeServiceError as e:
            raise_for_stripe_error(e)

        log_payment_operation(
            logger,
            "void_refund",
            booking_id=booking.booking_id,
            payment_intent_id=latest["transaction_id"],
            amount_cents=refund_cents,
            status=refund.get("status"),
        )
        return refund["refund_id"], refund_cents

    # === Close account ===

    def close_account(
        self,
        booking_id: str,
        actor_id: str,
        additional_charges: list[AdditionalCharge] | None = None,
        notes: str | None = None,
    ) -> CloseAccountResult:
        """Settle a finished rental and mark the booking completed.

        With an authorized deposit hold, whatever is still owed (up to the
        deposit) is captured from it; otherwise the hold is released.

        Raises:
            BookingError: BOOKING_NOT_FOUND, INVALID_STATE_TRANSITION or a Stripe error.
        """
        booking = self._repo.require_booking(booking_id)
        _require_open(booking)

        charges = additional_charges or []
        extra_cents = sum(to_cents(c.amount) for c in charges)
        total_cents = to_cents(booking.total_amount) + extra_cents
        paid_cents = self._repo.completed_rental_cents(booking_id)
        due_cents = max(0, total_cents - paid_cents)

        now = utc_now().isoformat()
        fields: dict = {
            "status": BookingStatus.COMPLETED.value,
            "account_closed_at": now,
            "account_closed_by": actor_id,
        }
        if notes:
            fields["notes"] = f"{booking.notes}\n{notes}" if booking.notes else notes

        deposit_action = "none"
        captured_cents = 0
        ledger_entry = None
        if booking.has_deposit_hold:
            pi_id = deposit_hold_intent_id(booking)
            if due_cents > 0:
                captured_cents = min(due_cents, to_cents(booking.deposit_amount))
                try:
                    intent = self._stripe.capture_payment_intent(pi_id, captured_cents)
                except StripeServiceError as e:
                    raise_for_stripe_error(e)
                deposit_action = "captured"
                fields.update(
                    {
                        "deposit_status": DepositStatus.CAPTURED.value,
                        "deposit_captured_at": now,
                        "deposit_captured_amount": from_cents(captured_cents),
                    }
                )
                if intent.get("latest_charge"):
                    fields["stripe_deposit_charge_id"] = intent["latest_charge"]
                ledger_entry = DepositLedgerEntry(
                    booking_id=booking_id,
                    action=LedgerAction.DEDUCT,
                    amount=from_cents(captured_cents),
                    reason="Captured at account close",
                    created_by=actor_id,
                    stripe_pi_id=pi_id,
                    stripe_charge_id=intent.get("latest_charge"),
                )
            else:
                self._holds.cancel_hold(pi_id)
                deposit_action = "released"
                fields.update(
                    {
                        "deposit_status": DepositStatus.RELEASED.value,
                        "deposit_released_at": now,
                    }
                )
                ledger_entry = DepositLedgerEntry(
                    booking_id=booking_id,
                    action=LedgerAction.RELEASE,
                    amount=booking.deposit_amount,
                    reason="Released at account close",
                    created_by=actor_id,
                    stripe_pi_id=pi_id,
                )

        updated = self._update_open_booking(booking, fields)
        if ledger_entry is not None:
            self._repo.append_ledger(ledger_entry)

        result = CloseAccountResult(
            booking_id=booking_id,
            status=updated.status,
            total_cents=total_cents,
            additional_charges_cents=extra_cents,
            paid_cents=paid_cents,
            amount_due_cents=due_cents,
            deposit_action=deposit_action,
            deposit_captured_cents=captured_cents,
            deposit_status=updated.deposit_status,
        )
        self._audit.record(
            "account_closed",
            booking_id,
            user_id=actor_id,
            old_data=booking.snapshot(),
            new_data={
                **updated.snapshot(),
                "settlement": result.model_dump(mode="json"),
                "additional_charges": [
                    {"description": c.description, "amount": str(c.amount)} for c in charges
                ],
            },
        )
        self._outbox.enqueue(
            NotificationRequest(
                booking_id=booking_id,
                template_type=NotificationTemplate.ACCOUNT_CLOSED,
                dedupe_suffix=now,
            )
        )
        log_payment_operation(
            logger,
            "close_account",
            booking_id=booking_id,
            payment_intent_id=booking.stripe_deposit_pi_id,
            amount_cents=due_cents,
            status=deposit_action,
        )
        return result

