"""Rental charge PaymentIntents.

Computes what a booking still owes and creates a Stripe PaymentIntent for
it. The webhook reconciler records the payment once Stripe confirms it.
"""

from typing import NoReturn

from rental_core.models.enums import BookingStatus, PaymentType
from rental_core.models.errors import (
    BookingError,
    ErrorCode,
    get_user_friendly_stripe_message,
    is_stripe_error_retryable,
)
from rental_core.models.payment import PaymentIntentResult
from rental_core.utils.logging import get_logger, log_payment_operation
from rental_core.utils.money import Amount, clamp_charge_cents, to_cents

from .bookings import BookingRepository
from .stripe_service import StripeService, StripeServiceError, get_stripe_service

logger = get_logger(__name__)

NON_PAYABLE_STATUSES = frozenset({BookingStatus.CANCELLED, BookingStatus.COMPLETED})


def raise_for_stripe_error(e: StripeServiceError) -> NoReturn:
    """Translate a StripeServiceError into the matching BookingError."""
    if e.is_configuration_error:
        raise BookingError(ErrorCode.PAYMENT_NOT_CONFIGURED) from e
    details = None
    if e.stripe_error_code:
        details = {
            "stripeErrorCode": e.stripe_error_code,
            "userMessage": get_user_friendly_stripe_message(e.stripe_error_code),
            "retryable": is_stripe_error_retryable(e.stripe_error_code),
        }
    raise BookingError(ErrorCode.STRIPE_API_ERROR, details=details) from e


class PaymentIntentService:
    """Creates PaymentIntents for the unpaid balance of a booking."""

    def __init__(
        self,
        repository: BookingRepository | None = None,
        stripe_service: StripeService | None = None,
    ) -> None:
        self._repo = repository or BookingRepository()
        self._stripe = stripe_service or get_stripe_service()

    def amount_due_cents(self, booking_id: str, total_amount: Amount) -> int:
        """Booking total minus completed rental payments, in cents."""
        return to_cents(total_amount) - self._repo.completed_rental_cents(booking_id)

    def create_payment_intent(
        self,
        booking_id: str,
        user_id: str,
        override_amount: Amount | None = None,
        is_staff: bool = False,
    ) -> PaymentIntentResult:
        """Create a PaymentIntent for what the booking still owes.

        Args:
            booking_id: Booking to charge
            user_id: Caller's auth subject
            override_amount: Staff-only partial charge in dollars
            is_staff: Whether the caller has a staff or admin role

        Returns:
            PaymentIntentResult with the client secret and amounts.

        Raises:
            BookingError: BOOKING_NOT_FOUND, FORBIDDEN, BOOKING_NOT_PAYABLE,
                AMOUNT_DUE_ZERO, or a Stripe error.
        """
        booking = self._repo.get_booking(booking_id)
        # Non-owners get the same 404 as a missing booking
        if booking is None or (booking.user_id != user_id and not is_staff):
            raise BookingError(ErrorCode.BOOKING_NOT_FOUND, details={"bookingId": booking_id})

        if override_amount is not None and not is_staff:
            raise BookingError(
                ErrorCode.FORBIDDEN,
                details={"message": "Only staff can set a custom payment amount"},
            )

        if booking.status in NON_PAYABLE_STATUSES:
            raise BookingError(
                ErrorCode.BOOKING_NOT_PAYABLE,
                details={"status": booking.status.value},
            )

        amount_due = self.amount_due_cents(booking_id, booking.total_amount)
        if amount_due <= 0:
            raise BookingError(ErrorCode.AMOUNT_DUE_ZERO, details={"amountDueCents": amount_due})

        if override_amount is not None:
            charge_cents = clamp_charge_cents(to_cents(override_amount), amount_due)
        else:
            charge_cents = amount_due

        profile = self._repo.get_profile(booking.user_id) or {}
        try:
            customer_id = None
            if profile.get("email"):
                customer_id = self._stripe.find_or_create_customer(
                    email=profile["email"],
                    name=profile.get("full_name"),
                    phone=profile.get("phone"),
                    user_id=booking.user_id,
                )

            intent = self._stripe.create_payment_intent(
                amount_cents=charge_cents,
                customer_id=customer_id,
                description=f"Rental booking {booking.booking_code or booking.booking_id}",
                metadata={
                    "booking_id": booking.booking_id,
                    "booking_code": booking.booking_code or "",
                    "user_id": booking.user_id,
                    "payment_type": PaymentType.RENTAL.value,
                },
                # Same booking, same paid total and same amount reuse the intent
                idempotency_key=(
                    f"pi_{booking.booking_id}_{charge_cents}_{to_cents(booking.total_amount) - amount_due}"
                ),
            )
        except StripeServiceError as e:
            log_payment_operation(
                logger,
                "create_payment_intent",
                booking_id=booking_id,
                amount_cents=charge_cents,
                error=str(e),
            )
            raise_for_stripe_error(e)

        log_payment_operation(
            logger,
            "create_payment_intent",
            booking_id=booking_id,
            payment_intent_id=intent["id"],
            amount_cents=charge_cents,
            status=intent["status"],
            amount_due_cents=amount_due,
        )

        return PaymentIntentResult(
            client_secret=intent["client_secret"],
            payment_intent_id=intent["id"],
            amount_cents=charge_cents,
            amount_due_cents=amount_due,
            currency=self._stripe.currency,
        )
