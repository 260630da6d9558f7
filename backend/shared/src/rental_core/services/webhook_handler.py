"""Stripe webhook reconciliation.

Turns verified Stripe events into booking, payment, ledger and notification
writes. Business logic lives here, separate from HTTP routing, so it can be
unit tested without a request.

Each event is claimed in the stripe-webhook-events table with a conditional
put before any effect is applied. Redeliveries of a claimed event are
acknowledged as duplicates. When a handler fails, the claim is deleted so
Stripe's retry gets a clean second attempt. A claim left in ``processing``
longer than CLAIM_LEASE (the invocation died mid-dispatch) is taken over by
the next delivery instead of being acknowledged.
"""

import datetime as dt
from typing import Any

from pydantic import ValidationError

from rental_core.models.booking import Booking
from rental_core.models.deposit import DepositLedgerEntry
from rental_core.models.enums import (
    BOOKING_STATUS_RANK,
    FINISHED_DEPOSIT_STATUSES,
    BookingStatus,
    DepositStatus,
    LedgerAction,
    NotificationTemplate,
    PaymentType,
    TransactionStatus,
)
from rental_core.models.errors import BookingError, ErrorCode
from rental_core.models.notification import NotificationRequest
from rental_core.models.payment import Payment
from rental_core.models.stripe_webhook import (
    ChargeCaptured,
    ChargeRefunded,
    CheckoutSessionCompleted,
    PaymentIntentAmountCapturableUpdated,
    PaymentIntentCanceled,
    PaymentIntentFailed,
    PaymentIntentSucceeded,
    StripeEvent,
    StripeWebhookEvent,
    UnhandledStripeEvent,
    WebhookResult,
    parse_stripe_event,
)
from rental_core.utils.logging import get_logger, log_webhook_event
from rental_core.utils.money import from_cents, to_cents

from .bookings import BookingRepository, utc_now
from .deposit_holds import fetch_card_fields, hold_expiry
from .notifications import NotificationOutbox
from .stripe_service import StripeService, StripeServiceError, get_stripe_service

logger = get_logger(__name__)

WEBHOOK_EVENTS_TABLE = "stripe-webhook-events"

# A claim still marked processing after this long belongs to a dead invocation
CLAIM_LEASE = dt.timedelta(minutes=5)

# A one-off charge within this distance of the booking's deposit is treated as the deposit
DEPOSIT_MATCH_TOLERANCE_CENTS = 100

PAYMENT_REQUEST_TYPE = "payment_request"
PAYMENT_PENDING_ALERT = "payment_pending"


def _skipped(reason: str, **extra: Any) -> dict[str, Any]:
    return {"action": "skipped", "reason": reason, **extra}


class WebhookReconciler:
    """Applies Stripe webhook events to bookings exactly once."""

    def __init__(
        self,
        repository: BookingRepository | None = None,
        stripe_service: StripeService | None = None,
        outbox: NotificationOutbox | None = None,
    ) -> None:
        self._repo = repository or BookingRepository()
        self._db = self._repo.db
        self._stripe = stripe_service or get_stripe_service()
        self._outbox = outbox or NotificationOutbox(self._db)

    # === Entry point ===

    def verify_event(self, payload: bytes, signature: str | None) -> dict[str, Any]:
        """Verify the Stripe-Signature header and return the event dict.

        Raises:
            BookingError: INVALID_WEBHOOK_SIGNATURE, or PAYMENT_NOT_CONFIGURED
                when no webhook secret is available.
        """
        if not signature:
            logger.warning("Webhook request missing Stripe-Signature header")
            raise BookingError(
                ErrorCode.INVALID_WEBHOOK_SIGNATURE,
                details={"message": "Missing Stripe-Signature header"},
            )
        try:
            return self._stripe.verify_webhook_signature(payload, signature)
        except StripeServiceError as e:
            if e.is_configuration_error:
                logger.error("Webhook secret not configured: %s", e)
                raise BookingError(ErrorCode.PAYMENT_NOT_CONFIGURED) from e
            raise BookingError(
                ErrorCode.INVALID_WEBHOOK_SIGNATURE,
                details={"message": "Invalid webhook signature"},
            ) from e

    def handle(self, payload: bytes, signature: str | None) -> WebhookResult:
        """Verify, deduplicate and apply one webhook delivery."""
        raw_event = self.verify_event(payload, signature)
        return self.process_event(raw_event, StripeService.compute_payload_hash(payload))

    def process_event(self, raw_event: dict[str, Any], payload_hash: str) -> WebhookResult:
        """Apply a verified event.

        Args:
            raw_event: Event dict from signature verification
            payload_hash: SHA-256 of the raw body, kept on the event record

        Returns:
            WebhookResult; ``duplicate`` is set for already-claimed events.

        Raises:
            BookingError: VALIDATION_FAILED for malformed handled events,
                WEBHOOK_PROCESSING_FAILED when applying the event fails.
        """
        try:
            event = parse_stripe_event(raw_event)
        except ValidationError as e:
            logger.warning("Malformed %s webhook payload: %s", raw_event.get("type"), e)
            raise BookingError(
                ErrorCode.VALIDATION_FAILED,
                details={"eventId": raw_event.get("id"), "eventType": raw_event.get("type")},
            ) from e

        log_webhook_event(logger, event.type, event.id, result="received")

        existing = self._db.get_item(
            WEBHOOK_EVENTS_TABLE, {"event_id": event.id}, consistent_read=True
        )
        if existing and not self._is_stale_claim(existing):
            return self._duplicate(event)

        booking = self._resolve_booking(event)
        booking_id = booking.booking_id if booking else None

        record = StripeWebhookEvent(
            event_id=event.id,
            event_type=event.type,
            received_at=utc_now().isoformat(),
            payload_hash=payload_hash,
            booking_id=booking_id,
        )
        if not self._claim(record):
            return self._duplicate(event)

        try:
            result = self._dispatch(event, booking)
        except Exception as e:
            # Release the claim so Stripe's retry is processed from scratch
            self._db.delete_item(WEBHOOK_EVENTS_TABLE, {"event_id": event.id})
            log_webhook_event(
                logger, event.type, event.id, booking_id=booking_id, result="error", error=str(e)
            )
            raise BookingError(
                ErrorCode.WEBHOOK_PROCESSING_FAILED,
                details={"eventId": event.id, "eventType": event.type},
            ) from e

        processing_result = "skipped" if result.get("action") == "skipped" else "success"
        self._db.update_item(
            WEBHOOK_EVENTS_TABLE,
            {"event_id": event.id},
            "SET processing_result = :result_status, #result = :result, processed_at = :now",
            expression_attribute_values={
                ":result_status": processing_result,
                ":result": result,
                ":now": utc_now().isoformat(),
            },
            expression_attribute_names={"#result": "result"},
        )
        log_webhook_event(
            logger,
            event.type,
            event.id,
            booking_id=booking_id,
            result=processing_result,
            action=result.get("action"),
        )
        return WebhookResult(
            event_id=event.id,
            event_type=event.type,
            processing_result=processing_result,
            result=result,
        )

    @staticmethod
    def _is_stale_claim(item: dict[str, Any]) -> bool:
        if item.get("processing_result") != "processing":
            return False
        cutoff = (utc_now() - CLAIM_LEASE).isoformat()
        return str(item.get("received_at", "")) < cutoff

    def _claim(self, record: StripeWebhookEvent) -> bool:
        """Take ownership of an event. False if another delivery holds a live claim.

        A new event is claimed with a conditional put. An event whose claim is
        still ``processing`` after CLAIM_LEASE is taken over by resetting its
        ``received_at``, conditional on nobody having done so first.
        """
        if self._db.put_item(
            WEBHOOK_EVENTS_TABLE,
            record.model_dump(exclude_none=True),
            condition_expression="attribute_not_exists(event_id)",
        ):
            return True

        cutoff = (utc_now() - CLAIM_LEASE).isoformat()
        taken_over = self._db.update_item(
            WEBHOOK_EVENTS_TABLE,
            {"event_id": record.event_id},
            "SET received_at = :now, payload_hash = :hash",
            expression_attribute_values={
                ":now": record.received_at,
                ":hash": record.payload_hash,
                ":processing": "processing",
                ":cutoff": cutoff,
            },
            condition_expression="processing_result = :processing AND received_at < :cutoff",
        )
        if taken_over is None:
            return False
        logger.warning("Taking over stale claim for webhook event %s", record.event_id)
        return True

    def _duplicate(self, event: StripeEvent) -> WebhookResult:
        log_webhook_event(logger, event.type, event.id, result="duplicate")
        return WebhookResult(
            duplicate=True,
            event_id=event.id,
            event_type=event.type,
            processing_result="duplicate",
        )

    # === Booking resolution ===

    def _resolve_booking(self, event: StripeEvent) -> Booking | None:
        """Find the booking an event belongs to.

        Metadata ``booking_id`` wins; otherwise the PaymentIntent is looked up
        in recorded payments, then in deposit holds.
        """
        if isinstance(event, UnhandledStripeEvent):
            return None

        obj = event.data.obj
        booking_id = obj.metadata.get("booking_id")
        if booking_id:
            return self._repo.get_booking(booking_id)

        if isinstance(event, (ChargeCaptured, ChargeRefunded)):
            intent_id = event.data.obj.payment_intent
        elif isinstance(event, CheckoutSessionCompleted):
            intent_id = event.data.obj.payment_intent
        else:
            intent_id = obj.id
        if not intent_id:
            return None

        payment = self._repo.find_payment_by_transaction(intent_id)
        if payment:
            return self._repo.get_booking(payment["booking_id"])
        return self._repo.find_booking_by_deposit_intent(intent_id)

    # === Dispatch ===

    def _dispatch(self, event: StripeEvent, booking: Booking | None) -> dict[str, Any]:
        if isinstance(event, UnhandledStripeEvent):
            return _skipped("unhandled_event_type")
        if booking is None:
            logger.warning("No booking found for %s event %s", event.type, event.id)
            return _skipped("booking_not_found")

        if isinstance(event, CheckoutSessionCompleted):
            return self._on_checkout_completed(event, booking)
        if isinstance(event, PaymentIntentSucceeded):
            return self._on_payment_succeeded(event, booking)
        if isinstance(event, PaymentIntentFailed):
            return self._on_payment_failed(event, booking)
        if isinstance(event, PaymentIntentAmountCapturableUpdated):
            return self._on_hold_authorized(event, booking)
        if isinstance(event, PaymentIntentCanceled):
            return self._on_intent_canceled(event, booking)
        if isinstance(event, ChargeCaptured):
            return self._on_charge_captured(event, booking)
        return self._on_charge_refunded(event, booking)

    # === Rental payments ===

    def _on_checkout_completed(
        self, event: CheckoutSessionCompleted, booking: Booking
    ) -> dict[str, Any]:
        session = event.data.obj
        if session.payment_status != "paid":
            return _skipped("not_paid", paymentStatus=session.payment_status)

        for transaction_id in filter(None, (session.payment_intent, session.id)):
            if self._repo.find_payment_by_transaction(transaction_id):
                return _skipped("payment_already_recorded", transactionId=transaction_id)

        payment_method_id = None
        if session.payment_intent:
            try:
                intent = self._stripe.retrieve_payment_intent(session.payment_intent)
                payment_method_id = intent.get("payment_method")
            except StripeServiceError as e:
                logger.warning("Could not load intent %s: %s", session.payment_intent, e)

        return self._record_successful_payment(
            booking,
            transaction_id=session.payment_intent or session.id,
            amount_cents=session.amount_total,
            payment_method_id=payment_method_id,
            metadata=session.metadata,
        )

    def _on_payment_succeeded(
        self, event: PaymentIntentSucceeded, booking: Booking
    ) -> dict[str, Any]:
        intent = event.data.obj
        if intent.is_deposit_hold:
            # Deposit captures are recorded from charge.captured
            return _skipped("deposit_hold")
        if booking.status == BookingStatus.CONFIRMED:
            return _skipped("already_confirmed")
        if self._repo.find_payment_by_transaction(intent.id):
            return _skipped("payment_already_recorded", transactionId=intent.id)

        return self._record_successful_payment(
            booking,
            transaction_id=intent.id,
            amount_cents=intent.amount_received or intent.amount,
            payment_method_id=intent.payment_method,
            metadata=intent.metadata,
        )

    def _looks_like_deposit(self, booking: Booking, amount_cents: int) -> bool:
        deposit_cents = to_cents(booking.deposit_amount)
        return (
            deposit_cents > 0
            and abs(amount_cents - deposit_cents) < DEPOSIT_MATCH_TOLERANCE_CENTS
            and amount_cents < to_cents(booking.total_amount)
        )

    def _record_successful_payment(
        self,
        booking: Booking,
        *,
        transaction_id: str,
        amount_cents: int,
        payment_method_id: str | None,
        metadata: dict[str, str],
    ) -> dict[str, Any]:
        card_fields = fetch_card_fields(self._stripe, payment_method_id) if payment_method_id else {}

        if metadata.get("payment_type") == PAYMENT_REQUEST_TYPE:
            return self._record_payment_request(
                booking, transaction_id, amount_cents, card_fields
            )

        is_deposit = self._looks_like_deposit(booking, amount_cents)
        payment_type = PaymentType.DEPOSIT if is_deposit else PaymentType.RENTAL
        target = BookingStatus.PENDING if is_deposit else BookingStatus.CONFIRMED

        # The row goes in first: a confirmed booking must always have its payment
        payment = Payment(
            booking_id=booking.booking_id,
            user_id=booking.user_id,
            amount=from_cents(amount_cents),
            payment_type=payment_type,
            status=TransactionStatus.COMPLETED,
            transaction_id=transaction_id,
            location_id=booking.location_id,
        )
        self._repo.insert_payment(payment)

        promoted = self._promote_status(booking, target, card_fields)

        self._outbox.enqueue(
            NotificationRequest(
                booking_id=booking.booking_id,
                template_type=NotificationTemplate.CONFIRMATION,
                channel="both",
                dedupe_suffix=transaction_id,
            )
        )

        return {
            "action": "payment_recorded",
            "paymentId": payment.payment_id,
            "paymentType": payment_type.value,
            "amountCents": amount_cents,
            "status": promoted.value if promoted else booking.status.value,
            "statusChanged": promoted is not None,
        }

    def _promote_status(
        self,
        booking: Booking,
        target: BookingStatus,
        extra_fields: dict[str, Any],
    ) -> BookingStatus | None:
        """Move the booking forward to ``target``, never backward.

        Returns the new status, or None if the booking already ranks at or
        above ``target``. ``extra_fields`` are written either way.
        """
        lower = [s for s, rank in BOOKING_STATUS_RANK.items() if rank < BOOKING_STATUS_RANK[target]]
        if BOOKING_STATUS_RANK[booking.status] < BOOKING_STATUS_RANK[target]:
            values = {f":lo{i}": status.value for i, status in enumerate(lower)}
            updated = self._repo.update_booking(
                booking.booking_id,
                {**extra_fields, "status": target.value},
                condition=f"#bst IN ({', '.join(values)})",
                condition_values=values,
                condition_names={"#bst": "status"},
            )
            if updated is not None:
                logger.info(
                    "Booking %s %s -> %s", booking.booking_id, booking.status.value, target.value
                )
                return target

        if extra_fields:
            self._repo.update_booking(booking.booking_id, extra_fields)
        return None

    def _record_payment_request(
        self,
        booking: Booking,
        transaction_id: str,
        amount_cents: int,
        card_fields: dict[str, Any],
    ) -> dict[str, Any]:
        """A staff-requested balance payment: record it, leave the status alone."""
        payment = Payment(
            booking_id=booking.booking_id,
            user_id=booking.user_id,
            amount=from_cents(amount_cents),
            payment_type=PaymentType.RENTAL,
            status=TransactionStatus.COMPLETED,
            transaction_id=transaction_id,
            location_id=booking.location_id,
        )
        self._repo.insert_payment(payment)
        if card_fields:
            self._repo.update_booking(booking.booking_id, card_fields)

        resolved = self._repo.resolve_alerts(booking.booking_id, PAYMENT_PENDING_ALERT)
        self._outbox.enqueue(
            NotificationRequest(
                booking_id=booking.booking_id,
                template_type=NotificationTemplate.PAYMENT_RECEIVED,
                dedupe_suffix=transaction_id,
            )
        )
        return {
            "action": "payment_request_recorded",
            "paymentId": payment.payment_id,
            "amountCents": amount_cents,
            "alertsResolved": resolved,
        }

    def _on_payment_failed(self, event: PaymentIntentFailed, booking: Booking) -> dict[str, Any]:
        intent = event.data.obj
        payment = Payment(
            booking_id=booking.booking_id,
            user_id=booking.user_id,
            amount=from_cents(intent.amount),
            payment_type=PaymentType.DEPOSIT if intent.is_deposit_hold else PaymentType.RENTAL,
            status=TransactionStatus.FAILED,
            transaction_id=intent.id,
            location_id=booking.location_id,
        )
        self._repo.insert_payment(payment)

        note = "Online payment failed"
        if intent.failure_message:
            note = f"{note}: {intent.failure_message}"
        fields: dict[str, Any] = {"notes": f"{booking.notes}\n{note}" if booking.notes else note}
        if booking.status == BookingStatus.DRAFT or intent.is_deposit_hold:
            fields["deposit_status"] = DepositStatus.FAILED.value
        # Status is left as-is so the customer can retry
        self._repo.update_booking(booking.booking_id, fields)

        return {
            "action": "payment_failed",
            "paymentId": payment.payment_id,
            "depositStatus": fields.get("deposit_status", booking.deposit_status.value),
        }

    # === Deposit holds ===

    def _on_hold_authorized(
        self, event: PaymentIntentAmountCapturableUpdated, booking: Booking
    ) -> dict[str, Any]:
        intent = event.data.obj
        if not intent.is_deposit_hold and booking.stripe_deposit_pi_id != intent.id:
            return _skipped("not_deposit_hold")
        if booking.deposit_status in FINISHED_DEPOSIT_STATUSES:
            return _skipped("deposit_finished", depositStatus=booking.deposit_status.value)
        if booking.has_deposit_hold and booking.stripe_deposit_pi_id == intent.id:
            return _skipped("already_authorized")

        fields: dict[str, Any] = {
            "deposit_status": DepositStatus.AUTHORIZED.value,
            "stripe_deposit_pi_id": intent.id,
            "deposit_authorized_at": utc_now().isoformat(),
            "deposit_expires_at": hold_expiry(),
        }
        if intent.payment_method:
            fields["stripe_deposit_pm_id"] = intent.payment_method
            fields.update(fetch_card_fields(self._stripe, intent.payment_method))
        if booking.status == BookingStatus.DRAFT:
            fields["status"] = BookingStatus.PENDING.value
        self._repo.update_booking(booking.booking_id, fields)

        amount_cents = intent.amount_capturable or intent.amount
        self._repo.append_ledger(
            DepositLedgerEntry(
                booking_id=booking.booking_id,
                action=LedgerAction.AUTHORIZE,
                amount=from_cents(amount_cents),
                reason="Deposit hold authorized",
                stripe_pi_id=intent.id,
            )
        )
        self._outbox.enqueue(
            NotificationRequest(
                booking_id=booking.booking_id,
                template_type=NotificationTemplate.DEPOSIT_AUTHORIZED,
                dedupe_suffix=intent.id,
            )
        )
        return {
            "action": "deposit_authorized",
            "paymentIntentId": intent.id,
            "amountCents": amount_cents,
        }

    def _on_intent_canceled(
        self, event: PaymentIntentCanceled, booking: Booking
    ) -> dict[str, Any]:
        intent = event.data.obj
        if booking.stripe_deposit_pi_id != intent.id:
            return _skipped("not_deposit_hold")
        if booking.deposit_status in FINISHED_DEPOSIT_STATUSES:
            return _skipped("deposit_finished", depositStatus=booking.deposit_status.value)

        if intent.cancellation_reason == "automatic":
            new_status = DepositStatus.EXPIRED
        else:
            new_status = DepositStatus.CANCELED
        self._repo.update_booking(
            booking.booking_id,
            {
                "deposit_status": new_status.value,
                "deposit_released_at": utc_now().isoformat(),
            },
        )
        self._repo.append_ledger(
            DepositLedgerEntry(
                booking_id=booking.booking_id,
                action=LedgerAction.RELEASE,
                amount=booking.deposit_amount,
                reason=f"Hold {new_status.value} ({intent.cancellation_reason or 'unspecified'})",
                stripe_pi_id=intent.id,
            )
        )
        return {"action": f"deposit_{new_status.value}", "paymentIntentId": intent.id}

    def _on_charge_captured(self, event: ChargeCaptured, booking: Booking) -> dict[str, Any]:
        charge = event.data.obj
        if not charge.payment_intent or booking.stripe_deposit_pi_id != charge.payment_intent:
            return _skipped("not_deposit_hold")

        captured_cents = charge.amount_captured or charge.amount
        updated = self._repo.update_booking(
            booking.booking_id,
            {
                "stripe_deposit_charge_id": charge.id,
                "deposit_status": DepositStatus.CAPTURED.value,
                "deposit_captured_at": utc_now().isoformat(),
                "deposit_captured_amount": from_cents(captured_cents),
            },
            condition=(
                "attribute_not_exists(stripe_deposit_charge_id)"
                " OR (stripe_deposit_charge_id = :charge_id AND deposit_status <> :captured)"
            ),
            condition_values={
                ":charge_id": charge.id,
                ":captured": DepositStatus.CAPTURED.value,
            },
        )
        if updated is None:
            return _skipped("capture_already_recorded", chargeId=charge.id)

        self._repo.append_ledger(
            DepositLedgerEntry(
                booking_id=booking.booking_id,
                action=LedgerAction.DEDUCT,
                amount=from_cents(captured_cents),
                reason="Deposit captured",
                stripe_pi_id=charge.payment_intent,
                stripe_charge_id=charge.id,
            )
        )
        return {
            "action": "deposit_captured",
            "chargeId": charge.id,
            "amountCents": captured_cents,
        }

    # === Refunds ===

    def _on_charge_refunded(self, event: ChargeRefunded, booking: Booking) -> dict[str, Any]:
        charge = event.data.obj
        if self._repo.find_payment_by_transaction(charge.id, PaymentType.REFUND):
            return _skipped("refund_already_recorded", chargeId=charge.id)

        payment = Payment(
            booking_id=booking.booking_id,
            user_id=booking.user_id,
            amount=-from_cents(charge.amount_refunded),
            payment_type=PaymentType.REFUND,
            status=TransactionStatus.COMPLETED,
            transaction_id=charge.id,
            location_id=booking.location_id,
        )
        self._repo.insert_payment(payment)
        return {
            "action": "refund_recorded",
            "paymentId": payment.payment_id,
            "amountCents": charge.amount_refunded,
        }
