"""Unit tests for DepositHoldService.

Test categories:
- Hold creation, including idempotent re-requests and failure rollback
- Release guards and tolerance of already-canceled intents
- Status sync from Stripe
"""

from decimal import Decimal

import pytest

from rental_core.models.deposit import DepositHoldRequest
from rental_core.models.enums import DepositStatus
from rental_core.models.errors import BookingError, ErrorCode
from rental_core.services.audit_log import AuditLogService
from rental_core.services.deposit_holds import (
    DepositHoldService,
    deposit_hold_intent_id,
    map_stripe_status,
)
from rental_core.services.notifications import NotificationOutbox
from rental_core.services.stripe_service import StripeServiceError

from conftest import TEST_BOOKING_ID, TEST_STAFF_ID, TEST_USER_ID, scan_table


@pytest.fixture
def service(repository, mock_stripe, db):
    mock_stripe.create_payment_intent.return_value = {
        "id": "pi_hold_1",
        "client_secret": "pi_hold_1_secret",
        "status": "requires_payment_method",
        "amount": 35000,
    }
    return DepositHoldService(repository, mock_stripe, AuditLogService(db), NotificationOutbox(db))


def authorized_booking(seed_booking, **overrides):
    return seed_booking(
        deposit_status="authorized",
        stripe_deposit_pi_id="pi_hold_1",
        deposit_expires_at="2026-10-08T10:00:00+00:00",
        **overrides,
    )


class TestCreateDepositHold:
    """Tests for create_deposit_hold()."""

    def test_creates_manual_capture_intent(self, service, mock_stripe, repository, seed_booking):
        """A new hold stores requires_payment and the intent on the booking."""
        seed_booking()

        result = service.create_deposit_hold(
            DepositHoldRequest(booking_id=TEST_BOOKING_ID, actor_id=TEST_USER_ID)
        )

        assert result.payment_intent_id == "pi_hold_1"
        assert result.client_secret == "pi_hold_1_secret"
        assert result.amount_cents == 35000
        assert result.deposit_status == DepositStatus.REQUIRES_PAYMENT
        assert result.already_authorized is False

        kwargs = mock_stripe.create_payment_intent.call_args.kwargs
        assert kwargs["capture_method"] == "manual"
        assert kwargs["metadata"]["type"] == "deposit_hold"
        assert kwargs["idempotency_key"] == f"deposit_hold_{TEST_BOOKING_ID}_35000_first"

        booking = repository.get_booking(TEST_BOOKING_ID)
        assert booking.deposit_status == DepositStatus.REQUIRES_PAYMENT
        assert booking.stripe_deposit_pi_id == "pi_hold_1"
        assert booking.deposit_expires_at == result.expires_at

    def test_writes_ledger_and_audit(self, service, repository, db, seed_booking):
        seed_booking()

        service.create_deposit_hold(DepositHoldRequest(booking_id=TEST_BOOKING_ID))

        ledger = repository.list_ledger(TEST_BOOKING_ID)
        assert [e["action"] for e in ledger] == ["stripe_hold"]
        assert ledger[0]["amount"] == Decimal("350")
        audits = scan_table(db, "audit-logs")
        assert [a["action"] for a in audits] == ["deposit_hold_created"]

    def test_request_amount_overrides_booking(self, service, seed_booking):
        seed_booking()

        result = service.create_deposit_hold(
            DepositHoldRequest(booking_id=TEST_BOOKING_ID, amount=Decimal("125.50"))
        )
        assert result.amount_cents == 12550

    def test_default_amount_when_booking_has_none(self, service, seed_booking, monkeypatch):
        monkeypatch.setenv("DEFAULT_DEPOSIT_AMOUNT", "200.00")
        seed_booking(deposit_amount=Decimal("0"))

        result = service.create_deposit_hold(DepositHoldRequest(booking_id=TEST_BOOKING_ID))
        assert result.amount_cents == 20000

    def test_uses_profile_for_customer(self, service, mock_stripe, seed_booking, seed_profile):
        seed_booking()
        seed_profile()

        service.create_deposit_hold(DepositHoldRequest(booking_id=TEST_BOOKING_ID))

        mock_stripe.find_or_create_customer.assert_called_once()
        assert mock_stripe.create_payment_intent.call_args.kwargs["customer_id"] == "cus_test123"

    def test_already_authorized_is_idempotent(self, service, mock_stripe, repository, seed_booking):
        """A second request returns the existing hold without a second intent or ledger row."""
        authorized_booking(seed_booking)
        mock_stripe.retrieve_payment_intent.return_value = {
            "id": "pi_hold_1",
            "client_secret": "pi_hold_1_secret",
            "status": "requires_capture",
            "amount": 35000,
        }

        result = service.create_deposit_hold(DepositHoldRequest(booking_id=TEST_BOOKING_ID))

        assert result.already_authorized is True
        assert result.deposit_status == DepositStatus.AUTHORIZED
        assert result.payment_intent_id == "pi_hold_1"
        mock_stripe.create_payment_intent.assert_not_called()
        assert repository.list_ledger(TEST_BOOKING_ID) == []

    @pytest.mark.parametrize("status", ["cancelled", "completed"])
    def test_terminal_booking_rejected(self, service, mock_stripe, seed_booking, status):
        seed_booking(status=status)

        with pytest.raises(BookingError) as exc_info:
            service.create_deposit_hold(DepositHoldRequest(booking_id=TEST_BOOKING_ID))

        assert exc_info.value.code == ErrorCode.INVALID_STATE_TRANSITION
        mock_stripe.create_payment_intent.assert_not_called()

    def test_missing_booking(self, service):
        with pytest.raises(BookingError) as exc_info:
            service.create_deposit_hold(DepositHoldRequest(booking_id="BK-NOPE"))
        assert exc_info.value.code == ErrorCode.BOOKING_NOT_FOUND

    def test_stripe_failure_marks_failed(self, service, mock_stripe, repository, seed_booking):
        """A Stripe error leaves the deposit in failed rather than authorizing."""
        seed_booking()
        mock_stripe.create_payment_intent.side_effect = StripeServiceError(
            "card declined", stripe_error_code="card_declined"
        )

        with pytest.raises(BookingError) as exc_info:
            service.create_deposit_hold(DepositHoldRequest(booking_id=TEST_BOOKING_ID))

        assert exc_info.value.code == ErrorCode.STRIPE_API_ERROR
        assert repository.get_booking(TEST_BOOKING_ID).deposit_status == DepositStatus.FAILED

    def test_retry_after_failure_uses_new_key(self, service, mock_stripe, seed_booking):
        """A retry after a previous intent gets a fresh idempotency key."""
        seed_booking(deposit_status="failed", stripe_deposit_pi_id="pi_old")

        service.create_deposit_hold(DepositHoldRequest(booking_id=TEST_BOOKING_ID))

        key = mock_stripe.create_payment_intent.call_args.kwargs["idempotency_key"]
        assert key == f"deposit_hold_{TEST_BOOKING_ID}_35000_pi_old"


class TestReleaseDepositHold:
    """Tests for release_deposit_hold()."""

    def test_releases_completed_booking(self, service, mock_stripe, repository, db, seed_booking):
        authorized_booking(seed_booking, status="completed")

        result = service.release_deposit_hold(TEST_BOOKING_ID, TEST_STAFF_ID, reason="Car returned")

        assert result.deposit_status == DepositStatus.RELEASED
        assert result.already_released is False
        mock_stripe.cancel_payment_intent.assert_called_once_with(
            "pi_hold_1", reason="requested_by_customer"
        )

        booking = repository.get_booking(TEST_BOOKING_ID)
        assert booking.deposit_status == DepositStatus.RELEASED
        assert booking.deposit_released_at is not None

        ledger = repository.list_ledger(TEST_BOOKING_ID)
        assert [(e["action"], e["reason"]) for e in ledger] == [("release", "Car returned")]

        outbox = scan_table(db, "notification-outbox")
        assert [n["template_type"] for n in outbox] == ["deposit_released"]

    def test_already_released_is_noop(self, service, mock_stripe, seed_booking):
        seed_booking(deposit_status="released", stripe_deposit_pi_id="pi_hold_1")

        result = service.release_deposit_hold(TEST_BOOKING_ID, TEST_STAFF_ID)

        assert result.already_released is True
        mock_stripe.cancel_payment_intent.assert_not_called()

    def test_active_booking_needs_bypass(self, service, mock_stripe, seed_booking):
        authorized_booking(seed_booking, status="active")

        with pytest.raises(BookingError) as exc_info:
            service.release_deposit_hold(TEST_BOOKING_ID, TEST_STAFF_ID)

        assert exc_info.value.code == ErrorCode.INVALID_STATE_TRANSITION
        mock_stripe.cancel_payment_intent.assert_not_called()

    def test_bypass_status_check(self, service, seed_booking):
        authorized_booking(seed_booking, status="active")

        result = service.release_deposit_hold(
            TEST_BOOKING_ID, TEST_STAFF_ID, bypass_status_check=True
        )
        assert result.deposit_status == DepositStatus.RELEASED

    def test_not_authorized(self, service, seed_booking):
        seed_booking(status="completed", deposit_status="requires_payment")

        with pytest.raises(BookingError) as exc_info:
            service.release_deposit_hold(TEST_BOOKING_ID, TEST_STAFF_ID)
        assert exc_info.value.code == ErrorCode.DEPOSIT_NOT_AUTHORIZED

    def test_already_canceled_at_stripe_is_tolerated(self, service, mock_stripe, repository, seed_booking):
        """An intent that Stripe already canceled still counts as released."""
        authorized_booking(seed_booking, status="completed")
        mock_stripe.cancel_payment_intent.side_effect = StripeServiceError(
            "unexpected state", stripe_error_code="payment_intent_unexpected_state"
        )
        mock_stripe.retrieve_payment_intent.return_value = {"id": "pi_hold_1", "status": "canceled"}

        result = service.release_deposit_hold(TEST_BOOKING_ID, TEST_STAFF_ID)

        assert result.deposit_status == DepositStatus.RELEASED
        assert repository.get_booking(TEST_BOOKING_ID).deposit_status == DepositStatus.RELEASED

    def test_captured_intent_cannot_be_released(self, service, mock_stripe, repository, seed_booking):
        authorized_booking(seed_booking, status="completed")
        mock_stripe.cancel_payment_intent.side_effect = StripeServiceError(
            "unexpected state", stripe_error_code="payment_intent_unexpected_state"
        )
        mock_stripe.retrieve_payment_intent.return_value = {"id": "pi_hold_1", "status": "succeeded"}

        with pytest.raises(BookingError) as exc_info:
            service.release_deposit_hold(TEST_BOOKING_ID, TEST_STAFF_ID)

        assert exc_info.value.code == ErrorCode.STRIPE_API_ERROR
        assert repository.get_booking(TEST_BOOKING_ID).deposit_status == DepositStatus.AUTHORIZED


class TestSyncDepositStatus:
    """Tests for sync_deposit_status()."""

    def test_requires_capture_becomes_authorized(self, service, mock_stripe, repository, seed_booking):
        seed_booking(deposit_status="requires_payment", stripe_deposit_pi_id="pi_hold_1")
        mock_stripe.retrieve_payment_intent.return_value = {
            "id": "pi_hold_1",
            "status": "requires_capture",
            "latest_charge": "ch_1",
            "payment_method": "pm_1",
        }

        result = service.sync_deposit_status(TEST_BOOKING_ID, TEST_STAFF_ID)

        assert result.changed is True
        assert result.previous_status == DepositStatus.REQUIRES_PAYMENT
        assert result.deposit_status == DepositStatus.AUTHORIZED
        assert result.charge_id == "ch_1"

        booking = repository.get_booking(TEST_BOOKING_ID)
        assert booking.deposit_status == DepositStatus.AUTHORIZED
        assert booking.deposit_authorized_at is not None
        assert booking.stripe_deposit_pm_id == "pm_1"
        assert booking.card_last_four == "4242"

        ledger = repository.list_ledger(TEST_BOOKING_ID)
        assert ledger[0]["action"] == "status_sync"
        assert ledger[0]["reason"] == "requires_payment -> authorized (stripe: requires_capture)"

    def test_captured_records_amount(self, service, mock_stripe, repository, seed_booking):
        authorized_booking(seed_booking)
        mock_stripe.retrieve_payment_intent.return_value = {"id": "pi_hold_1", "status": "succeeded"}
        mock_stripe.list_charges.return_value = [
            {"id": "ch_cap", "captured": True, "amount_captured": 12000}
        ]

        service.sync_deposit_status(TEST_BOOKING_ID, TEST_STAFF_ID)

        booking = repository.get_booking(TEST_BOOKING_ID)
        assert booking.deposit_status == DepositStatus.CAPTURED
        assert booking.stripe_deposit_charge_id == "ch_cap"
        assert booking.deposit_captured_amount == Decimal("120")

    def test_released_is_not_downgraded_to_canceled(self, service, mock_stripe, repository, seed_booking):
        """Our own release cancels the intent; released stays released."""
        seed_booking(deposit_status="released", stripe_deposit_pi_id="pi_hold_1")
        mock_stripe.retrieve_payment_intent.return_value = {
            "id": "pi_hold_1",
            "status": "canceled",
            "cancellation_reason": "requested_by_customer",
        }

        result = service.sync_deposit_status(TEST_BOOKING_ID, TEST_STAFF_ID)

        assert result.changed is False
        assert repository.get_booking(TEST_BOOKING_ID).deposit_status == DepositStatus.RELEASED

    def test_no_hold(self, service, seed_booking):
        seed_booking()

        with pytest.raises(BookingError) as exc_info:
            service.sync_deposit_status(TEST_BOOKING_ID, TEST_STAFF_ID)
        assert exc_info.value.code == ErrorCode.DEPOSIT_HOLD_MISSING


class TestDepositHoldIntentId:
    """Reading the hold's PaymentIntent ID off a booking."""

    def test_returns_intent_id(self, repository, seed_booking):
        authorized_booking(seed_booking)

        assert deposit_hold_intent_id(repository.get_booking(TEST_BOOKING_ID)) == "pi_hold_1"

    def test_authorized_without_intent_raises_hold_missing(self, repository, seed_booking):
        seed_booking(deposit_status="authorized")
        booking = repository.get_booking(TEST_BOOKING_ID)

        with pytest.raises(BookingError) as exc_info:
            deposit_hold_intent_id(booking)

        assert exc_info.value.code == ErrorCode.DEPOSIT_HOLD_MISSING
        assert exc_info.value.details == {"bookingId": TEST_BOOKING_ID}


class TestMapStripeStatus:
    @pytest.mark.parametrize(
        ("intent", "expected"),
        [
            ({"status": "requires_capture"}, DepositStatus.AUTHORIZED),
            ({"status": "succeeded"}, DepositStatus.CAPTURED),
            ({"status": "processing"}, DepositStatus.AUTHORIZING),
            ({"status": "canceled", "cancellation_reason": "automatic"}, DepositStatus.EXPIRED),
            ({"status": "canceled", "cancellation_reason": "abandoned"}, DepositStatus.CANCELED),
            ({"status": "mystery"}, None),
        ],
    )
    def test_mapping(self, intent, expected):
        assert map_stripe_status(intent) == expected


def test_card_details_failure_is_not_fatal(service, mock_stripe, repository, seed_booking):
    """Sync still succeeds when card details cannot be loaded."""
    seed_booking(deposit_status="requires_payment", stripe_deposit_pi_id="pi_hold_1")
    mock_stripe.retrieve_payment_intent.return_value = {
        "id": "pi_hold_1",
        "status": "requires_capture",
        "payment_method": "pm_1",
    }
    mock_stripe.get_card_details.side_effect = StripeServiceError("gone")

    service.sync_deposit_status(TEST_BOOKING_ID, TEST_USER_ID)

    booking = repository.get_booking(TEST_BOOKING_ID)
    assert booking.deposit_status == DepositStatus.AUTHORIZED
    assert booking.card_last_four is None
