"""Booking, payment and deposit-ledger persistence.

Wraps DynamoDBService with the table names, indexes and conditional writes
the payment services share.
"""

import datetime as dt
import logging
import uuid
from typing import Any

from boto3.dynamodb.conditions import Attr

from rental_core.models.booking import Booking
from rental_core.models.deposit import DepositLedgerEntry
from rental_core.models.enums import PaymentType, TransactionStatus
from rental_core.models.errors import BookingError, ErrorCode
from rental_core.models.payment import Payment
from rental_core.utils.money import to_cents

from .dynamodb import DynamoDBService, get_dynamodb_service

logger = logging.getLogger(__name__)

BOOKINGS_TABLE = "bookings"
PAYMENTS_TABLE = "payments"
LEDGER_TABLE = "deposit-ledger"
PROFILES_TABLE = "profiles"
USER_ROLES_TABLE = "user-roles"
ADMIN_ALERTS_TABLE = "admin-alerts"

DEPOSIT_PI_INDEX = "deposit-pi-index"
BOOKING_INDEX = "booking-index"
TRANSACTION_INDEX = "transaction-index"


def build_update(
    fields: dict[str, Any],
    remove: list[str] | None = None,
) -> tuple[str, dict[str, str], dict[str, Any]]:
    """Build a SET/REMOVE update expression with aliased attribute names.

    Every name is aliased since several booking attributes (status, notes)
    collide with DynamoDB reserved words.
    """
    names: dict[str, str] = {}
    values: dict[str, Any] = {}
    set_parts = []
    for i, (name, value) in enumerate(fields.items()):
        names[f"#f{i}"] = name
        values[f":v{i}"] = value
        set_parts.append(f"#f{i} = :v{i}")

    expression = f"SET {', '.join(set_parts)}" if set_parts else ""
    if remove:
        remove_parts = []
        for j, name in enumerate(remove):
            names[f"#r{j}"] = name
            remove_parts.append(f"#r{j}")
        expression = f"{expression} REMOVE {', '.join(remove_parts)}".strip()
    return expression, names, values


def utc_now() -> dt.datetime:
    return dt.datetime.now(dt.UTC)


class BookingRepository:
    """Data access for bookings and the rows hanging off them."""

    def __init__(self, db: DynamoDBService | None = None) -> None:
        self._db = db or get_dynamodb_service()

    @property
    def db(self) -> DynamoDBService:
        return self._db

    # === Bookings ===

    def get_booking(self, booking_id: str) -> Booking | None:
        item = self._db.get_item(BOOKINGS_TABLE, {"booking_id": booking_id}, consistent_read=True)
        return Booking.from_item(item) if item else None

    def require_booking(self, booking_id: str) -> Booking:
        """Load a booking or raise BOOKING_NOT_FOUND."""
        booking = self.get_booking(booking_id)
        if booking is None:
            raise BookingError(ErrorCode.BOOKING_NOT_FOUND, details={"bookingId": booking_id})
        return booking

    def update_booking(
        self,
        booking_id: str,
        fields: dict[str, Any],
        *,
        remove: list[str] | None = None,
        condition: str | None = None,
        condition_values: dict[str, Any] | None = None,
        condition_names: dict[str, str] | None = None,
    ) -> Booking | None:
        """Update booking attributes, stamping ``updated_at``.

        Args:
            booking_id: Booking to update
            fields: Attributes to SET
            remove: Attributes to REMOVE
            condition: Optional condition expression
            condition_values: Extra values referenced by ``condition``
            condition_names: Extra name aliases referenced by ``condition``

        Returns:
            The updated Booking, or None if the condition failed.
        """
        fields = {**fields, "updated_at": utc_now().isoformat()}
        expression, names, values = build_update(fields, remove)
        if condition_values:
            values.update(condition_values)
        if condition_names:
            names.update(condition_names)
        attrs = self._db.update_item(
            BOOKINGS_TABLE,
            {"booking_id": booking_id},
            expression,
            expression_attribute_values=values,
            expression_attribute_names=names,
            condition_expression=condition,
        )
        return Booking.from_item(attrs) if attrs else None

    def find_booking_by_deposit_intent(self, payment_intent_id: str) -> Booking | None:
        items = self._db.query_index(
            BOOKINGS_TABLE, DEPOSIT_PI_INDEX, "stripe_deposit_pi_id", payment_intent_id, limit=1
        )
        return Booking.from_item(items[0]) if items else None

    # === Payments ===

    def list_payments(self, booking_id: str) -> list[dict[str, Any]]:
        return self._db.query_index(PAYMENTS_TABLE, BOOKING_INDEX, "booking_id", booking_id)

    def find_payment_by_transaction(
        self,
        transaction_id: str,
        payment_type: PaymentType | None = None,
    ) -> dict[str, Any] | None:
        """First payment row recorded against a provider transaction ID."""
        filter_expression = None
        if payment_type is not None:
            filter_expression = Attr("payment_type").eq(payment_type.value)
        items = self._db.query_index(
            PAYMENTS_TABLE,
            TRANSACTION_INDEX,
            "transaction_id",
            transaction_id,
            filter_expression=filter_expression,
            limit=1,
        )
        return items[0] if items else None

    def insert_payment(self, payment: Payment) -> bool:
        """Insert a payment row. Returns False if the payment ID already exists."""
        return self._db.put_item(
            PAYMENTS_TABLE,
            payment.to_item(),
            condition_expression="attribute_not_exists(payment_id)",
        )

    def mark_payment_refunded(self, payment_id: str) -> bool:
        """Flip a completed deposit row to refunded once its hold is settled."""
        attrs = self._db.update_item(
            PAYMENTS_TABLE,
            {"payment_id": payment_id},
            "SET #status = :refunded, refunded_at = :now",
            expression_attribute_values={
                ":refunded": TransactionStatus.REFUNDED.value,
                ":completed": TransactionStatus.COMPLETED.value,
                ":now": utc_now().isoformat(),
            },
            expression_attribute_names={"#status": "status"},
            condition_expression="#status = :completed",
        )
        return attrs is not None

    def completed_rental_cents(self, booking_id: str) -> int:
        """Sum of completed rental payments for a booking, in cents."""
        return sum(
            to_cents(p.get("amount"))
            for p in self.list_payments(booking_id)
            if p.get("status") == TransactionStatus.COMPLETED.value
            and p.get("payment_type") == PaymentType.RENTAL.value
        )

    def find_completed_deposit_payment(self, booking_id: str) -> dict[str, Any] | None:
        deposits = [
            p
            for p in self.list_payments(booking_id)
            if p.get("payment_type") == PaymentType.DEPOSIT.value
            and p.get("status") == TransactionStatus.COMPLETED.value
        ]
        deposits.sort(key=lambda p: p.get("created_at", ""))
        return deposits[0] if deposits else None

    # === Deposit ledger ===

    def append_ledger(self, entry: DepositLedgerEntry) -> None:
        self._db.put_item(LEDGER_TABLE, entry.to_item())
        logger.info(
            "Deposit ledger %s for booking %s: %s",
            entry.action,
            entry.booking_id,
            entry.amount,
        )

    def list_ledger(self, booking_id: str) -> list[dict[str, Any]]:
        return self._db.query_index(LEDGER_TABLE, BOOKING_INDEX, "booking_id", booking_id)

    # === Profiles and roles ===

    def get_profile(self, user_id: str) -> dict[str, Any] | None:
        return self._db.get_item(PROFILES_TABLE, {"user_id": user_id})

    def get_roles(self, user_id: str) -> set[str]:
        item = self._db.get_item(USER_ROLES_TABLE, {"user_id": user_id})
        if not item:
            return set()
        return {str(role) for role in item.get("roles", [])}

    # === Admin alerts ===

    def create_admin_alert(
        self,
        booking_id: str,
        alert_type: str,
        title: str,
        message: str,
        user_id: str | None = None,
    ) -> str:
        alert_id = f"ALR-{uuid.uuid4().hex[:12].upper()}"
        item: dict[str, Any] = {
            "alert_id": alert_id,
            "booking_id": booking_id,
            "alert_type": alert_type,
            "title": title,
            "message": message,
            "status": "pending",
            "created_at": utc_now().isoformat(),
        }
        if user_id:
            item["user_id"] = user_id
        self._db.put_item(ADMIN_ALERTS_TABLE, item)
        return alert_id

    def resolve_alerts(self, booking_id: str, alert_type: str, resolved_by: str = "system") -> int:
        """Resolve pending alerts of one type for a booking. Returns the count."""
        pending = self._db.query_index(
            ADMIN_ALERTS_TABLE,
            BOOKING_INDEX,
            "booking_id",
            booking_id,
            filter_expression=Attr("alert_type").eq(alert_type) & Attr("status").eq("pending"),
        )
        now = utc_now().isoformat()
        for alert in pending:
            self._db.update_item(
                ADMIN_ALERTS_TABLE,
                {"alert_id": alert["alert_id"]},
                "SET #status = :resolved, resolved_at = :now, resolved_by = :by",
                expression_attribute_values={
                    ":resolved": "resolved",
                    ":now": now,
                    ":by": resolved_by,
                },
                expression_attribute_names={"#status": "status"},
            )
        return len(pending)
