"""Booking model for car rentals."""

from decimal import Decimal
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from .enums import TERMINAL_BOOKING_STATUSES, BookingStatus, DepositStatus


class Booking(BaseModel):
    """A rental booking as stored in the bookings table.

    Amounts are dollar Decimals. Timestamps are ISO-8601 strings.
    """

    model_config = ConfigDict(extra="ignore")

    booking_id: str = Field(..., description="Unique booking ID")
    booking_code: str | None = Field(default=None, description="Customer-facing code")
    user_id: str = Field(..., description="Owner's auth subject")
    status: BookingStatus = Field(default=BookingStatus.DRAFT)
    total_amount: Decimal = Field(default=Decimal("0"), description="Total in dollars")
    deposit_amount: Decimal = Field(default=Decimal("0"), description="Deposit in dollars")
    location_id: str | None = None
    notes: str | None = None

    deposit_status: DepositStatus = Field(default=DepositStatus.NONE)
    stripe_deposit_pi_id: str | None = Field(
        default=None,
        description="PaymentIntent ID of the deposit hold (pi_xxx)",
        examples=["pi_3ABC123DEF456"],
    )
    stripe_deposit_pm_id: str | None = None
    stripe_deposit_charge_id: str | None = None
    stripe_deposit_client_secret: str | None = None
    deposit_expires_at: str | None = None
    deposit_authorized_at: str | None = None
    deposit_released_at: str | None = None
    deposit_captured_at: str | None = None
    deposit_captured_amount: Decimal | None = None

    card_type: str | None = None
    card_last_four: str | None = None
    card_holder_name: str | None = None

    account_closed_at: str | None = None
    account_closed_by: str | None = None
    created_at: str | None = None
    updated_at: str | None = None

    @classmethod
    def from_item(cls, item: dict[str, Any]) -> "Booking":
        """Build a Booking from a DynamoDB item."""
        return cls.model_validate(item)

    @property
    def is_terminal(self) -> bool:
        """True once the booking is cancelled or completed."""
        return self.status in TERMINAL_BOOKING_STATUSES

    @property
    def has_deposit_hold(self) -> bool:
        return self.deposit_status == DepositStatus.AUTHORIZED and bool(
            self.stripe_deposit_pi_id
        )

    def snapshot(self) -> dict[str, Any]:
        """JSON-safe subset used for audit old/new data."""
        return {
            "status": self.status.value,
            "deposit_status": self.deposit_status.value,
            "total_amount": str(self.total_amount),
            "deposit_amount": str(self.deposit_amount),
            "notes": self.notes,
        }


class AdditionalCharge(BaseModel):
    """An extra line item billed when the account is closed (fuel, damage, ...)."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    description: str = Field(..., min_length=1)
    amount: Decimal = Field(..., ge=0, description="Amount in dollars")


class VoidBookingResult(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    booking_id: str
    previous_status: BookingStatus
    status: BookingStatus
    refund_id: str | None = None
    refund_amount_cents: int | None = None
    alert_id: str | None = None


class CloseAccountResult(BaseModel):
    """Settlement computed when an account is closed. Amounts are cents."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    booking_id: str
    status: BookingStatus
    total_cents: int
    additional_charges_cents: int
    paid_cents: int
    amount_due_cents: int
    deposit_action: str = Field(..., description="captured, released or none")
    deposit_captured_cents: int = 0
    deposit_status: DepositStatus
