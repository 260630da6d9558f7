"""Payment models for ledger rows and intent creation results."""

import datetime as dt
import uuid
from decimal import Decimal
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from .enums import PaymentType, TransactionStatus


def new_payment_id() -> str:
    """Generate a payment ID."""
    return f"PAY-{uuid.uuid4().hex[:12].upper()}"


class Payment(BaseModel):
    """One money movement tied to a booking.

    Amounts are dollars; refunds are stored as negative amounts.
    Rows are inserted, never edited, apart from a deposit row flipping to
    ``refunded`` when its hold is settled.
    """

    model_config = ConfigDict(extra="ignore", use_enum_values=True)

    payment_id: str = Field(default_factory=new_payment_id)
    booking_id: str = Field(..., description="Reference to Booking")
    user_id: str | None = None
    amount: Decimal = Field(..., description="Amount in dollars (negative for refunds)")
    payment_type: PaymentType
    payment_method: str = Field(default="card")
    status: TransactionStatus
    transaction_id: str | None = Field(
        default=None,
        description="PaymentIntent, checkout session or charge ID",
        examples=["pi_3ABC123DEF456"],
    )
    location_id: str | None = None
    created_at: str = Field(default_factory=lambda: dt.datetime.now(dt.UTC).isoformat())

    def to_item(self) -> dict[str, Any]:
        """DynamoDB item for this payment."""
        return self.model_dump(exclude_none=True)


class PaymentIntentResult(BaseModel):
    """Client-facing result of creating a rental PaymentIntent.

    Carries only the client secret and amounts, never the provider object.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    client_secret: str
    payment_intent_id: str
    amount_cents: int
    amount_due_cents: int
    currency: str
