"""API models for payment endpoints."""

from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CreatePaymentIntentRequest(BaseModel):
    """Request a PaymentIntent for what a booking still owes.

    The charge defaults to the full amount due. Only staff may send
    ``amount`` to take a partial payment.
    """

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        json_schema_extra={
            "examples": [
                {"bookingId": "BK-7F3A2C"},
                {"bookingId": "BK-7F3A2C", "amount": "100.00"},
            ]
        },
    )

    booking_id: str = Field(
        ...,
        min_length=1,
        description="Booking to pay for",
        examples=["BK-7F3A2C"],
    )
    amount: Decimal | None = Field(
        default=None,
        gt=0,
        description="Staff-only partial amount in dollars",
    )
