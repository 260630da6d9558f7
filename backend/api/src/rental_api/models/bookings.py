"""API models for booking administration endpoints."""

from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from rental_core.models.booking import AdditionalCharge


class VoidBookingRequest(BaseModel):
    """Cancel a booking, optionally refunding part of what was paid."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        json_schema_extra={
            "examples": [{"reason": "Duplicate booking", "refundAmount": "120.00"}]
        },
    )

    reason: str = Field(..., min_length=1, max_length=500)
    refund_amount: Decimal | None = Field(default=None, ge=0, description="Dollars to refund")
    panel_source: str = Field(default="admin", description="Which panel issued the void")


class CloseAccountRequest(BaseModel):
    """Close out a finished rental."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        json_schema_extra={
            "examples": [
                {
                    "additionalCharges": [{"description": "Fuel refill", "amount": "45.00"}],
                    "notes": "Returned with empty tank",
                }
            ]
        },
    )

    additional_charges: list[AdditionalCharge] = Field(default_factory=list)
    notes: str | None = Field(default=None, max_length=2000)
