"""API models for deposit hold endpoints."""

from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CreateDepositHoldRequest(BaseModel):
    """Request a manual-capture hold for a booking's security deposit."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        json_schema_extra={"examples": [{"bookingId": "BK-7F3A2C"}]},
    )

    booking_id: str = Field(..., min_length=1, examples=["BK-7F3A2C"])
    amount: Decimal | None = Field(
        default=None,
        gt=0,
        description="Hold amount in dollars (defaults to the booking's deposit)",
    )
    customer_id: str | None = Field(default=None, description="Existing Stripe customer ID")


class ReleaseDepositRequest(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    reason: str = Field(default="Deposit released", max_length=500)
    bypass_status_check: bool = Field(
        default=False,
        description="Release before the booking is completed or cancelled",
    )


class ProcessDepositJobsRequest(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    limit: int = Field(default=10, ge=1, le=50)
