"""Deposit hold, ledger and job models."""

import datetime as dt
import uuid
from decimal import Decimal
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from .enums import DepositJobStatus, DepositJobType, DepositStatus, LedgerAction


def _now_iso() -> str:
    return dt.datetime.now(dt.UTC).isoformat()


class DepositLedgerEntry(BaseModel):
    """Append-only record of one deposit lifecycle action."""

    model_config = ConfigDict(extra="ignore", use_enum_values=True)

    entry_id: str = Field(default_factory=lambda: f"DL-{uuid.uuid4().hex[:12].upper()}")
    booking_id: str
    action: LedgerAction
    amount: Decimal = Field(..., description="Amount in dollars")
    reason: str | None = None
    created_by: str = Field(default="system")
    payment_id: str | None = None
    stripe_pi_id: str | None = None
    stripe_charge_id: str | None = None
    created_at: str = Field(default_factory=_now_iso)

    def to_item(self) -> dict[str, Any]:
        return self.model_dump(exclude_none=True)


class DepositHoldRequest(BaseModel):
    """Validated input for creating a deposit hold.

    Built once at the top of the request and reused for failure cleanup.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    booking_id: str = Field(..., min_length=1)
    amount: Decimal | None = Field(default=None, gt=0, description="Hold amount in dollars")
    customer_id: str | None = Field(default=None, description="Existing Stripe customer ID")
    actor_id: str = Field(default="system")


class DepositHoldResult(BaseModel):
    """Client-facing result of a deposit hold request."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    payment_intent_id: str
    client_secret: str | None
    expires_at: str | None
    amount_cents: int
    deposit_status: DepositStatus
    already_authorized: bool = False


class DepositReleaseResult(BaseModel):
    """Result of releasing an authorized hold."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    booking_id: str
    payment_intent_id: str | None
    deposit_status: DepositStatus
    already_released: bool = False


class DepositSyncResult(BaseModel):
    """Result of reconciling the stored hold state with the provider."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    booking_id: str
    payment_intent_id: str
    stripe_status: str
    previous_status: DepositStatus
    deposit_status: DepositStatus
    charge_id: str | None = None
    changed: bool


class DepositJob(BaseModel):
    """A deferred release/withhold operation against a deposit payment."""

    model_config = ConfigDict(extra="ignore", use_enum_values=True, validate_default=True)

    job_id: str = Field(default_factory=lambda: f"JOB-{uuid.uuid4().hex[:12].upper()}")
    booking_id: str
    job_type: DepositJobType
    amount: Decimal = Field(default=Decimal("0"), ge=0)
    reason: str | None = None
    status: DepositJobStatus = DepositJobStatus.PENDING
    attempts: int = 0
    max_attempts: int = 3
    last_error: str | None = None
    created_by: str = "system"
    created_at: str = Field(default_factory=_now_iso)
    processing_started_at: str | None = None
    processed_at: str | None = None

    @field_validator("attempts", "max_attempts", mode="before")
    @classmethod
    def _coerce_count(cls, value: Any) -> int:
        # DynamoDB returns every number as Decimal
        return int(value)

    def to_item(self) -> dict[str, Any]:
        return self.model_dump(exclude_none=True)


class JobRunSummary(BaseModel):
    """Outcome of one processor run."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    recovered: int = 0
    results: list[dict[str, Any]] = Field(default_factory=list)
