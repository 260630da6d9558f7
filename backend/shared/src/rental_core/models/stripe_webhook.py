"""Stripe webhook event models.

Every event type the reconciler consumes has its own model, discriminated on
``type``. Anything else parses as UnhandledStripeEvent so the dispatcher can
acknowledge it without touching bookings.
"""

from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from pydantic.alias_generators import to_camel


class StripeWebhookEvent(BaseModel):
    """Record of a received Stripe webhook event.

    Used for:
    - Idempotency: the row is claimed before any effects are applied
    - Auditing: the structured result of each event is kept on the row
    """

    model_config = ConfigDict(extra="ignore")

    event_id: str = Field(
        ...,
        description="Stripe event ID (evt_xxx)",
        examples=["evt_1ABC123DEF456"],
    )
    event_type: str = Field(
        ...,
        description="Stripe event type",
        examples=["payment_intent.succeeded", "charge.refunded"],
    )
    received_at: str = Field(..., description="When the event was claimed")
    payload_hash: str = Field(..., description="SHA-256 hash of the raw payload")
    booking_id: str | None = Field(default=None, description="Resolved booking ID")
    processing_result: str = Field(
        default="processing",
        description="processing, success, skipped or error",
    )
    result: dict[str, Any] = Field(default_factory=dict)
    processed_at: str | None = None


class WebhookResult(BaseModel):
    """Acknowledgement returned to Stripe for every verified event."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    received: bool = True
    duplicate: bool = False
    event_id: str
    event_type: str
    processing_result: str = Field(..., description="success, skipped or duplicate")
    result: dict[str, Any] = Field(default_factory=dict)


# === Stripe object payloads ===


class _StripeObject(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    id: str
    metadata: dict[str, str] = Field(default_factory=dict)


class CheckoutSession(_StripeObject):
    """checkout.session object (subset)."""

    payment_status: str | None = None
    payment_intent: str | None = None
    amount_total: int = 0
    customer: str | None = None


class PaymentIntent(_StripeObject):
    """payment_intent object (subset)."""

    amount: int = 0
    amount_received: int = 0
    amount_capturable: int = 0
    status: str | None = None
    capture_method: str | None = None
    payment_method: str | None = None
    latest_charge: str | None = None
    cancellation_reason: str | None = None
    last_payment_error: dict[str, Any] | None = None

    @property
    def is_deposit_hold(self) -> bool:
        return self.metadata.get("type") == "deposit_hold"

    @property
    def failure_message(self) -> str | None:
        if not self.last_payment_error:
            return None
        return self.last_payment_error.get("message")


class Charge(_StripeObject):
    """charge object (subset)."""

    payment_intent: str | None = None
    amount: int = 0
    amount_captured: int = 0
    amount_refunded: int = 0
    captured: bool = False
    refunded: bool = False


class _CheckoutSessionData(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    obj: CheckoutSession = Field(..., alias="object")


class _PaymentIntentData(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    obj: PaymentIntent = Field(..., alias="object")


class _ChargeData(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    obj: Charge = Field(..., alias="object")


# === Events ===


class _BaseEvent(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    created: int | None = None


class CheckoutSessionCompleted(_BaseEvent):
    type: Literal["checkout.session.completed"]
    data: _CheckoutSessionData


class PaymentIntentSucceeded(_BaseEvent):
    type: Literal["payment_intent.succeeded"]
    data: _PaymentIntentData


class PaymentIntentFailed(_BaseEvent):
    type: Literal["payment_intent.payment_failed"]
    data: _PaymentIntentData


class PaymentIntentAmountCapturableUpdated(_BaseEvent):
    type: Literal["payment_intent.amount_capturable_updated"]
    data: _PaymentIntentData


class PaymentIntentCanceled(_BaseEvent):
    type: Literal["payment_intent.canceled"]
    data: _PaymentIntentData


class ChargeCaptured(_BaseEvent):
    type: Literal["charge.captured"]
    data: _ChargeData


class ChargeRefunded(_BaseEvent):
    type: Literal["charge.refunded"]
    data: _ChargeData


class UnhandledStripeEvent(_BaseEvent):
    """Any event type the reconciler does not act on."""

    type: str
    data: dict[str, Any] = Field(default_factory=dict)


HandledStripeEvent = Annotated[
    Union[
        CheckoutSessionCompleted,
        PaymentIntentSucceeded,
        PaymentIntentFailed,
        PaymentIntentAmountCapturableUpdated,
        PaymentIntentCanceled,
        ChargeCaptured,
        ChargeRefunded,
    ],
    Field(discriminator="type"),
]

StripeEvent = Union[
    CheckoutSessionCompleted,
    PaymentIntentSucceeded,
    PaymentIntentFailed,
    PaymentIntentAmountCapturableUpdated,
    PaymentIntentCanceled,
    ChargeCaptured,
    ChargeRefunded,
    UnhandledStripeEvent,
]

HANDLED_EVENT_TYPES: frozenset[str] = frozenset(
    {
        "checkout.session.completed",
        "payment_intent.succeeded",
        "payment_intent.payment_failed",
        "payment_intent.amount_capturable_updated",
        "payment_intent.canceled",
        "charge.captured",
        "charge.refunded",
    }
)

_handled_adapter: TypeAdapter[Any] = TypeAdapter(HandledStripeEvent)


def parse_stripe_event(payload: dict[str, Any]) -> StripeEvent:
    """Parse a verified event payload into its typed model.

    Args:
        payload: Event dict returned by signature verification

    Returns:
        The typed event, or UnhandledStripeEvent for types not consumed here.

    Raises:
        pydantic.ValidationError: If a handled event is missing required fields.
    """
    if payload.get("type") in HANDLED_EVENT_TYPES:
        return _handled_adapter.validate_python(payload)
    return UnhandledStripeEvent.model_validate(payload)
