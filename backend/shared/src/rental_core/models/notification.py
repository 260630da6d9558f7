"""Notification outbox models."""

import datetime as dt
import uuid
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .enums import NotificationChannel, NotificationStatus, NotificationTemplate


class NotificationRequest(BaseModel):
    """A request to notify a booking's customer.

    ``channel="both"`` fans out to one email and one SMS outbox row.
    ``dedupe_suffix`` scopes the idempotency key, e.g. to an event or job ID.
    """

    model_config = ConfigDict(use_enum_values=True, validate_default=True)

    booking_id: str
    template_type: NotificationTemplate
    channel: NotificationChannel | Literal["both"] = NotificationChannel.EMAIL
    dedupe_suffix: str = "default"
    metadata: dict[str, str] = Field(default_factory=dict)

    def channels(self) -> list[str]:
        if self.channel == "both":
            return [NotificationChannel.EMAIL.value, NotificationChannel.SMS.value]
        return [str(self.channel)]


class Notification(BaseModel):
    """One outbox row for a single channel."""

    model_config = ConfigDict(extra="ignore", use_enum_values=True, validate_default=True)

    notification_id: str = Field(default_factory=lambda: f"NTF-{uuid.uuid4().hex[:12].upper()}")
    idempotency_key: str
    booking_id: str
    channel: NotificationChannel
    template_type: NotificationTemplate
    status: NotificationStatus = NotificationStatus.PENDING
    attempts: int = 0
    max_attempts: int = 5
    last_error: str | None = None
    metadata: dict[str, str] = Field(default_factory=dict)
    created_at: str = Field(default_factory=lambda: dt.datetime.now(dt.UTC).isoformat())
    sent_at: str | None = None

    @field_validator("attempts", "max_attempts", mode="before")
    @classmethod
    def _coerce_count(cls, value: Any) -> int:
        return int(value)

    def to_item(self) -> dict[str, Any]:
        return self.model_dump(exclude_none=True)
