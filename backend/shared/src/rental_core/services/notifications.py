"""Customer notification outbox and dispatcher.

Payment services enqueue notifications and move on; a scheduled job sends
them through SES (email) and SNS (SMS). Enqueueing is idempotent on
``{template}:{booking}:{channel}:{suffix}`` so redelivered webhooks and
retried jobs never double-notify.
"""

import datetime as dt
import logging
import os
from typing import Any

import boto3
from boto3.dynamodb.conditions import Key
from botocore.exceptions import BotoCoreError, ClientError
from pydantic import ValidationError

from rental_core.models.enums import NotificationChannel, NotificationStatus, NotificationTemplate
from rental_core.models.notification import Notification, NotificationRequest

from .bookings import BookingRepository
from .dynamodb import DynamoDBService, get_dynamodb_service

logger = logging.getLogger(__name__)

OUTBOX_TABLE = "notification-outbox"
STATUS_INDEX = "status-index"

# Subject and short body per template. Content is deliberately minimal.
TEMPLATES: dict[str, tuple[str, str]] = {
    NotificationTemplate.CONFIRMATION.value: (
        "Your rental is confirmed",
        "Booking {booking_code} is confirmed. We'll see you at pickup.",
    ),
    NotificationTemplate.PAYMENT_RECEIVED.value: (
        "Payment received",
        "We received your payment for booking {booking_code}.",
    ),
    NotificationTemplate.DEPOSIT_AUTHORIZED.value: (
        "Security deposit authorized",
        "A security deposit hold was placed on your card for booking {booking_code}.",
    ),
    NotificationTemplate.DEPOSIT_RELEASED.value: (
        "Security deposit released",
        "The security deposit hold for booking {booking_code} has been released.",
    ),
    NotificationTemplate.DEPOSIT_WITHHELD.value: (
        "Security deposit update",
        "Part or all of the security deposit for booking {booking_code} was withheld.",
    ),
    NotificationTemplate.ACCOUNT_CLOSED.value: (
        "Your rental is complete",
        "Your account for booking {booking_code} has been closed. Thank you for renting with us.",
    ),
}


def idempotency_key(template_type: str, booking_id: str, channel: str, suffix: str) -> str:
    return f"{template_type}:{booking_id}:{channel}:{suffix}"


class NotificationOutbox:
    """Enqueues notifications. Never raises into the caller."""

    def __init__(self, db: DynamoDBService | None = None) -> None:
        self._db = db or get_dynamodb_service()

    def enqueue(self, request: NotificationRequest) -> list[str]:
        """Enqueue one outbox row per channel.

        Returns:
            IDs of rows created by this call (duplicates are skipped).
        """
        created: list[str] = []
        for channel in request.channels():
            key = idempotency_key(
                str(request.template_type), request.booking_id, channel, request.dedupe_suffix
            )
            try:
                notification = Notification(
                    notification_id=key,
                    idempotency_key=key,
                    booking_id=request.booking_id,
                    channel=channel,
                    template_type=request.template_type,
                    metadata=request.metadata,
                )
                inserted = self._db.put_item(
                    OUTBOX_TABLE,
                    notification.to_item(),
                    condition_expression="attribute_not_exists(notification_id)",
                )
            except (ClientError, BotoCoreError, ValidationError) as e:
                logger.warning("Failed to enqueue notification %s: %s", key, e)
                continue

            if inserted:
                created.append(key)
            else:
                logger.info("Notification %s already queued", key)
        return created


class NotificationDispatcher:
    """Sends pending outbox rows and records delivery state."""

    def __init__(
        self,
        db: DynamoDBService | None = None,
        repository: BookingRepository | None = None,
        ses_client: Any | None = None,
        sns_client: Any | None = None,
    ) -> None:
        self._db = db or get_dynamodb_service()
        self._repo = repository or BookingRepository(self._db)
        self._ses = ses_client or boto3.client(
            "ses", region_name=os.environ.get("SES_REGION") or None
        )
        self._sns = sns_client or boto3.client("sns")
        self._from_email = os.environ.get("SES_FROM_EMAIL", "no-reply@example.com")

    def fetch_pending(self, limit: int) -> list[Notification]:
        items = self._db.query(
            OUTBOX_TABLE,
            Key("status").eq(NotificationStatus.PENDING.value),
            index_name=STATUS_INDEX,
            limit=limit,
        )
        return [Notification.model_validate(item) for item in items]

    def dispatch_pending(self, limit: int = 25) -> dict[str, int]:
        """Send up to ``limit`` pending notifications, oldest first.

        Returns:
            Counts of sent, failed and retried rows.
        """
        summary = {"sent": 0, "failed": 0, "retrying": 0}
        for notification in self.fetch_pending(limit):
            try:
                self._send(notification)
            except (ClientError, BotoCoreError, LookupError) as e:
                outcome = self._record_failure(notification, str(e))
                summary[outcome] += 1
                continue
            self._mark_sent(notification)
            summary["sent"] += 1

        logger.info("Notification dispatch summary: %s", summary)
        return summary

    def _send(self, notification: Notification) -> None:
        booking = self._repo.get_booking(notification.booking_id)
        if booking is None:
            raise LookupError(f"Booking {notification.booking_id} not found")
        profile = self._repo.get_profile(booking.user_id) or {}

        subject, body_template = TEMPLATES[str(notification.template_type)]
        body = body_template.format(booking_code=booking.booking_code or booking.booking_id)

        if notification.channel == NotificationChannel.EMAIL.value:
            email = profile.get("email")
            if not email:
                raise LookupError("Customer has no email address")
            self._ses.send_email(
                Source=self._from_email,
                Destination={"ToAddresses": [email]},
                Message={
                    "Subject": {"Data": subject},
                    "Body": {"Text": {"Data": body}},
                },
            )
        else:
            phone = profile.get("phone")
            if not phone:
                raise LookupError("Customer has no phone number")
            self._sns.publish(PhoneNumber=phone, Message=body)

        logger.info(
            "Sent %s %s notification for booking %s",
            notification.channel,
            notification.template_type,
            notification.booking_id,
        )

    def _mark_sent(self, notification: Notification) -> None:
        self._db.update_item(
            OUTBOX_TABLE,
            {"notification_id": notification.notification_id},
            "SET #status = :sent, sent_at = :now, attempts = attempts + :one",
            expression_attribute_values={
                ":sent": NotificationStatus.SENT.value,
                ":now": dt.datetime.now(dt.UTC).isoformat(),
                ":one": 1,
            },
            expression_attribute_names={"#status": "status"},
        )

    def _record_failure(self, notification: Notification, error: str) -> str:
        attempts = notification.attempts + 1
        exhausted = attempts >= notification.max_attempts
        status = NotificationStatus.FAILED if exhausted else NotificationStatus.PENDING
        self._db.update_item(
            OUTBOX_TABLE,
            {"notification_id": notification.notification_id},
            "SET #status = :status, attempts = :attempts, last_error = :error",
            expression_attribute_values={
                ":status": status.value,
                ":attempts": attempts,
                ":error": error[:500],
            },
            expression_attribute_names={"#status": "status"},
        )
        logger.warning(
            "Notification %s failed (attempt %d/%d): %s",
            notification.notification_id,
            attempts,
            notification.max_attempts,
            error,
        )
        return "failed" if exhausted else "retrying"
