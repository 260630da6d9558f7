"""Pydantic models for rental bookings, payments and deposits."""

from .booking import AdditionalCharge, Booking, CloseAccountResult, VoidBookingResult
from .deposit import (
    DepositHoldRequest,
    DepositHoldResult,
    DepositJob,
    DepositLedgerEntry,
    DepositReleaseResult,
    DepositSyncResult,
    JobRunSummary,
)
from .enums import (
    BookingStatus,
    DepositJobStatus,
    DepositJobType,
    DepositStatus,
    LedgerAction,
    NotificationChannel,
    NotificationStatus,
    NotificationTemplate,
    PaymentType,
    TransactionStatus,
    UserRole,
)
from .errors import (
    ERROR_MESSAGES,
    ERROR_RECOVERY,
    BookingError,
    ErrorCode,
    RateLimitedError,
    ToolError,
    get_user_friendly_stripe_message,
    is_stripe_error_retryable,
)
from .notification import Notification, NotificationRequest
from .payment import Payment, PaymentIntentResult
from .stripe_webhook import StripeWebhookEvent, WebhookResult, parse_stripe_event

__all__ = [
    # Enums
    "BookingStatus",
    "DepositJobStatus",
    "DepositJobType",
    "DepositStatus",
    "LedgerAction",
    "NotificationChannel",
    "NotificationStatus",
    "NotificationTemplate",
    "PaymentType",
    "TransactionStatus",
    "UserRole",
    # Records
    "AdditionalCharge",
    "Booking",
    "CloseAccountResult",
    "VoidBookingResult",
    "DepositJob",
    "DepositLedgerEntry",
    "Notification",
    "Payment",
    "StripeWebhookEvent",
    "WebhookResult",
    # Requests / results
    "DepositHoldRequest",
    "DepositHoldResult",
    "DepositReleaseResult",
    "DepositSyncResult",
    "JobRunSummary",
    "NotificationRequest",
    "PaymentIntentResult",
    "parse_stripe_event",
    # Errors
    "BookingError",
    "ErrorCode",
    "ERROR_MESSAGES",
    "ERROR_RECOVERY",
    "RateLimitedError",
    "ToolError",
    "get_user_friendly_stripe_message",
    "is_stripe_error_retryable",
]
