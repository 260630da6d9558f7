"""Backend services for rental payments and deposits."""

from .audit_log import AuditLogService
from .booking_admin import BookingAdminService
from .bookings import BookingRepository
from .deposit_holds import DepositHoldService
from .deposit_jobs import DepositJobProcessor
from .dynamodb import DynamoDBService, get_dynamodb_service, reset_dynamodb_service
from .notifications import NotificationDispatcher, NotificationOutbox
from .payment_intents import PaymentIntentService
from .rate_limiter import check_rate_limit, enforce_rate_limit
from .ssm_service import SSMService, SSMServiceError, get_ssm_service
from .stripe_service import StripeService, StripeServiceError, get_stripe_service
from .webhook_handler import WebhookReconciler

__all__ = [
    "AuditLogService",
    "BookingAdminService",
    "BookingRepository",
    "DepositHoldService",
    "DepositJobProcessor",
    "DynamoDBService",
    "get_dynamodb_service",
    "reset_dynamodb_service",
    "NotificationDispatcher",
    "NotificationOutbox",
    "PaymentIntentService",
    "check_rate_limit",
    "enforce_rate_limit",
    "SSMService",
    "SSMServiceError",
    "get_ssm_service",
    "StripeService",
    "StripeServiceError",
    "get_stripe_service",
    "WebhookReconciler",
]
