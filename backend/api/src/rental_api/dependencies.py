"""FastAPI dependency injection providers for shared services.

Factory functions use @lru_cache so each service is built once per
container. Services are lazily instantiated on first request.

Service Dependency Graph:
    DynamoDBService (singleton via get_dynamodb_service)
        └── BookingRepository
                ├── PaymentIntentService
                ├── DepositHoldService ── AuditLogService, NotificationOutbox
                ├── BookingAdminService ── DepositHoldService
                ├── DepositJobProcessor
                └── WebhookReconciler
    StripeService (singleton via get_stripe_service)

Testing:
    Use reset_services() to clear cached instances between tests.
"""

from functools import lru_cache

from rental_core.services.audit_log import AuditLogService
from rental_core.services.booking_admin import BookingAdminService
from rental_core.services.bookings import BookingRepository
from rental_core.services.deposit_holds import DepositHoldService
from rental_core.services.deposit_jobs import DepositJobProcessor
from rental_core.services.dynamodb import get_dynamodb_service, reset_dynamodb_service
from rental_core.services.notifications import NotificationOutbox
from rental_core.services.payment_intents import PaymentIntentService
from rental_core.services.rate_limiter import reset_rate_limit_store
from rental_core.services.stripe_service import get_stripe_service
from rental_core.services.webhook_handler import WebhookReconciler


@lru_cache
def get_booking_repository() -> BookingRepository:
    return BookingRepository(db=get_dynamodb_service())


@lru_cache
def get_audit_log() -> AuditLogService:
    return AuditLogService(db=get_dynamodb_service())


@lru_cache
def get_notification_outbox() -> NotificationOutbox:
    return NotificationOutbox(db=get_dynamodb_service())


@lru_cache
def get_payment_intent_service() -> PaymentIntentService:
    return PaymentIntentService(
        repository=get_booking_repository(),
        stripe_service=get_stripe_service(),
    )


@lru_cache
def get_deposit_hold_service() -> DepositHoldService:
    return DepositHoldService(
        repository=get_booking_repository(),
        stripe_service=get_stripe_service(),
        audit_log=get_audit_log(),
        outbox=get_notification_outbox(),
    )


@lru_cache
def get_booking_admin_service() -> BookingAdminService:
    return BookingAdminService(
        repository=get_booking_repository(),
        stripe_service=get_stripe_service(),
        audit_log=get_audit_log(),
        outbox=get_notification_outbox(),
        deposit_holds=get_deposit_hold_service(),
    )


@lru_cache
def get_deposit_job_processor() -> DepositJobProcessor:
    return DepositJobProcessor(
        repository=get_booking_repository(),
        audit_log=get_audit_log(),
        outbox=get_notification_outbox(),
    )


@lru_cache
def get_webhook_reconciler() -> WebhookReconciler:
    return WebhookReconciler(
        repository=get_booking_repository(),
        stripe_service=get_stripe_service(),
        outbox=get_notification_outbox(),
    )


def reset_services() -> None:
    """Clear all cached service instances.

    Call this in test fixtures to ensure clean state between tests.
    Also resets the underlying DynamoDB, Stripe and rate limit singletons.
    """
    get_booking_repository.cache_clear()
    get_audit_log.cache_clear()
    get_notification_outbox.cache_clear()
    get_payment_intent_service.cache_clear()
    get_deposit_hold_service.cache_clear()
    get_booking_admin_service.cache_clear()
    get_deposit_job_processor.cache_clear()
    get_webhook_reconciler.cache_clear()

    get_stripe_service.cache_clear()
    reset_rate_limit_store()
    reset_dynamodb_service()
