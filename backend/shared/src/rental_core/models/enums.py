"""Enumeration types for rental booking and payment records."""

from enum import Enum


class BookingStatus(str, Enum):
    """Status of a rental booking."""

    DRAFT = "draft"
    PENDING = "pending"
    CONFIRMED = "confirmed"
    ACTIVE = "active"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


# Terminal booking states reject voiding, closing and new payments
TERMINAL_BOOKING_STATUSES = frozenset({BookingStatus.CANCELLED, BookingStatus.COMPLETED})

# Promotion order for webhook-driven status changes (never downgrade)
BOOKING_STATUS_RANK: dict[BookingStatus, int] = {
    BookingStatus.DRAFT: 0,
    BookingStatus.PENDING: 1,
    BookingStatus.CONFIRMED: 2,
    BookingStatus.ACTIVE: 3,
    BookingStatus.COMPLETED: 4,
    BookingStatus.CANCELLED: 5,
}


class DepositStatus(str, Enum):
    """Lifecycle of the security-deposit authorization hold."""

    NONE = "none"
    AUTHORIZING = "authorizing"
    REQUIRES_PAYMENT = "requires_payment"
    AUTHORIZED = "authorized"
    CAPTURED = "captured"
    RELEASED = "released"
    FAILED = "failed"
    EXPIRED = "expired"
    CANCELED = "canceled"


# Hold states after which the authorization no longer exists on the card
FINISHED_DEPOSIT_STATUSES = frozenset(
    {
        DepositStatus.CAPTURED,
        DepositStatus.RELEASED,
        DepositStatus.EXPIRED,
        DepositStatus.CANCELED,
    }
)


class PaymentType(str, Enum):
    """Kind of money movement a payment row records."""

    RENTAL = "rental"
    DEPOSIT = "deposit"
    REFUND = "refund"
    ADDITIONAL = "additional"


class TransactionStatus(str, Enum):
    """Status of a payment row."""

    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"


class LedgerAction(str, Enum):
    """Actions recorded in the deposit ledger."""

    STRIPE_HOLD = "stripe_hold"
    AUTHORIZE = "authorize"
    RELEASE = "release"
    DEDUCT = "deduct"
    STATUS_SYNC = "status_sync"


class DepositJobType(str, Enum):
    """Deferred deposit operations."""

    RELEASE = "release"
    WITHHOLD = "withhold"
    PARTIAL_RELEASE = "partial_release"


class DepositJobStatus(str, Enum):
    """Status of a deferred deposit job."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class NotificationChannel(str, Enum):
    """Delivery channel for outbound customer notifications."""

    EMAIL = "email"
    SMS = "sms"


class NotificationStatus(str, Enum):
    """Status of an outbox row."""

    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"


class NotificationTemplate(str, Enum):
    """Notification template types."""

    CONFIRMATION = "confirmation"
    PAYMENT_RECEIVED = "payment_received"
    DEPOSIT_AUTHORIZED = "deposit_authorized"
    DEPOSIT_RELEASED = "deposit_released"
    DEPOSIT_WITHHELD = "deposit_withheld"
    ACCOUNT_CLOSED = "account_closed"


class UserRole(str, Enum):
    """Operator roles read from the user-roles table."""

    ADMIN = "admin"
    STAFF = "staff"
