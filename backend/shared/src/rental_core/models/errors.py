"""Standard error codes for the rental payments backend.

All services raise BookingError with one of these codes; the API layer
maps each code to an HTTP status and a ToolError response body.
"""

from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class ErrorCode(str, Enum):
    """Machine-readable error codes returned to API clients."""

    # Request / auth errors
    VALIDATION_FAILED = "VALIDATION_FAILED"
    AUTH_REQUIRED = "AUTH_REQUIRED"
    FORBIDDEN = "FORBIDDEN"
    RATE_LIMITED = "RATE_LIMITED"

    # Booking errors
    BOOKING_NOT_FOUND = "BOOKING_NOT_FOUND"
    BOOKING_NOT_PAYABLE = "BOOKING_NOT_PAYABLE"
    AMOUNT_DUE_ZERO = "AMOUNT_DUE_ZERO"
    INVALID_STATE_TRANSITION = "INVALID_STATE_TRANSITION"

    # Deposit errors
    DEPOSIT_NOT_AUTHORIZED = "DEPOSIT_NOT_AUTHORIZED"
    DEPOSIT_HOLD_MISSING = "DEPOSIT_HOLD_MISSING"

    # Stripe / payment errors
    INVALID_WEBHOOK_SIGNATURE = "INVALID_WEBHOOK_SIGNATURE"
    STRIPE_API_ERROR = "STRIPE_API_ERROR"
    PAYMENT_NOT_CONFIGURED = "PAYMENT_NOT_CONFIGURED"
    WEBHOOK_PROCESSING_FAILED = "WEBHOOK_PROCESSING_FAILED"


# Human-readable error messages
ERROR_MESSAGES: dict[ErrorCode, str] = {
    ErrorCode.VALIDATION_FAILED: "Request validation failed",
    ErrorCode.AUTH_REQUIRED: "Authentication required to perform this action",
    ErrorCode.FORBIDDEN: "You do not have permission to perform this action",
    ErrorCode.RATE_LIMITED: "Too many requests",
    ErrorCode.BOOKING_NOT_FOUND: "Booking not found",
    ErrorCode.BOOKING_NOT_PAYABLE: "Booking is not in a payable state",
    ErrorCode.AMOUNT_DUE_ZERO: "Nothing is owed on this booking",
    ErrorCode.INVALID_STATE_TRANSITION: "Booking cannot move to the requested state",
    ErrorCode.DEPOSIT_NOT_AUTHORIZED: "Deposit hold is not authorized",
    ErrorCode.DEPOSIT_HOLD_MISSING: "Booking has no deposit hold",
    ErrorCode.INVALID_WEBHOOK_SIGNATURE: "Invalid webhook signature",
    ErrorCode.STRIPE_API_ERROR: "Stripe API error occurred",
    ErrorCode.PAYMENT_NOT_CONFIGURED: "Payment service not configured",
    ErrorCode.WEBHOOK_PROCESSING_FAILED: "Webhook processing failed",
}

# Recovery suggestions for clients
ERROR_RECOVERY: dict[ErrorCode, str] = {
    ErrorCode.VALIDATION_FAILED: "Check the request parameters and try again",
    ErrorCode.AUTH_REQUIRED: "Sign in and retry the request",
    ErrorCode.FORBIDDEN: "Ask an administrator for access",
    ErrorCode.RATE_LIMITED: "Wait for the retry window to pass and try again",
    ErrorCode.BOOKING_NOT_FOUND: "Verify the booking ID",
    ErrorCode.BOOKING_NOT_PAYABLE: "Only open bookings accept payments",
    ErrorCode.AMOUNT_DUE_ZERO: "No payment is required",
    ErrorCode.INVALID_STATE_TRANSITION: "Reload the booking and check its current status",
    ErrorCode.DEPOSIT_NOT_AUTHORIZED: "Sync the deposit status or create a new hold",
    ErrorCode.DEPOSIT_HOLD_MISSING: "Create a deposit hold first",
    ErrorCode.INVALID_WEBHOOK_SIGNATURE: "Verify webhook secret configuration",
    ErrorCode.STRIPE_API_ERROR: "Try again or contact support",
    ErrorCode.PAYMENT_NOT_CONFIGURED: "Configure the Stripe secret key",
    ErrorCode.WEBHOOK_PROCESSING_FAILED: "The provider will redeliver the event",
}


class ToolError(BaseModel):
    """Standard error response body.

    Serialized with camelCase keys (``errorCode``) for API clients.
    """

    model_config = ConfigDict(
        strict=True,
        alias_generator=to_camel,
        populate_by_name=True,
    )

    success: bool = False
    error_code: ErrorCode
    message: str
    recovery: str
    details: Optional[dict[str, Any]] = None

    @classmethod
    def from_code(
        cls,
        code: ErrorCode,
        details: Optional[dict[str, Any]] = None,
    ) -> "ToolError":
        """Create a ToolError from an error code.

        Args:
            code: The error code
            details: Optional additional context about the error

        Returns:
            A ToolError with the message and recovery hint for the code.
        """
        return cls(
            error_code=code,
            message=ERROR_MESSAGES[code],
            recovery=ERROR_RECOVERY[code],
            details=details,
        )


class BookingError(Exception):
    """Exception raised by booking and payment operations.

    Caught by the API exception handlers and converted to a ToolError.
    """

    def __init__(
        self,
        code: ErrorCode,
        details: Optional[dict[str, Any]] = None,
    ):
        self.code = code
        self.message = ERROR_MESSAGES[code]
        self.recovery = ERROR_RECOVERY[code]
        self.details = details
        super().__init__(self.message)

    def to_tool_error(self) -> ToolError:
        """Convert this exception to a ToolError for API responses."""
        return ToolError.from_code(self.code, self.details)


class RateLimitedError(BookingError):
    """Raised when a caller exceeds its request window."""

    def __init__(self, retry_after_seconds: int, reset_at: int):
        self.retry_after_seconds = retry_after_seconds
        self.reset_at = reset_at
        super().__init__(
            ErrorCode.RATE_LIMITED,
            details={"retryAfter": retry_after_seconds},
        )


# Stripe error code to user-friendly message mapping
STRIPE_ERROR_MESSAGES: dict[str, str] = {
    "card_declined": "Your card was declined. Please try a different card.",
    "expired_card": "Your card has expired. Please use a different card.",
    "insufficient_funds": "Your card has insufficient funds. Please try a different card.",
    "incorrect_cvc": "The security code (CVC) is incorrect. Please check and try again.",
    "authentication_required": "Your bank requires additional verification for this hold.",
    "amount_too_small": "The amount is below the minimum chargeable amount.",
    "processing_error": "A processing error occurred. Please try again.",
    "rate_limit": "Too many requests. Please wait a moment and try again.",
    "generic_decline": "Your card was declined. Please try a different card.",
}

# Stripe error codes that indicate the caller should retry
STRIPE_RETRYABLE_ERRORS: set[str] = {
    "processing_error",
    "rate_limit",
    "lock_timeout",
    "api_connection_error",
}


def get_user_friendly_stripe_message(
    stripe_error_code: Optional[str],
    default_message: str = "Payment could not be processed. Please try again.",
) -> str:
    """Get a user-friendly message for a Stripe error code.

    Args:
        stripe_error_code: The Stripe error code (e.g., 'card_declined').
        default_message: Message to use if error code is unknown.

    Returns:
        User-friendly error message.
    """
    if stripe_error_code and stripe_error_code in STRIPE_ERROR_MESSAGES:
        return STRIPE_ERROR_MESSAGES[stripe_error_code]
    return default_message


def is_stripe_error_retryable(stripe_error_code: Optional[str]) -> bool:
    """Check if a Stripe error is likely transient and retryable."""
    return stripe_error_code in STRIPE_RETRYABLE_ERRORS if stripe_error_code else False
