"""API-specific request models.

Response bodies reuse the camelCase result models from rental_core.models.
"""

from rental_api.models.bookings import CloseAccountRequest, VoidBookingRequest
from rental_api.models.deposits import (
    CreateDepositHoldRequest,
    ProcessDepositJobsRequest,
    ReleaseDepositRequest,
)
from rental_api.models.payments import CreatePaymentIntentRequest

__all__ = [
    "CloseAccountRequest",
    "CreateDepositHoldRequest",
    "CreatePaymentIntentRequest",
    "ProcessDepositJobsRequest",
    "ReleaseDepositRequest",
    "VoidBookingRequest",
]
