"""Security deposit endpoints.

Provides REST endpoints for:
- Creating a manual-capture deposit hold (owner or staff)
- Releasing a hold (staff)
- Syncing the stored hold state from Stripe (staff)
"""

from fastapi import APIRouter, Depends

from rental_core.models.deposit import (
    DepositHoldRequest,
    DepositHoldResult,
    DepositReleaseResult,
    DepositSyncResult,
)
from rental_core.models.errors import BookingError, ErrorCode
from rental_core.services.bookings import BookingRepository
from rental_core.services.deposit_holds import DepositHoldService
from rental_core.services.rate_limiter import deposit_hold_limit

from rental_api.dependencies import get_booking_repository, get_deposit_hold_service
from rental_api.models.deposits import CreateDepositHoldRequest, ReleaseDepositRequest
from rental_api.rate_limit import rate_limited
from rental_api.security import CurrentUser, get_current_user, require_staff

router = APIRouter(tags=["deposits"])


@router.post(
    "/deposits/holds",
    summary="Create a deposit hold",
    description="""
Authorize (but do not capture) the security deposit for a booking.

**Idempotent**: a booking whose hold is already authorized returns the
existing intent with `alreadyAuthorized: true`.
""",
    response_model=DepositHoldResult,
    responses={
        404: {"description": "Booking not found"},
        409: {"description": "Booking is completed or cancelled"},
        429: {"description": "Rate limit exceeded"},
        500: {"description": "Stripe error or payments not configured"},
    },
    dependencies=[Depends(rate_limited(deposit_hold_limit))],
)
def create_deposit_hold(
    body: CreateDepositHoldRequest,
    user: CurrentUser = Depends(get_current_user),
    repository: BookingRepository = Depends(get_booking_repository),
    service: DepositHoldService = Depends(get_deposit_hold_service),
) -> DepositHoldResult:
    booking = repository.get_booking(body.booking_id)
    if booking is None or (booking.user_id != user.user_id and not user.is_staff):
        raise BookingError(ErrorCode.BOOKING_NOT_FOUND, details={"bookingId": body.booking_id})

    return service.create_deposit_hold(
        DepositHoldRequest(
            booking_id=body.booking_id,
            amount=body.amount,
            customer_id=body.customer_id,
            actor_id=user.user_id,
        )
    )


@router.post(
    "/deposits/{booking_id}/release",
    summary="Release a deposit hold",
    description="""
Cancel the authorized hold so the customer's funds are freed.

**Staff only.** The booking must be completed or cancelled unless
`bypassStatusCheck` is set. Releasing twice is a no-op.
""",
    response_model=DepositReleaseResult,
    responses={
        403: {"description": "Staff role required"},
        404: {"description": "Booking not found"},
        409: {"description": "Booking still open or hold not authorized"},
    },
)
def release_deposit(
    booking_id: str,
    body: ReleaseDepositRequest | None = None,
    user: CurrentUser = Depends(require_staff),
    service: DepositHoldService = Depends(get_deposit_hold_service),
) -> DepositReleaseResult:
    body = body or ReleaseDepositRequest()
    return service.release_deposit_hold(
        booking_id,
        user.user_id,
        reason=body.reason,
        bypass_status_check=body.bypass_status_check,
    )


@router.post(
    "/deposits/{booking_id}/sync",
    summary="Sync deposit status from Stripe",
    response_model=DepositSyncResult,
    responses={
        403: {"description": "Staff role required"},
        404: {"description": "Booking not found"},
        409: {"description": "Booking has no deposit hold"},
    },
)
def sync_deposit(
    booking_id: str,
    user: CurrentUser = Depends(require_staff),
    service: DepositHoldService = Depends(get_deposit_hold_service),
) -> DepositSyncResult:
    return service.sync_deposit_status(booking_id, user.user_id)
