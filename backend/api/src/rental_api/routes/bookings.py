"""Booking administration endpoints.

Provides REST endpoints for:
- Voiding a booking (admin)
- Closing a finished rental's account (staff)
"""

from fastapi import APIRouter, Depends

from rental_core.models.booking import CloseAccountResult, VoidBookingResult
from rental_core.services.booking_admin import BookingAdminService

from rental_api.dependencies import get_booking_admin_service
from rental_api.models.bookings import CloseAccountRequest, VoidBookingRequest
from rental_api.security import CurrentUser, require_admin, require_staff

router = APIRouter(tags=["bookings"])


@router.post(
    "/bookings/{booking_id}/void",
    summary="Void a booking",
    description="""
Cancel a booking with a reason, optionally refunding part of what was paid.

**Admin only.** Completed or cancelled bookings answer 409 and nothing is written.
""",
    response_model=VoidBookingResult,
    responses={
        403: {"description": "Admin role required"},
        404: {"description": "Booking not found"},
        409: {"description": "Booking already completed or cancelled"},
    },
)
def void_booking(
    booking_id: str,
    body: VoidBookingRequest,
    user: CurrentUser = Depends(require_admin),
    service: BookingAdminService = Depends(get_booking_admin_service),
) -> VoidBookingResult:
    return service.void_booking(
        booking_id,
        body.reason,
        user.user_id,
        refund_amount=body.refund_amount,
        panel_source=body.panel_source,
    )


@router.post(
    "/bookings/{booking_id}/close-account",
    summary="Close a rental account",
    description="""
Settle the rental and mark the booking completed.

**Staff only.** Any balance (plus additional charges) is captured from an
authorized deposit hold, up to the deposit; with nothing due the hold is
released.
""",
    response_model=CloseAccountResult,
    responses={
        403: {"description": "Staff role required"},
        404: {"description": "Booking not found"},
        409: {"description": "Booking already completed or cancelled"},
    },
)
def close_account(
    booking_id: str,
    body: CloseAccountRequest | None = None,
    user: CurrentUser = Depends(require_staff),
    service: BookingAdminService = Depends(get_booking_admin_service),
) -> CloseAccountResult:
    body = body or CloseAccountRequest()
    return service.close_account(
        booking_id,
        user.user_id,
        additional_charges=body.additional_charges,
        notes=body.notes,
    )
