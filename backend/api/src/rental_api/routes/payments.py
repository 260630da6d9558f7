"""Payment endpoints.

Provides REST endpoints for:
- Creating a PaymentIntent for the unpaid balance of a booking

The payment itself is recorded by the Stripe webhook once the customer
confirms the intent client-side.
"""

from fastapi import APIRouter, Depends

from rental_core.models.payment import PaymentIntentResult
from rental_core.services.payment_intents import PaymentIntentService
from rental_core.services.rate_limiter import payment_intent_limit

from rental_api.dependencies import get_payment_intent_service
from rental_api.models.payments import CreatePaymentIntentRequest
from rental_api.rate_limit import rate_limited
from rental_api.security import CurrentUser, get_current_user

router = APIRouter(tags=["payments"])


@router.post(
    "/payments/intents",
    summary="Create a PaymentIntent for a booking",
    description="""
Create a Stripe PaymentIntent for what the booking still owes.

**Requires authentication.** Customers can pay only for their own bookings;
staff can pay for any booking and may set a partial `amount`.

**Notes:**
- Amount due is the booking total minus completed rental payments
- Partial amounts are clamped to the 0.50 minimum and the amount due
- Rate limited per caller
""",
    response_model=PaymentIntentResult,
    responses={
        400: {"description": "Invalid request body"},
        401: {"description": "Authentication required"},
        403: {"description": "Custom amount sent by a non-staff caller"},
        404: {"description": "Booking not found"},
        409: {"description": "Booking not payable or nothing due"},
        429: {"description": "Rate limit exceeded"},
        500: {"description": "Stripe error or payments not configured"},
    },
    dependencies=[Depends(rate_limited(payment_intent_limit))],
)
def create_payment_intent(
    body: CreatePaymentIntentRequest,
    user: CurrentUser = Depends(get_current_user),
    service: PaymentIntentService = Depends(get_payment_intent_service),
) -> PaymentIntentResult:
    return service.create_payment_intent(
        body.booking_id,
        user.user_id,
        override_amount=body.amount,
        is_staff=user.is_staff,
    )
