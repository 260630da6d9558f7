"""API routes package.

Routers are organized by domain and registered in main.py under /api:

- payments: PaymentIntents for booking balances
- deposits: Deposit holds, release and sync
- bookings: Void and close-account
- admin: Deposit job processing
- webhooks: Stripe events
"""

from rental_api.routes.admin import router as admin_router
from rental_api.routes.bookings import router as bookings_router
from rental_api.routes.deposits import router as deposits_router
from rental_api.routes.payments import router as payments_router
from rental_api.routes.webhooks import router as webhooks_router

__all__ = [
    "admin_router",
    "bookings_router",
    "deposits_router",
    "payments_router",
    "webhooks_router",
]
