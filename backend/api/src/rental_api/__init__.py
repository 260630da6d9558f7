"""REST API for rental payments, deposits and Stripe webhooks."""
