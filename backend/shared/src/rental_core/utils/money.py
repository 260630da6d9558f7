"""Money helpers.

Booking and payment amounts are stored as dollar Decimals (DynamoDB's native
number type). Any arithmetic that decides what to charge happens in integer
cents so totals never drift.
"""

from decimal import ROUND_HALF_UP, Decimal

CENT = Decimal("0.01")

# Stripe's minimum chargeable amount in cents
MINIMUM_CHARGE_CENTS = 50

Amount = Decimal | int | float | str


def to_cents(amount: Amount | None) -> int:
    """Convert a dollar amount to integer cents, rounding half up.

    >>> to_cents(Decimal("45.50"))
    4550
    """
    if amount is None:
        return 0
    # str() first so floats are rounded from their shortest repr
    value = Decimal(str(amount)).quantize(CENT, rounding=ROUND_HALF_UP)
    return int(value * 100)


def from_cents(cents: int) -> Decimal:
    """Convert integer cents to a two-place dollar Decimal."""
    return (Decimal(cents) / 100).quantize(CENT)


def clamp_charge_cents(requested_cents: int, amount_due_cents: int) -> int:
    """Clamp a requested charge to ``[MINIMUM_CHARGE_CENTS, amount_due_cents]``."""
    return min(max(requested_cents, MINIMUM_CHARGE_CENTS), amount_due_cents)
