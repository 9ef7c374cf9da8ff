"""Money helpers and the platform fee.

Amounts are integers in minor units (cents) everywhere below the HTTP layer.
The platform fee is a percentage of the accepted bid, rounded half-up to a
whole cent, and is withheld from the payee when the authorization is captured
(the provider deducts it as an application fee on the payee's side).
"""

from decimal import ROUND_HALF_UP, Decimal

from app.config import settings

CENT = Decimal("0.01")


def to_cents(amount: Decimal) -> int:
    """Convert a currency amount (e.g. Decimal('90.00')) to integer cents."""
    return int((amount.quantize(CENT, rounding=ROUND_HALF_UP) * 100).to_integral_value())


def from_cents(cents: int) -> Decimal:
    return (Decimal(cents) / 100).quantize(CENT)


def calculate_platform_fee(amount_cents: int, percent: Decimal | None = None) -> int:
    """Fee in cents for a given amount, at ``percent`` (defaults to the configured rate)."""
    if percent is None:
        percent = settings.platform_fee_percent
    fee = (Decimal(amount_cents) * percent / 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
    return int(fee)


def fee_schedule() -> dict:
    return {
        "platform_fee_percent": str(settings.platform_fee_percent),
        "currency": settings.currency,
        "charged_to": "payee",
        "charged_at": "capture",
    }
