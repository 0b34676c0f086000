"""
Pricing Engine — what a booking costs.

Rules:
  1. Base: unit price (event or group) × participants
  2. Subscription payments get SUBSCRIPTION_DISCOUNT (10%) off
  3. Money is Decimal, rounded half-up to the kopeck
"""

from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP

from config import settings
from models.enums import PaymentMethod

CENT = Decimal("0.01")


def money(value) -> Decimal:
    """Coerce to Decimal and round to the kopeck."""
    if not isinstance(value, Decimal):
        value = Decimal(str(value))
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def discount_multiplier() -> Decimal:
    return Decimal(1) - Decimal(str(settings.SUBSCRIPTION_DISCOUNT))


def discount_percent() -> int:
    return int(Decimal(str(settings.SUBSCRIPTION_DISCOUNT)) * 100)


@dataclass
class BookingPrice:
    unit_price: Decimal
    participants_count: int
    base_price: Decimal
    discount: Decimal
    total_price: Decimal


def calculate_booking_price(
    unit_price: Decimal,
    participants_count: int,
    payment_method: PaymentMethod,
) -> BookingPrice:
    """Full price for on-site/online, discounted price for subscription payments."""
    base = money(Decimal(str(unit_price)) * participants_count)
    total = base
    if payment_method == PaymentMethod.SUBSCRIPTION:
        total = money(base * discount_multiplier())
    return BookingPrice(
        unit_price=money(unit_price),
        participants_count=participants_count,
        base_price=base,
        discount=base - total,
        total_price=total,
    )


def to_kopecks(amount: Decimal) -> int:
    """Gateway amounts are integer kopecks."""
    return int((money(amount) * 100).to_integral_value(rounding=ROUND_HALF_UP))
