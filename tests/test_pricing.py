"""Tests for the pricing engine."""

import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "api"))

from decimal import Decimal

from models.enums import PaymentMethod
from services.pricing import calculate_booking_price, discount_percent, money, to_kopecks


def test_on_site_price_is_exact():
    """On-site payment: unit × participants, no discount."""
    price = calculate_booking_price(Decimal("100"), 3, PaymentMethod.ON_SITE)
    assert price.base_price == Decimal("300.00")
    assert price.total_price == Decimal("300.00")
    assert price.discount == Decimal("0.00")


def test_online_price_is_exact():
    price = calculate_booking_price(Decimal("149.90"), 2, PaymentMethod.ONLINE)
    assert price.total_price == Decimal("299.80")


def test_subscription_discount():
    """Subscription payment gets 10% off the whole booking."""
    price = calculate_booking_price(Decimal("100"), 1, PaymentMethod.SUBSCRIPTION)
    assert price.total_price == Decimal("90.00")
    assert price.discount == Decimal("10.00")


def test_subscription_discount_rounds_half_up():
    # 33.35 × 3 = 100.05 → × 0.9 = 90.045 → 90.05
    price = calculate_booking_price(Decimal("33.35"), 3, PaymentMethod.SUBSCRIPTION)
    assert price.base_price == Decimal("100.05")
    assert price.total_price == Decimal("90.05")


def test_subscription_total_is_rounded_once():
    """Discount applies to unit × n, not to the rounded unit price."""
    for unit, n in [("10.05", 7), ("99.99", 3), ("0.15", 1), ("1250", 4)]:
        price = calculate_booking_price(Decimal(unit), n, PaymentMethod.SUBSCRIPTION)
        assert price.total_price == money(Decimal(unit) * n * Decimal("0.9"))


def test_discount_percent():
    assert discount_percent() == 10


def test_money_accepts_floats_and_strings():
    assert money(12.345) == Decimal("12.35")
    assert money("7") == Decimal("7.00")


def test_to_kopecks():
    assert to_kopecks(Decimal("900")) == 90000
    assert to_kopecks(Decimal("12.34")) == 1234
