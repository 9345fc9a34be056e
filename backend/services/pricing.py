"""
Price Calculator

Pure money arithmetic for orders. Works on anything shaped like a line
item (``unit_price`` and ``quantity`` attributes) so it can be used on ORM
rows and on request payloads alike.

All amounts are Decimals quantized to cents with ROUND_HALF_UP.
"""

from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable, Protocol

from backend.core.errors import ValidationError

CENT = Decimal("0.01")
ZERO = Decimal("0.00")


class PricedLine(Protocol):
    unit_price: Decimal
    quantity: int


class DiscountTerms(Protocol):
    discount: Decimal
    min_purchase: Decimal


def to_money(value) -> Decimal:
    """Coerce a number or numeric string to a cent-quantized Decimal."""
    if isinstance(value, float):
        # Go through str so 0.1 stays 0.10 instead of 0.1000000000000000055
        value = str(value)
    return Decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


class PriceCalculator:
    """Computes order totals and coupon discounts."""

    @staticmethod
    def line_total(line: PricedLine) -> Decimal:
        if line.quantity is None or line.quantity <= 0:
            raise ValidationError(
                "Quantity must be greater than 0",
                {"quantity": line.quantity},
            )
        if line.unit_price is None or Decimal(line.unit_price) < 0:
            raise ValidationError(
                "Unit price cannot be negative",
                {"unit_price": str(line.unit_price)},
            )
        return to_money(Decimal(line.unit_price) * line.quantity)

    @classmethod
    def compute_total(cls, lines: Iterable[PricedLine]) -> Decimal:
        """Sum of unit_price x quantity over every line."""
        return to_money(sum((cls.line_total(line) for line in lines), ZERO))

    @staticmethod
    def meets_minimum(amount: Decimal, terms: DiscountTerms) -> bool:
        return to_money(amount) >= to_money(terms.min_purchase)

    @staticmethod
    def apply_coupon(amount: Decimal, terms: DiscountTerms) -> Decimal:
        """
        Subtract the coupon discount, floored at zero.

        Eligibility (active, unexpired, minimum purchase) is the caller's job.
        """
        discount = to_money(terms.discount)
        if discount < 0:
            raise ValidationError("Coupon discount cannot be negative", {"discount": str(discount)})
        return max(to_money(amount) - discount, ZERO)
