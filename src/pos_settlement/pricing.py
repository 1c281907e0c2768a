"""Pure pricing helpers for the sales and purchase terminals.

Nothing here performs I/O; every function can be called on each keystroke.
Figures are returned unrounded so that ``total == subtotal - discount_amount``
holds exactly. Rounding belongs to whatever renders the numbers.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_FLOOR, ROUND_HALF_UP, Decimal
from typing import Iterable

from .cart import Cart, CartLine, DiscountSpec
from .constants import DISPLAY_TAX_RATE, LOYALTY_RATE, DiscountKind, TaxBase


__all__ = [
    "PriceBreakdown",
    "line_total",
    "line_display_tax",
    "calculate_subtotal",
    "calculate_discount",
    "calculate_totals",
    "calculate_change",
    "calculate_loyalty_points",
    "format_currency",
]


@dataclass(frozen=True)
class PriceBreakdown:
    """Totals derived from a cart and its discount."""

    subtotal: Decimal
    discount_amount: Decimal
    total: Decimal
    display_tax: Decimal


def line_total(line: CartLine) -> Decimal:
    return line.unit_price * line.quantity


def line_display_tax(line: CartLine, rate: Decimal = DISPLAY_TAX_RATE) -> Decimal:
    """Informational tax recorded against a single line item."""

    return line_total(line) * rate


def calculate_subtotal(lines: Iterable[CartLine]) -> Decimal:
    """Sum ``unit_price * quantity`` over lines with a positive quantity."""

    subtotal = Decimal("0")
    for line in lines:
        if line.quantity > 0:
            subtotal += line_total(line)
    return subtotal


def calculate_discount(subtotal: Decimal, discount: DiscountSpec) -> Decimal:
    """Return the discount amount for ``subtotal``.

    Fixed-amount discounts are taken as entered and are not clamped to the
    subtotal, so a large fixed discount produces a negative total.
    """

    if discount.kind == DiscountKind.PERCENTAGE:
        return subtotal * (discount.value / Decimal("100"))
    return discount.value


def calculate_totals(
    cart: Cart,
    *,
    tax_base: TaxBase = TaxBase.TOTAL,
    tax_rate: Decimal = DISPLAY_TAX_RATE,
) -> PriceBreakdown:
    """Compute subtotal, discount, total and display tax for ``cart``.

    Args:
        cart (Cart): Cart to price.
        tax_base (TaxBase): ``TOTAL`` for the sales terminal, ``SUBTOTAL`` for
            the purchase terminal.
        tax_rate (Decimal): Display tax rate.

    Returns:
        PriceBreakdown: The display tax never feeds back into ``total``.
    """

    subtotal = calculate_subtotal(cart.lines)
    discount_amount = calculate_discount(subtotal, cart.discount)
    total = subtotal - discount_amount
    taxable = total if tax_base == TaxBase.TOTAL else subtotal
    return PriceBreakdown(
        subtotal=subtotal,
        discount_amount=discount_amount,
        total=total,
        display_tax=taxable * tax_rate,
    )


def calculate_change(amount_tendered: Decimal, total: Decimal) -> Decimal:
    return amount_tendered - total


def calculate_loyalty_points(total: Decimal, rate: Decimal = LOYALTY_RATE) -> int:
    """Whole loyalty points earned on a committed total; never negative."""

    if total <= 0:
        return 0
    return int((total * rate).to_integral_value(rounding=ROUND_FLOOR))


def format_currency(amount: Decimal, currency: str = "TZS") -> str:
    """Format ``amount`` with two decimals and thousands separators."""

    quantized = Decimal(amount).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
    sign = "-" if quantized < 0 else ""
    return f"{sign}{currency} {abs(quantized):,.2f}"
