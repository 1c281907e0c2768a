"""In-memory cart owned by a single terminal session.

The cart is deliberately dumb: it stores lines, the selected counterparty, the
discount, and the payment method. Stock limits are enforced by
:mod:`pos_settlement.stock_guard` and totals by :mod:`pos_settlement.pricing`.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import List, Optional

from . import data_manager
from .constants import DiscountKind, PaymentMethod


@dataclass
class CartLine:
    """One product in the cart with the price captured when it was added."""

    product_ref: str
    name: str
    unit_price: Decimal
    quantity: int = 1


@dataclass(frozen=True)
class DiscountSpec:
    """Discount applied to the whole cart."""

    kind: DiscountKind = DiscountKind.PERCENTAGE
    value: Decimal = Decimal("0")

    @classmethod
    def parse(cls, kind: DiscountKind, raw_value: Optional[str]) -> "DiscountSpec":
        """Build a discount from free-text input, treating blanks and junk as zero."""

        if raw_value is None or not str(raw_value).strip():
            return cls(kind=kind, value=Decimal("0"))
        try:
            value = Decimal(str(raw_value).strip())
        except InvalidOperation:
            value = Decimal("0")
        if not value.is_finite():
            value = Decimal("0")
        return cls(kind=kind, value=value)


@dataclass
class Cart:
    """Mutable collection of lines not yet committed."""

    lines: List[CartLine] = field(default_factory=list)
    counterparty: Optional[data_manager.CounterpartyRow] = None
    discount: DiscountSpec = field(default_factory=DiscountSpec)
    payment_method: PaymentMethod = PaymentMethod.CASH

    @property
    def is_empty(self) -> bool:
        return not self.lines

    def find_line(self, product_ref: str) -> Optional[CartLine]:
        for line in self.lines:
            if line.product_ref == product_ref:
                return line
        return None

    def quantity_of(self, product_ref: str) -> int:
        line = self.find_line(product_ref)
        return line.quantity if line is not None else 0

    def add(self, product_ref: str, name: str, unit_price: Decimal, delta: int = 1) -> CartLine:
        """Increment an existing line or append a new one.

        The unit price of an existing line is kept; prices are snapshotted at
        the moment the product first enters the cart.
        """

        line = self.find_line(product_ref)
        if line is None:
            line = CartLine(product_ref=product_ref, name=name, unit_price=unit_price, quantity=max(0, delta))
            self.lines.append(line)
        else:
            line.quantity = max(0, line.quantity + delta)
        return line

    def set_quantity(self, product_ref: str, quantity: int) -> CartLine:
        """Overwrite a line quantity, flooring negative input at zero.

        Raises:
            KeyError: If ``product_ref`` is not in the cart.
        """

        line = self.find_line(product_ref)
        if line is None:
            raise KeyError(f"Product not in cart: {product_ref}")
        line.quantity = max(0, int(quantity))
        return line

    def remove(self, product_ref: str) -> None:
        self.lines = [line for line in self.lines if line.product_ref != product_ref]

    def billable_lines(self) -> List[CartLine]:
        """Return the lines that take part in settlement (quantity above zero)."""

        return [line for line in self.lines if line.quantity > 0]

    def clear(self) -> None:
        """Reset the cart to its initial empty state."""

        self.lines = []
        self.counterparty = None
        self.discount = DiscountSpec()
        self.payment_method = PaymentMethod.CASH
