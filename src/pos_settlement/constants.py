"""Enumerations and business constants shared across the settlement engine.

Centralises identifiers so that the cart, the rule modules, the orchestrator,
and the workbook-backed data layer rely on a single source of truth for
payment methods, flow directions, and document prefixes.
"""

from __future__ import annotations

from decimal import Decimal
from enum import Enum


# Central schema version expected by all layers when validating workbooks.
EXPECTED_SCHEMA_VERSION = "1.0.0"

# Display-only tax rate; never added to or subtracted from a committed total.
DISPLAY_TAX_RATE = Decimal("0.18")

# One loyalty point per 100 currency units, rounded down.
LOYALTY_RATE = Decimal("0.01")

DEBT_DUE_DAYS = 30


class PaymentMethod(str, Enum):
    """Enumerate payment methods accepted at the terminals."""

    CASH = "cash"
    CARD = "card"
    MOBILE = "mobile"
    DEBT = "debt"
    CREDIT = "credit"


# Methods where the whole total becomes an outstanding debt.
DEBT_METHODS: frozenset[PaymentMethod] = frozenset({PaymentMethod.DEBT, PaymentMethod.CREDIT})


class PaymentStatus(str, Enum):
    """Payment status recorded on a committed transaction header."""

    PAID = "paid"
    UNPAID = "unpaid"


class DiscountKind(str, Enum):
    """Enumerate the two discount flavours a cart may carry."""

    PERCENTAGE = "percentage"
    AMOUNT = "amount"


class Direction(str, Enum):
    """Stock direction of a settlement.

    ``OUTFLOW`` is a sale (stock leaves the shop), ``INFLOW`` is a purchase
    (stock arrives from a supplier).
    """

    OUTFLOW = "outflow"
    INFLOW = "inflow"


class CounterpartyKind(str, Enum):
    """Enumerate who sits on the other side of a settlement."""

    CUSTOMER = "customer"
    SUPPLIER = "supplier"


class TaxBase(str, Enum):
    """Figure the display tax is computed from."""

    TOTAL = "total"
    SUBTOTAL = "subtotal"


class SettlementState(str, Enum):
    """States of the settlement state machine."""

    BUILDING = "building"
    AWAITING_PAYMENT = "awaiting_payment"
    SETTLING = "settling"
    COMPLETED = "completed"
    FAILED = "failed"


class DocumentPrefix(str, Enum):
    """Default prefixes for externally visible document numbers."""

    INVOICE = "INV"
    PURCHASE_ORDER = "PO"
    DELIVERY_NOTE = "DN"


class SheetName(str, Enum):
    """Enumerate the workbook sheet names managed by the data layer."""

    PRODUCTS = "Products"
    CUSTOMERS = "Customers"
    SUPPLIERS = "Suppliers"
    SALES = "Sales"
    SALE_ITEMS = "SaleItems"
    PURCHASE_ORDERS = "PurchaseOrders"
    PURCHASE_ORDER_ITEMS = "PurchaseOrderItems"
    DEBTS = "Debts"
    COUNTERS = "Counters"


__all__ = [
    "EXPECTED_SCHEMA_VERSION",
    "DISPLAY_TAX_RATE",
    "LOYALTY_RATE",
    "DEBT_DUE_DAYS",
    "PaymentMethod",
    "DEBT_METHODS",
    "PaymentStatus",
    "DiscountKind",
    "Direction",
    "CounterpartyKind",
    "TaxBase",
    "SettlementState",
    "DocumentPrefix",
    "SheetName",
]
