"""Exception taxonomy raised by the settlement engine.

Validation errors are raised before anything is persisted and leave the cart
untouched. Persistence errors wrap whatever the data-access collaborator
raised (or signalled) while a settlement was being written. Secondary failures
are only ever logged by the orchestrator; they exist as a type so the log and
tests can tell them apart.
"""

from __future__ import annotations

from decimal import Decimal
from typing import Optional


class SettlementError(Exception):
    """Base class for every error surfaced by the settlement engine."""


class ValidationError(SettlementError):
    """Raised when a settlement request violates a business rule."""


class EmptyCartError(ValidationError):
    """Raised when checkout is attempted with no lines in the cart."""

    def __init__(self) -> None:
        super().__init__("Cart is empty")


class MissingCounterpartyError(ValidationError):
    """Raised when a customer or supplier must be selected before settling."""

    def __init__(self, counterparty_kind: str, reason: str) -> None:
        self.counterparty_kind = counterparty_kind
        self.reason = reason
        super().__init__(f"A {counterparty_kind} must be selected: {reason}")


class InsufficientStockError(ValidationError):
    """Raised when a cart line asks for more units than the snapshot holds."""

    def __init__(self, product_ref: str, name: str, available: int, requested: int) -> None:
        self.product_ref = product_ref
        self.name = name
        self.available = available
        self.requested = requested
        super().__init__(
            f"{name} only has {available} items in stock, "
            f"but {requested} were requested"
        )


class CreditLimitExceededError(ValidationError):
    """Raised when the debt a settlement would create exceeds a credit limit."""

    def __init__(self, counterparty_ref: str, credit_limit: Decimal, debt_amount: Decimal) -> None:
        self.counterparty_ref = counterparty_ref
        self.credit_limit = credit_limit
        self.debt_amount = debt_amount
        super().__init__(
            f"Credit limit of {credit_limit} exceeded for '{counterparty_ref}' "
            f"(requested debt {debt_amount})"
        )


class InsufficientPaymentError(ValidationError):
    """Raised when the tendered cash cannot cover the transaction."""

    def __init__(self, amount_tendered: Decimal, total: Decimal) -> None:
        self.amount_tendered = amount_tendered
        self.total = total
        super().__init__(
            f"Insufficient payment amount: tendered {amount_tendered}, total {total}"
        )


class PersistenceError(SettlementError):
    """Raised when a step of an in-flight settlement fails to persist."""

    def __init__(self, step: str, cause: Optional[BaseException] = None, message: Optional[str] = None) -> None:
        self.step = step
        self.cause = cause
        detail = message or (str(cause) if cause is not None else "no record returned")
        super().__init__(f"Failed to complete transaction at step '{step}': {detail}")


class SecondaryFailure(SettlementError):
    """Best-effort side effect that failed without failing the settlement."""


class SettlementStateError(SettlementError):
    """Raised when an operation is not allowed in the current settlement state."""


class MissingReferenceError(SettlementError):
    """Raised when a referenced product or counterparty is unknown to the store."""


__all__ = [
    "SettlementError",
    "ValidationError",
    "EmptyCartError",
    "MissingCounterpartyError",
    "InsufficientStockError",
    "CreditLimitExceededError",
    "InsufficientPaymentError",
    "PersistenceError",
    "SecondaryFailure",
    "SettlementStateError",
    "MissingReferenceError",
]
