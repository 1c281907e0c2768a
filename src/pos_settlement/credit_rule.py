"""Debt and credit-limit rules applied when a cart is paid for.

The rule is shared by the sales and purchase terminals. A debt record is
produced for the ``debt``/``credit`` methods (full total) and for a cash
payment that only covers part of the total (the remainder). Credit limits are
only consulted for those debt-producing branches.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from . import data_manager, log
from .constants import DEBT_METHODS, PaymentMethod, PaymentStatus
from .errors import CreditLimitExceededError, InsufficientPaymentError, MissingCounterpartyError


ZERO = Decimal("0")


@dataclass(frozen=True)
class CreditDecision:
    """Everything the orchestrator needs to know about how a cart is paid."""

    payment_method: PaymentMethod
    total: Decimal
    amount_tendered: Decimal
    amount_paid: Decimal
    change: Decimal
    debt_amount: Decimal
    creates_debt: bool
    requires_counterparty: bool
    violates_limit: bool
    insufficient_payment: bool
    payment_status: PaymentStatus

    @property
    def is_partial_payment(self) -> bool:
        return self.creates_debt and self.payment_method == PaymentMethod.CASH


def _declared_limit(counterparty: Optional[data_manager.CounterpartyRow]) -> Optional[Decimal]:
    """Return the credit limit when one is declared; zero means no limit."""

    if counterparty is None or not counterparty.credit_limit:
        return None
    return counterparty.credit_limit


def evaluate(
    payment_method: PaymentMethod,
    amount_tendered: Optional[Decimal],
    total: Decimal,
    counterparty: Optional[data_manager.CounterpartyRow],
) -> CreditDecision:
    """Classify a payment and compute debt, change and limit status.

    Args:
        payment_method (PaymentMethod): Method chosen in the payment dialog.
        amount_tendered (Decimal | None): Cash handed over; ``None`` when the
            field was left blank.
        total (Decimal): Committed total of the cart.
        counterparty (CounterpartyRow | None): Selected customer or supplier.

    Returns:
        CreditDecision: Pure description of the outcome. Nothing is raised
            here; see :func:`enforce`.
    """

    tendered = amount_tendered if amount_tendered is not None else ZERO
    amount_paid = tendered
    change = ZERO
    debt_amount = ZERO
    creates_debt = False
    insufficient = False
    status = PaymentStatus.PAID

    if payment_method in DEBT_METHODS:
        creates_debt = True
        debt_amount = total
        amount_paid = ZERO
        status = PaymentStatus.UNPAID
    elif payment_method == PaymentMethod.CASH:
        if tendered >= total:
            change = tendered - total
        elif tendered > ZERO:
            creates_debt = True
            debt_amount = total - tendered
        else:
            insufficient = True
            change = tendered - total
    else:
        # Card and mobile payments are taken for the exact total.
        if amount_tendered is None or tendered <= ZERO:
            tendered = total
        amount_paid = total

    limit = _declared_limit(counterparty)
    violates = creates_debt and limit is not None and debt_amount > limit

    return CreditDecision(
        payment_method=payment_method,
        total=total,
        amount_tendered=tendered,
        amount_paid=amount_paid,
        change=change,
        debt_amount=debt_amount,
        creates_debt=creates_debt,
        requires_counterparty=creates_debt,
        violates_limit=violates,
        insufficient_payment=insufficient,
        payment_status=status,
    )


def enforce(
    decision: CreditDecision,
    counterparty: Optional[data_manager.CounterpartyRow],
    *,
    counterparty_kind: str = "customer",
) -> None:
    """Raise the validation error matching ``decision``, if any.

    Raises:
        MissingCounterpartyError: A debt would be created without anybody to
            owe it.
        CreditLimitExceededError: The debt exceeds the declared credit limit.
        InsufficientPaymentError: Cash tendered does not cover the total.
    """

    if decision.requires_counterparty and counterparty is None:
        log.warning(
            "Payment method '%s' needs a %s before settling",
            decision.payment_method.value,
            counterparty_kind,
        )
        raise MissingCounterpartyError(
            counterparty_kind,
            f"{counterparty_kind} details are required when an outstanding debt is created",
        )
    if decision.violates_limit and counterparty is not None:
        log.warning(
            "Credit limit exceeded for '%s': limit=%s debt=%s",
            counterparty.counterparty_id,
            counterparty.credit_limit,
            decision.debt_amount,
        )
        raise CreditLimitExceededError(
            counterparty.counterparty_id,
            counterparty.credit_limit or ZERO,
            decision.debt_amount,
        )
    if decision.insufficient_payment or decision.change < ZERO:
        log.warning(
            "Insufficient payment: tendered=%s total=%s",
            decision.amount_tendered,
            decision.total,
        )
        raise InsufficientPaymentError(decision.amount_tendered, decision.total)
