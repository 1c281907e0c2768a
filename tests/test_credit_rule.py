"""Tests for debt creation and credit-limit enforcement."""

from __future__ import annotations

from decimal import Decimal

import pytest

from conftest import make_customer
from pos_settlement import credit_rule
from pos_settlement.constants import PaymentMethod, PaymentStatus
from pos_settlement.errors import CreditLimitExceededError, InsufficientPaymentError, MissingCounterpartyError


def test_debt_over_credit_limit_is_rejected():
    customer = make_customer(credit_limit="100")
    decision = credit_rule.evaluate(PaymentMethod.DEBT, None, Decimal("150"), customer)

    assert decision.violates_limit
    with pytest.raises(CreditLimitExceededError) as excinfo:
        credit_rule.enforce(decision, customer)

    assert excinfo.value.credit_limit == Decimal("100")
    assert excinfo.value.debt_amount == Decimal("150")


def test_partial_cash_creates_debt_for_remainder():
    customer = make_customer(credit_limit="100")
    decision = credit_rule.evaluate(PaymentMethod.CASH, Decimal("20"), Decimal("50"), customer)

    credit_rule.enforce(decision, customer)

    assert decision.creates_debt
    assert decision.is_partial_payment
    assert decision.debt_amount == Decimal("30")
    assert decision.amount_paid == Decimal("20")
    assert decision.payment_status == PaymentStatus.PAID


@pytest.mark.parametrize("method", [PaymentMethod.DEBT, PaymentMethod.CREDIT])
def test_debt_methods_book_full_total(method):
    decision = credit_rule.evaluate(method, None, Decimal("80"), make_customer())

    assert decision.debt_amount == Decimal("80")
    assert decision.amount_paid == Decimal("0")
    assert decision.change == Decimal("0")
    assert decision.payment_status == PaymentStatus.UNPAID


@pytest.mark.parametrize("limit", [None, "0"])
def test_zero_or_missing_limit_means_unlimited(limit):
    customer = make_customer(credit_limit=limit)
    decision = credit_rule.evaluate(PaymentMethod.DEBT, None, Decimal("1000000"), customer)

    credit_rule.enforce(decision, customer)

    assert not decision.violates_limit


def test_debt_exactly_at_limit_is_allowed():
    customer = make_customer(credit_limit="100")
    decision = credit_rule.evaluate(PaymentMethod.CREDIT, None, Decimal("100"), customer)

    credit_rule.enforce(decision, customer)


def test_debt_without_counterparty_is_rejected():
    decision = credit_rule.evaluate(PaymentMethod.DEBT, None, Decimal("10"), None)

    with pytest.raises(MissingCounterpartyError):
        credit_rule.enforce(decision, None)


def test_partial_cash_without_counterparty_is_rejected():
    decision = credit_rule.evaluate(PaymentMethod.CASH, Decimal("5"), Decimal("10"), None)

    with pytest.raises(MissingCounterpartyError):
        credit_rule.enforce(decision, None, counterparty_kind="supplier")


def test_missing_counterparty_takes_precedence_over_limit():
    decision = credit_rule.evaluate(PaymentMethod.DEBT, None, Decimal("10"), None)

    with pytest.raises(MissingCounterpartyError):
        credit_rule.enforce(decision, None)


def test_cash_overpayment_returns_change_without_debt():
    decision = credit_rule.evaluate(PaymentMethod.CASH, Decimal("40"), Decimal("31.50"), None)

    credit_rule.enforce(decision, None)

    assert decision.change == Decimal("8.50")
    assert not decision.creates_debt


@pytest.mark.parametrize("tendered", [None, Decimal("0")])
def test_cash_with_nothing_tendered_is_insufficient(tendered):
    decision = credit_rule.evaluate(PaymentMethod.CASH, tendered, Decimal("10"), make_customer())

    with pytest.raises(InsufficientPaymentError):
        credit_rule.enforce(decision, make_customer())


@pytest.mark.parametrize("method", [PaymentMethod.CARD, PaymentMethod.MOBILE])
def test_card_and_mobile_pay_exact_total(method):
    decision = credit_rule.evaluate(method, None, Decimal("25"), None)

    credit_rule.enforce(decision, None)

    assert decision.amount_paid == Decimal("25")
    assert decision.amount_tendered == Decimal("25")
    assert decision.change == Decimal("0")
    assert not decision.creates_debt
