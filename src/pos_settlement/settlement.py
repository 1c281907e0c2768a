"""Settlement orchestrator shared by the sales and purchase terminals.

A :class:`SettlementOrchestrator` owns one cart from the moment a terminal is
opened until the cashier acknowledges the receipt. It validates the cart with
the stock guard and the credit rule, then writes the transaction through the
asynchronous data-access collaborator in a fixed order:

1. transaction header (plus loyalty points for sales with a customer);
2. one line item per line with a positive quantity;
3. a debt record when the payment leaves something outstanding;
4. a stock adjustment per line, based on the freshest stock figure known.

Each write is awaited before the next one starts and nothing is rolled back
when a later write fails. The steps run inside a :class:`UnitOfWork`, which
records compensating actions so rollback can be switched on without changing
how callers settle a cart.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from functools import partial
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, Tuple, TypeVar

from . import credit_rule, data_manager, log
from .cart import Cart, CartLine, DiscountSpec
from .constants import (
    DEBT_DUE_DAYS,
    DEBT_METHODS,
    DISPLAY_TAX_RATE,
    LOYALTY_RATE,
    CounterpartyKind,
    Direction,
    DocumentPrefix,
    PaymentMethod,
    SettlementState,
    TaxBase,
)
from .errors import (
    EmptyCartError,
    MissingCounterpartyError,
    PersistenceError,
    SecondaryFailure,
    SettlementStateError,
    ValidationError,
)
from .numbering import time_token_number
from .pricing import PriceBreakdown, calculate_loyalty_points, calculate_totals, line_display_tax, line_total
from .stock_guard import StockCheck, StockGuard, StockSnapshot


T = TypeVar("T")


class DataAccess(Protocol):
    """Asynchronous persistence collaborator used during settlement.

    Each call returns the created or updated record, ``None`` to signal a
    failure, or raises. Calls are not transactional across each other.
    """

    async def create_transaction_header(
        self, direction: Direction, header: data_manager.TransactionHeader
    ) -> Optional[data_manager.TransactionHeader]:
        ...

    async def create_line_item(
        self, direction: Direction, item: data_manager.LineItemRow
    ) -> Optional[data_manager.LineItemRow]:
        ...

    async def create_debt_record(self, debt: data_manager.DebtRow) -> Optional[data_manager.DebtRow]:
        ...

    async def adjust_stock(self, product_id: str, new_quantity: int) -> Optional[data_manager.ProductRow]:
        ...

    async def fetch_products(self) -> List[data_manager.ProductRow]:
        ...

    async def fetch_counterparties(self, kind: CounterpartyKind) -> List[data_manager.CounterpartyRow]:
        ...

    async def accrue_loyalty_points(self, customer_id: str, points: int) -> Optional[data_manager.CounterpartyRow]:
        ...


@dataclass(frozen=True)
class FlowProfile:
    """Differences between the sales and purchase flows."""

    name: str
    direction: Direction
    counterparty_kind: CounterpartyKind
    document_prefix: str
    tax_base: TaxBase
    stock_bounded: bool
    counterparty_required: bool
    accrues_loyalty: bool
    itemises_tax: bool
    completed_status: str
    document_label: str


SALES_PROFILE = FlowProfile(
    name="sales",
    direction=Direction.OUTFLOW,
    counterparty_kind=CounterpartyKind.CUSTOMER,
    document_prefix=DocumentPrefix.INVOICE.value,
    tax_base=TaxBase.TOTAL,
    stock_bounded=True,
    counterparty_required=False,
    accrues_loyalty=True,
    itemises_tax=True,
    completed_status="completed",
    document_label="sale",
)

PURCHASE_PROFILE = FlowProfile(
    name="purchase",
    direction=Direction.INFLOW,
    counterparty_kind=CounterpartyKind.SUPPLIER,
    document_prefix=DocumentPrefix.PURCHASE_ORDER.value,
    tax_base=TaxBase.SUBTOTAL,
    stock_bounded=False,
    counterparty_required=True,
    accrues_loyalty=False,
    itemises_tax=False,
    completed_status="received",
    document_label="purchase order",
)


@dataclass(frozen=True)
class StockOutcome:
    """What happened to one product's stock during settlement."""

    product_id: str
    previous_quantity: Optional[int]
    new_quantity: Optional[int]
    applied: bool


@dataclass(frozen=True)
class ReceiptLine:
    name: str
    quantity: int
    unit_price: Decimal
    line_total: Decimal


@dataclass(frozen=True)
class ReceiptPayload:
    """Document handed to the printing/export code.

    :meth:`to_dict` produces the field names the rendering templates expect;
    keep it stable.
    """

    document_number: str
    date: str
    counterparty: Optional[Dict[str, str]]
    lines: Tuple[ReceiptLine, ...]
    subtotal: Decimal
    display_tax: Decimal
    discount_amount: Decimal
    total: Decimal
    payment_method: str
    amount_tendered: Decimal
    change: Decimal

    def to_dict(self) -> Dict[str, Any]:
        return {
            "documentNumber": self.document_number,
            "date": self.date,
            "counterparty": dict(self.counterparty) if self.counterparty is not None else None,
            "lines": [
                {
                    "name": line.name,
                    "quantity": line.quantity,
                    "unitPrice": line.unit_price,
                    "lineTotal": line.line_total,
                }
                for line in self.lines
            ],
            "subtotal": self.subtotal,
            "displayTax": self.display_tax,
            "discountAmount": self.discount_amount,
            "total": self.total,
            "paymentMethod": self.payment_method,
            "amountTendered": self.amount_tendered,
            "change": self.change,
        }


@dataclass(frozen=True)
class SettlementResult:
    """Everything committed by one settlement."""

    header: data_manager.TransactionHeader
    line_items: Tuple[data_manager.LineItemRow, ...]
    debt: Optional[data_manager.DebtRow]
    stock_outcomes: Tuple[StockOutcome, ...]
    receipt: ReceiptPayload
    loyalty_points_awarded: int = 0


@dataclass
class UnitOfWork:
    """Ordered sequence of persistence steps with optional compensation.

    Steps are awaited one at a time. A step failing (raising, or returning
    ``None`` when the step is required) surfaces as :class:`PersistenceError`.
    Compensating actions registered along the way are executed in reverse
    order only when ``rollback_on_failure`` is set.
    """

    rollback_on_failure: bool = False
    completed_steps: List[str] = field(default_factory=list)
    compensations: List[Tuple[str, Callable[[], Awaitable[Any]]]] = field(default_factory=list)

    async def run(self, step: str, action: Callable[[], Awaitable[Optional[T]]], *, required: bool = True) -> Optional[T]:
        try:
            result = await action()
        except Exception as exc:
            log.error("Settlement step '%s' failed: %s", step, exc)
            await self._on_failure()
            raise PersistenceError(step, exc) from exc
        if result is None and required:
            log.error("Settlement step '%s' returned no record", step)
            await self._on_failure()
            raise PersistenceError(step)
        self.completed_steps.append(step)
        return result

    def add_compensation(self, name: str, action: Callable[[], Awaitable[Any]]) -> None:
        self.compensations.append((name, action))

    async def _on_failure(self) -> None:
        if not self.rollback_on_failure:
            if self.completed_steps:
                log.warning(
                    "Leaving %d completed step(s) in place: %s",
                    len(self.completed_steps),
                    ", ".join(self.completed_steps),
                )
            return
        await self.rollback()

    async def rollback(self) -> None:
        """Run the registered compensations newest first.

        A failing compensation is logged and the remaining ones still run.
        """

        while self.compensations:
            name, action = self.compensations.pop()
            try:
                await action()
                log.info("Compensation '%s' applied", name)
            except Exception as exc:
                log.error("Compensation '%s' failed: %s", name, exc)


def _utc_now() -> datetime:
    return datetime.now(UTC)


class SettlementOrchestrator:
    """State machine turning one cart into a committed sale or purchase.

    One instance serves one terminal session. Callers must not start a second
    :meth:`settle` while one is in flight; the orchestrator refuses with
    :class:`SettlementStateError` if they try.
    """

    def __init__(
        self,
        data_access: DataAccess,
        *,
        profile: FlowProfile = SALES_PROFILE,
        snapshot: Optional[StockSnapshot] = None,
        tax_rate: Decimal = DISPLAY_TAX_RATE,
        loyalty_rate: Decimal = LOYALTY_RATE,
        debt_due_days: int = DEBT_DUE_DAYS,
        document_prefix: Optional[str] = None,
        clock: Callable[[], datetime] = _utc_now,
        receipt_sink: Optional[Callable[[ReceiptPayload], Any]] = None,
        rollback_on_failure: bool = False,
    ) -> None:
        self.data_access = data_access
        self.profile = profile
        self.snapshot = snapshot if snapshot is not None else StockSnapshot()
        self.guard = StockGuard(self.snapshot)
        self.tax_rate = tax_rate
        self.loyalty_rate = loyalty_rate
        self.debt_due_days = debt_due_days
        self.document_prefix = document_prefix or profile.document_prefix
        self.clock = clock
        self.receipt_sink = receipt_sink
        self.rollback_on_failure = rollback_on_failure
        self.cart = Cart()
        self.state = SettlementState.BUILDING
        self.last_result: Optional[SettlementResult] = None
        self.last_error: Optional[PersistenceError] = None

    @classmethod
    def from_settings(
        cls,
        data_access: DataAccess,
        settings: data_manager.ConfigSettings,
        *,
        profile: FlowProfile = SALES_PROFILE,
        **kwargs: Any,
    ) -> "SettlementOrchestrator":
        """Build an orchestrator using the rates and prefixes from ``config.ini``."""

        prefix = settings.invoice_prefix if profile.direction == Direction.OUTFLOW else settings.purchase_order_prefix
        return cls(
            data_access,
            profile=profile,
            tax_rate=settings.tax_rate,
            loyalty_rate=settings.loyalty_rate,
            debt_due_days=settings.debt_due_days,
            document_prefix=prefix,
            **kwargs,
        )

    # ------------------------------------------------------------------
    # Cart building
    # ------------------------------------------------------------------

    def _require_state(self, *allowed: SettlementState) -> None:
        if self.state not in allowed:
            raise SettlementStateError(
                f"Operation not allowed while {self.state.value}; expected "
                + " or ".join(state.value for state in allowed)
            )

    def add_product(self, product: data_manager.ProductRow) -> StockCheck:
        """Add one unit of ``product``; rejected when the snapshot is exhausted."""

        self._require_state(SettlementState.BUILDING)
        price = product.selling_price if self.profile.direction == Direction.OUTFLOW else product.cost_price
        if self.profile.stock_bounded:
            check = self.guard.can_add(product, self.cart, 1)
            if not check.allowed:
                return check
        else:
            check = StockCheck(allowed=True, available=self.snapshot.available(product.product_id))
        self.cart.add(product.product_id, product.product_name, price, 1)
        return check

    def update_quantity(self, product_ref: str, new_quantity: int) -> StockCheck:
        """Set a line quantity, capping it at the snapshot for sales.

        Raises:
            KeyError: If ``product_ref`` is not in the cart.
        """

        self._require_state(SettlementState.BUILDING)
        line = self.cart.find_line(product_ref)
        if line is None:
            raise KeyError(f"Product not in cart: {product_ref}")
        if self.profile.stock_bounded:
            check = self.guard.cap_quantity(line, new_quantity)
            self.cart.set_quantity(product_ref, check.capped_quantity or 0)
            return check
        self.cart.set_quantity(product_ref, new_quantity)
        return StockCheck(allowed=True, available=self.snapshot.available(product_ref), capped_quantity=line.quantity)

    def change_quantity(self, product_ref: str, delta: int) -> StockCheck:
        """Apply a +/- adjustment to a line; same capping as :meth:`update_quantity`."""

        return self.update_quantity(product_ref, self.cart.quantity_of(product_ref) + delta)

    def remove_line(self, product_ref: str) -> None:
        self._require_state(SettlementState.BUILDING)
        self.cart.remove(product_ref)

    def set_discount(self, discount: DiscountSpec) -> None:
        self._require_state(SettlementState.BUILDING)
        self.cart.discount = discount

    def select_counterparty(self, counterparty: Optional[data_manager.CounterpartyRow]) -> None:
        self._require_state(SettlementState.BUILDING, SettlementState.AWAITING_PAYMENT, SettlementState.FAILED)
        if counterparty is not None and counterparty.kind != self.profile.counterparty_kind:
            raise ValueError(
                f"Expected a {self.profile.counterparty_kind.value}, got a {counterparty.kind.value}"
            )
        self.cart.counterparty = counterparty

    def totals(self) -> PriceBreakdown:
        return calculate_totals(self.cart, tax_base=self.profile.tax_base, tax_rate=self.tax_rate)

    async def refresh_snapshot(self) -> StockSnapshot:
        """Reload product stock from the data store into the snapshot."""

        products = await self.data_access.fetch_products()
        self.snapshot.refresh(products, fetched_at=self.clock())
        return self.snapshot

    # ------------------------------------------------------------------
    # Checkout
    # ------------------------------------------------------------------

    def _require_counterparty(self) -> None:
        if self.profile.counterparty_required and self.cart.counterparty is None:
            kind = self.profile.counterparty_kind.value
            log.warning("Checkout blocked: no %s selected", kind)
            raise MissingCounterpartyError(kind, f"please select a {kind} before completing the {self.profile.document_label}")

    def begin_checkout(self) -> None:
        """Move from cart building to the payment dialog.

        Raises:
            EmptyCartError: The cart has no lines.
            MissingCounterpartyError: A purchase without a supplier.
        """

        self._require_state(SettlementState.BUILDING)
        if self.cart.is_empty:
            log.warning("Checkout blocked: cart is empty")
            raise EmptyCartError()
        self._require_counterparty()
        self.state = SettlementState.AWAITING_PAYMENT

    def return_to_cart(self) -> None:
        self._require_state(SettlementState.AWAITING_PAYMENT, SettlementState.FAILED)
        self.state = SettlementState.BUILDING

    def _validate(self, breakdown: PriceBreakdown, payment_method: PaymentMethod, amount_tendered: Optional[Decimal]) -> credit_rule.CreditDecision:
        if self.cart.is_empty:
            raise EmptyCartError()
        if self.profile.stock_bounded:
            self.guard.revalidate(self.cart)
        self._require_counterparty()
        decision = credit_rule.evaluate(payment_method, amount_tendered, breakdown.total, self.cart.counterparty)
        credit_rule.enforce(
            decision,
            self.cart.counterparty,
            counterparty_kind=self.profile.counterparty_kind.value,
        )
        return decision

    async def settle(self, payment_method: PaymentMethod, amount_tendered: Optional[Decimal] = None) -> SettlementResult:
        """Validate the cart and commit it.

        Args:
            payment_method (PaymentMethod): Method chosen in the payment dialog.
            amount_tendered (Decimal | None): Cash received, if any.

        Returns:
            SettlementResult: Committed header, items, optional debt, stock
                outcomes and the receipt payload.

        Raises:
            ValidationError: Pre-checks failed; nothing was written and the
                orchestrator is back in ``AWAITING_PAYMENT``.
            PersistenceError: A write failed; earlier writes stay committed,
                the cart is untouched, and the orchestrator is ``FAILED``.
            SettlementStateError: Called outside the payment stage.
        """

        self._require_state(SettlementState.AWAITING_PAYMENT, SettlementState.FAILED)
        self.cart.payment_method = payment_method
        breakdown = self.totals()
        try:
            decision = self._validate(breakdown, payment_method, amount_tendered)
        except ValidationError:
            self.state = SettlementState.AWAITING_PAYMENT
            raise

        self.state = SettlementState.SETTLING
        try:
            result = await self._commit(breakdown, decision)
        except PersistenceError as exc:
            self._mark_failed(exc)
            raise
        except Exception as exc:
            error = PersistenceError("settling", exc)
            self._mark_failed(error)
            raise error from exc

        self.state = SettlementState.COMPLETED
        self.last_result = result
        self.last_error = None
        log.info(
            "Settled %s '%s' (total=%s, method=%s, debt=%s)",
            self.profile.document_label,
            result.header.document_number,
            result.header.total_amount,
            payment_method.value,
            result.debt.amount if result.debt is not None else Decimal("0"),
        )
        await self._after_completion(result)
        return result

    def _mark_failed(self, error: PersistenceError) -> None:
        self.state = SettlementState.FAILED
        self.last_error = error
        log.error("Settlement failed, cart kept for retry: %s", error)

    def acknowledge_receipt(self) -> SettlementResult:
        """Clear the cart after the cashier is done with the receipt."""

        self._require_state(SettlementState.COMPLETED)
        result = self.last_result
        if result is None:
            raise SettlementStateError("No completed settlement to acknowledge")
        self.cart.clear()
        self.last_result = None
        self.state = SettlementState.BUILDING
        return result

    def abandon(self) -> None:
        """Drop the cart without settling."""

        if self.state == SettlementState.SETTLING:
            raise SettlementStateError("Cannot abandon a settlement in progress")
        self.cart.clear()
        self.last_result = None
        self.last_error = None
        self.state = SettlementState.BUILDING
        log.info("Cart abandoned")

    # ------------------------------------------------------------------
    # Settling
    # ------------------------------------------------------------------

    def _header_notes(self, decision: credit_rule.CreditDecision) -> Optional[str]:
        if decision.payment_method in DEBT_METHODS:
            return "Debt transaction - payment pending"
        if decision.is_partial_payment:
            return "Partial payment - balance outstanding"
        if self.profile.direction == Direction.INFLOW:
            return "Purchase completed through terminal"
        return None

    async def _commit(self, breakdown: PriceBreakdown, decision: credit_rule.CreditDecision) -> SettlementResult:
        uow = UnitOfWork(rollback_on_failure=self.rollback_on_failure)
        direction = self.profile.direction
        counterparty = self.cart.counterparty
        billable = self.cart.billable_lines()
        now = self.clock()

        header = data_manager.TransactionHeader(
            transaction_id=None,
            document_number=time_token_number(self.document_prefix, when=now),
            date_iso=now.isoformat(),
            counterparty_id=counterparty.counterparty_id if counterparty is not None else None,
            subtotal=breakdown.subtotal,
            discount_amount=breakdown.discount_amount,
            tax_amount=breakdown.display_tax,
            total_amount=breakdown.total,
            amount_paid=decision.amount_paid,
            change_amount=decision.change,
            payment_method=decision.payment_method.value,
            payment_status=decision.payment_status.value,
            status=self.profile.completed_status,
            notes=self._header_notes(decision),
        )
        created_header = await uow.run(
            "header",
            partial(self.data_access.create_transaction_header, direction, header),
        )
        transaction_id = created_header.transaction_id or ""

        points = await self._accrue_loyalty(breakdown.total)

        items: List[data_manager.LineItemRow] = []
        for line in billable:
            item = data_manager.LineItemRow(
                line_item_id=None,
                transaction_id=transaction_id,
                product_id=line.product_ref,
                quantity=line.quantity,
                unit_price=line.unit_price,
                tax_amount=line_display_tax(line, self.tax_rate) if self.profile.itemises_tax else Decimal("0"),
                line_total=line_total(line),
            )
            created_item = await uow.run(
                f"line_item:{line.product_ref}",
                partial(self.data_access.create_line_item, direction, item),
            )
            items.append(created_item)

        debt = None
        if decision.creates_debt and counterparty is not None:
            debt = await self._create_debt(uow, created_header, decision, counterparty, now)

        outcomes = await self._apply_stock(uow, billable)

        receipt = self._build_receipt(created_header, billable, breakdown, decision)
        return SettlementResult(
            header=created_header,
            line_items=tuple(items),
            debt=debt,
            stock_outcomes=tuple(outcomes),
            receipt=receipt,
            loyalty_points_awarded=points,
        )

    def _log_secondary(self, failure: SecondaryFailure) -> None:
        log.warning("Secondary failure ignored: %s", failure)

    async def _accrue_loyalty(self, total: Decimal) -> int:
        counterparty = self.cart.counterparty
        if not self.profile.accrues_loyalty or counterparty is None:
            return 0
        points = calculate_loyalty_points(total, self.loyalty_rate)
        if points <= 0:
            return 0
        try:
            updated = await self.data_access.accrue_loyalty_points(counterparty.counterparty_id, points)
        except Exception as exc:
            self._log_secondary(SecondaryFailure(f"loyalty accrual for '{counterparty.counterparty_id}' raised: {exc}"))
            return 0
        if updated is None:
            self._log_secondary(SecondaryFailure(f"loyalty accrual for '{counterparty.counterparty_id}' returned no record"))
            return 0
        return points

    async def _create_debt(
        self,
        uow: UnitOfWork,
        header: data_manager.TransactionHeader,
        decision: credit_rule.CreditDecision,
        counterparty: data_manager.CounterpartyRow,
        now: datetime,
    ) -> Optional[data_manager.DebtRow]:
        description = f"Debt for {self.profile.document_label} {header.transaction_id or 'unknown'}"
        if decision.is_partial_payment:
            description += " (partial payment)"
        debt = data_manager.DebtRow(
            debt_id=None,
            counterparty_id=counterparty.counterparty_id,
            debt_type=self.profile.counterparty_kind.value,
            amount=decision.debt_amount,
            description=description,
            status="outstanding",
            due_date=(now + timedelta(days=self.debt_due_days)).date().isoformat(),
            transaction_id=header.transaction_id,
        )
        created = await uow.run("debt", partial(self.data_access.create_debt_record, debt), required=False)
        if created is None:
            self._log_secondary(SecondaryFailure(f"debt record for {header.document_number} was not created"))
        return created

    async def _freshest_stock(self) -> Dict[str, int]:
        try:
            products = await self.data_access.fetch_products()
        except Exception as exc:
            log.warning("Could not fetch fresh stock, falling back to snapshot: %s", exc)
            return {}
        return {product.product_id: product.stock_quantity for product in products}

    async def _apply_stock(self, uow: UnitOfWork, lines: List[CartLine]) -> List[StockOutcome]:
        fresh = await self._freshest_stock()
        outcomes: List[StockOutcome] = []
        for line in lines:
            current = fresh.get(line.product_ref, self.snapshot.available(line.product_ref))
            if current is None:
                log.warning("No stock figure for '%s'; stock left unchanged", line.product_ref)
                outcomes.append(StockOutcome(line.product_ref, None, None, applied=False))
                continue
            if self.profile.direction == Direction.OUTFLOW:
                new_quantity = max(0, current - line.quantity)
            else:
                new_quantity = current + line.quantity
            await uow.run(
                f"stock:{line.product_ref}",
                partial(self.data_access.adjust_stock, line.product_ref, new_quantity),
            )
            uow.add_compensation(
                f"restore_stock:{line.product_ref}",
                partial(self.data_access.adjust_stock, line.product_ref, current),
            )
            outcomes.append(StockOutcome(line.product_ref, current, new_quantity, applied=True))
        return outcomes

    def _build_receipt(
        self,
        header: data_manager.TransactionHeader,
        lines: List[CartLine],
        breakdown: PriceBreakdown,
        decision: credit_rule.CreditDecision,
    ) -> ReceiptPayload:
        counterparty = self.cart.counterparty
        return ReceiptPayload(
            document_number=header.document_number,
            date=header.date_iso,
            counterparty=(
                {"id": counterparty.counterparty_id, "name": counterparty.name}
                if counterparty is not None
                else None
            ),
            lines=tuple(
                ReceiptLine(
                    name=line.name,
                    quantity=line.quantity,
                    unit_price=line.unit_price,
                    line_total=line_total(line),
                )
                for line in lines
            ),
            subtotal=breakdown.subtotal,
            display_tax=breakdown.display_tax,
            discount_amount=breakdown.discount_amount,
            total=breakdown.total,
            payment_method=decision.payment_method.value,
            amount_tendered=decision.amount_tendered,
            change=decision.change,
        )

    async def _after_completion(self, result: SettlementResult) -> None:
        if self.receipt_sink is not None:
            try:
                self.receipt_sink(result.receipt)
            except Exception as exc:
                self._log_secondary(SecondaryFailure(f"receipt hand-off failed: {exc}"))
        try:
            await self.refresh_snapshot()
        except Exception as exc:
            self._log_secondary(SecondaryFailure(f"stock snapshot refresh failed: {exc}"))
