"""Shared pytest fixtures and utilities for settlement engine tests."""

from __future__ import annotations

import asyncio
import sys
import uuid
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from decimal import Decimal
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence

import pytest

# Ensure source packages are importable without installation.
PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_DIR = PROJECT_ROOT / "src"

if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from pos_settlement import constants, data_manager  # noqa: E402
from pos_settlement.constants import CounterpartyKind, Direction  # noqa: E402
from pos_settlement.setup_excel import create_master_workbook  # noqa: E402
from pos_settlement.stock_guard import StockSnapshot  # noqa: E402

DEFAULT_SCHEMA_VERSION = constants.EXPECTED_SCHEMA_VERSION
FIXED_NOW = datetime(2024, 3, 15, 10, 30, tzinfo=UTC)
_CONFIG_TEMPLATE = (
    "[System]\n"
    "DataFile = {data_file}\n"
    "StoreName = {store_name}\n"
    "SchemaVersion = {schema_version}\n\n"
    "[Pricing]\n"
    "TaxRate = 0.18\n"
    "LoyaltyRate = 0.01\n\n"
    "[Debts]\n"
    "DueDays = 30\n"
)


@dataclass(frozen=True)
class ConfigBundle:
    """Container bundling together config metadata for tests."""

    directory: Path
    config_path: Path
    workbook_path: Path
    schema_version: str
    store_name: str


@pytest.fixture(scope="session", autouse=True)
def _restore_sys_path() -> Iterator[None]:
    """Ensure sys.path modifications are undone after the test session."""

    original = sys.path.copy()
    try:
        yield
    finally:
        sys.path[:] = original


# ---------------------------------------------------------------------------
# Reference data
# ---------------------------------------------------------------------------


def make_product(product_id: str = "P1", *, name: str = "Widget", price: str = "10", cost: str = "6", stock: int = 10) -> data_manager.ProductRow:
    return data_manager.ProductRow(
        product_id=product_id,
        product_name=name,
        selling_price=Decimal(price),
        cost_price=Decimal(cost),
        stock_quantity=stock,
    )


def make_customer(customer_id: str = "C1", *, name: str = "Asha", credit_limit: Optional[str] = None) -> data_manager.CounterpartyRow:
    return data_manager.CounterpartyRow(
        counterparty_id=customer_id,
        name=name,
        kind=CounterpartyKind.CUSTOMER,
        credit_limit=Decimal(credit_limit) if credit_limit is not None else None,
    )


def make_supplier(supplier_id: str = "SUP1", *, name: str = "Wholesale Ltd", credit_limit: Optional[str] = None) -> data_manager.CounterpartyRow:
    return data_manager.CounterpartyRow(
        counterparty_id=supplier_id,
        name=name,
        kind=CounterpartyKind.SUPPLIER,
        credit_limit=Decimal(credit_limit) if credit_limit is not None else None,
    )


@pytest.fixture
def catalog() -> List[data_manager.ProductRow]:
    """Two products used by the scenario tests (A at 10.00, B at 5.00)."""

    return [
        make_product("A", name="Product A", price="10", cost="7", stock=10),
        make_product("B", name="Product B", price="5", cost="3", stock=10),
    ]


@pytest.fixture
def snapshot(catalog: List[data_manager.ProductRow]) -> StockSnapshot:
    return StockSnapshot.from_products(catalog, fetched_at=FIXED_NOW)


# ---------------------------------------------------------------------------
# In-memory data access
# ---------------------------------------------------------------------------


@dataclass
class FakeDataAccess:
    """Async data-access double that records every call.

    ``fail_on`` maps a method name to an exception to raise; ``none_on`` lists
    method names that should return ``None``. Both may be narrowed to a single
    product with ``"adjust_stock:<id>"``.
    """

    products: Dict[str, data_manager.ProductRow] = field(default_factory=dict)
    counterparties: Dict[str, data_manager.CounterpartyRow] = field(default_factory=dict)
    fail_on: Dict[str, BaseException] = field(default_factory=dict)
    none_on: set = field(default_factory=set)
    headers: List[data_manager.TransactionHeader] = field(default_factory=list)
    line_items: List[data_manager.LineItemRow] = field(default_factory=list)
    debts: List[data_manager.DebtRow] = field(default_factory=list)
    stock_calls: List[tuple] = field(default_factory=list)
    loyalty_calls: List[tuple] = field(default_factory=list)
    calls: List[str] = field(default_factory=list)

    def _check(self, name: str, qualifier: Optional[str] = None) -> bool:
        self.calls.append(name)
        for key in (name, f"{name}:{qualifier}" if qualifier else None):
            if key is None:
                continue
            if key in self.fail_on:
                raise self.fail_on[key]
            if key in self.none_on:
                return True
        return False

    @property
    def persisted_count(self) -> int:
        return len(self.headers) + len(self.line_items) + len(self.debts) + len(self.stock_calls)

    async def create_transaction_header(self, direction: Direction, header: data_manager.TransactionHeader) -> Optional[data_manager.TransactionHeader]:
        if self._check("create_transaction_header"):
            return None
        record = replace(header, transaction_id=f"T{len(self.headers) + 1}")
        self.headers.append(record)
        return record

    async def create_line_item(self, direction: Direction, item: data_manager.LineItemRow) -> Optional[data_manager.LineItemRow]:
        if self._check("create_line_item", item.product_id):
            return None
        record = replace(item, line_item_id=f"L{len(self.line_items) + 1}")
        self.line_items.append(record)
        return record

    async def create_debt_record(self, debt: data_manager.DebtRow) -> Optional[data_manager.DebtRow]:
        if self._check("create_debt_record"):
            return None
        record = replace(debt, debt_id=f"D{len(self.debts) + 1}")
        self.debts.append(record)
        return record

    async def adjust_stock(self, product_id: str, new_quantity: int) -> Optional[data_manager.ProductRow]:
        if self._check("adjust_stock", product_id):
            return None
        self.stock_calls.append((product_id, new_quantity))
        product = self.products.get(product_id)
        if product is None:
            return None
        updated = replace(product, stock_quantity=new_quantity)
        self.products[product_id] = updated
        return updated

    async def fetch_products(self) -> List[data_manager.ProductRow]:
        self._check("fetch_products")
        return list(self.products.values())

    async def fetch_counterparties(self, kind: CounterpartyKind) -> List[data_manager.CounterpartyRow]:
        self._check("fetch_counterparties")
        return [c for c in self.counterparties.values() if c.kind == kind]

    async def accrue_loyalty_points(self, customer_id: str, points: int) -> Optional[data_manager.CounterpartyRow]:
        if self._check("accrue_loyalty_points"):
            return None
        self.loyalty_calls.append((customer_id, points))
        customer = self.counterparties.get(customer_id)
        if customer is None:
            return None
        updated = replace(customer, loyalty_points=customer.loyalty_points + points)
        self.counterparties[customer_id] = updated
        return updated


@pytest.fixture
def fake_access(catalog: List[data_manager.ProductRow]) -> FakeDataAccess:
    customers = [make_customer("C1"), make_customer("C2", name="Baraka", credit_limit="20"), make_supplier("SUP1")]
    return FakeDataAccess(
        products={product.product_id: product for product in catalog},
        counterparties={c.counterparty_id: c for c in customers},
    )


@pytest.fixture
def fixed_clock() -> Callable[[], datetime]:
    return lambda: FIXED_NOW


# ---------------------------------------------------------------------------
# Workbook fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def workbook_factory(tmp_path: Path) -> Callable[..., Path]:
    """Factory that creates an initialized master workbook in a temp folder."""

    def _create_workbook(
        *,
        subdir: str | None = None,
        products: Sequence[data_manager.ProductRow] = (),
        counterparties: Sequence[data_manager.CounterpartyRow] = (),
        filename: str = "pos_master_data.xlsx",
    ) -> Path:
        base_dir = tmp_path if subdir is None else tmp_path / subdir
        base_dir.mkdir(parents=True, exist_ok=True)
        workbook_path = base_dir / filename
        create_master_workbook(
            workbook_path,
            products=products,
            counterparties=counterparties,
            overwrite=True,
        )
        return workbook_path

    return _create_workbook


@pytest.fixture
def config_factory(tmp_path: Path, workbook_factory: Callable[..., Path]) -> Callable[..., ConfigBundle]:
    """Provide a callable that creates config/workbook bundles on demand."""

    def _create_config(
        *,
        make_relative: bool = False,
        store_name: str = "Test Store",
        schema_version: str = DEFAULT_SCHEMA_VERSION,
        products: Sequence[data_manager.ProductRow] = (),
        counterparties: Sequence[data_manager.CounterpartyRow] = (),
    ) -> ConfigBundle:
        bundle_id = uuid.uuid4().hex
        bundle_dir = tmp_path / f"bundle_{bundle_id}"
        bundle_dir.mkdir(parents=True, exist_ok=True)
        workbook_path = workbook_factory(
            subdir=f"bundle_{bundle_id}",
            products=products,
            counterparties=counterparties,
        )
        data_file_entry = workbook_path.name if make_relative else str(workbook_path)
        config_path = bundle_dir / "config.ini"
        config_path.write_text(
            _CONFIG_TEMPLATE.format(
                data_file=data_file_entry,
                store_name=store_name,
                schema_version=schema_version,
            )
        )
        return ConfigBundle(
            directory=bundle_dir,
            config_path=config_path,
            workbook_path=workbook_path,
            schema_version=schema_version,
            store_name=store_name,
        )

    return _create_config


@pytest.fixture
def seeded_config(config_factory: Callable[..., ConfigBundle], catalog: List[data_manager.ProductRow]) -> ConfigBundle:
    """Config bundle whose workbook already holds the catalog and counterparties."""

    return config_factory(
        products=catalog,
        counterparties=[make_customer("C1"), make_customer("C2", name="Baraka", credit_limit="20"), make_supplier("SUP1")],
    )


def run(coro: Any) -> Any:
    """Drive a coroutine to completion from a synchronous test."""

    return asyncio.run(coro)
