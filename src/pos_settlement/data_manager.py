"""Data access layer for the settlement engine.

This module provides the low-level helpers that read from and write to the
``pos_master_data.xlsx`` workbook, plus :class:`WorkbookDataAccess`, the
asynchronous data-access collaborator the settlement orchestrator talks to.
Business rules belong elsewhere.

The public API is designed around four responsibilities:

1. Configuration handling: finding and parsing ``config.ini``.
2. Workbook lifecycle: opening, validating, and persisting the Excel file.
3. Sheet operations: loading structured records and appending or updating
   individual rows.
4. The collaborator facade used by settlements and document numbering.
"""


from __future__ import annotations

import configparser
from dataclasses import dataclass, replace
from decimal import Decimal
from pathlib import Path
from typing import Any, Callable, Iterable, List, Optional, Sequence, TypeVar

from openpyxl.workbook import Workbook
import openpyxl

from . import log
from .constants import (
    DEBT_DUE_DAYS,
    DISPLAY_TAX_RATE,
    EXPECTED_SCHEMA_VERSION,
    LOYALTY_RATE,
    CounterpartyKind,
    Direction,
    DocumentPrefix,
    SheetName,
)


CONFIG_FILE_NAME = "config.ini"
PRODUCTS_SHEET = SheetName.PRODUCTS.value
CUSTOMERS_SHEET = SheetName.CUSTOMERS.value
SUPPLIERS_SHEET = SheetName.SUPPLIERS.value
DEBTS_SHEET = SheetName.DEBTS.value
COUNTERS_SHEET = SheetName.COUNTERS.value

HEADER_SHEETS = {
    Direction.OUTFLOW: SheetName.SALES.value,
    Direction.INFLOW: SheetName.PURCHASE_ORDERS.value,
}
LINE_ITEM_SHEETS = {
    Direction.OUTFLOW: SheetName.SALE_ITEMS.value,
    Direction.INFLOW: SheetName.PURCHASE_ORDER_ITEMS.value,
}
COUNTERPARTY_SHEETS = {
    CounterpartyKind.CUSTOMER: CUSTOMERS_SHEET,
    CounterpartyKind.SUPPLIER: SUPPLIERS_SHEET,
}
COUNTERPARTY_KEY_COLUMNS = {
    CounterpartyKind.CUSTOMER: "CustomerID",
    CounterpartyKind.SUPPLIER: "SupplierID",
}
RECORD_ID_PREFIXES = {
    SheetName.SALES.value: "S",
    SheetName.SALE_ITEMS.value: "SI",
    SheetName.PURCHASE_ORDERS.value: "P",
    SheetName.PURCHASE_ORDER_ITEMS.value: "PI",
    DEBTS_SHEET: "D",
}

RowT = TypeVar("RowT")


@dataclass(frozen=True)
class ConfigSettings:
    """Typed representation of the ``config.ini`` settings we care about."""

    data_file: Path
    store_name: str
    schema_version: str
    tax_rate: Decimal = DISPLAY_TAX_RATE
    loyalty_rate: Decimal = LOYALTY_RATE
    debt_due_days: int = DEBT_DUE_DAYS
    invoice_prefix: str = DocumentPrefix.INVOICE.value
    purchase_order_prefix: str = DocumentPrefix.PURCHASE_ORDER.value
    delivery_note_prefix: str = DocumentPrefix.DELIVERY_NOTE.value


@dataclass(frozen=True)
class ProductRow:
    """In-memory view of a row from the ``Products`` sheet."""

    product_id: str
    product_name: str
    selling_price: Decimal
    cost_price: Decimal
    stock_quantity: int
    is_active: bool = True


@dataclass(frozen=True)
class CounterpartyRow:
    """In-memory view of a customer or supplier row, with its credit profile."""

    counterparty_id: str
    name: str
    kind: CounterpartyKind
    credit_limit: Optional[Decimal] = None
    loyalty_points: int = 0
    outstanding_debt_ref: Optional[str] = None


@dataclass(frozen=True)
class TransactionHeader:
    """Header of a committed sale or purchase order.

    ``transaction_id`` is ``None`` until the store assigns one.
    """

    transaction_id: Optional[str]
    document_number: str
    date_iso: str
    counterparty_id: Optional[str]
    subtotal: Decimal
    discount_amount: Decimal
    tax_amount: Decimal
    total_amount: Decimal
    amount_paid: Decimal
    change_amount: Decimal
    payment_method: str
    payment_status: str
    status: str
    notes: Optional[str] = None


@dataclass(frozen=True)
class LineItemRow:
    """One persisted line of a sale or purchase order."""

    line_item_id: Optional[str]
    transaction_id: str
    product_id: str
    quantity: int
    unit_price: Decimal
    tax_amount: Decimal
    line_total: Decimal


@dataclass(frozen=True)
class DebtRow:
    """Outstanding amount owed by a customer or to a supplier."""

    debt_id: Optional[str]
    counterparty_id: str
    debt_type: str
    amount: Decimal
    description: str
    status: str
    due_date: str
    transaction_id: Optional[str] = None


def find_config_file(explicit_path: Optional[Path] = None) -> Path:
    """Locate the configuration file that controls how the data layer behaves.

    If the caller provides ``explicit_path`` the value is returned immediately
    without any verification, which allows the caller to deliberately target a
    non-standard location. When no explicit path is given the function walks up
    from the current working directory toward the filesystem root looking for a
    file named ``CONFIG_FILE_NAME``. The first match that exists on disk is
    considered authoritative.

    Args:
        explicit_path (Path | None): Optional path to use instead of performing
            the upward search. May be relative to the current working directory.

    Returns:
        Path: The path provided by the caller or the discovered configuration
            file.

    Raises:
        FileNotFoundError: If the search exhausts all parent directories without
            finding ``CONFIG_FILE_NAME``.
    """

    if explicit_path:
        return explicit_path

    current = Path.cwd()
    for p in (current, *current.parents):
        candidate = p / CONFIG_FILE_NAME
        if candidate.exists():
            return candidate

    raise FileNotFoundError(
        f"Configuration file not found: {CONFIG_FILE_NAME}")


def read_config(config_path: Path) -> configparser.ConfigParser:
    """Load ``config.ini`` and return a populated ``ConfigParser`` instance.

    Args:
        config_path (Path): Path to the configuration file, relative or
            absolute.

    Returns:
        configparser.ConfigParser: Parser containing the raw configuration.

    Raises:
        FileNotFoundError: If ``config_path`` does not exist after expansion and
            resolution.
    """

    config_path = config_path.expanduser().resolve()
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    parser = configparser.ConfigParser()
    parser.read(config_path)
    return parser


def parse_settings(parser: configparser.ConfigParser, *, base_path: Optional[Path] = None) -> ConfigSettings:
    """Convert a ``ConfigParser`` into strongly typed :class:`ConfigSettings`.

    ``[System]`` entries are mandatory. ``[Pricing]``, ``[Debts]`` and
    ``[Numbering]`` are optional and fall back to the package defaults.
    Relative ``DataFile`` entries are expanded against ``base_path`` (or the
    current working directory) and resolved to an absolute path.

    Args:
        parser (configparser.ConfigParser): Parsed configuration data.
        base_path (Path | None): Directory to use as the anchor for relative
            ``DataFile`` entries.

    Returns:
        ConfigSettings: Immutable settings container.

    Raises:
        KeyError: If a required section or option is missing, or an optional
            numeric option cannot be parsed.
    """

    try:
        data_file_raw = parser.get("System", "DataFile")
        store_name = parser.get("System", "StoreName")
        schema_version = parser.get("System", "SchemaVersion")
    except (configparser.NoSectionError, configparser.NoOptionError) as exc:
        raise KeyError(f"Missing required configuration entry: {exc}") from exc

    try:
        tax_rate = Decimal(parser.get("Pricing", "TaxRate", fallback=str(DISPLAY_TAX_RATE)))
        loyalty_rate = Decimal(parser.get("Pricing", "LoyaltyRate", fallback=str(LOYALTY_RATE)))
        debt_due_days = parser.getint("Debts", "DueDays", fallback=DEBT_DUE_DAYS)
    except (ArithmeticError, ValueError) as exc:
        raise KeyError(f"Invalid numeric configuration entry: {exc}") from exc

    data_file_path = Path(data_file_raw)
    if not data_file_path.is_absolute():
        if base_path is None:
            base_path = Path.cwd()
        data_file_path = (base_path / data_file_path).resolve()

    return ConfigSettings(
        data_file=data_file_path,
        store_name=store_name,
        schema_version=schema_version,
        tax_rate=tax_rate,
        loyalty_rate=loyalty_rate,
        debt_due_days=debt_due_days,
        invoice_prefix=parser.get("Numbering", "InvoicePrefix", fallback=DocumentPrefix.INVOICE.value),
        purchase_order_prefix=parser.get(
            "Numbering", "PurchaseOrderPrefix", fallback=DocumentPrefix.PURCHASE_ORDER.value
        ),
        delivery_note_prefix=parser.get(
            "Numbering", "DeliveryNotePrefix", fallback=DocumentPrefix.DELIVERY_NOTE.value
        ),
    )


def load_settings(config_path: Optional[Path] = None) -> ConfigSettings:
    """Locate, read and parse ``config.ini`` in one call."""

    located = Path(find_config_file(config_path)).expanduser().resolve()
    parser = read_config(located)
    return parse_settings(parser, base_path=located.parent)


def ensure_schema_version(settings: ConfigSettings) -> None:
    """Refuse to touch a workbook whose declared schema we do not understand.

    Raises:
        RuntimeError: If ``settings.schema_version`` differs from
            ``EXPECTED_SCHEMA_VERSION``.
    """

    if settings.schema_version != EXPECTED_SCHEMA_VERSION:
        log.error(
            "Workbook schema mismatch: expected %s, found %s",
            EXPECTED_SCHEMA_VERSION,
            settings.schema_version,
        )
        raise RuntimeError(
            "Workbook schema mismatch: expected %s, found %s"
            % (EXPECTED_SCHEMA_VERSION, settings.schema_version)
        )
    log.debug("Schema version '%s' validated", settings.schema_version)


def open_workbook(data_file: Path) -> Workbook:
    """Open the master Excel workbook and return a live ``openpyxl`` workbook.

    Args:
        data_file (Path): Filesystem path to the master workbook.

    Returns:
        Workbook: ``openpyxl`` workbook instance backed by the provided file.

    Raises:
        FileNotFoundError: If ``data_file`` does not exist after expansion and
            resolution.
    """

    data_file = Path(data_file).expanduser().resolve()
    if not data_file.exists():
        raise FileNotFoundError(f"Workbook not found: {data_file}")

    return openpyxl.load_workbook(data_file)


def save_workbook(workbook: Workbook, destination: Path) -> None:
    """Persist the workbook to disk, creating parent directories on demand."""

    dest = Path(destination).expanduser().resolve()
    dest.parent.mkdir(parents=True, exist_ok=True)
    workbook.save(dest)


def refresh_workbook(data_file: Path) -> Workbook:
    """Reload the workbook from disk, discarding any unsaved in-memory changes."""

    return open_workbook(data_file)


def _iter_sheet(workbook: Workbook, sheet_name: str, deserializer: Callable[[Sequence[object]], RowT]) -> Iterable[RowT]:
    sheet = workbook[sheet_name]
    for raw in sheet.iter_rows(min_row=2, values_only=True):
        # skip fully empty rows
        if any(cell is not None for cell in raw):
            yield deserializer(raw)


def iter_products(workbook: Workbook) -> Iterable[ProductRow]:
    """Iterate over product records stored on the ``Products`` worksheet.

    The iterator skips the header row and any fully empty rows. Each remaining
    row is converted into a :class:`ProductRow` via
    :func:`deserialize_product`.

    Args:
        workbook (Workbook): Workbook containing the ``Products`` sheet.

    Yields:
        ProductRow: One structured row for each meaningful record in the sheet.
    """

    return _iter_sheet(workbook, PRODUCTS_SHEET, deserialize_product)


def iter_counterparties(workbook: Workbook, kind: CounterpartyKind) -> Iterable[CounterpartyRow]:
    """Iterate over the ``Customers`` or ``Suppliers`` worksheet."""

    return _iter_sheet(
        workbook,
        COUNTERPARTY_SHEETS[kind],
        lambda raw: deserialize_counterparty(raw, kind=kind),
    )


def iter_headers(workbook: Workbook, direction: Direction) -> Iterable[TransactionHeader]:
    """Iterate over committed sales or purchase orders."""

    return _iter_sheet(workbook, HEADER_SHEETS[direction], deserialize_header)


def iter_line_items(workbook: Workbook, direction: Direction) -> Iterable[LineItemRow]:
    return _iter_sheet(workbook, LINE_ITEM_SHEETS[direction], deserialize_line_item)


def iter_debts(workbook: Workbook) -> Iterable[DebtRow]:
    return _iter_sheet(workbook, DEBTS_SHEET, deserialize_debt)


def find_product(workbook: Workbook, product_id: str) -> Optional[ProductRow]:
    for product in iter_products(workbook):
        if product.product_id == product_id:
            return product
    return None


def find_counterparty(workbook: Workbook, kind: CounterpartyKind, counterparty_id: str) -> Optional[CounterpartyRow]:
    for counterparty in iter_counterparties(workbook, kind):
        if counterparty.counterparty_id == counterparty_id:
            return counterparty
    return None


def next_record_id(workbook: Workbook, sheet_name: str) -> str:
    """Allocate the identifier for the next row appended to ``sheet_name``.

    Identifiers are the sheet prefix followed by the 1-based data row number,
    so they are unique as long as rows are never deleted.
    """

    sheet = workbook[sheet_name]
    prefix = RECORD_ID_PREFIXES.get(sheet_name, "R")
    return f"{prefix}{sheet.max_row:06d}"


def append_product(workbook: Workbook, record: ProductRow) -> None:
    """Append a product record to the ``Products`` worksheet."""

    workbook[PRODUCTS_SHEET].append(serialize_product(record))


def append_counterparty(workbook: Workbook, record: CounterpartyRow) -> None:
    """Append a customer or supplier depending on ``record.kind``."""

    workbook[COUNTERPARTY_SHEETS[record.kind]].append(serialize_counterparty(record))


def append_header(workbook: Workbook, direction: Direction, record: TransactionHeader) -> None:
    """Append a transaction header to the sheet matching ``direction``.

    Numerical fields remain :class:`~decimal.Decimal` instances after
    serialization, allowing Excel to preserve precision when the workbook is
    saved.
    """

    workbook[HEADER_SHEETS[direction]].append(serialize_header(record))


def append_line_item(workbook: Workbook, direction: Direction, record: LineItemRow) -> None:
    workbook[LINE_ITEM_SHEETS[direction]].append(serialize_line_item(record))


def append_debt(workbook: Workbook, record: DebtRow) -> None:
    workbook[DEBTS_SHEET].append(serialize_debt(record))


def update_row(workbook: Workbook, sheet_name: str, key_column: str, key_value: str, *, field_values: dict[str, Any]) -> None:
    """Update selected columns of the row whose ``key_column`` equals ``key_value``.

    Only the specified fields are modified, leaving other columns untouched.

    Args:
        workbook (Workbook): Workbook containing ``sheet_name``.
        sheet_name (str): Worksheet to modify.
        key_column (str): Header of the column identifying the row.
        key_value (str): Identifier used to locate the target row.
        field_values (dict[str, Any]): Mapping of column names to replacement
            values.

    Raises:
        KeyError: If the row or any referenced column cannot be found.
    """

    row_index = locate_row(workbook, sheet_name, key_column, key_value)
    if row_index is None:
        raise KeyError(f"Row not found in {sheet_name}: {key_value}")

    sheet = workbook[sheet_name]
    headers = list(sheet[1])
    header_map = {cell.value: idx + 1 for idx, cell in enumerate(headers)}

    for field, value in field_values.items():
        if field not in header_map:
            raise KeyError(f"Unknown {sheet_name} field: {field}")
        sheet.cell(row=row_index, column=header_map[field], value=value)


def update_product(workbook: Workbook, product_id: str, *, field_values: dict[str, Any]) -> None:
    """Update selected columns for an existing product."""

    update_row(workbook, PRODUCTS_SHEET, "ProductID", product_id, field_values=field_values)


def update_counterparty(workbook: Workbook, kind: CounterpartyKind, counterparty_id: str, *, field_values: dict[str, Any]) -> None:
    """Update selected columns for an existing customer or supplier."""

    update_row(
        workbook,
        COUNTERPARTY_SHEETS[kind],
        COUNTERPARTY_KEY_COLUMNS[kind],
        counterparty_id,
        field_values=field_values,
    )


def locate_row(workbook: Workbook, sheet_name: str, key_column: str, key_value: str) -> Optional[int]:
    """Find a row by matching a key value within the specified worksheet.

    Args:
        workbook (Workbook): Workbook providing access to ``sheet_name``.
        sheet_name (str): Name of the worksheet to search.
        key_column (str): Header title identifying the column that stores the
            lookup key.
        key_value (str): Value to match within the key column.

    Returns:
        int | None: 1-based Excel row index when a match is found, otherwise
            ``None``.

    Raises:
        KeyError: If ``key_column`` is not present in the worksheet header.
    """

    sheet = workbook[sheet_name]
    header_cells = list(sheet[1])
    header_map = {cell.value: idx + 1 for idx, cell in enumerate(header_cells)}
    if key_column not in header_map:
        raise KeyError(f"Unknown column: {key_column}")

    key_col_index = header_map[key_column]

    for row_idx, row in enumerate(sheet.iter_rows(min_row=2, values_only=True), start=2):
        cell_value = row[key_col_index - 1]
        if cell_value is not None and str(cell_value) == key_value:
            return row_idx

    return None


def read_counter(workbook: Workbook, key: str) -> Optional[str]:
    """Return the value stored under ``key`` in the ``Counters`` sheet."""

    for raw in workbook[COUNTERS_SHEET].iter_rows(min_row=2, values_only=True):
        if raw and raw[0] == key:
            return str(raw[1]) if raw[1] is not None else None
    return None


def write_counter(workbook: Workbook, key: str, value: str) -> None:
    """Insert or overwrite ``key`` in the ``Counters`` sheet."""

    row_index = locate_row(workbook, COUNTERS_SHEET, "Key", key)
    sheet = workbook[COUNTERS_SHEET]
    if row_index is None:
        sheet.append([key, value])
    else:
        sheet.cell(row=row_index, column=2, value=value)


def _to_decimal(raw: object, default: str = "0.00") -> Decimal:
    return Decimal(str(raw)) if raw is not None else Decimal(default)


def _optional_str(raw: object) -> Optional[str]:
    return str(raw) if raw is not None else None


def serialize_product(record: ProductRow) -> list[object]:
    """Convert a product dataclass into the worksheet column ordering."""

    return [
        record.product_id,
        record.product_name,
        record.selling_price,
        record.cost_price,
        record.stock_quantity,
        record.is_active,
    ]


def serialize_counterparty(record: CounterpartyRow) -> list[object]:
    return [
        record.counterparty_id,
        record.name,
        record.credit_limit,
        record.loyalty_points,
        record.outstanding_debt_ref,
    ]


def serialize_header(record: TransactionHeader) -> list[object]:
    return [
        record.transaction_id,
        record.document_number,
        record.date_iso,
        record.counterparty_id,
        record.subtotal,
        record.discount_amount,
        record.tax_amount,
        record.total_amount,
        record.amount_paid,
        record.change_amount,
        record.payment_method,
        record.payment_status,
        record.status,
        record.notes,
    ]


def serialize_line_item(record: LineItemRow) -> list[object]:
    return [
        record.line_item_id,
        record.transaction_id,
        record.product_id,
        record.quantity,
        record.unit_price,
        record.tax_amount,
        record.line_total,
    ]


def serialize_debt(record: DebtRow) -> list[object]:
    return [
        record.debt_id,
        record.counterparty_id,
        record.debt_type,
        record.amount,
        record.description,
        record.status,
        record.due_date,
        record.transaction_id,
    ]


def deserialize_product(raw_row: Sequence[object]) -> ProductRow:
    """Convert a raw worksheet row into a strongly typed product record.

    Prices become :class:`~decimal.Decimal`, stock an ``int`` (blank means
    zero), and id/name fields are coerced to ``str`` to avoid surprises caused
    by Excel interpreting numbers.
    """

    product_id, product_name, selling_raw, cost_raw, stock_raw, is_active = raw_row[:6]
    return ProductRow(
        product_id=str(product_id),
        product_name=str(product_name),
        selling_price=_to_decimal(selling_raw),
        cost_price=_to_decimal(cost_raw),
        stock_quantity=int(stock_raw) if stock_raw is not None else 0,
        is_active=bool(is_active) if is_active is not None else True,
    )


def deserialize_counterparty(raw_row: Sequence[object], *, kind: CounterpartyKind) -> CounterpartyRow:
    counterparty_id, name, limit_raw, points_raw, debt_ref = raw_row[:5]
    return CounterpartyRow(
        counterparty_id=str(counterparty_id),
        name=str(name) if name is not None else "",
        kind=kind,
        credit_limit=Decimal(str(limit_raw)) if limit_raw is not None else None,
        loyalty_points=int(points_raw) if points_raw is not None else 0,
        outstanding_debt_ref=_optional_str(debt_ref),
    )


def deserialize_header(raw_row: Sequence[object]) -> TransactionHeader:
    (
        transaction_id,
        document_number,
        date_iso,
        counterparty_id,
        subtotal,
        discount_amount,
        tax_amount,
        total_amount,
        amount_paid,
        change_amount,
        payment_method,
        payment_status,
        status,
        notes,
    ) = raw_row[:14]
    return TransactionHeader(
        transaction_id=_optional_str(transaction_id),
        document_number=str(document_number),
        date_iso=str(date_iso) if date_iso is not None else "",
        counterparty_id=_optional_str(counterparty_id),
        subtotal=_to_decimal(subtotal),
        discount_amount=_to_decimal(discount_amount),
        tax_amount=_to_decimal(tax_amount),
        total_amount=_to_decimal(total_amount),
        amount_paid=_to_decimal(amount_paid),
        change_amount=_to_decimal(change_amount),
        payment_method=str(payment_method),
        payment_status=str(payment_status),
        status=str(status),
        notes=_optional_str(notes),
    )


def deserialize_line_item(raw_row: Sequence[object]) -> LineItemRow:
    line_item_id, transaction_id, product_id, quantity, unit_price, tax_amount, line_total = raw_row[:7]
    return LineItemRow(
        line_item_id=_optional_str(line_item_id),
        transaction_id=str(transaction_id),
        product_id=str(product_id),
        quantity=int(quantity) if quantity is not None else 0,
        unit_price=_to_decimal(unit_price),
        tax_amount=_to_decimal(tax_amount),
        line_total=_to_decimal(line_total),
    )


def deserialize_debt(raw_row: Sequence[object]) -> DebtRow:
    debt_id, counterparty_id, debt_type, amount, description, status, due_date, transaction_id = raw_row[:8]
    return DebtRow(
        debt_id=_optional_str(debt_id),
        counterparty_id=str(counterparty_id),
        debt_type=str(debt_type),
        amount=_to_decimal(amount),
        description=str(description) if description is not None else "",
        status=str(status),
        due_date=str(due_date) if due_date is not None else "",
        transaction_id=_optional_str(transaction_id),
    )


class WorkbookCounterStore:
    """Counter store persisted in the workbook's ``Counters`` sheet.

    Values survive process restarts once the workbook is saved.
    """

    def __init__(self, workbook: Workbook) -> None:
        self.workbook = workbook

    def read_last(self, key: str) -> Optional[str]:
        return read_counter(self.workbook, key)

    def write_last(self, key: str, value: str) -> None:
        write_counter(self.workbook, key, value)


class WorkbookDataAccess:
    """Asynchronous data-access collaborator backed by an ``openpyxl`` workbook.

    Every method mutates the in-memory workbook only; callers decide when to
    :func:`save_workbook`. None of the calls are transactional across each
    other. Failures to find a referenced row are signalled by returning
    ``None``, mirroring how the hosted data service reports them.
    """

    def __init__(self, workbook: Workbook) -> None:
        self.workbook = workbook

    async def create_transaction_header(self, direction: Direction, header: TransactionHeader) -> Optional[TransactionHeader]:
        sheet_name = HEADER_SHEETS[direction]
        record = replace(header, transaction_id=next_record_id(self.workbook, sheet_name))
        append_header(self.workbook, direction, record)
        log.debug("Appended %s header '%s'", direction.value, record.transaction_id)
        return record

    async def create_line_item(self, direction: Direction, item: LineItemRow) -> Optional[LineItemRow]:
        sheet_name = LINE_ITEM_SHEETS[direction]
        record = replace(item, line_item_id=next_record_id(self.workbook, sheet_name))
        append_line_item(self.workbook, direction, record)
        return record

    async def create_debt_record(self, debt: DebtRow) -> Optional[DebtRow]:
        kind = CounterpartyKind(debt.debt_type)
        if find_counterparty(self.workbook, kind, debt.counterparty_id) is None:
            log.warning("Debt references unknown %s '%s'", kind.value, debt.counterparty_id)
            return None
        record = replace(debt, debt_id=next_record_id(self.workbook, DEBTS_SHEET))
        append_debt(self.workbook, record)
        update_counterparty(
            self.workbook,
            kind,
            debt.counterparty_id,
            field_values={"OutstandingDebtRef": record.debt_id},
        )
        return record

    async def adjust_stock(self, product_id: str, new_quantity: int) -> Optional[ProductRow]:
        product = find_product(self.workbook, product_id)
        if product is None:
            log.warning("Stock update for unknown product '%s'", product_id)
            return None
        update_product(self.workbook, product_id, field_values={"StockQuantity": new_quantity})
        return replace(product, stock_quantity=new_quantity)

    async def fetch_products(self) -> List[ProductRow]:
        return list(iter_products(self.workbook))

    async def fetch_counterparties(self, kind: CounterpartyKind) -> List[CounterpartyRow]:
        return list(iter_counterparties(self.workbook, kind))

    async def accrue_loyalty_points(self, customer_id: str, points: int) -> Optional[CounterpartyRow]:
        customer = find_counterparty(self.workbook, CounterpartyKind.CUSTOMER, customer_id)
        if customer is None:
            return None
        total_points = customer.loyalty_points + points
        update_counterparty(
            self.workbook,
            CounterpartyKind.CUSTOMER,
            customer_id,
            field_values={"LoyaltyPoints": total_points},
        )
        return replace(customer, loyalty_points=total_points)
