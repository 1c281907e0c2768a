"""Utility for initializing the point-of-sale master workbook.

The module doubles as a script (``python -m pos_settlement.setup_excel``) and
as a library used by tests and the CLI. Shared helpers keep the workbook
bootstrap logic consistent regardless of the execution path.
"""

from __future__ import annotations

import argparse
from pathlib import Path
from typing import Iterable, Mapping, Sequence
import sys

import openpyxl
from openpyxl.styles import Font

from . import data_manager, log

# Column order must match the serializers in ``data_manager``.
SHEET_COLUMNS: Mapping[str, Sequence[str]] = {
    "Products": [
        "ProductID",
        "ProductName",
        "SellingPrice",
        "CostPrice",
        "StockQuantity",
        "IsActive",
    ],
    "Customers": [
        "CustomerID",
        "Name",
        "CreditLimit",
        "LoyaltyPoints",
        "OutstandingDebtRef",
    ],
    "Suppliers": [
        "SupplierID",
        "Name",
        "CreditLimit",
        "LoyaltyPoints",
        "OutstandingDebtRef",
    ],
    "Sales": [
        "TransactionID",
        "DocumentNumber",
        "Date",
        "CounterpartyID",
        "Subtotal",
        "DiscountAmount",
        "TaxAmount",
        "TotalAmount",
        "AmountPaid",
        "ChangeAmount",
        "PaymentMethod",
        "PaymentStatus",
        "Status",
        "Notes",
    ],
    "SaleItems": [
        "LineItemID",
        "TransactionID",
        "ProductID",
        "Quantity",
        "UnitPrice",
        "TaxAmount",
        "LineTotal",
    ],
    "PurchaseOrders": [
        "TransactionID",
        "DocumentNumber",
        "Date",
        "CounterpartyID",
        "Subtotal",
        "DiscountAmount",
        "TaxAmount",
        "TotalAmount",
        "AmountPaid",
        "ChangeAmount",
        "PaymentMethod",
        "PaymentStatus",
        "Status",
        "Notes",
    ],
    "PurchaseOrderItems": [
        "LineItemID",
        "TransactionID",
        "ProductID",
        "Quantity",
        "UnitPrice",
        "TaxAmount",
        "LineTotal",
    ],
    "Debts": [
        "DebtID",
        "CounterpartyID",
        "DebtType",
        "Amount",
        "Description",
        "Status",
        "DueDate",
        "TransactionID",
    ],
    "Counters": [
        "Key",
        "Value",
    ],
}

CONFIG_FILE = "config.ini"


def create_master_workbook(
    destination: Path,
    *,
    products: Iterable[data_manager.ProductRow] = (),
    counterparties: Iterable[data_manager.CounterpartyRow] = (),
    sheet_columns: Mapping[str, Sequence[str]] = SHEET_COLUMNS,
    overwrite: bool = False,
) -> Path:
    """Create the master workbook at ``destination``.

    Optional ``products`` and ``counterparties`` are appended as seed rows.
    When ``overwrite`` is ``False`` (the default) this function raises
    ``FileExistsError`` if the target already exists.
    """

    destination = destination.expanduser().resolve()
    if destination.exists() and not overwrite:
        raise FileExistsError(
            f"Refusing to overwrite existing master workbook: {destination}"
        )

    destination.parent.mkdir(parents=True, exist_ok=True)

    workbook = openpyxl.Workbook()

    # Remove the default sheet openpyxl generates so we can create ours.
    if workbook.active and workbook.active.title == "Sheet":
        workbook.remove(workbook.active)

    bold_font = Font(bold=True)

    for sheet_name, columns in sheet_columns.items():
        worksheet = workbook.create_sheet(title=sheet_name)
        for column_index, column_name in enumerate(columns, start=1):
            cell = worksheet.cell(row=1, column=column_index)
            cell.value = column_name
            cell.font = bold_font

    for product in products:
        data_manager.append_product(workbook, product)
    for counterparty in counterparties:
        data_manager.append_counterparty(workbook, counterparty)

    workbook.save(destination)
    log.info("Created master workbook '%s'", destination)
    return destination


def run_from_config(config_path: Path, *, overwrite: bool = False) -> Path:
    """Create the workbook named by ``DataFile`` in ``config_path``."""

    resolved = config_path.expanduser().resolve()
    parser = data_manager.read_config(resolved)
    settings = data_manager.parse_settings(parser, base_path=resolved.parent)
    return create_master_workbook(settings.data_file, overwrite=overwrite)


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    """Parse CLI arguments for the setup script."""

    parser = argparse.ArgumentParser(description="Initialize the point-of-sale data file")
    parser.add_argument(
        "--config",
        default=CONFIG_FILE,
        help="Path to configuration file (default: config.ini)",
    )
    parser.add_argument(
        "--force",
        action="store_true",
        help="Overwrite the target workbook if it already exists.",
    )
    return parser.parse_args(argv)


def main(argv: Sequence[str] | None = None) -> int:
    """Entry point for the setup script."""

    args = parse_args(argv)
    config_path = Path(args.config).expanduser().resolve()

    print("--- POS Settlement Setup ---")
    print(f"Using configuration: {config_path}")

    try:
        output_path = run_from_config(config_path, overwrite=args.force)
    except FileNotFoundError as exc:
        print(f"\n[ERROR] {exc}")
        return 1
    except KeyError as exc:
        print(f"\n[ERROR] {exc}")
        return 1
    except FileExistsError as exc:
        print(f"\n[ERROR] {exc}")
        print("Run with --force to overwrite the existing file if appropriate.")
        return 1
    except (PermissionError, OSError) as exc:
        print(f"\n[ERROR] Unable to write workbook: {exc}")
        return 1

    print(f"\n[SUCCESS] Created master workbook at '{output_path}'.")
    return 0


if __name__ == "__main__":  # pragma: no cover - exercised via manual runs
    sys.exit(main())
