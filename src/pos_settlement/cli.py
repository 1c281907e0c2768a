"""Command-line entry points for the point-of-sale settlement engine.

The CLI is an operator's stand-in for the sales and purchase terminals: it
loads the workbook named in ``config.ini``, feeds the requested lines into a
:class:`~pos_settlement.settlement.SettlementOrchestrator`, and prints the
resulting receipt. The workbook is only written back to disk when a command
finishes successfully.
"""

from __future__ import annotations

import argparse
import asyncio
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Callable, Dict, Iterable, Mapping, MutableMapping, Optional, Sequence, Tuple

from openpyxl.workbook import Workbook

from . import data_manager, log
from .cart import DiscountSpec
from .constants import CounterpartyKind, DiscountKind, PaymentMethod
from .errors import InsufficientStockError, MissingReferenceError, PersistenceError, ValidationError
from .numbering import DELIVERY_NOTE_KEY, DayKeyedNumberer
from .pricing import format_currency
from .settlement import PURCHASE_PROFILE, SALES_PROFILE, FlowProfile, SettlementOrchestrator, SettlementResult


@dataclass
class RuntimeContext:
    """Settings plus the live workbook a command operates on."""

    settings: data_manager.ConfigSettings
    workbook: Workbook


@dataclass(frozen=True)
class CommandSpec:
    """Describe how a CLI sub-command is configured and executed."""

    name: str
    help_text: str
    register: Callable[[argparse._SubParsersAction[argparse.ArgumentParser]], argparse.ArgumentParser]
    execute: Callable[[RuntimeContext, argparse.Namespace], int]


def _decimal_arg(raw: str) -> Decimal:
    try:
        value = Decimal(raw)
    except InvalidOperation as exc:
        raise argparse.ArgumentTypeError(f"not a number: {raw!r}") from exc
    if not value.is_finite():
        raise argparse.ArgumentTypeError(f"not a finite number: {raw!r}")
    return value


def _line_arg(raw: str) -> Tuple[str, int]:
    """Parse ``PRODUCT_ID:QTY`` (quantity defaults to 1)."""

    product_id, _, quantity_raw = raw.partition(":")
    if not product_id:
        raise argparse.ArgumentTypeError(f"missing product id in {raw!r}")
    try:
        quantity = int(quantity_raw) if quantity_raw else 1
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"invalid quantity in {raw!r}") from exc
    if quantity <= 0:
        raise argparse.ArgumentTypeError(f"quantity must be positive in {raw!r}")
    return product_id, quantity


def build_parser() -> argparse.ArgumentParser:
    """Construct the top-level CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="pos-cli",
        description="Command-line tools for the point-of-sale workbook.",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Optional path to config.ini (defaults to the nearest config.ini).",
    )
    return parser


def configure_subcommands(
    parser: argparse.ArgumentParser,
) -> Mapping[str, CommandSpec]:
    """Wire all CLI sub-commands onto the supplied parser."""
    subparsers = parser.add_subparsers(dest="command", required=True, title="commands")
    specs = [
        register_stock_command(),
        register_debts_command(),
        register_delivery_note_command(),
        register_settlement_command("sell", "Settle a sale from the sales terminal.", SALES_PROFILE),
        register_settlement_command("purchase", "Settle a purchase order from the purchase terminal.", PURCHASE_PROFILE),
    ]
    for spec in specs:
        spec.register(subparsers)
    return build_command_table(specs)


def register_stock_command() -> CommandSpec:
    """Register the parser and executor for ``stock``."""
    name = "stock"
    help_text = "Display current stock levels."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--include-inactive", action="store_true", help="List inactive products too.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_stock_report)


def register_debts_command() -> CommandSpec:
    """Register the parser and executor for ``debts``."""
    name = "debts"
    help_text = "Display outstanding customer and supplier debts."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument(
            "--type",
            dest="debt_type",
            choices=[member.value for member in CounterpartyKind],
            default=None,
        )
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_debts_report)


def register_delivery_note_command() -> CommandSpec:
    """Register the parser and executor for ``next-delivery-note``."""
    name = "next-delivery-note"
    help_text = "Issue the next delivery note number."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_next_delivery_note)


def register_settlement_command(name: str, help_text: str, profile: FlowProfile) -> CommandSpec:
    """Register ``sell`` or ``purchase``; both share the same options."""

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument(
            "--line",
            dest="lines",
            action="append",
            type=_line_arg,
            required=True,
            metavar="PRODUCT_ID[:QTY]",
            help="Product to settle; repeat for several lines.",
        )
        parser.add_argument(
            "--counterparty",
            default=None,
            help=f"{profile.counterparty_kind.value.capitalize()} id.",
        )
        parser.add_argument(
            "--payment-method",
            choices=[member.value for member in PaymentMethod],
            default=PaymentMethod.CASH.value,
        )
        parser.add_argument("--tendered", type=_decimal_arg, default=None, help="Amount handed over.")
        discount = parser.add_mutually_exclusive_group()
        discount.add_argument("--discount-percent", type=_decimal_arg, default=None)
        discount.add_argument("--discount-amount", type=_decimal_arg, default=None)
        parser.set_defaults(command=name)
        return parser

    def execute(context: RuntimeContext, args: argparse.Namespace) -> int:
        return run_settlement(context, args, profile)

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=execute)


def load_runtime_context(config_path: Optional[Path] = None) -> RuntimeContext:
    """Resolve settings and open the workbook for CLI operations.

    Raises:
        FileNotFoundError: If the configuration file or workbook is missing.
        KeyError: When mandatory configuration options are missing.
        RuntimeError: If the configured schema version is not supported.
    """
    settings = data_manager.load_settings(config_path)
    data_manager.ensure_schema_version(settings)
    workbook = data_manager.open_workbook(settings.data_file)
    log.info("Loaded runtime context for workbook '%s'", settings.data_file)
    return RuntimeContext(settings=settings, workbook=workbook)


def dispatch_command(
    context: RuntimeContext,
    args: argparse.Namespace,
    command_table: Mapping[str, CommandSpec],
) -> int:
    """Dispatch the parsed arguments to the configured executor."""
    if not hasattr(args, "command") or args.command is None:
        raise KeyError("No command specified")
    spec = command_table.get(args.command)
    if spec is None:
        raise KeyError(f"Unknown command: {args.command}")
    return spec.execute(context, args)


def build_command_table(
    specs: Iterable[CommandSpec],
) -> MutableMapping[str, CommandSpec]:
    """Build an index of command specifications keyed by command name."""
    table: Dict[str, CommandSpec] = {}
    for spec in specs:
        if spec.name in table:
            raise ValueError(f"Duplicate command name: {spec.name}")
        table[spec.name] = spec
    return table


def translate_discount(args: argparse.Namespace) -> DiscountSpec:
    """Translate the discount options into a :class:`DiscountSpec`."""
    if args.discount_amount is not None:
        return DiscountSpec(kind=DiscountKind.AMOUNT, value=args.discount_amount)
    if args.discount_percent is not None:
        return DiscountSpec(kind=DiscountKind.PERCENTAGE, value=args.discount_percent)
    return DiscountSpec()


def run_stock_report(context: RuntimeContext, args: argparse.Namespace) -> int:
    """Print one line per product with its stock level."""
    for product in data_manager.iter_products(context.workbook):
        if not product.is_active and not args.include_inactive:
            continue
        print(f"{product.product_id}\t{product.product_name}\t{product.stock_quantity}")
    return 0


def run_debts_report(context: RuntimeContext, args: argparse.Namespace) -> int:
    """Print outstanding debts, optionally filtered by debt type."""
    total = Decimal("0")
    for debt in data_manager.iter_debts(context.workbook):
        if debt.status != "outstanding":
            continue
        if args.debt_type is not None and debt.debt_type != args.debt_type:
            continue
        total += debt.amount
        print(f"{debt.debt_id}\t{debt.counterparty_id}\t{format_currency(debt.amount)}\tdue {debt.due_date}")
    print(f"Total outstanding: {format_currency(total)}")
    return 0


def run_next_delivery_note(context: RuntimeContext, args: argparse.Namespace) -> int:
    """Issue and print the next delivery note number."""
    numberer = DayKeyedNumberer(
        store=data_manager.WorkbookCounterStore(context.workbook),
        prefix=context.settings.delivery_note_prefix,
        key=DELIVERY_NOTE_KEY,
    )
    print(numberer.next_number())
    return 0


async def _settle(orchestrator: SettlementOrchestrator, args: argparse.Namespace) -> SettlementResult:
    await orchestrator.refresh_snapshot()
    products = {product.product_id: product for product in await orchestrator.data_access.fetch_products()}

    if args.counterparty is not None:
        kind = orchestrator.profile.counterparty_kind
        counterparties = await orchestrator.data_access.fetch_counterparties(kind)
        match = next((c for c in counterparties if c.counterparty_id == args.counterparty), None)
        if match is None:
            raise MissingReferenceError(f"Unknown {kind.value}: {args.counterparty}")
        orchestrator.select_counterparty(match)

    for product_id, quantity in args.lines:
        product = products.get(product_id)
        if product is None:
            raise MissingReferenceError(f"Unknown product: {product_id}")
        target = orchestrator.cart.quantity_of(product_id) + quantity
        check = orchestrator.add_product(product)
        if check.allowed:
            check = orchestrator.update_quantity(product_id, target)
        # The CLI cannot ask the operator to accept a capped quantity.
        if not check.allowed:
            raise InsufficientStockError(product_id, product.product_name, check.available or 0, target)

    orchestrator.set_discount(translate_discount(args))
    orchestrator.begin_checkout()
    return await orchestrator.settle(PaymentMethod(args.payment_method), args.tendered)


def print_receipt(result: SettlementResult) -> None:
    """Render the receipt payload as plain text."""
    receipt = result.receipt
    print(f"Document: {receipt.document_number}")
    print(f"Date: {receipt.date}")
    if receipt.counterparty is not None:
        print(f"Counterparty: {receipt.counterparty['name']} ({receipt.counterparty['id']})")
    for line in receipt.lines:
        print(f"  {line.name} x{line.quantity} @ {format_currency(line.unit_price)} = {format_currency(line.line_total)}")
    print(f"Subtotal: {format_currency(receipt.subtotal)}")
    if receipt.discount_amount:
        print(f"Discount: {format_currency(receipt.discount_amount)}")
    print(f"Tax (included, display only): {format_currency(receipt.display_tax)}")
    print(f"Total: {format_currency(receipt.total)}")
    print(f"Paid by {receipt.payment_method}: {format_currency(receipt.amount_tendered)}")
    print(f"Change: {format_currency(receipt.change)}")
    if result.debt is not None:
        print(f"Outstanding debt: {format_currency(result.debt.amount)} due {result.debt.due_date}")
    if result.loyalty_points_awarded:
        print(f"Loyalty points earned: {result.loyalty_points_awarded}")


def run_settlement(context: RuntimeContext, args: argparse.Namespace, profile: FlowProfile) -> int:
    """Drive one settlement through the orchestrator and print the receipt."""
    orchestrator = SettlementOrchestrator.from_settings(
        data_manager.WorkbookDataAccess(context.workbook),
        context.settings,
        profile=profile,
    )
    result = asyncio.run(_settle(orchestrator, args))
    print_receipt(result)
    orchestrator.acknowledge_receipt()
    return 0


def handle_cli_error(error: Exception) -> int:
    """Convert raised exceptions into user-friendly exit codes."""
    if isinstance(error, (ValidationError, MissingReferenceError)):
        log.error("%s", error)
        return 2
    if isinstance(error, FileNotFoundError):
        log.error("%s", error)
        return 3
    if isinstance(error, PersistenceError):
        log.error("%s", error)
        return 4
    log.error("%s", error)
    return 1


def persist_workbook(context: RuntimeContext) -> None:
    """Persist workbook changes after successful execution."""
    try:
        data_manager.save_workbook(context.workbook, destination=context.settings.data_file)
    except PermissionError as error:
        raise PersistenceError("save", error) from error


def main(argv: Sequence[str] | None = None) -> int:
    """CLI entry point that orchestrates parsing and execution."""
    parser = build_parser()
    command_table = configure_subcommands(parser)
    args = parser.parse_args(argv)
    try:
        context = load_runtime_context(getattr(args, "config", None))
        exit_code = dispatch_command(context, args, command_table)
        if exit_code == 0:
            persist_workbook(context)
        return exit_code
    except Exception as error:
        return handle_cli_error(error)
