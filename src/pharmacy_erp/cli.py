"""Command-line entry points for the pharmacy ERP toolkit.

All orchestration in this module is limited to argparse wiring, translating
command-line arguments into business-layer calls, and printing results. The
acting account comes from ``--account-id``, the ``PHARMACY_ACCOUNT_ID``
environment variable, or the ``[Session]`` section of ``config.ini``, in that
order.
"""

from __future__ import annotations

import argparse
from dataclasses import dataclass
from datetime import date
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Mapping, MutableMapping, Optional, Sequence, Tuple

from . import core_logic, data_manager, log, reporting
from .constants import PaymentMethod


@dataclass(frozen=True)
class CommandSpec:
    """Describe how a CLI sub-command is configured and executed.

    ``mutates`` marks commands whose success must be persisted to disk.
    """

    name: str
    help_text: str
    register: Callable[[argparse._SubParsersAction[argparse.ArgumentParser]], argparse.ArgumentParser]
    execute: Callable[[core_logic.RuntimeContext, argparse.Namespace], int]
    mutates: bool = False


def build_parser() -> argparse.ArgumentParser:
    """Construct the top-level CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="pharmacy-cli",
        description="Command-line tools for the pharmacy ERP workbook.",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Optional path to config.ini (searched upward from the working directory by default).",
    )
    parser.add_argument(
        "--account-id",
        default=None,
        help="Acting account; overrides the environment and config.ini.",
    )
    return parser


def configure_subcommands(
    parser: argparse.ArgumentParser,
) -> Mapping[str, CommandSpec]:
    """Wire all CLI sub-commands onto the supplied parser."""
    subparsers = parser.add_subparsers(dest="command", required=True, title="commands")
    write_specs = register_write_commands(subparsers)
    read_specs = register_read_commands(subparsers)
    return build_command_table([*write_specs.values(), *read_specs.values()])


def register_write_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare mutating CLI commands such as sales and catalog entries."""
    specs = {
        "add-medicine": register_add_medicine_command(subparsers),
        "add-customer": register_add_customer_command(subparsers),
        "restock": register_restock_command(subparsers),
        "sale": register_sale_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_read_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare read-only CLI commands such as reports."""
    specs = {
        "stock": register_stock_command(subparsers),
        "sales": register_sales_command(subparsers),
        "report": register_report_command(subparsers),
        "dashboard": register_dashboard_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_add_medicine_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``add-medicine``."""
    name = "add-medicine"
    help_text = "Register a new medicine in the Medicines sheet."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--medicine-id", default=None)
        parser.add_argument("--name", required=True)
        parser.add_argument("--unit-price", required=True)
        parser.add_argument("--quantity", type=int, default=0)
        parser.add_argument("--reorder-level", type=int, default=10)
        parser.add_argument("--generic-name", default=None)
        parser.add_argument("--manufacturer", default=None)
        parser.add_argument("--expiry-date", type=date.fromisoformat, default=None, help="YYYY-MM-DD")
        parser.add_argument("--batch-number", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_add_medicine, mutates=True)


def register_add_customer_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``add-customer``."""
    name = "add-customer"
    help_text = "Register a new customer in the Customers sheet."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--customer-id", default=None)
        parser.add_argument("--name", required=True)
        parser.add_argument("--phone", default=None)
        parser.add_argument("--email", default=None)
        parser.add_argument("--address", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_add_customer, mutates=True)


def register_restock_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``restock``."""
    name = "restock"
    help_text = "Add received units to a medicine's stock."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--medicine-id", required=True)
        parser.add_argument("--quantity", type=int, required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_restock, mutates=True)


def register_sale_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``sale``."""
    name = "sale"
    help_text = "Build a cart and commit it as one sale."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument(
            "--item",
            dest="items",
            action="append",
            required=True,
            metavar="MEDICINE_ID:QTY",
            help="Cart line; repeat for several medicines.",
        )
        parser.add_argument(
            "--payment-method",
            choices=[member.value for member in PaymentMethod],
            default=PaymentMethod.CASH.value,
        )
        parser.add_argument("--customer-id", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_sale, mutates=True)


def register_stock_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``stock``."""
    name = "stock"
    help_text = "Display current stock levels."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_stock_report)


def register_sales_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``sales``."""
    name = "sales"
    help_text = "Display committed sales."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_sales_report)


def register_report_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``report``."""
    name = "report"
    help_text = "Display daily sales, top medicines, and stock distribution."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--from", dest="start", type=date.fromisoformat, default=None, help="YYYY-MM-DD")
        parser.add_argument("--to", dest="end", type=date.fromisoformat, default=None, help="YYYY-MM-DD")
        parser.add_argument("--include-expiring", action="store_true")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_report)


def register_dashboard_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``dashboard``."""
    name = "dashboard"
    help_text = "Display headline counters."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_dashboard)


def load_runtime_context(config_path: Optional[Path] = None) -> core_logic.RuntimeContext:
    """Resolve the runtime context, searching upward for config.ini by default."""
    return core_logic.load_runtime_context(Path(config_path) if config_path is not None else None)


def dispatch_command(
    context: core_logic.RuntimeContext,
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


def resolve_cli_account(context: core_logic.RuntimeContext, args: argparse.Namespace) -> Optional[str]:
    """Return the acting account for this invocation, or ``None``."""
    explicit = getattr(args, "account_id", None)
    if explicit:
        return explicit
    return data_manager.resolve_account_id(context.settings)


def parse_cart_item(raw: str) -> Tuple[str, int]:
    """Split a ``MEDICINE_ID:QTY`` argument.

    Raises:
        InvalidQuantityError: If the quantity part is not a whole number or
            the separator is missing.
    """
    medicine_id, separator, quantity = raw.rpartition(":")
    if not separator or not medicine_id:
        raise core_logic.InvalidQuantityError(f"Cart item must look like MEDICINE_ID:QTY, got {raw!r}")
    try:
        return medicine_id, int(quantity)
    except ValueError as exc:
        raise core_logic.InvalidQuantityError(f"Quantity must be a whole number, got {quantity!r}") from exc


def translate_add_medicine(args: argparse.Namespace) -> Mapping[str, Any]:
    """Translate CLI args into an add-medicine request."""
    try:
        unit_price = Decimal(args.unit_price)
    except InvalidOperation as exc:
        raise core_logic.BusinessRuleViolation(f"Invalid unit price: {args.unit_price}") from exc
    if not unit_price.is_finite() or unit_price < 0:
        raise core_logic.BusinessRuleViolation(f"Invalid unit price: {args.unit_price}")
    return {
        "medicine_id": args.medicine_id,
        "name": args.name,
        "unit_price": unit_price,
        "quantity_in_stock": args.quantity,
        "reorder_level": args.reorder_level,
        "generic_name": args.generic_name,
        "manufacturer": args.manufacturer,
        "expiry_date": args.expiry_date,
        "batch_number": args.batch_number,
    }


def translate_add_customer(args: argparse.Namespace) -> Mapping[str, Any]:
    """Translate CLI args into an add-customer request."""
    return {
        "customer_id": args.customer_id,
        "name": args.name,
        "phone": args.phone,
        "email": args.email,
        "address": args.address,
    }


def translate_sale(args: argparse.Namespace) -> List[Tuple[str, int]]:
    """Translate the repeated ``--item`` arguments into cart lines."""
    return [parse_cart_item(raw) for raw in args.items]


def run_add_medicine(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the add-medicine workflow in the BLL."""
    payload = translate_add_medicine(args)
    medicine = core_logic.add_medicine(context, resolve_cli_account(context, args), **payload)
    print(f"Added medicine {medicine.medicine_id} ({medicine.name})")
    return 0


def run_add_customer(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the add-customer workflow in the BLL."""
    payload = translate_add_customer(args)
    customer = core_logic.add_customer(context, resolve_cli_account(context, args), **payload)
    print(f"Added customer {customer.customer_id} ({customer.name})")
    return 0


def run_restock(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    medicine = core_logic.restock_medicine(
        context, resolve_cli_account(context, args), args.medicine_id, args.quantity
    )
    print(f"Restocked {medicine.medicine_id}: {medicine.quantity_in_stock} in stock")
    return 0


def run_sale(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Build a cart from ``--item`` lines and commit it."""
    account_id = resolve_cli_account(context, args)
    cart = core_logic.Cart(context, account_id)
    for medicine_id, quantity in translate_sale(args):
        cart.add(medicine_id, quantity)
    committed = core_logic.commit_sale(
        context,
        cart,
        args.payment_method,
        account_id=account_id,
        customer_id=args.customer_id,
    )
    print(f"Committed {committed.invoice_number}: total {reporting.format_money(committed.total_amount)}")
    return 0


def run_stock_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the stock reporting workflow."""
    for medicine in core_logic.list_medicines(context, resolve_cli_account(context, args)):
        status = reporting.classify_stock(medicine)
        print(
            f"{medicine.medicine_id}\t{medicine.name}\t{medicine.quantity_in_stock}\t"
            f"{reporting.format_money(medicine.unit_price)}\t{status.value}"
        )
    return 0


def run_sales_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """List committed sales for the acting account."""
    for sale in core_logic.list_sales(context, resolve_cli_account(context, args)):
        print(
            f"{sale.invoice_number}\t{sale.sale_date.isoformat()}\t"
            f"{reporting.format_money(sale.total_amount)}\t{sale.payment_method}"
        )
    return 0


def run_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the sales report workflow."""
    window = None
    if args.start is not None or args.end is not None:
        try:
            window = reporting.ReportWindow(start=args.start, end=args.end)
        except ValueError as exc:
            raise core_logic.BusinessRuleViolation(str(exc)) from exc
    report = reporting.build_report(
        context,
        resolve_cli_account(context, args),
        window=window,
        include_expiring=args.include_expiring,
    )
    print(f"Total revenue: {reporting.format_money(report.total_revenue)}")
    print(f"Transactions: {report.total_transactions}")
    print("Daily sales:")
    for day in report.daily_sales:
        print(f"  {day.date.isoformat()}\t{reporting.format_money(day.amount)}")
    print("Top medicines:")
    for entry in report.top_medicines:
        print(f"  {entry.name}\t{entry.quantity}")
    print("Inventory status:")
    for bucket in report.inventory_status:
        print(f"  {bucket.status.value}\t{bucket.count}")
    if report.expiring_soon is not None:
        print("Expiring soon:")
        for medicine in report.expiring_soon:
            print(f"  {medicine.name}\t{medicine.expiry_date.isoformat()}\t{medicine.days_left} day(s)")
    return 0


def run_dashboard(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print the dashboard counters."""
    summary = reporting.summarize_dashboard(context, resolve_cli_account(context, args))
    print(f"Medicines: {summary.total_medicines}")
    print(f"Low stock: {summary.low_stock_items}")
    print(f"Customers: {summary.total_customers}")
    print(f"Sales: {summary.total_sales}")
    print(f"Revenue: {reporting.format_money(summary.total_revenue)}")
    print(f"Expiring soon: {summary.expiring_items}")
    return 0


def handle_cli_error(error: Exception) -> int:
    """Convert raised exceptions into user-friendly exit codes."""
    if isinstance(error, core_logic.BusinessRuleViolation):
        log.error("%s", error)
        return 2
    if isinstance(error, FileNotFoundError):
        log.error("%s", error)
        return 3
    if isinstance(error, data_manager.PersistenceError):
        log.error("%s", error)
        return 4
    log.error("%s", error)
    return 1


def persist_workbook(context: core_logic.RuntimeContext) -> None:
    """Persist workbook changes after successful execution."""
    try:
        core_logic.persist_context(context)
    except PermissionError as error:
        raise data_manager.PersistenceError(str(error)) from error


def main(argv: Sequence[str] | None = None) -> int:
    """CLI entry point that orchestrates parsing and execution."""
    parser = build_parser()
    command_table = configure_subcommands(parser)
    args = parser.parse_args(argv)
    try:
        context = load_runtime_context(getattr(args, "config", None))
        core_logic.ensure_schema_version(context)
        exit_code = dispatch_command(context, args, command_table)
        if exit_code == 0 and command_table[args.command].mutates:
            persist_workbook(context)
        return exit_code
    except Exception as error:  # pragma: no cover - centralised error handler tested separately
        return handle_cli_error(error)
