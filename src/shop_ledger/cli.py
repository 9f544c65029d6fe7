"""Command-line entry points for the Shop Ledger toolkit.

All orchestration in this module is limited to argparse wiring, translating
command-line arguments into the requests consumed by the business layer, and
printing results. Keeping the CLI thin ensures the same parser configuration
can be reused by tests, scripts, or any alternative front-end.
"""

from __future__ import annotations

import argparse
import sys
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import date
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, Iterator, Mapping, MutableMapping, Optional, Sequence

from . import core_logic, log
from .analytics import trailing_window
from .constants import Granularity, OrderState
from .errors import BusinessRuleViolation, InvalidInputError
from .money import format_currency
from .order_lifecycle import OrderCommand
from .sales import SaleLineCommand

DEFAULT_ANALYTICS_DAYS = 30


@dataclass(frozen=True)
class CommandSpec:
    """Describe how a CLI sub-command is configured and executed."""

    name: str
    help_text: str
    register: Callable[[argparse._SubParsersAction[argparse.ArgumentParser]], argparse.ArgumentParser]
    execute: Callable[[core_logic.RuntimeContext, argparse.Namespace], int]
    mutates: bool = True


def parse_money(text: str) -> Decimal:
    """argparse type for monetary amounts."""
    try:
        return Decimal(text)
    except InvalidOperation as error:
        raise argparse.ArgumentTypeError(f"Invalid amount: {text!r}") from error


def parse_date(text: str) -> date:
    try:
        return date.fromisoformat(text)
    except ValueError as error:
        raise argparse.ArgumentTypeError(f"Invalid date (expected YYYY-MM-DD): {text!r}") from error


def parse_sale_line(text: str) -> SaleLineCommand:
    """Parse ``PRODUCT_ID:QTY[:PRICE]`` into a sale line request."""
    parts = text.split(":")
    if len(parts) not in (2, 3) or not parts[0]:
        raise argparse.ArgumentTypeError(f"Expected PRODUCT_ID:QTY[:PRICE], got {text!r}")
    try:
        quantity = int(parts[1])
    except ValueError as error:
        raise argparse.ArgumentTypeError(f"Quantity must be a whole number: {parts[1]!r}") from error
    price = parse_money(parts[2]) if len(parts) == 3 else None
    return SaleLineCommand(product_id=parts[0], quantity=quantity, unit_price=price)


def build_parser() -> argparse.ArgumentParser:
    """Construct the top-level CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="shop-cli",
        description="Command-line tools for the Shop Ledger workbook.",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Optional path to config.ini (searched upward from the current directory by default).",
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
    """Declare mutating CLI commands such as sales and restocks."""
    specs = {
        "add-product": register_add_product_command(),
        "restock": register_restock_command(),
        "add-order": register_add_order_command(),
        "update-order": register_update_order_command(),
        "delete-order": register_delete_order_command(),
        "purchase": register_purchase_command(),
        "sale": register_sale_command(),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_read_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare read-only CLI commands such as reports."""
    specs = {
        "stock": register_stock_command(),
        "orders": register_orders_command(),
        "purchases": register_purchases_command(),
        "sales": register_sales_command(),
        "analytics": register_analytics_command(),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def _add_price_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--purchase-price", type=parse_money, default=None)
    parser.add_argument("--selling-price", type=parse_money, default=None)


def register_add_product_command() -> CommandSpec:
    """Register the parser and executor for ``add-product``."""
    name = "add-product"
    help_text = "Register a new product in the Products sheet."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--product-name", required=True)
        parser.add_argument("--product-id", default=None, help="Explicit id; generated when omitted.")
        parser.add_argument("--category", default="")
        _add_price_arguments(parser)
        parser.add_argument("--stock", type=int, default=0, help="Opening stock quantity.")
        parser.add_argument("--unit", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_add_product)


def register_restock_command() -> CommandSpec:
    """Register the parser and executor for ``restock``."""
    name = "restock"
    help_text = "Add stock to a product, optionally refreshing its prices."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--product-id", required=True)
        parser.add_argument("--quantity", type=int, required=True)
        parser.add_argument("--unit-cost", type=parse_money, default=None)
        parser.add_argument("--unit-price", type=parse_money, default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_restock)


def register_add_order_command() -> CommandSpec:
    """Register the parser and executor for ``add-order``."""
    name = "add-order"
    help_text = "Add an item to the shopping list."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--item-name", required=True)
        parser.add_argument("--quantity", type=int, required=True)
        parser.add_argument("--category", default="")
        parser.add_argument("--notes", default=None)
        _add_price_arguments(parser)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_add_order)


def register_update_order_command() -> CommandSpec:
    """Register the parser and executor for ``update-order``."""
    name = "update-order"
    help_text = "Edit a pending shopping-list order."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--order-id", required=True)
        parser.add_argument("--item-name", default=None)
        parser.add_argument("--quantity", type=int, default=None)
        parser.add_argument("--category", default=None)
        parser.add_argument("--notes", default=None)
        _add_price_arguments(parser)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_update_order)


def register_delete_order_command() -> CommandSpec:
    """Register the parser and executor for ``delete-order``."""
    name = "delete-order"
    help_text = "Remove a pending order from the shopping list."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--order-id", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_delete_order)


def register_purchase_command() -> CommandSpec:
    """Register the parser and executor for ``purchase``."""
    name = "purchase"
    help_text = "Mark a pending order as purchased and restock its product."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--order-id", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_purchase)


def register_sale_command() -> CommandSpec:
    """Register the parser and executor for ``sale``."""
    name = "sale"
    help_text = "Record a multi-line sale."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument(
            "--line",
            dest="lines",
            action="append",
            type=parse_sale_line,
            required=True,
            metavar="PRODUCT_ID:QTY[:PRICE]",
            help="Sale line; repeat for several products. PRICE defaults to the selling price.",
        )
        parser.add_argument("--date", dest="sale_date", type=parse_date, default=None, help="Sale day (YYYY-MM-DD).")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_sale)


def register_stock_command() -> CommandSpec:
    """Register the parser and executor for ``stock``."""
    name = "stock"
    help_text = "Show current stock levels."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--low", action="store_true", help="Only list products below the low-stock threshold.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_stock_report, mutates=False)


def register_orders_command() -> CommandSpec:
    """Register the parser and executor for ``orders``."""
    name = "orders"
    help_text = "List shopping-list orders."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--state", choices=[member.value for member in OrderState], default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_orders_report, mutates=False)


def register_purchases_command() -> CommandSpec:
    """Register the parser and executor for ``purchases``."""
    name = "purchases"
    help_text = "Show purchase history with cost and expected profit."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--start", type=parse_date, default=None)
        parser.add_argument("--end", type=parse_date, default=None)
        parser.add_argument("--category", default=None)
        parser.add_argument("--search", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_purchases_report, mutates=False)


def register_sales_command() -> CommandSpec:
    """Register the parser and executor for ``sales``."""
    name = "sales"
    help_text = "List committed sales."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--start", type=parse_date, default=None)
        parser.add_argument("--end", type=parse_date, default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_sales_report, mutates=False)


def register_analytics_command() -> CommandSpec:
    """Register the parser and executor for ``analytics``."""
    name = "analytics"
    help_text = "Show revenue, profit, top products and category performance."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--start", type=parse_date, default=None)
        parser.add_argument("--end", type=parse_date, default=None)
        parser.add_argument(
            "--days",
            type=int,
            default=None,
            help="Trailing window ending today (default 30; not combined with --start/--end).",
        )
        parser.add_argument(
            "--granularity",
            choices=[member.value for member in Granularity],
            default=Granularity.DAILY.value,
        )
        parser.add_argument("--limit", type=int, default=None, help="Number of top products to show.")
        parser.add_argument("--zero-fill", action="store_true", help="Include buckets without sales.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_analytics_report, mutates=False)


@contextmanager
def runtime_session(config_path: Optional[Path] = None) -> Iterator[core_logic.RuntimeContext]:
    """Lock the workbook, load it, and check its schema for one command."""
    with core_logic.exclusive_session(config_path) as context:
        core_logic.ensure_schema_version(context)
        yield context


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


def translate_add_product(args: argparse.Namespace) -> Mapping[str, Any]:
    """Translate CLI args into an add-product request."""
    payload: Dict[str, Any] = {
        "product_name": args.product_name,
        "product_id": args.product_id,
        "category": args.category,
        "purchase_price": args.purchase_price if args.purchase_price is not None else Decimal("0"),
        "selling_price": args.selling_price if args.selling_price is not None else Decimal("0"),
        "stock_quantity": args.stock,
    }
    if args.unit:
        payload["unit"] = args.unit
    return payload


def translate_order(args: argparse.Namespace) -> OrderCommand:
    """Translate CLI args into a shopping-list order command."""
    return OrderCommand(
        item_name=args.item_name,
        quantity=args.quantity,
        category=args.category,
        notes=args.notes,
        purchase_price=args.purchase_price,
        selling_price=args.selling_price,
    )


def translate_order_update(args: argparse.Namespace) -> Mapping[str, Any]:
    """Collect only the order fields given on the command line."""
    candidates = {
        "item_name": args.item_name,
        "quantity": args.quantity,
        "category": args.category,
        "notes": args.notes,
        "purchase_price": args.purchase_price,
        "selling_price": args.selling_price,
    }
    return {key: value for key, value in candidates.items() if value is not None}


def translate_analytics_window(args: argparse.Namespace, *, today: Optional[date] = None) -> tuple[date, date]:
    """Resolve the analytics window from ``--start/--end`` or ``--days``."""
    explicit = args.start is not None or args.end is not None
    if explicit and args.days is not None:
        raise InvalidInputError("Use either --days or --start/--end, not both")
    if explicit:
        end = args.end or today or date.today()
        start = args.start or end
        return start, end
    return trailing_window(DEFAULT_ANALYTICS_DAYS if args.days is None else args.days, today)


def report_failure(result: core_logic.OperationResult) -> int:
    """Print a rejected operation's reason and return the business exit code."""
    print(f"Error [{result.error.value}]: {result.message}", file=sys.stderr)
    return 2


def run_add_product(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the add-product workflow in the BLL."""
    result = core_logic.add_product(context, **translate_add_product(args))
    if not result.is_success:
        return report_failure(result)
    print(f"Added product {result.value.product_id} ({result.value.product_name})")
    return 0


def run_restock(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the restock workflow via the BLL."""
    result = core_logic.restock_product(context, args.product_id, args.quantity, args.unit_cost, args.unit_price)
    if not result.is_success:
        return report_failure(result)
    print(f"{result.value.product_name}: {result.value.stock_quantity} in stock")
    return 0


def run_add_order(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    result = core_logic.create_order(context, translate_order(args))
    if not result.is_success:
        return report_failure(result)
    print(f"Created order {result.value.order_id}")
    return 0


def run_update_order(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    result = core_logic.update_order(context, args.order_id, **translate_order_update(args))
    if not result.is_success:
        return report_failure(result)
    print(f"Updated order {result.value.order_id}")
    return 0


def run_delete_order(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    result = core_logic.delete_order(context, args.order_id)
    if not result.is_success:
        return report_failure(result)
    print(f"Deleted order {result.value.order_id}")
    return 0


def run_purchase(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the purchase transition via the BLL."""
    result = core_logic.mark_order_purchased(context, args.order_id)
    if not result.is_success:
        return report_failure(result)
    print(f"Order {result.value.order_id} purchased")
    return 0


def run_sale(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the sale workflow via the BLL."""
    result = core_logic.submit_sale(context, args.sale_date, args.lines)
    if not result.is_success:
        return report_failure(result)
    label = context.settings.currency_label
    print(f"Sale {result.value.sale_id}: {format_currency(result.value.total_amount, label)}")
    return 0


def run_stock_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print stock levels with their status band."""
    products = context.ledger.low_stock() if args.low else core_logic.list_products(context)
    label = context.settings.currency_label
    for product in products:
        status = context.ledger.stock_status(product)
        print(
            f"{product.product_id}\t{product.product_name}\t{product.category}\t"
            f"{product.stock_quantity} {product.unit}\t{status.value}\t"
            f"{format_currency(product.selling_price, label)}"
        )
    return 0


def run_orders_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    state = OrderState(args.state) if args.state else None
    for order in core_logic.list_orders(context, state):
        print(f"{order.order_id}\t{order.state}\t{order.quantity} x {order.item_name}\t{order.category}")
    return 0


def run_purchases_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print purchased orders followed by their totals."""
    orders, summary = core_logic.purchase_history(
        context,
        args.start,
        args.end,
        category=args.category,
        search=args.search,
    )
    label = context.settings.currency_label
    for order in orders:
        print(f"{order.purchased_at_iso}\t{order.quantity} x {order.item_name}\t{order.category}")
    print(f"Orders: {summary.order_count}  Items: {summary.total_quantity}")
    print(f"Total cost: {format_currency(summary.total_cost, label)}")
    print(f"Expected profit: {format_currency(summary.expected_profit, label)}")
    return 0


def run_sales_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    label = context.settings.currency_label
    for record in core_logic.list_sales(context, args.start, args.end):
        print(f"{record.sale.sale_date_iso}\t{record.sale.sale_id}\t{format_currency(record.sale.total_amount, label)}")
        for item in record.lines:
            line = item.line
            print(f"    {line.quantity} x {line.product_name} @ {format_currency(line.unit_price, label)}")
    return 0


def run_analytics_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print the analytics report for the requested window."""
    try:
        start, end = translate_analytics_window(args)
    except BusinessRuleViolation as violation:
        return report_failure(core_logic.OperationResult.failure(violation))
    result = core_logic.get_analytics(
        context,
        start,
        end,
        Granularity(args.granularity),
        limit=args.limit,
        zero_fill=args.zero_fill,
    )
    if not result.is_success:
        return report_failure(result)
    report = result.value
    label = context.settings.currency_label
    print(f"{context.settings.shop_name}: {start} .. {end}")
    print(f"Revenue: {format_currency(report.total_revenue, label)}")
    print(f"Profit: {format_currency(report.total_profit, label)}")
    print(f"Sales: {report.transaction_count}  Average order: {format_currency(report.average_order_value, label)}")
    print("Periods:")
    for bucket in report.rollup:
        print(f"  {bucket.period_start}\t{format_currency(bucket.sales, label)}\t{format_currency(bucket.profit, label)}")
    print("Top products:")
    for rank, product in enumerate(report.top_products, start=1):
        print(f"  {rank}. {product.product_name}\t{product.quantity}\t{format_currency(product.revenue, label)}")
    print("Categories:")
    for category in report.category_performance:
        print(
            f"  {category.category}\t{format_currency(category.revenue, label)}\t"
            f"{format_currency(category.profit, label)}\t{category.revenue_share}%"
        )
    return 0


def handle_cli_error(error: Exception) -> int:
    """Convert raised exceptions into user-friendly exit codes."""
    if isinstance(error, BusinessRuleViolation):
        log.error("%s", error)
        return 2
    if isinstance(error, FileNotFoundError):
        log.error("%s", error)
        return 3
    log.error("%s", error)
    return 1


def persist_workbook(context: core_logic.RuntimeContext) -> None:
    """Persist workbook changes after successful execution."""
    try:
        core_logic.persist_context(context)
    except PermissionError as error:
        raise RuntimeError(str(error)) from error


def main(argv: Sequence[str] | None = None) -> int:
    """CLI entry point that orchestrates parsing and execution."""
    parser = build_parser()
    command_table = configure_subcommands(parser)
    args = parser.parse_args(argv)
    try:
        with runtime_session(getattr(args, "config", None)) as context:
            exit_code = dispatch_command(context, args, command_table)
            if exit_code == 0 and command_table[args.command].mutates:
                persist_workbook(context)
            return exit_code
    except Exception as error:  # pragma: no cover - centralised error handler tested separately
        return handle_cli_error(error)


if __name__ == "__main__":
    raise SystemExit(main())
