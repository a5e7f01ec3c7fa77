"""Command-line entry points for the POS ledger.

This module only wires argparse and turns command-line arguments into calls
on the business layer. Each sub-command is described by a
:class:`CommandSpec` so that tests and other front-ends can reuse the same
parser configuration.
"""

from __future__ import annotations

import argparse
from dataclasses import dataclass
from decimal import Decimal
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Mapping, MutableMapping, Optional, Sequence, Tuple

from . import backup, cart, core_logic, data_manager, log, reporting, setup_excel
from .constants import (
    DEFAULT_TOP_PRODUCTS_LIMIT,
    RECENT_ACTIVITY_LIMIT,
    Category,
    PaymentMethod,
    Period,
    StockFilter,
)


@dataclass(frozen=True)
class CommandSpec:
    """Describe how a CLI sub-command is configured and executed.

    ``mutates`` marks commands whose workbook changes are persisted after a
    successful run. Commands with ``needs_context`` unset run without a
    loaded workbook and receive ``None`` as context.
    """

    name: str
    help_text: str
    register: Callable[[argparse._SubParsersAction[argparse.ArgumentParser]], argparse.ArgumentParser]
    execute: Callable[[Optional[core_logic.RuntimeContext], argparse.Namespace], int]
    mutates: bool = False
    needs_context: bool = True


CATEGORY_FILTER_CHOICES: Tuple[str, ...] = (
    *(member.value for member in StockFilter),
    *(member.value for member in Category),
)


def build_parser() -> argparse.ArgumentParser:
    """Construct the top-level CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="pos-cli",
        description="Command-line tools for the POS ledger workbook.",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Optional path to config.ini (searched upward from the working directory by default).",
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
    """Declare commands that change the workbook."""
    specs = {
        "init": register_init_command(subparsers),
        "add-product": register_add_product_command(subparsers),
        "update-product": register_update_product_command(subparsers),
        "delete-product": register_delete_product_command(subparsers),
        "sale": register_sale_command(subparsers),
        "import": register_import_command(subparsers),
        "clear": register_clear_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_read_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare read-only commands such as listings, statistics, and exports."""
    specs = {
        "products": register_products_command(subparsers),
        "lookup": register_lookup_command(subparsers),
        "orders": register_orders_command(subparsers),
        "stats": register_stats_command(subparsers),
        "top-products": register_top_products_command(subparsers),
        "low-stock": register_low_stock_command(subparsers),
        "activity": register_activity_command(subparsers),
        "report": register_report_command(subparsers),
        "export": register_export_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def _add_product_field_arguments(parser: argparse.ArgumentParser, *, required: bool) -> None:
    parser.add_argument("--name", required=required)
    parser.add_argument("--category", choices=[member.value for member in Category], required=required)
    parser.add_argument("--price", required=required)
    parser.add_argument("--stock", required=required)
    parser.add_argument("--cost", default=None)
    parser.add_argument("--sku", default=None, help="Leave empty to generate one.")
    parser.add_argument("--size", default=None)
    parser.add_argument("--image", default=None)
    parser.add_argument("--barcode", default=None)


def register_init_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``init``."""
    name = "init"
    help_text = "Create an empty ledger workbook at the configured DataFile."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--force", action="store_true", help="Overwrite an existing workbook.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_init, needs_context=False)


def register_add_product_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``add-product``."""
    name = "add-product"
    help_text = "Add a product to the catalog."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        _add_product_field_arguments(parser, required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_add_product, mutates=True)


def register_update_product_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``update-product``."""
    name = "update-product"
    help_text = "Change selected fields of an existing product."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--product-id", required=True)
        _add_product_field_arguments(parser, required=False)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_update_product, mutates=True)


def register_delete_product_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``delete-product``."""
    name = "delete-product"
    help_text = "Remove a product from the catalog."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--product-id", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_delete_product, mutates=True)


def register_sale_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``sale``."""
    name = "sale"
    help_text = "Check out a cart of products as a completed order."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument(
            "--item",
            dest="items",
            action="append",
            type=parse_item_argument,
            default=[],
            metavar="PRODUCT_ID:QTY",
            help="Product and quantity to sell; repeat for more lines.",
        )
        parser.add_argument(
            "--barcode",
            dest="barcodes",
            action="append",
            default=[],
            help="Scan one unit by barcode; repeat to scan more.",
        )
        parser.add_argument(
            "--payment-method",
            choices=[member.value for member in PaymentMethod],
            default=PaymentMethod.CASH.value,
        )
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_sale, mutates=True)


def register_import_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``import``."""
    name = "import"
    help_text = "Replace all data with the contents of a JSON backup."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--input", type=Path, required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_import, mutates=True)


def register_clear_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``clear``."""
    name = "clear"
    help_text = "Erase every product, order, and transaction."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--confirm", required=True, help='Must be exactly "DELETE ALL".')
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_clear, mutates=True)


def register_products_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``products``."""
    name = "products"
    help_text = "List products, optionally filtered."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--category", choices=CATEGORY_FILTER_CHOICES, default=StockFilter.ALL.value)
        parser.add_argument("--search", default=None, help="Match name, SKU, or barcode.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_products)


def register_lookup_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``lookup``."""
    name = "lookup"
    help_text = "Find a product by barcode."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--barcode", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_lookup)


def register_orders_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``orders``."""
    name = "orders"
    help_text = "List orders, newest first."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_orders)


def _add_period_argument(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--period", choices=[member.value for member in Period], default=Period.TODAY.value)


def register_stats_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``stats``."""
    name = "stats"
    help_text = "Show revenue, profit, and orders against the previous period."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        _add_period_argument(parser)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_stats)


def register_top_products_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``top-products``."""
    name = "top-products"
    help_text = "Show the best-selling products."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--limit", type=int, default=DEFAULT_TOP_PRODUCTS_LIMIT)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_top_products)


def register_low_stock_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``low-stock``."""
    name = "low-stock"
    help_text = "Show products at or below the low-stock threshold."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--threshold", type=int, default=None, help="Defaults to LowStockThreshold.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_low_stock)


def register_activity_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``activity``."""
    name = "activity"
    help_text = "Show the most recent transactions."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--limit", type=int, default=RECENT_ACTIVITY_LIMIT)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_activity)


def register_report_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``report``."""
    name = "report"
    help_text = "Write a period report as JSON."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        _add_period_argument(parser)
        parser.add_argument("--output", type=Path, default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_report)


def register_export_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``export``."""
    name = "export"
    help_text = "Write a full JSON backup of the ledger."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--output", type=Path, default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_export)


def load_runtime_context(config_path: Optional[Path] = None) -> core_logic.RuntimeContext:
    """Resolve the runtime context for CLI operations."""
    return core_logic.load_runtime_context(Path(config_path) if config_path is not None else None)


def dispatch_command(
    context: Optional[core_logic.RuntimeContext],
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


def parse_item_argument(text: str) -> Tuple[str, int]:
    """Parse ``PRODUCT_ID:QTY`` from ``--item``.

    Raises:
        argparse.ArgumentTypeError: If the value is malformed or the quantity
            is not a positive whole number.
    """
    product_id, separator, quantity = text.rpartition(":")
    if not separator or not product_id.strip():
        raise argparse.ArgumentTypeError(f"Expected PRODUCT_ID:QTY, got {text!r}")
    try:
        amount = int(quantity)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"Quantity must be a whole number, got {quantity!r}") from exc
    if amount <= 0:
        raise argparse.ArgumentTypeError(f"Quantity must be positive, got {amount}")
    return product_id.strip(), amount


def translate_add_product(args: argparse.Namespace) -> Mapping[str, Any]:
    """Translate CLI args into add-product fields."""
    return {
        "name": args.name,
        "category": args.category,
        "price": args.price,
        "cost": args.cost,
        "stock": args.stock,
        "sku": args.sku,
        "size": args.size,
        "image": args.image,
        "barcode": args.barcode,
    }


def translate_update_product(args: argparse.Namespace) -> Mapping[str, Any]:
    """Translate CLI args into the fields that were actually supplied."""
    return {name: value for name, value in translate_add_product(args).items() if value is not None}


def translate_sale(context: core_logic.RuntimeContext, args: argparse.Namespace) -> cart.Cart:
    """Fill a cart from ``--item`` and ``--barcode`` arguments.

    Stock is checked line by line exactly as in the interactive cart.
    """
    current = cart.Cart()
    for product_id, quantity in args.items:
        product = core_logic.get_product(context, product_id)
        for _ in range(quantity):
            current = cart.add_to_cart(current, product)
    for code in args.barcodes:
        current = cart.scan_barcode(context, current, code)
    return current


def format_money(amount: Decimal) -> str:
    return f"{amount:,.2f}"


def format_change(change: reporting.PercentageChange) -> str:
    sign = "+" if change.is_positive else "-"
    return f"{sign}{change.percentage}%"


def format_product(product: data_manager.ProductRow, threshold: int) -> str:
    status = reporting.stock_status(product.stock, threshold).value
    return (
        f"{product.product_id}  {product.sku:<22} {product.name:<30} {product.category:<12} "
        f"{format_money(product.price):>14}  stock={product.stock} ({status})"
    )


def _print_products(products: Sequence[data_manager.ProductRow], threshold: int) -> None:
    if not products:
        print("No products found.")
        return
    for product in products:
        print(format_product(product, threshold))


def run_init(context: Optional[core_logic.RuntimeContext], args: argparse.Namespace) -> int:
    """Create the workbook named by the configuration file."""
    config_path = data_manager.find_config_file(args.config)
    output_path = setup_excel.run_from_config(config_path, overwrite=args.force)
    print(f"Created ledger workbook at '{output_path}'.")
    return 0


def run_add_product(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the add-product workflow in the BLL."""
    product = core_logic.add_product(context, **translate_add_product(args))
    print(f"Added product {product.product_id} ({product.name}, sku={product.sku}).")
    return 0


def run_update_product(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the update-product workflow in the BLL."""
    product = core_logic.update_product(context, args.product_id, **translate_update_product(args))
    print(f"Updated product {product.product_id} ({product.name}).")
    return 0


def run_delete_product(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the delete-product workflow in the BLL."""
    if core_logic.delete_product(context, args.product_id):
        print(f"Deleted product {args.product_id}.")
    else:
        print(f"No product with id {args.product_id}; nothing deleted.")
    return 0


def run_sale(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the checkout workflow via the cart."""
    current = translate_sale(context, args)
    order, _ = cart.checkout(context, current, PaymentMethod(args.payment_method))
    print(
        f"{core_logic.describe_order(order)}: {len(order.items)} line(s), "
        f"total {format_money(order.total)} ({order.payment_method})."
    )
    return 0


def run_import(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Replace the ledger with a backup file."""
    document = backup.read_document(args.input)
    result = backup.import_all(context, document)
    print(
        f"Imported {result.products} products, {result.orders} orders, "
        f"{result.transactions} transactions."
    )
    return 0


def run_clear(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Wipe the ledger after the confirmation phrase has been checked."""
    backup.require_clear_confirmation(args.confirm)
    result = backup.clear_all(context)
    print(
        f"Removed {result.products} products, {result.orders} orders, "
        f"{result.transactions} transactions."
    )
    return 0


def run_products(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """List the catalog through the category filter and optional search."""
    products = core_logic.filter_products_by_category(context, args.category)
    if args.search:
        matches = {product.product_id for product in core_logic.search_products(context, args.search)}
        products = [product for product in products if product.product_id in matches]
    _print_products(products, context.settings.low_stock_threshold)
    return 0


def run_lookup(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print the product carrying a barcode."""
    product = core_logic.get_product_by_barcode(context, args.barcode)
    if product is None:
        raise core_logic.NotFoundError(f"No product with barcode: {args.barcode}")
    print(format_product(product, context.settings.low_stock_threshold))
    return 0


def run_orders(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print every order, newest first."""
    orders = core_logic.list_orders(context)
    if not orders:
        print("No orders yet.")
        return 0
    for order in reversed(orders):
        quantity = sum(item.quantity for item in order.items)
        print(
            f"{core_logic.describe_order(order):<14} {order.created_at}  {quantity} item(s)  "
            f"{format_money(order.total):>14}  {order.payment_method}  {order.status}"
        )
    return 0


def run_stats(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print the dashboard summary for a period."""
    summary = reporting.period_summary(context, Period(args.period))
    counts = reporting.catalog_counts(context)
    print(f"Store:    {context.settings.store_name}")
    print(f"Period:   {summary.period.value} ({summary.current_range.start:%Y-%m-%d} to {summary.current_range.end:%Y-%m-%d})")
    print(f"Revenue:  {format_money(summary.revenue)} ({format_change(summary.revenue_change)})")
    print(f"Profit:   {format_money(summary.profit)} ({format_change(summary.profit_change)})")
    print(f"Orders:   {summary.orders} ({format_change(summary.orders_change)})")
    print(f"Catalog:  {counts['products']} products, {counts['orders']} orders all time")
    return 0


def run_top_products(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print the best sellers."""
    sellers = reporting.top_selling_products(context, args.limit)
    if not sellers:
        print("No sales yet.")
        return 0
    for rank, seller in enumerate(sellers, start=1):
        print(
            f"{rank:>2}. {seller.product.name:<30} sold={seller.sold_quantity:<6} "
            f"revenue={format_money(seller.revenue)}"
        )
    return 0


def run_low_stock(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print products at or below the threshold."""
    threshold = args.threshold if args.threshold is not None else context.settings.low_stock_threshold
    _print_products(reporting.low_stock_products(context, threshold), threshold)
    return 0


def run_activity(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print the latest transactions."""
    entries: List[data_manager.TransactionRow] = reporting.recent_activity(context, args.limit)
    if not entries:
        print("No activity yet.")
        return 0
    for entry in entries:
        print(f"{entry.created_at}  {entry.transaction_type:<8} {format_money(entry.amount):>14}  {entry.description}")
    return 0


def run_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Build a period report and write it to disk."""
    period = Period(args.period)
    document = reporting.build_report(context, period)
    destination = args.output or Path(reporting.default_report_filename(period))
    written = backup.write_document(document, destination)
    print(f"Report written to '{written}'.")
    return 0


def run_export(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Write a JSON backup of the whole ledger."""
    document = backup.export_all(context)
    destination = args.output or Path(backup.default_export_filename())
    written = backup.write_document(document, destination)
    print(f"Backup written to '{written}'.")
    return 0


def handle_cli_error(error: Exception) -> int:
    """Convert raised exceptions into user-friendly exit codes."""
    if isinstance(error, core_logic.BusinessRuleViolation):
        log.error("%s", error)
        return 2
    if isinstance(error, (core_logic.StorageUnavailableError, FileNotFoundError)):
        log.error("%s", error)
        return 3
    log.error("%s", error)
    return 1


def persist_workbook(context: core_logic.RuntimeContext) -> None:
    """Persist workbook changes after successful execution."""
    core_logic.persist_context(context)


def main(argv: Sequence[str] | None = None) -> int:
    """CLI entry point that orchestrates parsing and execution."""
    parser = build_parser()
    command_table = configure_subcommands(parser)
    args = parser.parse_args(argv)
    try:
        spec = command_table.get(args.command)
        if spec is not None and not spec.needs_context:
            return dispatch_command(None, args, command_table)

        context = load_runtime_context(getattr(args, "config", None))
        core_logic.ensure_schema_version(context)
        exit_code = dispatch_command(context, args, command_table)
        if exit_code == 0 and spec is not None and spec.mutates:
            persist_workbook(context)
        return exit_code
    except Exception as error:  # pragma: no cover - centralised error handler tested separately
        return handle_cli_error(error)
