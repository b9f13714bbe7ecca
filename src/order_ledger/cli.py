"""Command-line entry points for the order ledger.

All orchestration in this module is limited to argparse wiring, translating
command-line arguments into calls on the business layer, and printing the
results. Keeping the CLI thin ensures the same parser configuration can be
reused by tests, scripts, or any alternative front-end.
"""

from __future__ import annotations

import argparse
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, Iterable, Mapping, MutableMapping, Optional, Sequence

from . import core_logic, log
from .catalog import build_price_cache, build_product_cache, search_products
from .errors import ExternalSourceError, NotFoundError, TransactionError, ValidationError
from .pricing import PriceResolver
from .statistics import generate_stats, write_summary_workbook


@dataclass(frozen=True)
class CommandSpec:
    """Describe how a CLI sub-command is configured and executed."""

    name: str
    help_text: str
    register: Callable[[argparse._SubParsersAction[argparse.ArgumentParser]], argparse.ArgumentParser]
    execute: Callable[[core_logic.RuntimeContext, argparse.Namespace], int]


def build_parser() -> argparse.ArgumentParser:
    """Construct the top-level CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="order-ledger",
        description="Track pending orders, completed history, and period statistics.",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Optional path to config.ini (defaults to the nearest config.ini upwards).",
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
    """Declare mutating CLI commands such as order entry and completion."""
    specs = {
        "add-order": register_add_order_command(subparsers),
        "update-order": register_update_order_command(subparsers),
        "delete-order": register_delete_order_command(subparsers),
        "complete": register_complete_command(subparsers),
        "edit-history": register_edit_history_command(subparsers),
        "delete-history": register_delete_history_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_read_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare read-only CLI commands such as listings and statistics."""
    specs = {
        "orders": register_orders_command(subparsers),
        "history": register_history_command(subparsers),
        "stats": register_stats_command(subparsers),
        "products": register_products_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_add_order_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``add-order``."""
    name = "add-order"
    help_text = "Record a new pending order."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--delivery-date", required=True, help="YYYY-MM-DD")
        parser.add_argument("--product-code", required=True)
        parser.add_argument(
            "--product-name",
            default=None,
            help="Defaults to the catalog name for the product code.",
        )
        parser.add_argument("--quantity", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_add_order)


def register_update_order_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``update-order``."""
    name = "update-order"
    help_text = "Change the quantity or delivery date of a pending order."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--order-id", required=True)
        parser.add_argument("--quantity", default=None)
        parser.add_argument("--delivery-date", default=None, help="YYYY-MM-DD")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_update_order)


def register_delete_order_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``delete-order``."""
    name = "delete-order"
    help_text = "Delete a pending order."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--order-id", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_delete_order)


def register_complete_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``complete``."""
    name = "complete"
    help_text = "Move a pending order into the completed history."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--order-id", required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_complete)


def register_edit_history_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``edit-history``."""
    name = "edit-history"
    help_text = "Correct the quantity of a completed line item."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--bucket-id", required=True)
        parser.add_argument("--product-code", required=True)
        parser.add_argument("--quantity", required=True)
        parser.add_argument(
            "--line-item-id",
            default=None,
            help="Required when the bucket holds several line items for the product.",
        )
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_edit_history)


def register_delete_history_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``delete-history``."""
    name = "delete-history"
    help_text = "Delete completed line items for a product from a date bucket."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--bucket-id", required=True)
        parser.add_argument("--product-code", required=True)
        parser.add_argument("--line-item-id", default=None, help="Only delete this line item.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_delete_history)


def register_orders_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``orders``."""
    name = "orders"
    help_text = "List pending orders grouped by delivery date."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_orders_report)


def register_history_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``history``."""
    name = "history"
    help_text = "List completed line items between two delivery dates."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--start", required=True, help="YYYY-MM-DD")
        parser.add_argument("--end", required=True, help="YYYY-MM-DD")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_history_report)


def register_stats_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``stats``."""
    name = "stats"
    help_text = "Display per-product statistics for a fiscal month or year."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--year", required=True)
        parser.add_argument("--month", default=None, help="1-12; omit for the full fiscal year.")
        parser.add_argument("--export", type=Path, default=None, help="Also write the summary to this .xlsx file.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_stats_report)


def register_products_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``products``."""
    name = "products"
    help_text = "List or search the product catalog."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--search", default=None, help="Case-insensitive code, name, or color filter.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_products_report)


def load_runtime_context(config_path: Optional[Path] = None) -> core_logic.RuntimeContext:
    """Resolve the runtime context for CLI operations."""
    context = core_logic.load_runtime_context(config_path)
    core_logic.ensure_schema_version(context)
    return context


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


def resolve_product_name(context: core_logic.RuntimeContext, product_code: str) -> str:
    """Look up the catalog name for ``product_code``; blank when unknown."""
    try:
        products = build_product_cache(context.settings.products).get()
    except ExternalSourceError as exc:
        log.error("Product catalog unavailable: %s", exc)
        raise ValidationError("catalog unavailable; pass --product-name") from exc
    for product in products:
        if product.code == product_code:
            return product.name
    log.warning("Product code '%s' is not in the catalog", product_code)
    return ""


def translate_add_order(
    context: core_logic.RuntimeContext,
    args: argparse.Namespace,
) -> core_logic.PendingOrderCommand:
    """Translate CLI args into a pending order command object."""
    product_name = args.product_name
    if product_name is None:
        product_name = resolve_product_name(context, args.product_code)
    return core_logic.PendingOrderCommand(
        delivery_date=args.delivery_date,
        product_code=args.product_code,
        product_name=product_name,
        quantity=args.quantity,
    )


def run_add_order(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the add-order workflow in the BLL."""
    command = translate_add_order(context, args)
    order = core_logic.create_pending_order(context, command)
    print(f"Created pending order {order.order_id}")
    return 0


def run_update_order(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the update-order workflow in the BLL."""
    order = core_logic.update_pending_order(
        context,
        args.order_id,
        quantity=args.quantity,
        delivery_date=args.delivery_date,
    )
    print(f"Updated pending order {order.order_id}: {order.delivery_date.isoformat()} x {order.quantity}")
    return 0


def run_delete_order(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the delete-order workflow in the BLL."""
    core_logic.delete_pending_order(context, args.order_id)
    print(f"Deleted pending order {args.order_id}")
    return 0


def run_complete(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the completion workflow in the BLL."""
    result = core_logic.complete_order(context, args.order_id)
    print(
        f"Completed {result.order.order_id} into bucket {result.bucket.bucket_id} "
        f"({result.bucket.delivery_date.isoformat()}) as line item {result.line_item.line_item_id}"
    )
    return 0


def run_edit_history(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the history edit workflow in the BLL."""
    item = core_logic.edit_history_line_item(
        context,
        args.bucket_id,
        args.product_code,
        args.quantity,
        line_item_id=args.line_item_id,
    )
    print(f"Line item {item.line_item_id} now has quantity {item.quantity}")
    return 0


def run_delete_history(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the history delete workflow in the BLL."""
    removed = core_logic.delete_history_line_item(
        context,
        args.bucket_id,
        args.product_code,
        line_item_id=args.line_item_id,
    )
    print(f"Deleted {removed} line item(s)")
    return 0


def run_orders_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print pending orders grouped by delivery date."""
    grouped = core_logic.list_pending_orders(context)
    if not grouped:
        print("No pending orders.")
        return 0
    for delivery_date, orders in grouped.items():
        print(delivery_date.isoformat())
        for order in orders:
            print(f"  {order.order_id}  {order.product_code}  {order.product_name}  {order.quantity}")
    return 0


def run_history_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print completed line items in a date range."""
    items = core_logic.list_history(context, args.start, args.end)
    if not items:
        print("No completed orders in range.")
        return 0
    for item in items:
        print(
            f"{item.delivery_date.isoformat()}  {item.bucket_id}  {item.line_item_id}  "
            f"{item.product_code}  {item.product_name}  {item.quantity}"
        )
    return 0


def run_stats_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print per-product statistics and optionally export them."""
    resolver = PriceResolver(build_price_cache(context.settings.prices))
    summary = generate_stats(context, resolver, args.year, args.month)
    print(
        f"{summary.period_text} ({summary.period.start.isoformat()} to {summary.period.end.isoformat()})"
    )
    for row in summary.per_product:
        print(
            f"  {row.code}  {row.name}  orders={row.order_count}  quantity={row.total_quantity}  "
            f"unit={row.unit_price}  total={row.total_price}"
        )
    print(
        f"Orders: {summary.total_orders}  Kilograms: {summary.total_kilograms}  Amount: {summary.total_amount}"
    )
    if args.export is not None:
        destination = write_summary_workbook(summary, args.export)
        print(f"Exported summary to {destination}")
    return 0


def run_products_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print the product catalog, optionally filtered."""
    products = build_product_cache(context.settings.products).get()
    if args.search:
        products = search_products(products, args.search)
    for product in products:
        color = f"  {product.color}" if product.color else ""
        print(f"{product.code}  {product.name}{color}")
    return 0


def handle_cli_error(error: Exception) -> int:
    """Convert raised exceptions into user-friendly exit codes."""
    if isinstance(error, (ValidationError, NotFoundError)):
        log.error("%s", error)
        return 2
    if isinstance(error, FileNotFoundError):
        log.error("%s", error)
        return 3
    if isinstance(error, TransactionError):
        log.error("%s", error)
        return 4
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
        context = load_runtime_context(getattr(args, "config", None))
        exit_code = dispatch_command(context, args, command_table)
        # Transactions already saved when AutoSave is on.
        if exit_code == 0 and not context.settings.autosave:
            persist_workbook(context)
        return exit_code
    except Exception as error:  # pragma: no cover - centralised error handler tested separately
        return handle_cli_error(error)


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
