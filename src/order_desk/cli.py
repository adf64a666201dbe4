"""Command-line entry points for Order Desk.

This module only wires argparse to the catalog, ledger and query layers and
prints their results. Every sub-command is described by a :class:`CommandSpec`
so tests and alternative front-ends can reuse the same parser configuration.
"""

from __future__ import annotations

import argparse
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Mapping, MutableMapping, Optional, Sequence

from . import catalog, core_logic, log
from .ledger import OrderLedger, OrderRecord, OrderRequest, RequestedLine
from .line_items import encode
from .queries import OrderQuery


@dataclass(frozen=True)
class CommandSpec:
    """Describe how a CLI sub-command is configured and executed."""

    name: str
    help_text: str
    register: Callable[[argparse._SubParsersAction[argparse.ArgumentParser]], argparse.ArgumentParser]
    execute: Callable[[core_logic.RuntimeContext, argparse.Namespace], int]
    persist: bool = False


def build_parser() -> argparse.ArgumentParser:
    """Construct the top-level CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="order-desk",
        description="Command-line tools for the Order Desk workbook.",
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
    """Declare commands that append orders or change the catalog."""
    specs = {
        "order": register_order_command(subparsers),
        "archive": register_archive_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_read_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare read-only commands."""
    specs = {
        "catalog": register_catalog_command(subparsers),
        "headers": register_headers_command(subparsers),
        "history": register_history_command(subparsers),
        "show": register_show_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def parse_item(value: str) -> RequestedLine:
    """Parse ``SKU=QTY`` into a :class:`RequestedLine`."""
    sku, separator, quantity = value.rpartition("=")
    if not separator or not sku.strip():
        raise argparse.ArgumentTypeError(f"Expected SKU=QTY, got '{value}'")
    try:
        return RequestedLine(sku=sku.strip(), quantity=int(quantity))
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"Quantity must be an integer in '{value}'") from exc


def register_order_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``order``."""
    name = "order"
    help_text = "Commit a new order, or a revision of an existing invoice."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--client-id", required=True)
        parser.add_argument(
            "--item",
            dest="items",
            action="append",
            type=parse_item,
            required=True,
            metavar="SKU=QTY",
            help="Line item; repeat for every SKU.",
        )
        parser.add_argument("--comment", default="")
        parser.add_argument("--address", default=None, help="Override the client's address.")
        parser.add_argument("--client-name", default=None, help="Override the client's name.")
        parser.add_argument("--invoice-id", default=None, help="Invoice id for a new order.")
        parser.add_argument("--edit", dest="edit_invoice_id", default=None, help="Invoice id to revise.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_order)


def register_archive_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``archive``."""
    name = "archive"
    help_text = "Move products to the DELETED_PRODUCTS sheet."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("skus", nargs="+", metavar="SKU")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_archive, persist=True)


def register_catalog_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``catalog``."""
    name = "catalog"
    help_text = "List resolved products."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--groups", action="store_true", help="List product families only.")
        parser.add_argument("--sku", default=None, help="Show a single product.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_catalog)


def register_headers_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``headers``."""
    name = "headers"
    help_text = "Show how product sheet columns are bound to fields."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_headers)


def register_history_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``history``."""
    name = "history"
    help_text = "List committed orders, newest first."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--client", default=None, help="Only orders for this client name.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_history)


def register_show_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``show``."""
    name = "show"
    help_text = "Show one invoice with its line items."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("invoice_id")
        parser.add_argument("--revisions", action="store_true", help="Show every revision of the invoice.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_show)


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


def translate_order(args: argparse.Namespace) -> OrderRequest:
    """Translate CLI args into an order request."""
    return OrderRequest(
        client_id=args.client_id,
        lines=tuple(args.items),
        comment=args.comment or "",
        address=args.address,
        client_name=args.client_name,
        invoice_id=args.invoice_id,
        edit_invoice_id=args.edit_invoice_id,
    )


def format_order(record: OrderRecord, *, with_items: bool = False) -> List[str]:
    """Render a ledger record as printable lines."""
    stamp = record.timestamp.strftime("%Y-%m-%d %H:%M") if record.timestamp else "-"
    lines = [
        f"{record.invoice_id}  {record.revision_label:<9} {stamp}  {record.client_name}  "
        f"pcs={record.total_pieces} total=${record.total_amount:.2f} comm=${record.total_commission:.2f}"
    ]
    if with_items:
        lines.extend(f"    {encode(item)}" for item in record.line_items)
        if record.comment:
            lines.append(f"    comment: {record.comment}")
        if record.address:
            lines.append(f"    address: {record.address}")
    return lines


def run_order(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Commit an order through the ledger."""
    record = OrderLedger(context).commit(translate_order(args))
    if not context.settings.save_on_commit:
        core_logic.persist_context(context)
    for line in format_order(record, with_items=True):
        print(line)
    if record.document is not None and record.document.ok:
        print(f"Invoice: {record.document.reference}")
    return 0


def run_archive(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Archive products by SKU."""
    moved = catalog.archive_products(context, args.skus)
    print(f"Archived {moved} product row(s).")
    return 0


def run_catalog(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print the resolved catalog."""
    snapshot = context.catalog.get()
    if args.sku:
        product = snapshot.find_by_sku(args.sku)
        if product is None:
            raise core_logic.NotFoundError(f"Unknown product SKU: {args.sku}")
        products = [product]
    elif args.groups:
        for product in catalog.list_base_products(snapshot):
            print(f"{product.group_name}  [{product.category}]  {product.brand}")
        return 0
    else:
        products = [product for product in snapshot if not product.is_parent]

    for product in products:
        variations = " / ".join(value for value in product.variations if value)
        flags = "".join(
            flag for flag, enabled in (("S", product.on_sale), ("C", product.has_case), ("X", not product.is_available))
            if enabled
        )
        print(f"{product.sku:<16} {product.name} {variations}  ${product.price:.2f}  x{product.units_per_case} {flags}".rstrip())
    return 0


def run_headers(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print the header binding of the product sheet."""
    binding = context.catalog.store.header_binding()
    for key, index in sorted(binding.indices.items(), key=lambda item: item[1]):
        print(f"{index:>3}  {key:<16} <- {binding.labels[key]}")
    bound = set(binding.indices.values())
    unbound = [str(title) for position, title in enumerate(binding.headers) if title is not None and position not in bound]
    if unbound:
        print(f"Unbound columns: {', '.join(unbound)}")
    return 0


def run_history(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print committed orders."""
    for record in OrderQuery(context.workbook).get_by_client(args.client):
        for line in format_order(record):
            print(line)
    return 0


def run_show(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print one invoice."""
    query = OrderQuery(context.workbook)
    if args.revisions:
        records = query.get_revisions(args.invoice_id)
    else:
        latest = query.get_by_id(args.invoice_id)
        records = [latest] if latest is not None else []
    if not records:
        raise core_logic.NotFoundError(f"Unknown invoice: {args.invoice_id}")
    for record in records:
        for line in format_order(record, with_items=True):
            print(line)
    return 0


def handle_cli_error(error: Exception) -> int:
    """Convert raised exceptions into user-friendly exit codes."""
    if isinstance(error, core_logic.OrderDeskError):
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
        raise core_logic.PersistenceError(str(error)) from error


def main(argv: Sequence[str] | None = None) -> int:
    """CLI entry point that orchestrates parsing and execution."""
    parser = build_parser()
    command_table = configure_subcommands(parser)
    args = parser.parse_args(argv)
    try:
        context = load_runtime_context(getattr(args, "config", None))
        exit_code = dispatch_command(context, args, command_table)
        if exit_code == 0 and command_table[args.command].persist:
            persist_workbook(context)
        return exit_code
    except Exception as error:  # pragma: no cover - centralised error handler tested separately
        return handle_cli_error(error)
