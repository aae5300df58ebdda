"""Command-line entry points for the dealer engine.

All orchestration in this module is limited to argparse wiring, translating
command-line arguments into the values consumed by the business layer, and
printing results. Identity is simulated with ``--account-id`` and ``--role``
so the same commands can be run as a dealer or as an admin.
"""

from __future__ import annotations

import argparse
import json
from dataclasses import dataclass
from datetime import datetime, time
from decimal import Decimal
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Mapping, MutableMapping, Optional, Sequence

from . import core_logic, log
from .constants import AvailabilityState, OrderStatus, PromoKind, Role
from .exceptions import (
    BusinessRuleViolation,
    ConcurrentModificationError,
    LedgerInvariantViolation,
    describe_error,
)
from .models import (
    Account,
    AvailabilitySnapshot,
    CatalogItem,
    Order,
    PriceRecord,
    Promo,
    QuantityBreak,
    as_utc,
)


@dataclass(frozen=True)
class CommandSpec:
    """Describe how a CLI sub-command is configured and executed."""

    name: str
    help_text: str
    register: Callable[[argparse._SubParsersAction[argparse.ArgumentParser]], argparse.ArgumentParser]
    execute: Callable[[core_logic.RuntimeContext, argparse.Namespace], int]
    mutates: bool = False


def build_parser() -> argparse.ArgumentParser:
    """Construct the top-level CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="dealer-cli",
        description="Command-line tools for the dealer pricing and order engine.",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Optional path to config.ini (defaults to ./config.ini).",
    )
    parser.add_argument("--account-id", default=None, help="Account the caller acts for.")
    parser.add_argument(
        "--role",
        choices=[member.value for member in Role],
        default=Role.DEALER.value,
        help="Role the caller acts with (default: DEALER).",
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
    """Declare mutating CLI commands; the workbook is saved after each one."""
    specs = {
        "add-account": register_add_account_command(subparsers),
        "add-item": register_add_item_command(subparsers),
        "set-price": register_set_price_command(subparsers),
        "stock": register_stock_command(subparsers),
        "create-order": register_create_order_command(subparsers),
        "add-line": register_add_line_command(subparsers),
        "update-line": register_update_line_command(subparsers),
        "submit": register_submit_command(subparsers),
        "transition": register_transition_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_read_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare read-only CLI commands."""
    specs = {
        "price": register_price_command(subparsers),
        "availability": register_availability_command(subparsers),
        "order": register_order_command(subparsers),
        "orders": register_orders_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def _spec(
    name: str,
    help_text: str,
    configure: Callable[[argparse.ArgumentParser], None],
    execute: Callable[[core_logic.RuntimeContext, argparse.Namespace], int],
    *,
    mutates: bool,
) -> CommandSpec:
    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        configure(parser)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=execute, mutates=mutates)


def register_add_account_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``add-account``."""

    def configure(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--id", dest="new_account_id", required=True)
        parser.add_argument("--name", required=True)
        parser.add_argument("--tier", required=True)
        parser.add_argument("--currency", required=True)
        parser.add_argument("--territory", default=None)
        parser.add_argument("--terms", default=None)

    return _spec("add-account", "Register or replace a dealer account.", configure, run_add_account, mutates=True)


def register_add_item_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``add-item``."""

    def configure(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--file", type=Path, required=True, help="JSON document describing the item.")

    return _spec("add-item", "Register a catalog item from a JSON document.", configure, run_add_item, mutates=True)


def register_set_price_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``set-price``."""

    def configure(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--item-id", required=True)
        parser.add_argument("--currency", required=True)
        parser.add_argument("--base-price", required=True)
        parser.add_argument("--tier-price", action="append", default=[], metavar="TIER=PRICE")
        parser.add_argument("--override", action="append", default=[], metavar="ACCOUNT=PRICE")
        parser.add_argument("--break", dest="breaks", action="append", default=[], metavar="MIN[-MAX]=PRICE")
        parser.add_argument("--promo-kind", choices=[member.value for member in PromoKind], default=None)
        parser.add_argument("--promo-amount", default=None)
        parser.add_argument("--promo-from", default=None, help="ISO-8601 start of the promo window; UTC unless an offset is given.")
        parser.add_argument("--promo-until", default=None, help="ISO-8601 end of the promo window; a bare date runs to the end of that day (UTC).")

    return _spec("set-price", "Create or replace the price record of an item.", configure, run_set_price, mutates=True)


def register_stock_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``stock``."""

    def configure(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--item-id", required=True)
        group = parser.add_mutually_exclusive_group()
        group.add_argument("--initial", type=int, default=None, help="Create the record with this stock.")
        group.add_argument("--delta", type=int, default=None, help="Add (or remove, if negative) units.")
        parser.add_argument("--state", choices=[member.value for member in AvailabilityState], default=None)
        parser.add_argument("--eta", default=None)
        parser.add_argument("--batch", default=None)

    return _spec("stock", "Initialise or adjust the stock of an item.", configure, run_stock, mutates=True)


def register_create_order_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``create-order``."""

    def configure(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--currency", default=None)
        parser.add_argument("--po-number", default=None)
        parser.add_argument("--notes", default=None)

    return _spec("create-order", "Open a new draft order.", configure, run_create_order, mutates=True)


def register_add_line_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``add-line``."""

    def configure(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--order-id", required=True)
        parser.add_argument("--item-id", required=True)
        parser.add_argument("--quantity", type=int, required=True)
        parser.add_argument("--option", action="append", default=[], metavar="OPTION=VALUE")

    return _spec("add-line", "Add a configured item to a draft order.", configure, run_add_line, mutates=True)


def register_update_line_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``update-line``."""

    def configure(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--order-id", required=True)
        parser.add_argument("--line", type=int, required=True, help="1-based line number.")
        parser.add_argument("--quantity", type=int, required=True, help="New quantity; 0 removes the line.")

    return _spec("update-line", "Change the quantity of a draft line.", configure, run_update_line, mutates=True)


def register_submit_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``submit``."""

    def configure(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--order-id", required=True)

    return _spec("submit", "Price, total, and reserve a draft order.", configure, run_submit, mutates=True)


def register_transition_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``transition``."""

    def configure(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--order-id", required=True)
        parser.add_argument("--to", dest="target", choices=[member.value for member in OrderStatus], required=True)

    return _spec("transition", "Move an order to its next status.", configure, run_transition, mutates=True)


def register_price_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``price``."""

    def configure(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--item-id", required=True)
        parser.add_argument("--currency", required=True)
        parser.add_argument("--quantity", type=int, default=1)
        parser.add_argument("--option", action="append", default=[], metavar="OPTION=VALUE")

    return _spec("price", "Show the unit price and SKU of a configured item.", configure, run_price, mutates=False)


def register_availability_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``availability``."""

    def configure(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--item-id", required=True)

    return _spec("availability", "Show available and allocated stock.", configure, run_availability, mutates=False)


def register_order_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``order``."""

    def configure(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--order-id", required=True)

    return _spec("order", "Show an order with its status history.", configure, run_order, mutates=False)


def register_orders_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``orders``."""

    def configure(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--status", choices=[member.value for member in OrderStatus], default=None)

    return _spec("orders", "List orders visible to the caller.", configure, run_orders, mutates=False)


def load_runtime_context(config_path: Optional[Path] = None) -> core_logic.RuntimeContext:
    """Resolve the runtime context for CLI operations."""
    target = Path(config_path) if config_path is not None else Path.cwd() / "config.ini"
    return core_logic.load_runtime_context(target)


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


# ---------------------------------------------------------------------------
# Translation
# ---------------------------------------------------------------------------


def parse_pairs(raw_pairs: Sequence[str]) -> Dict[str, str]:
    """Turn ``["KEY=VALUE", ...]`` into a dictionary.

    Raises:
        ValueError: If an entry has no ``=`` or an empty key.
    """
    pairs: Dict[str, str] = {}
    for raw in raw_pairs:
        key, separator, value = raw.partition("=")
        if not separator or not key.strip():
            raise ValueError(f"Expected KEY=VALUE, got '{raw}'")
        pairs[key.strip()] = value.strip()
    return pairs


def parse_quantity_break(raw: str) -> QuantityBreak:
    """Parse ``MIN=PRICE`` or ``MIN-MAX=PRICE`` into a :class:`QuantityBreak`."""
    bounds, separator, price = raw.partition("=")
    if not separator:
        raise ValueError(f"Expected MIN[-MAX]=PRICE, got '{raw}'")
    low, _, high = bounds.partition("-")
    return QuantityBreak(
        min_quantity=int(low),
        price=Decimal(price),
        max_quantity=int(high) if high else None,
    )


def parse_timestamp(raw: str, *, end_of_day: bool = False) -> datetime:
    """Parse an ISO-8601 date or timestamp; values without an offset are UTC.

    A bare date means the start of that day, or its last instant when
    ``end_of_day`` is set.
    """
    parsed = as_utc(datetime.fromisoformat(raw))
    if end_of_day and len(raw.strip()) == 10:
        parsed = datetime.combine(parsed.date(), time.max, tzinfo=parsed.tzinfo)
    return parsed


def translate_principal(context: core_logic.RuntimeContext, args: argparse.Namespace) -> core_logic.Principal:
    """Build the acting principal from ``--account-id`` and ``--role``."""
    return core_logic.principal_for(context, args.account_id, Role(args.role))


def translate_add_account(args: argparse.Namespace) -> Account:
    return Account(
        account_id=args.new_account_id,
        name=args.name,
        tier_id=args.tier,
        currency=args.currency.upper(),
        territory=args.territory,
        payment_terms=args.terms,
    )


def translate_add_item(args: argparse.Namespace) -> CatalogItem:
    """Load the catalog item document named by ``--file``."""
    document = json.loads(Path(args.file).read_text(encoding="utf-8"))
    return CatalogItem.from_document(document)


def translate_set_price(args: argparse.Namespace) -> PriceRecord:
    """Translate CLI args into a price record."""
    promo = None
    if args.promo_kind is not None:
        if args.promo_amount is None or args.promo_until is None:
            raise ValueError("--promo-kind requires --promo-amount and --promo-until")
        promo = Promo(
            kind=PromoKind(args.promo_kind),
            amount=Decimal(args.promo_amount),
            valid_until=parse_timestamp(args.promo_until, end_of_day=True),
            valid_from=parse_timestamp(args.promo_from) if args.promo_from else None,
        )
    return PriceRecord(
        item_id=args.item_id,
        currency=args.currency.upper(),
        base_price=Decimal(args.base_price),
        tier_prices={tier: Decimal(price) for tier, price in parse_pairs(args.tier_price).items()},
        account_overrides={account: Decimal(price) for account, price in parse_pairs(args.override).items()},
        promo=promo,
        quantity_breaks=tuple(parse_quantity_break(raw) for raw in args.breaks),
    )


# ---------------------------------------------------------------------------
# Output
# ---------------------------------------------------------------------------


def format_availability(snapshot: AvailabilitySnapshot) -> str:
    text = (
        f"{snapshot.item_id}: available={snapshot.qty_available} "
        f"allocated={snapshot.qty_allocated} state={snapshot.state.value}"
    )
    if snapshot.eta_date:
        text += f" eta={snapshot.eta_date}"
    if snapshot.batch_name:
        text += f" batch={snapshot.batch_name}"
    return text


def format_order(order: Order, *, with_history: bool = False) -> List[str]:
    lines = [
        f"Order {order.order_id} [{order.status.value}] account={order.account_id} "
        f"subtotal={order.totals}"
    ]
    for number, line in enumerate(order.lines, start=1):
        sku = line.resolved_sku or line.item_id
        price = f" @ {line.unit_price}" if line.unit_price is not None else ""
        lines.append(f"  {number}. {line.quantity} x {sku}{price}")
    if with_history:
        for entry in order.status_history:
            prior = entry.prior_status.value if entry.prior_status is not None else "-"
            lines.append(
                f"  {entry.timestamp.isoformat()} {prior} -> {entry.status.value} "
                f"by {entry.actor_role.value}:{entry.actor_account_id or '-'}"
            )
    return lines


# ---------------------------------------------------------------------------
# Executors
# ---------------------------------------------------------------------------


def run_add_account(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Register an account via the BLL."""
    account = core_logic.register_account(context, translate_add_account(args))
    print(f"Account {account.account_id} saved.")
    return 0


def run_add_item(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Register a catalog item via the BLL."""
    item = core_logic.register_catalog_item(context, translate_add_item(args))
    print(f"Catalog item {item.item_id} ({item.sku}) saved.")
    return 0


def run_set_price(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Store a price record via the BLL."""
    record = core_logic.set_price_record(context, translate_set_price(args))
    print(f"Price record {record.key} saved.")
    return 0


def run_stock(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Initialise or adjust stock, then optionally restate the supply state."""
    state = AvailabilityState(args.state) if args.state else None
    if args.initial is not None:
        snapshot = core_logic.initialize_availability(
            context,
            args.item_id,
            args.initial,
            state=state or AvailabilityState.IN_STOCK,
            eta_date=args.eta,
            batch_name=args.batch,
        )
    else:
        if args.delta is not None:
            snapshot = core_logic.adjust_stock(context, args.item_id, args.delta)
        if state is not None:
            snapshot = core_logic.set_availability_state(
                context, args.item_id, state, eta_date=args.eta, batch_name=args.batch
            )
        elif args.delta is None:
            raise ValueError("stock requires --initial, --delta, or --state")
    print(format_availability(snapshot))
    return 0


def run_create_order(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    principal = translate_principal(context, args)
    order = core_logic.create_order(
        context,
        principal,
        currency=args.currency,
        po_number=args.po_number,
        notes=args.notes,
    )
    print(order.order_id)
    return 0


def run_add_line(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    principal = translate_principal(context, args)
    order = core_logic.add_order_line(
        context,
        args.order_id,
        principal,
        args.item_id,
        args.quantity,
        parse_pairs(args.option),
    )
    print("\n".join(format_order(order)))
    return 0


def run_update_line(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    principal = translate_principal(context, args)
    order = core_logic.update_order_line(context, args.order_id, principal, args.line, args.quantity)
    print("\n".join(format_order(order)))
    return 0


def run_submit(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    principal = translate_principal(context, args)
    order = core_logic.submit_order(context, args.order_id, principal)
    print("\n".join(format_order(order)))
    return 0


def run_transition(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    principal = translate_principal(context, args)
    order = core_logic.transition_order(context, args.order_id, OrderStatus(args.target), principal)
    print("\n".join(format_order(order)))
    return 0


def run_price(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Price a configured item for the acting account."""
    if args.account_id is None:
        raise ValueError("price requires --account-id")
    configured = core_logic.price_configuration(
        context,
        args.item_id,
        args.account_id,
        args.currency,
        parse_pairs(args.option),
        quantity=args.quantity,
    )
    promo = " + promo" if configured.promo_applied else ""
    print(f"{configured.sku}: {configured.unit_price} ({configured.source.value}{promo})")
    return 0


def run_availability(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    print(format_availability(core_logic.check_availability(context, args.item_id)))
    return 0


def run_order(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    principal = translate_principal(context, args)
    order = core_logic.get_order(context, args.order_id, principal)
    print("\n".join(format_order(order, with_history=True)))
    return 0


def run_orders(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """List orders; trade callers only see their own account's orders."""
    principal = translate_principal(context, args)
    account_id = None if principal.is_admin else principal.account_id
    status = OrderStatus(args.status) if args.status else None
    for order in core_logic.list_orders(context, account_id=account_id, status=status):
        print(format_order(order)[0])
    return 0


def handle_cli_error(error: Exception) -> int:
    """Convert raised exceptions into user-friendly exit codes."""
    if isinstance(error, BusinessRuleViolation):
        log.error("%s", describe_error(error))
        return 2
    if isinstance(error, FileNotFoundError):
        log.error("%s", error)
        return 3
    if isinstance(error, LedgerInvariantViolation):
        log.error("%s", describe_error(error))
        return 4
    if isinstance(error, ConcurrentModificationError):
        log.error("%s", describe_error(error))
        return 5
    log.error("%s", error)
    return 1


def persist_workbook(context: core_logic.RuntimeContext) -> None:
    """Persist workbook changes after a successful write command."""
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
        core_logic.ensure_schema_version(context)
        exit_code = dispatch_command(context, args, command_table)
        if exit_code == 0 and command_table[args.command].mutates:
            persist_workbook(context)
        return exit_code
    except Exception as error:  # pragma: no cover - centralised error handler tested separately
        return handle_cli_error(error)
