"""Business logic layer for the dealer portal.

This module is the boundary the surrounding application talks to. It wires
the Price Resolver, Option Composer, Availability Ledger, and Order Lifecycle
Manager behind a small set of functions that all take a
:class:`~dealer_engine.context.RuntimeContext` first and, for anything that
acts on an order, an explicit :class:`~dealer_engine.models.Principal`.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import List, Mapping, Optional

from . import catalog, ledger, lifecycle, log, options, pricing
from .constants import AvailabilityState, OrderStatus, PriceSource, Role
from .context import (
    RuntimeContext,
    ensure_schema_version,
    load_runtime_context,
    persist_context,
    refresh_context,
)
from .lifecycle import CreateOrderCommand, OrderLineCommand
from .models import (
    Account,
    AvailabilitySnapshot,
    CatalogItem,
    Money,
    Order,
    PriceQuote,
    PriceRecord,
    Principal,
    ShippingAddress,
)

__all__ = [
    "ConfiguredPrice",
    "CreateOrderCommand",
    "OrderLineCommand",
    "RuntimeContext",
    "add_order_line",
    "adjust_stock",
    "check_availability",
    "create_order",
    "ensure_schema_version",
    "get_order",
    "initialize_availability",
    "list_orders",
    "load_runtime_context",
    "persist_context",
    "price_configuration",
    "principal_for",
    "quote_price",
    "refresh_context",
    "register_account",
    "register_catalog_item",
    "remove_order_line",
    "resolve_price",
    "set_availability_state",
    "set_price_record",
    "submit_order",
    "transition_order",
    "update_order_details",
    "update_order_line",
]


@dataclass(frozen=True)
class ConfiguredPrice:
    """Unit price and SKU of an item with a given option selection."""

    item_id: str
    sku: str
    unit_price: Money
    base_price: Money
    price_delta: Decimal
    source: PriceSource
    promo_applied: bool
    specs: Mapping[str, str]


# ---------------------------------------------------------------------------
# Pricing
# ---------------------------------------------------------------------------


def resolve_price(context: RuntimeContext, item_id: str, account_id: str, currency: str) -> Money:
    """Return the authoritative unit price of ``item_id`` for ``account_id``.

    Raises:
        PriceNotFound: If the item has no price in ``currency``.
        CurrencyMismatch: If the account trades in another currency and has
            no override in ``currency``.
        MissingReferenceError: If the account is unknown.
    """

    return pricing.resolve_price(context, item_id, account_id, currency).unit_price


def quote_price(
    context: RuntimeContext,
    item_id: str,
    account_id: str,
    currency: str,
    *,
    quantity: int = 1,
    as_of: Optional[datetime] = None,
) -> PriceQuote:
    """Like :func:`resolve_price` but reports which rule produced the price."""

    return pricing.resolve_price(context, item_id, account_id, currency, quantity=quantity, as_of=as_of)


def price_configuration(
    context: RuntimeContext,
    item_id: str,
    account_id: str,
    currency: str,
    selections: Mapping[str, str],
    *,
    quantity: int = 1,
) -> ConfiguredPrice:
    """Price an item with options the way submission would, without reserving.

    Raises:
        MissingRequiredOption: If a required option is not selected.
        UnknownOptionValue: If a selection is not defined by the item.
        PriceNotFound, CurrencyMismatch: See :func:`resolve_price`.
    """

    item = catalog.get_catalog_item(context, item_id)
    composed = options.compose(item, selections, delimiter=context.settings.sku_delimiter)
    quote = pricing.resolve_price(context, item_id, account_id, currency, quantity=quantity)
    unit_price = pricing.quantize_price(quote.amount + composed.price_delta)
    log.debug("Configured '%s' as '%s' at %s", item_id, composed.sku, unit_price)
    return ConfiguredPrice(
        item_id=item_id,
        sku=composed.sku,
        unit_price=Money(unit_price, quote.unit_price.currency),
        base_price=quote.unit_price,
        price_delta=composed.price_delta,
        source=quote.source,
        promo_applied=quote.promo_applied,
        specs=composed.specs,
    )


# ---------------------------------------------------------------------------
# Availability
# ---------------------------------------------------------------------------


def check_availability(context: RuntimeContext, item_id: str) -> AvailabilitySnapshot:
    """Return ``{qty_available, qty_allocated}`` and the stock state of ``item_id``."""

    return ledger.check_availability(context, item_id)


# ---------------------------------------------------------------------------
# Orders
# ---------------------------------------------------------------------------


def create_order(
    context: RuntimeContext,
    principal: Principal,
    *,
    currency: Optional[str] = None,
    shipping_address: Optional[ShippingAddress] = None,
    po_number: Optional[str] = None,
    notes: Optional[str] = None,
) -> Order:
    command = CreateOrderCommand(
        currency=currency,
        shipping_address=shipping_address,
        po_number=po_number,
        notes=notes,
    )
    return lifecycle.create_order(context, principal, command)


def add_order_line(
    context: RuntimeContext,
    order_id: str,
    principal: Principal,
    item_id: str,
    quantity: int,
    selected_options: Optional[Mapping[str, str]] = None,
) -> Order:
    command = OrderLineCommand(item_id=item_id, quantity=quantity, selected_options=dict(selected_options or {}))
    return lifecycle.add_order_line(context, order_id, principal, command)


def update_order_line(
    context: RuntimeContext, order_id: str, principal: Principal, line_number: int, quantity: int
) -> Order:
    return lifecycle.update_order_line(context, order_id, principal, line_number, quantity)


def remove_order_line(context: RuntimeContext, order_id: str, principal: Principal, line_number: int) -> Order:
    return lifecycle.remove_order_line(context, order_id, principal, line_number)


def update_order_details(
    context: RuntimeContext,
    order_id: str,
    principal: Principal,
    *,
    shipping_address: Optional[ShippingAddress] = None,
    po_number: Optional[str] = None,
    notes: Optional[str] = None,
) -> Order:
    return lifecycle.update_order_details(
        context,
        order_id,
        principal,
        shipping_address=shipping_address,
        po_number=po_number,
        notes=notes,
    )


def submit_order(context: RuntimeContext, order_id: str, principal: Principal) -> Order:
    """Submit a draft order; see :func:`dealer_engine.lifecycle.submit_order`."""

    return lifecycle.submit_order(context, order_id, principal)


def transition_order(context: RuntimeContext, order_id: str, target: OrderStatus, principal: Principal) -> Order:
    """Move an order one step along the lifecycle; see :mod:`dealer_engine.lifecycle`."""

    return lifecycle.transition_order(context, order_id, target, principal)


def get_order(context: RuntimeContext, order_id: str, principal: Optional[Principal] = None) -> Order:
    return lifecycle.get_order(context, order_id, principal)


def list_orders(
    context: RuntimeContext,
    *,
    account_id: Optional[str] = None,
    status: Optional[OrderStatus] = None,
) -> List[Order]:
    return lifecycle.list_orders(context, account_id=account_id, status=status)


# ---------------------------------------------------------------------------
# Reference data
# ---------------------------------------------------------------------------


def principal_for(context: RuntimeContext, account_id: Optional[str], role: Role) -> Principal:
    return catalog.principal_for(context, account_id, role)


def register_account(context: RuntimeContext, account: Account) -> Account:
    return catalog.register_account(context, account)


def register_catalog_item(context: RuntimeContext, item: CatalogItem) -> CatalogItem:
    return catalog.register_catalog_item(context, item)


def set_price_record(context: RuntimeContext, record: PriceRecord) -> PriceRecord:
    return catalog.set_price_record(context, record)


def initialize_availability(
    context: RuntimeContext,
    item_id: str,
    qty_available: int,
    *,
    state: AvailabilityState = AvailabilityState.IN_STOCK,
    eta_date: Optional[str] = None,
    batch_name: Optional[str] = None,
) -> AvailabilitySnapshot:
    return ledger.initialize_availability(
        context, item_id, qty_available, state=state, eta_date=eta_date, batch_name=batch_name
    )


def adjust_stock(context: RuntimeContext, item_id: str, delta: int) -> AvailabilitySnapshot:
    """Apply an external stock adjustment; see :func:`dealer_engine.ledger.adjust_stock`."""

    return ledger.adjust_stock(context, item_id, delta)


def set_availability_state(
    context: RuntimeContext,
    item_id: str,
    state: AvailabilityState,
    *,
    eta_date: Optional[str] = None,
    batch_name: Optional[str] = None,
) -> AvailabilitySnapshot:
    return ledger.set_availability_state(context, item_id, state, eta_date=eta_date, batch_name=batch_name)
