"""Order Lifecycle Manager.

Owns the order state machine::

    DRAFT -> SUBMITTED -> APPROVED -> IN_PRODUCTION -> SHIPPED -> COMPLETED
    DRAFT | SUBMITTED | APPROVED -> CANCELLED

Submission prices every line, totals the order, and reserves stock line by
line, releasing what it already reserved when a later line fails. Cancelling
a submitted or approved order releases every line's reservation. Each
transition appends one entry to the order's append-only status history.

All mutations of one order run under that order's lock and are committed with
a conditional write on the version that was loaded.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from decimal import Decimal
from typing import Callable, Dict, FrozenSet, List, Mapping, Optional, Tuple

from . import catalog, ledger, log, options, pricing
from .constants import Collection, OrderStatus
from .context import RuntimeContext
from .exceptions import (
    BusinessRuleViolation,
    EmptyOrderError,
    EngineError,
    InvalidTransition,
    MissingReferenceError,
    Unauthorized,
)
from .models import Order, OrderLine, Principal, ReservationToken, ShippingAddress, StatusEntry

LOCK_NAMESPACE = Collection.ORDERS.value

ALLOWED_TRANSITIONS: Dict[OrderStatus, FrozenSet[OrderStatus]] = {
    OrderStatus.DRAFT: frozenset({OrderStatus.SUBMITTED, OrderStatus.CANCELLED}),
    OrderStatus.SUBMITTED: frozenset({OrderStatus.APPROVED, OrderStatus.CANCELLED}),
    OrderStatus.APPROVED: frozenset({OrderStatus.IN_PRODUCTION, OrderStatus.CANCELLED}),
    OrderStatus.IN_PRODUCTION: frozenset({OrderStatus.SHIPPED}),
    OrderStatus.SHIPPED: frozenset({OrderStatus.COMPLETED}),
    OrderStatus.COMPLETED: frozenset(),
    OrderStatus.CANCELLED: frozenset(),
}

ADMIN_ADVANCES = frozenset(
    {OrderStatus.APPROVED, OrderStatus.IN_PRODUCTION, OrderStatus.SHIPPED, OrderStatus.COMPLETED}
)
OWNER_CANCELLABLE = frozenset({OrderStatus.DRAFT, OrderStatus.SUBMITTED})
ADMIN_CANCELLABLE = frozenset({OrderStatus.DRAFT, OrderStatus.SUBMITTED, OrderStatus.APPROVED})
RESERVED_STATUSES = frozenset({OrderStatus.SUBMITTED, OrderStatus.APPROVED})


@dataclass(frozen=True)
class CreateOrderCommand:
    """Header fields captured when a dealer opens a new order."""

    currency: Optional[str] = None
    shipping_address: Optional[ShippingAddress] = None
    po_number: Optional[str] = None
    notes: Optional[str] = None


@dataclass(frozen=True)
class OrderLineCommand:
    """User intent for putting a configured item on a draft order."""

    item_id: str
    quantity: int
    selected_options: Mapping[str, str] = field(default_factory=dict)


def generate_order_id(*, prefix: str = "O", when: Optional[datetime] = None) -> str:
    """Generate a sortable order identifier.

    The identifier is ``{prefix}{YYYYMMDDHHMMSSffffff}-{random}``; the random
    tail keeps identifiers unique when two orders share a timestamp.
    """

    when = when or datetime.now(UTC)
    return f"{prefix}{when.strftime('%Y%m%d%H%M%S%f')}-{uuid.uuid4().hex[:8]}"


def is_transition_allowed(current: OrderStatus, target: OrderStatus) -> bool:
    return target in ALLOWED_TRANSITIONS[current]


# ---------------------------------------------------------------------------
# Loading and saving
# ---------------------------------------------------------------------------


def _load_history(context: RuntimeContext, order_id: str) -> Tuple[StatusEntry, ...]:
    return tuple(
        StatusEntry.from_document(entry.sequence, entry.body)
        for entry in context.store.read_log(Collection.ORDER_HISTORY.value, order_id)
    )


def _load_order(context: RuntimeContext, order_id: str) -> Order:
    stored = context.store.read(Collection.ORDERS.value, order_id)
    if stored is None:
        log.warning("Order lookup failed for id '%s'", order_id)
        raise MissingReferenceError(f"Unknown order id: {order_id}")
    return Order.from_document(
        stored.body,
        version=stored.version,
        status_history=_load_history(context, order_id),
    )


def _save_order(context: RuntimeContext, order: Order, entry: Optional[StatusEntry] = None) -> Order:
    version = context.store.write(
        Collection.ORDERS.value,
        order.order_id,
        order.to_document(),
        expected_version=order.version,
    )
    history = order.status_history
    if entry is not None:
        sequence = context.store.append_log(
            Collection.ORDER_HISTORY.value, order.order_id, entry.to_document()
        )
        history = history + (replace(entry, sequence=sequence),)
    return replace(order, version=version, status_history=history)


def _history_entry(order: Order, target: OrderStatus, principal: Principal, when: datetime) -> StatusEntry:
    return StatusEntry(
        sequence=len(order.status_history) + 1,
        prior_status=order.status,
        status=target,
        actor_account_id=principal.account_id,
        actor_role=principal.role,
        timestamp=when,
    )


def get_order(context: RuntimeContext, order_id: str, principal: Optional[Principal] = None) -> Order:
    """Load an order together with its status history.

    When ``principal`` is given, trade principals may only read their own
    account's orders.

    Raises:
        MissingReferenceError: If the order is unknown.
        Unauthorized: If a trade principal reads another account's order.
    """

    order = _load_order(context, order_id)
    if principal is not None and not principal.is_admin and principal.account_id != order.account_id:
        log.warning("%s denied read access to order '%s'", principal.describe(), order_id)
        raise Unauthorized(f"Order '{order_id}' belongs to another account")
    return order


def list_orders(
    context: RuntimeContext,
    *,
    account_id: Optional[str] = None,
    status: Optional[OrderStatus] = None,
) -> List[Order]:
    """Return orders, oldest first, optionally filtered by account and status."""

    orders: List[Order] = []
    for key in context.store.keys(Collection.ORDERS.value):
        stored = context.store.read(Collection.ORDERS.value, key)
        if stored is None:
            continue
        order = Order.from_document(stored.body, version=stored.version)
        if account_id is not None and order.account_id != account_id:
            continue
        if status is not None and order.status is not status:
            continue
        orders.append(order)
    orders.sort(key=lambda order: (order.created_at, order.order_id))
    return orders


# ---------------------------------------------------------------------------
# Guards
# ---------------------------------------------------------------------------


def _require_edge(order: Order, target: OrderStatus) -> None:
    if not is_transition_allowed(order.status, target):
        log.warning(
            "Rejected transition of order '%s' from %s to %s",
            order.order_id,
            order.status.value,
            target.value,
        )
        raise InvalidTransition(order.order_id, order.status.value, target.value)


def _require_owner(order: Order, principal: Principal, action: str) -> None:
    if not principal.is_trade or principal.account_id != order.account_id:
        log.warning("%s may not %s order '%s'", principal.describe(), action, order.order_id)
        raise Unauthorized(f"Only the owning dealer account may {action} order '{order.order_id}'")


def _require_draft(order: Order) -> None:
    if order.status is not OrderStatus.DRAFT:
        log.warning("Attempted to edit order '%s' in status %s", order.order_id, order.status.value)
        raise BusinessRuleViolation(
            f"Order '{order.order_id}' is {order.status.value}; only DRAFT orders can be edited"
        )


def _authorize_transition(order: Order, target: OrderStatus, principal: Principal) -> None:
    if target is OrderStatus.CANCELLED:
        if principal.is_admin and order.status in ADMIN_CANCELLABLE:
            return
        if (
            principal.is_trade
            and principal.account_id == order.account_id
            and order.status in OWNER_CANCELLABLE
        ):
            return
        log.warning(
            "%s may not cancel order '%s' in status %s",
            principal.describe(),
            order.order_id,
            order.status.value,
        )
        raise Unauthorized(
            f"{principal.role.value} may not cancel order '{order.order_id}' while it is {order.status.value}"
        )

    if target is OrderStatus.SUBMITTED:
        _require_owner(order, principal, "submit")
        return

    if target in ADMIN_ADVANCES and not principal.is_admin:
        log.warning("%s may not move order '%s' to %s", principal.describe(), order.order_id, target.value)
        raise Unauthorized(f"Only an admin may move order '{order.order_id}' to {target.value}")


def require_positive_quantity(quantity: int) -> None:
    if quantity <= 0:
        log.error("Order line quantity validation failed: %s", quantity)
        raise ValueError("Quantity must be greater than zero")


# ---------------------------------------------------------------------------
# Draft orders
# ---------------------------------------------------------------------------


def create_order(
    context: RuntimeContext,
    principal: Principal,
    command: Optional[CreateOrderCommand] = None,
) -> Order:
    """Open a new DRAFT order for the principal's account.

    The order currency defaults to the principal's currency.

    Raises:
        Unauthorized: If the principal is not a dealer or distributor.
        MissingReferenceError: If the principal's account is unknown.
    """

    if not principal.is_trade or principal.account_id is None:
        log.warning("%s attempted to create an order", principal.describe())
        raise Unauthorized("Only dealer or distributor accounts can create orders")

    command = command or CreateOrderCommand()
    account = catalog.get_account(context, principal.account_id)
    currency = (command.currency or principal.currency or account.currency).upper()
    now = context.now()
    order = Order(
        order_id=generate_order_id(when=now),
        account_id=account.account_id,
        created_by=principal.account_id,
        status=OrderStatus.DRAFT,
        currency=currency,
        created_at=now,
        updated_at=now,
        shipping_address=command.shipping_address,
        po_number=command.po_number,
        notes=command.notes,
    )
    entry = StatusEntry(
        sequence=1,
        prior_status=None,
        status=OrderStatus.DRAFT,
        actor_account_id=principal.account_id,
        actor_role=principal.role,
        timestamp=now,
    )
    with context.locks.hold(LOCK_NAMESPACE, order.order_id):
        order = _save_order(context, order, entry)

    log.info("Created order '%s' for account '%s' (%s)", order.order_id, order.account_id, currency)
    return order


def _edit_draft(
    context: RuntimeContext,
    order_id: str,
    principal: Principal,
    edit: Callable[[Order], Order],
) -> Order:
    with context.locks.hold(LOCK_NAMESPACE, order_id):
        order = _load_order(context, order_id)
        _require_owner(order, principal, "edit")
        _require_draft(order)
        updated = replace(edit(order), updated_at=context.now())
        return _save_order(context, updated)


def _line_index(order: Order, line_number: int) -> int:
    if not 1 <= line_number <= len(order.lines):
        raise MissingReferenceError(f"Order '{order.order_id}' has no line {line_number}")
    return line_number - 1


def add_order_line(
    context: RuntimeContext,
    order_id: str,
    principal: Principal,
    command: OrderLineCommand,
) -> Order:
    """Put a configured item on a draft order.

    Selections are validated immediately so a dealer learns about a missing
    or unknown option before submitting. A line with the same item and the
    same selections absorbs the new quantity instead of adding a second line.

    Raises:
        BusinessRuleViolation: If the item is inactive or the order is not a
            draft.
        MissingRequiredOption: If a required option is not selected.
        UnknownOptionValue: If a selection is not defined by the item.
        Unauthorized: If the principal does not own the order.
        ValueError: If the quantity is not positive.
    """

    require_positive_quantity(command.quantity)
    item = catalog.get_catalog_item(context, command.item_id)
    if not item.is_active:
        log.warning("Attempted to order inactive catalog item '%s'", command.item_id)
        raise BusinessRuleViolation(f"Catalog item '{command.item_id}' is inactive")
    selections = dict(command.selected_options)
    options.compose(item, selections, delimiter=context.settings.sku_delimiter)

    def edit(order: Order) -> Order:
        lines = list(order.lines)
        for index, line in enumerate(lines):
            if line.same_configuration(command.item_id, selections):
                lines[index] = replace(line, quantity=line.quantity + command.quantity)
                break
        else:
            lines.append(OrderLine(item_id=command.item_id, quantity=command.quantity, selected_options=selections))
        return replace(order, lines=tuple(lines))

    order = _edit_draft(context, order_id, principal, edit)
    catalog.mark_referenced(context, command.item_id)
    log.info("Added %d x '%s' to order '%s'", command.quantity, command.item_id, order_id)
    return order


def update_order_line(
    context: RuntimeContext,
    order_id: str,
    principal: Principal,
    line_number: int,
    quantity: int,
) -> Order:
    """Set the quantity of a draft line; a quantity of zero removes the line."""

    if quantity < 0:
        log.error("Order line quantity validation failed: %s", quantity)
        raise ValueError("Quantity must be zero or positive")

    def edit(order: Order) -> Order:
        index = _line_index(order, line_number)
        lines = list(order.lines)
        if quantity == 0:
            del lines[index]
        else:
            lines[index] = replace(lines[index], quantity=quantity)
        return replace(order, lines=tuple(lines))

    order = _edit_draft(context, order_id, principal, edit)
    log.info("Set line %d of order '%s' to quantity %d", line_number, order_id, quantity)
    return order


def remove_order_line(context: RuntimeContext, order_id: str, principal: Principal, line_number: int) -> Order:
    def edit(order: Order) -> Order:
        index = _line_index(order, line_number)
        return replace(order, lines=order.lines[:index] + order.lines[index + 1:])

    order = _edit_draft(context, order_id, principal, edit)
    log.info("Removed line %d from order '%s'", line_number, order_id)
    return order


def update_order_details(
    context: RuntimeContext,
    order_id: str,
    principal: Principal,
    *,
    shipping_address: Optional[ShippingAddress] = None,
    po_number: Optional[str] = None,
    notes: Optional[str] = None,
) -> Order:
    """Replace the header fields that are passed; ``None`` keeps the current value."""

    def edit(order: Order) -> Order:
        return replace(
            order,
            shipping_address=shipping_address if shipping_address is not None else order.shipping_address,
            po_number=po_number if po_number is not None else order.po_number,
            notes=notes if notes is not None else order.notes,
        )

    return _edit_draft(context, order_id, principal, edit)


# ---------------------------------------------------------------------------
# Transitions
# ---------------------------------------------------------------------------


def price_line(context: RuntimeContext, order: Order, line: OrderLine) -> OrderLine:
    """Resolve the SKU, unit price, and specs of one line for ``order``."""

    item = catalog.get_catalog_item(context, line.item_id)
    if not item.is_active:
        log.warning("Order '%s' references inactive catalog item '%s'", order.order_id, line.item_id)
        raise BusinessRuleViolation(f"Catalog item '{line.item_id}' is inactive")

    quote = pricing.resolve_price(
        context,
        line.item_id,
        order.account_id,
        order.currency,
        quantity=line.quantity,
    )
    composed = options.compose(item, line.selected_options, delimiter=context.settings.sku_delimiter)
    unit_price = pricing.quantize_price(quote.amount + composed.price_delta)
    if unit_price < Decimal("0"):
        log.error("Negative unit price %s for '%s' on order '%s'", unit_price, composed.sku, order.order_id)
        raise BusinessRuleViolation(f"Configuration of '{line.item_id}' prices below zero")

    return replace(
        line,
        resolved_sku=composed.sku,
        unit_price=unit_price,
        price_source=quote.source,
        specs=dict(composed.specs),
    )


def _release_all(context: RuntimeContext, tokens: List[ReservationToken]) -> None:
    for token in reversed(tokens):
        ledger.release(context, token.item_id, token.token_id)


def _reserve_lines(context: RuntimeContext, order: Order, lines: Tuple[OrderLine, ...]) -> Tuple[OrderLine, ...]:
    tokens: List[ReservationToken] = []
    reserved: List[OrderLine] = []
    for line in lines:
        try:
            token = ledger.reserve(context, line.item_id, line.quantity, order_id=order.order_id)
        except EngineError:
            log.warning(
                "Rolling back %d reservation(s) of order '%s' after '%s' failed",
                len(tokens),
                order.order_id,
                line.item_id,
            )
            _release_all(context, tokens)
            raise
        tokens.append(token)
        reserved.append(replace(line, reservation_token=token.token_id))
    return tuple(reserved)


def _tokens_of(order: Order) -> List[ReservationToken]:
    return [
        ReservationToken(token_id=line.reservation_token, item_id=line.item_id, quantity=line.quantity)
        for line in order.lines
        if line.reservation_token
    ]


def submit_order(context: RuntimeContext, order_id: str, principal: Principal) -> Order:
    """Submit a draft order: price it, total it, and reserve its stock.

    On any failure the order stays in DRAFT and every reservation made by
    this call has been released.

    Raises:
        InvalidTransition: If the order is not a draft.
        Unauthorized: If the principal does not own the order.
        EmptyOrderError: If the order has no lines.
        PriceNotFound, CurrencyMismatch, MissingRequiredOption,
        UnknownOptionValue: Propagated from pricing and option composition.
        InsufficientStock: If a line cannot be reserved.
        ConcurrentModificationError: If the order changed underneath us.
    """

    with context.locks.hold(LOCK_NAMESPACE, order_id):
        order = _load_order(context, order_id)
        _require_edge(order, OrderStatus.SUBMITTED)
        _authorize_transition(order, OrderStatus.SUBMITTED, principal)
        if not order.lines:
            log.warning("Rejected submission of empty order '%s'", order_id)
            raise EmptyOrderError(f"Order '{order_id}' has no lines")

        priced = tuple(price_line(context, order, line) for line in order.lines)
        subtotal = pricing.quantize_price(sum((line.line_total for line in priced), Decimal("0")))
        reserved = _reserve_lines(context, order, priced)

        now = context.now()
        submitted = replace(
            order,
            status=OrderStatus.SUBMITTED,
            lines=reserved,
            subtotal=subtotal,
            updated_at=now,
        )
        try:
            saved = _save_order(context, submitted, _history_entry(order, OrderStatus.SUBMITTED, principal, now))
        except EngineError:
            _release_all(context, _tokens_of(submitted))
            raise

    log.info(
        "Order '%s' submitted by %s (%d lines, subtotal %s)",
        order_id,
        principal.describe(),
        len(saved.lines),
        saved.totals,
    )
    return saved


def transition_order(
    context: RuntimeContext,
    order_id: str,
    target: OrderStatus,
    principal: Principal,
) -> Order:
    """Move an order to ``target`` if the edge exists and the principal may take it.

    Submission is delegated to :func:`submit_order`. Cancelling a submitted or
    approved order releases every line's reservation first; releases are
    idempotent, so a cancellation that failed to commit can be repeated.

    Raises:
        InvalidTransition: If ``target`` is not reachable in one step.
        Unauthorized: If the principal's role may not take this edge.
        ConcurrentModificationError: If the order changed underneath us.
    """

    target = OrderStatus(target)
    if target is OrderStatus.SUBMITTED:
        return submit_order(context, order_id, principal)

    with context.locks.hold(LOCK_NAMESPACE, order_id):
        order = _load_order(context, order_id)
        _require_edge(order, target)
        _authorize_transition(order, target, principal)

        if target is OrderStatus.CANCELLED and order.status in RESERVED_STATUSES:
            _release_all(context, _tokens_of(order))

        now = context.now()
        updated = replace(order, status=target, updated_at=now)
        saved = _save_order(context, updated, _history_entry(order, target, principal, now))

    log.info(
        "Order '%s' moved from %s to %s by %s",
        order_id,
        order.status.value,
        target.value,
        principal.describe(),
    )
    return saved
