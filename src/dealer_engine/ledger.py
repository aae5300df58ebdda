"""Availability Ledger.

The ledger is the only writer of ``qtyAvailable`` and ``qtyAllocated``. Every
mutation runs under the per-item lock and is committed with a conditional
write on the version that was read, so a check-and-decrement can never
interleave with another writer on the same item. Reserve and release move
units between the two counters and never change their sum; only
:func:`adjust_stock` does.

The record holds outstanding reservations only. A released token is removed
from it and appended to the ``reservation_history`` log of the item, which is
where a repeated release finds it.
"""

from __future__ import annotations

import uuid
from dataclasses import replace
from typing import Callable, Optional, Tuple, TypeVar

from . import log
from .constants import AvailabilityState, Collection, ReservationStatus
from .context import RuntimeContext
from .exceptions import (
    BusinessRuleViolation,
    ConcurrentModificationError,
    InsufficientStock,
    LedgerInvariantViolation,
    VersionConflict,
)
from .models import AvailabilityRecord, AvailabilitySnapshot, ReservationToken

LOCK_NAMESPACE = Collection.AVAILABILITY.value

T = TypeVar("T")


def generate_token_id() -> str:
    return f"R{uuid.uuid4().hex}"


def require_positive_quantity(quantity: int) -> None:
    """Validate that a reservation quantity is a strictly positive integer.

    Raises:
        ValueError: If ``quantity`` is zero or negative.
    """

    if quantity <= 0:
        log.error("Quantity validation failed: %s", quantity)
        raise ValueError("Quantity must be greater than zero")


def _load(context: RuntimeContext, item_id: str) -> Tuple[AvailabilityRecord, int]:
    stored = context.store.read(Collection.AVAILABILITY.value, item_id)
    if stored is None:
        return AvailabilityRecord(item_id=item_id), 0
    return AvailabilityRecord.from_document(stored.body), stored.version


def _apply(
    context: RuntimeContext,
    item_id: str,
    mutation: Callable[[AvailabilityRecord], Tuple[AvailabilityRecord, T]],
    *,
    after_write: Optional[Callable[[T], None]] = None,
) -> T:
    """Run ``mutation`` against the current record and commit its result.

    ``mutation`` returns the updated record and the value handed back to the
    caller; returning the record it was given means "nothing to write". It
    raises to reject the operation, in which case nothing is written.
    ``after_write`` runs under the item lock once the write has committed.
    """

    retries = context.settings.max_write_retries
    with context.locks.hold(LOCK_NAMESPACE, item_id):
        for attempt in range(1, retries + 1):
            record, version = _load(context, item_id)
            updated, result = mutation(record)
            if updated is record:
                return result
            try:
                context.store.write(
                    Collection.AVAILABILITY.value,
                    item_id,
                    updated.to_document(),
                    expected_version=version,
                )
            except VersionConflict:
                log.warning(
                    "Availability of '%s' changed concurrently (attempt %d of %d)",
                    item_id,
                    attempt,
                    retries,
                )
                continue
            if after_write is not None:
                after_write(result)
            return result

    log.error("Giving up on availability update for '%s' after %d attempts", item_id, retries)
    raise ConcurrentModificationError(f"Availability of '{item_id}' kept changing; retry later")


def reserve(
    context: RuntimeContext,
    item_id: str,
    quantity: int,
    *,
    order_id: Optional[str] = None,
) -> ReservationToken:
    """Atomically move ``quantity`` units from available to allocated.

    Args:
        context (RuntimeContext): Runtime context providing the store and locks.
        item_id (str): Item to allocate.
        quantity (int): Units to reserve; must be positive.
        order_id (str | None): Order the reservation is made for, recorded on
            the token for traceability.

    Returns:
        ReservationToken: Receipt identifying exactly this allocation.

    Raises:
        InsufficientStock: If fewer than ``quantity`` units are available at
            the instant of the check. Carries the current available quantity.
        ConcurrentModificationError: If the conditional write keeps losing
            against writers outside this process.
        ValueError: If ``quantity`` is not positive.
    """

    require_positive_quantity(quantity)

    def mutation(record: AvailabilityRecord) -> Tuple[AvailabilityRecord, ReservationToken]:
        if record.qty_available < quantity:
            log.warning(
                "Insufficient stock for '%s': requested %d, available %d",
                item_id,
                quantity,
                record.qty_available,
            )
            raise InsufficientStock(item_id, quantity, record.qty_available)

        token = ReservationToken(
            token_id=generate_token_id(),
            item_id=item_id,
            quantity=quantity,
            order_id=order_id,
            issued_at=context.now(),
        )
        reservations = dict(record.reservations)
        reservations[token.token_id] = token
        updated = replace(
            record,
            qty_available=record.qty_available - quantity,
            qty_allocated=record.qty_allocated + quantity,
            reservations=reservations,
        )
        return updated, token

    token = _apply(context, item_id, mutation)
    log.info(
        "Reserved %d x '%s' (token=%s, order=%s)",
        quantity,
        item_id,
        token.token_id,
        order_id or "-",
    )
    return token


def _released_token(context: RuntimeContext, item_id: str, token_id: str) -> Optional[ReservationToken]:
    for entry in context.store.read_log(Collection.RESERVATION_HISTORY.value, item_id):
        if entry.body.get("tokenId") == token_id:
            return ReservationToken.from_document(entry.body)
    return None


def _record_release(context: RuntimeContext, token: ReservationToken) -> None:
    context.store.append_log(Collection.RESERVATION_HISTORY.value, token.item_id, token.to_document())


def _release_token(
    record: AvailabilityRecord,
    token_id: str,
    previously_released: Optional[ReservationToken] = None,
) -> Tuple[AvailabilityRecord, ReservationToken]:
    token = record.reservations.get(token_id)
    if token is None and previously_released is not None:
        return record, previously_released
    if token is None:
        log.error("Release of unknown reservation '%s' on '%s'", token_id, record.item_id)
        raise LedgerInvariantViolation(
            f"Reservation '{token_id}' was never issued for item '{record.item_id}'"
        )
    if token.status is ReservationStatus.RELEASED:
        return record, token
    if token.quantity > record.qty_allocated:
        log.error(
            "Release of %d x '%s' exceeds allocated quantity %d",
            token.quantity,
            record.item_id,
            record.qty_allocated,
        )
        raise LedgerInvariantViolation(
            f"Releasing {token.quantity} of '{record.item_id}' exceeds the "
            f"{record.qty_allocated} allocated"
        )

    released = replace(token, status=ReservationStatus.RELEASED)
    reservations = dict(record.reservations)
    del reservations[token_id]
    updated = replace(
        record,
        qty_available=record.qty_available + token.quantity,
        qty_allocated=record.qty_allocated - token.quantity,
        reservations=reservations,
    )
    return updated, released


def release(context: RuntimeContext, item_id: str, token_id: str) -> ReservationToken:
    """Return the units held by a previously issued reservation.

    Releasing a token that was already released is a no-op, so a caller that
    is unsure whether its earlier release committed may simply repeat it.

    Raises:
        LedgerInvariantViolation: If the token was never issued for
            ``item_id`` or releasing it would drive the allocated quantity
            negative.
    """

    def mutation(record: AvailabilityRecord) -> Tuple[AvailabilityRecord, Tuple[bool, ReservationToken]]:
        previous = None
        if token_id not in record.reservations:
            previous = _released_token(context, item_id, token_id)
        updated, token = _release_token(record, token_id, previous)
        return updated, (updated is not record, token)

    changed, token = _apply(
        context,
        item_id,
        mutation,
        after_write=lambda result: _record_release(context, result[1]),
    )
    if changed:
        log.info("Released %d x '%s' (token=%s)", token.quantity, item_id, token_id)
    else:
        log.debug("Reservation '%s' on '%s' was already released", token_id, item_id)
    return token


def release_quantity(context: RuntimeContext, item_id: str, quantity: int) -> ReservationToken:
    """Release the oldest outstanding reservation of exactly ``quantity`` units.

    Raises:
        LedgerInvariantViolation: If no active reservation of that size exists.
        ValueError: If ``quantity`` is not positive.
    """

    require_positive_quantity(quantity)

    def mutation(record: AvailabilityRecord) -> Tuple[AvailabilityRecord, ReservationToken]:
        candidates = [
            token
            for token in record.reservations.values()
            if token.status is ReservationStatus.ACTIVE and token.quantity == quantity
        ]
        if not candidates:
            log.error("No outstanding reservation of %d x '%s' to release", quantity, item_id)
            raise LedgerInvariantViolation(
                f"No outstanding reservation of {quantity} units for item '{item_id}'"
            )
        # Stored bodies sort their keys, so age comes from issued_at, not map order.
        oldest = min(candidates, key=lambda token: token.issued_at.isoformat() if token.issued_at else "")
        return _release_token(record, oldest.token_id)

    token = _apply(context, item_id, mutation, after_write=lambda token: _record_release(context, token))
    log.info("Released %d x '%s' (token=%s)", quantity, item_id, token.token_id)
    return token


def adjust_stock(context: RuntimeContext, item_id: str, delta: int) -> AvailabilitySnapshot:
    """Apply an external stock adjustment (receipt, write-off, count correction).

    This is the only operation that changes ``qtyAvailable + qtyAllocated``.
    Allocated units are never touched, so outstanding reservations stay valid.

    Raises:
        InsufficientStock: If removing ``-delta`` units would drive the
            available quantity negative.
    """

    def mutation(record: AvailabilityRecord) -> Tuple[AvailabilityRecord, AvailabilityRecord]:
        if delta == 0:
            return record, record
        if record.qty_available + delta < 0:
            log.warning(
                "Rejected stock adjustment of %d for '%s': only %d available",
                delta,
                item_id,
                record.qty_available,
            )
            raise InsufficientStock(item_id, -delta, record.qty_available)
        updated = replace(record, qty_available=record.qty_available + delta)
        return updated, updated

    record = _apply(context, item_id, mutation)
    log.info(
        "Adjusted stock of '%s' by %+d (available=%d, allocated=%d)",
        item_id,
        delta,
        record.qty_available,
        record.qty_allocated,
    )
    return snapshot(record)


def initialize_availability(
    context: RuntimeContext,
    item_id: str,
    qty_available: int,
    *,
    state: AvailabilityState = AvailabilityState.IN_STOCK,
    eta_date: Optional[str] = None,
    batch_name: Optional[str] = None,
) -> AvailabilitySnapshot:
    """Create the availability record of an item that has none yet.

    Raises:
        BusinessRuleViolation: If the item already has a record; later changes
            go through :func:`adjust_stock`.
        ValueError: If ``qty_available`` is negative.
    """

    if qty_available < 0:
        log.error("Initial stock validation failed: %s", qty_available)
        raise ValueError("Initial stock must be zero or positive")

    with context.locks.hold(LOCK_NAMESPACE, item_id):
        if context.store.read(Collection.AVAILABILITY.value, item_id) is not None:
            raise BusinessRuleViolation(f"Availability for '{item_id}' already exists")
        record = AvailabilityRecord(
            item_id=item_id,
            qty_available=qty_available,
            state=state,
            eta_date=eta_date,
            batch_name=batch_name,
        )
        context.store.write(
            Collection.AVAILABILITY.value, item_id, record.to_document(), expected_version=0
        )

    log.info("Initialised availability of '%s' with %d units (%s)", item_id, qty_available, state.value)
    return snapshot(record)


def set_availability_state(
    context: RuntimeContext,
    item_id: str,
    state: AvailabilityState,
    *,
    eta_date: Optional[str] = None,
    batch_name: Optional[str] = None,
) -> AvailabilitySnapshot:
    """Change how an item's stock is described to dealers; quantities stay put."""

    def mutation(record: AvailabilityRecord) -> Tuple[AvailabilityRecord, AvailabilityRecord]:
        updated = replace(record, state=state, eta_date=eta_date, batch_name=batch_name)
        return updated, updated

    record = _apply(context, item_id, mutation)
    log.info("Availability state of '%s' set to %s", item_id, state.value)
    return snapshot(record)


def snapshot(record: AvailabilityRecord) -> AvailabilitySnapshot:
    return AvailabilitySnapshot(
        item_id=record.item_id,
        qty_available=record.qty_available,
        qty_allocated=record.qty_allocated,
        state=record.state,
        eta_date=record.eta_date,
        batch_name=record.batch_name,
    )


def check_availability(context: RuntimeContext, item_id: str) -> AvailabilitySnapshot:
    """Return the available and allocated quantities of ``item_id``.

    An item without a record reads as zero stock.
    """

    record, _ = _load(context, item_id)
    return snapshot(record)
