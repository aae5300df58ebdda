"""Tests for the Availability Ledger: conservation, tokens, and mutual exclusion."""

from __future__ import annotations

import json
import threading
from dataclasses import replace

import pytest

from dealer_engine import ledger
from dealer_engine.constants import AvailabilityState, Collection, ReservationStatus
from dealer_engine.context import RuntimeContext
from dealer_engine.exceptions import (
    BusinessRuleViolation,
    ConcurrentModificationError,
    InsufficientStock,
    LedgerInvariantViolation,
    VersionConflict,
)
from dealer_engine.models import AvailabilityRecord
from dealer_engine.store import InMemoryDocumentStore

from conftest import FIXED_NOW


class _ContendedStore(InMemoryDocumentStore):
    """Store that loses the first ``conflicts`` availability writes to a phantom writer."""

    def __init__(self, conflicts: int) -> None:
        super().__init__()
        self.conflicts = conflicts
        self.attempts = 0

    def write(self, collection, key, body, *, expected_version):
        if collection == Collection.AVAILABILITY.value and expected_version > 0:
            self.attempts += 1
            if self.conflicts > 0:
                self.conflicts -= 1
                raise VersionConflict(collection, key, expected_version, expected_version + 1)
        return super().write(collection, key, body, expected_version=expected_version)


@pytest.fixture
def stocked(context):
    ledger.initialize_availability(context, "STRAT", 5)
    return context


def _totals(context, item_id="STRAT"):
    snapshot = ledger.check_availability(context, item_id)
    return snapshot.qty_available, snapshot.qty_allocated


def _record(context, item_id="STRAT"):
    return AvailabilityRecord.from_document(context.store.read(Collection.AVAILABILITY.value, item_id).body)


def _history(context, item_id="STRAT"):
    return [entry.body["tokenId"] for entry in context.store.read_log(Collection.RESERVATION_HISTORY.value, item_id)]


# ---------------------------------------------------------------------------
# Reserve
# ---------------------------------------------------------------------------


def test_reserve_moves_units_to_allocated(stocked):
    token = ledger.reserve(stocked, "STRAT", 3, order_id="O1")

    assert _totals(stocked) == (2, 3)
    assert token.quantity == 3
    assert token.order_id == "O1"
    assert token.issued_at == FIXED_NOW
    assert token.token_id.startswith("R")


def test_reserve_exact_remaining_stock(stocked):
    ledger.reserve(stocked, "STRAT", 5)

    assert _totals(stocked) == (0, 5)


def test_insufficient_stock_reports_available_and_changes_nothing(stocked):
    ledger.reserve(stocked, "STRAT", 4)

    with pytest.raises(InsufficientStock) as excinfo:
        ledger.reserve(stocked, "STRAT", 2)

    assert (excinfo.value.requested, excinfo.value.available) == (2, 1)
    assert _totals(stocked) == (1, 4)


def test_reserve_without_record_reports_zero_available(context):
    with pytest.raises(InsufficientStock) as excinfo:
        ledger.reserve(context, "GHOST", 1)

    assert excinfo.value.available == 0
    assert context.store.read(Collection.AVAILABILITY.value, "GHOST") is None


@pytest.mark.parametrize("quantity", [0, -1])
def test_reserve_rejects_non_positive_quantity(stocked, quantity):
    with pytest.raises(ValueError):
        ledger.reserve(stocked, "STRAT", quantity)


# ---------------------------------------------------------------------------
# Release
# ---------------------------------------------------------------------------


def test_release_returns_exactly_the_reserved_units(stocked):
    token = ledger.reserve(stocked, "STRAT", 3)

    released = ledger.release(stocked, "STRAT", token.token_id)

    assert released.status is ReservationStatus.RELEASED
    assert _totals(stocked) == (5, 0)


def test_release_is_idempotent_for_a_released_token(stocked):
    token = ledger.reserve(stocked, "STRAT", 3)
    ledger.reserve(stocked, "STRAT", 1)

    ledger.release(stocked, "STRAT", token.token_id)
    ledger.release(stocked, "STRAT", token.token_id)

    assert _totals(stocked) == (4, 1)


def test_released_token_moves_from_record_to_history(stocked):
    token = ledger.reserve(stocked, "STRAT", 2)
    kept = ledger.reserve(stocked, "STRAT", 1)

    ledger.release(stocked, "STRAT", token.token_id)

    assert list(_record(stocked).reservations) == [kept.token_id]
    assert _history(stocked) == [token.token_id]


def test_repeated_release_is_logged_once(stocked):
    token = ledger.reserve(stocked, "STRAT", 3)

    first = ledger.release(stocked, "STRAT", token.token_id)
    again = ledger.release(stocked, "STRAT", token.token_id)

    assert again == first
    assert again.status is ReservationStatus.RELEASED
    assert _history(stocked) == [token.token_id]


def test_record_stays_bounded_across_many_reserve_release_cycles(stocked):
    """Only outstanding reservations are stored, however many have come and gone."""

    tokens = []
    for _ in range(300):
        token = ledger.reserve(stocked, "STRAT", 1)
        ledger.release(stocked, "STRAT", token.token_id)
        tokens.append(token)

    stored = stocked.store.read(Collection.AVAILABILITY.value, "STRAT")
    assert stored.body["reservations"] == {}
    assert len(json.dumps(stored.body)) < 500
    assert len(_history(stocked)) == 300

    ledger.release(stocked, "STRAT", tokens[0].token_id)
    assert _totals(stocked) == (5, 0)


def test_release_of_unknown_token_is_an_invariant_violation(stocked):
    with pytest.raises(LedgerInvariantViolation):
        ledger.release(stocked, "STRAT", "R-never-issued")


def test_release_beyond_allocated_is_an_invariant_violation(stocked):
    """A corrupted record whose token exceeds the allocation must not be released."""

    token = ledger.reserve(stocked, "STRAT", 3)
    stored = stocked.store.read(Collection.AVAILABILITY.value, "STRAT")
    body = dict(stored.body, qtyAllocated=1)
    stocked.store.write(Collection.AVAILABILITY.value, "STRAT", body, expected_version=stored.version)

    with pytest.raises(LedgerInvariantViolation):
        ledger.release(stocked, "STRAT", token.token_id)


def test_release_quantity_releases_matching_reservation(stocked):
    first = ledger.reserve(stocked, "STRAT", 2)
    ledger.reserve(stocked, "STRAT", 1)

    released = ledger.release_quantity(stocked, "STRAT", 2)

    assert released.token_id == first.token_id
    assert _totals(stocked) == (4, 1)
    assert _history(stocked) == [first.token_id]


def test_release_quantity_without_exact_match_fails(stocked):
    ledger.reserve(stocked, "STRAT", 2)

    with pytest.raises(LedgerInvariantViolation):
        ledger.release_quantity(stocked, "STRAT", 3)

    assert _totals(stocked) == (3, 2)


def test_reserve_release_sequences_conserve_total(stocked):
    """Any interleaving of reserves and releases keeps available + allocated at 5."""

    tokens = []
    for quantity in (1, 2, 1):
        tokens.append(ledger.reserve(stocked, "STRAT", quantity))
        assert _record(stocked).total == 5
    for token in (tokens[1], tokens[0]):
        ledger.release(stocked, "STRAT", token.token_id)
        assert _record(stocked).total == 5
    tokens.append(ledger.reserve(stocked, "STRAT", 4))

    assert _totals(stocked) == (0, 5)


# ---------------------------------------------------------------------------
# Stock adjustments and state
# ---------------------------------------------------------------------------


def test_adjust_stock_changes_available_only(stocked):
    ledger.reserve(stocked, "STRAT", 2)

    snapshot = ledger.adjust_stock(stocked, "STRAT", 10)

    assert (snapshot.qty_available, snapshot.qty_allocated) == (13, 2)


def test_adjust_stock_cannot_drive_available_negative(stocked):
    ledger.reserve(stocked, "STRAT", 4)

    with pytest.raises(InsufficientStock):
        ledger.adjust_stock(stocked, "STRAT", -2)

    assert _totals(stocked) == (1, 4)


def test_adjust_stock_creates_missing_record(context):
    snapshot = ledger.adjust_stock(context, "NEW", 3)

    assert snapshot.qty_available == 3


def test_initialize_twice_is_rejected(stocked):
    with pytest.raises(BusinessRuleViolation):
        ledger.initialize_availability(stocked, "STRAT", 1)


def test_set_availability_state_keeps_quantities(stocked):
    ledger.reserve(stocked, "STRAT", 1)

    snapshot = ledger.set_availability_state(
        stocked, "STRAT", AvailabilityState.BATCH, eta_date="2025-06-01", batch_name="Spring run"
    )

    assert snapshot.state is AvailabilityState.BATCH
    assert snapshot.batch_name == "Spring run"
    assert (snapshot.qty_available, snapshot.qty_allocated) == (4, 1)


def test_check_availability_of_unknown_item_reads_as_zero(context):
    snapshot = ledger.check_availability(context, "GHOST")

    assert (snapshot.qty_available, snapshot.qty_allocated) == (0, 0)
    assert snapshot.state is AvailabilityState.IN_STOCK


# ---------------------------------------------------------------------------
# Concurrency
# ---------------------------------------------------------------------------


@pytest.mark.parametrize("callers, stock", [(20, 7), (5, 10)])
def test_concurrent_reserves_never_oversell(context, callers, stock):
    """N concurrent single-unit reserves against K units succeed exactly min(N, K) times."""

    ledger.initialize_availability(context, "STRAT", stock)
    barrier = threading.Barrier(callers)
    outcomes = []
    outcomes_lock = threading.Lock()

    def worker():
        barrier.wait()
        try:
            ledger.reserve(context, "STRAT", 1)
            result = "ok"
        except InsufficientStock:
            result = "short"
        with outcomes_lock:
            outcomes.append(result)

    threads = [threading.Thread(target=worker) for _ in range(callers)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert outcomes.count("ok") == min(callers, stock)
    assert outcomes.count("short") == max(callers - stock, 0)
    assert _totals(context) == (max(stock - callers, 0), min(callers, stock))


def test_version_conflicts_are_retried(settings):
    store = _ContendedStore(conflicts=2)
    contended = RuntimeContext(settings=settings, store=store, clock=lambda: FIXED_NOW)
    ledger.initialize_availability(contended, "STRAT", 5)

    ledger.reserve(contended, "STRAT", 1)

    assert store.attempts == 3
    assert _totals(contended) == (4, 1)


def test_retry_budget_exhaustion_surfaces_concurrent_modification(settings):
    store = _ContendedStore(conflicts=10)
    contended = RuntimeContext(
        settings=replace(settings, max_write_retries=2), store=store, clock=lambda: FIXED_NOW
    )
    ledger.initialize_availability(contended, "STRAT", 5)

    with pytest.raises(ConcurrentModificationError):
        ledger.reserve(contended, "STRAT", 1)

    assert store.attempts == 2
    assert _totals(contended) == (5, 0)
