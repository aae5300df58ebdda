"""Error taxonomy for the pricing and order allocation engine.

Pricing, option and authorization errors are returned to callers unmodified;
none of them are transient. ``LedgerInvariantViolation`` signals a broken
conservation invariant and must never be absorbed.
"""

from __future__ import annotations

from typing import Optional


class EngineError(Exception):
    """Root of every error raised by the engine."""


class BusinessRuleViolation(EngineError):
    """Raised when a requested operation violates a domain constraint."""


class MissingReferenceError(BusinessRuleViolation):
    """Raised when a referenced item, account, or order is unknown."""


class PriceNotFound(BusinessRuleViolation):
    """No price record exists for the item in the requested currency."""

    def __init__(self, item_id: str, currency: str) -> None:
        super().__init__(f"No price for item '{item_id}' in {currency}")
        self.item_id = item_id
        self.currency = currency


class CurrencyMismatch(BusinessRuleViolation):
    """The account trades in another currency and has no override in this one."""

    def __init__(self, account_id: str, account_currency: str, requested_currency: str) -> None:
        super().__init__(
            f"Account '{account_id}' trades in {account_currency}, not {requested_currency}"
        )
        self.account_id = account_id
        self.account_currency = account_currency
        self.requested_currency = requested_currency


class MissingRequiredOption(BusinessRuleViolation):
    """A required option was not selected."""

    def __init__(self, item_id: str, option_id: str, label: Optional[str] = None) -> None:
        super().__init__(f"Item '{item_id}' requires a selection for option '{option_id}'")
        self.item_id = item_id
        self.option_id = option_id
        self.label = label or option_id


class UnknownOptionValue(BusinessRuleViolation):
    """A selection names a value (or option) the item does not define."""

    def __init__(self, item_id: str, option_id: str, value_id: str) -> None:
        super().__init__(
            f"Item '{item_id}' has no value '{value_id}' for option '{option_id}'"
        )
        self.item_id = item_id
        self.option_id = option_id
        self.value_id = value_id


class InsufficientStock(BusinessRuleViolation):
    """Not enough uncommitted stock to satisfy a reservation."""

    def __init__(self, item_id: str, requested: int, available: int) -> None:
        super().__init__(
            f"Insufficient stock for item '{item_id}': requested {requested}, available {available}"
        )
        self.item_id = item_id
        self.requested = requested
        self.available = available


class InvalidTransition(BusinessRuleViolation):
    """The order state machine has no edge from ``current`` to ``target``."""

    def __init__(self, order_id: str, current: str, target: str) -> None:
        super().__init__(f"Order '{order_id}' cannot move from {current} to {target}")
        self.order_id = order_id
        self.current = current
        self.target = target


class Unauthorized(BusinessRuleViolation):
    """The acting principal may not perform the requested operation."""


class EmptyOrderError(BusinessRuleViolation):
    """An order without lines cannot be submitted."""


class ConcurrentModificationError(EngineError):
    """A conditional write lost against a concurrent writer; the caller may retry."""


class VersionConflict(ConcurrentModificationError):
    """The stored document version differs from the expected one."""

    def __init__(self, collection: str, key: str, expected: int, actual: int) -> None:
        super().__init__(
            f"Version conflict on {collection}/{key}: expected {expected}, found {actual}"
        )
        self.collection = collection
        self.key = key
        self.expected = expected
        self.actual = actual


class LedgerInvariantViolation(EngineError):
    """Fatal: a release would break the conservation of allocated stock."""


def describe_error(error: Exception) -> str:
    """Return the dealer-facing message for an engine error.

    The quantity and field context carried by each error is load-bearing for
    dealers, so every known kind gets a specific message rather than a
    generic failure string.
    """

    if isinstance(error, InsufficientStock):
        unit = "unit" if error.available == 1 else "units"
        return (
            f"Only {error.available} {unit} of {error.item_id} available "
            f"(requested {error.requested})."
        )
    if isinstance(error, MissingRequiredOption):
        return f"Please select a value for '{error.label}'."
    if isinstance(error, UnknownOptionValue):
        return f"'{error.value_id}' is not a valid choice for '{error.option_id}'."
    if isinstance(error, PriceNotFound):
        return f"{error.item_id} is not priced in {error.currency}."
    if isinstance(error, CurrencyMismatch):
        return (
            f"Your account is billed in {error.account_currency}; "
            f"prices in {error.requested_currency} are not available."
        )
    if isinstance(error, InvalidTransition):
        return f"An order in status {error.current} cannot be moved to {error.target}."
    if isinstance(error, Unauthorized):
        return f"You are not allowed to do that: {error}"
    if isinstance(error, EmptyOrderError):
        return "Add at least one guitar to the order before submitting."
    if isinstance(error, ConcurrentModificationError):
        return "The record changed while you were working on it; reload and check its status."
    if isinstance(error, LedgerInvariantViolation):
        return "Inventory records are inconsistent; contact support before retrying."
    return str(error)

