"""Enumerations shared across the dealer engine modules.

Centralises domain constants so that the persistence layer, the pricing and
allocation logic, and the CLI agree on a single source of truth for roles,
statuses, and storage names.
"""

from __future__ import annotations

from decimal import Decimal
from enum import Enum


# Central schema version expected by all layers when validating workbooks.
EXPECTED_SCHEMA_VERSION = "1.0.0"

# Monetary amounts are quantised to cents.
PRICE_QUANTUM = Decimal("0.01")


class Role(str, Enum):
    """Roles carried by the acting principal."""

    ADMIN = "ADMIN"
    DISTRIBUTOR = "DISTRIBUTOR"
    DEALER = "DEALER"


class OrderStatus(str, Enum):
    """States of the order lifecycle."""

    DRAFT = "DRAFT"
    SUBMITTED = "SUBMITTED"
    APPROVED = "APPROVED"
    IN_PRODUCTION = "IN_PRODUCTION"
    SHIPPED = "SHIPPED"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


class OptionKind(str, Enum):
    """How a configurable option is selected."""

    ENUMERATED = "ENUMERATED"
    NUMERIC = "NUMERIC"


class PromoKind(str, Enum):
    """Supported promotional discount shapes."""

    PERCENT_OFF = "PERCENT_OFF"
    AMOUNT_OFF = "AMOUNT_OFF"
    FIXED_PRICE = "FIXED_PRICE"


class PriceSource(str, Enum):
    """Rule that produced a resolved unit price."""

    ACCOUNT_OVERRIDE = "ACCOUNT_OVERRIDE"
    QUANTITY_BREAK = "QUANTITY_BREAK"
    TIER = "TIER"
    BASE = "BASE"


class ItemStatus(str, Enum):
    """Catalog item visibility."""

    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"


class AvailabilityState(str, Enum):
    """Supply state advertised alongside stock quantities."""

    IN_STOCK = "IN_STOCK"
    PREORDER = "PREORDER"
    BATCH = "BATCH"


class ReservationStatus(str, Enum):
    """Lifecycle of a single reservation token."""

    ACTIVE = "ACTIVE"
    RELEASED = "RELEASED"


class Collection(str, Enum):
    """Document collections managed by the persistence collaborator."""

    ACCOUNTS = "accounts"
    CATALOG = "catalog"
    PRICES = "prices"
    AVAILABILITY = "availability"
    ORDERS = "orders"
    ORDER_HISTORY = "order_history"
    RESERVATION_HISTORY = "reservation_history"


class SheetName(str, Enum):
    """Enumerate the workbook sheet names managed by the DAL."""

    DOCUMENTS = "Documents"
    LOGS = "Logs"


__all__ = [
    "EXPECTED_SCHEMA_VERSION",
    "PRICE_QUANTUM",
    "Role",
    "OrderStatus",
    "OptionKind",
    "PromoKind",
    "PriceSource",
    "ItemStatus",
    "AvailabilityState",
    "ReservationStatus",
    "Collection",
    "SheetName",
]
