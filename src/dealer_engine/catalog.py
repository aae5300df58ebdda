"""Reads and writes of the reference data the engine prices against.

Accounts and catalog items are owned by external collaborators; the helpers
here are the narrow seam through which they enter the store, plus the lookups
the pricing and lifecycle modules depend on.
"""

from __future__ import annotations

from dataclasses import replace
from typing import Any, Mapping, Optional

from . import log
from .constants import Collection, Role
from .context import RuntimeContext
from .exceptions import (
    BusinessRuleViolation,
    ConcurrentModificationError,
    MissingReferenceError,
    VersionConflict,
)
from .models import Account, CatalogItem, PriceRecord, Principal, price_key


def _upsert(context: RuntimeContext, collection: Collection, key: str, body: Mapping[str, Any]) -> int:
    stored = context.store.read(collection.value, key)
    expected = stored.version if stored is not None else 0
    return context.store.write(collection.value, key, body, expected_version=expected)


def get_account(context: RuntimeContext, account_id: str) -> Account:
    """Resolve an account by identifier.

    Raises:
        MissingReferenceError: If the account is unknown.
    """

    stored = context.store.read(Collection.ACCOUNTS.value, account_id)
    if stored is None:
        log.warning("Account lookup failed for id '%s'", account_id)
        raise MissingReferenceError(f"Unknown account id: {account_id}")
    return Account.from_document(stored.body)


def register_account(context: RuntimeContext, account: Account) -> Account:
    """Create or replace an account record."""

    _upsert(context, Collection.ACCOUNTS, account.account_id, account.to_document())
    log.info(
        "Registered account '%s' (tier=%s, currency=%s)",
        account.account_id,
        account.tier_id,
        account.currency,
    )
    return account


def principal_for(context: RuntimeContext, account_id: Optional[str], role: Role) -> Principal:
    """Build the principal for ``account_id`` acting with ``role``.

    Admins may act without an account. Trade roles take their tier and
    currency from the stored account, mirroring the claims the identity
    collaborator issues.
    """

    if account_id is None:
        if role is not Role.ADMIN:
            raise MissingReferenceError(f"A {role.value} principal requires an account id")
        return Principal(account_id=None, role=role)

    account = get_account(context, account_id)
    return Principal(
        account_id=account.account_id,
        role=role,
        tier_id=account.tier_id,
        currency=account.currency,
    )


def get_catalog_item(context: RuntimeContext, item_id: str) -> CatalogItem:
    """Resolve a catalog item by identifier.

    Raises:
        MissingReferenceError: If the item is unknown.
    """

    stored = context.store.read(Collection.CATALOG.value, item_id)
    if stored is None:
        log.warning("Catalog lookup failed for id '%s'", item_id)
        raise MissingReferenceError(f"Unknown catalog item: {item_id}")
    return CatalogItem.from_document(stored.body)


def register_catalog_item(context: RuntimeContext, item: CatalogItem) -> CatalogItem:
    """Create or replace a catalog item.

    Raises:
        BusinessRuleViolation: If the stored item is already referenced by an
            order; its options and SKU are frozen from then on.
    """

    stored = context.store.read(Collection.CATALOG.value, item.item_id)
    if stored is not None:
        existing = CatalogItem.from_document(stored.body)
        if existing.referenced:
            log.warning("Refused to replace referenced catalog item '%s'", item.item_id)
            raise BusinessRuleViolation(
                f"Catalog item '{item.item_id}' is referenced by orders and cannot change"
            )
    expected = stored.version if stored is not None else 0
    item = replace(item, referenced=False)
    context.store.write(Collection.CATALOG.value, item.item_id, item.to_document(), expected_version=expected)
    log.info("Registered catalog item '%s' (sku=%s, %d options)", item.item_id, item.sku, len(item.options))
    return item


def mark_referenced(context: RuntimeContext, item_id: str) -> CatalogItem:
    """Flag an item as referenced by an order, freezing its definition."""

    for _ in range(context.settings.max_write_retries):
        stored = context.store.read(Collection.CATALOG.value, item_id)
        if stored is None:
            raise MissingReferenceError(f"Unknown catalog item: {item_id}")
        item = CatalogItem.from_document(stored.body)
        if item.referenced:
            return item

        item = replace(item, referenced=True)
        try:
            context.store.write(
                Collection.CATALOG.value, item_id, item.to_document(), expected_version=stored.version
            )
        except VersionConflict:
            continue
        log.debug("Catalog item '%s' is now referenced", item_id)
        return item

    raise ConcurrentModificationError(f"Could not mark catalog item '{item_id}' as referenced")


def find_price_record(context: RuntimeContext, item_id: str, currency: str) -> Optional[PriceRecord]:
    """Return the price record for ``(item_id, currency)`` or ``None``."""

    stored = context.store.read(Collection.PRICES.value, price_key(item_id, currency))
    if stored is None:
        return None
    return PriceRecord.from_document(stored.body)


def set_price_record(context: RuntimeContext, record: PriceRecord) -> PriceRecord:
    """Create or replace the price record of one item in one currency."""

    _upsert(context, Collection.PRICES, record.key, record.to_document())
    log.info(
        "Stored price record '%s' (base=%s, %d tiers, %d overrides)",
        record.key,
        record.base_price,
        len(record.tier_prices),
        len(record.account_overrides),
    )
    return record
