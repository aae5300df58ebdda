"""Price Resolver.

Computes the authoritative unit price of a catalog item for an account before
option adjustments. Resolution precedence, highest first:

1. an account-specific override in the price record;
2. an active promo, applied as a discount to whatever rule 3 or 4 produced;
3. a matching quantity break, else the tier price of the account's tier;
4. the base price.

An override is final: promos never stack on top of it. No currency
conversion happens here.
"""

from __future__ import annotations

from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional, Tuple

from . import catalog, log
from .constants import PRICE_QUANTUM, PriceSource, PromoKind
from .context import RuntimeContext
from .exceptions import CurrencyMismatch, PriceNotFound
from .models import Account, Money, PriceQuote, PriceRecord, Promo


def quantize_price(amount: Decimal) -> Decimal:
    """Round a monetary amount to cents, half up."""

    return amount.quantize(PRICE_QUANTUM, rounding=ROUND_HALF_UP)


def apply_promo(price: Decimal, promo: Promo) -> Decimal:
    """Discount ``price`` by ``promo``; the result is never negative.

    A fixed promo price only applies when it undercuts ``price``.
    """

    if promo.kind is PromoKind.PERCENT_OFF:
        percent = min(max(promo.amount, Decimal("0")), Decimal("100"))
        discounted = price * (Decimal("100") - percent) / Decimal("100")
    elif promo.kind is PromoKind.AMOUNT_OFF:
        discounted = price - promo.amount
    else:
        discounted = min(price, promo.amount)
    return max(discounted, Decimal("0"))


def _list_price(record: PriceRecord, account: Account, quantity: int) -> Tuple[Decimal, PriceSource, Optional[str]]:
    for entry in sorted(record.quantity_breaks, key=lambda item: item.min_quantity, reverse=True):
        if entry.matches(quantity):
            return entry.price, PriceSource.QUANTITY_BREAK, None

    tier_price = record.tier_prices.get(account.tier_id)
    if tier_price is not None:
        return tier_price, PriceSource.TIER, account.tier_id

    return record.base_price, PriceSource.BASE, None


def compute_price(
    record: Optional[PriceRecord],
    account: Account,
    item_id: str,
    currency: str,
    *,
    as_of: datetime,
    quantity: int = 1,
) -> PriceQuote:
    """Apply the precedence rules to an already loaded price record.

    The function is pure: identical arguments always produce an identical
    quote.

    Raises:
        PriceNotFound: If ``record`` is ``None``.
        CurrencyMismatch: If the account trades in another currency and holds
            no override in ``currency``.
        ValueError: If ``quantity`` is not positive.
    """

    if quantity <= 0:
        raise ValueError("Quantity must be greater than zero")

    currency = currency.upper()
    if record is None:
        raise PriceNotFound(item_id, currency)

    override = record.account_overrides.get(account.account_id)
    if override is not None:
        return PriceQuote(
            item_id=item_id,
            account_id=account.account_id,
            unit_price=Money(quantize_price(override), currency),
            source=PriceSource.ACCOUNT_OVERRIDE,
            tier_id=account.tier_id,
            as_of=as_of,
        )

    if account.currency.upper() != currency:
        raise CurrencyMismatch(account.account_id, account.currency, currency)

    price, source, tier_id = _list_price(record, account, quantity)
    promo_applied = record.promo is not None and record.promo.is_active(as_of)
    if promo_applied:
        price = apply_promo(price, record.promo)

    return PriceQuote(
        item_id=item_id,
        account_id=account.account_id,
        unit_price=Money(quantize_price(price), currency),
        source=source,
        promo_applied=promo_applied,
        tier_id=tier_id,
        as_of=as_of,
    )


def resolve_price(
    context: RuntimeContext,
    item_id: str,
    account_id: str,
    currency: str,
    *,
    as_of: Optional[datetime] = None,
    quantity: int = 1,
) -> PriceQuote:
    """Resolve the unit price of ``item_id`` for ``account_id`` in ``currency``.

    Reads the account and the price record as of the call and delegates to
    :func:`compute_price`. Side-effect free; safe to call concurrently.

    Raises:
        MissingReferenceError: If the account is unknown.
        PriceNotFound: If no price record exists for ``(item_id, currency)``.
        CurrencyMismatch: See :func:`compute_price`.
    """

    when = as_of if as_of is not None else context.now()
    account = catalog.get_account(context, account_id)
    record = catalog.find_price_record(context, item_id, currency)
    try:
        quote = compute_price(record, account, item_id, currency, as_of=when, quantity=quantity)
    except (PriceNotFound, CurrencyMismatch) as exc:
        log.warning("Price resolution failed for item '%s', account '%s': %s", item_id, account_id, exc)
        raise

    log.debug(
        "Resolved %s for item '%s', account '%s' via %s%s",
        quote.unit_price,
        item_id,
        account_id,
        quote.source.value,
        " + promo" if quote.promo_applied else "",
    )
    return quote
