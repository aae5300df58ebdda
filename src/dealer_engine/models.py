"""Domain records for pricing, allocation, and orders.

Every record is a frozen dataclass with a ``to_document``/``from_document``
pair. Documents are plain JSON-compatible dictionaries: decimals travel as
strings and datetimes as ISO-8601 text so the persistence collaborator never
has to know about Python types.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from decimal import Decimal
from typing import Any, Dict, Mapping, Optional, Tuple

from .constants import (
    AvailabilityState,
    ItemStatus,
    OptionKind,
    OrderStatus,
    PriceSource,
    PromoKind,
    ReservationStatus,
    Role,
)


def _decimal(raw: Any, default: str = "0") -> Decimal:
    return Decimal(str(raw)) if raw is not None else Decimal(default)


def _optional_decimal(raw: Any) -> Optional[Decimal]:
    return Decimal(str(raw)) if raw is not None else None


def as_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC so they compare with the engine clock."""

    return value.replace(tzinfo=UTC) if value.tzinfo is None else value


def _datetime(raw: Optional[str]) -> Optional[datetime]:
    return as_utc(datetime.fromisoformat(raw)) if raw else None


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


# ---------------------------------------------------------------------------
# Identity
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Principal:
    """The acting caller, passed explicitly into every engine operation."""

    account_id: Optional[str]
    role: Role
    tier_id: Optional[str] = None
    currency: Optional[str] = None

    @property
    def is_admin(self) -> bool:
        return self.role is Role.ADMIN

    @property
    def is_trade(self) -> bool:
        return self.role in (Role.DEALER, Role.DISTRIBUTOR)

    def describe(self) -> str:
        return f"{self.role.value}:{self.account_id or '-'}"


@dataclass(frozen=True)
class Account:
    """Dealer or distributor account, owned by the identity collaborator."""

    account_id: str
    name: str
    tier_id: str
    currency: str
    territory: Optional[str] = None
    payment_terms: Optional[str] = None

    def to_document(self) -> Dict[str, Any]:
        return {
            "accountId": self.account_id,
            "name": self.name,
            "tierId": self.tier_id,
            "currency": self.currency,
            "territory": self.territory,
            "terms": self.payment_terms,
        }

    @classmethod
    def from_document(cls, document: Mapping[str, Any]) -> "Account":
        return cls(
            account_id=str(document["accountId"]),
            name=str(document.get("name") or document["accountId"]),
            tier_id=str(document["tierId"]),
            currency=str(document["currency"]),
            territory=document.get("territory"),
            payment_terms=document.get("terms"),
        )


@dataclass(frozen=True)
class Money:
    """A signed amount in a single ISO currency."""

    amount: Decimal
    currency: str

    def __str__(self) -> str:
        return f"{self.amount} {self.currency}"


# ---------------------------------------------------------------------------
# Catalog
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class OptionValue:
    """One selectable value of an enumerated option."""

    value_id: str
    label: str
    sku_suffix: str = ""
    price_adjustment: Decimal = Decimal("0")
    images: Tuple[str, ...] = ()

    def to_document(self) -> Dict[str, Any]:
        return {
            "valueId": self.value_id,
            "label": self.label,
            "skuSuffix": self.sku_suffix,
            "priceAdjustment": str(self.price_adjustment),
            "images": list(self.images),
        }

    @classmethod
    def from_document(cls, document: Mapping[str, Any]) -> "OptionValue":
        return cls(
            value_id=str(document["valueId"]),
            label=str(document.get("label") or document["valueId"]),
            sku_suffix=str(document.get("skuSuffix") or ""),
            price_adjustment=_decimal(document.get("priceAdjustment")),
            images=tuple(document.get("images") or ()),
        )


@dataclass(frozen=True)
class Option:
    """A configurable option of a catalog item."""

    option_id: str
    label: str
    kind: OptionKind = OptionKind.ENUMERATED
    required: bool = False
    values: Tuple[OptionValue, ...] = ()

    def __post_init__(self) -> None:
        seen = set()
        for value in self.values:
            if value.value_id in seen:
                raise ValueError(
                    f"Duplicate value '{value.value_id}' in option '{self.option_id}'"
                )
            seen.add(value.value_id)
        if self.kind is OptionKind.NUMERIC and self.values:
            raise ValueError(f"Numeric option '{self.option_id}' cannot define values")

    def value_for(self, value_id: str) -> Optional[OptionValue]:
        for value in self.values:
            if value.value_id == value_id:
                return value
        return None

    def to_document(self) -> Dict[str, Any]:
        return {
            "optionId": self.option_id,
            "label": self.label,
            "type": self.kind.value,
            "required": self.required,
            "values": [value.to_document() for value in self.values],
        }

    @classmethod
    def from_document(cls, document: Mapping[str, Any]) -> "Option":
        return cls(
            option_id=str(document["optionId"]),
            label=str(document.get("label") or document["optionId"]),
            kind=OptionKind(str(document.get("type") or OptionKind.ENUMERATED.value).upper()),
            required=bool(document.get("required", False)),
            values=tuple(OptionValue.from_document(raw) for raw in document.get("values") or ()),
        )


@dataclass(frozen=True)
class CatalogItem:
    """A sellable guitar model with its base specs and configurable options.

    Items become immutable once an order references them so that historical
    prices and SKUs stay reconstructable.
    """

    item_id: str
    sku: str
    name: str
    series: str = ""
    specs: Mapping[str, str] = field(default_factory=dict)
    options: Tuple[Option, ...] = ()
    status: ItemStatus = ItemStatus.ACTIVE
    referenced: bool = False

    def __post_init__(self) -> None:
        seen = set()
        for option in self.options:
            if option.option_id in seen:
                raise ValueError(f"Duplicate option '{option.option_id}' on item '{self.item_id}'")
            seen.add(option.option_id)

    @property
    def is_active(self) -> bool:
        return self.status is ItemStatus.ACTIVE

    def to_document(self) -> Dict[str, Any]:
        return {
            "itemId": self.item_id,
            "sku": self.sku,
            "name": self.name,
            "series": self.series,
            "specs": dict(self.specs),
            "options": [option.to_document() for option in self.options],
            "status": self.status.value,
            "referenced": self.referenced,
        }

    @classmethod
    def from_document(cls, document: Mapping[str, Any]) -> "CatalogItem":
        return cls(
            item_id=str(document["itemId"]),
            sku=str(document["sku"]),
            name=str(document.get("name") or document["sku"]),
            series=str(document.get("series") or ""),
            specs={str(key): str(value) for key, value in (document.get("specs") or {}).items()},
            options=tuple(Option.from_document(raw) for raw in document.get("options") or ()),
            status=ItemStatus(document.get("status") or ItemStatus.ACTIVE.value),
            referenced=bool(document.get("referenced", False)),
        )


# ---------------------------------------------------------------------------
# Pricing
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Promo:
    """A time-boxed promotional discount."""

    kind: PromoKind
    amount: Decimal
    valid_until: datetime
    valid_from: Optional[datetime] = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "valid_until", as_utc(self.valid_until))
        if self.valid_from is not None:
            object.__setattr__(self, "valid_from", as_utc(self.valid_from))

    def is_active(self, as_of: datetime) -> bool:
        if self.valid_from is not None and as_of < self.valid_from:
            return False
        return self.valid_until >= as_of

    def to_document(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "amount": str(self.amount),
            "validFrom": _iso(self.valid_from),
            "validUntil": _iso(self.valid_until),
        }

    @classmethod
    def from_document(cls, document: Mapping[str, Any]) -> "Promo":
        return cls(
            kind=PromoKind(document["kind"]),
            amount=_decimal(document.get("amount")),
            valid_until=_datetime(document["validUntil"]),
            valid_from=_datetime(document.get("validFrom")),
        )


@dataclass(frozen=True)
class QuantityBreak:
    """Volume price applying to line quantities within ``[min, max]``."""

    min_quantity: int
    price: Decimal
    max_quantity: Optional[int] = None

    def matches(self, quantity: int) -> bool:
        if quantity < self.min_quantity:
            return False
        return self.max_quantity is None or quantity <= self.max_quantity

    def to_document(self) -> Dict[str, Any]:
        return {
            "minQuantity": self.min_quantity,
            "maxQuantity": self.max_quantity,
            "price": str(self.price),
        }

    @classmethod
    def from_document(cls, document: Mapping[str, Any]) -> "QuantityBreak":
        max_quantity = document.get("maxQuantity")
        return cls(
            min_quantity=int(document["minQuantity"]),
            price=_decimal(document["price"]),
            max_quantity=int(max_quantity) if max_quantity is not None else None,
        )


@dataclass(frozen=True)
class PriceRecord:
    """All price points of one item in one currency."""

    item_id: str
    currency: str
    base_price: Decimal
    tier_prices: Mapping[str, Decimal] = field(default_factory=dict)
    account_overrides: Mapping[str, Decimal] = field(default_factory=dict)
    promo: Optional[Promo] = None
    quantity_breaks: Tuple[QuantityBreak, ...] = ()

    @property
    def key(self) -> str:
        return price_key(self.item_id, self.currency)

    def to_document(self) -> Dict[str, Any]:
        return {
            "itemId": self.item_id,
            "currency": self.currency,
            "basePrice": str(self.base_price),
            "tierPrices": {tier: str(price) for tier, price in self.tier_prices.items()},
            "accountOverrides": {
                account: str(price) for account, price in self.account_overrides.items()
            },
            "promo": self.promo.to_document() if self.promo is not None else None,
            "quantityBreaks": [entry.to_document() for entry in self.quantity_breaks],
        }

    @classmethod
    def from_document(cls, document: Mapping[str, Any]) -> "PriceRecord":
        promo = document.get("promo")
        return cls(
            item_id=str(document["itemId"]),
            currency=str(document["currency"]),
            base_price=_decimal(document["basePrice"]),
            # Absent or null entries mean "no price at this level".
            tier_prices={
                str(tier): _decimal(price)
                for tier, price in (document.get("tierPrices") or {}).items()
                if price is not None
            },
            account_overrides={
                str(account): _decimal(price)
                for account, price in (document.get("accountOverrides") or {}).items()
                if price is not None
            },
            promo=Promo.from_document(promo) if promo else None,
            quantity_breaks=tuple(
                QuantityBreak.from_document(raw) for raw in document.get("quantityBreaks") or ()
            ),
        )


def price_key(item_id: str, currency: str) -> str:
    """Return the storage key of the price record for ``(item_id, currency)``."""

    return f"{item_id}:{currency.upper()}"


@dataclass(frozen=True)
class PriceQuote:
    """Authoritative unit price before options, with the rule that produced it."""

    item_id: str
    account_id: str
    unit_price: Money
    source: PriceSource
    promo_applied: bool = False
    tier_id: Optional[str] = None
    as_of: Optional[datetime] = None

    @property
    def amount(self) -> Decimal:
        return self.unit_price.amount


# ---------------------------------------------------------------------------
# Availability
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ReservationToken:
    """Receipt for one successful allocation, used to release exactly it."""

    token_id: str
    item_id: str
    quantity: int
    order_id: Optional[str] = None
    issued_at: Optional[datetime] = None
    status: ReservationStatus = ReservationStatus.ACTIVE

    def to_document(self) -> Dict[str, Any]:
        return {
            "tokenId": self.token_id,
            "itemId": self.item_id,
            "quantity": self.quantity,
            "orderId": self.order_id,
            "issuedAt": _iso(self.issued_at),
            "status": self.status.value,
        }

    @classmethod
    def from_document(cls, document: Mapping[str, Any]) -> "ReservationToken":
        return cls(
            token_id=str(document["tokenId"]),
            item_id=str(document["itemId"]),
            quantity=int(document["quantity"]),
            order_id=document.get("orderId"),
            issued_at=_datetime(document.get("issuedAt")),
            status=ReservationStatus(document.get("status") or ReservationStatus.ACTIVE.value),
        )


@dataclass(frozen=True)
class AvailabilityRecord:
    """Available and allocated quantities of one item plus its outstanding reservations.

    Released reservations leave ``reservations`` and live on in the
    ``reservation_history`` log of the item.
    """

    item_id: str
    qty_available: int = 0
    qty_allocated: int = 0
    state: AvailabilityState = AvailabilityState.IN_STOCK
    eta_date: Optional[str] = None
    batch_name: Optional[str] = None
    reservations: Mapping[str, ReservationToken] = field(default_factory=dict)

    @property
    def total(self) -> int:
        return self.qty_available + self.qty_allocated

    def to_document(self) -> Dict[str, Any]:
        return {
            "itemId": self.item_id,
            "qtyAvailable": self.qty_available,
            "qtyAllocated": self.qty_allocated,
            "state": self.state.value,
            "etaDate": self.eta_date,
            "batchName": self.batch_name,
            "reservations": {
                token_id: token.to_document() for token_id, token in self.reservations.items()
            },
        }

    @classmethod
    def from_document(cls, document: Mapping[str, Any]) -> "AvailabilityRecord":
        return cls(
            item_id=str(document["itemId"]),
            qty_available=int(document.get("qtyAvailable") or 0),
            qty_allocated=int(document.get("qtyAllocated") or 0),
            state=AvailabilityState(document.get("state") or AvailabilityState.IN_STOCK.value),
            eta_date=document.get("etaDate"),
            batch_name=document.get("batchName"),
            reservations={
                str(token_id): ReservationToken.from_document(raw)
                for token_id, raw in (document.get("reservations") or {}).items()
            },
        )


@dataclass(frozen=True)
class AvailabilitySnapshot:
    """Read-only view returned by ``check_availability``."""

    item_id: str
    qty_available: int
    qty_allocated: int
    state: AvailabilityState = AvailabilityState.IN_STOCK
    eta_date: Optional[str] = None
    batch_name: Optional[str] = None


# ---------------------------------------------------------------------------
# Orders
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ShippingAddress:
    line1: str
    city: str
    country: str
    company: Optional[str] = None
    line2: Optional[str] = None
    region: Optional[str] = None
    postal_code: Optional[str] = None

    def __post_init__(self) -> None:
        if not (self.line1 and self.city and self.country):
            raise ValueError("Shipping address requires line1, city, and country")

    def to_document(self) -> Dict[str, Any]:
        return {
            "company": self.company,
            "line1": self.line1,
            "line2": self.line2,
            "city": self.city,
            "region": self.region,
            "postalCode": self.postal_code,
            "country": self.country,
        }

    @classmethod
    def from_document(cls, document: Mapping[str, Any]) -> "ShippingAddress":
        return cls(
            line1=str(document["line1"]),
            city=str(document["city"]),
            country=str(document["country"]),
            company=document.get("company"),
            line2=document.get("line2"),
            region=document.get("region"),
            postal_code=document.get("postalCode"),
        )


@dataclass(frozen=True)
class OrderLine:
    """One configured item on an order.

    ``resolved_sku``, ``unit_price`` and ``reservation_token`` stay empty while
    the order is a draft; submission fills them in.
    """

    item_id: str
    quantity: int
    selected_options: Mapping[str, str] = field(default_factory=dict)
    resolved_sku: Optional[str] = None
    unit_price: Optional[Decimal] = None
    price_source: Optional[PriceSource] = None
    specs: Mapping[str, str] = field(default_factory=dict)
    reservation_token: Optional[str] = None

    @property
    def line_total(self) -> Decimal:
        if self.unit_price is None:
            return Decimal("0")
        return self.unit_price * self.quantity

    def same_configuration(self, item_id: str, selected_options: Mapping[str, str]) -> bool:
        return self.item_id == item_id and dict(self.selected_options) == dict(selected_options)

    def to_document(self) -> Dict[str, Any]:
        return {
            "itemId": self.item_id,
            "qty": self.quantity,
            "selectedOptions": dict(self.selected_options),
            "sku": self.resolved_sku,
            "unitPrice": str(self.unit_price) if self.unit_price is not None else None,
            "priceSource": self.price_source.value if self.price_source is not None else None,
            "specs": dict(self.specs),
            "reservationToken": self.reservation_token,
        }

    @classmethod
    def from_document(cls, document: Mapping[str, Any]) -> "OrderLine":
        source = document.get("priceSource")
        return cls(
            item_id=str(document["itemId"]),
            quantity=int(document["qty"]),
            selected_options={
                str(key): str(value) for key, value in (document.get("selectedOptions") or {}).items()
            },
            resolved_sku=document.get("sku"),
            unit_price=_optional_decimal(document.get("unitPrice")),
            price_source=PriceSource(source) if source else None,
            specs={str(key): str(value) for key, value in (document.get("specs") or {}).items()},
            reservation_token=document.get("reservationToken"),
        )


@dataclass(frozen=True)
class StatusEntry:
    """Immutable record of one lifecycle transition."""

    sequence: int
    prior_status: Optional[OrderStatus]
    status: OrderStatus
    actor_account_id: Optional[str]
    actor_role: Role
    timestamp: datetime

    def to_document(self) -> Dict[str, Any]:
        return {
            "priorStatus": self.prior_status.value if self.prior_status is not None else None,
            "status": self.status.value,
            "actorAccountId": self.actor_account_id,
            "actorRole": self.actor_role.value,
            "timestamp": self.timestamp.isoformat(),
        }

    @classmethod
    def from_document(cls, sequence: int, document: Mapping[str, Any]) -> "StatusEntry":
        prior = document.get("priorStatus")
        return cls(
            sequence=sequence,
            prior_status=OrderStatus(prior) if prior else None,
            status=OrderStatus(document["status"]),
            actor_account_id=document.get("actorAccountId"),
            actor_role=Role(document["actorRole"]),
            timestamp=datetime.fromisoformat(document["timestamp"]),
        )


@dataclass(frozen=True)
class Order:
    """A dealer purchase order; never deleted, only cancelled."""

    order_id: str
    account_id: str
    created_by: str
    status: OrderStatus
    currency: str
    created_at: datetime
    updated_at: datetime
    lines: Tuple[OrderLine, ...] = ()
    subtotal: Decimal = Decimal("0")
    shipping_address: Optional[ShippingAddress] = None
    po_number: Optional[str] = None
    notes: Optional[str] = None
    version: int = 0
    status_history: Tuple[StatusEntry, ...] = ()

    @property
    def totals(self) -> Money:
        return Money(self.subtotal, self.currency)

    def to_document(self) -> Dict[str, Any]:
        return {
            "orderId": self.order_id,
            "accountId": self.account_id,
            "createdBy": self.created_by,
            "status": self.status.value,
            "currency": self.currency,
            "lines": [line.to_document() for line in self.lines],
            "totals": {"subtotal": str(self.subtotal), "currency": self.currency},
            "shippingAddress": (
                self.shipping_address.to_document() if self.shipping_address is not None else None
            ),
            "poNumber": self.po_number,
            "notes": self.notes,
            "createdAt": self.created_at.isoformat(),
            "updatedAt": self.updated_at.isoformat(),
        }

    @classmethod
    def from_document(
        cls,
        document: Mapping[str, Any],
        *,
        version: int = 0,
        status_history: Tuple[StatusEntry, ...] = (),
    ) -> "Order":
        totals = document.get("totals") or {}
        address = document.get("shippingAddress")
        return cls(
            order_id=str(document["orderId"]),
            account_id=str(document["accountId"]),
            created_by=str(document.get("createdBy") or document["accountId"]),
            status=OrderStatus(document["status"]),
            currency=str(document["currency"]),
            created_at=datetime.fromisoformat(document["createdAt"]),
            updated_at=datetime.fromisoformat(document.get("updatedAt") or document["createdAt"]),
            lines=tuple(OrderLine.from_document(raw) for raw in document.get("lines") or ()),
            subtotal=_decimal(totals.get("subtotal")),
            shipping_address=ShippingAddress.from_document(address) if address else None,
            po_number=document.get("poNumber"),
            notes=document.get("notes"),
            version=version,
            status_history=status_history,
        )
