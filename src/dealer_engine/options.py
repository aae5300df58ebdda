"""Option Composer.

Turns a set of option selections into the SKU suffix, the cumulative price
adjustment, and the resolved spec sheet of a configured item. Composition is a
pure, ordered merge: options are visited in the order the item defines them,
so identical selections always yield an identical result.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Dict, List, Mapping

from . import log
from .constants import OptionKind
from .exceptions import MissingRequiredOption, UnknownOptionValue
from .models import CatalogItem, Option

# Numeric selections carry no suffix of their own. Without a delimiter the
# value is appended after this prefix; with one, the delimiter separates it.
NUMERIC_SUFFIX_PREFIX = "-"


@dataclass(frozen=True)
class ComposedConfiguration:
    """Outcome of composing an item with a selection mapping."""

    sku: str
    sku_suffix: str
    price_delta: Decimal
    specs: Mapping[str, str] = field(default_factory=dict)


def _numeric_value(item: CatalogItem, option: Option, raw: str) -> str:
    try:
        number = Decimal(str(raw).strip())
    except InvalidOperation as exc:
        raise UnknownOptionValue(item.item_id, option.option_id, raw) from exc
    if not number.is_finite():
        raise UnknownOptionValue(item.item_id, option.option_id, raw)
    return format(number.normalize(), "f")


def compose(item: CatalogItem, selections: Mapping[str, str], *, delimiter: str = "") -> ComposedConfiguration:
    """Compose ``item`` with ``selections`` (option id -> value id).

    Each selected enumerated value contributes its SKU suffix, prefixed by
    ``delimiter``, and its signed price adjustment. Numeric options append
    their normalised value to the SKU and the specs but never change the
    price. Unselected optional options contribute nothing. Selected values
    override base specs of the same name.

    Raises:
        MissingRequiredOption: A required option has no selection.
        UnknownOptionValue: A selection names a value the option does not
            define, a non-numeric value for a numeric option, or an option
            the item does not have.
    """

    known = {option.option_id for option in item.options}
    for option_id, value_id in selections.items():
        if option_id not in known:
            log.warning("Selection for undefined option '%s' on item '%s'", option_id, item.item_id)
            raise UnknownOptionValue(item.item_id, option_id, value_id)

    suffixes: List[str] = []
    price_delta = Decimal("0")
    specs: Dict[str, str] = dict(item.specs)

    for option in item.options:
        value_id = selections.get(option.option_id)
        if value_id is None or value_id == "":
            if option.required:
                raise MissingRequiredOption(item.item_id, option.option_id, option.label)
            continue

        if option.kind is OptionKind.NUMERIC:
            normalised = _numeric_value(item, option, value_id)
            suffixes.append(normalised if delimiter else f"{NUMERIC_SUFFIX_PREFIX}{normalised}")
            specs[option.option_id] = normalised
            continue

        value = option.value_for(value_id)
        if value is None:
            raise UnknownOptionValue(item.item_id, option.option_id, value_id)
        if value.sku_suffix:
            suffixes.append(value.sku_suffix)
        price_delta += value.price_adjustment
        specs[option.option_id] = value.label

    sku_suffix = "".join(f"{delimiter}{suffix}" for suffix in suffixes)
    return ComposedConfiguration(
        sku=f"{item.sku}{sku_suffix}",
        sku_suffix=sku_suffix,
        price_delta=price_delta,
        specs=specs,
    )
