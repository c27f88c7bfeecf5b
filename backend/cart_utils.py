import copy
import math
from typing import Dict, Iterable, Iterator, Mapping, Optional, Tuple

CartData = Dict[str, Dict[str, int]]


def coerce_quantity(value, default: Optional[int] = None) -> Optional[int]:
    if isinstance(value, bool):
        return default
    try:
        numeric = float(value)
    except (TypeError, ValueError):
        return default
    if not math.isfinite(numeric) or numeric != int(numeric):
        return default
    return int(numeric)


def is_valid_cart_key(value: Optional[str]) -> bool:
    normalized = str(value or "").strip()
    if not normalized:
        return False
    return "." not in normalized and not normalized.startswith("$")


def normalize_cart(raw_cart) -> CartData:
    normalized: CartData = {}
    if not isinstance(raw_cart, Mapping):
        return normalized

    for product_id, colors in raw_cart.items():
        if not isinstance(colors, Mapping):
            continue
        for color, quantity in colors.items():
            numeric = coerce_quantity(quantity)
            if numeric is None or numeric <= 0:
                continue
            normalized.setdefault(str(product_id), {})[str(color)] = numeric
    return normalized


def iter_cart_entries(cart) -> Iterator[Tuple[str, str, int]]:
    for product_id, colors in normalize_cart(cart).items():
        for color, quantity in colors.items():
            yield product_id, color, quantity


def add_to_cart(cart, product_id: str, color: str, quantity_delta: int = 1) -> CartData:
    updated = copy.deepcopy(dict(cart or {}))
    product_entry = dict(updated.get(product_id) or {})
    current = coerce_quantity(product_entry.get(color), 0) or 0
    new_quantity = max(0, current + quantity_delta)
    if new_quantity:
        product_entry[color] = new_quantity
    else:
        product_entry.pop(color, None)

    if product_entry:
        updated[product_id] = product_entry
    else:
        updated.pop(product_id, None)
    return updated


def set_cart_quantity(cart, product_id: str, color: str, quantity: int) -> CartData:
    updated = copy.deepcopy(dict(cart or {}))
    product_entry = dict(updated.get(product_id) or {})
    if quantity > 0:
        product_entry[color] = quantity
    else:
        product_entry.pop(color, None)

    if product_entry:
        updated[product_id] = product_entry
    else:
        updated.pop(product_id, None)
    return updated


def cart_count(cart) -> int:
    return sum(quantity for _, _, quantity in iter_cart_entries(cart))


def cart_total(cart, catalog: Iterable[Mapping]) -> float:
    prices: Dict[str, float] = {}
    for product in catalog or []:
        if not isinstance(product, Mapping):
            continue
        identifier = product.get("_id") or product.get("id")
        if identifier is None:
            continue
        try:
            prices[str(identifier)] = float(product.get("price"))
        except (TypeError, ValueError):
            continue

    total = 0.0
    for product_id, _, quantity in iter_cart_entries(cart):
        unit_price = prices.get(product_id)
        if unit_price is None:
            continue
        total += unit_price * quantity
    return total
