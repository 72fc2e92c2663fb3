"""Catalog-aware helpers: complements, upsells and the contextual boost pass."""

from __future__ import annotations

from typing import Iterable, Sequence

from personalize.catalog.models import Product
from personalize.catalog.snapshot import CatalogSnapshot

ESTIMATED_LINE_VALUE = 25.0
CART_AFFINITY_BOOST = 0.2


def complement_score(product: Product, cart_items: Iterable[Product]) -> float:
    score = 0.0
    for item in cart_items:
        if item.id == product.id:
            continue
        if product.product_type and product.product_type == item.product_type:
            score += 10.0
        score += 5.0 * len(set(product.tags) & set(item.tags))
        top = max(product.price, item.price)
        if top > 0 and abs(product.price - item.price) / top < 0.5:
            score += 15.0
    return score


def cross_sell_boost(product: Product, cart_items: Sequence[Product], cart_size: int) -> float:
    """Extra multiplier for items that round out the current cart."""

    known = sum(item.price for item in cart_items)
    cart_value = known + ESTIMATED_LINE_VALUE * max(0, cart_size - len(cart_items))
    if cart_value > 100 and product.price < 50:
        return 0.4
    if cart_value > 50 and product.price > 20:
        return 0.2
    return 0.0


def upsell_products(catalog: CatalogSnapshot, product_id: str, limit: int = 6) -> list[Product]:
    """Same type, pricier but less than double the anchor's price; cheapest first."""

    anchor = catalog.get(product_id)
    if anchor is None or anchor.price <= 0:
        return []
    candidates = [
        p
        for p in catalog.products()
        if p.id != product_id
        and p.product_type == anchor.product_type
        and anchor.price < p.price < anchor.price * 2
    ]
    candidates.sort(key=lambda p: p.price)
    return candidates[:limit]


def contextual_boost(
    product: Product,
    *,
    recent_types: set[str],
    cart_items: Sequence[Product],
    cart_size: int,
) -> tuple[float, list[str]]:
    """Return (multiplier, reasons) for recent activity, cart fit, scarcity and promo signals."""

    multiplier = 1.0
    reasons: list[str] = []
    if product.product_type and product.product_type in recent_types:
        multiplier += 0.3
        reasons.append("Related to recent activity")
    if cart_size > 0:
        boost = cross_sell_boost(product, cart_items, cart_size)
        if boost > 0:
            multiplier += boost
            reasons.append("Frequently bought together")
        if complement_score(product, cart_items) > 0:
            multiplier += CART_AFFINITY_BOOST
            reasons.append("Pairs well with your cart")
    stock = product.inventory
    if stock is not None and 0 < stock <= 5:
        multiplier += 0.2
        reasons.append("Low stock urgency")
    if "sale" in product.tags or "clearance" in product.tags:
        multiplier += 0.25
        reasons.append("Time-sensitive offer")
    return multiplier, reasons


__all__ = [
    "complement_score",
    "contextual_boost",
    "cross_sell_boost",
    "upsell_products",
]
