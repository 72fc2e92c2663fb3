"""Probabilistic blending of strategy orders into an existing product list."""

from __future__ import annotations

import logging
import random
from dataclasses import dataclass
from typing import Callable, Literal, Mapping, Sequence

from personalize.behavior.store import BehaviorStore
from personalize.catalog.models import Product
from personalize.catalog.snapshot import CatalogSnapshot
from personalize.events import EventBus
from personalize.experiments.model import VariantConfig
from personalize.reco.boost import complement_score
from personalize.scoring.engine import ProductScoringEngine
from personalize.scoring.models import ProductScore

logger = logging.getLogger("personalize.reco")

Subtlety = Literal["low", "medium", "high"]

MODE_MULTIPLIERS: dict[str, Callable[[float], float]] = {
    "aggressive": lambda w: min(1.0, w * 1.5),
    "balanced": lambda w: w,
    "subtle": lambda w: w * 0.7,
}
SUBTLETY_MULTIPLIERS: dict[str, float] = {"low": 0.6, "medium": 0.8, "high": 1.0}


@dataclass(frozen=True, slots=True)
class ReorderState:
    """What the strategies may look at besides the product list itself."""

    segment: str
    cart: frozenset[str]
    high_intent: frozenset[str]
    cart_items: tuple[Product, ...] = ()


Algorithm = Callable[[Sequence[Product], Mapping[str, ProductScore], ReorderState], list[Product]]


@dataclass(frozen=True, slots=True)
class ReorderStrategy:
    id: str
    weight: float
    subtlety: Subtlety
    applies: Callable[[ReorderState], bool]
    algorithm: Algorithm


def effective_weight(weight: float, mode: str, subtlety: str) -> float:
    adjust = MODE_MULTIPLIERS.get(mode, MODE_MULTIPLIERS["balanced"])
    value = adjust(weight) * SUBTLETY_MULTIPLIERS.get(subtlety, 1.0)
    return max(0.0, min(1.0, value))


def blend(
    current: Sequence[Product],
    proposed: Sequence[Product],
    weight: float,
    rng: random.Random | None = None,
) -> list[Product]:
    """Walk positions, taking the next unplaced proposed item with probability ``weight``.

    Items missing from ``proposed`` keep their relative order from ``current``.
    """

    draw = rng or random.Random()
    p = max(0.0, min(1.0, weight))
    result: list[Product] = []
    used: set[str] = set()
    cur_i = prop_i = 0

    def _next(seq: Sequence[Product], start: int) -> tuple[Product | None, int]:
        while start < len(seq) and seq[start].id in used:
            start += 1
        return (seq[start], start + 1) if start < len(seq) else (None, start)

    for _ in range(len(current)):
        take_proposed = p >= 1.0 or (p > 0.0 and draw.random() < p)
        item = None
        if take_proposed:
            item, prop_i = _next(proposed, prop_i)
        if item is None:
            item, cur_i = _next(current, cur_i)
        if item is None:
            break
        result.append(item)
        used.add(item.id)

    for product in current:
        if product.id not in used:
            result.append(product)
            used.add(product.id)
    return result


# --- Strategy algorithms ---


def _by(scores: Mapping[str, ProductScore], attr: str) -> Callable[[Product], float]:
    def _key(product: Product) -> float:
        score = scores.get(product.id)
        return getattr(score, attr) if score is not None else 0.0

    return _key


def personalized_boost(products, scores, state):
    return sorted(products, key=_by(scores, "personalized"), reverse=True)


def conversion_urgency(products, scores, state):
    conversion = _by(scores, "conversion")
    return sorted(
        products,
        key=lambda p: conversion(p) + (1000.0 if p.id in state.high_intent else 0.0),
        reverse=True,
    )


def inventory_priority(products, scores, state):
    inventory = _by(scores, "inventory")

    def _key(product: Product) -> float:
        stock = product.inventory
        low_stock = 50.0 if stock is not None and 0 < stock < 10 else 0.0
        return inventory(product) + low_stock

    return sorted(products, key=_key, reverse=True)


def margin_optimization(products, scores, state):
    return sorted(products, key=_by(scores, "margin"), reverse=True)


def trending_boost(products, scores, state):
    return sorted(products, key=_by(scores, "trending"), reverse=True)


def cross_sell(products, scores, state):
    if not state.cart:
        return list(products)
    return sorted(products, key=lambda p: complement_score(p, state.cart_items), reverse=True)


DEFAULT_STRATEGIES: tuple[ReorderStrategy, ...] = (
    ReorderStrategy("personalized-boost", 0.4, "high", lambda s: s.segment != "new", personalized_boost),
    ReorderStrategy(
        "conversion-urgency", 0.3, "medium", lambda s: bool(s.cart) or bool(s.high_intent), conversion_urgency
    ),
    ReorderStrategy("inventory-priority", 0.2, "high", lambda s: True, inventory_priority),
    ReorderStrategy(
        "margin-optimization", 0.15, "high", lambda s: s.segment in ("high-value", "loyal"), margin_optimization
    ),
    ReorderStrategy("trending-boost", 0.25, "medium", lambda s: s.segment in ("new", "returning"), trending_boost),
    ReorderStrategy("cross-sell-optimization", 0.35, "medium", lambda s: bool(s.cart), cross_sell),
)


class ContentReorderEngine:
    def __init__(
        self,
        behavior: BehaviorStore,
        scoring: ProductScoringEngine,
        catalog: CatalogSnapshot,
        *,
        bus: EventBus | None = None,
        strategies: Sequence[ReorderStrategy] = DEFAULT_STRATEGIES,
        subtlety_mode: str = "balanced",
        rng: random.Random | None = None,
    ) -> None:
        self._behavior = behavior
        self._scoring = scoring
        self._catalog = catalog
        self._bus = bus
        self._strategies = tuple(strategies)
        self.subtlety_mode = subtlety_mode
        self._rng = rng or random.Random()

    def set_subtlety_mode(self, mode: str) -> None:
        if mode not in MODE_MULTIPLIERS:
            raise ValueError(f"unknown subtlety mode: {mode}")
        self.subtlety_mode = mode

    def state(self) -> ReorderState:
        profile = self._behavior.profile
        cart_items = tuple(p for p in (self._catalog.get(pid) for pid in sorted(profile.cart)) if p is not None)
        return ReorderState(
            segment=self._behavior.get_user_segment(),
            cart=frozenset(profile.cart),
            high_intent=frozenset(self._behavior.get_high_intent_products()),
            cart_items=cart_items,
        )

    def applicable(self, state: ReorderState, config: VariantConfig | None = None) -> list[ReorderStrategy]:
        enabled = set(config.enabled_strategies) if config and config.enabled_strategies else None
        return [
            strategy
            for strategy in self._strategies
            if (enabled is None or strategy.id in enabled) and strategy.applies(state)
        ]

    def reorder(
        self,
        products: Sequence[Product],
        section: str = "products",
        config: VariantConfig | None = None,
    ) -> list[Product]:
        """Blend every applicable strategy into ``products``; returns the input order on failure."""

        original = list(products)
        if len(original) < 2 or (config is not None and not config.reordering_enabled):
            return original
        try:
            ordered, applied = self._reorder(original, config)
        except Exception:
            logger.exception("reorder failed section=%s", section)
            return original
        moved = sum(1 for before, after in zip(original, ordered) if before.id != after.id)
        if self._bus is not None and applied:
            self._bus.emit(
                "recommendation_applied",
                {"section": section, "strategies": applied, "product_count": len(ordered), "moved": moved},
            )
        logger.debug("section reordered section=%s strategies=%s moved=%s", section, applied, moved)
        return ordered

    def _reorder(self, products: list[Product], config: VariantConfig | None) -> tuple[list[Product], list[str]]:
        state = self.state()
        scores = {p.id: s for p in products if (s := self._scoring.get_score(p.id)) is not None}
        mode = config.subtlety_mode if config is not None else self.subtlety_mode
        strength = config.personalization_strength if config is not None else 1.0
        ordered = products
        applied: list[str] = []
        for strategy in self.applicable(state, config):
            proposed = strategy.algorithm(ordered, scores, state)
            weight = effective_weight(strategy.weight * strength, mode, strategy.subtlety)
            ordered = blend(ordered, proposed, weight, self._rng)
            applied.append(strategy.id)
        return ordered, applied


__all__ = [
    "ContentReorderEngine",
    "DEFAULT_STRATEGIES",
    "ReorderState",
    "ReorderStrategy",
    "blend",
    "effective_weight",
]
