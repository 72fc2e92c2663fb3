from __future__ import annotations

import random

import pytest

from personalize.behavior import BehaviorStore
from personalize.catalog.models import Product
from personalize.catalog.snapshot import CatalogSnapshot
from personalize.experiments import VariantConfig
from personalize.reco import ContentReorderEngine, DEFAULT_STRATEGIES, ReorderStrategy, blend, effective_weight
from personalize.scoring import ProductScoringEngine


def _products(*ids: str) -> list[Product]:
    return [Product(id=pid, price=10) for pid in ids]


def _ids(products) -> list[str]:
    return [p.id for p in products]


def test_blend_extremes():
    current = _products("a", "b", "c", "d")
    proposed = list(reversed(current))

    assert _ids(blend(current, proposed, 0.0, random.Random(1))) == ["a", "b", "c", "d"]
    assert _ids(blend(current, proposed, 1.0, random.Random(1))) == ["d", "c", "b", "a"]


@pytest.mark.parametrize("weight", [0.1, 0.35, 0.5, 0.8])
def test_blend_is_always_a_permutation(weight):
    current = _products(*"abcdefgh")
    proposed = [current[i] for i in (5, 2, 7, 0, 3, 1, 6, 4)]
    rng = random.Random(42)

    for _ in range(20):
        result = blend(current, proposed, weight, rng)
        assert sorted(_ids(result)) == sorted(_ids(current))
        assert len(result) == len(current)


def test_blend_keeps_items_missing_from_proposal():
    current = _products("a", "b", "c")
    result = blend(current, [current[2]], 1.0)
    assert _ids(result) == ["c", "a", "b"]


def test_seeded_blend_is_reproducible():
    current = _products(*"abcdef")
    proposed = list(reversed(current))
    first = blend(current, proposed, 0.5, random.Random(7))
    second = blend(current, proposed, 0.5, random.Random(7))
    assert _ids(first) == _ids(second)


def test_effective_weight_modes_and_subtlety():
    assert effective_weight(0.8, "aggressive", "high") == 1.0
    assert effective_weight(0.4, "balanced", "low") == pytest.approx(0.24)
    assert effective_weight(0.4, "subtle", "medium") == pytest.approx(0.224)
    assert effective_weight(-1.0, "balanced", "high") == 0.0


def _engine(scheduler, storage, clock, bus=None, **kwargs):
    catalog = CatalogSnapshot(_products("a", "b", "c", "d"))
    store = BehaviorStore("session-reorder", storage=storage, scheduler=scheduler, now=clock)
    store.open()
    scoring = ProductScoringEngine(store, catalog, scheduler=scheduler)
    return ContentReorderEngine(store, scoring, catalog, bus=bus, rng=random.Random(3), **kwargs), store


_REVERSE = ReorderStrategy("reverse", 1.0, "high", lambda state: True, lambda products, scores, state: products[::-1])


def test_full_weight_strategy_applies_and_emits(scheduler, storage, clock, bus):
    engine, _ = _engine(scheduler, storage, clock, bus, strategies=[_REVERSE])
    applied = []
    bus.subscribe("recommendation_applied", applied.append)
    products = _products("a", "b", "c", "d")

    result = engine.reorder(products, "collection-grid")

    assert _ids(result) == ["d", "c", "b", "a"]
    assert applied[0].section == "collection-grid"
    assert applied[0].strategies == ["reverse"]
    assert applied[0].moved == 4


def test_disabled_variant_returns_input_order(scheduler, storage, clock):
    engine, _ = _engine(scheduler, storage, clock, strategies=[_REVERSE])
    products = _products("a", "b", "c")

    config = VariantConfig(subtlety_mode="subtle", reordering_enabled=False, personalization_strength=0.0)
    assert _ids(engine.reorder(products, config=config)) == ["a", "b", "c"]
    assert _ids(engine.reorder(products[:1])) == ["a"]


def test_zero_strength_keeps_order(scheduler, storage, clock):
    engine, _ = _engine(scheduler, storage, clock, strategies=[_REVERSE])
    products = _products("a", "b", "c")

    config = VariantConfig(personalization_strength=0.0)
    assert _ids(engine.reorder(products, config=config)) == ["a", "b", "c"]


def test_failing_strategy_falls_back(scheduler, storage, clock):
    def broken(products, scores, state):
        raise KeyError("score")

    strategy = ReorderStrategy("broken", 1.0, "high", lambda state: True, broken)
    engine, _ = _engine(scheduler, storage, clock, strategies=[strategy])

    assert _ids(engine.reorder(_products("a", "b"))) == ["a", "b"]


def test_default_strategies_follow_segment_and_cart(scheduler, storage, clock):
    engine, store = _engine(scheduler, storage, clock)

    names = [s.id for s in engine.applicable(engine.state())]
    assert names == ["inventory-priority", "trending-boost"]

    store.track_cart_add("a")
    names = [s.id for s in engine.applicable(engine.state())]
    assert "cross-sell-optimization" in names
    assert "conversion-urgency" in names

    config = VariantConfig(enabled_strategies=["inventory-priority"])
    assert [s.id for s in engine.applicable(engine.state(), config)] == ["inventory-priority"]


def test_inventory_priority_prefers_low_stock():
    strategy = next(s for s in DEFAULT_STRATEGIES if s.id == "inventory-priority")
    products = [Product(id="plenty", price=10, inventory=40), Product(id="scarce", price=10, inventory=4)]

    ordered = strategy.algorithm(products, {}, None)

    assert _ids(ordered) == ["scarce", "plenty"]


def test_unknown_subtlety_mode_rejected(scheduler, storage, clock):
    engine, _ = _engine(scheduler, storage, clock)
    engine.set_subtlety_mode("aggressive")
    assert engine.subtlety_mode == "aggressive"
    with pytest.raises(ValueError):
        engine.set_subtlety_mode("loud")
