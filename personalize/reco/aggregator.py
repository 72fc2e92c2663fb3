"""Merge behavior, collaborative and basket signals into ranked, explained recommendations."""

from __future__ import annotations

import logging
from collections import defaultdict
from typing import Iterable

from personalize import metrics
from personalize.behavior.models import PredictedAction
from personalize.behavior.store import BehaviorStore
from personalize.catalog.snapshot import CatalogSnapshot
from personalize.mining.basket import MarketBasketMiner
from personalize.mining.collaborative import CollaborativeFilter
from personalize.reco.boost import contextual_boost, upsell_products
from personalize.reco.models import PageContext, Recommendation, RecommendationKind, SourceWeights
from personalize.scoring.engine import ProductScoringEngine

logger = logging.getLogger("personalize.reco")

ACTION_REASONS: dict[PredictedAction, str] = {
    PredictedAction.VIEW: "Based on your browsing history",
    PredictedAction.WISHLIST: "Similar to items you love",
    PredictedAction.CART: "Ready to purchase",
    PredictedAction.PURCHASE: "Highly recommended for you",
}

SEGMENT_BOOSTS: dict[str, tuple[tuple[RecommendationKind, ...], float]] = {
    "high-value": (("upsell",), 1.2),
    "loyal": (("personalized",), 1.15),
    "returning": (("trending",), 1.1),
    "new": (("trending", "similar"), 1.1),
}

_SOURCE_KIND: dict[str, RecommendationKind] = {
    "collaborative": "similar",
    "basket": "cross-sell",
    "behavior": "personalized",
}

WISHLIST_DEFAULT = 80.0
CATEGORY_PICK_MIN = 10.0
TRENDING_MIN = 15.0


class _Candidates:
    """Per-source raw signals keyed by product, plus their reason strings."""

    def __init__(self) -> None:
        self.raw: dict[str, dict[str, float]] = defaultdict(dict)
        self.reasons: dict[str, dict[str, str]] = defaultdict(dict)

    def offer(self, source: str, product_id: str, value: float, reason: str) -> None:
        current = self.raw[source].get(product_id)
        if current is None or value > current:
            self.raw[source][product_id] = value
            self.reasons[source][product_id] = reason

    def normalized(self, source: str) -> dict[str, float]:
        values = self.raw.get(source, {})
        if not values:
            return {}
        top = max(values.values())
        if top <= 0:
            return {}
        return {pid: min(1.0, value / top) for pid, value in values.items()}


class RecommendationAggregator:
    def __init__(
        self,
        behavior: BehaviorStore,
        scoring: ProductScoringEngine,
        collaborative: CollaborativeFilter,
        basket: MarketBasketMiner,
        catalog: CatalogSnapshot,
        *,
        weights: SourceWeights | None = None,
    ) -> None:
        self._behavior = behavior
        self._scoring = scoring
        self._collaborative = collaborative
        self._basket = basket
        self._catalog = catalog
        self._weights = weights or SourceWeights()

    # --- Candidate sources ---

    def _anchors(self, context: PageContext) -> list[str]:
        anchors: list[str] = []
        if context.product_id:
            anchors.append(context.product_id)
        if context.page == "search":
            anchors.extend(context.product_ids[:5])
        anchors.extend(sorted(self._behavior.profile.cart))
        anchors.extend(self._behavior.recently_viewed(5))
        return list(dict.fromkeys(anchors))

    def _collect_collaborative(self, anchors: Iterable[str], out: _Candidates) -> None:
        for anchor in anchors:
            for entry in self._collaborative.neighbors(anchor):
                out.offer(
                    "collaborative",
                    entry.item_b,
                    entry.similarity,
                    f"Users who liked this also liked ({round(entry.similarity * 100)}% similarity)",
                )

    def _collect_basket(self, anchors: Iterable[str], out: _Candidates) -> None:
        for anchor in anchors:
            for rule in self._basket.rules_for(anchor):
                out.offer(
                    "basket",
                    rule.consequent_item,
                    rule.confidence,
                    f"Frequently bought together ({round(rule.confidence * 100)}% confidence)",
                )

    def _collect_behavior(self, out: _Candidates) -> None:
        for index, score in enumerate(self._behavior.get_predicted_products()):
            decay = max(0.0, 1.0 - index * 0.1)
            out.offer(
                "behavior",
                score.product_id,
                score.confidence * decay,
                ACTION_REASONS.get(score.predicted_action, ACTION_REASONS[PredictedAction.VIEW]),
            )

        behavior = out.raw["behavior"]
        profile = self._behavior.profile
        for product_id in sorted(profile.wishlist | profile.cart):
            existing = behavior.get(product_id)
            boosted = existing * 1.5 if existing is not None else WISHLIST_DEFAULT
            behavior[product_id] = boosted
            reason = "Similar to items you love" if product_id in profile.wishlist else "Ready to purchase"
            out.reasons["behavior"].setdefault(product_id, reason)

        for product_score in self._scoring.get_top_scored(20):
            if product_score.personalized <= CATEGORY_PICK_MIN:
                continue
            out.offer(
                "behavior",
                product_score.product_id,
                min(100.0, product_score.personalized * 2),
                "Matches your favorite categories",
            )

    # --- Ranking ---

    def _kind(self, product_id: str, sources: dict[str, float], upsells: set[str]) -> RecommendationKind:
        if product_id in upsells:
            return "upsell"
        score = self._scoring.get_score(product_id)
        dominant = max(sources, key=lambda name: sources[name])
        if dominant == "behavior" and score is not None and score.trending >= TRENDING_MIN and score.personalized == 0:
            return "trending"
        return _SOURCE_KIND[dominant]

    def recommend(self, context: PageContext, limit: int = 8) -> list[Recommendation]:
        """Ranked recommendations for ``context``; never raises, returns [] on internal failure."""

        try:
            result = self._recommend(context, limit)
        except Exception:
            logger.exception("recommendation failed page=%s", context.page)
            return []
        metrics.RECOMMENDATIONS_SERVED.labels(page=context.page).inc()
        return result

    def _recommend(self, context: PageContext, limit: int) -> list[Recommendation]:
        if limit <= 0:
            return []
        anchors = self._anchors(context)
        candidates = _Candidates()
        self._collect_collaborative(anchors, candidates)
        self._collect_basket(anchors, candidates)
        self._collect_behavior(candidates)

        weights = {
            "collaborative": self._weights.collaborative,
            "basket": self._weights.basket,
            "behavior": self._weights.behavior,
        }
        combined: dict[str, Recommendation] = {}
        for source, weight in weights.items():
            for product_id, value in candidates.normalized(source).items():
                rec = combined.setdefault(product_id, Recommendation(product_id=product_id))
                rec.sources[source] = value * weight
                rec.score += value * weight
                rec.reasons.append(candidates.reasons[source][product_id])

        excluded = self._excluded(context)
        allowed = self._allowed(context)
        upsells = {p.id for p in upsell_products(self._catalog, context.product_id)} if context.product_id else set()
        segment = self._behavior.get_user_segment()
        boosted_kinds, segment_factor = SEGMENT_BOOSTS.get(segment, ((), 1.0))

        profile = self._behavior.profile
        cart_items = [p for p in (self._catalog.get(pid) for pid in profile.cart) if p is not None]
        recent_types = {
            product.product_type
            for product in (self._catalog.get(pid) for pid in self._behavior.recently_viewed(5))
            if product is not None and product.product_type
        }

        ranked: list[Recommendation] = []
        for product_id, rec in combined.items():
            if product_id in excluded:
                continue
            if allowed is not None and product_id not in allowed:
                continue
            product = self._catalog.get(product_id)
            if product is not None and not product.available:
                continue
            rec.kind = self._kind(product_id, rec.sources, upsells)
            if rec.kind in boosted_kinds:
                rec.score *= segment_factor
                rec.boosts.append(f"{segment} segment")
            if product is not None:
                multiplier, reasons = contextual_boost(
                    product,
                    recent_types=recent_types,
                    cart_items=cart_items,
                    cart_size=len(profile.cart),
                )
                rec.score *= multiplier
                rec.boosts.extend(reasons)
            rec.score = round(rec.score, 4)
            ranked.append(rec)

        ranked.sort(key=lambda r: (-r.score, r.product_id))
        logger.debug(
            "recommendations built page=%s anchors=%s candidates=%s returned=%s",
            context.page,
            len(anchors),
            len(combined),
            min(limit, len(ranked)),
        )
        return ranked[:limit]

    def _excluded(self, context: PageContext) -> set[str]:
        excluded: set[str] = set()
        if context.product_id:
            excluded.add(context.product_id)
        if context.page in ("cart", "checkout"):
            excluded.update(self._behavior.profile.cart)
        return excluded

    def _allowed(self, context: PageContext) -> set[str] | None:
        if context.page != "collection" or not context.collection:
            return None
        members = {p.id for p in self._catalog.in_collection(context.collection)}
        return members or None


__all__ = ["ACTION_REASONS", "RecommendationAggregator", "SEGMENT_BOOSTS"]
