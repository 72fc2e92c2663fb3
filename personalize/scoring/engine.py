"""Multi-factor product scoring: personalization, trend, inventory, margin and conversion."""

from __future__ import annotations

import logging
import time
from datetime import datetime, timezone
from typing import Callable, Iterable

from personalize import metrics
from personalize.behavior.models import PredictedAction
from personalize.behavior.store import BehaviorStore
from personalize.cache.ratelimit import Debounced, RateLimiter
from personalize.catalog.models import Product
from personalize.catalog.snapshot import CatalogSnapshot
from personalize.events import BehaviorTracked, EventBus
from personalize.scheduler import Scheduler, TimerHandle
from personalize.scoring.models import Prediction, ProductScore, ScoringContext

logger = logging.getLogger("personalize.scoring")

NEW_PRODUCT_DAYS = 14
PERFORMANCE_TAGS = ("bestseller", "popular", "featured", "trending", "staff-pick")
PROMO_TAGS = ("sale", "clearance", "limited-time", "holiday")
BUNDLE_TAGS = ("bundle", "kit", "set", "collection")
HIGH_MARGIN_CATEGORIES = ("wellness supplements", "brand merch", "cultivation equipment")


def _r2(value: float) -> float:
    return round(value, 2)


# --- Sub-scores ---


def _personalized(product: Product, ctx: ScoringContext, out: ProductScore) -> float:
    score = 0.0
    names = [product.product_type.lower()] if product.product_type else []
    names += [c.lower() for c in product.collections]
    matched = [(name, ctx.category_weights[name]) for name in names if name in ctx.category_weights]
    if matched:
        name, weight = max(matched, key=lambda item: item[1])
        category_weight = min(25.0, weight * 3.5)
        score += category_weight
        out.reasons.append(f"Customer prefers {name} (+{category_weight:.2f})")
    if product.id in ctx.wishlist:
        score += 20.0
        out.boosters.append("High intent: Wishlisted")
        out.reasons.append("Strong purchase signal from wishlist")
    if product.id in ctx.cart:
        score += 10.0
        out.boosters.append("Active consideration")
        out.reasons.append("Product in customer cart")
    if ctx.price_range is not None and ctx.price_range[0] <= product.price <= ctx.price_range[1]:
        score += 8.0
        out.reasons.append(f"Price fits customer budget (${product.price:.2f})")
    return score


def _trending(product: Product, ctx: ScoringContext, out: ProductScore, now: datetime) -> float:
    score = 0.0
    age = product.age_days(now)
    if age is not None and age <= NEW_PRODUCT_DAYS:
        score += 15.0
        out.boosters.append("New arrival")
        out.reasons.append("Recently launched product")
    if product.id in ctx.high_intent:
        score += 20.0
        out.boosters.append("Hot prospect")
        out.reasons.append("High predicted conversion probability")
    matched = [tag for tag in product.tags if tag in PERFORMANCE_TAGS]
    if matched:
        score += min(12.0, 4.0 * len(matched))
        out.boosters.append(", ".join(matched))
        out.reasons.append(f"Proven performer: {', '.join(matched)}")
    if any(tag in PROMO_TAGS for tag in product.tags):
        score += 8.0
        out.boosters.append("Time-sensitive offer")
    return score


def _inventory(product: Product, out: ProductScore) -> float:
    if not product.available:
        out.reasons.append("Out of stock")
        return -5.0
    score = 15.0
    stock = product.inventory
    if stock is not None and stock > 0:
        if stock <= 3:
            score += 10.0
            out.boosters.append(f"Only {stock} left")
            out.reasons.append("Scarcity drives urgency")
        elif stock <= 10:
            score += 7.0
            out.boosters.append("Low stock")
            out.reasons.append("Limited availability creates urgency")
        elif stock >= 100:
            score += 5.0
            out.reasons.append("Strong stock position")
    return score


def _margin(product: Product, out: ProductScore) -> tuple[float, float]:
    """Return (margin sub-score, estimated margin percent)."""

    price = product.price
    compare_at = product.compare_at_price or 0.0
    score = 0.0
    estimated = 0.0
    if compare_at > price > 0:
        discount = (compare_at - price) / compare_at * 100.0
        estimated = max(10.0, 40.0 - discount * 0.6)
        score += min(15.0, discount * 0.3)
        out.boosters.append(f"{discount:.0f}% off")
        out.reasons.append(f"Sale drives conversion ({discount:.0f}% discount)")
    elif price >= 100:
        estimated, score = 45.0, 12.0
        out.reasons.append("Premium pricing tier")
    elif price >= 50:
        estimated, score = 35.0, 8.0
        out.reasons.append("Mid-tier product")
    elif price >= 20:
        estimated, score = 25.0, 5.0
    elif price > 0:
        estimated, score = 15.0, 2.0

    product_type = product.product_type.lower()
    if any(category in product_type for category in HIGH_MARGIN_CATEGORIES):
        score += 8.0
        out.reasons.append("High-margin product category")
    return score, estimated


def _conversion(product: Product, ctx: ScoringContext, out: ProductScore) -> float:
    score = 0.0
    prediction = ctx.predictions.get(product.id)
    if prediction is not None:
        score += min(15.0, prediction.score * 0.15)
        out.reasons.append(f"Conversion confidence: {prediction.score:.0f}%")
        if prediction.action == PredictedAction.PURCHASE.value:
            score += 5.0
            out.boosters.append("Purchase predicted")
        elif prediction.action == PredictedAction.CART.value:
            score += 3.0
            out.boosters.append("Cart add likely")
    if any(tag in BUNDLE_TAGS for tag in product.tags):
        score += 4.0
        out.reasons.append("Bundle increases order value")
    return score


def business_multiplier(price: float, estimated_margin: float) -> float:
    multiplier = 1.0
    if price >= 100:
        multiplier += 0.2
    elif price >= 25:
        multiplier += 0.1
    if estimated_margin >= 40:
        multiplier += 0.15
    if estimated_margin >= 25:
        multiplier += 0.1
    return multiplier


def score_product(
    product: Product,
    ctx: ScoringContext,
    *,
    now: datetime | None = None,
    timestamp: float | None = None,
) -> ProductScore:
    """Score one product; every intermediate figure is kept on the result."""

    out = ProductScore(product_id=product.id)
    current = now or datetime.now(timezone.utc)
    out.personalized = _r2(_personalized(product, ctx, out))
    out.trending = _r2(_trending(product, ctx, out, current))
    out.inventory = _r2(_inventory(product, out))
    margin, estimated = _margin(product, out)
    out.margin = _r2(margin)
    out.estimated_margin = _r2(estimated)
    out.conversion = _r2(_conversion(product, ctx, out))
    out.business_multiplier = _r2(business_multiplier(product.price, estimated))
    out.total_score = _r2(out.base_score * out.business_multiplier)
    out.updated_at = time.time() if timestamp is None else timestamp
    return out


# --- Engine ---


class ProductScoringEngine:
    """Keeps a score table for the catalog snapshot, refreshed on a period and after high-impact events."""

    def __init__(
        self,
        behavior: BehaviorStore,
        catalog: CatalogSnapshot,
        *,
        scheduler: Scheduler,
        rate_limiter: RateLimiter | None = None,
        bus: EventBus | None = None,
        interval: float = 30.0,
        debounce_delay: float = 0.5,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._behavior = behavior
        self._catalog = catalog
        self._scheduler = scheduler
        self._bus = bus
        self._interval = interval
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._scores: dict[str, ProductScore] = {}
        self._external: dict[str, Prediction] = {}
        self._timer: TimerHandle | None = None
        self._unsubscribe: Callable[[], None] | None = None
        limiter = rate_limiter or RateLimiter(scheduler)
        self._debounced: Debounced = limiter.debounce(self.recompute, debounce_delay)

    # --- Lifecycle ---

    def start(self) -> None:
        if self._timer is not None:
            return
        self._timer = self._scheduler.every(self._interval, self.recompute, name="score-recompute")
        if self._bus is not None:
            self._unsubscribe = self._bus.subscribe("behavior_tracked", self._on_behavior)
        self.recompute()

    def stop(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        self._debounced.cancel()
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None

    def _on_behavior(self, event: BehaviorTracked) -> None:
        if event.high_impact:
            self.invalidate()

    def invalidate(self) -> None:
        """Schedule a debounced recompute; bursts of events collapse into one pass."""

        self._debounced()

    # --- Inputs ---

    def set_prediction(self, product_id: str, score: float, action: str = "view") -> None:
        self._external[product_id] = Prediction(product_id, max(0.0, min(100.0, float(score))), action)

    def set_predictions(self, predictions: Iterable[Prediction]) -> None:
        for prediction in predictions:
            self._external[prediction.product_id] = prediction

    def build_context(self) -> ScoringContext:
        profile = self._behavior.profile
        preferences = self._behavior.get_user_preferences()
        predictions = {
            score.product_id: Prediction(score.product_id, score.confidence, score.predicted_action.value)
            for score in self._behavior.get_predicted_products()
        }
        for product_id, external in self._external.items():
            behavioral = predictions.get(product_id)
            action = behavioral.action if behavioral is not None else external.action
            predictions[product_id] = Prediction(product_id, external.score, action)
        return ScoringContext(
            category_weights={name.lower(): weight for name, weight in preferences.top_categories},
            wishlist=frozenset(profile.wishlist),
            cart=frozenset(profile.cart),
            price_range=profile.price_range,
            high_intent=frozenset(self._behavior.get_high_intent_products()),
            predictions=predictions,
        )

    # --- Scoring ---

    def score_product(self, product: Product, ctx: ScoringContext | None = None) -> ProductScore:
        return score_product(product, ctx or self.build_context(), now=self._clock())

    def recompute(self) -> dict[str, ProductScore]:
        started = time.perf_counter()
        ctx = self.build_context()
        now = self._clock()
        stamp = time.time()
        scores = {
            product.id: score_product(product, ctx, now=now, timestamp=stamp)
            for product in self._catalog.products()
        }
        self._scores = scores
        duration = time.perf_counter() - started
        metrics.SCORING_DURATION.observe(duration)
        logger.debug("scores recomputed products=%s duration=%.4f", len(scores), duration)
        if self._bus is not None:
            self._bus.emit(
                "scores_updated",
                {
                    "product_count": len(scores),
                    "top_product_ids": [s.product_id for s in self.get_top_scored(5)],
                    "duration_ms": duration * 1000.0,
                },
            )
        return scores

    # --- Queries ---

    def get_score(self, product_id: str) -> ProductScore | None:
        score = self._scores.get(product_id)
        if score is None:
            product = self._catalog.get(product_id)
            if product is None:
                return None
            score = self.score_product(product)
        return score

    def get_scores(self) -> dict[str, ProductScore]:
        return dict(self._scores)

    def get_top_scored(self, limit: int = 10) -> list[ProductScore]:
        ranked = sorted(self._scores.values(), key=lambda s: s.total_score, reverse=True)
        return ranked[: max(0, limit)]


__all__ = ["ProductScoringEngine", "business_multiplier", "score_product"]
