"""Per-session behavior tracking: scores, predictions and the user profile."""

from __future__ import annotations

import logging
import threading
import time
from typing import Any, Callable, Iterable

from personalize import metrics
from personalize.behavior.intent import extract_intent
from personalize.behavior.models import (
    PREFERENCE_KINDS,
    BehaviorScore,
    PredictedAction,
    SearchIntent,
    UserPreferences,
    UserProfile,
    safe_number,
    segment_for,
)
from personalize.events import EventBus
from personalize.scheduler import Scheduler, TimerHandle
from personalize.storage import (
    PROFILE_KEY,
    SEARCH_HISTORY_KEY,
    KeyValueStore,
    safe_get,
    safe_set,
)

logger = logging.getLogger("personalize.behavior")

EVENT_WEIGHTS: dict[str, float] = {
    "hover": 1.0,
    "hover_second": 0.5,
    "view": 3.0,
    "wishlist": 10.0,
    "cart": 15.0,
    "purchase": 25.0,
    "search": 2.0,
    "related_view": 4.0,
}

# (action, minimum score, confidence base, confidence cap), highest first
PREDICTION_LADDER: tuple[tuple[PredictedAction, float, float, float], ...] = (
    (PredictedAction.PURCHASE, 40.0, 50.0, 95.0),
    (PredictedAction.CART, 25.0, 40.0, 85.0),
    (PredictedAction.WISHLIST, 15.0, 30.0, 75.0),
    (PredictedAction.VIEW, 5.0, 20.0, 65.0),
)

SIGNIFICANT_HOVER_SECONDS = 0.5
_HOUR = 3600.0


def predict(score: float, idle_seconds: float) -> tuple[PredictedAction, float]:
    """Map a cumulative score to the next funnel step and a staleness-discounted confidence."""

    action, confidence = PredictedAction.NONE, 0.0
    for candidate, threshold, base, cap in PREDICTION_LADDER:
        if score >= threshold:
            action, confidence = candidate, min(cap, base + score)
            break
    hours = idle_seconds / _HOUR
    if hours > 72:
        confidence *= 0.6
    elif hours > 24:
        confidence *= 0.8
    return action, max(0.0, min(100.0, confidence))


class BehaviorStore:
    """Records interaction events for one session and owns its :class:`UserProfile`."""

    def __init__(
        self,
        session_id: str,
        *,
        storage: KeyValueStore,
        scheduler: Scheduler,
        bus: EventBus | None = None,
        now: Callable[[], float] | None = None,
        persist_interval: float = 15.0,
        hover_min_ms: float = 200.0,
        search_history_limit: int = 50,
        failed_search_limit: int = 20,
    ) -> None:
        self._session_id = session_id
        self._storage = storage
        self._scheduler = scheduler
        self._bus = bus
        self._now = now or time.time
        self._persist_interval = persist_interval
        self._hover_min_ms = hover_min_ms
        self._search_limit = search_history_limit
        self._failed_limit = failed_search_limit
        self._lock = threading.RLock()
        self._profile = UserProfile(session_id=session_id, created_at=self._now())
        self._hover_started: dict[str, float] = {}
        self._hover_timers: dict[str, TimerHandle] = {}
        self._persist_timer: TimerHandle | None = None
        self._dirty = False
        self._opened = False

    @property
    def profile(self) -> UserProfile:
        return self._profile

    @property
    def session_id(self) -> str:
        return self._session_id

    # --- Lifecycle ---

    def open(self) -> None:
        if self._opened:
            return
        self._profile = self._load_profile()
        self.refresh_predictions()
        self._persist_timer = self._scheduler.every(self._persist_interval, self._periodic_save, name="profile-persist")
        self._opened = True
        logger.info(
            "behavior store opened session=%s products=%s searches=%s",
            self._session_id,
            len(self._profile.behavior_scores),
            len(self._profile.search_history),
        )

    def close(self) -> None:
        if not self._opened:
            return
        if self._persist_timer is not None:
            self._persist_timer.cancel()
            self._persist_timer = None
        for timer in self._hover_timers.values():
            timer.cancel()
        self._hover_timers.clear()
        self._hover_started.clear()
        self.save()
        self._opened = False
        logger.info("behavior store closed session=%s", self._session_id)

    def _load_profile(self) -> UserProfile:
        raw = safe_get(self._storage, PROFILE_KEY)
        profile = UserProfile.from_dict(raw, session_id=self._session_id)
        if raw is not None and not isinstance(raw, dict):
            logger.warning("persisted profile malformed, starting empty session=%s", self._session_id)
        if not profile.created_at:
            profile.created_at = self._now()
        history = safe_get(self._storage, SEARCH_HISTORY_KEY)
        if isinstance(history, list):
            profile.search_history = [str(q) for q in history if q][: self._search_limit]
        return profile

    def save(self) -> bool:
        with self._lock:
            payload = self._profile.to_dict()
            history = list(self._profile.search_history)
        saved = safe_set(self._storage, PROFILE_KEY, payload)
        saved = safe_set(self._storage, SEARCH_HISTORY_KEY, history) and saved
        if saved:
            self._dirty = False
        return saved

    def _periodic_save(self) -> None:
        self.refresh_predictions()
        if self._dirty:
            self.save()

    def on_visibility_change(self, hidden: bool) -> None:
        if hidden:
            self.save()

    def privacy_clear(self) -> None:
        """Forget everything about this session, in memory and in storage."""

        with self._lock:
            self._profile = UserProfile(session_id=self._session_id, created_at=self._now())
            self._hover_started.clear()
            for timer in self._hover_timers.values():
                timer.cancel()
            self._hover_timers.clear()
            self._dirty = False
        for key in (PROFILE_KEY, SEARCH_HISTORY_KEY):
            try:
                self._storage.delete(key)
            except Exception:
                logger.warning("privacy clear could not delete key=%s", key, exc_info=True)
        logger.info("profile cleared session=%s", self._session_id)

    # --- Tracking ---

    def _score_for(self, product_id: str) -> BehaviorScore:
        score = self._profile.behavior_scores.get(product_id)
        if score is None:
            score = BehaviorScore(product_id=product_id, last_interaction=self._now())
            self._profile.behavior_scores[product_id] = score
        return score

    def _apply(self, score: BehaviorScore, delta: float) -> None:
        score.score = max(0.0, score.score + delta)
        now = self._now()
        score.last_interaction = now
        self._profile.last_active = now
        score.predicted_action, score.confidence = predict(score.score, 0.0)
        self._dirty = True

    def _emit(self, event: str, score: BehaviorScore | None = None, *, high_impact: bool = False) -> None:
        metrics.BEHAVIOR_EVENTS.labels(event=event).inc()
        if self._bus is None:
            return
        payload: dict[str, Any] = {"session_id": self._session_id, "event": event, "high_impact": high_impact}
        if score is not None:
            payload.update(
                product_id=score.product_id,
                score=score.score,
                predicted_action=score.predicted_action.value,
                confidence=score.confidence,
            )
        self._bus.emit("behavior_tracked", payload)

    def track_view(self, product_id: str, *, category: str | None = None, price: Any = None) -> BehaviorScore:
        with self._lock:
            score = self._score_for(product_id)
            score.views += 1
            self._apply(score, EVENT_WEIGHTS["view"])
            if category:
                prefs = self._profile.category_preferences
                prefs[category] = prefs.get(category, 0.0) + 1.0
            if price is not None:
                self.track_price_seen(price)
        self._emit("view", score)
        return score

    def track_related_view(self, product_id: str) -> BehaviorScore:
        with self._lock:
            score = self._score_for(product_id)
            score.related_views += 1
            self._apply(score, EVENT_WEIGHTS["related_view"])
        self._emit("related_view", score)
        return score

    def track_hover(self, product_id: str, duration_ms: float) -> BehaviorScore:
        duration_ms = safe_number(duration_ms)
        with self._lock:
            score = self._score_for(product_id)
            score.hovers += 1
            score.hover_duration += duration_ms
            delta = EVENT_WEIGHTS["hover"] + (duration_ms / 1000.0) * EVENT_WEIGHTS["hover_second"]
            self._apply(score, delta)
        self._emit("hover", score)
        return score

    def track_hover_start(self, product_id: str) -> None:
        with self._lock:
            self._hover_started[product_id] = self._scheduler.now()
            previous = self._hover_timers.pop(product_id, None)
            if previous is not None:
                previous.cancel()
            self._hover_timers[product_id] = self._scheduler.call_later(
                SIGNIFICANT_HOVER_SECONDS,
                lambda: self._significant_hover(product_id),
                name="significant-hover",
            )

    def _significant_hover(self, product_id: str) -> None:
        with self._lock:
            self._hover_timers.pop(product_id, None)
            if product_id not in self._hover_started:
                return
        self.track_hover(product_id, SIGNIFICANT_HOVER_SECONDS * 1000.0)

    def track_hover_end(self, product_id: str) -> BehaviorScore | None:
        with self._lock:
            timer = self._hover_timers.pop(product_id, None)
            if timer is not None:
                timer.cancel()
            started = self._hover_started.pop(product_id, None)
        if started is None:
            return None
        duration_ms = (self._scheduler.now() - started) * 1000.0
        if duration_ms <= self._hover_min_ms:
            return None
        return self.track_hover(product_id, duration_ms)

    def track_wishlist_add(self, product_id: str) -> BehaviorScore:
        with self._lock:
            score = self._score_for(product_id)
            score.wishlisted = True
            self._profile.wishlist.add(product_id)
            self._apply(score, EVENT_WEIGHTS["wishlist"])
        self._emit("wishlist_add", score, high_impact=True)
        self.save()
        return score

    def track_wishlist_remove(self, product_id: str) -> BehaviorScore:
        with self._lock:
            score = self._score_for(product_id)
            score.wishlisted = False
            self._profile.wishlist.discard(product_id)
            self._apply(score, -EVENT_WEIGHTS["wishlist"])
        self._emit("wishlist_remove", score, high_impact=True)
        self.save()
        return score

    def track_cart_add(self, product_id: str, *, price: Any = None) -> BehaviorScore:
        with self._lock:
            score = self._score_for(product_id)
            score.in_cart = True
            self._profile.cart.add(product_id)
            self._apply(score, EVENT_WEIGHTS["cart"])
            if price is not None:
                self.track_price_seen(price)
        self._emit("cart_add", score, high_impact=True)
        self.save()
        return score

    def track_cart_remove(self, product_id: str) -> BehaviorScore:
        with self._lock:
            score = self._score_for(product_id)
            score.in_cart = False
            self._profile.cart.discard(product_id)
            self._apply(score, -EVENT_WEIGHTS["cart"])
        self._emit("cart_remove", score, high_impact=True)
        self.save()
        return score

    def track_purchase(self, product_ids: str | Iterable[str], order_value: Any = None) -> list[BehaviorScore]:
        """Mark items purchased; ``order_value`` spread over the items widens the price range."""

        if isinstance(product_ids, str):
            product_ids = [product_ids]
        items = list(dict.fromkeys(str(pid) for pid in product_ids if pid))
        scores: list[BehaviorScore] = []
        with self._lock:
            for product_id in items:
                score = self._score_for(product_id)
                score.purchased = True
                self._profile.purchased.add(product_id)
                self._profile.cart.discard(product_id)
                self._apply(score, EVENT_WEIGHTS["purchase"])
                scores.append(score)
            if items and safe_number(order_value) > 0:
                self.track_price_seen(safe_number(order_value) / len(items))
        for score in scores:
            self._emit("purchase", score, high_impact=True)
        if scores:
            self.save()
        return scores

    def track_search(
        self,
        query: str,
        results: Iterable[str] = (),
        result_count: int | None = None,
    ) -> SearchIntent | None:
        normalized = " ".join(str(query or "").lower().split())
        if not normalized:
            return None
        matched = [str(pid) for pid in results]
        found = len(matched) if result_count is None else int(safe_number(result_count))
        intent = extract_intent(normalized)
        with self._lock:
            history = [q for q in self._profile.search_history if q != normalized]
            history.insert(0, normalized)
            self._profile.search_history = history[: self._search_limit]

            for product_id in matched:
                score = self._profile.behavior_scores.get(product_id)
                if score is None:
                    continue
                score.search_appearances += 1
                self._apply(score, EVENT_WEIGHTS["search"])

            if found == 0:
                self._profile.failed_searches.insert(
                    0,
                    {
                        "query": normalized,
                        "intent": intent.intent,
                        "categories": list(intent.categories),
                        "timestamp": self._now(),
                    },
                )
                del self._profile.failed_searches[self._failed_limit :]
                logger.info("search returned nothing query=%s intent=%s", normalized, intent.intent)

            prefs = self._profile.category_preferences
            for category in intent.categories:
                prefs[category] = prefs.get(category, 0.0) + 3.0
            for keyword in intent.keywords:
                prefs[keyword] = prefs.get(keyword, 0.0) + 1.0
            self._profile.last_active = self._now()
            self._dirty = True
        self._emit("search")
        return intent

    def track_price_seen(self, price: Any) -> None:
        value = safe_number(price)
        if value <= 0:
            return
        with self._lock:
            low, high = value * 0.8, value * 1.2
            current = self._profile.price_range
            if current is not None:
                low, high = min(current[0], low), max(current[1], high)
            self._profile.price_range = (round(low, 2), round(high, 2))
            self._dirty = True

    def track_preference(self, kind: str, name: str, amount: float = 1.0) -> None:
        if not name:
            return
        if kind not in PREFERENCE_KINDS:
            logger.warning("unknown preference kind=%s name=%s", kind, name)
            return
        with self._lock:
            prefs = self._profile.preferences(kind)
            prefs[name] = max(0.0, prefs.get(name, 0.0) + float(amount))
            self._dirty = True

    def link_user(self, user_id: str | None) -> None:
        with self._lock:
            self._profile.user_id = user_id
            self._dirty = True

    def refresh_predictions(self) -> None:
        """Re-derive every prediction so confidence reflects time since the last interaction."""

        with self._lock:
            now = self._now()
            for score in self._profile.behavior_scores.values():
                score.predicted_action, score.confidence = predict(
                    score.score, max(0.0, now - score.last_interaction)
                )

    # --- Queries ---

    def get_behavior_score(self, product_id: str) -> BehaviorScore | None:
        return self._profile.behavior_scores.get(product_id)

    def get_predicted_products(
        self,
        action: PredictedAction | None = None,
        min_confidence: float = 50.0,
    ) -> list[BehaviorScore]:
        with self._lock:
            scores = [
                score
                for score in self._profile.behavior_scores.values()
                if score.predicted_action is not PredictedAction.NONE
                and score.confidence > min_confidence
                and (action is None or score.predicted_action is action)
            ]
        return sorted(scores, key=lambda s: s.score, reverse=True)

    def get_high_intent_products(self) -> list[str]:
        with self._lock:
            return [
                score.product_id
                for score in self._profile.behavior_scores.values()
                if score.confidence > 70
                and score.predicted_action in (PredictedAction.CART, PredictedAction.PURCHASE)
            ]

    def get_user_preferences(self) -> UserPreferences:
        with self._lock:
            profile = self._profile
            return UserPreferences(
                top_categories=_top(profile.category_preferences, 5),
                top_brands=_top(profile.brand_preferences, 5),
                price_range=profile.price_range,
                wishlist_count=len(profile.wishlist),
                cart_count=len(profile.cart),
                search_count=len(profile.search_history),
                prediction_count=len(self.get_predicted_products()),
            )

    def get_user_segment(self) -> str:
        with self._lock:
            profile = self._profile
            return segment_for(
                cart_count=len(profile.cart),
                wishlist_count=len(profile.wishlist),
                prediction_count=len(self.get_predicted_products()),
                search_count=len(profile.search_history),
            )

    def recently_viewed(self, limit: int = 5) -> list[str]:
        with self._lock:
            viewed = [s for s in self._profile.behavior_scores.values() if s.views or s.hovers]
        viewed.sort(key=lambda s: s.last_interaction, reverse=True)
        return [s.product_id for s in viewed[:limit]]

    def export_profile(self) -> dict[str, Any]:
        with self._lock:
            return self._profile.to_dict()


def _top(prefs: dict[str, float], limit: int) -> list[tuple[str, float]]:
    return sorted(prefs.items(), key=lambda item: item[1], reverse=True)[:limit]


__all__ = ["BehaviorStore", "EVENT_WEIGHTS", "PREDICTION_LADDER", "predict"]
