"""Behavior store data model."""

from __future__ import annotations

import enum
import math
from dataclasses import dataclass, field
from typing import Any, Iterable, Literal, Mapping, get_args


class PredictedAction(str, enum.Enum):
    NONE = "none"
    VIEW = "view"
    WISHLIST = "wishlist"
    CART = "cart"
    PURCHASE = "purchase"

    @property
    def rank(self) -> int:
        return _ACTION_ORDER.index(self)

    def at_least(self, other: "PredictedAction") -> bool:
        return self.rank >= other.rank


_ACTION_ORDER = [
    PredictedAction.NONE,
    PredictedAction.VIEW,
    PredictedAction.WISHLIST,
    PredictedAction.CART,
    PredictedAction.PURCHASE,
]


def safe_number(value: Any, default: float = 0.0) -> float:
    """Coerce ``value`` to a finite, non-negative float."""

    try:
        number = float(value)
    except (TypeError, ValueError):
        return default
    if math.isnan(number) or math.isinf(number) or number < 0:
        return default
    return number


@dataclass(slots=True)
class BehaviorScore:
    product_id: str
    score: float = 0.0
    views: int = 0
    hovers: int = 0
    hover_duration: float = 0.0
    wishlisted: bool = False
    in_cart: bool = False
    purchased: bool = False
    search_appearances: int = 0
    related_views: int = 0
    last_interaction: float = 0.0
    predicted_action: PredictedAction = PredictedAction.NONE
    confidence: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "productId": self.product_id,
            "score": self.score,
            "views": self.views,
            "hovers": self.hovers,
            "hoverDuration": self.hover_duration,
            "wishlisted": self.wishlisted,
            "inCart": self.in_cart,
            "purchased": self.purchased,
            "searchAppearances": self.search_appearances,
            "relatedViews": self.related_views,
            "lastInteraction": self.last_interaction,
            "predictedAction": self.predicted_action.value,
            "confidence": self.confidence,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "BehaviorScore":
        try:
            action = PredictedAction(data.get("predictedAction", "none"))
        except ValueError:
            action = PredictedAction.NONE
        return cls(
            product_id=str(data["productId"]),
            score=safe_number(data.get("score")),
            views=int(safe_number(data.get("views"))),
            hovers=int(safe_number(data.get("hovers"))),
            hover_duration=safe_number(data.get("hoverDuration")),
            wishlisted=bool(data.get("wishlisted", False)),
            in_cart=bool(data.get("inCart", False)),
            purchased=bool(data.get("purchased", False)),
            search_appearances=int(safe_number(data.get("searchAppearances"))),
            related_views=int(safe_number(data.get("relatedViews"))),
            last_interaction=safe_number(data.get("lastInteraction")),
            predicted_action=action,
            confidence=min(100.0, safe_number(data.get("confidence"))),
        )


def _pairs(mapping: Mapping[str, float]) -> list[list[Any]]:
    return [[key, value] for key, value in mapping.items()]


def _unpairs(raw: Any) -> dict[str, float]:
    result: dict[str, float] = {}
    if isinstance(raw, Mapping):
        raw = list(raw.items())
    if not isinstance(raw, Iterable) or isinstance(raw, (str, bytes)):
        return result
    for item in raw:
        if isinstance(item, (list, tuple)) and len(item) == 2:
            result[str(item[0])] = safe_number(item[1])
    return result


def _id_list(raw: Any) -> list[str]:
    if not isinstance(raw, (list, tuple, set)):
        return []
    return [str(item) for item in raw if item is not None]


PreferenceKind = Literal["category", "brand", "feature"]
PREFERENCE_KINDS: frozenset[str] = frozenset(get_args(PreferenceKind))


@dataclass(slots=True)
class UserProfile:
    session_id: str
    user_id: str | None = None
    search_history: list[str] = field(default_factory=list)
    failed_searches: list[dict[str, Any]] = field(default_factory=list)
    category_preferences: dict[str, float] = field(default_factory=dict)
    brand_preferences: dict[str, float] = field(default_factory=dict)
    feature_preferences: dict[str, float] = field(default_factory=dict)
    price_range: tuple[float, float] | None = None
    wishlist: set[str] = field(default_factory=set)
    cart: set[str] = field(default_factory=set)
    purchased: set[str] = field(default_factory=set)
    behavior_scores: dict[str, BehaviorScore] = field(default_factory=dict)
    created_at: float = 0.0
    last_active: float = 0.0

    def preferences(self, kind: str) -> dict[str, float]:
        if kind == "category":
            return self.category_preferences
        if kind == "brand":
            return self.brand_preferences
        if kind == "feature":
            return self.feature_preferences
        raise ValueError(f"unknown preference kind: {kind}")

    def to_dict(self) -> dict[str, Any]:
        """Plain JSON-able structure; preference maps become ordered ``[key, value]`` pairs."""

        return {
            "sessionId": self.session_id,
            "userId": self.user_id,
            "searchHistory": list(self.search_history),
            "failedSearches": list(self.failed_searches),
            "categoryPreferences": _pairs(self.category_preferences),
            "brandPreferences": _pairs(self.brand_preferences),
            "featurePreferences": _pairs(self.feature_preferences),
            "priceRange": list(self.price_range) if self.price_range else None,
            "wishlist": sorted(self.wishlist),
            "cart": sorted(self.cart),
            "purchased": sorted(self.purchased),
            "behaviorScores": [score.to_dict() for score in self.behavior_scores.values()],
            "createdAt": self.created_at,
            "lastActive": self.last_active,
        }

    @classmethod
    def from_dict(cls, data: Any, *, session_id: str) -> "UserProfile":
        """Rebuild a profile; anything malformed yields an empty profile for ``session_id``."""

        if not isinstance(data, Mapping):
            return cls(session_id=session_id)
        try:
            price_range = data.get("priceRange")
            if isinstance(price_range, (list, tuple)) and len(price_range) == 2:
                low, high = safe_number(price_range[0]), safe_number(price_range[1])
                parsed_range: tuple[float, float] | None = (min(low, high), max(low, high))
            else:
                parsed_range = None
            scores: dict[str, BehaviorScore] = {}
            for raw in data.get("behaviorScores") or []:
                if isinstance(raw, Mapping) and raw.get("productId"):
                    score = BehaviorScore.from_dict(raw)
                    scores[score.product_id] = score
            return cls(
                session_id=str(data.get("sessionId") or session_id),
                user_id=data.get("userId"),
                search_history=[str(q) for q in data.get("searchHistory") or [] if q],
                failed_searches=[
                    dict(item)
                    for item in data.get("failedSearches") or []
                    if isinstance(item, Mapping) and item.get("query")
                ],
                category_preferences=_unpairs(data.get("categoryPreferences")),
                brand_preferences=_unpairs(data.get("brandPreferences")),
                feature_preferences=_unpairs(data.get("featurePreferences")),
                price_range=parsed_range,
                wishlist=set(_id_list(data.get("wishlist"))),
                cart=set(_id_list(data.get("cart"))),
                purchased=set(_id_list(data.get("purchased"))),
                behavior_scores=scores,
                created_at=safe_number(data.get("createdAt")),
                last_active=safe_number(data.get("lastActive")),
            )
        except (KeyError, TypeError, ValueError, AttributeError):
            return cls(session_id=session_id)


@dataclass(frozen=True, slots=True)
class SearchIntent:
    query: str
    keywords: tuple[str, ...]
    categories: tuple[str, ...]
    intent: str


@dataclass(frozen=True, slots=True)
class UserPreferences:
    top_categories: list[tuple[str, float]]
    top_brands: list[tuple[str, float]]
    price_range: tuple[float, float] | None
    wishlist_count: int
    cart_count: int
    search_count: int
    prediction_count: int


SEGMENTS = ("new", "returning", "loyal", "high-value")


def segment_for(*, cart_count: int, wishlist_count: int, prediction_count: int, search_count: int) -> str:
    """Coarse user segment from profile size; gates reorder strategies and boosts."""

    if cart_count > 5 or wishlist_count > 10:
        return "high-value"
    if prediction_count > 5:
        return "loyal"
    if search_count > 3:
        return "returning"
    return "new"


__all__ = [
    "BehaviorScore",
    "PREFERENCE_KINDS",
    "PredictedAction",
    "PreferenceKind",
    "SEGMENTS",
    "SearchIntent",
    "UserPreferences",
    "UserProfile",
    "safe_number",
    "segment_for",
]
