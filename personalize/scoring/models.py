"""Scoring data model."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


@dataclass(frozen=True, slots=True)
class Prediction:
    """Purchase-probability estimate for one product, 0..100."""

    product_id: str
    score: float
    action: str = "view"


@dataclass(slots=True)
class ScoringContext:
    """Profile-derived inputs shared by every product in one scoring pass."""

    category_weights: dict[str, float] = field(default_factory=dict)
    wishlist: frozenset[str] = frozenset()
    cart: frozenset[str] = frozenset()
    price_range: tuple[float, float] | None = None
    high_intent: frozenset[str] = frozenset()
    predictions: dict[str, Prediction] = field(default_factory=dict)


@dataclass(slots=True)
class ProductScore:
    product_id: str
    personalized: float = 0.0
    trending: float = 0.0
    inventory: float = 0.0
    margin: float = 0.0
    conversion: float = 0.0
    estimated_margin: float = 0.0
    business_multiplier: float = 1.0
    total_score: float = 0.0
    reasons: list[str] = field(default_factory=list)
    boosters: list[str] = field(default_factory=list)
    updated_at: float = 0.0

    @property
    def base_score(self) -> float:
        return self.personalized + self.trending + self.inventory + self.margin + self.conversion

    def to_dict(self) -> dict[str, Any]:
        return {
            "productId": self.product_id,
            "personalizedScore": self.personalized,
            "trendingScore": self.trending,
            "inventoryScore": self.inventory,
            "marginScore": self.margin,
            "conversionScore": self.conversion,
            "estimatedMargin": self.estimated_margin,
            "businessMultiplier": self.business_multiplier,
            "totalScore": self.total_score,
            "reasons": list(self.reasons),
            "boosters": list(self.boosters),
        }


__all__ = ["Prediction", "ProductScore", "ScoringContext"]
