"""Recommendation request and result models."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Literal

PageType = Literal["home", "product", "collection", "search", "cart", "checkout"]
RecommendationKind = Literal["personalized", "similar", "cross-sell", "upsell", "trending"]


@dataclass(frozen=True, slots=True)
class PageContext:
    page: PageType = "home"
    product_id: str | None = None
    collection: str | None = None
    query: str | None = None
    product_ids: tuple[str, ...] = ()

    @property
    def path(self) -> str:
        if self.page == "product" and self.product_id:
            return f"/products/{self.product_id}"
        if self.page == "collection" and self.collection:
            return f"/collections/{self.collection}"
        if self.page == "search":
            return "/search"
        if self.page in ("cart", "checkout"):
            return f"/{self.page}"
        return "/"


@dataclass(frozen=True, slots=True)
class SourceWeights:
    collaborative: float = 0.4
    basket: float = 0.3
    behavior: float = 0.3


@dataclass(slots=True)
class Recommendation:
    product_id: str
    score: float = 0.0
    kind: RecommendationKind = "personalized"
    reasons: list[str] = field(default_factory=list)
    sources: dict[str, float] = field(default_factory=dict)
    boosts: list[str] = field(default_factory=list)

    @property
    def reason(self) -> str:
        return " + ".join(self.reasons)


__all__ = ["PageContext", "PageType", "Recommendation", "RecommendationKind", "SourceWeights"]
