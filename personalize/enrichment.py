"""Optional enrichment endpoints with rule-based fallbacks.

Every endpoint is called once (no retry). A non-2xx status, a malformed body,
a timeout or a disabled client all resolve to the documented fallback, so
callers never see an exception from this module.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Iterable, Literal, Sequence, TypeVar

import httpx
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError

from personalize import metrics
from personalize.behavior.models import BehaviorScore
from personalize.cache.dedup import RequestDeduplicator, make_request_key
from personalize.cache.memo import MemoCache
from personalize.config import settings
from personalize.http_client import async_http_client

logger = logging.getLogger("personalize.enrichment")

M = TypeVar("M", bound=BaseModel)

SENTIMENT_TTL = 120.0
PATTERN_TTL = 300.0

SEGMENT_BOOSTS: dict[str, float] = {
    "impulse_buyers": 1.3,
    "loyal_customers": 1.4,
    "researchers": 1.1,
    "bargain_hunters": 0.9,
    "casual_browsers": 0.8,
}
TREND_MULTIPLIERS: dict[str, float] = {"increasing": 1.2, "stable": 1.0, "decreasing": 0.85}
PATTERN_MULTIPLIERS: dict[str, float] = {
    "impulse_buyer": 1.5,
    "researcher": 1.2,
    "price_sensitive": 0.9,
    "brand_loyal": 1.8,
}

_ENGAGEMENT_TYPES = frozenset({"view", "page_visit", "cart_add", "wishlist_add"})
_HOVER_TYPES = frozenset({"hover", "hover_end"})


# --- Wire models ---


class Interaction(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    type: str
    product_id: str | None = Field(default=None, validation_alias=AliasChoices("product_id", "productId"))
    duration: float | None = None
    timestamp: float | None = None

    def wire(self) -> dict[str, Any]:
        return {"type": self.type, "productId": self.product_id, "duration": self.duration, "timestamp": self.timestamp}


class _Response(BaseModel):
    model_config = ConfigDict(extra="ignore")


class _Sentiment(_Response):
    sentiment: Literal["positive", "neutral", "negative"]
    confidence: float = Field(ge=0.0, le=1.0)


class SentimentResponse(_Response):
    sentiment: _Sentiment


class _Cluster(_Response):
    segment_id: str = Field(validation_alias=AliasChoices("segmentId", "segment_id"))
    name: str = ""


class _Segmentation(_Response):
    user_cluster: _Cluster


class SegmentationResponse(_Response):
    segmentation: _Segmentation


class _ForecastInsights(_Response):
    trend_direction: str


class _Forecast(_Response):
    insights: _ForecastInsights


class ForecastResponse(_Response):
    forecasts: list[_Forecast] = Field(min_length=1)


class _Analysis(_Response):
    primary_pattern: str = Field(validation_alias=AliasChoices("primaryPattern", "primary_pattern"))
    confidence: float = Field(default=0.5, ge=0.0, le=1.0)


class BehaviorAnalysisResponse(_Response):
    success: bool = True
    analysis: _Analysis


# --- Results ---


@dataclass(frozen=True, slots=True)
class SentimentScore:
    product_id: str
    sentiment: str
    confidence: float
    source: str = "fallback"


@dataclass(frozen=True, slots=True)
class SegmentBoost:
    segment: str
    boost: float


@dataclass(frozen=True, slots=True)
class DemandForecast:
    trend: str
    multiplier: float


@dataclass(frozen=True, slots=True)
class BehaviorPattern:
    pattern: str
    confidence: float


@dataclass(slots=True)
class EnhancedPrediction:
    product_id: str
    base_score: float
    score: float
    reasons: list[str] = field(default_factory=list)

    @property
    def trend(self) -> str:
        if self.score > self.base_score * 1.1:
            return "rising"
        if self.score < self.base_score * 0.9:
            return "falling"
        return "stable"


# --- Fallback rules ---


def fallback_sentiment(product_id: str, interactions: Sequence[Interaction]) -> SentimentScore:
    own = [i for i in interactions if i.product_id in (None, product_id)]
    hovers = [i.duration for i in own if i.type in _HOVER_TYPES and i.duration]
    avg_hover = sum(hovers) / len(hovers) if hovers else 0.0
    bounce_rate = sum(1 for i in own if i.type == "quick_bounce") / max(len(own), 1)
    depth = sum(1 for i in own if i.type in _ENGAGEMENT_TYPES)

    if avg_hover > 3000 and depth > 2:
        return SentimentScore(product_id, "positive", 0.8)
    if bounce_rate > 0.7:
        return SentimentScore(product_id, "negative", 0.6)
    if depth > 0:
        return SentimentScore(product_id, "positive", 0.6)
    return SentimentScore(product_id, "neutral", 0.5)


FALLBACK_SEGMENT = SegmentBoost("unknown", 1.0)
FALLBACK_FORECAST = DemandForecast("stable", 1.0)
FALLBACK_PATTERN = BehaviorPattern("researcher", 0.5)


def interactions_from_score(score: BehaviorScore) -> list[Interaction]:
    """Approximate an interaction log from aggregated behavior counters."""

    pid = score.product_id
    items: list[Interaction] = [Interaction(type="view", product_id=pid) for _ in range(score.views)]
    if score.hovers:
        avg = score.hover_duration / score.hovers
        items.extend(Interaction(type="hover_end", product_id=pid, duration=avg) for _ in range(score.hovers))
    if score.wishlisted:
        items.append(Interaction(type="wishlist_add", product_id=pid))
    if score.in_cart:
        items.append(Interaction(type="cart_add", product_id=pid))
    return items


class EnrichmentClient:
    """Talk to the enrichment endpoints, memoizing sentiment and behavior-pattern lookups."""

    def __init__(
        self,
        base_url: str | None = None,
        *,
        client: httpx.AsyncClient | None = None,
        cache: MemoCache | None = None,
        dedup: RequestDeduplicator | None = None,
        enabled: bool | None = None,
        timeout: float | None = None,
    ) -> None:
        self._base_url = (base_url or settings.ENRICHMENT_BASE_URL).rstrip("/")
        self._client = client
        self._cache = cache or MemoCache(ttl=PATTERN_TTL, max_age=PATTERN_TTL, max_entries=500)
        self._dedup = dedup or RequestDeduplicator()
        self.enabled = settings.ENRICHMENT_ENABLED if enabled is None else enabled
        self._timeout = settings.ENRICHMENT_TIMEOUT if timeout is None else timeout

    @asynccontextmanager
    async def _session(self) -> AsyncIterator[httpx.AsyncClient]:
        if self._client is not None:
            yield self._client
            return
        async with async_http_client(timeout=self._timeout) as client:
            yield client

    async def _post(self, endpoint: str, payload: dict[str, Any], model: type[M]) -> M | None:
        if not self.enabled:
            metrics.ENRICHMENT_FALLBACKS.labels(endpoint=endpoint).inc()
            return None
        url = f"{self._base_url}/{endpoint}"
        try:
            async with self._session() as client:
                response = await client.post(url, json=payload, timeout=self._timeout)
            response.raise_for_status()
            return model.model_validate(response.json())
        except httpx.HTTPStatusError as exc:
            logger.warning("enrichment status endpoint=%s status=%s", endpoint, exc.response.status_code)
        except httpx.HTTPError as exc:
            logger.warning("enrichment transport endpoint=%s error=%s", endpoint, exc.__class__.__name__)
        except (ValidationError, ValueError):
            logger.warning("enrichment malformed response endpoint=%s", endpoint)
        metrics.ENRICHMENT_FALLBACKS.labels(endpoint=endpoint).inc()
        return None

    # --- Endpoints ---

    async def sentiment(self, product_id: str, interactions: Sequence[Interaction]) -> SentimentScore:
        async def _fetch() -> SentimentScore:
            body = await self._post(
                "sentiment-analysis",
                {
                    "productId": product_id,
                    "interactions": [i.wire() for i in interactions],
                    "context": "prediction_enhancement",
                    "realtime": True,
                },
                SentimentResponse,
            )
            if body is None:
                return fallback_sentiment(product_id, interactions)
            return SentimentScore(product_id, body.sentiment.sentiment, body.sentiment.confidence, source="remote")

        key = make_request_key("sentiment", product_id)
        return await self._dedup.cached(self._cache, key, _fetch, ttl=SENTIMENT_TTL)

    async def segmentation_boost(self, session_id: str, interactions: Sequence[Interaction]) -> SegmentBoost:
        body = await self._post(
            "user-segmentation",
            {"userId": session_id, "userBehavior": [i.wire() for i in interactions]},
            SegmentationResponse,
        )
        if body is None:
            return FALLBACK_SEGMENT
        cluster = body.segmentation.user_cluster
        return SegmentBoost(cluster.name or cluster.segment_id, SEGMENT_BOOSTS.get(cluster.segment_id, 1.0))

    async def demand_forecast(self, product_id: str) -> DemandForecast:
        body = await self._post(
            "demand-forecasting",
            {"productIds": [product_id], "timeHorizon": 7, "granularity": "daily"},
            ForecastResponse,
        )
        if body is None:
            return FALLBACK_FORECAST
        trend = body.forecasts[0].insights.trend_direction
        return DemandForecast(trend, TREND_MULTIPLIERS.get(trend, 1.0))

    async def behavior_pattern(self, session_id: str, interactions: Sequence[Interaction]) -> BehaviorPattern:
        async def _fetch() -> BehaviorPattern:
            body = await self._post(
                "behavior-analysis",
                {"sessionId": session_id, "behaviorData": _behavior_features(interactions)},
                BehaviorAnalysisResponse,
            )
            if body is None or not body.success:
                return FALLBACK_PATTERN
            return BehaviorPattern(body.analysis.primary_pattern, body.analysis.confidence)

        key = make_request_key("pattern", session_id)
        return await self._dedup.cached(self._cache, key, _fetch, ttl=PATTERN_TTL)

    async def enhance_prediction(
        self,
        product_id: str,
        base_score: float,
        interactions: Sequence[Interaction],
        session_id: str,
    ) -> EnhancedPrediction:
        """Apply pattern, sentiment, segment and demand multipliers to ``base_score``."""

        result = EnhancedPrediction(product_id=product_id, base_score=base_score, score=max(0.0, base_score))
        score = result.score

        pattern = await self.behavior_pattern(session_id, interactions)
        multiplier = PATTERN_MULTIPLIERS.get(pattern.pattern, 1.0)
        score *= multiplier
        if multiplier > 1.2:
            result.reasons.append(f"{pattern.pattern} pattern (+{round((multiplier - 1) * 100)}%)")

        sentiment = await self.sentiment(product_id, interactions)
        if sentiment.sentiment == "positive" and sentiment.confidence > 0.6:
            boost = sentiment.confidence * 0.4
            score *= 1 + boost
            result.reasons.append(f"Positive sentiment (+{round(boost * 100)}%)")

        segment = await self.segmentation_boost(session_id, interactions)
        if segment.boost > 1.1:
            score *= segment.boost
            result.reasons.append(f"{segment.segment} segment match")

        forecast = await self.demand_forecast(product_id)
        if forecast.multiplier != 1.0:
            score *= forecast.multiplier
            result.reasons.append(f"Demand forecast: {forecast.trend}")

        result.score = max(0.0, min(100.0, score))
        logger.debug("prediction enhanced product=%s base=%.1f score=%.1f", product_id, base_score, result.score)
        return result


def _behavior_features(interactions: Iterable[Interaction]) -> dict[str, Any]:
    items = list(interactions)
    hovers = [i.duration for i in items if i.type in _HOVER_TYPES and i.duration]
    return {
        "totalInteractions": len(items),
        "pageVisits": sum(1 for i in items if i.type in ("view", "page_visit")),
        "avgHoverDuration": sum(hovers) / len(hovers) if hovers else 0.0,
        "cartActions": sum(1 for i in items if "cart" in i.type),
        "wishlistActions": sum(1 for i in items if "wishlist" in i.type),
        "quickBounces": sum(1 for i in items if i.type == "quick_bounce"),
    }


__all__ = [
    "BehaviorPattern",
    "DemandForecast",
    "EnhancedPrediction",
    "EnrichmentClient",
    "Interaction",
    "PATTERN_MULTIPLIERS",
    "SEGMENT_BOOSTS",
    "SegmentBoost",
    "SentimentScore",
    "TREND_MULTIPLIERS",
    "fallback_sentiment",
    "interactions_from_score",
]
