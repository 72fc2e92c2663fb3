"""Recommendation aggregation and in-place content reordering."""

from personalize.reco.aggregator import RecommendationAggregator
from personalize.reco.boost import complement_score, contextual_boost, cross_sell_boost, upsell_products
from personalize.reco.models import PageContext, Recommendation, SourceWeights
from personalize.reco.reorder import ContentReorderEngine, DEFAULT_STRATEGIES, ReorderStrategy, blend, effective_weight

__all__ = [
    "ContentReorderEngine",
    "DEFAULT_STRATEGIES",
    "PageContext",
    "Recommendation",
    "RecommendationAggregator",
    "ReorderStrategy",
    "SourceWeights",
    "blend",
    "complement_score",
    "contextual_boost",
    "cross_sell_boost",
    "effective_weight",
    "upsell_products",
]
