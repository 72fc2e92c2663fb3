"""Product scoring engine."""

from personalize.scoring.engine import ProductScoringEngine, business_multiplier, score_product
from personalize.scoring.models import Prediction, ProductScore, ScoringContext

__all__ = [
    "Prediction",
    "ProductScore",
    "ProductScoringEngine",
    "ScoringContext",
    "business_multiplier",
    "score_product",
]
