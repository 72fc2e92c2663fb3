from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional

SUBTLETY_MODES = ("aggressive", "balanced", "subtle")
PRIMARY_METRICS = ("conversion_rate", "revenue", "engagement")
STATUSES = ("draft", "running", "paused", "completed")


def _number(value: Any, default: float = 0.0) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return default
    if math.isnan(number) or number < 0:
        return default
    return number


# --- Data classes ---------------------------------------------------------


@dataclass(slots=True)
class VariantConfig:
    subtlety_mode: str = "balanced"
    reordering_enabled: bool = True
    personalization_strength: float = 0.6
    enabled_strategies: List[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any] | None) -> "VariantConfig":
        data = data or {}
        mode = str(data.get("subtlety_mode", "balanced")).lower()
        strategies = data.get("enabled_strategies") or []
        return cls(
            subtlety_mode=mode if mode in SUBTLETY_MODES else "balanced",
            reordering_enabled=bool(data.get("reordering_enabled", True)),
            personalization_strength=min(1.0, _number(data.get("personalization_strength"), 0.6)),
            enabled_strategies=[str(s) for s in strategies],
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "subtlety_mode": self.subtlety_mode,
            "reordering_enabled": self.reordering_enabled,
            "personalization_strength": self.personalization_strength,
            "enabled_strategies": list(self.enabled_strategies),
        }


@dataclass(slots=True)
class VariantPerformance:
    impressions: int = 0
    conversions: int = 0
    conversion_rate: float = 0.0
    avg_order_value: float = 0.0
    engagement_time: float = 0.0

    @classmethod
    def from_dict(cls, data: Mapping[str, Any] | None) -> "VariantPerformance":
        data = data or {}
        return cls(
            impressions=int(_number(data.get("impressions"))),
            conversions=int(_number(data.get("conversions"))),
            conversion_rate=_number(data.get("conversion_rate")),
            avg_order_value=_number(data.get("avg_order_value")),
            engagement_time=_number(data.get("engagement_time")),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "impressions": self.impressions,
            "conversions": self.conversions,
            "conversion_rate": self.conversion_rate,
            "avg_order_value": self.avg_order_value,
            "engagement_time": self.engagement_time,
        }


@dataclass(slots=True)
class ExperimentVariant:
    id: str
    name: str
    weight: float
    config: VariantConfig = field(default_factory=VariantConfig)
    performance: VariantPerformance = field(default_factory=VariantPerformance)


@dataclass(slots=True)
class Experiment:
    id: str
    name: str
    variants: List[ExperimentVariant]
    primary_metric: str = "conversion_rate"
    status: str = "running"  # draft -> running -> completed
    segments: List[str] = field(default_factory=lambda: ["all"])
    pages: List[str] = field(default_factory=list)
    min_sample: int = 100
    confidence_level: float = 0.95
    description: str = ""
    winner: Optional[str] = None

    def variant(self, variant_id: str) -> Optional[ExperimentVariant]:
        for variant in self.variants:
            if variant.id == variant_id:
                return variant
        return None

    @property
    def control(self) -> Optional[ExperimentVariant]:
        return self.variant("control") or (self.variants[0] if self.variants else None)

    def normalize_weights(self) -> None:
        total = sum(v.weight for v in self.variants)
        if total <= 0:
            share = 1.0 / len(self.variants) if self.variants else 0.0
            for variant in self.variants:
                variant.weight = share
            return
        for variant in self.variants:
            variant.weight = variant.weight / total

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "status": self.status,
            "primary_metric": self.primary_metric,
            "winner": self.winner,
            "variants": [
                {
                    "id": v.id,
                    "name": v.name,
                    "weight": v.weight,
                    "config": v.config.to_dict(),
                    "performance": v.performance.to_dict(),
                }
                for v in self.variants
            ],
        }


@dataclass(frozen=True, slots=True)
class Evaluation:
    """Outcome of a significance check for one experiment."""

    test_id: str
    winner: Optional[str]
    confidence: float
    improvement: float
    significant: bool


__all__ = [
    "Evaluation",
    "Experiment",
    "ExperimentVariant",
    "PRIMARY_METRICS",
    "STATUSES",
    "SUBTLETY_MODES",
    "VariantConfig",
    "VariantPerformance",
]
