"""Prometheus metrics for the personalization core."""

from __future__ import annotations

from prometheus_client import Counter, Gauge, Histogram


BEHAVIOR_EVENTS = Counter(
    "personalize_behavior_events_total",
    "Interaction events recorded by the behavior store",
    ("event",),
)

CACHE_HITS = Counter("personalize_cache_hits_total", "Memo cache hits")
CACHE_MISSES = Counter("personalize_cache_misses_total", "Memo cache misses")
CACHE_EVICTIONS = Counter(
    "personalize_cache_evictions_total",
    "Memo cache entries removed by the sweep",
    ("reason",),
)
CACHE_SIZE = Gauge("personalize_cache_entries", "Entries currently held by the memo cache")

DEDUP_COLLAPSED = Counter(
    "personalize_dedup_collapsed_total",
    "Requests served by an already in-flight computation",
)

SCORING_DURATION = Histogram(
    "personalize_scoring_duration_seconds",
    "Time spent recomputing product scores",
)

MINING_REBUILDS = Counter(
    "personalize_mining_rebuilds_total",
    "Full rebuilds of the co-purchase models",
    ("model",),
)

RECOMMENDATIONS_SERVED = Counter(
    "personalize_recommendations_total",
    "Recommendation lists served per page context",
    ("page",),
)

EXPERIMENT_ASSIGNMENTS = Counter(
    "personalize_experiment_assignments_total",
    "New sticky experiment assignments",
    ("test", "variant"),
)
EXPERIMENT_REALLOCATIONS = Counter(
    "personalize_experiment_reallocations_total",
    "Bandit traffic reallocation passes applied",
    ("test",),
)

ENRICHMENT_FALLBACKS = Counter(
    "personalize_enrichment_fallbacks_total",
    "Enrichment calls answered by the rule-based fallback",
    ("endpoint",),
)


__all__ = [
    "BEHAVIOR_EVENTS",
    "CACHE_EVICTIONS",
    "CACHE_HITS",
    "CACHE_MISSES",
    "CACHE_SIZE",
    "DEDUP_COLLAPSED",
    "ENRICHMENT_FALLBACKS",
    "EXPERIMENT_ASSIGNMENTS",
    "EXPERIMENT_REALLOCATIONS",
    "MINING_REBUILDS",
    "RECOMMENDATIONS_SERVED",
    "SCORING_DURATION",
]
