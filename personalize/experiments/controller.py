"""Sticky A/B assignment with significance checks and bandit-style reallocation."""

from __future__ import annotations

import logging
import random
from fnmatch import fnmatchcase
from functools import lru_cache
from pathlib import Path
from typing import Any, Mapping

import yaml

from personalize import metrics
from personalize.events import EventBus
from personalize.experiments.model import (
    Evaluation,
    Experiment,
    ExperimentVariant,
    VariantConfig,
    VariantPerformance,
)
from personalize.scheduler import Scheduler, TimerHandle
from personalize.storage import AB_ASSIGNMENTS_KEY, AB_RESULTS_KEY, KeyValueStore, safe_get, safe_set

logger = logging.getLogger("personalize.experiments")

DEFAULT_EXPERIMENTS_FILE = Path(__file__).with_name("experiments.yaml")

WINNER_MIN_CONFIDENCE = 95.0
WINNER_MIN_IMPROVEMENT = 5.0
REALLOCATION_KEEP = 0.9


def _load_raw(path: Path) -> Mapping[str, Any]:
    if not path.exists():
        logger.warning("experiments file missing path=%s", path)
        return {}
    with path.open("r", encoding="utf-8") as fh:
        payload = yaml.safe_load(fh) or {}
    if not isinstance(payload, Mapping):
        raise RuntimeError(f"{path.name} must contain a mapping")
    return payload


@lru_cache(maxsize=4)
def _definitions(path: str) -> Mapping[str, Any]:
    raw = _load_raw(Path(path))
    section = raw.get("experiments", raw)
    return section if isinstance(section, Mapping) else {}


def load_experiments(path: str | Path | None = None) -> dict[str, Experiment]:
    """Build fresh mutable experiments from the (cached) YAML definitions."""

    experiments: dict[str, Experiment] = {}
    for test_id, data in _definitions(str(path or DEFAULT_EXPERIMENTS_FILE)).items():
        if not isinstance(test_id, str) or not isinstance(data, Mapping):
            continue
        variants_data = data.get("variants")
        if not isinstance(variants_data, Mapping):
            continue
        variants: list[ExperimentVariant] = []
        for variant_id, payload in variants_data.items():
            if not isinstance(payload, Mapping):
                continue
            weight = float(payload.get("weight", 1.0))
            if weight <= 0:
                continue
            variants.append(
                ExperimentVariant(
                    id=str(variant_id),
                    name=str(payload.get("name", variant_id)),
                    weight=weight,
                    config=VariantConfig.from_dict(payload.get("config")),
                )
            )
        if not variants:
            continue
        experiment = Experiment(
            id=test_id,
            name=str(data.get("name", test_id)),
            description=str(data.get("description", "")),
            variants=variants,
            primary_metric=str(data.get("primary_metric", "conversion_rate")),
            status=str(data.get("status", "running")),
            segments=[str(s) for s in data.get("segments") or ["all"]],
            pages=[str(p) for p in data.get("pages") or []],
            min_sample=max(1, int(data.get("min_sample", 100))),
            confidence_level=float(data.get("confidence_level", 0.95)),
        )
        experiment.normalize_weights()
        experiments[test_id] = experiment
    return experiments


def metric_value(variant: ExperimentVariant, metric: str) -> float:
    perf = variant.performance
    if metric == "revenue":
        return perf.avg_order_value * perf.conversions
    if metric == "engagement":
        return perf.engagement_time
    return perf.conversion_rate


def evaluate(experiment: Experiment) -> Evaluation:
    """Compare the best sufficiently-sampled variant against the control."""

    eligible = [v for v in experiment.variants if v.performance.impressions >= experiment.min_sample]
    if len(eligible) < 2:
        return Evaluation(experiment.id, None, 0.0, 0.0, False)

    metric = experiment.primary_metric
    best = eligible[0]
    for variant in eligible[1:]:
        if metric_value(variant, metric) > metric_value(best, metric):
            best = variant
    control = next((v for v in eligible if v.id == "control"), eligible[0])

    best_value = metric_value(best, metric)
    control_value = metric_value(control, metric)
    if control_value > 0:
        improvement = (best_value - control_value) / control_value * 100.0
    else:
        improvement = 100.0 if best_value > 0 else 0.0
    confidence = min(95.0, max(50.0, best.performance.impressions / experiment.min_sample * 90.0))
    significant = confidence >= experiment.confidence_level * 100.0
    return Evaluation(experiment.id, best.id, confidence, improvement, significant)


class ExperimentController:
    """Own experiment state for one storefront session store."""

    def __init__(
        self,
        storage: KeyValueStore,
        *,
        scheduler: Scheduler,
        bus: EventBus | None = None,
        experiments: Mapping[str, Experiment] | None = None,
        path: str | Path | None = None,
        interval: float = 300.0,
        rng: random.Random | None = None,
    ) -> None:
        self._storage = storage
        self._scheduler = scheduler
        self._bus = bus
        self._interval = interval
        self._rng = rng or random.Random()
        self._timer: TimerHandle | None = None
        self.experiments: dict[str, Experiment] = (
            dict(experiments) if experiments is not None else load_experiments(path)
        )
        self._assignments: dict[str, dict[str, str]] = self._load_assignments()
        self._restore_results()

    # --- Persistence ---

    def _load_assignments(self) -> dict[str, dict[str, str]]:
        raw = safe_get(self._storage, AB_ASSIGNMENTS_KEY, {})
        if not isinstance(raw, Mapping):
            logger.warning("ignoring malformed experiment assignments")
            return {}
        assignments: dict[str, dict[str, str]] = {}
        for session_id, tests in raw.items():
            if isinstance(tests, Mapping):
                assignments[str(session_id)] = {str(k): str(v) for k, v in tests.items()}
        return assignments

    def _restore_results(self) -> None:
        raw = safe_get(self._storage, AB_RESULTS_KEY, {})
        if not isinstance(raw, Mapping):
            return
        for test_id, saved in raw.items():
            experiment = self.experiments.get(test_id)
            if experiment is None or not isinstance(saved, Mapping):
                continue
            experiment.status = str(saved.get("status", experiment.status))
            experiment.winner = saved.get("winner") or None
            for item in saved.get("variants") or []:
                if not isinstance(item, Mapping):
                    continue
                variant = experiment.variant(str(item.get("id")))
                if variant is None:
                    continue
                variant.performance = VariantPerformance.from_dict(item.get("performance"))
                try:
                    variant.weight = max(0.0, float(item.get("weight", variant.weight)))
                except (TypeError, ValueError):
                    continue
            experiment.normalize_weights()

    def save_results(self) -> bool:
        return safe_set(
            self._storage,
            AB_RESULTS_KEY,
            {test_id: experiment.to_dict() for test_id, experiment in self.experiments.items()},
        )

    # --- Assignment ---

    @staticmethod
    def eligible(experiment: Experiment, segment: str, page: str) -> bool:
        if "all" not in experiment.segments and segment not in experiment.segments:
            return False
        return any(fnmatchcase(page, pattern) for pattern in experiment.pages)

    def _select_variant(self, experiment: Experiment) -> ExperimentVariant:
        draw = self._rng.random()
        cumulative = 0.0
        for variant in experiment.variants:
            cumulative += variant.weight
            if draw <= cumulative:
                return variant
        return experiment.variants[0]

    def assign(self, session_id: str, segment: str, page: str) -> dict[str, str]:
        """Assign the session to every eligible running test it is not already in."""

        tests = self._assignments.setdefault(session_id, {})
        changed = False
        for test_id, experiment in self.experiments.items():
            if test_id in tests or experiment.status != "running":
                continue
            if not self.eligible(experiment, segment, page):
                continue
            variant = self._select_variant(experiment)
            tests[test_id] = variant.id
            changed = True
            metrics.EXPERIMENT_ASSIGNMENTS.labels(test=test_id, variant=variant.id).inc()
            logger.info("variant assigned test=%s variant=%s segment=%s", test_id, variant.id, segment)
            if self._bus is not None:
                self._bus.emit(
                    "variant_resolved",
                    {"session_id": session_id, "test_id": test_id, "variant_id": variant.id},
                )
        if changed:
            safe_set(self._storage, AB_ASSIGNMENTS_KEY, self._assignments)
        return dict(tests)

    def assignments(self, session_id: str) -> dict[str, str]:
        return dict(self._assignments.get(session_id, {}))

    def _assigned_variants(self, session_id: str) -> list[tuple[Experiment, ExperimentVariant]]:
        pairs: list[tuple[Experiment, ExperimentVariant]] = []
        for test_id, variant_id in self._assignments.get(session_id, {}).items():
            experiment = self.experiments.get(test_id)
            if experiment is None:
                continue
            variant = experiment.variant(variant_id)
            if variant is None:
                logger.warning("assigned variant missing test=%s variant=%s", test_id, variant_id)
                continue
            pairs.append((experiment, variant))
        return pairs

    def get_variant(self, test_id: str, session_id: str, segment: str, page: str) -> ExperimentVariant | None:
        experiment = self.experiments.get(test_id)
        if experiment is None:
            return None
        variant_id = self.assign(session_id, segment, page).get(test_id)
        if variant_id is None:
            return None
        variant = experiment.variant(variant_id)
        if variant is None:
            logger.warning("assigned variant missing test=%s variant=%s", test_id, variant_id)
        return variant

    def get_active_config(self, session_id: str, segment: str, page: str) -> VariantConfig:
        """Merge the configs of every assigned variant; later tests override earlier ones.

        Reordering stays on only while every assigned variant allows it.
        """

        self.assign(session_id, segment, page)
        merged = VariantConfig()
        for _experiment, variant in self._assigned_variants(session_id):
            config = variant.config
            merged.subtlety_mode = config.subtlety_mode
            merged.personalization_strength = config.personalization_strength
            merged.reordering_enabled = merged.reordering_enabled and config.reordering_enabled
            if config.enabled_strategies:
                merged.enabled_strategies = list(config.enabled_strategies)
        return merged

    # --- Tracking ---

    def track_event(self, session_id: str, event_type: str, data: Mapping[str, Any] | None = None) -> int:
        """Update performance for every variant the session belongs to; returns variants touched."""

        data = data or {}
        touched = 0
        for _experiment, variant in self._assigned_variants(session_id):
            perf = variant.performance
            if event_type == "page_view":
                perf.impressions += 1
            elif event_type in ("cart_add", "conversion"):
                perf.conversions += 1
                perf.conversion_rate = perf.conversions / max(1, perf.impressions)
                order_value = data.get("order_value")
                if isinstance(order_value, (int, float)) and order_value > 0:
                    perf.avg_order_value = (perf.avg_order_value + float(order_value)) / 2
            elif event_type == "engagement":
                spent = data.get("time_spent")
                if isinstance(spent, (int, float)) and spent > 0:
                    perf.engagement_time = (perf.engagement_time + float(spent)) / 2
            else:
                logger.debug("ignoring experiment event type=%s", event_type)
                return 0
            touched += 1
        if touched:
            self.save_results()
        return touched

    # --- Optimization ---

    def evaluate_all(self) -> list[Evaluation]:
        """Declare winners where the evidence is strong enough."""

        results: list[Evaluation] = []
        for experiment in self.experiments.values():
            outcome = evaluate(experiment)
            results.append(outcome)
            if (
                outcome.significant
                and outcome.winner
                and experiment.winner is None
                and outcome.confidence >= WINNER_MIN_CONFIDENCE
                and outcome.improvement >= WINNER_MIN_IMPROVEMENT
            ):
                experiment.winner = outcome.winner
                experiment.status = "completed"
                logger.info(
                    "experiment winner test=%s variant=%s confidence=%.1f improvement=%.1f",
                    experiment.id,
                    outcome.winner,
                    outcome.confidence,
                    outcome.improvement,
                )
        return results

    def reallocate(self) -> list[str]:
        """Shift traffic toward better performers on running tests."""

        shifted: list[str] = []
        for experiment in self.experiments.values():
            if experiment.status != "running":
                continue
            values = [metric_value(v, experiment.primary_metric) for v in experiment.variants]
            total = sum(values)
            if total <= 0:
                continue
            for variant, value in zip(experiment.variants, values):
                variant.weight = variant.weight * REALLOCATION_KEEP + (value / total) * (1 - REALLOCATION_KEEP)
            experiment.normalize_weights()
            metrics.EXPERIMENT_REALLOCATIONS.labels(test=experiment.id).inc()
            shifted.append(experiment.id)
        return shifted

    def optimize(self) -> None:
        self.evaluate_all()
        self.reallocate()
        self.save_results()

    def start(self) -> None:
        if self._timer is None:
            self._timer = self._scheduler.every(self._interval, self.optimize, name="experiments.optimize")

    def stop(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        self.save_results()

    def get_test_results(self, test_id: str) -> dict[str, Any] | None:
        experiment = self.experiments.get(test_id)
        if experiment is None:
            return None
        outcome = evaluate(experiment)
        result = experiment.to_dict()
        result["evaluation"] = {
            "winner": outcome.winner,
            "confidence": outcome.confidence,
            "improvement": outcome.improvement,
            "significant": outcome.significant,
        }
        return result


__all__ = [
    "DEFAULT_EXPERIMENTS_FILE",
    "ExperimentController",
    "evaluate",
    "load_experiments",
    "metric_value",
]
