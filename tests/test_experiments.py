from __future__ import annotations

import random

import pytest

from personalize.experiments import (
    Experiment,
    ExperimentController,
    ExperimentVariant,
    VariantConfig,
    VariantPerformance,
    evaluate,
    load_experiments,
)
from personalize.experiments.controller import _definitions
from personalize.storage import AB_ASSIGNMENTS_KEY, AB_RESULTS_KEY


def _variant(variant_id: str, weight: float = 0.5, **perf) -> ExperimentVariant:
    return ExperimentVariant(
        id=variant_id,
        name=variant_id.title(),
        weight=weight,
        performance=VariantPerformance(**perf),
    )


def _experiment(*variants: ExperimentVariant, **fields) -> Experiment:
    fields.setdefault("pages", ["/", "/products/*"])
    return Experiment(id=fields.pop("id", "test"), name="Test", variants=list(variants), **fields)


def test_packaged_experiments_load_with_normalized_weights():
    experiments = load_experiments()

    assert set(experiments) == {"ai-subtlety-test", "personalization-strength-test"}
    for experiment in experiments.values():
        assert sum(v.weight for v in experiment.variants) == pytest.approx(1.0)
    subtlety = experiments["ai-subtlety-test"]
    assert subtlety.control.config.reordering_enabled is False
    assert experiments["personalization-strength-test"].min_sample == 150


def test_load_from_custom_file(tmp_path):
    path = tmp_path / "experiments.yaml"
    path.write_text(
        "experiments:\n"
        "  banner-test:\n"
        "    pages: ['/']\n"
        "    variants:\n"
        "      control: {weight: 3}\n"
        "      bold: {weight: 1, config: {subtlety_mode: aggressive, personalization_strength: 4}}\n"
        "      retired: {weight: 0}\n"
        "  broken: just-a-string\n",
        encoding="utf-8",
    )
    _definitions.cache_clear()

    experiments = load_experiments(path)

    banner = experiments["banner-test"]
    assert [v.id for v in banner.variants] == ["control", "bold"]
    assert [v.weight for v in banner.variants] == [0.75, 0.25]
    assert banner.variant("bold").config.subtlety_mode == "aggressive"
    assert banner.variant("bold").config.personalization_strength == 1.0
    assert "broken" not in experiments
    assert load_experiments(tmp_path / "missing.yaml") == {}


def test_assignment_is_sticky_and_persisted(storage, scheduler):
    controller = ExperimentController(storage, scheduler=scheduler, rng=random.Random(11))

    first = controller.assign("s1", "new", "/")
    second = controller.assign("s1", "new", "/")

    assert first == second
    # strength test targets returning visitors only
    assert set(first) == {"ai-subtlety-test"}
    assert storage.get(AB_ASSIGNMENTS_KEY)["s1"] == first

    reloaded = ExperimentController(storage, scheduler=scheduler, rng=random.Random(99))
    assert reloaded.assign("s1", "new", "/") == first


def test_pages_and_segments_gate_eligibility(storage, scheduler):
    controller = ExperimentController(storage, scheduler=scheduler, rng=random.Random(1))

    assert controller.assign("s1", "new", "/cart") == {}
    assert set(controller.assign("s2", "loyal", "/collections/kits")) == {
        "ai-subtlety-test",
        "personalization-strength-test",
    }


def test_variant_selection_follows_weights(storage, scheduler):
    experiment = _experiment(_variant("control", 0.0), _variant("treatment", 1.0))
    controller = ExperimentController(
        storage, scheduler=scheduler, experiments={"test": experiment}, rng=random.Random(5)
    )

    picks = {controller.get_variant("test", f"s{i}", "new", "/").id for i in range(20)}

    assert picks == {"treatment"}
    assert controller.get_variant("unknown", "s1", "new", "/") is None


def test_active_config_merges_assigned_variants(storage, scheduler):
    first = _experiment(
        ExperimentVariant("only", "Only", 1.0, VariantConfig("subtle", False, 0.2, ["inventory-priority"])),
        id="first",
    )
    second = _experiment(
        ExperimentVariant("only", "Only", 1.0, VariantConfig("aggressive", True, 0.9)),
        id="second",
    )
    controller = ExperimentController(
        storage, scheduler=scheduler, experiments={"first": first, "second": second}, rng=random.Random(0)
    )

    config = controller.get_active_config("s1", "new", "/")

    assert config.subtlety_mode == "aggressive"
    assert config.personalization_strength == 0.9
    assert config.reordering_enabled is False
    assert config.enabled_strategies == ["inventory-priority"]


def test_missing_variant_is_logged_not_raised(storage, scheduler, caplog):
    storage.set(AB_ASSIGNMENTS_KEY, {"s1": {"test": "deleted-variant"}})
    experiment = _experiment(_variant("control", 1.0))
    controller = ExperimentController(storage, scheduler=scheduler, experiments={"test": experiment})

    with caplog.at_level("WARNING", logger="personalize.experiments"):
        config = controller.get_active_config("s1", "new", "/")
        variant = controller.get_variant("test", "s1", "new", "/")

    assert config == VariantConfig()
    assert variant is None
    assert "assigned variant missing" in caplog.text


def test_track_event_updates_performance(storage, scheduler):
    experiment = _experiment(_variant("control", 1.0))
    controller = ExperimentController(storage, scheduler=scheduler, experiments={"test": experiment})
    controller.assign("s1", "new", "/")

    for _ in range(4):
        controller.track_event("s1", "page_view")
    controller.track_event("s1", "conversion", {"order_value": 80.0})
    controller.track_event("s1", "engagement", {"time_spent": 30})

    perf = experiment.variant("control").performance
    assert perf.impressions == 4
    assert perf.conversions == 1
    assert perf.conversion_rate == 0.25
    assert perf.avg_order_value == 40.0
    assert perf.engagement_time == 15.0
    assert controller.track_event("s1", "mystery") == 0
    assert storage.get(AB_RESULTS_KEY)["test"]["variants"][0]["performance"]["impressions"] == 4


def test_evaluate_declares_significant_winner(storage, scheduler):
    experiment = _experiment(
        _variant("control", impressions=200, conversions=10, conversion_rate=0.05),
        _variant("treatment", impressions=200, conversions=16, conversion_rate=0.08),
    )
    controller = ExperimentController(storage, scheduler=scheduler, experiments={"test": experiment})

    [outcome] = controller.evaluate_all()

    assert outcome.winner == "treatment"
    assert outcome.improvement == pytest.approx(60.0)
    assert outcome.confidence == 95.0
    assert experiment.winner == "treatment"
    assert experiment.status == "completed"
    assert controller.assign("s-new", "new", "/") == {}


def test_evaluate_needs_two_sampled_variants():
    experiment = _experiment(
        _variant("control", impressions=500, conversion_rate=0.05),
        _variant("treatment", impressions=20, conversion_rate=0.5),
    )
    outcome = evaluate(experiment)
    assert outcome.winner is None
    assert outcome.significant is False


def test_zero_control_metric_counts_as_full_improvement():
    experiment = _experiment(
        _variant("control", impressions=150, conversion_rate=0.0),
        _variant("treatment", impressions=150, conversion_rate=0.02),
    )
    assert evaluate(experiment).improvement == 100.0


def test_reallocation_keeps_weights_normalized(storage, scheduler):
    experiment = _experiment(
        _variant("control", 0.5, impressions=100, conversion_rate=0.01),
        _variant("treatment", 0.5, impressions=100, conversion_rate=0.03),
    )
    controller = ExperimentController(storage, scheduler=scheduler, experiments={"test": experiment})

    for _ in range(5):
        assert controller.reallocate() == ["test"]
        assert sum(v.weight for v in experiment.variants) == pytest.approx(1.0)

    assert experiment.variant("treatment").weight > experiment.variant("control").weight


def test_results_survive_restart(storage, scheduler):
    def build():
        return {"test": _experiment(_variant("control", 0.5), _variant("treatment", 0.5))}

    controller = ExperimentController(storage, scheduler=scheduler, experiments=build())
    controller.experiments["test"].variant("treatment").performance.impressions = 42
    controller.experiments["test"].variant("treatment").weight = 0.7
    controller.experiments["test"].variant("control").weight = 0.3
    controller.save_results()

    restored = ExperimentController(storage, scheduler=scheduler, experiments=build())

    treatment = restored.experiments["test"].variant("treatment")
    assert treatment.performance.impressions == 42
    assert treatment.weight == pytest.approx(0.7)


def test_malformed_state_is_ignored(storage, scheduler):
    storage.set(AB_ASSIGNMENTS_KEY, ["not", "a", "mapping"])
    storage.set(AB_RESULTS_KEY, "garbage")
    experiment = _experiment(_variant("control", 1.0))

    controller = ExperimentController(storage, scheduler=scheduler, experiments={"test": experiment})

    assert controller.assignments("s1") == {}
    assert controller.assign("s1", "new", "/") == {"test": "control"}


def test_periodic_optimization(storage, scheduler):
    experiment = _experiment(
        _variant("control", 0.5, impressions=10, conversion_rate=0.0),
        _variant("treatment", 0.5, impressions=10, conversion_rate=0.5),
    )
    controller = ExperimentController(
        storage, scheduler=scheduler, experiments={"test": experiment}, interval=60.0
    )
    controller.start()

    scheduler.advance(61)

    assert experiment.variant("treatment").weight == pytest.approx(0.55)
    assert storage.get(AB_RESULTS_KEY)["test"]["status"] == "running"
    controller.stop()
    assert scheduler.active == 0
