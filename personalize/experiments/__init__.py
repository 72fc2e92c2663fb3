"""Experiment controller (sticky A/B tests with bandit reallocation)."""

from .controller import DEFAULT_EXPERIMENTS_FILE, ExperimentController, evaluate, load_experiments, metric_value
from .model import Evaluation, Experiment, ExperimentVariant, VariantConfig, VariantPerformance

__all__ = [
    "DEFAULT_EXPERIMENTS_FILE",
    "ExperimentController",
    "evaluate",
    "load_experiments",
    "metric_value",
    "Evaluation",
    "Experiment",
    "ExperimentVariant",
    "VariantConfig",
    "VariantPerformance",
]
