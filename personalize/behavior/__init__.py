"""Interaction tracking and the per-session user profile."""

from personalize.behavior.models import (
    BehaviorScore,
    PredictedAction,
    SearchIntent,
    UserPreferences,
    UserProfile,
    segment_for,
)
from personalize.behavior.store import BehaviorStore, predict

__all__ = [
    "BehaviorScore",
    "BehaviorStore",
    "PredictedAction",
    "SearchIntent",
    "UserPreferences",
    "UserProfile",
    "predict",
    "segment_for",
]
