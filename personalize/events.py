"""In-process event bus with typed payloads per event name."""

from __future__ import annotations

import logging
from collections import defaultdict
from typing import Any, Callable, Literal, Mapping

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from personalize.errors import EventPayloadError

logger = logging.getLogger("personalize.events")


class _Payload(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)


class BehaviorTracked(_Payload):
    session_id: str
    event: Literal[
        "view",
        "related_view",
        "hover",
        "wishlist_add",
        "wishlist_remove",
        "cart_add",
        "cart_remove",
        "purchase",
        "search",
    ]
    product_id: str | None = None
    score: float | None = None
    predicted_action: str | None = None
    confidence: float | None = None
    high_impact: bool = False


class ScoresUpdated(_Payload):
    product_count: int = Field(ge=0)
    top_product_ids: list[str] = Field(default_factory=list)
    duration_ms: float = Field(default=0.0, ge=0)


class RecommendationApplied(_Payload):
    section: str
    strategies: list[str] = Field(default_factory=list)
    product_count: int = Field(ge=0)
    moved: int = Field(default=0, ge=0)


class VariantResolved(_Payload):
    session_id: str
    test_id: str
    variant_id: str


class DataRefreshed(_Payload):
    source: Literal["catalog", "transactions", "cart"]
    count: int = Field(default=0, ge=0)


EVENT_TYPES: dict[str, type[_Payload]] = {
    "behavior_tracked": BehaviorTracked,
    "scores_updated": ScoresUpdated,
    "recommendation_applied": RecommendationApplied,
    "variant_resolved": VariantResolved,
    "data_refreshed": DataRefreshed,
}

Handler = Callable[[_Payload], Any]


def build_payload(name: str, payload: _Payload | Mapping[str, Any]) -> _Payload:
    """Validate ``payload`` against the model registered for ``name``."""

    model = EVENT_TYPES.get(name)
    if model is None:
        raise EventPayloadError(name, "unknown event")
    if isinstance(payload, model):
        return payload
    if isinstance(payload, BaseModel):
        raise EventPayloadError(name, f"expected {model.__name__}, got {type(payload).__name__}")
    try:
        return model.model_validate(dict(payload))
    except ValidationError as exc:
        raise EventPayloadError(name, str(exc)) from exc


class EventBus:
    """Fire-and-forget notifications; handler errors never reach the emitter."""

    def __init__(self) -> None:
        self._handlers: dict[str, list[Handler]] = defaultdict(list)

    def subscribe(self, name: str, handler: Handler) -> Callable[[], None]:
        if name not in EVENT_TYPES:
            raise EventPayloadError(name, "unknown event")
        self._handlers[name].append(handler)

        def _unsubscribe() -> None:
            self.unsubscribe(name, handler)

        return _unsubscribe

    def unsubscribe(self, name: str, handler: Handler) -> None:
        handlers = self._handlers.get(name)
        if handlers and handler in handlers:
            handlers.remove(handler)

    def emit(self, name: str, payload: _Payload | Mapping[str, Any]) -> int:
        """Validate and deliver ``payload``; returns the number of handlers that succeeded."""

        event = build_payload(name, payload)
        delivered = 0
        for handler in list(self._handlers.get(name, ())):
            try:
                handler(event)
            except Exception:
                logger.exception("event handler failed event=%s handler=%r", name, handler)
                continue
            delivered += 1
        return delivered

    def clear(self) -> None:
        self._handlers.clear()


__all__ = [
    "BehaviorTracked",
    "DataRefreshed",
    "EVENT_TYPES",
    "EventBus",
    "RecommendationApplied",
    "ScoresUpdated",
    "VariantResolved",
    "build_payload",
]
