"""Session-level wiring: one object owning every personalization component."""

from __future__ import annotations

import logging
import random
from typing import Any, Iterable, Literal, Mapping, Sequence

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError

from personalize.behavior.models import PreferenceKind
from personalize.behavior.store import BehaviorStore
from personalize.cache.dedup import RequestDeduplicator
from personalize.cache.memo import MemoCache
from personalize.cache.ratelimit import RateLimiter, Throttled
from personalize.catalog.client import CatalogClient
from personalize.catalog.models import Cart, Product
from personalize.catalog.snapshot import CatalogSnapshot
from personalize.config import Settings, settings as default_settings
from personalize.enrichment import PATTERN_TTL, EnhancedPrediction, EnrichmentClient, interactions_from_score
from personalize.errors import CatalogUnavailableError
from personalize.events import EventBus
from personalize.experiments.controller import ExperimentController
from personalize.mining.basket import MarketBasketMiner
from personalize.mining.collaborative import CollaborativeFilter
from personalize.mining.history import Transaction, TransactionLog
from personalize.reco.aggregator import RecommendationAggregator
from personalize.reco.models import PageContext, PageType, Recommendation
from personalize.reco.reorder import ContentReorderEngine
from personalize.scheduler import AsyncioScheduler, Scheduler, TimerHandle
from personalize.scoring.engine import ProductScoringEngine
from personalize.storage import JsonFileStore, KeyValueStore

logger = logging.getLogger("personalize.service")

EventType = Literal[
    "page_view",
    "view",
    "related_view",
    "hover",
    "hover_start",
    "hover_end",
    "wishlist_add",
    "wishlist_remove",
    "cart_add",
    "cart_remove",
    "purchase",
    "search",
    "price_seen",
    "preference",
    "engagement",
    "visibility",
]

_NEEDS_PRODUCT = frozenset(
    {"view", "related_view", "hover", "hover_start", "hover_end", "wishlist_add", "wishlist_remove", "cart_add", "cart_remove"}
)

# hover, scroll-driven price sightings and engagement pings arrive in bursts
_HIGH_FREQUENCY = frozenset({"hover", "hover_start", "hover_end", "price_seen", "engagement"})


class InteractionEvent(BaseModel):
    """One storefront interaction as posted by the page."""

    model_config = ConfigDict(extra="ignore", frozen=True, populate_by_name=True)

    type: EventType
    product_id: str | None = Field(default=None, validation_alias=AliasChoices("product_id", "productId"))
    product_ids: list[str] = Field(default_factory=list, validation_alias=AliasChoices("product_ids", "productIds"))
    page: str | None = None
    duration_ms: float | None = Field(default=None, ge=0, validation_alias=AliasChoices("duration_ms", "duration"))
    query: str | None = None
    result_count: int | None = Field(default=None, ge=0, validation_alias=AliasChoices("result_count", "resultCount"))
    category: str | None = None
    price: float | None = None
    order_id: str | None = Field(default=None, validation_alias=AliasChoices("order_id", "orderId"))
    order_value: float | None = Field(default=None, ge=0, validation_alias=AliasChoices("order_value", "orderValue"))
    time_spent: float | None = Field(default=None, ge=0, validation_alias=AliasChoices("time_spent", "timeSpent"))
    preference_kind: PreferenceKind | None = Field(default=None, validation_alias=AliasChoices("preference_kind", "kind"))
    preference_name: str | None = Field(default=None, validation_alias=AliasChoices("preference_name", "name"))
    hidden: bool = False


class PersonalizationService:
    """Own the behavior store, models, reorder engine and experiments for one session."""

    def __init__(
        self,
        session_id: str,
        *,
        storage: KeyValueStore | None = None,
        scheduler: Scheduler | None = None,
        bus: EventBus | None = None,
        catalog: CatalogSnapshot | None = None,
        catalog_client: CatalogClient | None = None,
        enrichment: EnrichmentClient | None = None,
        rng: random.Random | None = None,
        config: Settings | None = None,
    ) -> None:
        cfg = config or default_settings
        self.settings = cfg
        self.session_id = session_id
        self.storage = storage or JsonFileStore(cfg.STORAGE_PATH, max_bytes=cfg.STORAGE_MAX_BYTES)
        self.scheduler: Scheduler = scheduler or AsyncioScheduler()
        self.bus = bus or EventBus()
        self.catalog = catalog or CatalogSnapshot()
        self.catalog_client = catalog_client
        self.cache = MemoCache(
            ttl=cfg.CACHE_TTL_SECONDS,
            # enrichment memoizes behavior patterns longer than the default age
            max_age=max(cfg.CACHE_MAX_AGE_SECONDS, PATTERN_TTL),
            max_entries=cfg.CACHE_MAX_ENTRIES,
            sweep_interval=cfg.CACHE_SWEEP_INTERVAL_SECONDS,
            clock=self.scheduler.now,
        )
        self.dedup = RequestDeduplicator()
        self.enrichment = enrichment or EnrichmentClient(cache=self.cache, dedup=self.dedup)
        self.rate_limiter = RateLimiter(
            self.scheduler,
            batch_delay=cfg.BATCH_DELAY_SECONDS,
            throttle_interval=cfg.THROTTLE_INTERVAL_SECONDS,
        )
        rng = rng or random.Random()

        self.behavior = BehaviorStore(
            session_id,
            storage=self.storage,
            scheduler=self.scheduler,
            bus=self.bus,
            persist_interval=cfg.PROFILE_PERSIST_INTERVAL_SECONDS,
            hover_min_ms=cfg.HOVER_MIN_DURATION_MS,
            search_history_limit=cfg.SEARCH_HISTORY_LIMIT,
            failed_search_limit=cfg.FAILED_SEARCH_LIMIT,
        )
        self.scoring = ProductScoringEngine(
            self.behavior,
            self.catalog,
            scheduler=self.scheduler,
            rate_limiter=self.rate_limiter,
            bus=self.bus,
            interval=cfg.SCORING_INTERVAL_SECONDS,
            debounce_delay=cfg.SCORING_DEBOUNCE_SECONDS,
        )
        self.transactions = TransactionLog()
        self.collaborative = CollaborativeFilter(min_similarity=cfg.MINING_MIN_SIMILARITY)
        self.basket = MarketBasketMiner(min_support=cfg.BASKET_MIN_SUPPORT, min_confidence=cfg.BASKET_MIN_CONFIDENCE)
        self.aggregator = RecommendationAggregator(
            self.behavior, self.scoring, self.collaborative, self.basket, self.catalog
        )
        self.reorderer = ContentReorderEngine(
            self.behavior,
            self.scoring,
            self.catalog,
            bus=self.bus,
            subtlety_mode=cfg.REORDER_SUBTLETY_MODE,
            rng=rng,
        )
        self.experiments = ExperimentController(
            self.storage,
            scheduler=self.scheduler,
            bus=self.bus,
            path=cfg.EXPERIMENTS_FILE,
            interval=cfg.EXPERIMENT_REALLOCATION_SECONDS,
            rng=rng,
        )
        self._gates: dict[tuple[str, str], Throttled] = {}
        self._timers: list[TimerHandle] = []
        self._opened = False

    # --- Lifecycle ---

    async def open(self) -> None:
        if self._opened:
            return
        if isinstance(self.scheduler, AsyncioScheduler):
            self.scheduler.start()
        self.behavior.open()
        if self.catalog_client is not None:
            await self.refresh_catalog()
            self._timers.append(
                self.scheduler.every(self.settings.CATALOG_REFRESH_SECONDS, self.refresh_catalog, name="catalog-refresh")
            )
        self._timers.append(
            self.scheduler.every(self.settings.MINING_REFRESH_SECONDS, self.refresh_models, name="mining-refresh")
        )
        if self.settings.CACHE_SWEEP_INTERVAL_SECONDS > 0:
            self._timers.append(
                self.scheduler.every(self.settings.CACHE_SWEEP_INTERVAL_SECONDS, self._sweep_cache, name="cache-sweep")
            )
        self.scoring.start()
        self.experiments.start()
        self._opened = True
        logger.info("personalization opened session=%s products=%s", self.session_id, len(self.catalog))

    async def close(self) -> None:
        if not self._opened:
            return
        for timer in self._timers:
            timer.cancel()
        self._timers.clear()
        self.rate_limiter.cancel_all()
        self._gates.clear()
        self.scoring.stop()
        self.experiments.stop()
        self.behavior.close()
        if isinstance(self.scheduler, AsyncioScheduler):
            self.scheduler.shutdown()
        self._opened = False
        logger.info("personalization closed session=%s", self.session_id)

    async def __aenter__(self) -> "PersonalizationService":
        await self.open()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    # --- Inputs ---

    def handle_event(self, raw: InteractionEvent | Mapping[str, Any]) -> bool:
        """Route one storefront interaction; malformed events are logged and dropped."""

        try:
            event = raw if isinstance(raw, InteractionEvent) else InteractionEvent.model_validate(raw)
        except ValidationError as exc:
            logger.warning("interaction rejected errors=%s", exc.error_count())
            return False
        if event.type in _NEEDS_PRODUCT and not event.product_id:
            logger.warning("interaction missing product type=%s", event.type)
            return False

        if event.type in _HIGH_FREQUENCY:
            key = (event.type, event.product_id or "")
            gate = self._gates.get(key)
            if gate is None:
                gate = self._gates[key] = self.rate_limiter.throttle(self._route)
            if gate(event) is None:
                logger.debug("interaction throttled type=%s product=%s", *key)
                return False
            return True
        return self._route(event)

    def _route(self, event: InteractionEvent) -> bool:
        pid = event.product_id or ""
        behavior = self.behavior
        kind = event.type
        if kind == "page_view":
            page = event.page or "/"
            self.experiments.assign(self.session_id, behavior.get_user_segment(), page)
            self.experiments.track_event(self.session_id, "page_view", {"path": page})
        elif kind == "view":
            behavior.track_view(pid, category=event.category, price=event.price)
        elif kind == "related_view":
            behavior.track_related_view(pid)
        elif kind == "hover":
            behavior.track_hover(pid, event.duration_ms or 0.0)
        elif kind == "hover_start":
            behavior.track_hover_start(pid)
        elif kind == "hover_end":
            behavior.track_hover_end(pid)
        elif kind == "wishlist_add":
            behavior.track_wishlist_add(pid)
        elif kind == "wishlist_remove":
            behavior.track_wishlist_remove(pid)
        elif kind == "cart_add":
            behavior.track_cart_add(pid, price=event.price)
            self.experiments.track_event(self.session_id, "cart_add", {})
        elif kind == "cart_remove":
            behavior.track_cart_remove(pid)
        elif kind == "purchase":
            items = event.product_ids or ([pid] if pid else [])
            behavior.track_purchase(items, order_value=event.order_value)
            self.record_transaction(
                Transaction.create(
                    order_id=event.order_id or f"{self.session_id}-{len(self.transactions) + 1}",
                    session_id=self.session_id,
                    items=items,
                    order_value=event.order_value or 0.0,
                )
            )
            self.experiments.track_event(self.session_id, "conversion", {"order_value": event.order_value or 0.0})
        elif kind == "search":
            behavior.track_search(event.query or "", event.product_ids, event.result_count)
        elif kind == "price_seen":
            behavior.track_price_seen(event.price)
        elif kind == "preference":
            behavior.track_preference(event.preference_kind or "category", event.preference_name or "")
        elif kind == "engagement":
            self.experiments.track_event(self.session_id, "engagement", {"time_spent": event.time_spent or 0.0})
        elif kind == "visibility":
            behavior.on_visibility_change(event.hidden)
        return True

    def _sweep_cache(self) -> None:
        removed = self.cache.sweep(force=True)
        if removed:
            logger.debug("cache sweep removed=%s size=%s", removed, len(self.cache))

    async def refresh_catalog(self) -> bool:
        """Replace the snapshot from the catalog API; the old snapshot survives failures."""

        if self.catalog_client is None:
            return False
        try:
            products = await self.catalog_client.fetch_products()
            collections = await self.catalog_client.fetch_collections()
        except CatalogUnavailableError as exc:
            logger.warning("catalog refresh failed, keeping version=%s: %s", self.catalog.version, exc)
            return False
        count = self.catalog.refresh(products, collections)
        self.cache.invalidate()
        self.bus.emit("data_refreshed", {"source": "catalog", "count": count})
        self.scoring.invalidate()
        return True

    def record_transaction(self, transaction: Transaction | Mapping[str, Any]) -> None:
        """Append a completed order and batch a model rebuild."""

        if not isinstance(transaction, Transaction):
            transaction = Transaction.from_dict(transaction)
        if not transaction.items:
            logger.warning("transaction without items order=%s", transaction.order_id)
            return
        self.transactions.add(transaction)
        self.rate_limiter.batch("mining-refresh", self.refresh_models)

    def load_transactions(self, transactions: Iterable[Transaction | Mapping[str, Any]]) -> int:
        parsed = [t if isinstance(t, Transaction) else Transaction.from_dict(t) for t in transactions]
        before = len(self.transactions)
        self.transactions.extend(parsed)
        self.refresh_models()
        return len(self.transactions) - before

    def refresh_models(self) -> None:
        history = self.transactions.snapshot()
        pairs = self.collaborative.rebuild(history)
        rules = self.basket.mine(history)
        self.bus.emit("data_refreshed", {"source": "transactions", "count": len(history)})
        logger.info("mining refreshed transactions=%s pairs=%s rules=%s", len(history), pairs, len(rules))

    # --- Cart mutations ---

    def _require_client(self) -> CatalogClient:
        if self.catalog_client is None:
            raise RuntimeError("no catalog client configured")
        return self.catalog_client

    async def add_to_cart(self, cart_id: str, product_id: str, quantity: int = 1) -> Cart:
        """Mutate the remote cart first; behavior is only tracked once it succeeds."""

        cart = await self._require_client().add_to_cart(cart_id, product_id, quantity)
        product = self.catalog.get(product_id)
        self.behavior.track_cart_add(product_id, price=product.price if product else None)
        self.experiments.track_event(self.session_id, "cart_add", {})
        self.bus.emit("data_refreshed", {"source": "cart", "count": len(cart.lines)})
        return cart

    async def remove_from_cart(self, cart_id: str, line_id: str, product_id: str | None = None) -> Cart:
        cart = await self._require_client().remove_from_cart(cart_id, line_id)
        if product_id:
            self.behavior.track_cart_remove(product_id)
        self.bus.emit("data_refreshed", {"source": "cart", "count": len(cart.lines)})
        return cart

    # --- Outputs ---

    def recommend(
        self,
        page: PageType = "home",
        *,
        product_id: str | None = None,
        collection: str | None = None,
        query: str | None = None,
        product_ids: Sequence[str] = (),
        limit: int = 8,
    ) -> list[Recommendation]:
        context = PageContext(
            page=page,
            product_id=product_id,
            collection=collection,
            query=query,
            product_ids=tuple(product_ids),
        )
        return self.aggregator.recommend(context, limit=limit)

    def reorder(self, products: Sequence[Product], section: str = "products", page: str = "/") -> list[Product]:
        config = self.experiments.get_active_config(self.session_id, self.behavior.get_user_segment(), page)
        return self.reorderer.reorder(products, section, config)

    async def enhance(self, product_id: str) -> EnhancedPrediction | None:
        """Run the enrichment pass for one product and feed the result into scoring."""

        score = self.behavior.get_behavior_score(product_id)
        if score is None:
            return None
        prediction = await self.enrichment.enhance_prediction(
            product_id, score.score, interactions_from_score(score), self.session_id
        )
        self.scoring.set_prediction(product_id, prediction.score, score.predicted_action.value)
        return prediction


__all__ = ["InteractionEvent", "PersonalizationService"]
