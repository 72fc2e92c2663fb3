from __future__ import annotations

import random

import pytest

from personalize.behavior import PredictedAction
from personalize.catalog.models import Cart, CartLine, Collection, Product
from personalize.config import Settings
from personalize.enrichment import EnrichmentClient
from personalize.errors import CartMutationError, CatalogUnavailableError
from personalize.events import EventBus
from personalize.mining import Transaction
from personalize.scheduler import ManualScheduler
from personalize.service import InteractionEvent, PersonalizationService
from personalize.storage import MemoryKeyValueStore

PRODUCTS = [
    Product(id="kit", title="Grow Kit", price=40, product_type="Kits", collections=["kits"]),
    Product(id="spores", title="Spore Syringe", price=15, product_type="Spores"),
    Product(id="gloves", title="Gloves", price=10, product_type="Gear"),
    Product(id="tub", title="Monotub", price=55, product_type="Kits", collections=["kits"]),
]


class FakeCatalogClient:
    def __init__(self) -> None:
        self.fail_reads = False
        self.fail_cart = False
        self.cart_calls: list[tuple[str, str]] = []

    async def fetch_products(self, *, limit=None):
        if self.fail_reads:
            raise CatalogUnavailableError("products: 503")
        return list(PRODUCTS)

    async def fetch_collections(self):
        return [Collection(id="c1", handle="kits", title="Kits", product_ids=["kit", "tub"])]

    async def add_to_cart(self, cart_id, product_id, quantity=1):
        self.cart_calls.append(("add", product_id))
        if self.fail_cart:
            raise CartMutationError("add", "out of stock", status_code=422)
        return Cart(id=cart_id, lines=[CartLine(id="l1", product_id=product_id, quantity=quantity, price=40)])

    async def remove_from_cart(self, cart_id, line_id):
        self.cart_calls.append(("remove", line_id))
        return Cart(id=cart_id)


def _service(client=None, **kwargs) -> PersonalizationService:
    config = Settings(ENVIRONMENT="test", EXPERIMENTS_FILE=None)
    return PersonalizationService(
        "session-svc",
        storage=kwargs.pop("storage", MemoryKeyValueStore()),
        scheduler=kwargs.pop("scheduler", ManualScheduler()),
        bus=kwargs.pop("bus", EventBus()),
        catalog_client=client,
        enrichment=EnrichmentClient("http://enrichment.invalid", enabled=False),
        rng=random.Random(4),
        config=config,
        **kwargs,
    )


@pytest.mark.asyncio
async def test_open_loads_catalog_and_close_cancels_timers():
    scheduler = ManualScheduler()
    bus = EventBus()
    refreshed = []
    bus.subscribe("data_refreshed", refreshed.append)
    service = _service(FakeCatalogClient(), scheduler=scheduler, bus=bus)

    async with service:
        assert len(service.catalog) == 4
        assert refreshed[0].source == "catalog"
        assert refreshed[0].count == 4
        assert scheduler.active > 0

    assert scheduler.active == 0


@pytest.mark.asyncio
async def test_failed_refresh_keeps_previous_snapshot():
    client = FakeCatalogClient()
    service = _service(client)
    await service.open()
    version = service.catalog.version

    client.fail_reads = True
    assert await service.refresh_catalog() is False

    assert service.catalog.version == version
    assert len(service.catalog) == 4
    await service.close()


@pytest.mark.asyncio
async def test_events_are_validated_and_routed():
    service = _service(FakeCatalogClient())
    await service.open()

    assert service.handle_event({"type": "view", "productId": "kit", "category": "kits", "price": 40})
    assert service.handle_event(InteractionEvent(type="wishlist_add", product_id="kit"))
    assert service.handle_event({"type": "search", "query": "oyster kit", "productIds": ["kit"], "resultCount": 1})
    assert not service.handle_event({"type": "teleport", "productId": "kit"})
    assert not service.handle_event({"type": "cart_add"})
    assert not service.handle_event({"type": "hover", "productId": "kit", "duration": -5})

    score = service.behavior.get_behavior_score("kit")
    assert score.views == 1
    assert score.wishlisted
    assert score.predicted_action is PredictedAction.WISHLIST
    assert service.behavior.profile.category_preferences["kits"] >= 1.0
    await service.close()


@pytest.mark.asyncio
async def test_hover_events_use_the_scheduler_clock():
    scheduler = ManualScheduler()
    service = _service(scheduler=scheduler)
    await service.open()

    service.handle_event({"type": "hover_start", "productId": "kit"})
    scheduler.advance(0.6)
    service.handle_event({"type": "hover_end", "productId": "kit"})

    score = service.behavior.get_behavior_score("kit")
    assert score.hovers == 2
    assert score.score == pytest.approx(2.55)
    await service.close()


@pytest.mark.asyncio
async def test_purchases_feed_batched_model_rebuilds():
    scheduler = ManualScheduler()
    service = _service(FakeCatalogClient(), scheduler=scheduler)
    await service.open()
    service.load_transactions(
        [
            {"orderId": "o1", "sessionId": "a", "items": ["kit", "spores"]},
            {"orderId": "o2", "sessionId": "b", "items": ["kit", "spores"]},
        ]
    )

    service.handle_event({"type": "purchase", "productIds": ["kit", "gloves"], "orderValue": 50})
    service.handle_event({"type": "purchase", "productIds": ["tub"], "orderValue": 55})
    assert len(service.transactions) == 4
    assert service.basket.transaction_count == 2

    scheduler.advance(0.05)

    assert service.basket.transaction_count == 4
    assert service.collaborative.similarity("kit", "spores") is not None
    await service.close()


@pytest.mark.asyncio
async def test_product_page_recommendations():
    service = _service(FakeCatalogClient())
    await service.open()
    service.load_transactions(
        [
            Transaction.create("o1", "a", ["kit", "spores"]),
            Transaction.create("o2", "b", ["kit", "spores"]),
            Transaction.create("o3", "c", ["kit", "gloves"]),
        ]
    )

    recs = service.recommend("product", product_id="kit", limit=2)

    assert [r.product_id for r in recs] == ["spores", "gloves"]
    assert all(r.reasons for r in recs)
    await service.close()


@pytest.mark.asyncio
async def test_cart_mutation_tracks_only_after_success():
    client = FakeCatalogClient()
    service = _service(client)
    await service.open()

    cart = await service.add_to_cart("c1", "kit", 2)
    assert cart.product_ids == ["kit"]
    assert "kit" in service.behavior.profile.cart

    client.fail_cart = True
    with pytest.raises(CartMutationError) as excinfo:
        await service.add_to_cart("c1", "tub")
    assert excinfo.value.status_code == 422
    assert "tub" not in service.behavior.profile.cart

    await service.remove_from_cart("c1", "l1", product_id="kit")
    assert "kit" not in service.behavior.profile.cart
    await service.close()


@pytest.mark.asyncio
async def test_cart_calls_need_a_client():
    service = _service()
    with pytest.raises(RuntimeError):
        await service.add_to_cart("c1", "kit")


@pytest.mark.asyncio
async def test_reorder_uses_experiment_config():
    service = _service(FakeCatalogClient())
    await service.open()
    service.handle_event({"type": "page_view", "page": "/collections/kits"})
    assert "ai-subtlety-test" in service.experiments.assignments("session-svc")

    ordered = service.reorder(list(PRODUCTS), "collection-grid", "/collections/kits")

    assert sorted(p.id for p in ordered) == sorted(p.id for p in PRODUCTS)
    await service.close()


@pytest.mark.asyncio
async def test_enhance_feeds_scoring_with_fallbacks():
    service = _service(FakeCatalogClient())
    await service.open()
    assert await service.enhance("kit") is None

    service.handle_event({"type": "view", "productId": "kit"})
    service.handle_event({"type": "wishlist_add", "productId": "kit"})
    prediction = await service.enhance("kit")

    # researcher fallback pattern: 13 * 1.2
    assert prediction.score == pytest.approx(15.6)
    assert service.scoring.build_context().predictions["kit"].score == pytest.approx(15.6)
    await service.close()


@pytest.mark.asyncio
async def test_unknown_preference_kind_is_rejected_at_the_boundary():
    service = _service()
    await service.open()

    assert not service.handle_event({"type": "preference", "kind": "color", "name": "blue"})
    assert service.handle_event({"type": "preference", "kind": "brand", "name": "sporeworks"})

    assert service.behavior.profile.brand_preferences == {"sporeworks": 1.0}
    await service.close()


@pytest.mark.asyncio
async def test_hover_bursts_are_throttled_per_product():
    scheduler = ManualScheduler()
    service = _service(scheduler=scheduler)
    await service.open()

    accepted = [service.handle_event({"type": "hover", "productId": "kit", "duration": 300}) for _ in range(5)]
    assert accepted == [True, False, False, False, False]
    assert service.handle_event({"type": "hover", "productId": "tub", "duration": 300})
    assert service.behavior.get_behavior_score("kit").hovers == 1

    scheduler.advance(0.01)
    assert service.handle_event({"type": "hover", "productId": "kit", "duration": 300})
    assert service.behavior.get_behavior_score("kit").hovers == 2
    # low-frequency events are never throttled
    assert service.handle_event({"type": "view", "productId": "kit"})
    assert service.handle_event({"type": "view", "productId": "kit"})
    assert service.behavior.get_behavior_score("kit").views == 2
    await service.close()


@pytest.mark.asyncio
async def test_cache_is_swept_on_its_own_timer():
    scheduler = ManualScheduler()
    service = _service(scheduler=scheduler)
    await service.open()
    service.cache.put("sentiment:kit", {"label": "positive"})
    assert len(service.cache) == 1

    scheduler.advance(31)
    assert len(service.cache) == 1

    scheduler.advance(300)

    assert len(service.cache) == 0
    await service.close()
    assert scheduler.active == 0
