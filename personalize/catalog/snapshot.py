"""Read-mostly copy of the catalog, replaced wholesale on refresh."""

from __future__ import annotations

import threading
import time
from typing import Iterable

from personalize.catalog.models import Collection, Product


class CatalogSnapshot:
    def __init__(self, products: Iterable[Product] = (), collections: Iterable[Collection] = ()) -> None:
        self._lock = threading.Lock()
        self._products: dict[str, Product] = {}
        self._collections: dict[str, Collection] = {}
        self.version = 0
        self.updated_at = 0.0
        products, collections = list(products), list(collections)
        if products or collections:
            self.refresh(products, collections)

    def refresh(self, products: Iterable[Product], collections: Iterable[Collection] = ()) -> int:
        by_id = {product.id: product for product in products}
        by_collection = {collection.id: collection for collection in collections}
        with self._lock:
            self._products = by_id
            if by_collection:
                self._collections = by_collection
            self.version += 1
            self.updated_at = time.time()
        return len(by_id)

    def __len__(self) -> int:
        return len(self._products)

    def __contains__(self, product_id: str) -> bool:
        return product_id in self._products

    def get(self, product_id: str) -> Product | None:
        return self._products.get(product_id)

    def products(self) -> list[Product]:
        return list(self._products.values())

    def collections(self) -> list[Collection]:
        return list(self._collections.values())

    def in_collection(self, handle_or_id: str) -> list[Product]:
        collection = self._collections.get(handle_or_id)
        if collection is None:
            collection = next((c for c in self._collections.values() if c.handle == handle_or_id), None)
        if collection is not None and collection.product_ids:
            return [self._products[pid] for pid in collection.product_ids if pid in self._products]
        key = handle_or_id.lower()
        return [p for p in self._products.values() if key in {c.lower() for c in p.collections}]


__all__ = ["CatalogSnapshot"]
