"""Catalog collaborator: records, snapshot and HTTP client."""

from personalize.catalog.client import CatalogClient
from personalize.catalog.models import Cart, CartLine, Collection, Product
from personalize.catalog.snapshot import CatalogSnapshot

__all__ = ["Cart", "CartLine", "CatalogClient", "CatalogSnapshot", "Collection", "Product"]
