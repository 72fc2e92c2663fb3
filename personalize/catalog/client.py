"""HTTP client for the external catalog and cart API."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, TypeVar

import httpx
from pydantic import BaseModel, ValidationError

from personalize.catalog.models import Cart, Collection, Product
from personalize.config import settings
from personalize.errors import CartMutationError, CatalogUnavailableError
from personalize.http_client import (
    AsyncCircuitBreaker,
    CircuitBreakerOpenError,
    async_http_client,
    default_breaker,
    request_with_retries,
)

logger = logging.getLogger("personalize.catalog")

M = TypeVar("M", bound=BaseModel)


def _parse_many(model: type[M], items: Any, kind: str) -> list[M]:
    if isinstance(items, dict):
        items = items.get(kind) or items.get("items") or items.get("nodes") or []
    if not isinstance(items, list):
        raise CatalogUnavailableError(f"{kind}: expected a list")
    parsed: list[M] = []
    skipped = 0
    for raw in items:
        try:
            parsed.append(model.model_validate(raw))
        except ValidationError:
            skipped += 1
    if skipped:
        logger.warning("catalog records skipped kind=%s skipped=%s kept=%s", kind, skipped, len(parsed))
    return parsed


class CatalogClient:
    """Reads are retried behind a circuit breaker; cart mutations fail loudly without retry."""

    def __init__(
        self,
        base_url: str | None = None,
        *,
        client: httpx.AsyncClient | None = None,
        circuit_breaker: AsyncCircuitBreaker | None = None,
        retries: int | None = None,
        backoff_factor: float | None = None,
        backoff_max: float | None = None,
    ) -> None:
        self._base_url = (base_url or settings.CATALOG_BASE_URL).rstrip("/")
        self._client = client
        self._breaker = circuit_breaker or default_breaker("catalog")
        self._retries = settings.HTTP_RETRY_ATTEMPTS if retries is None else retries
        self._backoff = settings.HTTP_RETRY_BACKOFF_INITIAL if backoff_factor is None else backoff_factor
        self._backoff_max = settings.HTTP_RETRY_BACKOFF_MAX if backoff_max is None else backoff_max

    @asynccontextmanager
    async def _session(self) -> AsyncIterator[httpx.AsyncClient]:
        if self._client is not None:
            yield self._client
            return
        async with async_http_client() as client:
            yield client

    def _url(self, path: str) -> str:
        return f"{self._base_url}/{path.lstrip('/')}"

    async def _get_json(self, path: str, **params: Any) -> Any:
        async with self._session() as client:
            try:
                response = await request_with_retries(
                    "GET",
                    self._url(path),
                    client=client,
                    circuit_breaker=self._breaker,
                    retries=self._retries,
                    backoff_factor=self._backoff,
                    backoff_max=self._backoff_max,
                    retry_statuses=settings.HTTP_RETRY_STATUS_CODES,
                    params=params or None,
                )
                response.raise_for_status()
                return response.json()
            except CircuitBreakerOpenError as exc:
                logger.warning("catalog circuit open path=%s", path)
                raise CatalogUnavailableError(str(exc)) from exc
            except (httpx.HTTPError, ValueError) as exc:
                logger.warning("catalog request failed path=%s error=%s", path, exc)
                raise CatalogUnavailableError(f"{path}: {exc}") from exc

    # --- Reads ---

    async def fetch_products(self, *, limit: int | None = None) -> list[Product]:
        params = {"limit": limit} if limit else {}
        data = await self._get_json("products", **params)
        return _parse_many(Product, data, "products")

    async def fetch_collections(self) -> list[Collection]:
        data = await self._get_json("collections")
        return _parse_many(Collection, data, "collections")

    async def fetch_cart(self, cart_id: str) -> Cart:
        data = await self._get_json(f"cart/{cart_id}")
        try:
            return Cart.model_validate(data.get("cart", data) if isinstance(data, dict) else data)
        except ValidationError as exc:
            raise CatalogUnavailableError(f"cart/{cart_id}: malformed cart") from exc

    # --- Cart mutations ---

    async def _mutate(self, operation: str, method: str, path: str, payload: dict[str, Any] | None) -> Cart:
        async with self._session() as client:
            try:
                response = await client.request(method, self._url(path), json=payload)
            except httpx.HTTPError as exc:
                logger.warning("cart %s failed error=%s", operation, exc)
                raise CartMutationError(operation, str(exc)) from exc
        if response.status_code >= 400:
            detail = response.text[:200] or response.reason_phrase
            logger.warning("cart %s rejected status=%s", operation, response.status_code)
            raise CartMutationError(operation, detail, status_code=response.status_code)
        try:
            data = response.json()
            return Cart.model_validate(data.get("cart", data) if isinstance(data, dict) else data)
        except (ValueError, ValidationError) as exc:
            raise CartMutationError(operation, "malformed cart in response", status_code=response.status_code) from exc

    async def add_to_cart(self, cart_id: str, product_id: str, quantity: int = 1) -> Cart:
        if quantity <= 0:
            raise CartMutationError("add", "quantity must be positive")
        return await self._mutate(
            "add", "POST", f"cart/{cart_id}/lines", {"productId": product_id, "quantity": quantity}
        )

    async def update_cart_line(self, cart_id: str, line_id: str, quantity: int) -> Cart:
        return await self._mutate(
            "update", "PATCH", f"cart/{cart_id}/lines/{line_id}", {"quantity": max(0, int(quantity))}
        )

    async def remove_from_cart(self, cart_id: str, line_id: str) -> Cart:
        return await self._mutate("remove", "DELETE", f"cart/{cart_id}/lines/{line_id}", None)


__all__ = ["CatalogClient"]
