"""Catalog records supplied by the commerce platform."""

from __future__ import annotations

import math
from datetime import datetime, timezone
from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator


def _coerce_amount(value: Any) -> float:
    if isinstance(value, dict):
        value = value.get("amount")
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0.0
    if math.isnan(number) or math.isinf(number) or number < 0:
        return 0.0
    return number


def _coerce_tags(value: Any) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        value = value.split(",")
    return [str(tag).strip().lower() for tag in value if str(tag).strip()]


class Product(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: str
    handle: str = ""
    title: str = ""
    price: float = 0.0
    compare_at_price: float | None = Field(
        default=None, validation_alias=AliasChoices("compare_at_price", "compareAtPrice")
    )
    inventory: int | None = Field(
        default=None,
        validation_alias=AliasChoices("inventory", "totalInventory", "quantityAvailable"),
    )
    available: bool = Field(default=True, validation_alias=AliasChoices("available", "availableForSale"))
    tags: list[str] = Field(default_factory=list)
    vendor: str = ""
    product_type: str = Field(default="", validation_alias=AliasChoices("product_type", "productType"))
    images: list[str] = Field(default_factory=list)
    collections: list[str] = Field(default_factory=list)
    created_at: datetime | None = Field(default=None, validation_alias=AliasChoices("created_at", "createdAt"))

    @field_validator("id", mode="before")
    @classmethod
    def _stringify_id(cls, v):
        if v in (None, ""):
            raise ValueError("product id is required")
        return str(v)

    @field_validator("price", mode="before")
    @classmethod
    def _safe_price(cls, v):
        return _coerce_amount(v)

    @field_validator("compare_at_price", mode="before")
    @classmethod
    def _safe_compare_at(cls, v):
        if v in (None, ""):
            return None
        amount = _coerce_amount(v)
        return amount or None

    @field_validator("inventory", mode="before")
    @classmethod
    def _safe_inventory(cls, v):
        if v is None:
            return None
        return int(_coerce_amount(v))

    @field_validator("tags", mode="before")
    @classmethod
    def _normalize_tags(cls, v):
        return _coerce_tags(v)

    @field_validator("images", "collections", mode="before")
    @classmethod
    def _normalize_refs(cls, v):
        if v is None:
            return []
        refs = []
        for item in v:
            if isinstance(item, dict):
                item = item.get("url") or item.get("handle") or item.get("id")
            if item:
                refs.append(str(item))
        return refs

    @field_validator("created_at", mode="before")
    @classmethod
    def _parse_created(cls, v):
        if v in (None, ""):
            return None
        if isinstance(v, (int, float)):
            return datetime.fromtimestamp(_coerce_amount(v), tz=timezone.utc)
        return v

    @property
    def categories(self) -> set[str]:
        """Names this product can match against category preferences."""

        names = {c.lower() for c in self.collections}
        names.update(self.tags)
        if self.product_type:
            names.add(self.product_type.lower())
        return names

    def age_days(self, now: datetime | None = None) -> float | None:
        if self.created_at is None:
            return None
        created = self.created_at
        if created.tzinfo is None:
            created = created.replace(tzinfo=timezone.utc)
        current = now or datetime.now(timezone.utc)
        return (current - created).total_seconds() / 86400.0


class Collection(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: str
    handle: str = ""
    title: str = ""
    product_ids: list[str] = Field(default_factory=list, validation_alias=AliasChoices("product_ids", "productIds"))

    @field_validator("id", mode="before")
    @classmethod
    def _stringify_id(cls, v):
        if v in (None, ""):
            raise ValueError("collection id is required")
        return str(v)


class CartLine(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: str
    product_id: str = Field(validation_alias=AliasChoices("product_id", "productId"))
    quantity: int = 1
    price: float = 0.0

    @field_validator("quantity", mode="before")
    @classmethod
    def _safe_quantity(cls, v):
        return int(_coerce_amount(v))

    @field_validator("price", mode="before")
    @classmethod
    def _safe_price(cls, v):
        return _coerce_amount(v)


class Cart(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: str
    lines: list[CartLine] = Field(default_factory=list)

    @property
    def product_ids(self) -> list[str]:
        return [line.product_id for line in self.lines if line.quantity > 0]

    @property
    def total(self) -> float:
        return round(sum(line.price * line.quantity for line in self.lines), 2)


__all__ = ["Cart", "CartLine", "Collection", "Product"]
