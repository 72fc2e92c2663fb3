"""Exception hierarchy for the personalization core."""

from __future__ import annotations

class PersonalizationError(Exception):
    """Base class for errors raised by the personalization core."""

class EventPayloadError(PersonalizationError, ValueError):
    """Raised when an event name is unknown or its payload fails validation."""

    def __init__(self, name: str, detail: str) -> None:
        super().__init__(f"Invalid payload for event '{name}': {detail}")
        self.name = name
        self.detail = detail

class StorageLimitError(PersonalizationError):
    """Raised when a persisted value would exceed the store size limit."""

    def __init__(self, key: str, size: int, limit: int) -> None:
        super().__init__(f"Value for '{key}' needs {size} bytes, limit is {limit}")
        self.key = key
        self.size = size
        self.limit = limit

class CatalogUnavailableError(PersonalizationError):
    """Raised by the catalog client when the remote catalog cannot be read."""

class CartMutationError(PersonalizationError):
    """Cart mutation failed; surfaced to the caller for a user-facing retry."""

    def __init__(self, operation: str, detail: str, status_code: int | None = None) -> None:
        super().__init__(f"Cart {operation} failed: {detail}")
        self.operation = operation
        self.detail = detail
        self.status_code = status_code


__all__ = [
    "CartMutationError",
    "CatalogUnavailableError",
    "EventPayloadError",
    "PersonalizationError",
    "StorageLimitError",
]
