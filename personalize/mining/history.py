"""Purchase history feeding the co-purchase models."""

from __future__ import annotations

import threading
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping

from personalize.behavior.models import safe_number


@dataclass(frozen=True, slots=True)
class Transaction:
    order_id: str
    session_id: str
    items: tuple[str, ...]
    order_value: float = 0.0
    timestamp: float = field(default_factory=time.time)

    @classmethod
    def create(
        cls,
        order_id: str,
        session_id: str,
        items: Iterable[Any],
        order_value: Any = 0.0,
        timestamp: float | None = None,
    ) -> "Transaction":
        unique = tuple(dict.fromkeys(str(item) for item in items if item not in (None, "")))
        return cls(
            order_id=str(order_id),
            session_id=str(session_id),
            items=unique,
            order_value=safe_number(order_value),
            timestamp=time.time() if timestamp is None else timestamp,
        )

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Transaction":
        return cls.create(
            order_id=data.get("orderId") or data.get("order_id") or "",
            session_id=data.get("sessionId") or data.get("session_id") or "anonymous",
            items=data.get("items") or data.get("productIds") or [],
            order_value=data.get("orderValue", data.get("order_value", 0.0)),
            timestamp=data.get("timestamp"),
        )


class TransactionLog:
    """Bounded, append-only purchase history; models read full snapshots of it."""

    def __init__(self, max_transactions: int = 10_000) -> None:
        self._items: deque[Transaction] = deque(maxlen=max_transactions)
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._items)

    def add(self, transaction: Transaction) -> None:
        if not transaction.items:
            return
        with self._lock:
            self._items.append(transaction)

    def extend(self, transactions: Iterable[Transaction]) -> None:
        for transaction in transactions:
            self.add(transaction)

    def snapshot(self) -> list[Transaction]:
        with self._lock:
            return list(self._items)


__all__ = ["Transaction", "TransactionLog"]
