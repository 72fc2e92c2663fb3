"""Item-item collaborative filtering over the binary purchase matrix."""

from __future__ import annotations

import logging
import math
from collections import defaultdict
from dataclasses import dataclass
from itertools import combinations
from typing import Iterable

from personalize import metrics
from personalize.mining.history import Transaction

logger = logging.getLogger("personalize.mining")


@dataclass(frozen=True, slots=True)
class SimilarityEntry:
    item_a: str
    item_b: str
    similarity: float


class CollaborativeFilter:
    """Cosine similarity between items, where users are sessions that bought them.

    Only pairs above ``min_similarity`` are stored. Rebuilds replace the whole
    model, so lookups may lag live behavior by one refresh period.
    """

    def __init__(self, min_similarity: float = 0.1, max_neighbors: int = 10) -> None:
        self._min_similarity = min_similarity
        self._max_neighbors = max_neighbors
        self._neighbors: dict[str, list[SimilarityEntry]] = {}
        self._matrix: dict[str, dict[str, float]] = {}
        self.built_from = 0

    def rebuild(self, transactions: Iterable[Transaction]) -> int:
        """Recompute the similarity table; returns the number of stored pairs."""

        matrix: dict[str, dict[str, float]] = defaultdict(dict)
        item_users: dict[str, set[str]] = defaultdict(set)
        count = 0
        for transaction in transactions:
            count += 1
            user = transaction.session_id
            for item in transaction.items:
                matrix[user][item] = matrix[user].get(item, 0.0) + transaction.order_value
                item_users[item].add(user)

        pair_overlap: dict[tuple[str, str], int] = defaultdict(int)
        for items in matrix.values():
            for a, b in combinations(sorted(items), 2):
                pair_overlap[(a, b)] += 1

        neighbors: dict[str, list[SimilarityEntry]] = defaultdict(list)
        stored = 0
        for (a, b), shared in pair_overlap.items():
            similarity = shared / math.sqrt(len(item_users[a]) * len(item_users[b]))
            if similarity <= self._min_similarity:
                continue
            neighbors[a].append(SimilarityEntry(a, b, similarity))
            neighbors[b].append(SimilarityEntry(b, a, similarity))
            stored += 1

        for entries in neighbors.values():
            entries.sort(key=lambda e: (-e.similarity, e.item_b))

        self._matrix = dict(matrix)
        self._neighbors = dict(neighbors)
        self.built_from = count
        metrics.MINING_REBUILDS.labels(model="collaborative").inc()
        logger.info("collaborative filter rebuilt transactions=%s items=%s pairs=%s", count, len(item_users), stored)
        return stored

    def neighbors(self, item: str, limit: int | None = None) -> list[SimilarityEntry]:
        cap = self._max_neighbors if limit is None else limit
        return list(self._neighbors.get(item, ())[: max(0, cap)])

    def similarity(self, item_a: str, item_b: str) -> float | None:
        if item_a == item_b:
            return None
        for entry in self._neighbors.get(item_a, ()):
            if entry.item_b == item_b:
                return entry.similarity
        return None

    def user_items(self, user: str) -> dict[str, float]:
        """Interaction weights (order value) recorded for ``user``."""

        return dict(self._matrix.get(user, {}))

    @property
    def item_count(self) -> int:
        return len(self._neighbors)


__all__ = ["CollaborativeFilter", "SimilarityEntry"]
