"""Two-item Apriori pass producing directional association rules."""

from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass
from itertools import combinations
from typing import Iterable

from personalize import metrics
from personalize.mining.history import Transaction

logger = logging.getLogger("personalize.mining")


@dataclass(frozen=True, slots=True)
class AssociationRule:
    antecedent: frozenset[str]
    consequent: frozenset[str]
    support: float
    confidence: float
    lift: float

    @property
    def consequent_item(self) -> str:
        return next(iter(self.consequent))


class MarketBasketMiner:
    def __init__(self, min_support: float = 0.05, min_confidence: float = 0.3, min_transactions: int = 1) -> None:
        self._min_support = min_support
        self._min_confidence = min_confidence
        self._min_transactions = max(1, min_transactions)
        self._rules: dict[str, list[AssociationRule]] = {}
        self.transaction_count = 0

    def mine(self, transactions: Iterable[Transaction]) -> list[AssociationRule]:
        """Rebuild every rule from the full history."""

        baskets = [set(t.items) for t in transactions if t.items]
        total = len(baskets)
        self.transaction_count = total
        if total < self._min_transactions:
            self._rules = {}
            logger.info("basket mining skipped transactions=%s min=%s", total, self._min_transactions)
            return []

        singles: Counter[str] = Counter()
        pairs: Counter[tuple[str, str]] = Counter()
        for basket in baskets:
            singles.update(basket)
            pairs.update(combinations(sorted(basket), 2))

        rules: list[AssociationRule] = []
        for (a, b), together in pairs.items():
            support = together / total
            if support < self._min_support:
                continue
            for antecedent, consequent in ((a, b), (b, a)):
                confidence = together / singles[antecedent]
                if confidence < self._min_confidence:
                    continue
                base_rate = singles[consequent] / total
                rules.append(
                    AssociationRule(
                        antecedent=frozenset((antecedent,)),
                        consequent=frozenset((consequent,)),
                        support=support,
                        confidence=confidence,
                        lift=confidence / base_rate,
                    )
                )

        by_antecedent: dict[str, list[AssociationRule]] = {}
        for rule in rules:
            by_antecedent.setdefault(next(iter(rule.antecedent)), []).append(rule)
        for group in by_antecedent.values():
            group.sort(key=lambda r: (-r.lift, -r.confidence, r.consequent_item))
        self._rules = by_antecedent
        metrics.MINING_REBUILDS.labels(model="basket").inc()
        logger.info("basket rules mined transactions=%s rules=%s", total, len(rules))
        return rules

    def rules_for(self, antecedent: str, limit: int = 10) -> list[AssociationRule]:
        return list(self._rules.get(antecedent, ())[: max(0, limit)])

    def rule(self, antecedent: str, consequent: str) -> AssociationRule | None:
        for rule in self._rules.get(antecedent, ()):
            if rule.consequent_item == consequent:
                return rule
        return None

    @property
    def rule_count(self) -> int:
        return sum(len(group) for group in self._rules.values())


__all__ = ["AssociationRule", "MarketBasketMiner"]
