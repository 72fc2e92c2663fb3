"""Co-purchase models rebuilt from the transaction history."""

from personalize.mining.basket import AssociationRule, MarketBasketMiner
from personalize.mining.collaborative import CollaborativeFilter, SimilarityEntry
from personalize.mining.history import Transaction, TransactionLog

__all__ = [
    "AssociationRule",
    "CollaborativeFilter",
    "MarketBasketMiner",
    "SimilarityEntry",
    "Transaction",
    "TransactionLog",
]
