from __future__ import annotations

import pytest

from personalize.mining import CollaborativeFilter, MarketBasketMiner, Transaction, TransactionLog


def _tx(order_id: str, session: str, items, value: float = 10.0) -> Transaction:
    return Transaction.create(order_id, session, items, value, timestamp=1.0)


def test_basket_rule_support_confidence_and_lift():
    miner = MarketBasketMiner(min_support=0.1, min_confidence=0.1)
    transactions = [_tx("o1", "s1", ["x", "y"]), _tx("o2", "s2", ["x", "y"]), _tx("o3", "s3", ["x", "z"])]

    miner.mine(transactions)

    x_to_y = miner.rule("x", "y")
    assert x_to_y.support == pytest.approx(2 / 3)
    assert x_to_y.confidence == pytest.approx(2 / 3)
    assert x_to_y.lift == pytest.approx((2 / 3) / (2 / 3))

    y_to_x = miner.rule("y", "x")
    assert y_to_x.support == pytest.approx(2 / 3)
    assert y_to_x.confidence == pytest.approx(1.0)
    assert y_to_x.lift == pytest.approx(1.0)


def test_basket_thresholds_filter_rules():
    miner = MarketBasketMiner(min_support=0.5, min_confidence=0.9)
    transactions = [_tx("o1", "s1", ["x", "y"]), _tx("o2", "s2", ["x", "y"]), _tx("o3", "s3", ["x", "z"])]

    miner.mine(transactions)

    # x->z fails support, x->y fails confidence
    assert miner.rule("x", "z") is None
    assert miner.rule("x", "y") is None
    assert miner.rule("y", "x") is not None
    assert miner.rule_count == 1


def test_basket_requires_minimum_history():
    miner = MarketBasketMiner(min_transactions=5)
    assert miner.mine([_tx("o1", "s1", ["x", "y"])]) == []
    assert miner.rules_for("x") == []
    assert miner.transaction_count == 1


def test_rules_are_ranked_by_lift():
    miner = MarketBasketMiner(min_support=0.1, min_confidence=0.1)
    miner.mine(
        [
            _tx("o1", "s1", ["a", "b"]),
            _tx("o2", "s2", ["a", "c"]),
            _tx("o3", "s3", ["b", "d"]),
            _tx("o4", "s4", ["b", "e"]),
        ]
    )

    # c only ever appears with a, b is common elsewhere
    assert [rule.consequent_item for rule in miner.rules_for("a")] == ["c", "b"]


def test_collaborative_similarity_is_symmetric():
    cf = CollaborativeFilter(min_similarity=0.0)
    cf.rebuild(
        [
            _tx("o1", "alice", ["kit", "spores"]),
            _tx("o2", "bob", ["kit", "spores", "gloves"]),
            _tx("o3", "carol", ["kit"]),
        ]
    )

    assert cf.similarity("kit", "spores") == cf.similarity("spores", "kit")
    # 2 shared users over sqrt(3 * 2)
    assert cf.similarity("kit", "spores") == pytest.approx(2 / 6 ** 0.5)
    assert cf.similarity("kit", "kit") is None
    assert [entry.item_b for entry in cf.neighbors("kit")] == ["spores", "gloves"]


def test_collaborative_drops_weak_pairs_and_tracks_user_weights():
    cf = CollaborativeFilter(min_similarity=0.6)
    stored = cf.rebuild(
        [
            _tx("o1", "alice", ["kit", "spores"], 30.0),
            _tx("o2", "alice", ["kit"], 20.0),
            _tx("o3", "bob", ["kit", "gloves"], 15.0),
            _tx("o4", "carol", ["kit"], 5.0),
        ]
    )

    assert stored == 0
    assert cf.neighbors("kit") == []
    assert cf.user_items("alice") == {"kit": 50.0, "spores": 30.0}
    assert cf.built_from == 4


def test_transaction_create_dedups_and_coerces():
    tx = Transaction.from_dict({"orderId": 7, "productIds": ["a", "a", None, 3], "orderValue": "nan"})
    assert tx.order_id == "7"
    assert tx.session_id == "anonymous"
    assert tx.items == ("a", "3")
    assert tx.order_value == 0.0


def test_transaction_log_is_bounded_and_skips_empty():
    log = TransactionLog(max_transactions=2)
    log.extend([_tx("o1", "s", ["a"]), _tx("o2", "s", []), _tx("o3", "s", ["b"]), _tx("o4", "s", ["c"])])
    assert [t.order_id for t in log.snapshot()] == ["o3", "o4"]
