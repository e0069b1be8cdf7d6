"""
Learning records and performance statistics.
"""
import os
import sys

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import db
import learning


def test_classify_outcome():
    assert learning.classify_outcome(5.0) == "profit"
    assert learning.classify_outcome(-0.5) == "loss"
    assert learning.classify_outcome(0.005) == "breakeven"
    assert learning.classify_outcome(0.0) == "breakeven"


def test_record_outcome_persists_patterns():
    rid = learning.record_outcome(
        "AAPL", -12.0, 0.82,
        indicators={"rsi": 25.0, "signal_strength": 4},
        market_condition="DOWNTREND",
        trade_id=7,
    )
    row = db.list_learning_records()[0]
    assert row["id"] == rid
    assert row["outcome"] == "loss"
    assert row["trade_id"] == 7
    assert row["market_conditions"] == {"condition": "DOWNTREND"}
    assert row["learned_patterns"] == {"rsi_zone": "oversold", "signal_strength": 4, "condition": "DOWNTREND"}


def test_max_drawdown():
    assert learning.max_drawdown([]) == 0.0
    assert learning.max_drawdown([10, -5, -10, 20]) == pytest.approx(15.0)
    assert learning.max_drawdown([-3, -2]) == pytest.approx(5.0)
    assert learning.max_drawdown([1, 2, 3]) == 0.0


def test_performance_stats():
    stats = learning.performance_stats([10.0, -5.0, 20.0, -5.0])
    assert stats["totalTrades"] == 4
    assert stats["winningTrades"] == 2
    assert stats["losingTrades"] == 2
    assert stats["winRate"] == pytest.approx(0.5)
    assert stats["avgWin"] == pytest.approx(15.0)
    assert stats["avgLoss"] == pytest.approx(-5.0)
    assert stats["profitFactor"] == pytest.approx(3.0)
    assert stats["totalReturn"] == pytest.approx(20.0)
    assert stats["maxDrawdown"] == pytest.approx(5.0)
    assert stats["sharpeRatio"] > 0


def test_performance_stats_edges():
    empty = learning.performance_stats([])
    assert empty["totalTrades"] == 0
    assert empty["profitFactor"] == 0.0
    only_wins = learning.performance_stats([1.0, 2.0])
    assert only_wins["profitFactor"] is None
    single = learning.performance_stats([1.0])
    assert single["sharpeRatio"] == 0.0


def test_learning_summary():
    learning.record_outcome("AAPL", 10.0, 0.9)
    learning.record_outcome("AAPL", -4.0, 0.8)
    learning.record_outcome("BTC/USD", 6.0, 0.7, strategy="momentum")
    summary = learning.learning_summary()
    assert summary["totalRecords"] == 3
    assert summary["accuracy"] == pytest.approx(2 / 3)
    assert summary["patternsIdentified"] == 2 * 3
    assert summary["avgConfidence"] == pytest.approx(0.8)
    assert summary["bySymbol"] == {"AAPL": 2, "BTC/USD": 1}
    assert summary["performance"]["totalReturn"] == pytest.approx(12.0)


def test_learning_summary_empty():
    summary = learning.learning_summary([])
    assert summary["totalRecords"] == 0
    assert summary["accuracy"] == 0.0
    assert summary["patternsIdentified"] == 0
