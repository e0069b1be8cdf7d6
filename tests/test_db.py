"""
Persistence layer tests against a temp SQLite file (see conftest.tmp_db).
"""
import os
import sys

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import db


def test_init_db_is_idempotent():
    db.init_db()
    db.init_db()
    assert db.list_activity() == []


def test_activity_roundtrip_and_filters():
    a = db.add_activity("system", "started", details={"sessionId": "s1"}, session_id="s1")
    b = db.add_activity("info", "analyzing AAPL", symbol="AAPL", execution_time=12)
    c = db.add_activity("error", "boom", status="failed")

    newest = db.list_activity()
    assert [r["id"] for r in newest] == [c["id"], b["id"], a["id"]]
    assert newest[2]["details"] == {"sessionId": "s1"}
    assert [r["id"] for r in db.list_activity(type="info")] == [b["id"]]
    assert [r["id"] for r in db.list_activity(since_id=a["id"])] == [b["id"], c["id"]]
    assert len(db.list_activity(limit=1)) == 1


def test_activity_validation():
    with pytest.raises(ValueError):
        db.add_activity("chatter", "x")
    with pytest.raises(ValueError):
        db.add_activity("info", "x", status="done")


def test_trades():
    t1 = db.save_trade("AAPL", "BUY", 2, 150.0, 300.0, "FILLED", order_id="o1", ai_confidence=0.85)
    db.save_trade("BTC/USD", "sell", 0.01, 50000.0, 500.0, "PENDING", order_id="o2")
    db.save_trade("MSFT", "buy", 1, 400.0, 400.0, "REJECTED")

    assert db.get_trade(t1)["side"] == "buy"
    assert [t["symbol"] for t in db.list_trades()] == ["MSFT", "BTC/USD", "AAPL"]
    assert [t["symbol"] for t in db.list_trades(symbol="AAPL")] == ["AAPL"]
    assert db.count_trades_today() == 2
    assert sorted(db.symbols_traded_today()) == ["AAPL", "BTC/USD"]
    assert db.symbols_traded_today(side="sell") == ["BTC/USD"]

    assert db.update_trade_status("o2", "FILLED", pnl=12.5) == 1
    assert db.list_trades(symbol="BTC/USD")[0]["pnl"] == 12.5
    assert db.update_trade_status("nope", "FILLED") == 0


def test_old_trades_not_counted_today():
    db.save_trade("AAPL", "buy", 1, 1.0, 1.0, "FILLED", timestamp="2000-01-01T00:00:00+00:00")
    assert db.count_trades_today() == 0
    assert db.symbols_traded_today() == []


def test_trade_validation():
    with pytest.raises(ValueError):
        db.save_trade("AAPL", "hold", 1, 1.0, 1.0, "FILLED")
    with pytest.raises(ValueError):
        db.save_trade("AAPL", "buy", 1, 1.0, 1.0, "DONE")


def test_bot_metrics():
    assert db.get_bot_metrics() is None
    m = db.upsert_bot_metrics(True, 0)
    assert m["is_running"] is True
    db.increment_bot_metric("trades_executed")
    db.increment_bot_metric("recommendations_generated", by=3)
    m = db.upsert_bot_metrics(False, 120, total_pnl=42.0)
    assert m["is_running"] is False
    assert m["uptime"] == 120
    assert m["trades_executed"] == 1
    assert m["recommendations_generated"] == 3
    assert m["total_pnl"] == 42.0
    with pytest.raises(ValueError):
        db.upsert_bot_metrics(True, 0, bogus=1)
    with pytest.raises(ValueError):
        db.increment_bot_metric("uptime")


def test_learning_records():
    rid = db.add_learning_record(
        symbol="AAPL", outcome="profit", profit_loss=10.0, confidence_score=0.9,
        market_conditions={"condition": "UPTREND"}, technical_indicators={"rsi": 25},
        strategy_used="technical_composite",
    )
    rows = db.list_learning_records()
    assert rows[0]["id"] == rid
    assert rows[0]["technical_indicators"] == {"rsi": 25}
    assert db.list_learning_records(symbol="MSFT") == []
    with pytest.raises(ValueError):
        db.add_learning_record("AAPL", "win", 1.0, 0.9, {}, {}, "x")


def test_sessions():
    db.save_bot_session("s1", {"mode": "BALANCED"}, started_at=100)
    db.bump_session_cycles("s1")
    db.bump_session_cycles("s1")
    active = db.get_active_session()
    assert active["session_id"] == "s1"
    assert active["config"] == {"mode": "BALANCED"}
    assert active["cycles"] == 2

    # a new session supersedes the old one
    db.save_bot_session("s2", {"mode": "AGGRESSIVE"}, started_at=200)
    assert db.get_active_session()["session_id"] == "s2"

    db.end_bot_session("s2", "manual_stop")
    assert db.get_active_session() is None
