#!/usr/bin/env python3
"""
Order executor: confidence sizing, risk gating, order submission and records.
The broker is a Mock; the database is the per-test SQLite file from conftest.
"""
import os
import sys
from unittest.mock import Mock

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import db
import executor
from alpaca_client import AlpacaAPIError
from executor import OrderExecutor, allocation_for_confidence, compute_position_size
from risk_engine import RiskConfig

ACCOUNT = {"equity": "10000", "buying_power": "20000", "portfolio_value": "10000", "last_equity": "10000",
           "daytrade_count": 0}


def _client(positions=None, account=None, price=150.0, order=None):
    c = Mock()
    c.get_positions.return_value = positions or []
    c.get_account.return_value = dict(account or ACCOUNT)
    c.get_latest_price.return_value = price
    c.submit_order.return_value = order if order is not None else {
        "id": "o1", "status": "filled", "filled_qty": "4", "filled_avg_price": "150", "time_in_force": "day",
    }
    return c


# -----------------
# Sizing
# -----------------
def test_allocation_for_confidence():
    assert allocation_for_confidence(0.50) == pytest.approx(0.02)
    assert allocation_for_confidence(0.75) == pytest.approx(0.02)
    assert allocation_for_confidence(0.85) == pytest.approx(0.06)
    assert allocation_for_confidence(0.95) == pytest.approx(0.10)
    assert allocation_for_confidence(0.99) == pytest.approx(0.10)


def test_compute_position_size():
    cfg = RiskConfig()
    assert compute_position_size(10000, 20000, 0.75, config=cfg) == 200.0
    assert compute_position_size(10000, 20000, 0.95, config=cfg) == 1000.0
    # capped by MAX_ORDER_VALUE
    assert compute_position_size(100000, 200000, 0.95, config=cfg) == 1000.0
    # capped by buying power less the buffer, floored to whole dollars
    assert compute_position_size(10000, 100, 0.95, config=cfg) == 95.0
    assert compute_position_size(0, 0, 0.9, config=cfg) == 0.0


def test_compute_position_size_portfolio_mode():
    cfg = RiskConfig()
    assert compute_position_size(5000, 20000, 0.75, mode="portfolio_pct", portfolio_value=15000, config=cfg) == 300.0
    with pytest.raises(ValueError):
        compute_position_size(5000, 20000, 0.75, mode="kelly")


# -----------------
# Execution
# -----------------
def test_buy_stock_success():
    client = _client()
    result = OrderExecutor(client).execute("AAPL", "BUY", 0.85, session_id="s1", market_open=True)

    assert result["success"] is True
    assert result["blocked"] is False
    client.submit_order.assert_called_once_with(
        "AAPL", "buy", notional=600.0, order_type="market", time_in_force="day", asset_class="us_equity",
    )
    trade = db.get_trade(result["trade_id"])
    assert trade["symbol"] == "AAPL"
    assert trade["side"] == "buy"
    assert trade["status"] == "FILLED"
    assert trade["quantity"] == pytest.approx(4.0)
    assert trade["price"] == pytest.approx(150.0)
    assert trade["strategy"] == "technical_composite"
    assert trade["pnl"] is None
    assert db.get_bot_metrics()["trades_executed"] == 1

    acts = db.list_activity(type="trade")
    assert len(acts) == 1
    assert "Order placed via Alpaca (ID: o1)" in acts[0]["message"]
    assert acts[0]["details"]["sessionId"] == "s1"


def test_pending_order_estimates_quantity():
    client = _client(order={"id": "o2", "status": "accepted"}, price=200.0)
    result = OrderExecutor(client).execute("MSFT", "BUY", 0.85, market_open=True)
    trade = db.get_trade(result["trade_id"])
    assert trade["status"] == "PENDING"
    assert trade["quantity"] == pytest.approx(3.0)


def test_crypto_trades_when_market_closed():
    client = _client(order={"id": "c1", "status": "accepted"}, price=50000.0)
    result = OrderExecutor(client).execute("BTC/USD", "BUY", 0.85, market_open=False)
    assert result["success"] is True
    kwargs = client.submit_order.call_args.kwargs
    assert kwargs["time_in_force"] == "gtc"
    assert kwargs["asset_class"] == "crypto"


def test_stock_blocked_when_market_closed():
    client = _client()
    result = OrderExecutor(client).execute("AAPL", "BUY", 0.9, market_open=False)
    assert result["blocked"] is True
    assert result["reason"] == "market_closed"
    client.submit_order.assert_not_called()
    client.get_positions.assert_not_called()
    act = db.list_activity()[0]
    assert act["type"] == "info"
    assert act["message"] == "Trade blocked: BUY AAPL - Stock market closed"


def test_same_direction_blocked():
    client = _client(positions=[{"symbol": "AAPL", "qty": "3", "market_value": "450"}])
    result = OrderExecutor(client).execute("AAPL", "BUY", 0.9, market_open=True)
    assert result["blocked"] is True
    assert result["reason"] == "existing_position_same_direction"
    assert db.list_activity()[0]["details"]["existingPosition"]["side"] == "LONG"
    client.get_account.assert_not_called()


def test_risk_block_logs_risk_activity():
    client = _client(account=dict(ACCOUNT, last_equity="10500"))
    result = OrderExecutor(client).execute("AAPL", "BUY", 0.9, market_open=True)
    assert result["blocked"] is True
    assert "Daily loss" in result["reason"]
    assert db.list_activity()[0]["type"] == "risk"
    client.submit_order.assert_not_called()


def test_hold_is_not_tradable():
    client = _client()
    result = OrderExecutor(client).execute("AAPL", "HOLD", 0.9, market_open=True)
    assert result["blocked"] is True
    client.get_positions.assert_not_called()


def test_broker_error_is_reported_not_raised():
    client = _client()
    client.get_positions.side_effect = AlpacaAPIError("HTTP 500", status_code=500)
    result = OrderExecutor(client).execute("AAPL", "BUY", 0.9, session_id="s9", market_open=True)
    assert result["success"] is False
    assert result["blocked"] is False
    assert "HTTP 500" in result["error"]
    act = db.list_activity()[0]
    assert act["type"] == "error"
    assert act["status"] == "failed"


def test_closing_sell_records_pnl_and_learning():
    positions = [{"symbol": "AAPL", "qty": "5", "avg_entry_price": "100", "market_value": "550"}]
    order = {"id": "s1", "status": "filled", "filled_qty": "2", "filled_avg_price": "110"}
    client = _client(positions=positions, order=order, price=110.0)
    analysis = {"indicators": {"rsi": 75.0, "signal_strength": 3}, "marketCondition": "RANGING"}

    result = OrderExecutor(client).execute("AAPL", "SELL", 0.85, market_open=True, analysis=analysis)

    assert result["success"] is True
    trade = db.get_trade(result["trade_id"])
    assert trade["side"] == "sell"
    assert trade["pnl"] == pytest.approx(20.0)
    records = db.list_learning_records()
    assert len(records) == 1
    assert records[0]["outcome"] == "profit"
    assert records[0]["trade_id"] == result["trade_id"]
    assert records[0]["learned_patterns"]["rsi_zone"] == "overbought"


def test_realized_pnl_for_short_cover():
    pos = {"symbol": "TSLA", "qty": "-4", "avg_entry_price": "200"}
    assert executor._realized_pnl(pos, "buy", 190.0, 4.0) == pytest.approx(40.0)
    # opening a position realizes nothing
    assert executor._realized_pnl(None, "buy", 190.0, 4.0) is None
    assert executor._realized_pnl({"symbol": "TSLA", "qty": "4", "avg_entry_price": "200"}, "buy", 190.0, 1.0) is None


SMALL_ACCOUNT = {"equity": "5000", "buying_power": "5000", "portfolio_value": "5000", "last_equity": "5000",
                 "daytrade_count": 0}
OLD_LONG = [{"symbol": "AAPL", "qty": "5", "avg_entry_price": "100", "market_value": "550"}]


def test_partial_close_of_older_long_is_not_a_day_trade():
    # long opened on an earlier day, partly sold this morning
    db.save_trade("AAPL", "sell", 2, 110.0, 220.0, "FILLED")
    order = {"id": "s2", "status": "filled", "filled_qty": "2", "filled_avg_price": "110"}
    client = _client(positions=OLD_LONG, account=SMALL_ACCOUNT, order=order, price=110.0)

    result = OrderExecutor(client).execute("AAPL", "SELL", 0.85, market_open=True)

    assert result["success"] is True
    client.submit_order.assert_called_once()


def test_closing_long_bought_today_is_blocked_for_small_account():
    db.save_trade("AAPL", "buy", 5, 100.0, 500.0, "FILLED")
    client = _client(positions=OLD_LONG, account=SMALL_ACCOUNT, price=110.0)

    result = OrderExecutor(client).execute("AAPL", "SELL", 0.85, market_open=True)

    assert result["blocked"] is True
    assert "PDT" in result["reason"]
    client.submit_order.assert_not_called()


def test_covering_short_only_counts_same_day_sells():
    short = [{"symbol": "TSLA", "qty": "-1", "avg_entry_price": "200", "market_value": "-100"}]
    db.save_trade("TSLA", "buy", 1, 190.0, 190.0, "FILLED")
    client = _client(positions=short, account=SMALL_ACCOUNT, price=190.0,
                     order={"id": "b1", "status": "filled", "filled_qty": "1", "filled_avg_price": "190"})
    assert OrderExecutor(client).execute("TSLA", "BUY", 0.85, market_open=True)["success"] is True

    db.save_trade("TSLA", "sell", 4, 200.0, 800.0, "FILLED")
    client = _client(positions=short, account=SMALL_ACCOUNT, price=190.0)
    result = OrderExecutor(client).execute("TSLA", "BUY", 0.85, market_open=True)
    assert result["blocked"] is True
    assert "PDT" in result["reason"]
