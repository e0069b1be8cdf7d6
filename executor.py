# executor.py
"""
Order Executor - the only place orders are sent to Alpaca.

The bot loop hands over (symbol, signal, confidence); the executor gates the
order through the risk engine, sizes it by confidence, submits a market order
by dollar notional and records the trade. It reports back with a result dict
and never raises to the caller.
"""

import logging
import math
import os
from typing import Any, Dict, Optional

import db
import learning
import risk_engine
from activity_feed import log_activity
from risk_engine import RiskConfig, RiskContext
from symbol_classifier import asset_class_for, is_crypto_symbol, normalize_symbol, time_in_force_for

logger = logging.getLogger(__name__)

MIN_ALLOCATION = 0.02
MAX_ALLOCATION = 0.10
CONFIDENCE_FLOOR = 0.75
CONFIDENCE_SPAN = 0.20

SIZING_MODES = ("equity_pct", "portfolio_pct")
ORDER_SIZING_MODE = os.getenv("ORDER_SIZING_MODE", "equity_pct").strip().lower()


def _f(x: Any, default: float = 0.0) -> float:
    try:
        return float(x)
    except (TypeError, ValueError):
        return default


def allocation_for_confidence(confidence: float) -> float:
    """2% of capital at 75% confidence rising linearly to 10% at 95%."""
    scale = (confidence - CONFIDENCE_FLOOR) / CONFIDENCE_SPAN
    scale = max(0.0, min(1.0, scale))
    return MIN_ALLOCATION + (MAX_ALLOCATION - MIN_ALLOCATION) * scale


def compute_position_size(
    equity: float,
    buying_power: float,
    confidence: float,
    mode: str = "equity_pct",
    portfolio_value: Optional[float] = None,
    config: Optional[RiskConfig] = None,
) -> float:
    """
    Whole-dollar notional for an order.
    equity_pct sizes off account equity, portfolio_pct off portfolio value.
    The result never exceeds MAX_ORDER_VALUE or buffered buying power.
    """
    if mode not in SIZING_MODES:
        raise ValueError(f"Unknown sizing mode: {mode}")
    cfg = config or RiskConfig()
    base = equity
    if mode == "portfolio_pct" and portfolio_value:
        base = portfolio_value
    notional = base * allocation_for_confidence(confidence)
    cap = min(cfg.MAX_ORDER_VALUE, buying_power * (1.0 - cfg.BUYING_POWER_BUFFER))
    notional = min(notional, cap)
    return float(max(0, math.floor(notional)))


def _daily_pnl_pct(account: Dict[str, Any]) -> Optional[float]:
    equity = _f(account.get("equity"))
    last_equity = _f(account.get("last_equity"))
    if last_equity <= 0:
        return None
    return (equity - last_equity) / last_equity


def _realized_pnl(closing: Optional[Dict[str, Any]], side: str, price: float, quantity: float) -> Optional[float]:
    """P&L of the part of an opposite position this order closes. None when nothing is closed."""
    pos_side = risk_engine.position_side(closing)
    if not closing or price <= 0 or quantity <= 0:
        return None
    entry = _f(closing.get("avg_entry_price"))
    if entry <= 0:
        return None
    held = abs(_f(closing.get("qty")))
    closed_qty = min(quantity, held) if held > 0 else quantity
    if side == "sell" and pos_side == "LONG":
        return round((price - entry) * closed_qty, 2)
    if side == "buy" and pos_side == "SHORT":
        return round((entry - price) * closed_qty, 2)
    return None


class OrderExecutor:
    def __init__(self, client: Any, config: Optional[RiskConfig] = None, sizing_mode: Optional[str] = None):
        self.client = client
        self.config = config or RiskConfig()
        self.sizing_mode = sizing_mode or (ORDER_SIZING_MODE if ORDER_SIZING_MODE in SIZING_MODES else "equity_pct")

    def _blocked(self, ctx: RiskContext, signal: str, confidence: float, session_id: Optional[str],
                 reason: str, activity_type: str = "info", extra: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        details = {
            "reason": reason,
            "assetType": "crypto" if ctx.is_crypto else "stock",
            "signal": signal,
            "confidence": confidence,
            "sessionId": session_id,
        }
        details.update(extra or {})
        label = "Stock market closed" if reason == risk_engine.REASON_MARKET_CLOSED else reason
        log_activity(
            activity_type,
            f"Trade blocked: {signal} {ctx.symbol} - {label}",
            status="completed",
            symbol=ctx.symbol,
            details=details,
            session_id=session_id,
        )
        return {"success": False, "blocked": True, "reason": reason, "order": None, "error": None}

    def execute(self, symbol: str, signal: str, confidence: float, session_id: Optional[str] = None,
                market_open: bool = False, analysis: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """
        Returns {"success", "blocked", "reason", "order", "error", "trade_id"?}.
        """
        sym = normalize_symbol(symbol)
        side = str(signal).lower()
        if side not in ("buy", "sell"):
            return {"success": False, "blocked": True, "reason": f"not_tradable_signal:{signal}", "order": None, "error": None}

        ctx = RiskContext(symbol=sym, side=side, notional=0.0, market_open=market_open, config=self.config)
        try:
            ok, reason = risk_engine.check_market_hours(ctx)
            if not ok:
                return self._blocked(ctx, signal, confidence, session_id, reason, extra={
                    "note": "Stocks only trade during market hours (Mon-Fri 9:30 AM - 4:00 PM ET)",
                })

            ctx.positions = self.client.get_positions() or []
            ok, reason = risk_engine.check_existing_position(ctx)
            if not ok:
                existing = risk_engine.find_position(ctx.positions, sym) or {}
                return self._blocked(ctx, signal, confidence, session_id, reason, extra={
                    "existingPosition": {
                        "side": risk_engine.position_side(existing),
                        "qty": existing.get("qty"),
                        "marketValue": existing.get("market_value"),
                    },
                })

            ctx.account = self.client.get_account() or {}
            ctx.notional = compute_position_size(
                equity=ctx.equity,
                buying_power=ctx.buying_power,
                confidence=confidence,
                mode=self.sizing_mode,
                portfolio_value=_f(ctx.account.get("portfolio_value")),
                config=self.config,
            )
            ctx.orders_today = db.count_trades_today()
            ctx.daily_pnl_pct = _daily_pnl_pct(ctx.account)
            # a same-day close only counts against trades on the side that opened the position
            held_side = risk_engine.opening_side(risk_engine.find_position(ctx.positions, sym))
            ctx.opened_today = db.symbols_traded_today(side=held_side) if held_side else []

            ok, reason = risk_engine.evaluate(ctx)
            if not ok:
                return self._blocked(ctx, signal, confidence, session_id, reason, activity_type="risk", extra={
                    "notional": ctx.notional,
                    "equity": ctx.equity,
                    "buyingPower": ctx.buying_power,
                })

            logger.info(
                "Executing %s %s %s: allocation=%.1f%% notional=$%.0f confidence=%.1f%%",
                signal, "CRYPTO" if ctx.is_crypto else "STOCK", sym,
                allocation_for_confidence(confidence) * 100, ctx.notional, confidence * 100,
            )
            est_price = self.client.get_latest_price(sym)
            order = self.client.submit_order(
                sym,
                side,
                notional=ctx.notional,
                order_type="market",
                time_in_force=time_in_force_for(sym),
                asset_class=asset_class_for(sym),
            ) or {}
            closing = risk_engine.find_position(ctx.positions, sym)
            return self._record_fill(sym, signal, side, confidence, session_id, ctx.notional, est_price, order,
                                     analysis, closing)
        except Exception as e:
            logger.exception("Trade execution error %s %s", signal, sym)
            log_activity(
                "error",
                f"Trade execution error: {e}",
                status="failed",
                symbol=sym,
                details={"error": str(e), "symbol": sym, "signal": signal, "sessionId": session_id},
                session_id=session_id,
            )
            return {"success": False, "blocked": False, "reason": "error", "order": None, "error": str(e)}

    def _record_fill(self, sym: str, signal: str, side: str, confidence: float, session_id: Optional[str],
                     notional: float, est_price: Optional[float], order: Dict[str, Any],
                     analysis: Optional[Dict[str, Any]],
                     closing: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        order_id = order.get("id") or order.get("client_order_id")
        order_status = str(order.get("status") or "").lower()
        filled_qty = _f(order.get("filled_qty"))
        filled_price = _f(order.get("filled_avg_price"))
        price = filled_price if filled_price > 0 else _f(est_price)
        if filled_qty > 0:
            quantity = filled_qty
        elif price > 0:
            quantity = notional / price
        else:
            quantity = 0.0
        value = quantity * price if price > 0 else notional
        status = "FILLED" if order_status == "filled" else "PENDING"
        pnl = _realized_pnl(closing, side, price, quantity)

        log_activity(
            "trade",
            f"{signal} {quantity:.6g} {sym} (${notional:,.0f}) - Order placed via Alpaca (ID: {order_id})",
            status="completed",
            symbol=sym,
            details={
                "orderId": order_id,
                "quantity": quantity,
                "notional": notional,
                "side": signal,
                "confidence": confidence,
                "sessionId": session_id,
                "orderStatus": order_status,
                "estimatedValue": value,
                "price": price,
                "timeInForce": order.get("time_in_force"),
                "assetClass": "crypto" if is_crypto_symbol(sym) else "us_equity",
            },
            session_id=session_id,
        )
        trade_id = db.save_trade(
            symbol=sym,
            side=side,
            quantity=quantity,
            price=price,
            value=value,
            status=status,
            order_id=order_id,
            ai_confidence=confidence,
            strategy=(analysis or {}).get("strategy") or "technical_composite",
            session_id=session_id,
            pnl=pnl,
        )
        db.increment_bot_metric("trades_executed")
        if pnl is not None:
            analysis = analysis or {}
            learning.record_outcome(
                sym,
                pnl,
                confidence,
                indicators=analysis.get("indicators"),
                market_condition=analysis.get("marketCondition"),
                trade_id=trade_id,
            )
        logger.info("%s order placed: %s %s @ %.4f (order %s, %s)", signal, quantity, sym, price, order_id, status)
        return {"success": True, "blocked": False, "reason": "", "order": order, "error": None, "trade_id": trade_id}
