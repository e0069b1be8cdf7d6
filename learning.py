"""
Trade outcome learning records and performance statistics.
"""
import logging
from typing import Any, Dict, List, Optional, Sequence

import numpy as np

import db

logger = logging.getLogger(__name__)

BREAKEVEN_EPSILON = 0.01
# hourly bars, roughly 6.5 trading hours x 252 days
ANNUALIZATION = float(np.sqrt(252 * 6.5))


def classify_outcome(profit_loss: float) -> str:
    if abs(profit_loss) < BREAKEVEN_EPSILON:
        return "breakeven"
    return "profit" if profit_loss > 0 else "loss"


def record_outcome(
    symbol: str,
    profit_loss: float,
    confidence: float,
    indicators: Optional[Dict[str, Any]] = None,
    market_condition: Optional[str] = None,
    strategy: str = "technical_composite",
    trade_id: Optional[int] = None,
    sentiment_score: Optional[float] = None,
) -> int:
    """Persist the outcome of a closed trade. Returns the learning row id."""
    outcome = classify_outcome(profit_loss)
    ind = dict(indicators or {})
    patterns = {
        "rsi_zone": _rsi_zone(ind.get("rsi")),
        "signal_strength": ind.get("signal_strength"),
        "condition": market_condition,
    }
    row_id = db.add_learning_record(
        symbol=symbol,
        outcome=outcome,
        profit_loss=profit_loss,
        confidence_score=confidence,
        market_conditions={"condition": market_condition or "UNKNOWN"},
        technical_indicators=ind,
        strategy_used=strategy,
        trade_id=trade_id,
        sentiment_score=sentiment_score,
        learned_patterns=patterns,
    )
    logger.info("Learning record %s: %s %s pnl=%.2f conf=%.2f", row_id, symbol, outcome, profit_loss, confidence)
    return row_id


def _rsi_zone(rsi: Optional[float]) -> Optional[str]:
    if rsi is None:
        return None
    if rsi < 30:
        return "oversold"
    if rsi > 70:
        return "overbought"
    return "neutral"


def max_drawdown(pnls: Sequence[float]) -> float:
    """Largest peak-to-trough drop of the cumulative P&L curve (positive number)."""
    if len(pnls) == 0:
        return 0.0
    equity = np.cumsum(np.asarray(pnls, dtype=float))
    peaks = np.maximum.accumulate(np.concatenate(([0.0], equity)))[1:]
    return float(np.max(peaks - equity))


def performance_stats(pnls: Sequence[float]) -> Dict[str, Any]:
    """
    Summary of a P&L series (oldest first), matching the dashboard's strategy
    performance fields.
    """
    arr = np.asarray(list(pnls), dtype=float)
    total = int(arr.size)
    if total == 0:
        return {
            "totalTrades": 0, "winningTrades": 0, "losingTrades": 0, "winRate": 0.0,
            "avgWin": 0.0, "avgLoss": 0.0, "profitFactor": 0.0, "totalReturn": 0.0,
            "sharpeRatio": 0.0, "maxDrawdown": 0.0,
        }
    wins = arr[arr > 0]
    losses = arr[arr < 0]
    gross_win = float(wins.sum())
    gross_loss = float(-losses.sum())
    # None when there are no losses to divide by (JSON has no infinity)
    profit_factor = gross_win / gross_loss if gross_loss > 0 else (None if gross_win > 0 else 0.0)
    std = float(arr.std(ddof=1)) if total > 1 else 0.0
    sharpe = float(arr.mean() / std * ANNUALIZATION) if std > 0 else 0.0
    return {
        "totalTrades": total,
        "winningTrades": int(wins.size),
        "losingTrades": int(losses.size),
        "winRate": float(wins.size) / total,
        "avgWin": float(wins.mean()) if wins.size else 0.0,
        "avgLoss": float(losses.mean()) if losses.size else 0.0,
        "profitFactor": profit_factor,
        "totalReturn": float(arr.sum()),
        "sharpeRatio": sharpe,
        "maxDrawdown": max_drawdown(arr),
    }


def learning_summary(records: Optional[List[Dict[str, Any]]] = None) -> Dict[str, Any]:
    """Accuracy and pattern counts over learning records (newest first as stored)."""
    if records is None:
        records = db.list_learning_records(limit=1000)
    total = len(records)
    profitable = sum(1 for r in records if r.get("outcome") == "profit")
    strategies = {r.get("strategy_used") or "unknown" for r in records}
    by_symbol: Dict[str, int] = {}
    for r in records:
        by_symbol[r["symbol"]] = by_symbol.get(r["symbol"], 0) + 1
    confidences = np.asarray([float(r.get("confidence_score") or 0.0) for r in records], dtype=float)
    pnls = [float(r.get("profit_loss") or 0.0) for r in reversed(records)]
    return {
        "totalRecords": total,
        "accuracy": (profitable / total) if total else 0.0,
        "patternsIdentified": len(strategies) * 3 + total // 10 if total else 0,
        "avgConfidence": float(confidences.mean()) if total else 0.0,
        "bySymbol": by_symbol,
        "performance": performance_stats(pnls),
    }
