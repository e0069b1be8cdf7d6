"""
Composite technical score -> BUY / SELL / HOLD with a confidence in [0.50, 0.95].

Score starts at 50 and each rule nudges it; "strength" counts how many
independent rules agreed. A directional signal needs both an extreme score
and at least three agreeing rules.
"""
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

import indicators
from alpaca_client import Bar

logger = logging.getLogger(__name__)

MIN_BARS = 50
BAR_TIMEFRAME = "1Hour"
BAR_LIMIT = 100

HIGH_VOLATILITY = 0.08
LOW_VOLATILITY = 0.05

SIGNAL_BUY = "BUY"
SIGNAL_SELL = "SELL"
SIGNAL_HOLD = "HOLD"


@dataclass
class TechnicalAnalysis:
    signal: str
    confidence: float
    indicators: Dict[str, Any] = field(default_factory=dict)
    market_condition: str = "UNKNOWN"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "signal": self.signal,
            "confidence": self.confidence,
            "indicators": dict(self.indicators),
            "marketCondition": self.market_condition,
        }

    @classmethod
    def neutral(cls, market_condition: str) -> "TechnicalAnalysis":
        return cls(signal=SIGNAL_HOLD, confidence=0.50, indicators={}, market_condition=market_condition)


def _sign(x: float) -> int:
    return (x > 0) - (x < 0)


def score_indicators(price: float, rsi: float, macd: Dict[str, float], sma20: float, sma50: float,
                     ema12: float, ema26: float, bb: Dict[str, float], volume_ratio: Optional[float],
                     volatility: float) -> Dict[str, float]:
    """Apply the additive rules. Returns {"score", "strength"}."""
    score = 50.0
    strength = 0

    # RSI extremes
    if rsi < 30:
        score += 15
        strength += 1
    elif rsi > 70:
        score -= 15
        strength += 1

    # MACD momentum
    if macd["histogram"] > 0 and macd["macd_line"] > macd["signal_line"]:
        score += 15
        strength += 1
    elif macd["histogram"] < 0 and macd["macd_line"] < macd["signal_line"]:
        score -= 15
        strength += 1

    # EMA cross confirmed by price vs SMA20
    if ema12 > ema26 and price > sma20:
        score += 12
        strength += 1
    elif ema12 < ema26 and price < sma20:
        score -= 12
        strength += 1

    # Trend confirmation, score only
    if sma20 > sma50 and price > sma20:
        score += 10
    elif sma20 < sma50 and price < sma20:
        score -= 10

    # Band breaks confirmed by RSI
    if price < bb["lower"] and rsi < 40:
        score += 10
        strength += 1
    elif price > bb["upper"] and rsi > 60:
        score -= 10
        strength += 1

    # Volume confirms or weakens the current lean; no volume leaves the score alone
    if volume_ratio is not None:
        if volume_ratio > 1.5:
            score += _sign(score - 50) * 8
            strength += 1
        elif volume_ratio < 0.7:
            score -= abs(score - 50) * 0.3

    if volatility > HIGH_VOLATILITY:
        score = 50 + (score - 50) * 0.6
        strength = max(0, strength - 1)

    return {"score": score, "strength": strength}


def signal_from_score(score: float, strength: int) -> Dict[str, Any]:
    if score >= 70 and strength >= 3:
        return {"signal": SIGNAL_BUY, "confidence": min(0.95, 0.70 + (score - 70) / 100 + strength * 0.03)}
    if score <= 30 and strength >= 3:
        return {"signal": SIGNAL_SELL, "confidence": min(0.95, 0.70 + (30 - score) / 100 + strength * 0.03)}
    return {"signal": SIGNAL_HOLD, "confidence": 0.50 + abs(score - 50) / 200}


def market_condition(sma20: float, sma50: float, volatility: float) -> str:
    if sma20 > sma50 and volatility < LOW_VOLATILITY:
        return "UPTREND"
    if sma20 < sma50 and volatility < LOW_VOLATILITY:
        return "DOWNTREND"
    if volatility > HIGH_VOLATILITY:
        return "VOLATILE"
    return "RANGING"


def analyze_bars(bars: Sequence[Bar]) -> TechnicalAnalysis:
    """Score a bar series. Fewer than MIN_BARS bars gives a neutral HOLD."""
    if not bars or len(bars) < MIN_BARS:
        return TechnicalAnalysis.neutral("UNKNOWN")

    closes: List[float] = [b.close for b in bars]
    highs = [b.high for b in bars]
    lows = [b.low for b in bars]
    volumes = [b.volume for b in bars]
    price = closes[-1]

    rsi = indicators.rsi(closes, 14)
    macd = indicators.macd(closes)
    sma20 = indicators.sma(closes, 20)
    sma50 = indicators.sma(closes, 50)
    ema12 = indicators.ema(closes, 12)
    ema26 = indicators.ema(closes, 26)
    bb = indicators.bollinger_bands(closes, 20, 2)
    vol_ratio = indicators.volume_ratio(volumes, 20)
    atr = indicators.atr(highs, lows, closes, 14)
    volatility = atr / price if price > 0 else 0.0

    scored = score_indicators(price, rsi, macd, sma20, sma50, ema12, ema26, bb, vol_ratio, volatility)
    decision = signal_from_score(scored["score"], scored["strength"])

    return TechnicalAnalysis(
        signal=decision["signal"],
        confidence=decision["confidence"],
        indicators={
            "price": price,
            "rsi": rsi,
            "macd": macd["histogram"],
            "macd_line": macd["macd_line"],
            "signal_line": macd["signal_line"],
            "sma20": sma20,
            "sma50": sma50,
            "ema12": ema12,
            "ema26": ema26,
            "bb": bb,
            "atr": atr,
            "volume_ratio": vol_ratio,
            "volatility": volatility,
            "score": scored["score"],
            "signal_strength": scored["strength"],
        },
        market_condition=market_condition(sma20, sma50, volatility),
    )


class TechnicalAnalyzer:
    """Fetches bars from the broker and scores them."""

    def __init__(self, client: Any, timeframe: str = BAR_TIMEFRAME, limit: int = BAR_LIMIT):
        self.client = client
        self.timeframe = timeframe
        self.limit = limit

    def analyze(self, symbol: str) -> TechnicalAnalysis:
        try:
            bars = self.client.get_bars(symbol, timeframe=self.timeframe, limit=self.limit)
            result = analyze_bars(bars)
        except Exception as e:
            logger.warning("Technical analysis failed for %s: %s", symbol, e)
            return TechnicalAnalysis.neutral("ERROR")

        ind = result.indicators
        if ind:
            logger.info(
                "Analysis %s: RSI=%.1f MACD=%.4f score=%.1f price=%.2f vol_ratio=%s volatility=%.2f%% "
                "-> %s %.1f%% (%s)",
                symbol, ind["rsi"], ind["macd"], ind["score"], ind["price"],
                "n/a" if ind["volume_ratio"] is None else f"{ind['volume_ratio']:.2f}",
                ind["volatility"] * 100, result.signal, result.confidence * 100, result.market_condition,
            )
        else:
            logger.info("Analysis %s: not enough bars, holding", symbol)
        return result
