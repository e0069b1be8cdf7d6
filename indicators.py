"""
Technical indicators over plain price lists (oldest first).
Each function returns a neutral value instead of raising when the series is too short.
"""
import math
from typing import Dict, List, Optional, Sequence


def sma(prices: Sequence[float], period: int) -> float:
    if not prices:
        return 0.0
    if len(prices) < period:
        return float(prices[-1])
    window = prices[-period:]
    return sum(window) / period


def ema(prices: Sequence[float], period: int) -> float:
    """EMA seeded at the first value of the trailing window."""
    if not prices:
        return 0.0
    if len(prices) < period:
        return float(prices[-1])
    k = 2.0 / (period + 1)
    value = float(prices[-period])
    for p in prices[-period + 1:]:
        value = (p - value) * k + value
    return value


def rsi(prices: Sequence[float], period: int = 14) -> float:
    """Simple-average RSI over the last `period` changes."""
    if len(prices) < period + 1:
        return 50.0
    gains = 0.0
    losses = 0.0
    for i in range(len(prices) - period, len(prices)):
        change = prices[i] - prices[i - 1]
        if change > 0:
            gains += change
        else:
            losses -= change
    avg_gain = gains / period
    avg_loss = losses / period
    if avg_loss == 0:
        return 100.0
    rs = avg_gain / avg_loss
    return 100.0 - 100.0 / (1.0 + rs)


def macd(prices: Sequence[float], fast: int = 12, slow: int = 26) -> Dict[str, float]:
    """
    MACD line from the fast/slow EMAs. The signal line is approximated as 90% of
    the MACD line rather than a 9-period EMA of the MACD history.
    """
    macd_line = ema(prices, fast) - ema(prices, slow)
    signal_line = macd_line * 0.9
    return {
        "macd_line": macd_line,
        "signal_line": signal_line,
        "histogram": macd_line - signal_line,
    }


def bollinger_bands(prices: Sequence[float], period: int = 20, num_std: float = 2.0) -> Dict[str, float]:
    middle = sma(prices, period)
    window = list(prices[-period:])
    if not window:
        return {"upper": 0.0, "middle": 0.0, "lower": 0.0}
    # population variance over the window, divided by the nominal period
    variance = sum((p - middle) ** 2 for p in window) / period
    std = math.sqrt(variance)
    return {
        "upper": middle + std * num_std,
        "middle": middle,
        "lower": middle - std * num_std,
    }


def atr(highs: Sequence[float], lows: Sequence[float], closes: Sequence[float], period: int = 14) -> float:
    """Mean true range of the last `period` bars."""
    if len(highs) < period + 1:
        return 0.0
    trs: List[float] = []
    for i in range(len(highs) - period, len(highs)):
        prev_close = closes[i - 1]
        trs.append(max(
            highs[i] - lows[i],
            abs(highs[i] - prev_close),
            abs(lows[i] - prev_close),
        ))
    return sum(trs) / len(trs)


def volume_ratio(volumes: Sequence[float], period: int = 20) -> Optional[float]:
    """
    Last volume relative to the trailing average (always divided by `period`).
    None when there is no volume to compare against.
    """
    if not volumes:
        return None
    avg = sum(volumes[-period:]) / period
    if avg <= 0:
        return None
    return volumes[-1] / avg
