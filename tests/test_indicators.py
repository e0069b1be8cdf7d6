"""
Unit tests for the indicator library (pure functions, no network).
"""
import os
import sys

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import indicators


def test_sma():
    assert indicators.sma([1, 2, 3, 4, 5], 3) == pytest.approx(4.0)
    # short series falls back to the last price
    assert indicators.sma([7, 8], 20) == 8
    assert indicators.sma([], 5) == 0.0


def test_ema_seeded_at_window_start():
    # k = 0.5: 1 -> 1.5 -> 2.25
    assert indicators.ema([1, 2, 3], 3) == pytest.approx(2.25)
    assert indicators.ema([5, 1, 2, 3], 3) == pytest.approx(2.25)
    assert indicators.ema([4], 3) == 4


def test_rsi():
    assert indicators.rsi([1, 2, 3], 14) == 50.0
    rising = [float(i) for i in range(20)]
    assert indicators.rsi(rising, 14) == 100.0
    zigzag = [10.0, 11.0] * 7 + [10.0]
    assert indicators.rsi(zigzag, 14) == pytest.approx(50.0)
    falling = [float(20 - i) for i in range(20)]
    assert indicators.rsi(falling, 14) == pytest.approx(0.0)


def test_macd_signal_is_ninety_percent():
    flat = [100.0] * 40
    m = indicators.macd(flat)
    assert m["macd_line"] == pytest.approx(0.0)
    assert m["histogram"] == pytest.approx(0.0)

    rising = [100.0 + i for i in range(40)]
    m = indicators.macd(rising)
    assert m["macd_line"] > 0
    assert m["signal_line"] == pytest.approx(m["macd_line"] * 0.9)
    assert m["histogram"] == pytest.approx(m["macd_line"] * 0.1)


def test_bollinger_bands():
    bb = indicators.bollinger_bands([1.0, 2.0, 3.0, 4.0], 4, 2.0)
    std = 1.25 ** 0.5
    assert bb["middle"] == pytest.approx(2.5)
    assert bb["upper"] == pytest.approx(2.5 + 2 * std)
    assert bb["lower"] == pytest.approx(2.5 - 2 * std)

    flat = indicators.bollinger_bands([50.0] * 30, 20, 2.0)
    assert flat["upper"] == flat["middle"] == flat["lower"] == 50.0


def test_atr():
    highs = [11.0] * 15
    lows = [9.0] * 15
    closes = [10.0] * 15
    assert indicators.atr(highs, lows, closes, 14) == pytest.approx(2.0)
    assert indicators.atr(highs[:10], lows[:10], closes[:10], 14) == 0.0


def test_atr_uses_gap_from_previous_close():
    highs = [10.0] * 14 + [15.0]
    lows = [10.0] * 14 + [14.0]
    closes = [10.0] * 14 + [14.5]
    # last bar true range is 15 - 10 = 5, the rest are 0
    assert indicators.atr(highs, lows, closes, 14) == pytest.approx(5.0 / 14)


def test_volume_ratio():
    vols = [100.0] * 19 + [300.0]
    assert indicators.volume_ratio(vols, 20) == pytest.approx(300.0 / 110.0)
    # short history is still divided by the full period
    assert indicators.volume_ratio([100.0, 200.0], 20) == pytest.approx(200.0 / 15.0)
    assert indicators.volume_ratio([0.0] * 20, 20) is None
    assert indicators.volume_ratio([], 20) is None
