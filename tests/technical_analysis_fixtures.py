"""Shared TechnicalAnalysis builders for the bot and API tests."""
from technical_analyzer import TechnicalAnalysis


def analysis(signal="BUY", confidence=0.9, market_condition="UPTREND", rsi=25.0):
    return TechnicalAnalysis(
        signal=signal,
        confidence=confidence,
        indicators={"rsi": rsi, "volatility": 0.02, "score": 80.0, "signal_strength": 4},
        market_condition=market_condition,
    )
