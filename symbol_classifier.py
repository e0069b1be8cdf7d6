"""
Symbol Classification Module

Classifies trading symbols as 'stock' or 'crypto' and derives the order
routing fields Alpaca needs for each class.

Rules:
- Symbols with '/' are crypto pairs (e.g., "BTC/USD", "ETH/USDT")
- Dash-quoted pairs are crypto (e.g., "BTC-USD") and normalize to "BTC/USD"
- Short symbols (< 6 chars) without a separator are stocks (e.g., "AAPL", "INTC")
- Long concatenated pairs ending in a USD quote are crypto (e.g., "BTCUSD")
"""

from typing import Literal

CRYPTO_QUOTES = ("USDT", "USDC", "USD")


def classify_symbol(symbol: str) -> Literal["stock", "crypto"]:
    """
    Classify a symbol as 'stock' or 'crypto'.

    Examples:
        >>> classify_symbol("INTC")
        'stock'
        >>> classify_symbol("BTC/USD")
        'crypto'
        >>> classify_symbol("ETH-USD")
        'crypto'
        >>> classify_symbol("BTCUSD")
        'crypto'
    """
    if not symbol:
        return "stock"

    s = symbol.strip().upper()

    if "/" in s:
        return "crypto"

    if "-" in s:
        quote = s.rsplit("-", 1)[-1]
        return "crypto" if quote in CRYPTO_QUOTES else "stock"

    if len(s) < 6:
        return "stock"

    return "crypto" if s.endswith(CRYPTO_QUOTES) else "stock"


def is_stock_symbol(symbol: str) -> bool:
    return classify_symbol(symbol) == "stock"


def is_crypto_symbol(symbol: str) -> bool:
    return classify_symbol(symbol) == "crypto"


def normalize_symbol(symbol: str) -> str:
    """
    Upper-case a symbol and put crypto pairs into Alpaca's BASE/QUOTE form.

        >>> normalize_symbol("btc-usd")
        'BTC/USD'
        >>> normalize_symbol("ETHUSDT")
        'ETH/USDT'
        >>> normalize_symbol("aapl")
        'AAPL'
    """
    s = (symbol or "").strip().upper()
    if classify_symbol(s) != "crypto" or "/" in s:
        return s
    if "-" in s:
        base, quote = s.rsplit("-", 1)
        return f"{base}/{quote}"
    for quote in CRYPTO_QUOTES:
        if s.endswith(quote) and len(s) > len(quote):
            return f"{s[:-len(quote)]}/{quote}"
    return s


def asset_class_for(symbol: str) -> Literal["crypto", "us_equity"]:
    """Alpaca asset_class routing field for an order."""
    return "crypto" if is_crypto_symbol(symbol) else "us_equity"


def time_in_force_for(symbol: str) -> Literal["gtc", "day"]:
    """Crypto trades around the clock (GTC); equities use DAY orders."""
    return "gtc" if is_crypto_symbol(symbol) else "day"
