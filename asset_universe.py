"""
Tradable symbol universe, fetched from Alpaca's asset listing and cached (24h by default).
A failed fetch serves a hardcoded list of liquid names and leaves the cache empty so the next call retries.
"""
import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from env_utils import env_int

logger = logging.getLogger(__name__)

ASSET_CACHE_TTL_SEC = env_int("ASSET_CACHE_TTL_SEC", 24 * 60 * 60)
MAX_STOCK_SYMBOLS = 500
CRYPTO_QUOTE_SUFFIXES = ("/USD", "/USDT", "/USDC")

FALLBACK_STOCKS = [
    # Mega cap tech
    "AAPL", "MSFT", "GOOGL", "AMZN", "NVDA", "META", "TSLA", "NFLX",
    # Large cap growth
    "AMD", "INTC", "CRM", "ADBE", "ORCL", "CSCO", "AVGO", "QCOM", "TXN",
    # Index ETFs
    "SPY", "QQQ", "IWM", "DIA", "VOO", "VTI",
    # Sector leaders
    "JPM", "BAC", "WFC", "GS", "MS", "V", "MA", "PYPL", "SQ",
    "JNJ", "PFE", "UNH", "ABBV", "TMO", "DHR", "BMY", "AMGN",
    "XOM", "CVX", "COP", "SLB", "EOG",
    "WMT", "HD", "MCD", "NKE", "SBUX", "TGT", "COST",
    "DIS", "CMCSA", "T", "VZ", "TMUS",
    "BA", "CAT", "GE", "HON", "UPS", "FDX",
    # High growth
    "SNOW", "PLTR", "RBLX", "COIN", "RIVN", "LCID", "SOFI", "HOOD",
    "UBER", "LYFT", "ABNB", "DASH", "DKNG",
    # Semiconductors
    "ASML", "AMAT", "LRCX", "KLAC", "MU", "MRVL", "NXPI",
    # Cloud / SaaS
    "NOW", "WDAY", "TEAM", "ZS", "CRWD", "DDOG", "MDB", "NET", "OKTA",
    # EV / clean energy
    "NIO", "XPEV", "LI", "ENPH", "SEDG", "FSLR", "PLUG",
    # Biotech
    "MRNA", "BNTX", "REGN", "VRTX", "GILD", "BIIB",
    # Retail / consumer
    "SHOP", "ETSY", "EBAY", "CHWY", "PINS", "SNAP",
    # Fintech
    "AFRM", "UPST", "LC",
    # Sector ETFs
    "XLK", "XLF", "XLV", "XLE", "XLI", "XLY", "XLP", "XLU", "XLRE",
]

FALLBACK_CRYPTO = [
    "BTC/USD", "ETH/USD", "DOGE/USD", "SHIB/USD", "ADA/USD", "SOL/USD",
    "MATIC/USD", "AVAX/USD", "LINK/USD", "UNI/USD", "DOT/USD", "LTC/USD",
    "BCH/USD", "XLM/USD", "ATOM/USD", "ALGO/USD", "FTM/USD", "SAND/USD",
    "MANA/USD", "AXS/USD", "GALA/USD", "APE/USD", "CRV/USD", "SUSHI/USD",
    "AAVE/USD", "COMP/USD", "MKR/USD", "SNX/USD", "BAT/USD", "ENJ/USD",
]


def _is_active_tradable(asset: Dict[str, Any]) -> bool:
    return bool(asset.get("tradable")) and asset.get("status") == "active"


def filter_stock_assets(assets: List[Dict[str, Any]], max_symbols: int = MAX_STOCK_SYMBOLS) -> List[str]:
    """Liquid, fractionable, plain-ticker equities."""
    out: List[str] = []
    for a in assets:
        sym = str(a.get("symbol") or "")
        if not sym or not _is_active_tradable(a):
            continue
        if not (a.get("fractionable") and a.get("easy_to_borrow") and a.get("marginable")):
            continue
        if "/" in sym or "-" in sym or len(sym) > 5:
            continue
        out.append(sym)
    return out[:max_symbols]


def filter_crypto_assets(assets: List[Dict[str, Any]]) -> List[str]:
    """USD / USDT / USDC quoted pairs only."""
    out: List[str] = []
    for a in assets:
        sym = str(a.get("symbol") or "")
        if not _is_active_tradable(a):
            continue
        if "/" in sym and sym.endswith(CRYPTO_QUOTE_SUFFIXES):
            out.append(sym)
    return out


@dataclass
class _CacheEntry:
    symbols: List[str]
    fetched_at: float


class AssetUniverse:
    """Per-class symbol cache in front of AlpacaClient.list_assets."""

    def __init__(self, client: Any, ttl_sec: int = ASSET_CACHE_TTL_SEC, clock: Callable[[], float] = time.time):
        self.client = client
        self.ttl_sec = ttl_sec
        self._clock = clock
        self._cache: Dict[str, _CacheEntry] = {}
        self._lock = threading.Lock()

    def _cached(self, key: str) -> Optional[List[str]]:
        with self._lock:
            entry = self._cache.get(key)
            if entry and entry.symbols and (self._clock() - entry.fetched_at) < self.ttl_sec:
                return list(entry.symbols)
        return None

    def _load(self, key: str, asset_class: str, picker: Callable[[List[Dict[str, Any]]], List[str]],
              fallback: List[str]) -> List[str]:
        cached = self._cached(key)
        if cached is not None:
            return cached
        if self.client is None:
            logger.warning("No broker client, using fallback %s list", key)
            return list(fallback)
        try:
            assets = self.client.list_assets(asset_class=asset_class, status="active")
        except Exception as e:
            logger.warning("Failed to fetch %s assets, using fallback list: %s", key, e)
            return list(fallback)
        symbols = picker(assets or [])
        if not symbols:
            logger.warning("Asset listing returned no usable %s symbols, using fallback list", key)
            return list(fallback)
        with self._lock:
            self._cache[key] = _CacheEntry(symbols=list(symbols), fetched_at=self._clock())
        logger.info("Loaded %s tradable %s assets from Alpaca", len(symbols), key)
        return list(symbols)

    def stocks(self) -> List[str]:
        return self._load("stock", "us_equity", filter_stock_assets, FALLBACK_STOCKS)

    def crypto(self) -> List[str]:
        return self._load("crypto", "crypto", filter_crypto_assets, FALLBACK_CRYPTO)

    def symbol_pool(self, market_open: bool) -> List[str]:
        """Stocks only join the pool while the equities session is open."""
        crypto = self.crypto()
        if not market_open:
            return crypto
        return self.stocks() + crypto

    def invalidate(self) -> None:
        with self._lock:
            self._cache.clear()

    def stats(self) -> Dict[str, Any]:
        with self._lock:
            return {
                key: {"count": len(e.symbols), "age_sec": int(self._clock() - e.fetched_at)}
                for key, e in self._cache.items()
            }
