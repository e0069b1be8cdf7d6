"""
Alpaca Trading Client
Wrapper for the Alpaca Markets REST API: account, clock, positions, orders,
asset listing and market data for both US equities and crypto pairs.
"""

import logging
import time
from dataclasses import dataclass, asdict
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import requests

from alpaca_rate_limiter import AlpacaRateLimiter, alpaca_rate_limiter
from env_utils import env_str
from symbol_classifier import asset_class_for, is_crypto_symbol, normalize_symbol, time_in_force_for

logger = logging.getLogger(__name__)

PAPER_URL = "https://paper-api.alpaca.markets"
LIVE_URL = "https://api.alpaca.markets"
DATA_URL = "https://data.alpaca.markets"

REQUEST_TIMEOUT_SEC = 15
MAX_RETRIES = 3

# How far back to ask for bars so `limit` bars exist even across weekends and holidays.
_LOOKBACK_DAYS = {
    "1Min": 5,
    "5Min": 10,
    "15Min": 20,
    "1Hour": 30,
    "1Day": 400,
    "1Week": 2000,
}


class AlpacaAPIError(Exception):
    """Error returned by (or while talking to) the Alpaca API."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


@dataclass
class Bar:
    timestamp: str
    open: float
    high: float
    low: float
    close: float
    volume: float

    @classmethod
    def from_alpaca(cls, raw: Dict[str, Any]) -> "Bar":
        return cls(
            timestamp=str(raw.get("t", "")),
            open=float(raw["o"]),
            high=float(raw["h"]),
            low=float(raw["l"]),
            close=float(raw["c"]),
            volume=float(raw.get("v") or 0.0),
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class AlpacaClient:
    """
    Alpaca API wrapper. Paper trading by default.

    Documentation: https://docs.alpaca.markets/docs
    """

    def __init__(self, mode: str = "paper", rate_limiter: Optional[AlpacaRateLimiter] = None):
        self.mode = mode
        if mode == "paper":
            self.api_key = env_str("ALPACA_API_KEY_PAPER") or env_str("APCA_API_KEY_ID", "")
            self.secret_key = env_str("ALPACA_API_SECRET_PAPER") or env_str("APCA_API_SECRET_KEY", "")
            default_url = PAPER_URL
        else:
            self.api_key = env_str("ALPACA_API_KEY_LIVE", "")
            self.secret_key = env_str("ALPACA_API_SECRET_LIVE", "")
            default_url = LIVE_URL
        self.base_url = (env_str("ALPACA_BASE_URL") or default_url).rstrip("/")
        self.data_url = (env_str("ALPACA_DATA_URL") or DATA_URL).rstrip("/")

        if not self.api_key or not self.secret_key:
            raise ValueError(f"Alpaca {mode} API keys not found in environment variables")

        # iex is the free feed; sip needs a subscription
        self.data_feed = (env_str("ALPACA_DATA_FEED", "") or "").lower()
        self.rate_limiter = rate_limiter or alpaca_rate_limiter

        self.session = requests.Session()
        self.session.headers.update({
            "APCA-API-KEY-ID": self.api_key,
            "APCA-API-SECRET-KEY": self.secret_key,
            "Content-Type": "application/json",
        })

    def _request(self, method: str, endpoint: str, params: Optional[Dict] = None,
                 data: Optional[Dict] = None, base_url: Optional[str] = None) -> Any:
        """
        Authenticated request. Retries connection errors with exponential backoff
        and retries once after a 429 once the limiter's backoff has elapsed.
        """
        url = f"{base_url or self.base_url}{endpoint}"
        request_name = endpoint.rstrip("/").split("/")[-1] or "request"
        self.rate_limiter.acquire(request_name=request_name)

        resp = None
        for attempt in range(MAX_RETRIES):
            try:
                resp = self.session.request(method, url, params=params, json=data, timeout=REQUEST_TIMEOUT_SEC)
                break
            except (requests.exceptions.ConnectionError, requests.exceptions.Timeout) as e:
                if attempt < MAX_RETRIES - 1:
                    delay = min(2 ** attempt, 8)
                    logger.warning("Alpaca %s %s failed (%s), retry %s in %ss", method, endpoint, e, attempt + 1, delay)
                    time.sleep(delay)
                    continue
                raise AlpacaAPIError(f"Connection failed after {MAX_RETRIES} attempts: {e}") from e

        if resp.status_code == 429:
            self.rate_limiter.handle_429_error()
            self.rate_limiter.acquire(request_name=f"{request_name}_retry")
            try:
                resp = self.session.request(method, url, params=params, json=data, timeout=REQUEST_TIMEOUT_SEC)
            except (requests.exceptions.ConnectionError, requests.exceptions.Timeout) as e:
                raise AlpacaAPIError(f"Retry after 429 failed: {e}", status_code=429) from e

        if resp.status_code >= 400:
            raise AlpacaAPIError(self._error_message(resp, url), status_code=resp.status_code)

        self.rate_limiter.reset_backoff()
        if not resp.content:
            return {}
        try:
            return resp.json()
        except ValueError as e:
            raise AlpacaAPIError(f"Invalid JSON from {url}", status_code=resp.status_code) from e

    @staticmethod
    def _error_message(resp: Any, url: str) -> str:
        msg = f"Alpaca API error: HTTP {resp.status_code}"
        try:
            body = resp.json()
            api_msg = body.get("message", "") or body.get("error", "")
        except (ValueError, AttributeError):
            api_msg = getattr(resp, "text", "") or ""
        if resp.status_code == 404:
            msg = f"Resource not found (404): {url}"
        if api_msg:
            msg += f" - {api_msg}"
        return msg

    # =========================================================================
    # ACCOUNT & CLOCK
    # =========================================================================

    def get_account(self) -> Dict[str, Any]:
        """
        Account information. Numeric fields come back as strings:
            {'equity': '10000.00', 'buying_power': '20000.00', 'portfolio_value': '10000.00',
             'trading_blocked': False, 'account_blocked': False, 'daytrade_count': 0, ...}
        """
        return self._request("GET", "/v2/account")

    def get_clock(self) -> Dict[str, Any]:
        """{'timestamp': ..., 'is_open': True, 'next_open': ..., 'next_close': ...}"""
        return self._request("GET", "/v2/clock")

    # =========================================================================
    # POSITIONS & ORDERS
    # =========================================================================

    def get_positions(self) -> List[Dict[str, Any]]:
        return self._request("GET", "/v2/positions") or []

    def get_position(self, symbol: str) -> Optional[Dict[str, Any]]:
        """Position for one symbol, or None when flat."""
        # position endpoints take crypto pairs without the slash
        path_symbol = normalize_symbol(symbol).replace("/", "")
        try:
            return self._request("GET", f"/v2/positions/{path_symbol}")
        except AlpacaAPIError as e:
            if e.status_code == 404:
                return None
            raise

    def get_orders(self, status: str = "open", limit: int = 50, after: Optional[str] = None) -> List[Dict[str, Any]]:
        """
        Args:
            status: "open", "closed", "all"
            after: ISO timestamp, only orders submitted after it
        """
        params: Dict[str, Any] = {"status": status, "limit": limit}
        if after:
            params["after"] = after
        return self._request("GET", "/v2/orders", params=params) or []

    def submit_order(self, symbol: str, side: str, notional: Optional[float] = None, qty: Optional[float] = None,
                     order_type: str = "market", time_in_force: Optional[str] = None,
                     asset_class: Optional[str] = None) -> Dict[str, Any]:
        """
        Submit an order sized either by dollar notional or by quantity.
        time_in_force and asset_class default from the symbol class (gtc/crypto, day/us_equity).
        """
        if (notional is None) == (qty is None):
            raise ValueError("submit_order needs exactly one of notional or qty")
        side = side.lower()
        if side not in ("buy", "sell"):
            raise ValueError(f"Invalid order side: {side}")
        sym = normalize_symbol(symbol)
        data: Dict[str, Any] = {
            "symbol": sym,
            "side": side,
            "type": order_type,
            "time_in_force": time_in_force or time_in_force_for(sym),
            "asset_class": asset_class or asset_class_for(sym),
        }
        if notional is not None:
            data["notional"] = str(round(float(notional), 2))
        else:
            data["qty"] = str(qty)
        logger.info("Submitting %s %s order %s %s", order_type, side, sym,
                    f"${data['notional']}" if "notional" in data else f"qty={data['qty']}")
        return self._request("POST", "/v2/orders", data=data)

    # =========================================================================
    # ASSETS
    # =========================================================================

    def list_assets(self, asset_class: str = "us_equity", status: str = "active") -> List[Dict[str, Any]]:
        """Raw asset listing. Filtering is left to the caller."""
        params = {"status": status, "asset_class": asset_class}
        return self._request("GET", "/v2/assets", params=params) or []

    # =========================================================================
    # MARKET DATA
    # =========================================================================

    def get_bars(self, symbol: str, timeframe: str = "1Hour", limit: int = 100) -> List[Bar]:
        """
        Most recent `limit` bars, oldest first.
        Routes to the crypto endpoint for crypto pairs and the stock endpoint otherwise.
        """
        sym = normalize_symbol(symbol)
        start = datetime.now(timezone.utc) - timedelta(days=_LOOKBACK_DAYS.get(timeframe, 30))
        params: Dict[str, Any] = {
            "timeframe": timeframe,
            "start": start.strftime("%Y-%m-%dT%H:%M:%SZ"),
            "limit": 10000,
        }
        if is_crypto_symbol(sym):
            params["symbols"] = sym
            data = self._request("GET", "/v1beta3/crypto/us/bars", params=params, base_url=self.data_url)
            raw_bars = (data.get("bars") or {}).get(sym) or []
        else:
            params["adjustment"] = "split"
            if self.data_feed in ("iex", "sip", "delayed_sip"):
                params["feed"] = self.data_feed
            data = self._request("GET", f"/v2/stocks/{sym}/bars", params=params, base_url=self.data_url)
            raw_bars = data.get("bars") or []

        bars = []
        for raw in raw_bars:
            try:
                bars.append(Bar.from_alpaca(raw))
            except (KeyError, TypeError, ValueError):
                logger.debug("get_bars %s: skipping malformed bar %r", sym, raw)
        if not bars:
            logger.warning("get_bars returning []: symbol=%r timeframe=%s limit=%s", sym, timeframe, limit)
        return bars[-limit:]

    def get_latest_price(self, symbol: str) -> Optional[float]:
        """
        Last trade price, then quote midpoint, then last 1Min bar close.
        Returns None when no source gives a positive price.
        """
        sym = normalize_symbol(symbol)
        crypto = is_crypto_symbol(sym)
        try:
            if crypto:
                data = self._request("GET", "/v1beta3/crypto/us/latest/trades",
                                     params={"symbols": sym}, base_url=self.data_url)
                trade = (data.get("trades") or {}).get(sym) or {}
            else:
                data = self._request("GET", f"/v2/stocks/{sym}/trades/latest", base_url=self.data_url)
                trade = data.get("trade") or {}
            price = float(trade.get("p") or 0)
            if price > 0:
                return price
        except AlpacaAPIError as e:
            logger.debug("get_latest_price %s: latest trade failed: %s", sym, e)

        try:
            if crypto:
                data = self._request("GET", "/v1beta3/crypto/us/latest/quotes",
                                     params={"symbols": sym}, base_url=self.data_url)
                quote = (data.get("quotes") or {}).get(sym) or {}
            else:
                data = self._request("GET", f"/v2/stocks/{sym}/quotes/latest", base_url=self.data_url)
                quote = data.get("quote") or {}
            ask, bid = float(quote.get("ap") or 0), float(quote.get("bp") or 0)
            if ask > 0 and bid > 0:
                return (ask + bid) / 2.0
        except AlpacaAPIError as e:
            logger.debug("get_latest_price %s: latest quote failed: %s", sym, e)

        try:
            bars = self.get_bars(sym, timeframe="1Min", limit=1)
            if bars and bars[-1].close > 0:
                return bars[-1].close
        except AlpacaAPIError as e:
            logger.debug("get_latest_price %s: bar fallback failed: %s", sym, e)
        return None

    def __repr__(self):
        return f"AlpacaClient(mode={self.mode!r}, base_url={self.base_url!r})"
