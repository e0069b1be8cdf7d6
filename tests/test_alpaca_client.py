"""
AlpacaClient tests with a fake requests.Session injected (no network).
"""
import os
import sys
import unittest
from unittest.mock import patch

import requests

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from alpaca_client import AlpacaAPIError, AlpacaClient, Bar
from alpaca_rate_limiter import AlpacaRateLimiter


class FakeResponse:
    def __init__(self, status_code=200, payload=None, text=""):
        self.status_code = status_code
        self._payload = payload
        self.text = text
        self.content = b"" if payload is None else b"x"

    def json(self):
        if self._payload is None:
            raise ValueError("no json")
        return self._payload


class FakeSession:
    """Returns queued responses (or raises queued exceptions) and records calls."""

    def __init__(self, responses):
        self.responses = list(responses)
        self.calls = []
        self.headers = {}

    def request(self, method, url, params=None, json=None, timeout=None):
        self.calls.append({"method": method, "url": url, "params": params, "json": json})
        item = self.responses.pop(0)
        if isinstance(item, Exception):
            raise item
        return item

    def close(self):
        pass


def _bar(c, t="2025-01-01T00:00:00Z"):
    return {"t": t, "o": c, "h": c + 1, "l": c - 1, "c": c, "v": 10}


class AlpacaClientTest(unittest.TestCase):
    def setUp(self):
        self.env = patch.dict(os.environ, {
            "ALPACA_API_KEY_PAPER": "key",
            "ALPACA_API_SECRET_PAPER": "secret",
        })
        self.env.start()
        self.limiter = AlpacaRateLimiter(1000, 100000, sleep=lambda s: None)
        self.client = AlpacaClient(mode="paper", rate_limiter=self.limiter)

    def tearDown(self):
        self.env.stop()

    def _session(self, *responses):
        s = FakeSession(responses)
        self.client.session = s
        return s

    def test_missing_keys(self):
        with patch.dict(os.environ, {}, clear=True):
            with self.assertRaises(ValueError):
                AlpacaClient(mode="paper")

    def test_headers_and_base_url(self):
        self.assertEqual(self.client.base_url, "https://paper-api.alpaca.markets")
        self.assertEqual(self.client.api_key, "key")

    def test_get_account(self):
        s = self._session(FakeResponse(200, {"equity": "1000"}))
        self.assertEqual(self.client.get_account(), {"equity": "1000"})
        self.assertEqual(s.calls[0]["url"], "https://paper-api.alpaca.markets/v2/account")

    def test_error_raises_with_status(self):
        self._session(FakeResponse(403, {"message": "forbidden"}))
        with self.assertRaises(AlpacaAPIError) as cm:
            self.client.get_account()
        self.assertEqual(cm.exception.status_code, 403)
        self.assertIn("forbidden", str(cm.exception))

    def test_404_position_is_none(self):
        s = self._session(FakeResponse(404, {"message": "position does not exist"}))
        self.assertIsNone(self.client.get_position("BTC/USD"))
        self.assertTrue(s.calls[0]["url"].endswith("/v2/positions/BTCUSD"))

    @patch("alpaca_client.time.sleep")
    def test_connection_errors_retry(self, mock_sleep):
        self._session(
            requests.exceptions.ConnectionError("down"),
            requests.exceptions.Timeout("slow"),
            FakeResponse(200, {"is_open": True}),
        )
        self.assertEqual(self.client.get_clock(), {"is_open": True})
        self.assertEqual([c.args[0] for c in mock_sleep.call_args_list], [1, 2])

    @patch("alpaca_client.time.sleep")
    def test_connection_errors_exhausted(self, mock_sleep):
        self._session(*[requests.exceptions.ConnectionError("down")] * 3)
        with self.assertRaises(AlpacaAPIError):
            self.client.get_clock()

    def test_429_retries_once(self):
        s = self._session(FakeResponse(429, {"message": "slow down"}), FakeResponse(200, []))
        self.assertEqual(self.client.get_positions(), [])
        self.assertEqual(len(s.calls), 2)
        self.assertEqual(self.limiter.stats()["consecutive_429s"], 0)

    def test_submit_order_notional(self):
        s = self._session(FakeResponse(200, {"id": "o1", "status": "accepted"}))
        order = self.client.submit_order("btc-usd", "BUY", notional=123.456)
        self.assertEqual(order["id"], "o1")
        body = s.calls[0]["json"]
        self.assertEqual(body["symbol"], "BTC/USD")
        self.assertEqual(body["side"], "buy")
        self.assertEqual(body["notional"], "123.46")
        self.assertEqual(body["time_in_force"], "gtc")
        self.assertEqual(body["asset_class"], "crypto")
        self.assertNotIn("qty", body)

    def test_submit_order_validation(self):
        with self.assertRaises(ValueError):
            self.client.submit_order("AAPL", "buy")
        with self.assertRaises(ValueError):
            self.client.submit_order("AAPL", "buy", notional=10, qty=1)
        with self.assertRaises(ValueError):
            self.client.submit_order("AAPL", "hold", notional=10)

    def test_stock_bars(self):
        s = self._session(FakeResponse(200, {"bars": [_bar(float(i)) for i in range(1, 151)]}))
        bars = self.client.get_bars("AAPL", timeframe="1Hour", limit=100)
        self.assertEqual(len(bars), 100)
        self.assertIsInstance(bars[0], Bar)
        self.assertEqual(bars[-1].close, 150.0)
        call = s.calls[0]
        self.assertEqual(call["url"], "https://data.alpaca.markets/v2/stocks/AAPL/bars")
        self.assertEqual(call["params"]["adjustment"], "split")

    def test_crypto_bars(self):
        s = self._session(FakeResponse(200, {"bars": {"BTC/USD": [_bar(1.0), {"t": "bad"}, _bar(2.0)]}}))
        bars = self.client.get_bars("BTC/USD", limit=100)
        self.assertEqual([b.close for b in bars], [1.0, 2.0])
        call = s.calls[0]
        self.assertEqual(call["url"], "https://data.alpaca.markets/v1beta3/crypto/us/bars")
        self.assertEqual(call["params"]["symbols"], "BTC/USD")

    def test_latest_price_trade(self):
        self._session(FakeResponse(200, {"trade": {"p": 187.5}}))
        self.assertEqual(self.client.get_latest_price("AAPL"), 187.5)

    def test_latest_price_falls_back_to_quote(self):
        self._session(
            FakeResponse(200, {"trades": {"ETH/USD": {"p": 0}}}),
            FakeResponse(200, {"quotes": {"ETH/USD": {"ap": 101.0, "bp": 99.0}}}),
        )
        self.assertEqual(self.client.get_latest_price("ETH/USD"), 100.0)

    def test_latest_price_none(self):
        self._session(
            FakeResponse(500, {"message": "x"}),
            FakeResponse(500, {"message": "x"}),
            FakeResponse(200, {"bars": []}),
        )
        self.assertIsNone(self.client.get_latest_price("AAPL"))

    def test_list_assets(self):
        s = self._session(FakeResponse(200, [{"symbol": "AAPL"}]))
        self.assertEqual(self.client.list_assets("us_equity"), [{"symbol": "AAPL"}])
        self.assertEqual(s.calls[0]["params"], {"status": "active", "asset_class": "us_equity"})


if __name__ == "__main__":
    unittest.main()
