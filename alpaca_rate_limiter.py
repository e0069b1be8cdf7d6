"""
Alpaca API rate limiter.
Token bucket shared by every AlpacaClient in the process, with exponential backoff after HTTP 429.
"""
import logging
import threading
import time
from datetime import datetime, timedelta
from typing import Optional

from env_utils import env_int

logger = logging.getLogger(__name__)

# 90% of the free tier budget
_REQUESTS_PER_MINUTE = env_int("ALPACA_RPM_LIMIT", 180)
_REQUESTS_PER_DAY = env_int("ALPACA_DAILY_LIMIT", 9000)
_MAX_BACKOFF_SEC = 300


class RateLimitExceeded(Exception):
    """Daily request budget is spent."""


class AlpacaRateLimiter:
    """Token bucket rate limiter for Alpaca API."""

    def __init__(self, requests_per_minute: Optional[int] = None, requests_per_day: Optional[int] = None,
                 sleep=time.sleep, clock=time.time):
        self.rpm_limit = requests_per_minute or _REQUESTS_PER_MINUTE
        self.daily_limit = requests_per_day or _REQUESTS_PER_DAY
        self._sleep = sleep
        self._clock = clock
        self.tokens = float(self.rpm_limit)
        self.max_tokens = float(self.rpm_limit)
        self.last_refill = self._clock()
        self.daily_requests = 0
        self.daily_reset_time = datetime.now() + timedelta(days=1)
        self.lock = threading.Lock()
        self.consecutive_429s = 0
        self.backoff_until: Optional[float] = None

    def acquire(self, request_name: str = "unknown") -> None:
        """Block until a request may be sent. Raises RateLimitExceeded when the daily budget is gone."""
        with self.lock:
            if self.backoff_until and self._clock() < self.backoff_until:
                wait_time = self.backoff_until - self._clock()
                logger.warning("Alpaca rate limit: in backoff, waiting %.1fs", wait_time)
                self._sleep(wait_time)
                self.backoff_until = None

            if datetime.now() >= self.daily_reset_time:
                self.daily_requests = 0
                self.daily_reset_time = datetime.now() + timedelta(days=1)
                logger.info("Alpaca daily request counter reset")

            if self.daily_requests >= self.daily_limit:
                raise RateLimitExceeded(
                    f"Alpaca daily request limit reached ({self.daily_limit}). "
                    f"Resets at {self.daily_reset_time}"
                )

            now = self._clock()
            refill_rate = self.max_tokens / 60.0
            self.tokens = min(self.max_tokens, self.tokens + (now - self.last_refill) * refill_rate)
            self.last_refill = now

            if self.tokens < 1:
                wait_time = (1 - self.tokens) / refill_rate
                logger.debug("Alpaca rate limit: waiting %.2fs for token", wait_time)
                self._sleep(wait_time)
                self.tokens = 1

            self.tokens -= 1
            self.daily_requests += 1
            logger.debug(
                "Alpaca request %s: tokens=%.1f daily=%s/%s",
                request_name, self.tokens, self.daily_requests, self.daily_limit,
            )

    def handle_429_error(self) -> float:
        """Exponential backoff on 429. Returns the backoff in seconds."""
        with self.lock:
            self.consecutive_429s += 1
            backoff_seconds = min(2 ** self.consecutive_429s, _MAX_BACKOFF_SEC)
            self.backoff_until = self._clock() + backoff_seconds
        logger.error("Alpaca 429 #%s: backing off %ss", self.consecutive_429s, backoff_seconds)
        return backoff_seconds

    def reset_backoff(self) -> None:
        with self.lock:
            self.consecutive_429s = 0
            self.backoff_until = None

    def stats(self) -> dict:
        with self.lock:
            return {
                "tokens": round(self.tokens, 2),
                "rpm_limit": self.rpm_limit,
                "daily_requests": self.daily_requests,
                "daily_limit": self.daily_limit,
                "consecutive_429s": self.consecutive_429s,
            }


alpaca_rate_limiter = AlpacaRateLimiter()
