"""
US equities session window (regular hours, America/New_York).
Pure functions, no network. Crypto trades 24/7 and is never gated here.
Exchange holidays are not modelled; the broker rejects orders on those days.
"""
from datetime import datetime, time as dt_time, timezone
from typing import Any, Dict, Optional

from zoneinfo import ZoneInfo

ET = ZoneInfo("America/New_York")
MARKET_OPEN = dt_time(9, 30)
MARKET_CLOSE = dt_time(16, 0)


def _to_et(now: Optional[datetime]) -> datetime:
    if now is None:
        now = datetime.now(timezone.utc)
    elif now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    return now.astimezone(ET)


def market_session(now: Optional[datetime] = None) -> Dict[str, Any]:
    """
    Returns {"is_open": bool, "reason": str | None, "now_et": iso str}.
    Open interval is [09:30, 16:00) on weekdays.
    """
    now_et = _to_et(now)
    reason = None
    if now_et.weekday() >= 5:
        reason = "Market closed (weekend)"
    elif now_et.time() < MARKET_OPEN:
        reason = "Market closed (pre-market)"
    elif now_et.time() >= MARKET_CLOSE:
        reason = "Market closed (after hours)"
    return {"is_open": reason is None, "reason": reason, "now_et": now_et.isoformat()}


def is_market_hours(now: Optional[datetime] = None) -> bool:
    return bool(market_session(now)["is_open"])
