"""
Unit tests for the US equities session check.
Pure functions, no network. Instants are built in ET and passed as UTC.
"""
import os
import sys

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from datetime import datetime, timezone

from zoneinfo import ZoneInfo

from market_hours import is_market_hours, market_session

ET = ZoneInfo("America/New_York")
UTC = timezone.utc


def _et(y: int, mo: int, d: int, h: int, mi: int) -> datetime:
    et = datetime(y, mo, d, h, mi, 0, tzinfo=ET)
    return et.astimezone(UTC)


def test_open_interval_is_half_open():
    # Friday 2025-01-31
    assert is_market_hours(_et(2025, 1, 31, 9, 29)) is False
    assert is_market_hours(_et(2025, 1, 31, 9, 30)) is True
    assert is_market_hours(_et(2025, 1, 31, 12, 0)) is True
    assert is_market_hours(_et(2025, 1, 31, 15, 59)) is True
    assert is_market_hours(_et(2025, 1, 31, 16, 0)) is False


def test_weekend_closed():
    s = market_session(_et(2025, 2, 1, 11, 0))  # Saturday
    assert s["is_open"] is False
    assert s["reason"] == "Market closed (weekend)"
    assert is_market_hours(_et(2025, 2, 2, 11, 0)) is False  # Sunday


def test_reasons():
    assert market_session(_et(2025, 1, 31, 8, 0))["reason"] == "Market closed (pre-market)"
    assert market_session(_et(2025, 1, 31, 17, 0))["reason"] == "Market closed (after hours)"
    assert market_session(_et(2025, 1, 31, 10, 0))["reason"] is None


def test_dst_is_handled_by_zone():
    # July: ET is UTC-4, so 13:30 UTC is the open
    assert is_market_hours(datetime(2025, 7, 1, 13, 30, tzinfo=UTC)) is True
    assert is_market_hours(datetime(2025, 7, 1, 13, 29, tzinfo=UTC)) is False
    # January: ET is UTC-5, so 13:30 UTC is pre-market
    assert is_market_hours(datetime(2025, 1, 7, 13, 30, tzinfo=UTC)) is False
    assert is_market_hours(datetime(2025, 1, 7, 14, 30, tzinfo=UTC)) is True


def test_naive_datetime_is_utc():
    assert is_market_hours(datetime(2025, 1, 7, 14, 30)) is True


if __name__ == "__main__":
    test_open_interval_is_half_open()
    test_weekend_closed()
    test_reasons()
    test_dst_is_handled_by_zone()
    test_naive_datetime_is_utc()
    print("test_market_hours passed")
