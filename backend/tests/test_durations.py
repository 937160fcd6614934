from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest

from sharegate.utils.durations import expires_in, format_duration, parse_lifetime

NOW = datetime(2026, 3, 1, 8, 30, tzinfo=UTC)


@pytest.mark.parametrize(
    "text,delta",
    [
        ("30s", timedelta(seconds=30)),
        ("15m", timedelta(minutes=15)),
        ("2h", timedelta(hours=2)),
        ("7d", timedelta(days=7)),
        ("30 minutes", timedelta(minutes=30)),
        ("2 hours", timedelta(hours=2)),
        ("1 day", timedelta(days=1)),
        ("3 weeks", timedelta(weeks=3)),
        ("1 month", timedelta(days=30)),
        ("  45 Seconds ", timedelta(seconds=45)),
    ],
)
def test_relative_lifetimes(text, delta):
    assert parse_lifetime(text, NOW) == NOW + delta


@pytest.mark.parametrize("text", [None, "", "never", "NEVER"])
def test_never_expires(text):
    assert parse_lifetime(text, NOW) is None


def test_iso_timestamp_naive_is_utc():
    assert parse_lifetime("2026-03-02T08:30:00", NOW) == datetime(2026, 3, 2, 8, 30, tzinfo=UTC)
    assert parse_lifetime("2026-03-02T08:30:00Z", NOW) == datetime(2026, 3, 2, 8, 30, tzinfo=UTC)


@pytest.mark.parametrize(
    "text", ["soon", "5 fortnights", "0s", "-5m", "2026-02-01T00:00:00", "12", "10ms", "2hs", "3ds"]
)
def test_invalid_lifetimes(text):
    with pytest.raises(ValueError):
        parse_lifetime(text, NOW)


def test_format_duration_uses_largest_unit():
    assert format_duration(None) == "never"
    assert format_duration(0) == "expired"
    assert format_duration(59) == "59 seconds"
    assert format_duration(3600) == "1 hour"
    assert format_duration(2 * 3600 + 59) == "2 hours"
    assert format_duration(8 * 86400) == "1 week"
    assert format_duration(31 * 86400) == "1 month"


def test_expires_in():
    assert expires_in(None, NOW) == "never"
    assert expires_in(NOW + timedelta(days=2), NOW) == "2 days"
