"""
Tests for the regular-session gate
"""

from datetime import datetime, timezone

import pytest

from setup_scanner.market_hours import MarketHours


@pytest.mark.parametrize("moment,expected", [
    (datetime(2024, 3, 4, 14, 30, tzinfo=timezone.utc), True),    # Mon 09:30 EST
    (datetime(2024, 3, 4, 14, 29, tzinfo=timezone.utc), False),
    (datetime(2024, 3, 4, 20, 59, tzinfo=timezone.utc), True),
    (datetime(2024, 3, 4, 21, 0, tzinfo=timezone.utc), False),    # 16:00 close
    (datetime(2024, 7, 1, 13, 30, tzinfo=timezone.utc), True),    # 09:30 EDT
    (datetime(2024, 3, 9, 15, 0, tzinfo=timezone.utc), False),    # Saturday
    (datetime(2024, 3, 10, 15, 0, tzinfo=timezone.utc), False),   # Sunday
])
def test_is_open(moment, expected):
    assert MarketHours().is_open(moment) is expected


def test_naive_time_read_as_utc():
    assert MarketHours().is_open(datetime(2024, 3, 4, 15, 0))


def test_injected_clock():
    hours = MarketHours(clock=lambda: datetime(2024, 3, 9, 15, 0, tzinfo=timezone.utc))
    assert not hours.is_open()
