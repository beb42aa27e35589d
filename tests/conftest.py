"""Shared fixtures: bar factories, scenario windows, in-memory transport"""

from datetime import datetime, timedelta, timezone

import numpy as np
import pytest

from setup_scanner.connection import MarketDataTransport
from setup_scanner.models import Bar, LevelKind, LevelSet, SignificantLevel

T0 = datetime(2024, 3, 4, 14, 0, tzinfo=timezone.utc)


def build_bars(rows, symbol='TEST', timeframe='1h', start=T0, step=timedelta(hours=1)):
    """rows: (open, high, low, close, volume) tuples"""
    return [
        Bar(symbol, timeframe, start + i * step, o, h, l, c, v)
        for i, (o, h, l, c, v) in enumerate(rows)
    ]


@pytest.fixture
def make_bars():
    return build_bars


@pytest.fixture
def sweep_rows():
    """
    Five bars; bar 4 sweeps the 99.0 low, closes above bar 3's high on
    2x volume.
    """
    return [
        (100.0, 101.0, 99.5, 100.5, 20000),
        (100.5, 101.0, 99.0, 100.0, 20000),
        (100.0, 100.8, 99.6, 100.2, 20000),
        (100.2, 100.4, 99.4, 99.6, 20000),
        (99.5, 101.2, 98.3, 101.0, 40000),
    ]


@pytest.fixture
def sweep_levels():
    return LevelSet(
        lows=(SignificantLevel(99.0, LevelKind.LOW, source_index=1, touches=2),),
        atr=1.0,
    )


@pytest.fixture
def retest_rows():
    """
    Sweep of the 100.0 low at bar 2, bullish gap 101.5-102.5 centred on
    bar 3, rejection retest of the gap at bar 6.
    """
    return [
        (101.0, 102.0, 100.0, 101.5, 20000),
        (101.5, 102.0, 100.8, 101.2, 20000),
        (101.0, 101.5, 99.2, 100.6, 20000),
        (100.8, 103.5, 100.7, 103.3, 30000),
        (103.3, 104.5, 102.5, 104.2, 20000),
        (104.2, 104.6, 103.0, 103.4, 20000),
        (103.4, 103.6, 101.2, 102.2, 20000),
    ]


@pytest.fixture
def retest_levels():
    return LevelSet(
        lows=(SignificantLevel(100.0, LevelKind.LOW, source_index=0, touches=2),),
        atr=1.0,
    )


@pytest.fixture
def two_touch_rows():
    """
    Pivot lows at bar 3 (100.0) and bar 9 (100.2) merge into one two-touch
    level; bar 13 sweeps it to 99.3 and closes above bar 12's high on 2x
    volume. Found by LevelFinder(half_width=3), no hand-built levels.
    """
    return [
        (102.0, 102.5, 101.5, 101.8, 20000),
        (101.8, 102.0, 101.0, 101.2, 20000),
        (101.2, 101.4, 100.6, 100.8, 20000),
        (100.8, 101.0, 100.0, 100.5, 20000),
        (100.5, 101.4, 100.3, 101.2, 20000),
        (101.2, 101.8, 100.9, 101.5, 20000),
        (101.5, 102.0, 101.1, 101.6, 20000),
        (101.6, 101.7, 100.9, 101.0, 20000),
        (101.0, 101.1, 100.5, 100.7, 20000),
        (100.7, 100.9, 100.2, 100.6, 20000),
        (100.6, 101.2, 100.4, 101.0, 20000),
        (101.0, 101.3, 100.7, 100.9, 20000),
        (100.9, 101.0, 100.4, 100.5, 20000),
        (100.5, 101.6, 99.3, 101.4, 40000),
    ]


@pytest.fixture
def late_touch_rows():
    """
    Pivot low at bar 3 (100.0); bar 10 sweeps it to 99.3 and engulfs bar 9
    on 2x volume; the level's second touch is a pivot low at bar 16 (100.2),
    confirmed at bar 19, after the sweep.
    """
    return [
        (102.0, 102.5, 101.5, 101.8, 20000),
        (101.8, 102.0, 101.0, 101.2, 20000),
        (101.2, 101.4, 100.6, 100.8, 20000),
        (100.8, 101.0, 100.0, 100.5, 20000),
        (100.5, 101.4, 100.3, 101.2, 20000),
        (101.2, 101.8, 100.9, 101.5, 20000),
        (101.5, 102.0, 101.1, 101.6, 20000),
        (101.6, 101.7, 100.9, 101.0, 20000),
        (101.0, 101.1, 100.5, 100.7, 20000),
        (100.7, 101.0, 100.4, 100.5, 20000),
        (100.5, 101.6, 99.3, 101.4, 40000),
        (101.4, 101.9, 101.2, 101.7, 20000),
        (101.7, 102.1, 101.3, 101.5, 20000),
        (101.5, 101.6, 100.8, 101.0, 20000),
        (101.0, 101.1, 100.6, 100.8, 20000),
        (100.8, 100.9, 100.4, 100.6, 20000),
        (100.6, 100.9, 100.2, 100.7, 20000),
        (100.7, 101.1, 100.5, 101.0, 20000),
        (101.0, 101.4, 100.8, 101.3, 20000),
        (101.3, 101.6, 101.0, 101.5, 20000),
    ]


@pytest.fixture
def random_walk_bars():
    """Create sample OHLCV bars for testing"""
    np.random.seed(42)
    n = 120

    close = np.cumsum(np.random.randn(n) * 0.8) + 100
    open_price = close + np.random.randn(n) * 0.3
    high = np.maximum(open_price, close) + np.abs(np.random.randn(n) * 0.5)
    low = np.minimum(open_price, close) - np.abs(np.random.randn(n) * 0.5)
    volume = np.random.randint(5000, 60000, n)

    rows = [
        (float(o), float(h), float(l), float(c), float(v))
        for o, h, l, c, v in zip(open_price, high, low, close, volume)
    ]
    return build_bars(rows)


class FakeTransport(MarketDataTransport):
    """In-memory provider session with switchable failures"""

    name = "fake"

    def __init__(self, history=None):
        super().__init__()
        self.history = history or {}
        self.opened = False
        self.fail_open = False
        self.heartbeat_failures = 0
        self.fail_subscribe = False
        self.rejected_symbols = set()
        self.open_count = 0
        self.subscribe_calls = []
        self.callbacks = {}

    async def open(self):
        self.open_count += 1
        if self.fail_open:
            raise ConnectionError("connection refused")
        self.opened = True

    async def close(self):
        self.opened = False
        self.callbacks.clear()

    def is_open(self):
        return self.opened

    async def heartbeat(self):
        if self.heartbeat_failures > 0:
            self.heartbeat_failures -= 1
            raise ConnectionError("no heartbeat reply")
        if not self.opened:
            raise ConnectionError("no heartbeat reply")
        return True

    async def subscribe(self, symbol, timeframe, on_bar):
        if self.fail_subscribe:
            raise ConnectionError("subscription rejected")
        if symbol in self.rejected_symbols:
            raise ValueError(f"No security definition has been found for {symbol}")
        self.subscribe_calls.append((symbol, timeframe))
        self.callbacks[(symbol, timeframe)] = on_bar
        return list(self.history.get((symbol, timeframe), []))

    async def unsubscribe(self, symbol, timeframe):
        self.callbacks.pop((symbol, timeframe), None)

    def push(self, bar):
        self.callbacks[bar.key](bar)

    def drop(self, reason="socket closed"):
        self.opened = False
        self.callbacks.clear()
        self._notify_disconnect(reason)


@pytest.fixture
def fake_transport_cls():
    return FakeTransport


@pytest.fixture
def recorded_sleep():
    """Backoff sleep that records delays and returns immediately"""
    delays = []

    async def _sleep(delay):
        delays.append(delay)

    _sleep.delays = delays
    return _sleep
