"""
Tests for bars, the per-key window and the timeframe vocabulary
"""

from dataclasses import FrozenInstanceError
from datetime import datetime, timedelta, timezone

import pytest

from setup_scanner.errors import InvalidBar, OutOfOrderBar
from setup_scanner.models import (
    Bar, ConnectionSessionState, Direction, PatternKind, PatternSignal,
    floor_to_timeframe, normalize_timeframe,
)
from setup_scanner.window import BarWindow

T0 = datetime(2024, 3, 4, 14, 0, tzinfo=timezone.utc)


class TestBar:
    """Test OHLCV invariant"""

    def test_valid_bar(self):
        bar = Bar('AAPL', '1h', T0, 100, 101, 99, 100.5, 1000)
        assert bar.body_high == 100.5
        assert bar.body_low == 100
        assert bar.body_size == pytest.approx(0.5)

    def test_high_below_close_rejected(self):
        with pytest.raises(InvalidBar):
            Bar('AAPL', '1h', T0, 100, 100.2, 99, 100.5, 1000)

    def test_low_above_open_rejected(self):
        with pytest.raises(InvalidBar):
            Bar('AAPL', '1h', T0, 100, 101, 100.1, 100.5, 1000)

    def test_negative_values_rejected(self):
        with pytest.raises(InvalidBar):
            Bar('AAPL', '1h', T0, 1, 2, -0.5, 1, 1000)
        with pytest.raises(InvalidBar):
            Bar('AAPL', '1h', T0, 100, 101, 99, 100, -1)

    def test_naive_time_becomes_utc(self):
        bar = Bar('AAPL', '1h', datetime(2024, 3, 4, 14), 100, 101, 99, 100, 0)
        assert bar.open_time.tzinfo is not None

    def test_immutable(self):
        bar = Bar('AAPL', '1h', T0, 100, 101, 99, 100.5, 1000)
        with pytest.raises(FrozenInstanceError):
            bar.close = 1


class TestTimeframes:

    def test_aliases(self):
        assert normalize_timeframe('1D') == '1d'
        assert normalize_timeframe('4H') == '4h'
        assert normalize_timeframe('1W') == '1wk'
        assert normalize_timeframe('15m') == '15m'

    def test_unknown_timeframe(self):
        with pytest.raises(ValueError):
            normalize_timeframe('3h')

    def test_anchor_floored_to_bar(self):
        moment = datetime(2024, 3, 4, 14, 37, 12, tzinfo=timezone.utc)
        assert floor_to_timeframe(moment, '1h') == int(T0.timestamp())
        assert floor_to_timeframe(moment, '15m') == int(T0.timestamp()) + 30 * 60

    def test_dedup_key_ignores_intra_bar_offset(self):
        def signal(anchor):
            return PatternSignal('AAPL', '1h', PatternKind.SWEEP_ENGULFING, Direction.BULLISH,
                                 anchor, 101.0, 99.0, 2.0)

        assert signal(T0).dedup_key() == signal(T0 + timedelta(minutes=5)).dedup_key()
        assert signal(T0).dedup_key() != signal(T0 + timedelta(hours=1)).dedup_key()


class TestSessionStateRecord:

    def test_dict_roundtrip(self):
        state = ConnectionSessionState(
            subscribed_keys={('AAPL', '1h'), ('MSFT', '1d')},
            last_heartbeat_time=T0,
            reconnect_attempt_count=3,
        )
        restored = ConnectionSessionState.from_dict(state.to_dict())
        assert restored == state


class TestBarWindow:
    """Test fixed-capacity ordered window"""

    def test_append_in_order(self, make_bars, sweep_rows):
        window = BarWindow('TEST', '1h', capacity=10)
        for bar in make_bars(sweep_rows):
            window.append(bar)
        assert len(window) == 5
        assert window.last.close == 101.0

    def test_out_of_order_rejected(self, make_bars, sweep_rows):
        bars = make_bars(sweep_rows)
        window = BarWindow('TEST', '1h')
        window.append(bars[1])
        with pytest.raises(OutOfOrderBar):
            window.append(bars[0])

    def test_duplicate_timestamp_rejected(self, make_bars, sweep_rows):
        bars = make_bars(sweep_rows)
        window = BarWindow('TEST', '1h')
        window.append(bars[0])
        with pytest.raises(OutOfOrderBar):
            window.append(bars[0])

    def test_capacity_evicts_oldest(self, make_bars, sweep_rows):
        bars = make_bars(sweep_rows)
        window = BarWindow('TEST', '1h', capacity=3)
        window.merge(bars)
        assert len(window) == 3
        assert window.snapshot()[0] == bars[2]

    def test_merge_skips_already_seen(self, make_bars, sweep_rows):
        bars = make_bars(sweep_rows)
        window = BarWindow('TEST', '1h')
        assert window.merge(bars[:3]) == 3
        assert window.merge(bars) == 2
        assert window.merge(bars) == 0
        assert window.snapshot() == tuple(bars)

    def test_merge_unordered_response_leaves_window_untouched(self, make_bars, sweep_rows):
        bars = make_bars(sweep_rows)
        window = BarWindow('TEST', '1h')
        window.merge(bars[:2])
        with pytest.raises(OutOfOrderBar):
            window.merge([bars[2], bars[4], bars[3]])
        assert window.snapshot() == tuple(bars[:2])

    def test_wrong_key_rejected(self, make_bars, sweep_rows):
        window = BarWindow('OTHER', '1h')
        with pytest.raises(ValueError):
            window.append(make_bars(sweep_rows)[0])
