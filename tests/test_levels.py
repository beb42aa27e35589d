"""
Tests for pivot levels and ATR
"""

import pytest

from setup_scanner.levels import (
    LevelFinder, average_true_range, find_significant_levels, true_range,
)
from setup_scanner.models import LevelKind


def rows_from_highs(highs):
    # low one below high, flat body in the middle
    return [(h - 0.5, h, h - 1.0, h - 0.5, 1000) for h in highs]


def rows_from_lows(lows):
    return [(l + 0.5, l + 1.0, l, l + 0.5, 1000) for l in lows]


class TestATR:

    @pytest.fixture
    def three_bars(self, make_bars):
        return make_bars([
            (9.5, 10.0, 9.0, 9.5, 1000),
            (10.5, 11.0, 10.0, 10.5, 1000),
            (10.5, 10.6, 10.4, 10.5, 1000),
        ])

    def test_true_range_uses_previous_close(self, three_bars):
        assert true_range(three_bars, 0) == pytest.approx(1.0)
        assert true_range(three_bars, 1) == pytest.approx(1.5)
        assert true_range(three_bars, 2) == pytest.approx(0.2)

    def test_short_window_uses_available_ranges(self, three_bars):
        assert average_true_range(three_bars, period=14) == pytest.approx(0.85)

    def test_period_limits_ranges(self, three_bars):
        assert average_true_range(three_bars, period=1) == pytest.approx(0.2)

    def test_single_bar_has_no_atr(self, three_bars):
        assert average_true_range(three_bars[:1]) is None


class TestPivots:
    """Test strict centred pivots"""

    def test_single_pivot_high(self, make_bars):
        bars = make_bars(rows_from_highs([11, 12, 13, 19, 13, 12, 11]))
        levels = find_significant_levels(bars, half_width=3)
        assert levels.high_prices == (19,)
        assert levels.highs[0].source_index == 3
        assert levels.highs[0].kind == LevelKind.HIGH
        assert levels.lows == ()

    def test_equal_neighbour_is_not_pivot(self, make_bars):
        bars = make_bars(rows_from_highs([11, 12, 13, 19, 19, 12, 11]))
        levels = find_significant_levels(bars, half_width=3)
        assert levels.highs == ()

    def test_window_too_short(self, make_bars):
        bars = make_bars(rows_from_highs([11, 12, 13, 19, 13, 12]))
        levels = find_significant_levels(bars, half_width=3)
        assert levels.is_empty
        assert levels.atr is None

    def test_edges_are_never_pivots(self, make_bars):
        bars = make_bars(rows_from_highs([20, 12, 13, 14, 13, 12, 25]))
        assert find_significant_levels(bars, half_width=3).highs == ()

    def test_atr_reported(self, make_bars):
        bars = make_bars(rows_from_highs([11, 12, 13, 19, 13, 12, 11]))
        levels = find_significant_levels(bars, half_width=3, atr_period=14)
        assert levels.atr is not None and levels.atr > 0


class TestLevelMerge:

    LOWS = [105, 104, 103, 100, 103, 104, 105, 104, 103, 100.3, 103, 104, 105]

    def test_equal_lows_merge_into_touches(self, make_bars):
        bars = make_bars(rows_from_lows(self.LOWS))
        levels = find_significant_levels(bars, half_width=3, merge_tolerance=0.005)
        assert len(levels.lows) == 1
        level = levels.lows[0]
        assert level.price == 100.0
        assert level.touches == 2
        assert level.source_index == 3
        assert level.touch_indices == (3, 9)
        assert levels.confirm_lag == 3

    def test_touches_before_counts_confirmed_pivots(self, make_bars):
        bars = make_bars(rows_from_lows(self.LOWS))
        level = find_significant_levels(bars, half_width=3).lows[0]
        assert level.touches_before(6, lag=3) == 0
        assert level.touches_before(7, lag=3) == 1
        assert level.touches_before(12, lag=3) == 1
        assert level.touches_before(13, lag=3) == 2

    def test_tight_tolerance_keeps_levels_apart(self, make_bars):
        bars = make_bars(rows_from_lows(self.LOWS))
        levels = find_significant_levels(bars, half_width=3, merge_tolerance=0.001)
        assert levels.low_prices == (100.0, 100.3)
        assert all(level.touches == 1 for level in levels.lows)


class TestLevelFinder:

    def test_min_bars(self):
        assert LevelFinder(half_width=3).min_bars == 7
        assert LevelFinder(half_width=5).min_bars == 11

    def test_find_is_deterministic(self, random_walk_bars):
        finder = LevelFinder()
        assert finder.find(random_walk_bars) == finder.find(random_walk_bars)

    def test_random_walk_levels_formed_inside_window(self, random_walk_bars):
        levels = LevelFinder(half_width=3).find(random_walk_bars)
        n = len(random_walk_bars)
        assert not levels.is_empty
        for level in levels.highs + levels.lows:
            assert 3 <= level.source_index < n - 3
