"""
Significant-Level Finder

Pivot highs/lows and ATR over a bar window. Pure functions of the window:
plain loops over the bars, no state carried between scan cycles.
"""

import logging
from typing import List, Optional, Sequence

from .models import Bar, LevelKind, LevelSet, SignificantLevel

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════
# VOLATILITY
# ═══════════════════════════════════════════════════════════════════════════

def true_range(bars: Sequence[Bar], i: int) -> float:
    """True range for bar at index i."""
    b = bars[i]
    if i == 0:
        return b.high - b.low
    prev_c = bars[i - 1].close
    return max(b.high - b.low, abs(b.high - prev_c), abs(b.low - prev_c))


def average_true_range(bars: Sequence[Bar], period: int = 14) -> Optional[float]:
    """
    Mean true range of the last `period` bars.

    Uses every available true range when the window holds fewer than
    period + 1 bars. Returns None for windows shorter than 2 bars.
    """
    n = len(bars)
    if n < 2 or period < 1:
        return None
    count = min(period, n - 1)
    tr_sum = sum(true_range(bars, i) for i in range(n - count, n))
    return tr_sum / count


# ═══════════════════════════════════════════════════════════════════════════
# PIVOTS
# ═══════════════════════════════════════════════════════════════════════════

def _is_pivot_high(bars: Sequence[Bar], i: int, half_width: int) -> bool:
    high = bars[i].high
    for j in range(i - half_width, i + half_width + 1):
        if j != i and bars[j].high >= high:
            return False
    return True


def _is_pivot_low(bars: Sequence[Bar], i: int, half_width: int) -> bool:
    low = bars[i].low
    for j in range(i - half_width, i + half_width + 1):
        if j != i and bars[j].low <= low:
            return False
    return True


def _merge_levels(pivots: List[SignificantLevel], tolerance: float) -> List[SignificantLevel]:
    """
    Collapse pivots of one kind that sit within `tolerance` (fraction of price)
    of an earlier level. The earliest pivot keeps its price and index; later
    ones add to its touch count and touch_indices.
    """
    merged: List[SignificantLevel] = []
    for pivot in pivots:
        for k, level in enumerate(merged):
            if level.price > 0 and abs(level.price - pivot.price) / level.price < tolerance:
                merged[k] = SignificantLevel(
                    price=level.price,
                    kind=level.kind,
                    source_index=level.source_index,
                    touches=level.touches + 1,
                    touch_indices=level.touch_indices + (pivot.source_index,),
                )
                break
        else:
            merged.append(pivot)
    return merged


def find_significant_levels(
    bars: Sequence[Bar],
    half_width: int = 3,
    atr_period: int = 14,
    merge_tolerance: float = 0.005,
) -> LevelSet:
    """
    Find pivot highs/lows and ATR for a window.

    A bar is a pivot high when its high is the strict maximum of the centered
    neighborhood [i - half_width, i + half_width]; pivot lows mirror it.

    Args:
        bars: Ordered bar window
        half_width: Bars each side of a pivot
        atr_period: ATR lookback
        merge_tolerance: Equal-level tolerance as a fraction of price

    Returns:
        LevelSet; empty when the window holds fewer than 2*half_width+1 bars
    """
    n = len(bars)
    if half_width < 1 or n < 2 * half_width + 1:
        return LevelSet.empty()

    highs = []
    lows = []
    for i in range(half_width, n - half_width):
        if _is_pivot_high(bars, i, half_width):
            highs.append(SignificantLevel(bars[i].high, LevelKind.HIGH, i, touch_indices=(i,)))
        if _is_pivot_low(bars, i, half_width):
            lows.append(SignificantLevel(bars[i].low, LevelKind.LOW, i, touch_indices=(i,)))

    # A pivot at i is only known once bar i + half_width has closed
    return LevelSet(
        highs=tuple(_merge_levels(highs, merge_tolerance)),
        lows=tuple(_merge_levels(lows, merge_tolerance)),
        atr=average_true_range(bars, atr_period),
        confirm_lag=half_width,
    )


class LevelFinder:
    """Holds the finder parameters from ScanConfig."""

    def __init__(self, half_width: int = 3, atr_period: int = 14, merge_tolerance: float = 0.005):
        self.half_width = half_width
        self.atr_period = atr_period
        self.merge_tolerance = merge_tolerance

    @property
    def min_bars(self) -> int:
        return 2 * self.half_width + 1

    def find(self, bars: Sequence[Bar]) -> LevelSet:
        levels = find_significant_levels(
            bars,
            half_width=self.half_width,
            atr_period=self.atr_period,
            merge_tolerance=self.merge_tolerance,
        )
        if levels.is_empty and len(bars) < self.min_bars:
            logger.debug(f"Window of {len(bars)} bars below {self.min_bars}, no levels")
        return levels
