"""
Pattern Detectors

Two stateless detectors that read a bar window plus its significant levels
and emit candidate PatternSignals:

  - SweepEngulfingDetector: a bar sweeps a significant level and engulfs
    the previous candle on expanding volume.
  - BrokenLevelRetestDetector: sweep, then a fair value gap, then a
    rejection retest of the gap zone.

Detection is a pure function of (window, levels): identical input always
produces an identical output list. Errors never escape safe_detect();
a failing detector degrades to "no signal" for that cycle.

The detector list is fixed in DETECTOR_TYPES and built from ScanConfig.
"""

import logging
from typing import List, Optional, Sequence, Union, Tuple

from .levels import average_true_range
from .models import (
    Bar, Direction, LevelSet, PatternKind, PatternSignal, SignificantLevel,
)
from .window import BarWindow

logger = logging.getLogger(__name__)

WindowLike = Union[BarWindow, Sequence[Bar]]


# ═══════════════════════════════════════════════════════════════════════════
# SHARED HELPERS
# ═══════════════════════════════════════════════════════════════════════════

def _as_bars(window: WindowLike) -> Tuple[Bar, ...]:
    if isinstance(window, BarWindow):
        return window.snapshot()
    return tuple(window)


def _window_atr(bars: Sequence[Bar], levels: LevelSet, atr_period: int) -> Optional[float]:
    atr = levels.atr if levels.atr is not None else average_true_range(bars, atr_period)
    if atr is None or atr <= 0:
        return None
    return atr


def find_swept_level(
    bar: Bar,
    index: int,
    levels: LevelSet,
    direction: Direction,
    min_touches: int,
    sweep_threshold: float,
) -> Optional[SignificantLevel]:
    """
    Return the significant level swept by `bar`, or None.

    A level qualifies when at least `min_touches` of its pivots were
    confirmed before the bar (pivots confirmed later never count), the bar's
    extreme pierces it by more than sweep_threshold * price, and the bar
    closes back on the original side.

    Bullish sweeps read lows; the tightest qualifying level (lowest price
    above bar.low) wins, ties going to the most recent one. Bearish mirrors
    on highs.
    """
    needed = max(min_touches, 1)
    lag = levels.confirm_lag

    if direction == Direction.BULLISH:
        candidates = [
            lvl for lvl in levels.lows
            if lvl.touches_before(index, lag) >= needed
            and lvl.price > bar.low
            and (lvl.price - bar.low) > sweep_threshold * lvl.price
            and bar.close > lvl.price
        ]
        if not candidates:
            return None
        return min(candidates, key=lambda lvl: (lvl.price, -lvl.source_index))

    candidates = [
        lvl for lvl in levels.highs
        if lvl.touches_before(index, lag) >= needed
        and lvl.price < bar.high
        and (bar.high - lvl.price) > sweep_threshold * lvl.price
        and bar.close < lvl.price
    ]
    if not candidates:
        return None
    return max(candidates, key=lambda lvl: (lvl.price, lvl.source_index))


# ═══════════════════════════════════════════════════════════════════════════
# BASE CLASS
# ═══════════════════════════════════════════════════════════════════════════

class Detector:
    """
    Base class for pattern detectors.

    Subclasses must implement:
      - detect(window, levels, symbol, timeframe) -> List[PatternSignal]
    """

    name: str = "base"
    display_name: str = "Base Detector"
    pattern_kind: Optional[PatternKind] = None

    def detect(self, window: WindowLike, levels: LevelSet,
               symbol: str, timeframe: str) -> List[PatternSignal]:
        raise NotImplementedError

    def safe_detect(self, window: WindowLike, levels: LevelSet,
                    symbol: str, timeframe: str) -> List[PatternSignal]:
        """detect() with every failure degraded to an empty result."""
        try:
            return self.detect(window, levels, symbol, timeframe)
        except Exception as e:
            logger.error(f"[{symbol} {timeframe}] Error in detector {self.name}: {e}", exc_info=True)
            return []

    def make_signal(self, symbol: str, timeframe: str, direction: Direction, bar: Bar,
                    swept_level: float, strength: float, notes: str) -> PatternSignal:
        return PatternSignal(
            symbol=symbol,
            timeframe=timeframe,
            pattern_kind=self.pattern_kind,
            direction=direction,
            anchor_time=bar.open_time,
            entry_price=bar.close,
            swept_level=swept_level,
            strength_score=strength,
            evidence_notes=notes,
        )

    def get_info(self) -> dict:
        return {
            'name': self.name,
            'display_name': self.display_name,
            'pattern_kind': self.pattern_kind.value if self.pattern_kind else None,
        }


# ═══════════════════════════════════════════════════════════════════════════
# SWEEP-ENGULFING REVERSAL
# ═══════════════════════════════════════════════════════════════════════════

class SweepEngulfingDetector(Detector):
    """
    Sweep-Engulfing Reversal: the current bar runs the previous bar's
    extreme, pierces a significant level, then closes through the previous
    bar's opposite extreme on expanding volume.
    """
    name = "sweep_engulfing"
    display_name = "Sweep-Engulfing Reversal"
    pattern_kind = PatternKind.SWEEP_ENGULFING

    def __init__(self, min_window: int = 2, min_candle_size_atr: float = 0.5,
                 volume_increase_threshold: float = 1.5, sweep_threshold: float = 0.005,
                 min_touches: int = 2, min_volume: float = 10000,
                 retracement_threshold: float = 0.33, atr_period: int = 14):
        self.min_window = min_window
        self.min_candle_size_atr = min_candle_size_atr
        self.volume_increase_threshold = volume_increase_threshold
        self.sweep_threshold = sweep_threshold
        self.min_touches = min_touches
        self.min_volume = min_volume
        self.retracement_threshold = retracement_threshold
        self.atr_period = atr_period

    @classmethod
    def from_config(cls, config) -> 'SweepEngulfingDetector':
        return cls(
            min_window=config.min_window,
            min_candle_size_atr=config.min_candle_size_atr,
            volume_increase_threshold=config.volume_increase_threshold,
            sweep_threshold=config.sweep_threshold,
            min_touches=config.min_touches,
            min_volume=config.min_volume,
            retracement_threshold=config.retracement_threshold,
            atr_period=config.atr_period,
        )

    def _retraced(self, bars: Sequence[Bar], i: int, direction: Direction) -> bool:
        # Did any later bar give back retracement_threshold of the sweep candle's range?
        bar = bars[i]
        depth = self.retracement_threshold * bar.range
        for later in bars[i + 1:]:
            if direction == Direction.BULLISH and later.low <= bar.close - depth:
                return True
            if direction == Direction.BEARISH and later.high >= bar.close + depth:
                return True
        return False

    def detect(self, window: WindowLike, levels: LevelSet,
               symbol: str, timeframe: str) -> List[PatternSignal]:
        bars = _as_bars(window)
        if len(bars) < 2 or levels.is_empty:
            return []
        atr = _window_atr(bars, levels, self.atr_period)
        if atr is None:
            return []

        signals: List[PatternSignal] = []
        for i in range(max(1, self.min_window), len(bars)):
            prev = bars[i - 1]
            cur = bars[i]

            if cur.body_size < self.min_candle_size_atr * atr:
                continue
            if prev.volume <= 0 or cur.volume < self.volume_increase_threshold * prev.volume:
                continue
            if cur.volume < self.min_volume:
                continue

            if cur.low < prev.low and cur.close > prev.high and cur.close > prev.open:
                direction = Direction.BULLISH
                through = prev.high
            elif cur.high > prev.high and cur.close < prev.low and cur.close < prev.open:
                direction = Direction.BEARISH
                through = prev.low
            else:
                continue

            level = find_swept_level(cur, i, levels, direction,
                                     self.min_touches, self.sweep_threshold)
            if level is None:
                continue

            kind = "low" if direction == Direction.BULLISH else "high"
            distance = abs(level.price - (cur.low if direction == Direction.BULLISH else cur.high))
            retraced = self._retraced(bars, i, direction)
            touches = level.touches_before(i, levels.confirm_lag)
            notes = (
                f"Swept {kind} {level.price:.4f} (touches={touches}) by {distance:.4f}; "
                f"closed through {through:.4f} at {cur.close:.4f}; "
                f"retraced {'yes' if retraced else 'no'}"
            )
            signals.append(self.make_signal(
                symbol, timeframe, direction, cur,
                swept_level=level.price,
                strength=cur.volume / prev.volume,
                notes=notes,
            ))

        return signals


# ═══════════════════════════════════════════════════════════════════════════
# BROKEN-LEVEL RETEST (ICT-STYLE)
# ═══════════════════════════════════════════════════════════════════════════

class BrokenLevelRetestDetector(Detector):
    """
    Broken-Level Retest: liquidity sweep, then a fair value gap within
    fvg_max_delay bars, then a bar that wicks through the gap's far edge
    and closes back inside it. Emitted only once all three stages are
    seen in order within max_retest_lookback bars of the sweep.
    """
    name = "broken_level_retest"
    display_name = "Broken-Level Retest"
    pattern_kind = PatternKind.BROKEN_LEVEL_RETEST

    def __init__(self, min_window: int = 2, sweep_threshold: float = 0.005,
                 min_touches: int = 2, min_volume: float = 10000,
                 fvg_threshold: float = 0.003, retest_threshold: float = 0.005,
                 fvg_max_delay: int = 3, max_retest_lookback: int = 20,
                 atr_period: int = 14):
        self.min_window = min_window
        self.sweep_threshold = sweep_threshold
        self.min_touches = min_touches
        self.min_volume = min_volume
        self.fvg_threshold = fvg_threshold
        self.retest_threshold = retest_threshold
        self.fvg_max_delay = fvg_max_delay
        self.max_retest_lookback = max_retest_lookback
        self.atr_period = atr_period

    @classmethod
    def from_config(cls, config) -> 'BrokenLevelRetestDetector':
        return cls(
            min_window=config.min_window,
            sweep_threshold=config.sweep_threshold,
            min_touches=config.min_touches,
            min_volume=config.min_volume,
            fvg_threshold=config.fvg_threshold,
            retest_threshold=config.retest_threshold,
            fvg_max_delay=config.fvg_max_delay,
            max_retest_lookback=config.max_retest_lookback,
            atr_period=config.atr_period,
        )

    def _find_gap(self, bars: Sequence[Bar], i: int,
                  direction: Direction) -> Optional[Tuple[float, float]]:
        """(bottom, top) of the imbalance centred on bar i, or None."""
        before = bars[i - 1]
        after = bars[i + 1]
        min_gap = self.fvg_threshold * bars[i].close
        if direction == Direction.BULLISH:
            if before.high < after.low and (after.low - before.high) > min_gap:
                return before.high, after.low
        else:
            if before.low > after.high and (before.low - after.high) > min_gap:
                return after.high, before.low
        return None

    def _find_retest(self, bars: Sequence[Bar], start: int, stop: int,
                     bottom: float, top: float, direction: Direction) -> Optional[int]:
        for j in range(start, stop + 1):
            b = bars[j]
            if direction == Direction.BULLISH:
                if b.low < bottom and bottom <= b.close <= top * (1 + self.retest_threshold):
                    return j
                if b.close < bottom:
                    return None
            else:
                if b.high > top and bottom * (1 - self.retest_threshold) <= b.close <= top:
                    return j
                if b.close > top:
                    return None
        return None

    def detect(self, window: WindowLike, levels: LevelSet,
               symbol: str, timeframe: str) -> List[PatternSignal]:
        bars = _as_bars(window)
        n = len(bars)
        if n < 4 or levels.is_empty:
            return []
        atr = _window_atr(bars, levels, self.atr_period)
        if atr is None:
            return []

        found = {}
        for s in range(max(1, self.min_window), n):
            sweep_bar = bars[s]
            if sweep_bar.volume < self.min_volume:
                continue

            for direction in (Direction.BULLISH, Direction.BEARISH):
                level = find_swept_level(sweep_bar, s, levels, direction,
                                         self.min_touches, self.sweep_threshold)
                if level is None:
                    continue

                last_middle = min(s + self.fvg_max_delay, n - 2)
                for i in range(s + 1, last_middle + 1):
                    zone = self._find_gap(bars, i, direction)
                    if zone is None:
                        continue
                    bottom, top = zone

                    retest_stop = min(n - 1, s + self.max_retest_lookback)
                    j = self._find_retest(bars, i + 2, retest_stop, bottom, top, direction)
                    if j is None:
                        continue

                    retest = bars[j]
                    if direction == Direction.BULLISH and retest.close <= level.price:
                        continue
                    if direction == Direction.BEARISH and retest.close >= level.price:
                        continue

                    key = (j, direction.value)
                    if key in found:
                        continue
                    gap = top - bottom
                    notes = (
                        f"Swept {'low' if direction == Direction.BULLISH else 'high'} "
                        f"{level.price:.4f} at bar {s}; gap {bottom:.4f}-{top:.4f} at bar {i}; "
                        f"retest closed {retest.close:.4f} at bar {j}"
                    )
                    found[key] = self.make_signal(
                        symbol, timeframe, direction, retest,
                        swept_level=level.price,
                        strength=gap / atr,
                        notes=notes,
                    )

        return [found[key] for key in sorted(found)]


DETECTOR_TYPES = (SweepEngulfingDetector, BrokenLevelRetestDetector)


def build_detectors(config) -> List[Detector]:
    """Instantiate the fixed detector bank from a ScanConfig."""
    return [detector_type.from_config(config) for detector_type in DETECTOR_TYPES]
