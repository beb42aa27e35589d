"""
Per-key bar window

Fixed-capacity ring buffer of the most recent bars for one
(symbol, timeframe) key. Rejects out-of-order bars so the level finder and
detectors only ever see strictly increasing timestamps.
"""

import logging
from collections import deque
from typing import Deque, Iterable, Optional, Tuple

from .errors import OutOfOrderBar
from .models import Bar, SeriesKey

logger = logging.getLogger(__name__)


class BarWindow:
    """
    Ordered, fixed-capacity window owned by one scan worker.

    append() enforces strict timestamp order. merge() accepts an overlapping
    provider response (e.g. a full history refetch): the response itself must be
    strictly increasing, bars at or before the window's last timestamp are
    dropped as already seen.
    """

    def __init__(self, symbol: str, timeframe: str, capacity: int = 50):
        if capacity < 1:
            raise ValueError(f"Window capacity must be positive, got {capacity}")
        self.symbol = symbol
        self.timeframe = timeframe
        self.capacity = capacity
        self._bars: Deque[Bar] = deque(maxlen=capacity)

    @property
    def key(self) -> SeriesKey:
        return (self.symbol, self.timeframe)

    @property
    def last(self) -> Optional[Bar]:
        return self._bars[-1] if self._bars else None

    @property
    def is_full(self) -> bool:
        return len(self._bars) == self.capacity

    def __len__(self) -> int:
        return len(self._bars)

    def _check_key(self, bar: Bar):
        if bar.key != self.key:
            raise ValueError(
                f"Bar for {bar.symbol} {bar.timeframe} pushed into window "
                f"{self.symbol} {self.timeframe}"
            )

    def append(self, bar: Bar):
        """Append one bar; raises OutOfOrderBar unless strictly newer than the last."""
        self._check_key(bar)
        last = self.last
        if last is not None and bar.open_time <= last.open_time:
            raise OutOfOrderBar(
                f"[{self.symbol} {self.timeframe}] Bar at {bar.open_time.isoformat()} "
                f"is not newer than last bar at {last.open_time.isoformat()}"
            )
        self._bars.append(bar)

    def merge(self, bars: Iterable[Bar]) -> int:
        """
        Merge a provider response into the window.

        Args:
            bars: Bars in provider order

        Returns:
            Number of new bars appended

        Raises:
            OutOfOrderBar: If the response is not strictly increasing in time
        """
        incoming = list(bars)
        for prev, cur in zip(incoming, incoming[1:]):
            if cur.open_time <= prev.open_time:
                raise OutOfOrderBar(
                    f"[{self.symbol} {self.timeframe}] Provider returned bar at "
                    f"{cur.open_time.isoformat()} after {prev.open_time.isoformat()}"
                )

        last = self.last
        appended = 0
        for bar in incoming:
            self._check_key(bar)
            if last is not None and bar.open_time <= last.open_time:
                continue
            self._bars.append(bar)
            last = bar
            appended += 1

        if appended:
            logger.debug(f"[{self.symbol} {self.timeframe}] Window +{appended} bars ({len(self)}/{self.capacity})")
        return appended

    def snapshot(self) -> Tuple[Bar, ...]:
        """Immutable copy handed to the level finder and detectors."""
        return tuple(self._bars)

    def clear(self):
        self._bars.clear()
