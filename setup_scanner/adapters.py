"""
Bar Source Adapters

Uniform interface over upstream market-data providers. Given
(symbol, timeframe, period) an adapter returns a FetchResult holding an
ordered bar sequence; an empty result is a NO_DATA status, not an error.
Failures raise ProviderError, Timeout or AdapterUnavailable.

Adapters:
- YFinanceBarSource: delayed/free data via yfinance (4h resampled from 1h)
- IBBarSource: real-time IB streams through the ConnectionManager
- ReplayBarSource: stored bars revealed one step per fetch (CSV or in-memory)
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import timedelta
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence, Tuple

import pandas as pd
import yfinance as yf

from .connection import ConnectionManager, ConnectionState
from .errors import AdapterUnavailable, ConnectionExhausted, ProviderError
from .models import Bar, SeriesKey, normalize_timeframe, timeframe_seconds, utc_now
from .pacing import PacingManager, PacingRequest

logger = logging.getLogger(__name__)


PERIODS = ('1d', '5d', '1mo', '3mo', '6mo', '1y', '2y', '5y', '10y', 'ytd', 'max')

# Approximate span of each period, used to clamp intraday requests
PERIOD_DAYS = {
    '1d': 1, '5d': 5, '1mo': 31, '3mo': 92, '6mo': 183, '1y': 366,
    '2y': 731, '5y': 1827, '10y': 3653, 'ytd': 366, 'max': 36500,
}


# ═══════════════════════════════════════════════════════════════════════════
# RESULT TYPES
# ═══════════════════════════════════════════════════════════════════════════

class FetchStatus(Enum):
    OK = "ok"
    NO_DATA = "no_data"


@dataclass
class FetchResult:
    """Outcome of one adapter fetch. NO_DATA is valid and yields zero signals."""
    status: FetchStatus
    bars: Tuple[Bar, ...] = field(default_factory=tuple)
    message: str = ""

    @classmethod
    def ok(cls, bars: Sequence[Bar]) -> 'FetchResult':
        if not bars:
            return cls.no_data("empty response")
        return cls(FetchStatus.OK, tuple(bars))

    @classmethod
    def no_data(cls, message: str = "") -> 'FetchResult':
        return cls(FetchStatus.NO_DATA, (), message)

    @property
    def has_data(self) -> bool:
        return self.status == FetchStatus.OK and len(self.bars) > 0


# ═══════════════════════════════════════════════════════════════════════════
# DATAFRAME CONVERSION
# ═══════════════════════════════════════════════════════════════════════════

_TIME_COLUMNS = ('time', 'datetime', 'date', 'timestamp', 'index')


def _normalize_columns(df: pd.DataFrame) -> pd.DataFrame:
    df.columns = [str(c).strip().lower().replace(' ', '_') for c in df.columns]
    return df


def frame_to_bars(df: Optional[pd.DataFrame], symbol: str, timeframe: str) -> List[Bar]:
    """
    Validate and convert an OHLCV DataFrame into Bars.

    Accepts a time column (time/datetime/date/timestamp) or a datetime
    index. Duplicate timestamps keep the first bar, rows are sorted by
    time, rows with NaN prices or invalid OHLC relationships are dropped.
    """
    if df is None or df.empty:
        return []

    frame = _normalize_columns(df.copy())
    if not any(c in frame.columns for c in _TIME_COLUMNS):
        frame = _normalize_columns(frame.reset_index())
    for candidate in _TIME_COLUMNS:
        if candidate in frame.columns:
            frame = frame.rename(columns={candidate: 'time'})
            break

    required_columns = ['time', 'open', 'high', 'low', 'close']
    missing = [c for c in required_columns if c not in frame.columns]
    if missing:
        raise ProviderError(f"[{symbol} {timeframe}] Missing required columns: {missing}")
    if 'volume' not in frame.columns:
        frame['volume'] = 0.0

    frame['time'] = pd.to_datetime(frame['time'], utc=True)
    frame = frame.dropna(subset=['open', 'high', 'low', 'close'])
    frame['volume'] = frame['volume'].fillna(0)

    # Remove duplicates
    original_len = len(frame)
    frame = frame.drop_duplicates(subset=['time'], keep='first')
    if len(frame) < original_len:
        logger.warning(f"[{symbol} {timeframe}] Removed {original_len - len(frame)} duplicate bars")

    frame = frame.sort_values('time').reset_index(drop=True)

    # Validate OHLC relationships
    invalid_mask = (
        (frame['high'] < frame['low']) |
        (frame['open'] > frame['high']) | (frame['open'] < frame['low']) |
        (frame['close'] > frame['high']) | (frame['close'] < frame['low']) |
        (frame['low'] < 0) | (frame['volume'] < 0)
    )
    if invalid_mask.any():
        logger.warning(
            f"[{symbol} {timeframe}] Dropped {int(invalid_mask.sum())} bars with invalid OHLC relationships"
        )
        frame = frame[~invalid_mask]

    return [
        Bar(
            symbol=symbol,
            timeframe=timeframe,
            open_time=row.time.to_pydatetime(),
            open=float(row.open),
            high=float(row.high),
            low=float(row.low),
            close=float(row.close),
            volume=float(row.volume),
        )
        for row in frame.itertuples(index=False)
    ]


def resample_ohlcv(df: pd.DataFrame, rule: str) -> pd.DataFrame:
    """Aggregate a datetime-indexed OHLCV frame to a coarser bar size."""
    frame = _normalize_columns(df.copy())
    resampled = frame.resample(rule, label='left', closed='left').agg({
        'open': 'first',
        'high': 'max',
        'low': 'min',
        'close': 'last',
        'volume': 'sum',
    })
    return resampled.dropna(subset=['open', 'high', 'low', 'close'])


# ═══════════════════════════════════════════════════════════════════════════
# ADAPTER INTERFACE
# ═══════════════════════════════════════════════════════════════════════════

class BarSourceAdapter:
    """
    Base class for bar sources.

    Subclasses must implement:
      - fetch(symbol, timeframe, period) -> FetchResult
    """

    name: str = "base"
    # True when failures should drive ConnectionManager recovery
    connection_backed: bool = False

    async def start(self):
        pass

    async def stop(self):
        pass

    async def fetch(self, symbol: str, timeframe: str, period: str) -> FetchResult:
        raise NotImplementedError

    def on_exhausted(self, listener: Callable[[ConnectionExhausted], None]):
        """Register for connection exhaustion; no-op for sessionless sources."""

    def get_health_status(self) -> dict:
        return {'adapter': self.name}


# ═══════════════════════════════════════════════════════════════════════════
# YFINANCE (DELAYED / FREE)
# ═══════════════════════════════════════════════════════════════════════════

# yfinance interval per canonical timeframe; 4h is built from 1h
YF_INTERVALS = {
    '1m': '1m',
    '5m': '5m',
    '15m': '15m',
    '30m': '30m',
    '1h': '1h',
    '4h': '1h',
    '1d': '1d',
    '1wk': '1wk',
}

# Longest period Yahoo serves for each intraday interval
YF_MAX_PERIOD = {
    '1m': '5d',
    '5m': '1mo',
    '15m': '1mo',
    '30m': '1mo',
    '1h': '2y',
    '4h': '2y',
}


class YFinanceBarSource(BarSourceAdapter):
    """
    Delayed bars from Yahoo Finance.

    Downloads run in the default executor so the event loop stays free.
    The still-forming last bar is dropped.
    """

    name = "yfinance"
    connection_backed = False

    def __init__(self, pacing: Optional[PacingManager] = None):
        self.pacing = pacing or PacingManager(
            identical_request_delay=0,
            contract_window_seconds=2,
            contract_max_requests=4,
            global_window_seconds=60,
            global_max_requests=60,
        )

    @staticmethod
    def effective_period(timeframe: str, period: str) -> str:
        limit = YF_MAX_PERIOD.get(timeframe)
        if limit and PERIOD_DAYS[period] > PERIOD_DAYS[limit]:
            return limit
        return period

    def _download(self, symbol: str, timeframe: str, period: str) -> pd.DataFrame:
        ticker = yf.Ticker(symbol)
        history = ticker.history(
            period=period,
            interval=YF_INTERVALS[timeframe],
            auto_adjust=False,
        )
        if history is None or history.empty:
            return pd.DataFrame()
        if timeframe == '4h':
            history = resample_ohlcv(history, '4h')
        return history

    async def fetch(self, symbol: str, timeframe: str, period: str) -> FetchResult:
        tf = normalize_timeframe(timeframe)
        yf_period = self.effective_period(tf, period)
        if yf_period != period:
            logger.debug(f"[{symbol} {timeframe}] Period {period} clamped to {yf_period} for yfinance")

        await self.pacing.wait_if_needed(PacingRequest(self.name, symbol, timeframe, yf_period))

        loop = asyncio.get_event_loop()
        try:
            df = await loop.run_in_executor(None, self._download, symbol, tf, yf_period)
        except Exception as e:
            raise ProviderError(f"[{symbol} {timeframe}] yfinance download failed: {e}") from e

        bars = frame_to_bars(df, symbol, timeframe)
        cutoff = utc_now() - timedelta(seconds=timeframe_seconds(tf))
        completed = [bar for bar in bars if bar.open_time <= cutoff]
        if not completed:
            return FetchResult.no_data(f"yfinance returned no completed bars for {symbol} {timeframe}")
        return FetchResult.ok(completed)


# ═══════════════════════════════════════════════════════════════════════════
# INTERACTIVE BROKERS (REAL-TIME, CONNECTION-BACKED)
# ═══════════════════════════════════════════════════════════════════════════

class IBBarSource(BarSourceAdapter):
    """
    Real-time bars from IB through a ConnectionManager.

    First fetch of a key subscribes it (paced, since each subscription is a
    history request); later fetches read the manager's bar history. The
    history span is fixed by the transport, so `period` is not re-requested.
    """

    name = "ib"
    connection_backed = True

    def __init__(self, manager: ConnectionManager, bar_timeout: float = 30.0,
                 pacing: Optional[PacingManager] = None):
        self.manager = manager
        self.bar_timeout = bar_timeout
        self.pacing = pacing or PacingManager()
        self._connect_lock: Optional[asyncio.Lock] = None

    async def start(self):
        await self.manager.connect()

    async def stop(self):
        await self.manager.close()

    def on_exhausted(self, listener: Callable[[ConnectionExhausted], None]):
        self.manager.on_exhausted(listener)

    async def _ensure_connected(self):
        # A session that never came up is retried on each fetch; exhaustion needs connect()
        if self.manager.state != ConnectionState.DISCONNECTED or self.manager.is_exhausted:
            return
        if self._connect_lock is None:
            self._connect_lock = asyncio.Lock()
        async with self._connect_lock:
            if self.manager.state == ConnectionState.DISCONNECTED and not self.manager.is_exhausted:
                await self.manager.connect()

    async def fetch(self, symbol: str, timeframe: str, period: str) -> FetchResult:
        await self._ensure_connected()
        if not self.manager.is_subscribed(symbol, timeframe):
            await self.pacing.wait_if_needed(PacingRequest(self.name, symbol, timeframe, period))
            try:
                await self.manager.subscribe(symbol, timeframe)
            except (AdapterUnavailable, ConnectionExhausted):
                raise
            except Exception as e:
                # Refused again after a healthy reconnect: a bad key, not a dead session
                if (symbol, timeframe) not in self.manager.rejected_keys:
                    self.manager.report_failure(f"[{symbol} {timeframe}] subscribe failed: {e}")
                raise ProviderError(f"[{symbol} {timeframe}] IB subscribe failed: {e}") from e

        bars = self.manager.recent_bars(symbol, timeframe)
        if not bars:
            await self.manager.next_bar(symbol, timeframe, timeout=self.bar_timeout)
            bars = self.manager.recent_bars(symbol, timeframe)
        return FetchResult.ok(bars)

    def get_health_status(self) -> dict:
        health = self.manager.get_health_status()
        health['adapter'] = self.name
        health['pacing'] = self.pacing.get_statistics()
        return health


# ═══════════════════════════════════════════════════════════════════════════
# REPLAY
# ═══════════════════════════════════════════════════════════════════════════

class ReplayBarSource(BarSourceAdapter):
    """
    Replays stored bars as if they were arriving live.

    Each fetch of a key reveals `step` more bars (the first fetch reveals
    `warmup` bars, at least one) and returns everything revealed so far.
    """

    name = "replay"
    connection_backed = False

    def __init__(self, series: Dict[SeriesKey, Sequence[Bar]], step: int = 1, warmup: int = 0):
        self.series: Dict[SeriesKey, Tuple[Bar, ...]] = {
            key: tuple(bars) for key, bars in series.items()
        }
        self.step = max(step, 1)
        self.warmup = warmup
        self._cursors: Dict[SeriesKey, int] = {}

    @classmethod
    def from_csv_dir(cls, directory: str, step: int = 1, warmup: int = 0) -> 'ReplayBarSource':
        """
        Load <SYMBOL>_<TIMEFRAME>.csv files (columns: time, open, high, low,
        close, volume) from a directory.
        """
        path = Path(directory)
        if not path.is_dir():
            raise ProviderError(f"Replay directory not found: {path}")

        series: Dict[SeriesKey, List[Bar]] = {}
        for csv_path in sorted(path.glob('*.csv')):
            stem = csv_path.stem
            if '_' not in stem:
                logger.warning(f"Skipping {csv_path.name}: expected <SYMBOL>_<TIMEFRAME>.csv")
                continue
            symbol, timeframe = stem.rsplit('_', 1)
            try:
                normalize_timeframe(timeframe)
            except ValueError:
                logger.warning(f"Skipping {csv_path.name}: unknown timeframe {timeframe}")
                continue
            series[(symbol, timeframe)] = frame_to_bars(pd.read_csv(csv_path), symbol, timeframe)
            logger.info(f"[{symbol} {timeframe}] Loaded {len(series[(symbol, timeframe)])} replay bars")

        return cls(series, step=step, warmup=warmup)

    def remaining(self, symbol: str, timeframe: str) -> int:
        key = (symbol, timeframe)
        return len(self.series.get(key, ())) - self._cursors.get(key, 0)

    def reset(self):
        self._cursors.clear()

    async def fetch(self, symbol: str, timeframe: str, period: str) -> FetchResult:
        key = (symbol, timeframe)
        bars = self.series.get(key)
        if not bars:
            return FetchResult.no_data(f"no replay data for {symbol} {timeframe}")

        cursor = self._cursors.get(key)
        if cursor is None:
            cursor = max(self.warmup, self.step)
        else:
            cursor += self.step
        cursor = min(cursor, len(bars))
        self._cursors[key] = cursor
        return FetchResult.ok(bars[:cursor])
