"""
Scan Scheduler

Drives the pipeline once per interval:

    adapter.fetch -> BarWindow.merge -> LevelFinder -> detectors -> lifecycle

Keys (symbol x timeframe) run concurrently up to max_concurrency. Each key
owns its window; a worker only touches its own. A failure for one key is
logged and recorded in the TickReport, never raised out of tick().
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, List, Optional, Sequence

from .adapters import BarSourceAdapter, FetchResult
from .config import ScanConfig
from .detectors import Detector, build_detectors
from .errors import ConnectionExhausted, ScannerError, Timeout
from .levels import LevelFinder
from .market_hours import MarketHours
from .models import SeriesKey, utc_now
from .setups import SetupLifecycleManager
from .window import BarWindow

logger = logging.getLogger(__name__)


@dataclass
class KeyOutcome:
    """Result of one key in one tick."""
    key: SeriesKey
    new_bars: int = 0
    signals: int = 0
    new_setup_ids: List[int] = field(default_factory=list)
    error: Optional[str] = None


@dataclass
class TickReport:
    started_at: datetime
    skipped_market_closed: bool = False
    keys_scanned: int = 0
    signals: int = 0
    new_setup_ids: List[int] = field(default_factory=list)
    expired_setup_ids: List[int] = field(default_factory=list)
    failures: Dict[SeriesKey, str] = field(default_factory=dict)
    duration_seconds: float = 0.0

    @property
    def ok(self) -> bool:
        return not self.failures

    def to_dict(self) -> dict:
        return {
            'started_at': self.started_at.isoformat(),
            'skipped_market_closed': self.skipped_market_closed,
            'keys_scanned': self.keys_scanned,
            'signals': self.signals,
            'new_setups': list(self.new_setup_ids),
            'expired_setups': list(self.expired_setup_ids),
            'failures': {f"{s}:{tf}": reason for (s, tf), reason in self.failures.items()},
            'duration_seconds': round(self.duration_seconds, 3),
        }


class ScanScheduler:
    """
    Fixed-interval scanner over symbol x timeframe.

    run() loops until request_shutdown(); tick() is one pass and can be
    driven by an external scheduler instead.
    """

    def __init__(
        self,
        config: ScanConfig,
        adapter: BarSourceAdapter,
        lifecycle: SetupLifecycleManager,
        market_hours: Optional[MarketHours] = None,
        level_finder: Optional[LevelFinder] = None,
        detectors: Optional[Sequence[Detector]] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.config = config
        self.adapter = adapter
        self.lifecycle = lifecycle
        self.market_hours = market_hours or MarketHours()
        self.level_finder = level_finder or LevelFinder(
            half_width=config.pivot_half_width,
            atr_period=config.atr_period,
            merge_tolerance=config.price_rejection_threshold,
        )
        self.detectors: List[Detector] = list(detectors) if detectors is not None else build_detectors(config)
        self._clock = clock

        self.keys: List[SeriesKey] = [
            (symbol, timeframe)
            for symbol in config.symbols
            for timeframe in config.timeframes
        ]
        self._windows: Dict[SeriesKey, BarWindow] = {
            key: BarWindow(key[0], key[1], capacity=config.lookback) for key in self.keys
        }

        self._stop_event = asyncio.Event()
        self._tick_lock: Optional[asyncio.Lock] = None
        self.connection_exhausted = False
        self.tick_count = 0
        self.last_report: Optional[TickReport] = None

        self.adapter.on_exhausted(self._on_connection_exhausted)

    def window(self, symbol: str, timeframe: str) -> BarWindow:
        return self._windows[(symbol, timeframe)]

    # ── Single pass ──

    async def tick(self) -> TickReport:
        """Scan every key once. Never raises for a per-key failure."""
        if self._tick_lock is None:
            self._tick_lock = asyncio.Lock()

        async with self._tick_lock:
            started = time.monotonic()
            report = TickReport(started_at=self._clock())

            if not self.config.scan_outside_market_hours and not self.market_hours.is_open():
                report.skipped_market_closed = True
                logger.info("Market closed, tick skipped")
                self._finish(report, started)
                return report

            semaphore = asyncio.Semaphore(self.config.max_concurrency)
            outcomes = await asyncio.gather(
                *(self._run_key(semaphore, key) for key in self.keys)
            )

            for outcome in outcomes:
                if outcome.error is not None:
                    report.failures[outcome.key] = outcome.error
                    continue
                report.keys_scanned += 1
                report.signals += outcome.signals
                report.new_setup_ids.extend(outcome.new_setup_ids)

            try:
                report.expired_setup_ids = self.lifecycle.expire_stale(self.config.setup_max_age)
            except Exception as e:
                logger.error(f"Setup expiry failed: {e}", exc_info=True)

            self._finish(report, started)
            logger.info(
                f"Tick {self.tick_count}: {report.keys_scanned}/{len(self.keys)} keys, "
                f"{report.signals} signals, {len(report.new_setup_ids)} new setups, "
                f"{len(report.expired_setup_ids)} expired, {len(report.failures)} skipped "
                f"({report.duration_seconds:.2f}s)"
            )
            return report

    def _finish(self, report: TickReport, started: float):
        report.duration_seconds = time.monotonic() - started
        self.tick_count += 1
        self.last_report = report

    async def _run_key(self, semaphore: asyncio.Semaphore, key: SeriesKey) -> KeyOutcome:
        symbol, timeframe = key
        async with semaphore:
            try:
                return await self._scan_key(symbol, timeframe)
            except asyncio.CancelledError:
                raise
            except ScannerError as e:
                reason = f"{type(e).__name__}: {e}"
                logger.warning(f"[{symbol} {timeframe}] Skipped this cycle: {reason}")
            except Exception as e:
                reason = f"{type(e).__name__}: {e}"
                logger.error(f"[{symbol} {timeframe}] Skipped this cycle: {reason}", exc_info=True)
            return KeyOutcome(key=key, error=reason)

    async def _fetch(self, symbol: str, timeframe: str) -> FetchResult:
        try:
            return await asyncio.wait_for(
                self.adapter.fetch(symbol, timeframe, self.config.period),
                timeout=self.config.request_timeout,
            )
        except asyncio.TimeoutError:
            raise Timeout(
                f"fetch exceeded {self.config.request_timeout:.1f}s"
            ) from None

    async def _scan_key(self, symbol: str, timeframe: str) -> KeyOutcome:
        key = (symbol, timeframe)
        outcome = KeyOutcome(key=key)

        result = await self._fetch(symbol, timeframe)
        if not result.has_data:
            logger.debug(f"[{symbol} {timeframe}] No data{': ' + result.message if result.message else ''}")
            return outcome

        window = self._windows[key]
        # merge() validates ordering of the whole response before appending
        outcome.new_bars = window.merge(result.bars)

        bars = window.snapshot()
        levels = self.level_finder.find(bars)

        signals = []
        for detector in self.detectors:
            signals.extend(detector.safe_detect(bars, levels, symbol, timeframe))
        outcome.signals = len(signals)

        for signal in signals:
            try:
                ingested = self.lifecycle.ingest_signal(signal)
            except ValueError as e:
                logger.warning(f"[{symbol} {timeframe}] Rejected signal: {e}")
                continue
            if ingested.created:
                outcome.new_setup_ids.append(ingested.setup.id)

        return outcome

    # ── Loop ──

    async def run(self, max_ticks: Optional[int] = None):
        """
        Tick every interval until request_shutdown() (or max_ticks ticks).

        The in-flight tick always completes; per-request timeouts bound it.
        """
        logger.info(
            f"Scanner starting: {len(self.config.symbols)} symbols x "
            f"{len(self.config.timeframes)} timeframes via {self.adapter.name}, "
            f"every {self.config.interval_minutes:g} min"
        )
        try:
            await self.adapter.start()
        except ScannerError as e:
            logger.error(f"Adapter {self.adapter.name} failed to start: {e}")

        loop = asyncio.get_event_loop()
        ticks = 0
        try:
            while not self._stop_event.is_set():
                tick_started = loop.time()
                await self.tick()
                ticks += 1
                if max_ticks is not None and ticks >= max_ticks:
                    break

                remaining = self.config.interval_seconds - (loop.time() - tick_started)
                if remaining <= 0:
                    continue
                try:
                    await asyncio.wait_for(self._stop_event.wait(), timeout=remaining)
                except asyncio.TimeoutError:
                    pass
        finally:
            await self.adapter.stop()
            logger.info(f"Scanner stopped after {ticks} ticks")

    def request_shutdown(self):
        """Cooperative stop: the current tick finishes, no new tick starts."""
        if not self._stop_event.is_set():
            logger.info("Shutdown requested")
        self._stop_event.set()

    def _on_connection_exhausted(self, error: ConnectionExhausted):
        self.connection_exhausted = True
        logger.error(
            f"Data connection exhausted after {error.attempts} attempts; keys on "
            f"{self.adapter.name} are skipped until a manual reconnect"
        )

    def get_status(self) -> dict:
        return {
            'keys': [f"{s}:{tf}" for s, tf in self.keys],
            'tick_count': self.tick_count,
            'connection_exhausted': self.connection_exhausted,
            'windows': {f"{s}:{tf}": len(w) for (s, tf), w in self._windows.items()},
            'last_report': self.last_report.to_dict() if self.last_report else None,
            'adapter': self.adapter.get_health_status(),
        }
