"""
Real-time Connection Service

Owns the lifecycle of a stateful provider session: connect, heartbeat,
drop detection, reconnection with exponential backoff and jitter, and
persisted session state so a restart resumes every subscription.

State machine:
    DISCONNECTED -> CONNECTING     connect()
    CONNECTING   -> CONNECTED      handshake + heartbeat succeeded, keys re-subscribed (refused keys skipped)
    CONNECTED    -> DEGRADED       missed heartbeat, socket error, provider error
    DEGRADED     -> CONNECTING     after backoff, up to max_attempts
    DEGRADED     -> DISCONNECTED   attempts exhausted (ConnectionExhausted)

The transport is pluggable: IBTransport talks to IB Gateway/TWS through
ib_insync; tests drive the manager with an in-memory transport.
"""

import asyncio
import logging
import random
from collections import deque
from datetime import date, datetime, timezone
from enum import Enum
from typing import Awaitable, Callable, Deque, Dict, List, Optional, Set

from ib_insync import IB, Stock

from .errors import AdapterUnavailable, ConnectionExhausted, ProviderError, Timeout
from .models import Bar, ConnectionSessionState, SeriesKey, normalize_timeframe, utc_now
from .session_state import SessionStateStore

logger = logging.getLogger(__name__)

BarCallback = Callable[[Bar], None]


class ConnectionState(Enum):
    """Connection state machine states"""
    DISCONNECTED = 0
    CONNECTING = 1
    CONNECTED = 2
    DEGRADED = 3


# ═══════════════════════════════════════════════════════════════════════════
# TRANSPORTS
# ═══════════════════════════════════════════════════════════════════════════

class MarketDataTransport:
    """
    One provider session.

    Subclasses must implement open/close/is_open/heartbeat/subscribe/
    unsubscribe. When the underlying socket drops they call
    self.on_disconnect(reason) if it is set.
    """

    name: str = "transport"

    def __init__(self):
        self.on_disconnect: Optional[Callable[[str], None]] = None

    async def open(self):
        raise NotImplementedError

    async def close(self):
        raise NotImplementedError

    def is_open(self) -> bool:
        raise NotImplementedError

    async def heartbeat(self):
        """Round-trip to the provider; raises if the session is dead."""
        raise NotImplementedError

    async def subscribe(self, symbol: str, timeframe: str, on_bar: BarCallback) -> List[Bar]:
        """Start streaming completed bars to on_bar; returns the completed history."""
        raise NotImplementedError

    async def unsubscribe(self, symbol: str, timeframe: str):
        raise NotImplementedError

    def _notify_disconnect(self, reason: str):
        if self.on_disconnect:
            self.on_disconnect(reason)


# ib_insync barSizeSetting per canonical timeframe
IB_BAR_SIZES = {
    '1m': '1 min',
    '5m': '5 mins',
    '15m': '15 mins',
    '30m': '30 mins',
    '1h': '1 hour',
    '4h': '4 hours',
    '1d': '1 day',
    '1wk': '1 week',
}

# ib_insync durationStr per history period
IB_DURATIONS = {
    '1d': '1 D',
    '5d': '5 D',
    '1mo': '1 M',
    '3mo': '3 M',
    '6mo': '6 M',
    '1y': '1 Y',
    '2y': '2 Y',
    '5y': '5 Y',
    '10y': '10 Y',
    'ytd': 'YTD',
    'max': '10 Y',
}

# Initial keepUpToDate load when no period is forced; IB rejects long spans of small bars
STREAM_DURATIONS = {
    '1m': '1 D',
    '5m': '5 D',
    '15m': '10 D',
    '30m': '20 D',
    '1h': '1 M',
    '4h': '3 M',
    '1d': '1 Y',
    '1wk': '5 Y',
}

# IB error codes that mean the session is gone or its subscriptions were lost
SESSION_LOST_CODES = {1100, 1101}
INFORMATIONAL_CODES = {2104, 2106, 2158}


def ib_bar_to_bar(ib_bar, symbol: str, timeframe: str) -> Bar:
    """Convert an ib_insync BarData into a Bar (UTC open time)."""
    raw = ib_bar.date
    if isinstance(raw, datetime):
        open_time = raw if raw.tzinfo else raw.replace(tzinfo=timezone.utc)
    elif isinstance(raw, date):
        open_time = datetime(raw.year, raw.month, raw.day, tzinfo=timezone.utc)
    else:
        # String format: 'YYYYMMDD  HH:MM:SS' or 'YYYYMMDD'
        text = str(raw).strip()
        fmt = '%Y%m%d  %H:%M:%S' if ' ' in text else '%Y%m%d'
        open_time = datetime.strptime(text, fmt).replace(tzinfo=timezone.utc)

    return Bar(
        symbol=symbol,
        timeframe=timeframe,
        open_time=open_time,
        open=float(ib_bar.open),
        high=float(ib_bar.high),
        low=float(ib_bar.low),
        close=float(ib_bar.close),
        volume=max(float(ib_bar.volume), 0.0),
    )


class IBTransport(MarketDataTransport):
    """
    IB Gateway / TWS session via ib_insync.

    Each subscription is a reqHistoricalData(keepUpToDate=True) stream; a
    bar is emitted once IB starts the next one (hasNewBar), so only
    completed bars reach the manager.
    """

    name = "ib"

    def __init__(
        self,
        host: str = '127.0.0.1',
        port: int = 4002,
        client_id: int = 1,
        timeout: int = 10,
        period: Optional[str] = None,
        use_rth: bool = False,
        ib: Optional[IB] = None,
    ):
        """
        Args:
            host: IB Gateway host (default: 127.0.0.1)
            port: IB Gateway port (4002=paper, 4001=live)
            client_id: Unique client ID (1-32)
            timeout: Connection timeout in seconds
            period: History period for the initial load (None = per-timeframe default)
            use_rth: Regular trading hours only
        """
        super().__init__()
        self.host = host
        self.port = port
        self.client_id = client_id
        self.timeout = timeout
        self.period = period
        self.use_rth = use_rth

        self.ib = ib or IB()
        self._streams: Dict[SeriesKey, object] = {}

        self.ib.disconnectedEvent += self._on_disconnected
        self.ib.errorEvent += self._on_error

    async def open(self):
        logger.info(f"Connecting to IB Gateway at {self.host}:{self.port} (client {self.client_id})")
        await self.ib.connectAsync(
            host=self.host,
            port=self.port,
            clientId=self.client_id,
            timeout=self.timeout,
        )
        if not self.ib.isConnected():
            raise ProviderError(f"IB Gateway at {self.host}:{self.port} refused the session")
        logger.info(f"Connected to IB Gateway (server version {self.ib.client.serverVersion()})")

    async def close(self):
        for key, stream in list(self._streams.items()):
            try:
                self.ib.cancelHistoricalData(stream)
            except Exception as e:
                logger.debug(f"[{key[0]} {key[1]}] Cancel on close failed: {e}")
        self._streams.clear()
        if self.ib.isConnected():
            self.ib.disconnect()

    def is_open(self) -> bool:
        return self.ib.isConnected()

    async def heartbeat(self):
        return await self.ib.reqCurrentTimeAsync()

    def _duration(self, timeframe: str) -> str:
        if self.period:
            return IB_DURATIONS[self.period]
        return STREAM_DURATIONS[timeframe]

    async def subscribe(self, symbol: str, timeframe: str, on_bar: BarCallback) -> List[Bar]:
        tf = normalize_timeframe(timeframe)
        contract = Stock(symbol, 'SMART', 'USD')
        stream = await self.ib.reqHistoricalDataAsync(
            contract,
            endDateTime='',
            durationStr=self._duration(tf),
            barSizeSetting=IB_BAR_SIZES[tf],
            whatToShow='TRADES',
            useRTH=self.use_rth,
            formatDate=2,
            keepUpToDate=True,
        )
        if stream is None:
            raise ProviderError(f"[{symbol} {timeframe}] IB returned no stream")

        def _on_update(bars, hasNewBar: bool):
            # bars[-1] is the freshly opened bar; bars[-2] just completed
            if hasNewBar and len(bars) >= 2:
                try:
                    on_bar(ib_bar_to_bar(bars[-2], symbol, timeframe))
                except ValueError as e:
                    logger.warning(f"[{symbol} {timeframe}] Dropped invalid streamed bar: {e}")

        stream.updateEvent += _on_update
        self._streams[(symbol, timeframe)] = stream

        history = []
        for ib_bar in list(stream)[:-1]:
            try:
                history.append(ib_bar_to_bar(ib_bar, symbol, timeframe))
            except ValueError as e:
                logger.warning(f"[{symbol} {timeframe}] Dropped invalid history bar: {e}")
        logger.info(f"[{symbol} {timeframe}] keepUpToDate stream started ({len(history)} bars)")
        return history

    async def unsubscribe(self, symbol: str, timeframe: str):
        stream = self._streams.pop((symbol, timeframe), None)
        if stream is not None and self.ib.isConnected():
            self.ib.cancelHistoricalData(stream)

    def _on_disconnected(self):
        logger.warning("Disconnected from IB Gateway")
        self._streams.clear()
        self._notify_disconnect("socket disconnected")

    def _on_error(self, reqId: int, errorCode: int, errorString: str, contract=None):
        if errorCode in INFORMATIONAL_CODES:
            logger.debug(f"Info {errorCode}: {errorString}")
            return
        if errorCode in SESSION_LOST_CODES:
            logger.error(f"ERROR {errorCode}: {errorString}")
            self._notify_disconnect(f"IB error {errorCode}")
        elif errorCode == 162:
            logger.error(f"ERROR 162: Pacing violation - {errorString}")
        else:
            logger.warning(f"Error {errorCode} (req {reqId}): {errorString}")


# ═══════════════════════════════════════════════════════════════════════════
# CONNECTION MANAGER
# ═══════════════════════════════════════════════════════════════════════════

class ConnectionManager:
    """
    Manages a transport session with automatic recovery.

    Features:
    - Reconnection with exponential backoff and jitter, bounded attempts
    - Background heartbeat task independent of scan ticks
    - Re-subscription of every tracked key before bars flow again
    - ConnectionSessionState persisted on every change
    - Per-key bar queues with strict timestamp ordering
    """

    def __init__(
        self,
        transport: MarketDataTransport,
        state_store: SessionStateStore,
        heartbeat_interval: float = 10.0,
        heartbeat_timeout: float = 5.0,
        connect_timeout: float = 15.0,
        base_delay: float = 2.0,
        max_delay: float = 60.0,
        max_attempts: int = 5,
        history_capacity: int = 500,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        rng: Callable[[], float] = random.random,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.transport = transport
        self.state_store = state_store
        self.heartbeat_interval = heartbeat_interval
        self.heartbeat_timeout = heartbeat_timeout
        self.connect_timeout = connect_timeout
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.max_attempts = max_attempts
        self.history_capacity = history_capacity
        self._sleep = sleep
        self._rng = rng
        self._clock = clock

        self.state = ConnectionState.DISCONNECTED
        self.session = ConnectionSessionState()
        self._exhausted = False
        self._closing = False

        # Keys subscribed on the current transport session
        self._live_keys: Set[SeriesKey] = set()
        # Persisted keys the provider refused on the last (re)connect, with the reason
        self.rejected_keys: Dict[SeriesKey, str] = {}

        self._history: Dict[SeriesKey, Deque[Bar]] = {}
        self._pending: Dict[SeriesKey, Deque[Bar]] = {}
        self._bar_events: Dict[SeriesKey, asyncio.Event] = {}
        self._last_bar_time: Dict[SeriesKey, datetime] = {}

        self._reconnect_lock: Optional[asyncio.Lock] = None
        self._heartbeat_task: Optional[asyncio.Task] = None
        self._reconnect_task: Optional[asyncio.Task] = None
        self._exhaustion_listeners: List[Callable[[ConnectionExhausted], None]] = []

        # Connection metrics
        self.connection_attempts = 0
        self.reconnection_count = 0
        self.last_connection_time: Optional[datetime] = None
        self.last_bar_received: Optional[datetime] = None

        self.transport.on_disconnect = self._on_transport_disconnect

    # ── Public API ──

    @property
    def is_exhausted(self) -> bool:
        return self._exhausted

    def on_exhausted(self, listener: Callable[[ConnectionExhausted], None]):
        """Register a callback fired once per exhaustion."""
        self._exhaustion_listeners.append(listener)

    async def connect(self):
        """
        Establish a session and restore persisted subscriptions.

        Keys the provider refuses are listed in rejected_keys and retried on
        the next fetch; they do not fail the connect.

        Raises:
            AdapterUnavailable: If the handshake or heartbeat failed
        """
        if self.state == ConnectionState.CONNECTED:
            logger.info(f"Already connected to {self.transport.name}")
            return

        self._closing = False
        self._exhausted = False
        self.session = self.state_store.load()
        self.state = ConnectionState.CONNECTING
        self.connection_attempts += 1

        try:
            await self._establish()
        except Exception as e:
            self.state = ConnectionState.DISCONNECTED
            logger.error(f"Failed to connect to {self.transport.name}: {e}")
            raise AdapterUnavailable(f"Connect to {self.transport.name} failed: {e}") from e

        logger.info(
            f"Connected to {self.transport.name} "
            f"({len(self._live_keys)}/{len(self.session.subscribed_keys)} subscriptions restored)"
        )

    async def subscribe(self, symbol: str, timeframe: str):
        """
        Register interest in a key; persisted before returning.

        Raises:
            ConnectionExhausted: Reconnects exhausted, needs connect()
            AdapterUnavailable: No active session
        """
        self._ensure_usable()
        key = (symbol, timeframe)
        if key in self._live_keys:
            return

        await self._subscribe_on_transport(key)
        self.rejected_keys.pop(key, None)
        self.session.subscribed_keys.add(key)
        self._persist()
        logger.info(f"[{symbol} {timeframe}] Subscribed")

    async def unsubscribe(self, symbol: str, timeframe: str):
        key = (symbol, timeframe)
        if key in self._live_keys and self.state == ConnectionState.CONNECTED:
            await self.transport.unsubscribe(symbol, timeframe)
        self._live_keys.discard(key)
        self.rejected_keys.pop(key, None)
        self.session.subscribed_keys.discard(key)
        self._persist()
        logger.info(f"[{symbol} {timeframe}] Unsubscribed")

    async def next_bar(self, symbol: str, timeframe: str, timeout: float) -> Bar:
        """
        Wait for the next undelivered bar of a key.

        Raises:
            ConnectionExhausted: Reconnects exhausted
            AdapterUnavailable: Key not subscribed
            Timeout: No bar within `timeout` seconds
        """
        if self._exhausted:
            raise self._exhausted_error()
        key = (symbol, timeframe)
        if key not in self.session.subscribed_keys:
            raise AdapterUnavailable(f"[{symbol} {timeframe}] Not subscribed")

        pending = self._pending.setdefault(key, deque())
        event = self._bar_events.setdefault(key, asyncio.Event())
        loop = asyncio.get_event_loop()
        deadline = loop.time() + timeout

        while not pending:
            remaining = deadline - loop.time()
            if remaining <= 0:
                raise Timeout(f"[{symbol} {timeframe}] No bar within {timeout:.1f}s")
            event.clear()
            try:
                await asyncio.wait_for(event.wait(), remaining)
            except asyncio.TimeoutError:
                raise Timeout(f"[{symbol} {timeframe}] No bar within {timeout:.1f}s") from None
            if self._exhausted:
                raise self._exhausted_error()

        return pending.popleft()

    def recent_bars(self, symbol: str, timeframe: str) -> List[Bar]:
        """Every bar received for a key, oldest first (bounded by history_capacity)."""
        return list(self._history.get((symbol, timeframe), ()))

    def is_subscribed(self, symbol: str, timeframe: str) -> bool:
        return (symbol, timeframe) in self._live_keys

    def report_failure(self, reason: str):
        """Called by connection-backed adapters on ProviderError; starts recovery."""
        if self.state != ConnectionState.CONNECTED or self._closing:
            return
        logger.warning(f"Provider failure reported: {reason}")
        self._reconnect_task = asyncio.ensure_future(self.handle_drop(reason))

    async def handle_drop(self, reason: str) -> bool:
        """
        Move to DEGRADED and run the reconnect loop.

        Returns:
            True if the session was recovered
        """
        if self._exhausted or self._closing:
            return False
        lock = self._get_reconnect_lock()
        if lock.locked():
            logger.debug(f"Reconnect already in progress, ignoring: {reason}")
            return False

        async with lock:
            self.state = ConnectionState.DEGRADED
            self._live_keys.clear()
            self.reconnection_count += 1
            logger.warning(f"Connection degraded: {reason}")
            return await self._reconnect_loop(reason)

    async def close(self):
        """Stop background tasks and close the transport. Persisted state is kept."""
        self._closing = True
        current = asyncio.current_task()
        for task in (self._heartbeat_task, self._reconnect_task):
            if task and task is not current and not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self._heartbeat_task = None
        self._reconnect_task = None
        try:
            await self.transport.close()
        finally:
            self._live_keys.clear()
            self.state = ConnectionState.DISCONNECTED
            logger.info(f"Connection to {self.transport.name} closed")

    def get_health_status(self) -> dict:
        now = self._clock()
        health = {
            'connected': self.state == ConnectionState.CONNECTED,
            'state': self.state.name,
            'exhausted': self._exhausted,
            'subscribed_keys': sorted(f"{s}:{tf}" for s, tf in self.session.subscribed_keys),
            'rejected_keys': {f"{s}:{tf}": reason for (s, tf), reason in sorted(self.rejected_keys.items())},
            'reconnect_attempt_count': self.session.reconnect_attempt_count,
            'connection_attempts': self.connection_attempts,
            'reconnection_count': self.reconnection_count,
        }
        if self.last_connection_time:
            health['uptime_seconds'] = (now - self.last_connection_time).total_seconds()
        if self.session.last_heartbeat_time:
            health['last_heartbeat_age_seconds'] = (
                now - self.session.last_heartbeat_time
            ).total_seconds()
        if self.last_bar_received:
            health['last_bar_age_seconds'] = (now - self.last_bar_received).total_seconds()
        return health

    # ── Internals ──

    def _get_reconnect_lock(self) -> asyncio.Lock:
        # Created lazily so the lock binds to the running loop
        if self._reconnect_lock is None:
            self._reconnect_lock = asyncio.Lock()
        return self._reconnect_lock

    def _exhausted_error(self) -> ConnectionExhausted:
        return ConnectionExhausted(
            f"{self.transport.name}: reconnect attempts exhausted "
            f"({self.session.reconnect_attempt_count}/{self.max_attempts}), call connect()",
            attempts=self.session.reconnect_attempt_count,
        )

    def _ensure_usable(self):
        if self._exhausted:
            raise self._exhausted_error()
        if self.state != ConnectionState.CONNECTED:
            raise AdapterUnavailable(
                f"No active {self.transport.name} session (state={self.state.name})"
            )

    def _persist(self):
        self.state_store.save(self.session)

    def _backoff_delay(self, attempt: int) -> float:
        """
        base_delay * 2^n capped at max_delay, jittered by +/-25%, where
        n = attempt - 1 is the number of failed attempts before this one
        (attempt is 1-based, so the first retry waits base_delay).
        """
        delay =min(self.base_delay * (2 ** (attempt - 1)), self.max_delay)
        return delay * (0.75 + self._rng() * 0.5)

    async def _establish(self):
        """open -> heartbeat -> resubscribe -> CONNECTED. Raises on open or heartbeat failure."""
        if self.transport.is_open():
            await self.transport.close()
        await asyncio.wait_for(self.transport.open(), self.connect_timeout)
        await asyncio.wait_for(self.transport.heartbeat(), self.heartbeat_timeout)
        self._record_heartbeat()

        self._live_keys.clear()
        await self._resubscribe_all()

        self.state = ConnectionState.CONNECTED
        self.last_connection_time = self._clock()
        self._start_heartbeat()

    async def _resubscribe_all(self):
        """
        Re-subscribe every persisted key. A key the provider rejects is
        logged and left persisted for the next attempt; it never fails the
        session for the other keys.
        """
        self.rejected_keys.clear()
        if not self.session.subscribed_keys:
            return
        logger.info(f"Re-subscribing {len(self.session.subscribed_keys)} keys...")
        for key in sorted(self.session.subscribed_keys):
            try:
                await self._subscribe_on_transport(key)
            except Exception as e:
                self.rejected_keys[key] = str(e)
                logger.warning(f"[{key[0]} {key[1]}] Re-subscribe failed, skipping key: {e}")
                continue
            logger.info(f"[{key[0]} {key[1]}] Re-subscribed")

        if self.rejected_keys:
            logger.warning(
                f"{len(self.rejected_keys)}/{len(self.session.subscribed_keys)} keys "
                f"not re-subscribed on {self.transport.name}"
            )

    async def _subscribe_on_transport(self, key: SeriesKey):
        symbol, timeframe = key
        history = await self.transport.subscribe(symbol, timeframe, self._deliver)
        self._live_keys.add(key)
        for bar in history:
            self._deliver(bar)

    def _deliver(self, bar: Bar):
        key = bar.key
        last = self._last_bar_time.get(key)
        if last is not None and bar.open_time <= last:
            return
        self._last_bar_time[key] = bar.open_time
        self._history.setdefault(key, deque(maxlen=self.history_capacity)).append(bar)
        self._pending.setdefault(key, deque(maxlen=self.history_capacity)).append(bar)
        event = self._bar_events.get(key)
        if event is not None:
            event.set()
        self.last_bar_received = self._clock()

    def _record_heartbeat(self):
        self.session.last_heartbeat_time = self._clock()
        self.session.reconnect_attempt_count = 0
        self._persist()

    def _start_heartbeat(self):
        current = asyncio.current_task()
        if self._heartbeat_task and self._heartbeat_task is not current and not self._heartbeat_task.done():
            self._heartbeat_task.cancel()
        self._heartbeat_task = asyncio.ensure_future(self._heartbeat_loop())

    async def _heartbeat_loop(self):
        while self.state == ConnectionState.CONNECTED and not self._closing:
            await asyncio.sleep(self.heartbeat_interval)
            if self.state != ConnectionState.CONNECTED or self._closing:
                return
            try:
                await asyncio.wait_for(self.transport.heartbeat(), self.heartbeat_timeout)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                reason = f"missed heartbeat ({type(e).__name__}: {e})"
                self._reconnect_task = asyncio.ensure_future(self.handle_drop(reason))
                return
            self._record_heartbeat()

    def _on_transport_disconnect(self, reason: str):
        if self.state != ConnectionState.CONNECTED or self._closing:
            return
        self._reconnect_task = asyncio.ensure_future(self.handle_drop(reason))

    async def _reconnect_loop(self, reason: str) -> bool:
        attempt = self.session.reconnect_attempt_count
        while attempt < self.max_attempts:
            attempt += 1
            self.session.reconnect_attempt_count = attempt
            self._persist()

            delay = self._backoff_delay(attempt)
            logger.warning(
                f"Reconnect attempt {attempt}/{self.max_attempts} to {self.transport.name} "
                f"in {delay:.1f}s (reason: {reason})"
            )
            await self._sleep(delay)
            if self._closing:
                return False

            self.state = ConnectionState.CONNECTING
            try:
                await self._establish()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self.state = ConnectionState.DEGRADED
                reason = f"{type(e).__name__}: {e}"
                logger.warning(f"Reconnect attempt {attempt}/{self.max_attempts} failed: {reason}")
                continue

            logger.info(
                f"Reconnected to {self.transport.name} after {attempt} attempt(s), "
                f"{len(self._live_keys)} keys re-subscribed"
            )
            return True

        self._exhaust()
        return False

    def _exhaust(self):
        self.state = ConnectionState.DISCONNECTED
        self._exhausted = True
        self.session.reconnect_attempt_count = self.max_attempts
        self._persist()

        error = self._exhausted_error()
        logger.error(str(error))
        for event in self._bar_events.values():
            event.set()
        for listener in self._exhaustion_listeners:
            try:
                listener(error)
            except Exception as e:
                logger.error(f"Exhaustion listener failed: {e}", exc_info=True)
