"""
Scanner Data Model

Bars, derived significant levels, candidate pattern signals, persisted
setups and the connection session record.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, Tuple, Set, Dict, Any

from .errors import InvalidBar

# (symbol, timeframe)
SeriesKey = Tuple[str, str]


# ═══════════════════════════════════════════════════════════════════════════
# TIMEFRAMES
# ═══════════════════════════════════════════════════════════════════════════

TIMEFRAME_SECONDS: Dict[str, int] = {
    '1m': 60,
    '5m': 5 * 60,
    '15m': 15 * 60,
    '30m': 30 * 60,
    '1h': 60 * 60,
    '4h': 4 * 60 * 60,
    '1d': 24 * 60 * 60,
    '1wk': 7 * 24 * 60 * 60,
}

# IB-style spellings used by the original scanner command line
TIMEFRAME_ALIASES: Dict[str, str] = {
    '1min': '1m',
    '5min': '5m',
    '15min': '15m',
    '30min': '30m',
    '1H': '1h',
    '4H': '4h',
    '1D': '1d',
    '1W': '1wk',
    '1w': '1wk',
}


def normalize_timeframe(timeframe: str) -> str:
    """Map an alias like '1D' to its canonical spelling ('1d')"""
    tf = TIMEFRAME_ALIASES.get(timeframe, timeframe)
    if tf not in TIMEFRAME_SECONDS:
        raise ValueError(
            f"Unknown timeframe: {timeframe}. Must be one of {list(TIMEFRAME_SECONDS.keys())}"
        )
    return tf


def timeframe_seconds(timeframe: str) -> int:
    return TIMEFRAME_SECONDS[normalize_timeframe(timeframe)]


def floor_to_timeframe(moment: datetime, timeframe: str) -> int:
    """Floor a timestamp to the start of its bar, as UTC epoch seconds."""
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    epoch = int(moment.timestamp())
    step = timeframe_seconds(timeframe)
    return epoch - (epoch % step)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


# ═══════════════════════════════════════════════════════════════════════════
# ENUMS
# ═══════════════════════════════════════════════════════════════════════════

class PatternKind(Enum):
    SWEEP_ENGULFING = "sweep_engulfing"
    BROKEN_LEVEL_RETEST = "broken_level_retest"


class Direction(Enum):
    BULLISH = "bullish"
    BEARISH = "bearish"


class SetupStatus(Enum):
    ACTIVE = "active"
    TRIGGERED = "triggered"
    COMPLETED = "completed"
    EXPIRED = "expired"


class LevelKind(Enum):
    HIGH = "high"
    LOW = "low"


# ═══════════════════════════════════════════════════════════════════════════
# BARS AND LEVELS
# ═══════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class Bar:
    """One OHLCV observation. Immutable once produced."""
    symbol: str
    timeframe: str
    open_time: datetime
    open: float
    high: float
    low: float
    close: float
    volume: float

    def __post_init__(self):
        if self.open_time.tzinfo is None:
            object.__setattr__(self, 'open_time', self.open_time.replace(tzinfo=timezone.utc))

        body_high = max(self.open, self.close)
        body_low = min(self.open, self.close)
        if not (self.high >= body_high and body_low >= self.low and self.low >= 0):
            raise InvalidBar(
                f"[{self.symbol} {self.timeframe}] Invalid OHLC at {self.open_time.isoformat()}: "
                f"O={self.open} H={self.high} L={self.low} C={self.close}"
            )
        if self.volume < 0:
            raise InvalidBar(
                f"[{self.symbol} {self.timeframe}] Negative volume at {self.open_time.isoformat()}"
            )

    @property
    def key(self) -> SeriesKey:
        return (self.symbol, self.timeframe)

    @property
    def body_high(self) -> float:
        return max(self.open, self.close)

    @property
    def body_low(self) -> float:
        return min(self.open, self.close)

    @property
    def body_size(self) -> float:
        return abs(self.close - self.open)

    @property
    def range(self) -> float:
        return self.high - self.low


@dataclass(frozen=True)
class SignificantLevel:
    """
    A pivot high/low. Derived each cycle, never persisted.

    touch_indices holds the window index of every merged pivot, earliest
    first; hand-built levels may leave it empty, in which case all
    `touches` count as formed at source_index.
    """
    price: float
    kind: LevelKind
    source_index: int
    touches: int = 1
    touch_indices: Tuple[int, ...] = ()

    def touches_before(self, index: int, lag: int = 0) -> int:
        """Touches whose pivot was confirmed (pivot index + lag) before bar `index`."""
        indices = self.touch_indices or (self.source_index,) * self.touches
        return sum(1 for t in indices if t + lag < index)


@dataclass(frozen=True)
class LevelSet:
    """
    Output of the Significant-Level Finder for one window.

    confirm_lag is the number of bars after a pivot needed to confirm it
    (the finder's half width).
    """
    highs: Tuple[SignificantLevel, ...] = ()
    lows: Tuple[SignificantLevel, ...] = ()
    atr: Optional[float] = None
    confirm_lag: int = 0

    @classmethod
    def empty(cls) -> 'LevelSet':
        return cls()

    @property
    def is_empty(self) -> bool:
        return not self.highs and not self.lows

    @property
    def high_prices(self) -> Tuple[float, ...]:
        return tuple(level.price for level in self.highs)

    @property
    def low_prices(self) -> Tuple[float, ...]:
        return tuple(level.price for level in self.lows)


# ═══════════════════════════════════════════════════════════════════════════
# SIGNALS AND SETUPS
# ═══════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class PatternSignal:
    """Candidate emitted by a detector; not unique across cycles."""
    symbol: str
    timeframe: str
    pattern_kind: PatternKind
    direction: Direction
    anchor_time: datetime
    entry_price: float
    swept_level: float
    strength_score: float
    evidence_notes: str = ""

    def dedup_key(self) -> Tuple[str, str, str, str, int]:
        return (
            self.symbol,
            self.timeframe,
            self.pattern_kind.value,
            self.direction.value,
            floor_to_timeframe(self.anchor_time, self.timeframe),
        )


@dataclass
class Setup:
    """Persisted, lifecycle-tracked record created from a PatternSignal."""
    id: int
    symbol: str
    timeframe: str
    pattern_kind: PatternKind
    direction: Direction
    anchor_time: int
    entry_price: float
    stop_loss: float
    target: float
    confidence: float
    status: SetupStatus
    created_at: datetime
    updated_at: datetime
    swept_level: Optional[float] = None
    strength_score: Optional[float] = None
    notes: str = ""

    @property
    def risk_reward(self) -> float:
        risk = abs(self.entry_price - self.stop_loss)
        if risk == 0:
            return 0.0
        return abs(self.target - self.entry_price) / risk

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'symbol': self.symbol,
            'timeframe': self.timeframe,
            'pattern_kind': self.pattern_kind.value,
            'direction': self.direction.value,
            'anchor_time': self.anchor_time,
            'entry_price': self.entry_price,
            'stop_loss': self.stop_loss,
            'target': self.target,
            'confidence': self.confidence,
            'status': self.status.value,
            'created_at': self.created_at.isoformat(),
            'updated_at': self.updated_at.isoformat(),
            'swept_level': self.swept_level,
            'strength_score': self.strength_score,
            'risk_reward': self.risk_reward,
            'notes': self.notes,
        }


# ═══════════════════════════════════════════════════════════════════════════
# CONNECTION SESSION STATE
# ═══════════════════════════════════════════════════════════════════════════

@dataclass
class ConnectionSessionState:
    """Enough state to resume subscriptions after a restart."""
    subscribed_keys: Set[SeriesKey] = field(default_factory=set)
    last_heartbeat_time: Optional[datetime] = None
    reconnect_attempt_count: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            'subscribed_keys': [list(key) for key in sorted(self.subscribed_keys)],
            'last_heartbeat_time': (
                self.last_heartbeat_time.isoformat() if self.last_heartbeat_time else None
            ),
            'reconnect_attempt_count': self.reconnect_attempt_count,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ConnectionSessionState':
        heartbeat = data.get('last_heartbeat_time')
        return cls(
            subscribed_keys={(str(s), str(tf)) for s, tf in data.get('subscribed_keys', [])},
            last_heartbeat_time=datetime.fromisoformat(heartbeat) if heartbeat else None,
            reconnect_attempt_count=int(data.get('reconnect_attempt_count', 0)),
        )
