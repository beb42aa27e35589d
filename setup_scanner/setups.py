"""
Setup Store and Lifecycle Manager

Turns PatternSignals into persisted Setup records. One row per Setup in a
SQLite table (WAL mode, like the stats DB) so external viewers can read
while the scanner writes.

Dedup: the table carries a UNIQUE index on
(symbol, timeframe, pattern_kind, direction, anchor_time). Creation is an
INSERT OR IGNORE followed by a SELECT of the key inside one transaction
under the writer lock, so concurrent ingestion of the same key always
resolves to a single record.

Setups are never deleted; stale active setups are marked expired.
"""

import logging
import sqlite3
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple

from .errors import InvalidTransition, SetupNotFound
from .models import (
    Direction, PatternKind, PatternSignal, Setup, SetupStatus, utc_now,
)

logger = logging.getLogger(__name__)

# ═══════════════════════════════════════════════════════════════════════════
# CONSTANTS
# ═══════════════════════════════════════════════════════════════════════════

DEFAULT_DB_PATH = Path("data") / "setups.db"

ALLOWED_TRANSITIONS: Dict[SetupStatus, Tuple[SetupStatus, ...]] = {
    SetupStatus.ACTIVE: (SetupStatus.TRIGGERED, SetupStatus.COMPLETED, SetupStatus.EXPIRED),
    SetupStatus.TRIGGERED: (SetupStatus.COMPLETED,),
    SetupStatus.COMPLETED: (),
    SetupStatus.EXPIRED: (),
}

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS setups (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    symbol TEXT NOT NULL,
    timeframe TEXT NOT NULL,
    pattern_kind TEXT NOT NULL,
    direction TEXT NOT NULL,
    anchor_time INTEGER NOT NULL,
    entry_price REAL NOT NULL,
    stop_loss REAL NOT NULL,
    target REAL NOT NULL,
    confidence REAL NOT NULL,
    status TEXT NOT NULL DEFAULT 'active',
    created_at REAL NOT NULL,
    updated_at REAL NOT NULL,
    swept_level REAL,
    strength_score REAL,
    notes TEXT DEFAULT ''
);

CREATE UNIQUE INDEX IF NOT EXISTS idx_setups_dedup
    ON setups(symbol, timeframe, pattern_kind, direction, anchor_time);
CREATE INDEX IF NOT EXISTS idx_setups_status ON setups(status, created_at);
CREATE INDEX IF NOT EXISTS idx_setups_symbol ON setups(symbol, timeframe);
"""

SETUP_COLUMNS = [
    'id', 'symbol', 'timeframe', 'pattern_kind', 'direction', 'anchor_time',
    'entry_price', 'stop_loss', 'target', 'confidence', 'status',
    'created_at', 'updated_at', 'swept_level', 'strength_score', 'notes',
]


def _to_epoch(moment: datetime) -> float:
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.timestamp()


def _from_epoch(value: float) -> datetime:
    return datetime.fromtimestamp(value, tz=timezone.utc)


def _row_to_setup(row) -> Setup:
    data = dict(zip(SETUP_COLUMNS, row))
    return Setup(
        id=data['id'],
        symbol=data['symbol'],
        timeframe=data['timeframe'],
        pattern_kind=PatternKind(data['pattern_kind']),
        direction=Direction(data['direction']),
        anchor_time=data['anchor_time'],
        entry_price=data['entry_price'],
        stop_loss=data['stop_loss'],
        target=data['target'],
        confidence=data['confidence'],
        status=SetupStatus(data['status']),
        created_at=_from_epoch(data['created_at']),
        updated_at=_from_epoch(data['updated_at']),
        swept_level=data['swept_level'],
        strength_score=data['strength_score'],
        notes=data['notes'] or '',
    )


# ═══════════════════════════════════════════════════════════════════════════
# STORE
# ═══════════════════════════════════════════════════════════════════════════

class SetupStore:
    """
    SQLite-backed Setup records.
    Single writer (threading.Lock); readers may run concurrently under WAL.
    """

    def __init__(self, db_path: str = None):
        self.db_path = Path(db_path) if db_path else DEFAULT_DB_PATH
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        self._lock = threading.Lock()
        self.conn = sqlite3.connect(str(self.db_path), check_same_thread=False, timeout=30.0)
        self._configure()
        self._create_schema()

        logger.info(f"Setup store initialized at {self.db_path}")

    def _configure(self):
        self.conn.executescript("""
            PRAGMA journal_mode=WAL;
            PRAGMA synchronous=NORMAL;
            PRAGMA temp_store=MEMORY;
        """)

    def _create_schema(self):
        self.conn.executescript(SCHEMA_SQL)
        self.conn.commit()

    def _select_by_id(self, setup_id: int) -> Optional[Setup]:
        cursor = self.conn.execute(
            f"SELECT {', '.join(SETUP_COLUMNS)} FROM setups WHERE id = ?", (setup_id,)
        )
        row = cursor.fetchone()
        return _row_to_setup(row) if row else None

    # ── Write operations ──

    def create_if_absent(self, signal: PatternSignal, stop_loss: float, target: float,
                         confidence: float, now: datetime) -> Tuple[Setup, bool]:
        """
        Compare-and-create on the signal's dedup key.

        Returns:
            (setup, created) where created is False when the key already existed
        """
        symbol, timeframe, kind, direction, anchor = signal.dedup_key()
        ts = _to_epoch(now)
        with self._lock, self.conn:
            cursor = self.conn.execute("""
                INSERT OR IGNORE INTO setups (
                    symbol, timeframe, pattern_kind, direction, anchor_time,
                    entry_price, stop_loss, target, confidence, status,
                    created_at, updated_at, swept_level, strength_score, notes
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                symbol, timeframe, kind, direction, anchor,
                signal.entry_price, stop_loss, target, confidence, SetupStatus.ACTIVE.value,
                ts, ts, signal.swept_level, signal.strength_score, signal.evidence_notes,
            ))
            created = cursor.rowcount == 1
            row = self.conn.execute(f"""
                SELECT {', '.join(SETUP_COLUMNS)} FROM setups
                WHERE symbol = ? AND timeframe = ? AND pattern_kind = ?
                  AND direction = ? AND anchor_time = ?
            """, (symbol, timeframe, kind, direction, anchor)).fetchone()
        return _row_to_setup(row), created

    def update_status(self, setup_id: int, status: SetupStatus, now: datetime) -> Setup:
        """
        Move a setup to `status`.

        Re-marking the current status returns the record unchanged.

        Raises:
            SetupNotFound: Unknown id
            InvalidTransition: Not allowed from the current status
        """
        with self._lock, self.conn:
            current = self._select_by_id(setup_id)
            if current is None:
                raise SetupNotFound(setup_id)
            if current.status == status:
                return current
            if status not in ALLOWED_TRANSITIONS[current.status]:
                raise InvalidTransition(
                    f"Setup {setup_id}: {current.status.value} -> {status.value} not allowed"
                )
            self.conn.execute(
                "UPDATE setups SET status = ?, updated_at = ? WHERE id = ?",
                (status.value, _to_epoch(now), setup_id),
            )
            return self._select_by_id(setup_id)

    def expire_older_than(self, cutoff: datetime, now: datetime) -> List[int]:
        """Mark every active setup created before `cutoff` as expired; returns their ids."""
        with self._lock, self.conn:
            ids = [row[0] for row in self.conn.execute(
                "SELECT id FROM setups WHERE status = ? AND created_at < ? ORDER BY id",
                (SetupStatus.ACTIVE.value, _to_epoch(cutoff)),
            ).fetchall()]
            if ids:
                self.conn.executemany(
                    "UPDATE setups SET status = ?, updated_at = ? WHERE id = ?",
                    [(SetupStatus.EXPIRED.value, _to_epoch(now), setup_id) for setup_id in ids],
                )
        return ids

    # ── Read operations ──

    def get(self, setup_id: int) -> Setup:
        setup = self._select_by_id(setup_id)
        if setup is None:
            raise SetupNotFound(setup_id)
        return setup

    def list_setups(self, status: SetupStatus = None, symbol: str = None,
                    timeframe: str = None, pattern_kind: PatternKind = None,
                    direction: Direction = None, limit: int = 100) -> List[Setup]:
        """Setups matching every given filter, newest first."""
        try:
            where_parts = []
            params = []
            if status:
                where_parts.append("status = ?")
                params.append(status.value)
            if symbol:
                where_parts.append("symbol = ?")
                params.append(symbol)
            if timeframe:
                where_parts.append("timeframe = ?")
                params.append(timeframe)
            if pattern_kind:
                where_parts.append("pattern_kind = ?")
                params.append(pattern_kind.value)
            if direction:
                where_parts.append("direction = ?")
                params.append(direction.value)
            where = ("WHERE " + " AND ".join(where_parts)) if where_parts else ""
            cursor = self.conn.execute(f"""
                SELECT {', '.join(SETUP_COLUMNS)} FROM setups {where}
                ORDER BY created_at DESC, id DESC LIMIT ?
            """, params + [limit])
            return [_row_to_setup(row) for row in cursor.fetchall()]
        except sqlite3.Error as e:
            logger.error(f"Error reading setups: {e}")
            return []

    def count(self, status: SetupStatus = None) -> int:
        if status:
            row = self.conn.execute(
                "SELECT COUNT(*) FROM setups WHERE status = ?", (status.value,)
            ).fetchone()
        else:
            row = self.conn.execute("SELECT COUNT(*) FROM setups").fetchone()
        return row[0]

    def close(self):
        with self._lock:
            self.conn.close()
        logger.info("Setup store closed")


# ═══════════════════════════════════════════════════════════════════════════
# LIFECYCLE
# ═══════════════════════════════════════════════════════════════════════════

@dataclass
class IngestResult:
    setup: Setup
    created: bool


class SetupLifecycleManager:
    """
    Creates, transitions and expires Setups.

    Stops sit at the swept level; targets are risk_reward multiples of the
    entry-to-stop distance. Confidence maps strength s to s / (1 + s).
    """

    def __init__(self, store: SetupStore, risk_reward: float = 2.0,
                 clock: Callable[[], datetime] = utc_now):
        self.store = store
        self.risk_reward = risk_reward
        self._clock = clock

    def bracket(self, signal: PatternSignal) -> Tuple[float, float]:
        """(stop_loss, target) for a signal."""
        stop = signal.swept_level
        if signal.direction == Direction.BULLISH:
            risk = signal.entry_price - stop
            target = signal.entry_price + self.risk_reward * risk
        else:
            risk = stop - signal.entry_price
            target = signal.entry_price - self.risk_reward * risk
        if risk <= 0:
            raise ValueError(
                f"[{signal.symbol} {signal.timeframe}] {signal.direction.value} entry "
                f"{signal.entry_price} on the wrong side of swept level {stop}"
            )
        return stop, target

    @staticmethod
    def confidence(strength: float) -> float:
        if strength <= 0:
            return 0.0
        return strength / (1.0 + strength)

    def ingest_signal(self, signal: PatternSignal) -> IngestResult:
        stop, target = self.bracket(signal)
        setup, created = self.store.create_if_absent(
            signal, stop, target, self.confidence(signal.strength_score), self._clock()
        )
        if created:
            logger.info(
                f"[{setup.symbol} {setup.timeframe}] New setup #{setup.id}: "
                f"{setup.pattern_kind.value} {setup.direction.value} "
                f"entry={setup.entry_price:.4f} stop={setup.stop_loss:.4f} "
                f"target={setup.target:.4f} conf={setup.confidence:.2f}"
            )
        return IngestResult(setup=setup, created=created)

    def ingest(self, signal: PatternSignal) -> Setup:
        """Return the Setup for this signal's dedup key, creating it on first sight."""
        return self.ingest_signal(signal).setup

    def mark_triggered(self, setup_id: int) -> Setup:
        setup = self.store.update_status(setup_id, SetupStatus.TRIGGERED, self._clock())
        logger.info(f"[{setup.symbol} {setup.timeframe}] Setup #{setup_id} triggered")
        return setup

    def mark_completed(self, setup_id: int) -> Setup:
        setup = self.store.update_status(setup_id, SetupStatus.COMPLETED, self._clock())
        logger.info(f"[{setup.symbol} {setup.timeframe}] Setup #{setup_id} completed")
        return setup

    def expire_stale(self, max_age: timedelta) -> List[int]:
        """Expire active setups older than max_age; returns expired ids."""
        now = self._clock()
        expired = self.store.expire_older_than(now - max_age, now)
        if expired:
            logger.info(f"Expired {len(expired)} stale setups (older than {max_age})")
        return expired
