"""
Scanner configuration

ScanConfig is a plain value handed to the scheduler and the components it
builds; nothing reads configuration from module-level state.

Precedence (lowest to highest): dataclass defaults, config.yaml,
environment (.env via python-dotenv: IB_HOST, IB_PORT, IB_CLIENT_ID),
command-line overrides.
"""

import logging
import os
from dataclasses import dataclass, field, fields, asdict
from datetime import timedelta
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from dotenv import load_dotenv

from .adapters import PERIODS
from .errors import InvalidConfiguration
from .models import normalize_timeframe

logger = logging.getLogger(__name__)

ADAPTERS = ('yfinance', 'ib', 'replay')
LOG_LEVELS = ('debug', 'info', 'warning', 'error', 'critical')


@dataclass
class ScanConfig:
    # Universe and cadence
    symbols: List[str] = field(default_factory=list)
    timeframes: List[str] = field(default_factory=list)
    interval_minutes: float = 5.0
    lookback: int = 50
    period: str = '1y'
    scan_outside_market_hours: bool = False

    # Detection thresholds
    min_volume: float = 10000
    price_rejection_threshold: float = 0.005
    fvg_threshold: float = 0.003
    min_touches: int = 2
    retest_threshold: float = 0.005
    retracement_threshold: float = 0.33
    volume_increase_threshold: float = 1.5
    sweep_threshold: float = 0.005
    min_candle_size_atr: float = 0.5
    pivot_half_width: int = 3
    atr_period: int = 14
    min_window: int = 2
    fvg_max_delay: int = 3
    max_retest_lookback: int = 20

    # Setups
    risk_reward: float = 2.0
    setup_max_age_hours: float = 24.0

    # Execution
    max_concurrency: int = 4
    request_timeout: float = 30.0

    # Data source
    adapter: str = 'yfinance'
    replay_dir: Optional[str] = None
    ib_host: str = '127.0.0.1'
    ib_port: int = 4002
    ib_client_id: int = 1
    heartbeat_interval: float = 10.0
    heartbeat_timeout: float = 5.0
    reconnect_base_delay: float = 2.0
    reconnect_max_delay: float = 60.0
    max_reconnect_attempts: int = 5

    # Storage
    db_path: str = './data/setups.db'
    session_state_path: str = './data/session_state.json'

    log_level: str = 'info'

    @property
    def interval_seconds(self) -> float:
        return self.interval_minutes * 60.0

    @property
    def setup_max_age(self) -> timedelta:
        return timedelta(hours=self.setup_max_age_hours)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ScanConfig':
        """
        Build from a (possibly sectioned) mapping. Nested sections are
        flattened, so `detection: {min_touches: 3}` sets min_touches.
        """
        known = {f.name for f in fields(cls)}
        flat: Dict[str, Any] = {}
        for key, value in (data or {}).items():
            if isinstance(value, dict):
                flat.update(value)
            else:
                flat[key] = value

        unknown = sorted(k for k in flat if k not in known)
        if unknown:
            raise InvalidConfiguration(f"Unknown configuration keys: {unknown}")
        return cls(**flat)

    @classmethod
    def load(cls, path: Optional[str] = None, overrides: Optional[Dict[str, Any]] = None,
             use_env: bool = True) -> 'ScanConfig':
        """
        Load config.yaml, apply environment and explicit overrides, validate.

        Raises:
            InvalidConfiguration: Unreadable file, unknown keys, invalid values
        """
        data: Dict[str, Any] = {}
        if path:
            config_path = Path(path)
            if not config_path.exists():
                raise InvalidConfiguration(f"Configuration file not found at {config_path}")
            try:
                with open(config_path, 'r') as f:
                    data = yaml.safe_load(f) or {}
            except yaml.YAMLError as e:
                raise InvalidConfiguration(f"Error parsing {config_path}: {e}") from e
            if not isinstance(data, dict):
                raise InvalidConfiguration(f"{config_path} must hold a mapping")

        config = cls.from_dict(data)

        if use_env:
            load_dotenv()
            config.ib_host = os.getenv('IB_HOST', config.ib_host)
            try:
                config.ib_port = int(os.getenv('IB_PORT', config.ib_port))
                config.ib_client_id = int(os.getenv('IB_CLIENT_ID', config.ib_client_id))
            except ValueError as e:
                raise InvalidConfiguration(f"Invalid IB_PORT / IB_CLIENT_ID: {e}") from e

        for key, value in (overrides or {}).items():
            if value is None:
                continue
            if not hasattr(config, key):
                raise InvalidConfiguration(f"Unknown override: {key}")
            setattr(config, key, value)

        config.validate()
        return config

    def validate(self):
        """
        Check every value; normalizes symbols (upper case) and timeframes
        (canonical spelling) in place.

        Raises:
            InvalidConfiguration: On the first invalid value
        """
        if not self.symbols:
            raise InvalidConfiguration("At least one symbol is required")
        if not self.timeframes:
            raise InvalidConfiguration("At least one timeframe is required")

        self.symbols = list(dict.fromkeys(str(s).strip().upper() for s in self.symbols))
        if any(not s for s in self.symbols):
            raise InvalidConfiguration("Empty symbol in symbol list")
        try:
            self.timeframes = list(dict.fromkeys(normalize_timeframe(str(tf)) for tf in self.timeframes))
        except ValueError as e:
            raise InvalidConfiguration(str(e)) from e

        if self.period not in PERIODS:
            raise InvalidConfiguration(f"Unknown period: {self.period}. Must be one of {list(PERIODS)}")
        if self.adapter not in ADAPTERS:
            raise InvalidConfiguration(f"Unknown adapter: {self.adapter}. Must be one of {list(ADAPTERS)}")
        if self.adapter == 'replay' and not self.replay_dir:
            raise InvalidConfiguration("replay adapter needs replay_dir")
        if str(self.log_level).lower() not in LOG_LEVELS:
            raise InvalidConfiguration(f"Unknown log level: {self.log_level}")

        positive = {
            'interval_minutes': self.interval_minutes,
            'lookback': self.lookback,
            'max_concurrency': self.max_concurrency,
            'request_timeout': self.request_timeout,
            'pivot_half_width': self.pivot_half_width,
            'atr_period': self.atr_period,
            'min_touches': self.min_touches,
            'risk_reward': self.risk_reward,
            'setup_max_age_hours': self.setup_max_age_hours,
            'heartbeat_interval': self.heartbeat_interval,
            'heartbeat_timeout': self.heartbeat_timeout,
            'reconnect_base_delay': self.reconnect_base_delay,
            'reconnect_max_delay': self.reconnect_max_delay,
            'max_reconnect_attempts': self.max_reconnect_attempts,
            'fvg_max_delay': self.fvg_max_delay,
            'max_retest_lookback': self.max_retest_lookback,
        }
        for name, value in positive.items():
            if value is None or value <= 0:
                raise InvalidConfiguration(f"{name} must be positive, got {value}")

        non_negative = {
            'min_volume': self.min_volume,
            'price_rejection_threshold': self.price_rejection_threshold,
            'fvg_threshold': self.fvg_threshold,
            'retest_threshold': self.retest_threshold,
            'retracement_threshold': self.retracement_threshold,
            'volume_increase_threshold': self.volume_increase_threshold,
            'sweep_threshold': self.sweep_threshold,
            'min_candle_size_atr': self.min_candle_size_atr,
            'min_window': self.min_window,
        }
        for name, value in non_negative.items():
            if value is None or value < 0:
                raise InvalidConfiguration(f"{name} must not be negative, got {value}")

        if self.lookback < 2 * self.pivot_half_width + 1:
            logger.warning(
                f"lookback {self.lookback} < {2 * self.pivot_half_width + 1} bars: "
                f"no significant levels will ever be found"
            )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)
