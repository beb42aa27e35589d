"""
Continuous market-pattern setup scanner
"""
from .errors import (
    ScannerError,
    InvalidConfiguration,
    AdapterUnavailable,
    Timeout,
    ConnectionExhausted,
    ProviderError,
    InvalidBar,
    OutOfOrderBar,
    SetupNotFound,
    InvalidTransition,
)
from .models import (
    Bar,
    SignificantLevel,
    LevelSet,
    PatternSignal,
    Setup,
    ConnectionSessionState,
    PatternKind,
    Direction,
    SetupStatus,
    LevelKind,
)
from .window import BarWindow
from .levels import LevelFinder, find_significant_levels, average_true_range
from .detectors import (
    Detector,
    SweepEngulfingDetector,
    BrokenLevelRetestDetector,
    DETECTOR_TYPES,
    build_detectors,
)
from .setups import SetupStore, SetupLifecycleManager, IngestResult
from .session_state import SessionStateStore
from .connection import ConnectionManager, ConnectionState, MarketDataTransport, IBTransport
from .pacing import PacingManager, PacingRequest
from .adapters import (
    BarSourceAdapter,
    FetchResult,
    FetchStatus,
    YFinanceBarSource,
    IBBarSource,
    ReplayBarSource,
)
from .market_hours import MarketHours
from .config import ScanConfig
from .scheduler import ScanScheduler, TickReport

__all__ = [
    # Errors
    'ScannerError',
    'InvalidConfiguration',
    'AdapterUnavailable',
    'Timeout',
    'ConnectionExhausted',
    'ProviderError',
    'InvalidBar',
    'OutOfOrderBar',
    'SetupNotFound',
    'InvalidTransition',

    # Data model
    'Bar',
    'SignificantLevel',
    'LevelSet',
    'PatternSignal',
    'Setup',
    'ConnectionSessionState',
    'PatternKind',
    'Direction',
    'SetupStatus',
    'LevelKind',

    # Detection
    'BarWindow',
    'LevelFinder',
    'find_significant_levels',
    'average_true_range',
    'Detector',
    'SweepEngulfingDetector',
    'BrokenLevelRetestDetector',
    'DETECTOR_TYPES',
    'build_detectors',

    # Setups
    'SetupStore',
    'SetupLifecycleManager',
    'IngestResult',

    # Data sources
    'SessionStateStore',
    'ConnectionManager',
    'ConnectionState',
    'MarketDataTransport',
    'IBTransport',
    'PacingManager',
    'PacingRequest',
    'BarSourceAdapter',
    'FetchResult',
    'FetchStatus',
    'YFinanceBarSource',
    'IBBarSource',
    'ReplayBarSource',

    # Scheduling
    'MarketHours',
    'ScanConfig',
    'ScanScheduler',
    'TickReport',
]
