#!/usr/bin/env python
"""
Setup Scanner - Single Command Startup

Loads config.yaml, applies command-line overrides and runs the continuous
scanner until interrupted.

Usage:
    python run.py --symbols AAPL MSFT --timeframes 1h 1d
    python run.py --adapter ib --interval 1 --scan-outside-market-hours
    python run.py --once
    python run.py --show-setups active
"""

import argparse
import asyncio
import logging
import signal
import sys
from pathlib import Path

from setup_scanner.adapters import IBBarSource, ReplayBarSource, YFinanceBarSource
from setup_scanner.config import ScanConfig
from setup_scanner.connection import ConnectionManager, IBTransport
from setup_scanner.errors import InvalidConfiguration
from setup_scanner.models import SetupStatus
from setup_scanner.scheduler import ScanScheduler
from setup_scanner.session_state import SessionStateStore
from setup_scanner.setups import SetupLifecycleManager, SetupStore

logger = logging.getLogger(__name__)

DEFAULT_CONFIG = Path(__file__).parent / 'config.yaml'


def build_adapter(config: ScanConfig):
    """Bar source named by config.adapter"""
    if config.adapter == 'ib':
        transport = IBTransport(
            host=config.ib_host,
            port=config.ib_port,
            client_id=config.ib_client_id,
        )
        manager = ConnectionManager(
            transport,
            SessionStateStore(config.session_state_path),
            heartbeat_interval=config.heartbeat_interval,
            heartbeat_timeout=config.heartbeat_timeout,
            base_delay=config.reconnect_base_delay,
            max_delay=config.reconnect_max_delay,
            max_attempts=config.max_reconnect_attempts,
        )
        return IBBarSource(manager, bar_timeout=config.request_timeout)
    if config.adapter == 'replay':
        return ReplayBarSource.from_csv_dir(config.replay_dir, warmup=config.lookback)
    return YFinanceBarSource()


def build_scanner(config: ScanConfig) -> ScanScheduler:
    store = SetupStore(config.db_path)
    lifecycle = SetupLifecycleManager(store, risk_reward=config.risk_reward)
    return ScanScheduler(config, build_adapter(config), lifecycle)


def print_startup_banner(config: ScanConfig):
    """Print startup information"""
    print("\n" + "=" * 70)
    print("  📈 Setup Scanner")
    print("=" * 70)
    print(f"  Symbols: {', '.join(config.symbols)}")
    print(f"  Timeframes: {', '.join(config.timeframes)}")
    print(f"  Source: {config.adapter}" + (
        f" ({config.ib_host}:{config.ib_port})" if config.adapter == 'ib' else ""
    ))
    print(f"  Interval: {config.interval_minutes:g} min, lookback {config.lookback} bars, period {config.period}")
    print(f"  Market hours only: {not config.scan_outside_market_hours}")
    print(f"  Setups: {config.db_path}")
    print("=" * 70 + "\n")


def print_setups(config: ScanConfig, status: str):
    store = SetupStore(config.db_path)
    try:
        wanted = None if status == 'all' else SetupStatus(status)
        setups = store.list_setups(status=wanted, limit=100)
        if not setups:
            print("No setups found")
            return
        for s in setups:
            print(
                f"#{s.id:<5} {s.symbol:<6} {s.timeframe:<4} {s.pattern_kind.value:<20} "
                f"{s.direction.value:<8} {s.status.value:<10} entry={s.entry_price:.2f} "
                f"stop={s.stop_loss:.2f} target={s.target:.2f} conf={s.confidence:.2f} "
                f"{s.created_at:%Y-%m-%d %H:%M}"
            )
    finally:
        store.close()


def parse_args(argv=None):
    parser = argparse.ArgumentParser(
        description='Continuously scan symbols for sweep-engulfing and broken-level-retest setups'
    )
    parser.add_argument('--config', type=str, default=str(DEFAULT_CONFIG),
                        help='Path to config.yaml')
    parser.add_argument('--symbols', nargs='+', help='Symbols to scan')
    parser.add_argument('--timeframes', nargs='+', help='Timeframes (1m 5m 15m 30m 1h 4h 1d 1wk)')
    parser.add_argument('--interval', type=float, dest='interval_minutes',
                        help='Minutes between scans')
    parser.add_argument('--lookback', type=int, help='Bars per window')
    parser.add_argument('--min-volume', type=float, dest='min_volume',
                        help='Minimum volume of a sweep bar')
    parser.add_argument('--price-rejection', type=float, dest='price_rejection_threshold',
                        help='Equal-level tolerance (fraction of price)')
    parser.add_argument('--fvg-threshold', type=float, dest='fvg_threshold',
                        help='Minimum fair value gap (fraction of price)')
    parser.add_argument('--min-touches', type=int, dest='min_touches',
                        help='Touches for a level to count as liquidity')
    parser.add_argument('--retest-threshold', type=float, dest='retest_threshold',
                        help='Retest tolerance beyond the gap (fraction of price)')
    parser.add_argument('--retracement-threshold', type=float, dest='retracement_threshold',
                        help='Retracement of the sweep candle reported as evidence')
    parser.add_argument('--period', type=str, help='History span to request (1d 5d 1mo ... max)')
    parser.add_argument('--scan-outside-market-hours', action='store_true', default=None,
                        dest='scan_outside_market_hours', help='Scan even when the market is closed')
    parser.add_argument('--adapter', choices=['yfinance', 'ib', 'replay'], help='Bar source')
    parser.add_argument('--replay-dir', type=str, dest='replay_dir',
                        help='Directory of <SYMBOL>_<TIMEFRAME>.csv files for the replay adapter')
    parser.add_argument('--log-level', type=str, dest='log_level',
                        choices=['debug', 'info', 'warning', 'error', 'critical'],
                        help='Override log level from config')
    parser.add_argument('--once', action='store_true', help='Run a single tick and exit')
    parser.add_argument('--show-setups', nargs='?', const='active', metavar='STATUS',
                        choices=['active', 'triggered', 'completed', 'expired', 'all'],
                        help='Print stored setups and exit')
    return parser.parse_args(argv)


async def run_scanner(scanner: ScanScheduler, once: bool):
    loop = asyncio.get_event_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, scanner.request_shutdown)
        except NotImplementedError:
            # Windows event loops; KeyboardInterrupt still ends the process
            logger.debug(f"Signal handler for {sig.name} not supported on this platform")
    await scanner.run(max_ticks=1 if once else None)


def main(argv=None):
    """Main entry point"""
    args = parse_args(argv)

    overrides = {
        key: getattr(args, key)
        for key in (
            'symbols', 'timeframes', 'interval_minutes', 'lookback', 'min_volume',
            'price_rejection_threshold', 'fvg_threshold', 'min_touches', 'retest_threshold',
            'retracement_threshold', 'period', 'scan_outside_market_hours', 'adapter',
            'replay_dir', 'log_level',
        )
    }

    try:
        config = ScanConfig.load(args.config, overrides=overrides)
    except InvalidConfiguration as e:
        print(f"Error loading configuration: {e}")
        sys.exit(2)

    logging.basicConfig(
        level=getattr(logging, config.log_level.upper()),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    if args.show_setups:
        print_setups(config, args.show_setups)
        return

    print_startup_banner(config)
    scanner = build_scanner(config)
    try:
        asyncio.run(run_scanner(scanner, args.once))
    except KeyboardInterrupt:
        print("\n\n👋 Shutting down gracefully...")
    finally:
        scanner.lifecycle.store.close()


if __name__ == '__main__':
    main()
