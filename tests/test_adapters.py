"""
Tests for bar source adapters and DataFrame conversion
"""

import asyncio
from datetime import datetime, timezone

import numpy as np
import pandas as pd
import pytest

from setup_scanner import adapters
from setup_scanner.adapters import (
    FetchStatus, IBBarSource, ReplayBarSource, YFinanceBarSource, frame_to_bars,
)
from setup_scanner.connection import ConnectionManager
from setup_scanner.errors import ConnectionExhausted, ProviderError, Timeout
from setup_scanner.session_state import SessionStateStore


@pytest.fixture
def hourly_frame():
    """yfinance-style history: capitalised columns on a tz-aware DatetimeIndex"""
    np.random.seed(42)
    index = pd.date_range('2024-03-04 08:00', periods=8, freq='h', tz='UTC', name='Date')
    close = 100 + np.cumsum(np.random.randn(8) * 0.5)
    open_price = close + np.random.randn(8) * 0.2
    return pd.DataFrame({
        'Open': open_price,
        'High': np.maximum(open_price, close) + 0.3,
        'Low': np.minimum(open_price, close) - 0.3,
        'Close': close,
        'Volume': np.random.randint(10000, 50000, 8),
        'Dividends': 0.0,
    }, index=index)


class TestFrameToBars:

    def test_datetime_index(self, hourly_frame):
        bars = frame_to_bars(hourly_frame, 'AAPL', '1h')
        assert len(bars) == 8
        assert bars[0].open_time == datetime(2024, 3, 4, 8, tzinfo=timezone.utc)
        assert bars[0].close == pytest.approx(hourly_frame['Close'].iloc[0])
        assert all(a.open_time < b.open_time for a, b in zip(bars, bars[1:]))

    def test_cleaning(self, caplog):
        df = pd.DataFrame({
            'time': ['2024-03-04 10:00', '2024-03-04 09:00', '2024-03-04 09:00',
                     '2024-03-04 11:00', '2024-03-04 12:00'],
            'open': [101, 100, 100, 102, 103],
            'high': [102, 101, 101, 101, 104],
            'low': [100, 99, 99, 100, 102],
            'close': [101.5, 100.5, 100.5, 100.5, np.nan],
            'volume': [10, 20, 20, 30, 40],
        })
        bars = frame_to_bars(df, 'AAPL', '1h')

        # duplicate 09:00 kept once, 11:00 open above high dropped, NaN close dropped
        assert [b.open_time.hour for b in bars] == [9, 10]
        assert "duplicate" in caplog.text
        assert "invalid OHLC" in caplog.text

    def test_missing_columns(self):
        df = pd.DataFrame({'time': ['2024-03-04'], 'open': [1.0], 'close': [1.0]})
        with pytest.raises(ProviderError):
            frame_to_bars(df, 'AAPL', '1d')

    def test_empty(self):
        assert frame_to_bars(pd.DataFrame(), 'AAPL', '1d') == []
        assert frame_to_bars(None, 'AAPL', '1d') == []


class FakeTicker:
    calls = []
    frame = None
    error = None

    def __init__(self, symbol):
        self.symbol = symbol

    def history(self, period, interval, auto_adjust):
        FakeTicker.calls.append((self.symbol, period, interval))
        if FakeTicker.error:
            raise FakeTicker.error
        return FakeTicker.frame


@pytest.fixture
def fake_ticker(monkeypatch, hourly_frame):
    FakeTicker.calls = []
    FakeTicker.frame = hourly_frame
    FakeTicker.error = None
    monkeypatch.setattr(adapters.yf, 'Ticker', FakeTicker)
    return FakeTicker


class TestYFinanceBarSource:

    def test_hourly_fetch(self, fake_ticker):
        result = asyncio.run(YFinanceBarSource().fetch('AAPL', '1h', '1y'))
        assert result.status == FetchStatus.OK
        assert len(result.bars) == 8
        assert fake_ticker.calls == [('AAPL', '1y', '1h')]

    def test_intraday_period_clamped(self, fake_ticker):
        asyncio.run(YFinanceBarSource().fetch('AAPL', '1h', '5y'))
        assert fake_ticker.calls == [('AAPL', '2y', '1h')]

    def test_four_hour_resampled(self, fake_ticker, hourly_frame):
        result = asyncio.run(YFinanceBarSource().fetch('AAPL', '4H', '1mo'))
        assert [b.open_time.hour for b in result.bars] == [8, 12]
        first = result.bars[0]
        assert first.open == pytest.approx(hourly_frame['Open'].iloc[0])
        assert first.close == pytest.approx(hourly_frame['Close'].iloc[3])
        assert first.volume == pytest.approx(hourly_frame['Volume'].iloc[:4].sum())
        assert fake_ticker.calls[0][2] == '1h'

    def test_empty_history_is_no_data(self, fake_ticker):
        fake_ticker.frame = pd.DataFrame()
        result = asyncio.run(YFinanceBarSource().fetch('AAPL', '1d', '1y'))
        assert result.status == FetchStatus.NO_DATA
        assert not result.has_data

    def test_download_error_is_provider_error(self, fake_ticker):
        fake_ticker.error = RuntimeError("HTTP 404")
        with pytest.raises(ProviderError):
            asyncio.run(YFinanceBarSource().fetch('AAPL', '1d', '1y'))


class TestReplayBarSource:

    def test_incremental_reveal(self, make_bars, sweep_rows):
        bars = make_bars(sweep_rows)
        source = ReplayBarSource({('TEST', '1h'): bars}, step=1, warmup=3)

        async def fetches():
            return [await source.fetch('TEST', '1h', '1y') for _ in range(4)]

        results = asyncio.run(fetches())
        assert [len(r.bars) for r in results] == [3, 4, 5, 5]
        assert source.remaining('TEST', '1h') == 0

        source.reset()
        assert source.remaining('TEST', '1h') == 5

    def test_unknown_key_no_data(self):
        result = asyncio.run(ReplayBarSource({}).fetch('NOPE', '1h', '1y'))
        assert result.status == FetchStatus.NO_DATA

    def test_from_csv_dir(self, tmp_path):
        (tmp_path / "AAPL_1h.csv").write_text(
            "time,open,high,low,close,volume\n"
            "2024-03-04 14:00,100,101,99,100.5,1000\n"
            "2024-03-04 15:00,100.5,102,100,101.5,1200\n"
        )
        (tmp_path / "notes.csv").write_text("a,b\n1,2\n")
        (tmp_path / "MSFT_3h.csv").write_text("time,open,high,low,close,volume\n")

        source = ReplayBarSource.from_csv_dir(tmp_path, warmup=10)

        assert list(source.series) == [('AAPL', '1h')]
        result = asyncio.run(source.fetch('AAPL', '1h', '1y'))
        assert len(result.bars) == 2
        assert result.bars[1].close == 101.5

    def test_missing_directory(self, tmp_path):
        with pytest.raises(ProviderError):
            ReplayBarSource.from_csv_dir(tmp_path / "absent")


class TestIBBarSource:
    """Test the connection-backed source over an in-memory transport"""

    def make_source(self, transport, tmp_path, recorded_sleep, **kwargs):
        manager = ConnectionManager(
            transport,
            SessionStateStore(tmp_path / "session.json"),
            heartbeat_interval=60,
            sleep=recorded_sleep,
            rng=lambda: 0.5,
            **kwargs,
        )
        return IBBarSource(manager, bar_timeout=0.05)

    def test_first_fetch_connects_and_subscribes(self, make_bars, sweep_rows, fake_transport_cls,
                                                 tmp_path, recorded_sleep):
        history = make_bars(sweep_rows, symbol='AAPL')
        transport = fake_transport_cls({('AAPL', '1h'): history})
        source = self.make_source(transport, tmp_path, recorded_sleep)

        async def scenario():
            first = await source.fetch('AAPL', '1h', '1y')
            second = await source.fetch('AAPL', '1h', '1y')
            await source.stop()
            return first, second

        first, second = asyncio.run(scenario())
        assert first.bars == tuple(history)
        assert second.bars == tuple(history)
        assert transport.subscribe_calls == [('AAPL', '1h')]

    def test_no_bars_times_out(self, fake_transport_cls, tmp_path, recorded_sleep):
        source = self.make_source(fake_transport_cls(), tmp_path, recorded_sleep)

        async def scenario():
            try:
                await source.fetch('AAPL', '1h', '1y')
            finally:
                await source.stop()

        with pytest.raises(Timeout):
            asyncio.run(scenario())

    def test_subscribe_failure_starts_recovery(self, fake_transport_cls, tmp_path, recorded_sleep):
        transport = fake_transport_cls()
        source = self.make_source(transport, tmp_path, recorded_sleep)

        async def scenario():
            await source.start()
            transport.fail_subscribe = True
            try:
                await source.fetch('AAPL', '1h', '1y')
            except ProviderError as e:
                error = e
            recovered = await source.manager._reconnect_task
            await source.stop()
            return error, recovered

        error, recovered = asyncio.run(scenario())
        assert "subscribe failed" in str(error)
        assert recovered is True
        assert recorded_sleep.delays == [2.0]

    def test_rejected_key_fails_alone(self, make_bars, sweep_rows, fake_transport_cls,
                                      tmp_path, recorded_sleep):
        history = make_bars(sweep_rows, symbol='AAPL')
        transport = fake_transport_cls({('AAPL', '1h'): history})
        source = self.make_source(transport, tmp_path, recorded_sleep)

        async def scenario():
            await source.start()
            await source.fetch('AAPL', '1h', '1y')
            await source.manager.subscribe('XYZ', '1h')
            transport.rejected_symbols = {'XYZ'}
            await source.manager.handle_drop("socket closed")

            with pytest.raises(ProviderError):
                await source.fetch('XYZ', '1h', '1y')
            reconnecting = source.manager._reconnect_task
            good = await source.fetch('AAPL', '1h', '1y')
            await source.stop()
            return reconnecting, good

        reconnecting, good = asyncio.run(scenario())
        assert reconnecting is None
        assert good.bars == tuple(history)
        assert recorded_sleep.delays == [2.0]

    def test_exhausted_session_propagates(self, fake_transport_cls, tmp_path, recorded_sleep):
        transport = fake_transport_cls()
        source = self.make_source(transport, tmp_path, recorded_sleep, max_attempts=1)
        notified = []
        source.on_exhausted(notified.append)

        async def scenario():
            await source.start()
            transport.fail_open = True
            await source.manager.handle_drop("socket closed")
            await source.fetch('AAPL', '1h', '1y')

        with pytest.raises(ConnectionExhausted):
            asyncio.run(scenario())
        assert len(notified) == 1
        assert source.get_health_status()['exhausted'] is True
