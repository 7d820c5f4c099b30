"""
Shared fixtures for perpsim tests.

Provides factories for candles, candle series, run configs and completed
trades, plus a scripted DecisionPort.
"""

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import numpy as np
import pytest

from perpsim.data.series import CandleSeries
from perpsim.models import (
    BacktestConfig,
    Candle,
    CompletedTrade,
    PositionStatus,
    Side,
)

T0 = datetime(2024, 1, 1, tzinfo=timezone.utc)
HOUR = timedelta(hours=1)


@pytest.fixture
def t0():
    return T0


@pytest.fixture
def candle_factory():
    """
    Build candles from closes or (open, high, low, close) tuples.

    Closes alone produce bars with open=close and high/low at +/- spread.
    """

    def _make(bars, start=T0, step=HOUR, spread=0.0, volume=100.0):
        candles = []
        for i, bar in enumerate(bars):
            if isinstance(bar, (tuple, list)):
                o, h, lo, c = bar
            else:
                o = c = float(bar)
                h, lo = c + spread, c - spread
            candles.append(
                Candle(
                    timestamp=start + i * step,
                    open=float(o),
                    high=float(h),
                    low=float(lo),
                    close=float(c),
                    volume=volume,
                )
            )
        return candles

    return _make


@pytest.fixture
def series_factory(candle_factory):
    def _make(bars, instrument="BTC", **kwargs):
        return CandleSeries(instrument, candle_factory(bars, **kwargs))

    return _make


@pytest.fixture
def random_walk_series(series_factory):
    """Seeded random-walk series with 300 hourly bars per instrument."""

    def _make(instrument="BTC", seed=7, bars=300, start_price=100.0):
        rng = np.random.default_rng(seed)
        closes = start_price * np.exp(np.cumsum(rng.normal(0, 0.01, size=bars)))
        ohlc = []
        prev = start_price
        for close in closes:
            high = max(prev, close) * (1 + abs(rng.normal(0, 0.003)))
            low = min(prev, close) * (1 - abs(rng.normal(0, 0.003)))
            ohlc.append((prev, high, low, close))
            prev = close
        return series_factory(ohlc, instrument=instrument)

    return _make


@pytest.fixture
def config_factory():
    def _make(**overrides):
        params = dict(
            instruments=("BTC",),
            start_time=T0,
            end_time=T0 + timedelta(days=30),
            initial_balance=1000.0,
            max_leverage=10.0,
            trading_interval_seconds=3600,
            interval="1h",
        )
        params.update(overrides)
        return BacktestConfig(**params)

    return _make


@pytest.fixture
def base_config(config_factory):
    return config_factory()


@pytest.fixture
def trade_factory():
    """CompletedTrade with a given realized PnL; prices follow the PnL sign."""

    def _make(pnl, opened_at=T0, closed_at=None, instrument="BTC", reason=PositionStatus.CLOSED):
        pnl = Decimal(str(pnl))
        return CompletedTrade(
            position_id=f"POS-{abs(hash((str(pnl), opened_at))) % 100000:05d}",
            instrument=instrument,
            side=Side.LONG,
            entry_price=Decimal("100"),
            exit_price=Decimal("100") + pnl,
            notional=Decimal("100"),
            leverage=Decimal("1"),
            opened_at=opened_at,
            closed_at=closed_at or opened_at + HOUR,
            realized_pnl=pnl,
            realized_pnl_percent=pnl,
            fees=Decimal("0"),
            exit_reason=reason,
        )

    return _make


class ScriptedPort:
    """Returns queued intent lists on successive calls, then nothing."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.calls = []

    def decide(self, snapshots, account_state, recent_history):
        self.calls.append((snapshots, account_state, recent_history))
        if self.responses:
            return self.responses.pop(0)
        return []


@pytest.fixture
def scripted_port():
    return ScriptedPort
