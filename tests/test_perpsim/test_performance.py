"""
Tests for perpsim/analytics/performance.py.

Tests cover:
- drawdown_percent() / drawdown_frame() / max_drawdown()
- win_rate() and profit_factor() edge cases
- consecutive_streaks() and holding_time_stats()
- sharpe_ratio() / sortino_ratio() annualization and degenerate input
- daily_returns() by UTC date
- PerformanceAnalyzer.analyze() on an empty run
"""

import math
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pandas as pd
import pytest

from perpsim.analytics.performance import (
    PerformanceAnalyzer,
    average_win_loss,
    consecutive_streaks,
    daily_returns,
    drawdown_frame,
    drawdown_percent,
    holding_time_stats,
    max_drawdown,
    periods_per_year,
    profit_factor,
    sharpe_ratio,
    sortino_ratio,
    step_returns,
    win_rate,
)
from perpsim.models import EquityPoint


def _curve(values, start=datetime(2024, 1, 1, tzinfo=timezone.utc), step=timedelta(hours=1)):
    return [
        EquityPoint(
            timestamp=start + i * step,
            equity=Decimal(str(v)),
            high_water_mark=Decimal(str(v)),
            drawdown_percent=0.0,
        )
        for i, v in enumerate(values)
    ]


# =============================================================================
# DRAWDOWN
# =============================================================================


class TestDrawdown:
    """Tests for drawdown calculations."""

    def test_drawdown_percent(self):
        assert drawdown_percent(100, 80) == pytest.approx(20.0)

    def test_zero_hwm(self):
        assert drawdown_percent(0, 0) == 0.0

    def test_bounded_to_100(self):
        assert drawdown_percent(100, -5) == 100.0

    def test_frame_seeded_with_initial_balance(self):
        """An initial dip counts against the starting balance."""
        frame = drawdown_frame(_curve([950, 1000, 900]), initial_balance=1000)
        assert list(frame["high_water_mark"]) == [1000, 1000, 1000]
        assert frame["drawdown_percent"].iloc[0] == pytest.approx(5.0)
        assert frame["drawdown_percent"].iloc[2] == pytest.approx(10.0)

    def test_max_drawdown(self):
        dd_abs, dd_pct = max_drawdown(_curve([1000, 1200, 900, 1300, 1170]), 1000)
        assert dd_abs == pytest.approx(300)
        assert dd_pct == pytest.approx(25.0)

    def test_max_drawdown_empty(self):
        assert max_drawdown([]) == (0.0, 0.0)


# =============================================================================
# TRADE STATISTICS
# =============================================================================


class TestTradeStats:
    """Tests for win rate, profit factor and streaks."""

    def test_win_rate(self, trade_factory):
        trades = [trade_factory(10), trade_factory(-5), trade_factory(3), trade_factory(-1)]
        assert win_rate(trades) == 50.0

    def test_win_rate_empty(self):
        assert win_rate([]) == 0.0

    def test_profit_factor(self, trade_factory):
        trades = [trade_factory(30), trade_factory(-10), trade_factory(-5)]
        assert profit_factor(trades) == pytest.approx(2.0)

    def test_profit_factor_no_losses(self, trade_factory):
        """Wins with zero losses is +inf."""
        assert profit_factor([trade_factory(5), trade_factory(1)]) == math.inf

    def test_profit_factor_no_wins(self, trade_factory):
        """No wins is 0, even with losses."""
        assert profit_factor([trade_factory(-5)]) == 0.0
        assert profit_factor([]) == 0.0

    def test_average_win_loss(self, trade_factory):
        avg_win, avg_loss = average_win_loss([trade_factory(10), trade_factory(20), trade_factory(-6)])
        assert avg_win == pytest.approx(15.0)
        assert avg_loss == pytest.approx(6.0)

    def test_streaks(self, trade_factory, t0):
        pnls = [5, 3, -1, -2, -4, 7]
        trades = [
            trade_factory(p, opened_at=t0 + timedelta(hours=i), closed_at=t0 + timedelta(hours=i, minutes=30))
            for i, p in enumerate(pnls)
        ]
        assert consecutive_streaks(trades) == (2, 3)

    def test_streaks_use_closing_order(self, trade_factory, t0):
        late_loss = trade_factory(-1, opened_at=t0, closed_at=t0 + timedelta(hours=5))
        wins = [
            trade_factory(1, opened_at=t0 + timedelta(hours=i), closed_at=t0 + timedelta(hours=i + 1))
            for i in range(3)
        ]
        assert consecutive_streaks([late_loss] + wins) == (3, 1)

    def test_holding_times(self, trade_factory, t0):
        trades = [
            trade_factory(1, opened_at=t0, closed_at=t0 + timedelta(hours=1)),
            trade_factory(1, opened_at=t0, closed_at=t0 + timedelta(hours=3)),
        ]
        assert holding_time_stats(trades) == (7200.0, 10800.0, 3600.0)

    def test_holding_times_empty(self):
        assert holding_time_stats([]) == (0.0, 0.0, 0.0)


# =============================================================================
# RETURN STATISTICS
# =============================================================================


class TestRatios:
    """Tests for Sharpe and Sortino."""

    def test_periods_per_year_hourly(self):
        assert periods_per_year(3600) == 8760

    def test_step_returns(self):
        returns = step_returns(_curve([100, 110, 99]))
        assert list(returns) == pytest.approx([0.1, -0.1])

    def test_sharpe_matches_population_std(self):
        returns = step_returns(_curve([100, 110, 99, 108.9]))
        values = returns.to_numpy()
        expected = values.mean() / values.std() * math.sqrt(8760)
        assert sharpe_ratio(returns, 8760) == pytest.approx(expected)

    def test_sharpe_short_series(self):
        assert sharpe_ratio(pd.Series([0.05]), 8760) == 0.0

    def test_sharpe_flat(self):
        assert sharpe_ratio(pd.Series([0.0, 0.0, 0.0]), 8760) == 0.0

    def test_sortino_no_downside(self):
        assert sortino_ratio(pd.Series([0.01, 0.02]), 365) == 0.0

    def test_sortino_positive_for_net_gain(self):
        assert sortino_ratio(pd.Series([0.03, -0.01, 0.02, -0.01]), 365) > 0


class TestDailyReturns:
    """Tests for daily returns by UTC date."""

    def test_last_equity_per_day(self):
        start = datetime(2024, 3, 1, 10, tzinfo=timezone.utc)
        curve = [
            EquityPoint(start, Decimal("1000"), Decimal("1000"), 0.0),
            EquityPoint(start + timedelta(hours=13), Decimal("1010"), Decimal("1010"), 0.0),
            EquityPoint(start + timedelta(hours=26), Decimal("1030.2"), Decimal("1030.2"), 0.0),
        ]
        assert daily_returns(curve) == [("2024-03-02", pytest.approx(2.0))]

    def test_single_day(self):
        assert daily_returns(_curve([1000, 1001])) == []


# =============================================================================
# ANALYZER
# =============================================================================


class TestPerformanceAnalyzer:
    """Tests for PerformanceAnalyzer.analyze()."""

    def test_empty_run(self, base_config):
        result = PerformanceAnalyzer(base_config).analyze([], [])
        assert result.final_balance == 1000.0
        assert result.total_trades == 0
        assert result.win_rate == 0.0
        assert result.profit_factor == 0.0
        assert result.sharpe_ratio == 0.0

    def test_totals(self, base_config, trade_factory):
        curve = _curve([1000, 1020, 1015])
        trades = [trade_factory(20), trade_factory(-5)]
        result = PerformanceAnalyzer(base_config).analyze(curve, trades)
        assert result.total_pnl == pytest.approx(15.0)
        assert result.total_pnl_percent == pytest.approx(1.5)
        assert result.winning_trades == 1
        assert result.losing_trades == 1
        assert result.max_drawdown == pytest.approx(5.0)
