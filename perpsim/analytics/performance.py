"""
Performance analytics over a finished run.

Pure functions over the EquityPoint and CompletedTrade streams, plus
PerformanceAnalyzer which assembles them into a BacktestResult.

Metrics:
    - Drawdown: high-water mark seeded with the initial balance
    - Win rate, profit factor, average win/loss
    - Sharpe and Sortino from per-step equity returns, annualized by
      sqrt(steps per year) with a 365-day year
    - Longest win/loss streaks
    - Holding time (average, max, min)
    - Daily returns from the last equity of each UTC date
"""

import logging
import math
from decimal import Decimal
from typing import List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

from perpsim.config import SECONDS_PER_YEAR
from perpsim.models import (
    BacktestConfig,
    BacktestResult,
    CompletedTrade,
    Diagnostic,
    EquityPoint,
)

logger = logging.getLogger(__name__)


# =============================================================================
# DRAWDOWN
# =============================================================================


def drawdown_percent(high_water_mark, equity) -> float:
    """(hwm - equity) / hwm x 100, bounded to [0, 100]; 0 when hwm <= 0."""
    hwm = float(high_water_mark)
    if hwm <= 0:
        return 0.0
    pct = (hwm - float(equity)) / hwm * 100
    return min(100.0, max(0.0, pct))


def drawdown_frame(
    equity_curve: Sequence[EquityPoint],
    initial_balance: Optional[float] = None,
) -> pd.DataFrame:
    """
    Recompute high-water mark and drawdown for every point.

    Returns:
        DataFrame indexed by timestamp with columns
        equity, high_water_mark, drawdown, drawdown_percent
    """
    columns = ["equity", "high_water_mark", "drawdown", "drawdown_percent"]
    if not equity_curve:
        return pd.DataFrame(columns=columns, dtype=float)

    equity = np.array([float(p.equity) for p in equity_curve])
    hwm = np.maximum.accumulate(equity)
    if initial_balance is not None:
        hwm = np.maximum(hwm, float(initial_balance))

    drawdown = hwm - equity
    with np.errstate(divide="ignore", invalid="ignore"):
        pct = np.where(hwm > 0, drawdown / hwm * 100, 0.0)

    return pd.DataFrame(
        {
            "equity": equity,
            "high_water_mark": hwm,
            "drawdown": drawdown,
            "drawdown_percent": np.clip(pct, 0.0, 100.0),
        },
        index=pd.DatetimeIndex([p.timestamp for p in equity_curve], name="timestamp"),
    )


def max_drawdown(
    equity_curve: Sequence[EquityPoint],
    initial_balance: Optional[float] = None,
) -> Tuple[float, float]:
    """Largest drawdown as (absolute, percent)."""
    frame = drawdown_frame(equity_curve, initial_balance)
    if frame.empty:
        return 0.0, 0.0
    return float(frame["drawdown"].max()), float(frame["drawdown_percent"].max())


# =============================================================================
# TRADE STATISTICS
# =============================================================================


def win_rate(trades: Sequence[CompletedTrade]) -> float:
    """Winning trades as a percentage of closed trades (0 when none)."""
    if not trades:
        return 0.0
    wins = sum(1 for t in trades if t.is_win)
    return wins / len(trades) * 100


def profit_factor(trades: Sequence[CompletedTrade]) -> float:
    """
    Gross profit over gross loss.

    +inf when there are wins and no losses; 0 when there are no wins.
    """
    gross_profit = sum((t.realized_pnl for t in trades if t.is_win), Decimal("0"))
    gross_loss = abs(sum((t.realized_pnl for t in trades if t.is_loss), Decimal("0")))

    if gross_profit == 0:
        return 0.0
    if gross_loss == 0:
        return math.inf
    return float(gross_profit / gross_loss)


def average_win_loss(trades: Sequence[CompletedTrade]) -> Tuple[float, float]:
    """Mean winning PnL and mean losing PnL magnitude."""
    wins = [float(t.realized_pnl) for t in trades if t.is_win]
    losses = [abs(float(t.realized_pnl)) for t in trades if t.is_loss]
    return (
        float(np.mean(wins)) if wins else 0.0,
        float(np.mean(losses)) if losses else 0.0,
    )


def consecutive_streaks(trades: Sequence[CompletedTrade]) -> Tuple[int, int]:
    """
    Longest runs of strictly positive and strictly negative trades.

    Trades are scanned in closing order; a flat trade breaks both runs.
    """
    max_wins = max_losses = 0
    wins = losses = 0
    for trade in sorted(trades, key=lambda t: t.closed_at):
        if trade.is_win:
            wins += 1
            losses = 0
        elif trade.is_loss:
            losses += 1
            wins = 0
        else:
            wins = losses = 0
        max_wins = max(max_wins, wins)
        max_losses = max(max_losses, losses)
    return max_wins, max_losses


def holding_time_stats(trades: Sequence[CompletedTrade]) -> Tuple[float, float, float]:
    """(average, max, min) holding time in seconds; zeros when no trades."""
    if not trades:
        return 0.0, 0.0, 0.0
    seconds = [t.holding_seconds for t in trades]
    return float(np.mean(seconds)), float(max(seconds)), float(min(seconds))


# =============================================================================
# RETURN STATISTICS
# =============================================================================


def periods_per_year(step_seconds: float) -> float:
    if step_seconds <= 0:
        raise ValueError(f"step_seconds must be positive, got {step_seconds}")
    return SECONDS_PER_YEAR / step_seconds


def step_returns(equity_curve: Sequence[EquityPoint]) -> pd.Series:
    """Per-step simple returns of equity; steps after zero equity are dropped."""
    if len(equity_curve) < 2:
        return pd.Series(dtype=float)
    equity = pd.Series([float(p.equity) for p in equity_curve])
    returns = equity.pct_change(fill_method=None).iloc[1:]
    return returns.replace([np.inf, -np.inf], np.nan).dropna().reset_index(drop=True)


def sharpe_ratio(returns: pd.Series, periods: float) -> float:
    """
    Annualized Sharpe ratio (risk-free rate 0, population std).

    0 when fewer than two returns or zero dispersion.
    """
    if len(returns) < 2:
        return 0.0
    std = float(returns.std(ddof=0))
    if std == 0 or not math.isfinite(std):
        return 0.0
    return float(returns.mean()) / std * math.sqrt(periods)


def sortino_ratio(returns: pd.Series, periods: float) -> float:
    """
    Annualized Sortino ratio using downside deviation below 0.

    0 when fewer than two returns or no downside.
    """
    if len(returns) < 2:
        return 0.0
    downside = np.sqrt(np.mean(np.minimum(returns.to_numpy(), 0.0) ** 2))
    if downside == 0 or not math.isfinite(downside):
        return 0.0
    return float(returns.mean()) / float(downside) * math.sqrt(periods)


def daily_returns(equity_curve: Sequence[EquityPoint]) -> List[Tuple[str, float]]:
    """
    Percent return per UTC date, from each date's last equity.

    The first date has no prior close and is omitted.
    """
    if not equity_curve:
        return []
    equity = pd.Series(
        [float(p.equity) for p in equity_curve],
        index=pd.DatetimeIndex([p.timestamp for p in equity_curve]).tz_convert("UTC"),
    )
    closes = equity.groupby(equity.index.normalize()).last()
    changes = (closes.pct_change(fill_method=None) * 100).iloc[1:]
    changes = changes.replace([np.inf, -np.inf], np.nan).dropna()
    return [(ts.strftime("%Y-%m-%d"), float(value)) for ts, value in changes.items()]


# =============================================================================
# ANALYZER
# =============================================================================


class PerformanceAnalyzer:
    """Turns a finished run's streams into a BacktestResult."""

    def __init__(self, config: BacktestConfig):
        self.config = config

    def analyze(
        self,
        equity_curve: Sequence[EquityPoint],
        trades: Sequence[CompletedTrade],
        total_fees: Optional[Decimal] = None,
        diagnostics: Sequence[Diagnostic] = (),
        execution_time_ms: float = 0.0,
    ) -> BacktestResult:
        initial = float(self.config.initial_balance)
        final = float(equity_curve[-1].equity) if equity_curve else initial
        if total_fees is None:
            total_fees = sum((t.fees for t in trades), Decimal("0"))

        dd_abs, dd_pct = max_drawdown(equity_curve, initial)
        avg_win, avg_loss = average_win_loss(trades)
        max_wins, max_losses = consecutive_streaks(trades)
        avg_hold, max_hold, min_hold = holding_time_stats(trades)

        returns = step_returns(equity_curve)
        periods = periods_per_year(self.config.step_seconds)

        result = BacktestResult(
            config=self.config,
            initial_balance=initial,
            final_balance=final,
            total_pnl=final - initial,
            total_pnl_percent=(final - initial) / initial * 100,
            total_fees=float(total_fees),
            total_trades=len(trades),
            winning_trades=sum(1 for t in trades if t.is_win),
            losing_trades=sum(1 for t in trades if t.is_loss),
            win_rate=win_rate(trades),
            average_win=avg_win,
            average_loss=avg_loss,
            profit_factor=profit_factor(trades),
            max_drawdown=dd_abs,
            max_drawdown_percent=dd_pct,
            sharpe_ratio=sharpe_ratio(returns, periods),
            sortino_ratio=sortino_ratio(returns, periods),
            max_consecutive_wins=max_wins,
            max_consecutive_losses=max_losses,
            average_holding_time_seconds=avg_hold,
            max_holding_time_seconds=max_hold,
            min_holding_time_seconds=min_hold,
            trades=tuple(trades),
            equity_curve=tuple(equity_curve),
            daily_returns=tuple(daily_returns(equity_curve)),
            diagnostics=tuple(diagnostics),
            execution_time_ms=execution_time_ms,
        )

        logger.info(
            f"Run summary: trades={result.total_trades}, pnl={result.total_pnl:.2f} "
            f"({result.total_pnl_percent:.2f}%), win_rate={result.win_rate:.1f}%, "
            f"max_dd={result.max_drawdown_percent:.2f}%, sharpe={result.sharpe_ratio:.2f}"
        )
        return result
