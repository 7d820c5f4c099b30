"""Performance statistics over finished runs."""

from perpsim.analytics.performance import (
    PerformanceAnalyzer,
    consecutive_streaks,
    daily_returns,
    drawdown_frame,
    drawdown_percent,
    holding_time_stats,
    max_drawdown,
    profit_factor,
    sharpe_ratio,
    sortino_ratio,
    step_returns,
    win_rate,
)

__all__ = [
    "PerformanceAnalyzer",
    "consecutive_streaks",
    "daily_returns",
    "drawdown_frame",
    "drawdown_percent",
    "holding_time_stats",
    "max_drawdown",
    "profit_factor",
    "sharpe_ratio",
    "sortino_ratio",
    "step_returns",
    "win_rate",
]
