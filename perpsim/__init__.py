"""
perpsim - simulation and analytics engine for leveraged trading strategies.

Replays candle history (or a live feed) through a pluggable decision
function, applies its intents to a position ledger with leverage, fees and
liquidation, and scores the run.

Main components:
    - CandleSeries: ordered OHLCV history per instrument
    - SnapshotBuilder: indicators and regime per step
    - DecisionPort: strategy boundary with timeout and validation
    - PositionLedger: positions, fees, exits and realized PnL
    - SimulationClock / LiveRunner: replay and live step drivers
    - PerformanceAnalyzer: drawdown, Sharpe, win rate and streaks
"""

from perpsim.analytics.performance import PerformanceAnalyzer
from perpsim.data.history import HistoricalDataSource, InMemoryCandleSource, load_candle_series
from perpsim.data.series import CandleSeries
from perpsim.decision.port import DecisionGuard, DecisionPort, ExecutionSink, HoldDecisionPort
from perpsim.engine import BacktestEngine, run_backtest
from perpsim.market.snapshot import SnapshotBuilder
from perpsim.models import (
    AccountState,
    Action,
    BacktestConfig,
    BacktestConfigError,
    BacktestResult,
    Candle,
    CompletedTrade,
    DataImportError,
    Diagnostic,
    EquityPoint,
    LedgerInvariantError,
    MarketSnapshot,
    OpenPolicy,
    Position,
    PositionStatus,
    Regime,
    Side,
    StepEvent,
    TradeIntent,
)
from perpsim.simulation.clock import SimulationClock
from perpsim.simulation.ledger import PositionLedger
from perpsim.simulation.live import LiveMarketFeed, LiveRunner

__version__ = "0.1.0"

__all__ = [
    "AccountState",
    "Action",
    "BacktestConfig",
    "BacktestConfigError",
    "BacktestEngine",
    "BacktestResult",
    "Candle",
    "CandleSeries",
    "CompletedTrade",
    "DataImportError",
    "DecisionGuard",
    "DecisionPort",
    "Diagnostic",
    "EquityPoint",
    "ExecutionSink",
    "HistoricalDataSource",
    "HoldDecisionPort",
    "InMemoryCandleSource",
    "LedgerInvariantError",
    "LiveMarketFeed",
    "LiveRunner",
    "MarketSnapshot",
    "OpenPolicy",
    "PerformanceAnalyzer",
    "Position",
    "PositionLedger",
    "PositionStatus",
    "Regime",
    "Side",
    "SimulationClock",
    "SnapshotBuilder",
    "StepEvent",
    "TradeIntent",
    "load_candle_series",
    "run_backtest",
]
