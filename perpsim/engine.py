"""
Run boundary for replay backtests.

Usage:
    from perpsim import BacktestConfig, run_backtest

    result = run_backtest(config, my_strategy, source=my_data_source)
    print(result.win_rate, result.sharpe_ratio)

Each call builds a fresh BacktestEngine, and with it a fresh ledger, so
concurrent runs in one process share nothing.
"""

import logging
from typing import Dict, List, Mapping, Optional

from perpsim.data.history import HistoricalDataSource, load_candle_series
from perpsim.data.series import CandleSeries
from perpsim.decision.port import DecisionPort
from perpsim.models import BacktestConfig, BacktestResult, DataImportError, Diagnostic
from perpsim.simulation.clock import SimulationClock

logger = logging.getLogger(__name__)


class BacktestEngine:
    """One replay run: import, simulate, analyze."""

    def __init__(self, config: BacktestConfig, decision_port: DecisionPort):
        self.config = config
        self.decision_port = decision_port
        self.clock = SimulationClock(config, decision_port)
        self._import_diagnostics: List[Diagnostic] = []

    def load(self, source: HistoricalDataSource) -> Dict[str, CandleSeries]:
        """Import candles for every instrument; failures are isolated per instrument."""
        return load_candle_series(source, self.config, self._import_diagnostics)

    def run(self, series: Mapping[str, CandleSeries]) -> BacktestResult:
        usable = {k: v for k, v in series.items() if k in self.config.instruments and len(v)}
        if not usable:
            raise DataImportError("No candle data for any configured instrument")

        missing = [i for i in self.config.instruments if i not in usable]
        if missing:
            logger.warning(f"Running without data for: {', '.join(missing)}")

        logger.info(
            f"Backtest starting: {list(usable)} {self.config.start_time.isoformat()} -> "
            f"{self.config.end_time.isoformat()}, balance={self.config.initial_balance}, "
            f"max_leverage={self.config.max_leverage}"
        )
        self.clock.add_diagnostics(self._import_diagnostics)
        return self.clock.run(usable)


def run_backtest(
    config: BacktestConfig,
    decision_port: DecisionPort,
    source: Optional[HistoricalDataSource] = None,
    series: Optional[Mapping[str, CandleSeries]] = None,
) -> BacktestResult:
    """
    Run one replay backtest.

    Args:
        config: Validated run configuration
        decision_port: Strategy to consult each step
        source: Historical data source (used when series is not given)
        series: Pre-loaded candles per instrument

    Raises:
        DataImportError: If no instrument has data
        ValueError: If neither source nor series is given
    """
    engine = BacktestEngine(config, decision_port)
    if series is None:
        if source is None:
            raise ValueError("run_backtest needs a data source or pre-loaded series")
        series = engine.load(source)
    return engine.run(series)
