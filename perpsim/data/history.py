"""
Historical Data Source Protocol

Defines the import boundary for replay runs. Fetching (REST pulls, CSV
parsing) lives outside this package; implementations only have to return
candles. load_candle_series() isolates failures per instrument.
"""

import logging
from datetime import datetime, timedelta
from typing import Dict, List, Mapping, Optional, Protocol, Union

import pandas as pd

from perpsim.data.series import CandleSeries
from perpsim.models import BacktestConfig, Candle, DataImportError, Diagnostic, ensure_utc

logger = logging.getLogger(__name__)


class HistoricalDataSource(Protocol):
    """Protocol for per-instrument candle retrieval."""

    def fetch(
        self,
        instrument: str,
        start: datetime,
        end: datetime,
        interval: str,
    ) -> List[Candle]:
        """
        Return candles for `instrument` in [start, end].

        May raise; the loader treats any exception as a failure of that
        instrument only.
        """
        ...


class InMemoryCandleSource:
    """
    Serves candles already held in memory.

    Accepts CandleSeries, candle lists or OHLCV DataFrames per instrument.
    Instruments not present raise KeyError from fetch().
    """

    def __init__(self, data: Mapping[str, Union[CandleSeries, List[Candle], pd.DataFrame]]):
        self._data: Dict[str, List[Candle]] = {}
        for instrument, value in data.items():
            if isinstance(value, pd.DataFrame):
                value = CandleSeries.from_dataframe(instrument, value)
            self._data[instrument] = list(value)

    def fetch(self, instrument: str, start: datetime, end: datetime, interval: str) -> List[Candle]:
        if instrument not in self._data:
            raise KeyError(f"No data for {instrument}")
        start, end = ensure_utc(start), ensure_utc(end)
        return [c for c in self._data[instrument] if start <= c.timestamp <= end]


def normalize_candles(candles: List[Candle]) -> List[Candle]:
    """Sort ascending and drop duplicate timestamps (last one wins)."""
    by_ts: Dict[datetime, Candle] = {}
    for candle in candles:
        by_ts[ensure_utc(candle.timestamp)] = candle
    return [by_ts[ts] for ts in sorted(by_ts)]


def load_candle_series(
    source: HistoricalDataSource,
    config: BacktestConfig,
    diagnostics: Optional[List[Diagnostic]] = None,
) -> Dict[str, CandleSeries]:
    """
    Import every configured instrument, skipping the ones that fail.

    Args:
        source: Data source to pull from; asked for snapshot_window bars
            of warm-up before start_time
        config: Run configuration (instruments, range, interval)
        diagnostics: Optional list that receives one Diagnostic per failure

    Returns:
        Dict of instrument -> CandleSeries for successful imports

    Raises:
        DataImportError: If no instrument produced any candles
    """
    series: Dict[str, CandleSeries] = {}
    # Pull enough history before start_time to fill the first snapshot window
    fetch_start = config.start_time - timedelta(seconds=config.candle_seconds * config.snapshot_window)

    for instrument in config.instruments:
        try:
            candles = source.fetch(instrument, fetch_start, config.end_time, config.interval)
            candles = normalize_candles(list(candles or []))
            if not candles:
                raise ValueError("no candles returned")
            series[instrument] = CandleSeries(instrument, candles, config.interval)
            logger.info(f"Imported {len(candles)} candles for {instrument}")
        except Exception as e:
            logger.warning(f"Import failed for {instrument}, excluding it: {e}")
            if diagnostics is not None:
                diagnostics.append(
                    Diagnostic(
                        timestamp=None,
                        code="IMPORT_FAILED",
                        message=str(e),
                        instrument=instrument,
                    )
                )

    if not series:
        raise DataImportError(
            f"No instrument could be imported from {list(config.instruments)}"
        )
    return series
