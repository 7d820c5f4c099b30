"""Candle containers and the historical import boundary."""

from perpsim.data.history import (
    HistoricalDataSource,
    InMemoryCandleSource,
    load_candle_series,
    normalize_candles,
)
from perpsim.data.series import CandleSeries

__all__ = [
    "CandleSeries",
    "HistoricalDataSource",
    "InMemoryCandleSource",
    "load_candle_series",
    "normalize_candles",
]
