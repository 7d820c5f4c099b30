"""
CandleSeries - ordered OHLCV history for one instrument.

Timestamps must be strictly ascending; construction rejects unsorted or
duplicate bars and any open/high/low/close that is not a finite positive
number. Lookups use bisect over the timestamp index.
"""

import math
import numbers
from bisect import bisect_left, bisect_right
from dataclasses import replace
from datetime import datetime
from typing import Iterator, List, Optional, Sequence

import pandas as pd

from perpsim.models import Candle, ensure_utc


def price_problem(candle: Candle) -> Optional[str]:
    """Describe the first OHLC field that is not a finite positive number, if any."""
    for label in ("open", "high", "low", "close"):
        price = getattr(candle, label)
        if not isinstance(price, numbers.Real) or not math.isfinite(price) or price <= 0:
            return f"invalid {label} {price!r}"
    return None


class CandleSeries:
    """Immutable, ascending candle sequence for a single instrument."""

    def __init__(self, instrument: str, candles: Sequence[Candle], interval: str = "1h"):
        self.instrument = instrument
        self.interval = interval
        self._candles: List[Candle] = [
            c if c.timestamp.tzinfo is not None else replace(c, timestamp=ensure_utc(c.timestamp))
            for c in candles
        ]
        self._timestamps: List[datetime] = [c.timestamp for c in self._candles]

        for candle in self._candles:
            problem = price_problem(candle)
            if problem:
                raise ValueError(f"{instrument}: {problem} at {candle.timestamp.isoformat()}")

        for prev, curr in zip(self._timestamps, self._timestamps[1:]):
            if curr == prev:
                raise ValueError(f"{instrument}: duplicate candle timestamp {curr.isoformat()}")
            if curr < prev:
                raise ValueError(
                    f"{instrument}: candles out of order at {curr.isoformat()} "
                    f"(after {prev.isoformat()})"
                )

    def __len__(self) -> int:
        return len(self._candles)

    def __iter__(self) -> Iterator[Candle]:
        return iter(self._candles)

    def __getitem__(self, index):
        return self._candles[index]

    def __repr__(self) -> str:
        return f"CandleSeries({self.instrument!r}, bars={len(self)}, interval={self.interval!r})"

    @property
    def timestamps(self) -> List[datetime]:
        return list(self._timestamps)

    @property
    def candles(self) -> List[Candle]:
        return list(self._candles)

    def latest(self, at: datetime) -> Optional[Candle]:
        """Most recent candle with timestamp <= at."""
        idx = bisect_right(self._timestamps, at)
        return self._candles[idx - 1] if idx else None

    def window(self, at: datetime, size: int) -> List[Candle]:
        """Up to `size` most recent candles with timestamp <= at, oldest first."""
        end = bisect_right(self._timestamps, at)
        return self._candles[max(0, end - size):end]

    def bars_between(self, after: Optional[datetime], until: datetime) -> List[Candle]:
        """Candles with after < timestamp <= until (all up to `until` when after is None)."""
        start = 0 if after is None else bisect_right(self._timestamps, after)
        end = bisect_right(self._timestamps, until)
        return self._candles[start:end]

    def slice(self, start: datetime, end: datetime) -> "CandleSeries":
        """Sub-series with start <= timestamp <= end."""
        lo = bisect_left(self._timestamps, start)
        hi = bisect_right(self._timestamps, end)
        return CandleSeries(self.instrument, self._candles[lo:hi], self.interval)

    # =========================================================================
    # PANDAS INTEROP
    # =========================================================================

    @classmethod
    def from_dataframe(cls, instrument: str, df: pd.DataFrame, interval: str = "1h") -> "CandleSeries":
        """
        Build from an OHLCV DataFrame.

        Accepts lower- or title-case column names and either a DatetimeIndex
        or a 'timestamp' column. Naive timestamps are treated as UTC.
        """
        frame = df.rename(columns=str.lower)
        if "timestamp" in frame.columns:
            frame = frame.set_index("timestamp")
        index = pd.DatetimeIndex(pd.to_datetime(frame.index, utc=True))

        volume = frame["volume"] if "volume" in frame.columns else pd.Series(0.0, index=frame.index)
        candles = [
            Candle(
                timestamp=ensure_utc(ts.to_pydatetime()),
                open=float(o),
                high=float(h),
                low=float(lo),
                close=float(c),
                volume=float(v),
            )
            for ts, o, h, lo, c, v in zip(
                index, frame["open"], frame["high"], frame["low"], frame["close"], volume
            )
        ]
        return cls(instrument, candles, interval)

    def to_dataframe(self) -> pd.DataFrame:
        """OHLCV DataFrame indexed by UTC timestamp."""
        if not self._candles:
            return pd.DataFrame(columns=["open", "high", "low", "close", "volume"])
        return pd.DataFrame(
            {
                "open": [c.open for c in self._candles],
                "high": [c.high for c in self._candles],
                "low": [c.low for c in self._candles],
                "close": [c.close for c in self._candles],
                "volume": [c.volume for c in self._candles],
            },
            index=pd.DatetimeIndex(self._timestamps, name="timestamp"),
        )
