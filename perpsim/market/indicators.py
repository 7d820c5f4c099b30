"""
Technical indicators for market snapshots.

All series functions take pandas Series and return a Series aligned to the
input index, NaN where the lookback is not yet satisfied. compute_indicators()
reduces a candle window to the latest value of each indicator, reporting
None (never 0) for anything the window is too short to compute.

Conventions:
    - EMA is seeded with the SMA of its first `period` values
    - RSI and ADX use Wilder smoothing (alpha = 1/period)
    - ATR is the simple mean of the last `period` true ranges
"""

from typing import Dict, Optional, Sequence

import numpy as np
import pandas as pd

from perpsim import config
from perpsim.models import Candle


def _seeded_ewm(values: pd.Series, period: int, alpha: float) -> pd.Series:
    """Exponential smoothing whose first value is the SMA of the first `period` points."""
    valid = values.dropna()
    if period < 1 or len(valid) < period:
        return pd.Series(np.nan, index=values.index, dtype=float)

    seeded = valid.iloc[period - 1:].astype(float).copy()
    seeded.iloc[0] = valid.iloc[:period].mean()
    return seeded.ewm(alpha=alpha, adjust=False).mean().reindex(values.index)


def ema(close: pd.Series, period: int) -> pd.Series:
    """SMA-seeded exponential moving average."""
    return _seeded_ewm(close, period, alpha=2.0 / (period + 1))


def wilder_smooth(values: pd.Series, period: int) -> pd.Series:
    """Wilder's running average (RMA)."""
    return _seeded_ewm(values, period, alpha=1.0 / period)


def macd(
    close: pd.Series,
    fast: int = config.MACD_FAST,
    slow: int = config.MACD_SLOW,
    signal: int = config.MACD_SIGNAL,
) -> pd.DataFrame:
    """
    MACD line, signal line and histogram.

    Returns:
        DataFrame with columns macd, signal, histogram
    """
    line = ema(close, fast) - ema(close, slow)
    signal_line = ema(line, signal)
    return pd.DataFrame(
        {"macd": line, "signal": signal_line, "histogram": line - signal_line},
        index=close.index,
    )


def rsi(close: pd.Series, period: int = 14) -> pd.Series:
    """Wilder RSI. 100 when there are no losses in the smoothing window."""
    delta = close.diff()
    gains = delta.clip(lower=0)
    losses = (-delta).clip(lower=0)

    avg_gain = wilder_smooth(gains, period)
    avg_loss = wilder_smooth(losses, period)

    rs = avg_gain / avg_loss.replace(0, np.nan)
    result = 100 - 100 / (1 + rs)
    return result.mask(avg_loss == 0, 100.0).where(avg_gain.notna())


def true_range(high: pd.Series, low: pd.Series, close: pd.Series) -> pd.Series:
    """True range; NaN on the first bar (no previous close)."""
    prev_close = close.shift(1)
    ranges = pd.concat(
        [high - low, (high - prev_close).abs(), (low - prev_close).abs()],
        axis=1,
    )
    return ranges.max(axis=1, skipna=False)


def atr(high: pd.Series, low: pd.Series, close: pd.Series, period: int = 14) -> pd.Series:
    """Average true range as a simple rolling mean."""
    return true_range(high, low, close).rolling(window=period, min_periods=period).mean()


def adx(high: pd.Series, low: pd.Series, close: pd.Series, period: int = config.ADX_PERIOD) -> pd.Series:
    """
    Wilder's Average Directional Index.

    Needs 2 x period bars before the first value is defined.
    """
    up_move = high.diff()
    down_move = -low.diff()

    plus_dm = up_move.where((up_move > down_move) & (up_move > 0), 0.0)
    minus_dm = down_move.where((down_move > up_move) & (down_move > 0), 0.0)
    # Keep the first bar undefined so smoothing starts at the same point as TR
    plus_dm.iloc[:1] = np.nan
    minus_dm.iloc[:1] = np.nan

    tr_smooth = wilder_smooth(true_range(high, low, close), period)
    flat = tr_smooth == 0
    plus_di = (100 * wilder_smooth(plus_dm, period) / tr_smooth.replace(0, np.nan)).mask(flat, 0.0)
    minus_di = (100 * wilder_smooth(minus_dm, period) / tr_smooth.replace(0, np.nan)).mask(flat, 0.0)

    di_sum = plus_di + minus_di
    dx = (100 * (plus_di - minus_di).abs() / di_sum.replace(0, np.nan)).mask(di_sum == 0, 0.0)
    return wilder_smooth(dx, period)


def zscore(close: pd.Series, period: int = config.ZSCORE_PERIOD) -> pd.Series:
    """Distance of close from its rolling mean in population standard deviations."""
    mean = close.rolling(window=period, min_periods=period).mean()
    std = close.rolling(window=period, min_periods=period).std(ddof=0)
    return (close - mean) / std.replace(0, np.nan)


def volume_ratio(volume: pd.Series, period: int = config.VOLUME_RATIO_PERIOD) -> pd.Series:
    """Current volume relative to its rolling mean."""
    mean = volume.rolling(window=period, min_periods=period).mean()
    return volume / mean.replace(0, np.nan)


# =============================================================================
# SNAPSHOT REDUCTION
# =============================================================================


def candles_to_frame(candles: Sequence[Candle]) -> pd.DataFrame:
    return pd.DataFrame(
        {
            "open": [c.open for c in candles],
            "high": [c.high for c in candles],
            "low": [c.low for c in candles],
            "close": [c.close for c in candles],
            "volume": [c.volume for c in candles],
        },
        index=pd.DatetimeIndex([c.timestamp for c in candles]),
        dtype=float,
    )


def _last(series: pd.Series) -> Optional[float]:
    if series.empty:
        return None
    value = series.iloc[-1]
    if pd.isna(value) or not np.isfinite(value):
        return None
    return float(value)


def compute_indicators(candles: Sequence[Candle]) -> Dict[str, Optional[float]]:
    """
    Latest indicator values for a candle window.

    Args:
        candles: Window of candles, oldest first

    Returns:
        Dict of indicator name -> value, None where undefined
    """
    if not candles:
        return {}

    df = candles_to_frame(candles)
    close, high, low = df["close"], df["high"], df["low"]
    price = float(close.iloc[-1])

    values: Dict[str, Optional[float]] = {"price": price}

    for period in config.EMA_PERIODS:
        values[f"ema_{period}"] = _last(ema(close, period))

    macd_df = macd(close)
    values["macd"] = _last(macd_df["macd"])
    values["macd_signal"] = _last(macd_df["signal"])
    values["macd_histogram"] = _last(macd_df["histogram"])

    for period in config.RSI_PERIODS:
        values[f"rsi_{period}"] = _last(rsi(close, period))

    for period in config.ATR_PERIODS:
        values[f"atr_{period}"] = _last(atr(high, low, close, period))

    atr_14 = values.get("atr_14")
    values["atr_pct"] = atr_14 / price * 100 if atr_14 is not None and price > 0 else None

    values[f"adx_{config.ADX_PERIOD}"] = _last(adx(high, low, close))
    values[f"zscore_{config.ZSCORE_PERIOD}"] = _last(zscore(close))
    values["volume_ratio"] = _last(volume_ratio(df["volume"]))

    return values
