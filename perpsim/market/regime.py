"""
Market regime classification.

Pure function of snapshot indicator values. Checks run in a fixed order:
trend (UPTREND / DOWNTREND) first, then volatility (LOW_VOL / CHOPPY),
defaulting to RANGING. Missing inputs fall through to RANGING, except the
slower EMAs: ema_200 is optional, and without ema_50 the trend check
compares price to ema_20 instead.
"""

from typing import Mapping, Optional

from perpsim import config
from perpsim.models import Regime


def _is_uptrend(
    adx: float,
    price: float,
    ema_fast: float,
    ema_slow: Optional[float],
    ema_long: Optional[float],
    macd: float,
) -> bool:
    if adx < config.ADX_TRENDING or macd <= 0:
        return False
    # Before ema_50 exists, price above ema_20 stands in for the EMA stack
    if ema_slow is None:
        return price > ema_fast
    if ema_fast <= ema_slow:
        return False
    return ema_long is None or ema_slow > ema_long


def _is_downtrend(
    adx: float,
    price: float,
    ema_fast: float,
    ema_slow: Optional[float],
    ema_long: Optional[float],
    macd: float,
) -> bool:
    if adx < config.ADX_TRENDING or macd >= 0:
        return False
    if ema_slow is None:
        return price < ema_fast
    if ema_fast >= ema_slow:
        return False
    return ema_long is None or ema_slow < ema_long


def _is_choppy(indicators: Mapping[str, Optional[float]], atr_pct: float) -> bool:
    """High volatility without direction: tangled EMAs, neutral RSI, price near its mean."""
    if atr_pct < config.ATR_PCT_HIGH:
        return False

    price = indicators.get("price")
    ema_fast = indicators.get("ema_20")
    ema_slow = indicators.get("ema_50")
    rsi = indicators.get("rsi_14")
    z = indicators.get(f"zscore_{config.ZSCORE_PERIOD}")

    if price and ema_fast is not None and ema_slow is not None:
        if abs(ema_fast - ema_slow) / price >= config.EMA_ENTANGLED_PCT:
            return False
    if rsi is not None and not config.RSI_NEUTRAL_LOW <= rsi <= config.RSI_NEUTRAL_HIGH:
        return False
    if z is not None and abs(z) >= config.ZSCORE_NEUTRAL:
        return False
    return True


def classify_regime(indicators: Mapping[str, Optional[float]]) -> Regime:
    """
    Classify market regime from indicator values.

    Args:
        indicators: Mapping as produced by compute_indicators()

    Returns:
        One of UPTREND, DOWNTREND, LOW_VOL, CHOPPY, RANGING
    """
    price = indicators.get("price")
    adx = indicators.get(f"adx_{config.ADX_PERIOD}")
    ema_fast = indicators.get("ema_20")
    ema_slow = indicators.get("ema_50")
    ema_long = indicators.get("ema_200")
    macd = indicators.get("macd")
    atr_pct = indicators.get("atr_pct")

    # Trend
    if None not in (adx, price, ema_fast, macd):
        if _is_uptrend(adx, price, ema_fast, ema_slow, ema_long, macd):
            return Regime.UPTREND
        if _is_downtrend(adx, price, ema_fast, ema_slow, ema_long, macd):
            return Regime.DOWNTREND

    # Volatility
    if atr_pct is not None:
        if adx is not None and atr_pct <= config.ATR_PCT_LOW and adx < config.ADX_WEAK:
            return Regime.LOW_VOL
        if _is_choppy(indicators, atr_pct):
            return Regime.CHOPPY

    return Regime.RANGING
