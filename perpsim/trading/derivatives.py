"""
Leverage and margin utilities for simulated perpetual futures.

Handles:
- Liquidation price under a simplified isolated-margin model
- Unrealized PnL at a mark price
- Exit trigger checks against a bar's high/low range
"""

from decimal import Decimal
from typing import Any, Optional

from perpsim.config import MAINTENANCE_MARGIN_BUFFER
from perpsim.models import Side, to_decimal


def calculate_liquidation_price(
    entry_price: Any,
    side: Side,
    leverage: Any,
    maintenance_buffer: Any = MAINTENANCE_MARGIN_BUFFER,
) -> Decimal:
    """
    Price at which an isolated position's margin is exhausted.

    Formula:
        LONG:  entry x (1 - (1/leverage - buffer))
        SHORT: entry x (1 + (1/leverage - buffer))

    With buffer 0 a 5x LONG at 100 liquidates at 80, and a 1x LONG at 0
    (it can never be liquidated).

    Args:
        entry_price: Position entry price
        side: LONG or SHORT
        leverage: Leverage multiplier (>= 1)
        maintenance_buffer: Fraction kept back as maintenance margin

    Returns:
        Liquidation price (never negative)
    """
    entry = to_decimal(entry_price)
    leverage = to_decimal(leverage)
    buffer = to_decimal(maintenance_buffer)

    if leverage < 1:
        raise ValueError(f"Leverage must be >= 1, got {leverage}")
    if entry <= 0:
        raise ValueError(f"Entry price must be positive, got {entry}")

    distance = max(Decimal("0"), Decimal("1") / leverage - buffer)

    if side is Side.LONG:
        return max(Decimal("0"), entry * (Decimal("1") - distance))
    return entry * (Decimal("1") + distance)


def calculate_unrealized_pnl(
    entry_price: Any,
    mark_price: Any,
    side: Side,
    notional: Any,
    leverage: Any,
) -> Decimal:
    """
    Gross unrealized PnL before fees.

    pnl = direction x (mark - entry) x (notional / entry) x leverage
    """
    entry = to_decimal(entry_price)
    mark = to_decimal(mark_price)
    return (mark - entry) * side.direction * (to_decimal(notional) / entry) * to_decimal(leverage)


def liquidation_touched(side: Side, liquidation_price: Decimal, low: Decimal, high: Decimal) -> bool:
    """Whether a bar's range reached the liquidation price."""
    if side is Side.LONG:
        return liquidation_price > 0 and low <= liquidation_price
    return high >= liquidation_price


def stop_touched(side: Side, stop_loss: Optional[Decimal], low: Decimal, high: Decimal) -> bool:
    if stop_loss is None:
        return False
    if side is Side.LONG:
        return low <= stop_loss
    return high >= stop_loss


def target_touched(side: Side, take_profit: Optional[Decimal], low: Decimal, high: Decimal) -> bool:
    if take_profit is None:
        return False
    if side is Side.LONG:
        return high >= take_profit
    return low <= take_profit


def is_protective_level_valid(
    side: Side,
    reference_price: Any,
    stop_loss: Optional[Any] = None,
    take_profit: Optional[Any] = None,
) -> bool:
    """
    Check stop/target sit on the correct side of the reference price.

    LONG: stop < price < target. SHORT: target < price < stop.
    """
    price = to_decimal(reference_price)
    if stop_loss is not None:
        stop = to_decimal(stop_loss)
        if side is Side.LONG and stop >= price:
            return False
        if side is Side.SHORT and stop <= price:
            return False
    if take_profit is not None:
        target = to_decimal(take_profit)
        if side is Side.LONG and target <= price:
            return False
        if side is Side.SHORT and target >= price:
            return False
    return True
