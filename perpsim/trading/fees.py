"""
Fee calculations for simulated perpetual futures trading.

Commission is a flat percentage of notional, charged once on entry and
once on exit:
- Entry fee: notional x rate
- Exit fee: notional x rate
- Round trip: 2 x notional x rate

All functions take and return Decimal.
"""

from decimal import Decimal
from typing import Any

from perpsim.config import TAKER_FEE_RATE
from perpsim.models import to_decimal


def calculate_fee(notional: Any, fee_rate: Any = TAKER_FEE_RATE) -> Decimal:
    """
    Commission for one side of a trade.

    Args:
        notional: Position notional in quote currency
        fee_rate: Fraction of notional charged (0.00055 = 0.055%)

    Returns:
        Fee amount

    Example:
        >>> calculate_fee(100, 0.00055)
        Decimal('0.05500')
    """
    notional = to_decimal(notional)
    rate = to_decimal(fee_rate)
    if notional < 0:
        raise ValueError(f"Notional cannot be negative: {notional}")
    if rate < 0:
        raise ValueError(f"Fee rate cannot be negative: {rate}")
    return notional * rate


def calculate_round_trip_fee(notional: Any, fee_rate: Any = TAKER_FEE_RATE) -> Decimal:
    """Entry plus exit commission on the same notional."""
    return calculate_fee(notional, fee_rate) * 2


def calculate_breakeven_move(leverage: Any, fee_rate: Any = TAKER_FEE_RATE) -> Decimal:
    """
    Price move (as a fraction of entry) needed to cover round-trip fees.

    Fees are charged on notional while PnL scales with leverage, so the
    breakeven move shrinks as leverage grows.

    Example:
        >>> calculate_breakeven_move(2, 0.00055)
        Decimal('0.00055')
    """
    leverage = to_decimal(leverage)
    if leverage <= 0:
        raise ValueError(f"Leverage must be positive: {leverage}")
    return to_decimal(fee_rate) * 2 / leverage
