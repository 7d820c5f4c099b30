"""Fee, margin and sizing arithmetic."""

from perpsim.trading.derivatives import (
    calculate_liquidation_price,
    calculate_unrealized_pnl,
    is_protective_level_valid,
)
from perpsim.trading.fees import calculate_fee, calculate_round_trip_fee
from perpsim.trading.sizing import clamp_notional, max_notional, should_skip_trade

__all__ = [
    "calculate_fee",
    "calculate_liquidation_price",
    "calculate_round_trip_fee",
    "calculate_unrealized_pnl",
    "clamp_notional",
    "is_protective_level_valid",
    "max_notional",
    "should_skip_trade",
]
