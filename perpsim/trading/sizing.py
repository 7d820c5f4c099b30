"""
Position sizing for simulated leveraged trades.

Notional is the margin committed to a position; exposure is
notional x leverage. A requested notional is capped at a fraction of the
account's available margin.
"""

from decimal import Decimal
from typing import Any, Tuple

from perpsim.config import MAX_POSITION_FRACTION
from perpsim.models import to_decimal


def max_notional(available_margin: Any, max_position_fraction: Any = MAX_POSITION_FRACTION) -> Decimal:
    """Largest notional a single new position may commit."""
    available = to_decimal(available_margin)
    if available <= 0:
        return Decimal("0")
    return available * to_decimal(max_position_fraction)


def clamp_notional(
    requested: Any,
    available_margin: Any,
    max_position_fraction: Any = MAX_POSITION_FRACTION,
) -> Tuple[Decimal, bool]:
    """
    Cap a requested notional at the account limit.

    Returns:
        Tuple of (notional_to_use, was_clamped)
    """
    requested = to_decimal(requested)
    cap = max_notional(available_margin, max_position_fraction)
    if requested > cap:
        return cap, True
    return requested, False


def calculate_exposure(notional: Any, leverage: Any) -> Decimal:
    """Market exposure controlled by a position."""
    return to_decimal(notional) * to_decimal(leverage)


def should_skip_trade(notional: Any, min_notional: Any) -> Tuple[bool, str]:
    """
    Check whether a sized trade is too small to place.

    Returns:
        Tuple of (should_skip, reason)
    """
    notional = to_decimal(notional)
    if notional <= 0:
        return True, "No margin available"
    if notional < to_decimal(min_notional):
        return True, f"Notional {notional:.2f} below minimum {to_decimal(min_notional):.2f}"
    return False, ""
