"""
Structural validation of trade intents.

Runs between the decision function and the ledger. Each intent is checked
on its own; a bad intent is dropped with a Diagnostic and never repaired.
"""

import logging
import math
from datetime import datetime
from typing import List, Mapping, Optional, Sequence, Tuple

from perpsim.models import (
    Action,
    BacktestConfig,
    Diagnostic,
    Position,
    Side,
    TradeIntent,
)
from perpsim.trading.derivatives import is_protective_level_valid

logger = logging.getLogger(__name__)


def _is_number(value) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and math.isfinite(value)


def _finite_positive(value: Optional[float]) -> bool:
    return _is_number(value) and value > 0


def check_intent(
    intent: TradeIntent,
    config: BacktestConfig,
    marks: Mapping[str, float],
    positions: Optional[Mapping[str, Position]] = None,
) -> Optional[Tuple[str, str]]:
    """
    Validate one intent.

    Returns:
        None if valid, else (code, message)
    """
    if intent.instrument not in config.instruments:
        return "UNKNOWN_INSTRUMENT", f"{intent.instrument} is not part of this run"

    mark = marks.get(intent.instrument)
    if mark is None:
        return "NO_PRICE", f"no mark price for {intent.instrument} yet"

    if not _is_number(intent.notional) or intent.notional < 0:
        return "INVALID_NOTIONAL", f"notional must be a non-negative number, got {intent.notional}"

    for label, level in (("stop_loss", intent.stop_loss), ("take_profit", intent.take_profit)):
        if level is not None and not _finite_positive(level):
            return "INVALID_LEVEL", f"{label} must be a positive number, got {level}"

    if intent.side is not None and not isinstance(intent.side, Side):
        return "INVALID_SIDE", f"side must be LONG or SHORT, got {intent.side!r}"

    if intent.action is Action.OPEN:
        if intent.side is None:
            return "MISSING_SIDE", "OPEN requires a side"
        if intent.notional <= 0:
            return "INVALID_NOTIONAL", "OPEN requires a positive notional"
        if intent.notional < config.min_order_notional:
            return (
                "BELOW_MIN_NOTIONAL",
                f"notional {intent.notional} below minimum {config.min_order_notional}",
            )
        if not _is_number(intent.leverage) or not 1 <= intent.leverage <= config.max_leverage:
            return (
                "INVALID_LEVERAGE",
                f"leverage {intent.leverage} outside [1, {config.max_leverage}]",
            )
        if not is_protective_level_valid(intent.side, mark, intent.stop_loss, intent.take_profit):
            return "LEVEL_WRONG_SIDE", f"stop/target on the wrong side of {mark} for {intent.side.value}"

    elif intent.action is Action.ADJUST:
        if intent.stop_loss is None and intent.take_profit is None:
            return "EMPTY_ADJUST", "ADJUST requires stop_loss or take_profit"
        position = (positions or {}).get(intent.instrument)
        side: Optional[Side] = position.side if position is not None else intent.side
        if side is not None and not is_protective_level_valid(
            side, mark, intent.stop_loss, intent.take_profit
        ):
            return "LEVEL_WRONG_SIDE", f"stop/target on the wrong side of {mark} for {side.value}"

    elif intent.action is Action.CLOSE:
        pass

    else:
        return "INVALID_ACTION", f"action must be OPEN, ADJUST or CLOSE, got {intent.action!r}"

    return None


def validate_intents(
    intents: Sequence[TradeIntent],
    config: BacktestConfig,
    marks: Mapping[str, float],
    timestamp: datetime,
    positions: Optional[Mapping[str, Position]] = None,
) -> Tuple[List[TradeIntent], List[Diagnostic]]:
    """
    Split intents into accepted ones and diagnostics for the rejects.

    Returns:
        Tuple of (accepted_intents, diagnostics)
    """
    accepted: List[TradeIntent] = []
    diagnostics: List[Diagnostic] = []

    for intent in intents:
        problem = check_intent(intent, config, marks, positions)
        if problem is None:
            accepted.append(intent)
            continue
        code, message = problem
        action = getattr(intent.action, "value", intent.action)
        logger.info(f"Dropping {action} intent for {intent.instrument}: {message}")
        diagnostics.append(
            Diagnostic(timestamp=timestamp, code=code, message=message, instrument=intent.instrument)
        )

    return accepted, diagnostics
