"""
PositionLedger - sole owner of open and closed position state.

Per instrument the lifecycle is NONE -> OPEN -> terminal, where terminal is
one of CLOSED, STOPPED, TP_HIT or LIQUIDATED. After a terminal transition
the instrument is back to NONE and may be opened again.

Accounting (all Decimal):
- Entry: balance -= entry_fee
- Exit: balance += gross_pnl - exit_fee
- realized_pnl = gross_pnl - entry_fee - exit_fee
- equity = balance + gross unrealized PnL of open positions

So sum(realized) == equity - initial_balance - net_unrealized at all times,
where net_unrealized = gross unrealized - entry fees already paid.
"""

import logging
from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Mapping, Optional, Tuple

from perpsim.models import (
    AccountState,
    Action,
    BacktestConfig,
    CompletedTrade,
    Diagnostic,
    LedgerInvariantError,
    OpenPolicy,
    Position,
    PositionStatus,
    TradeIntent,
    quantize_money,
    to_decimal,
)
from perpsim.trading.derivatives import (
    calculate_liquidation_price,
    liquidation_touched,
    stop_touched,
    target_touched,
)
from perpsim.trading.fees import calculate_fee
from perpsim.trading.sizing import clamp_notional, should_skip_trade

logger = logging.getLogger(__name__)

ZERO = Decimal("0")
HUNDRED = Decimal("100")

PriceRange = Tuple[Decimal, Decimal]


class PositionLedger:
    """
    Open positions, closed-trade log and account balance for one run.

    Not thread-safe; the clock that owns it is its only writer.
    """

    def __init__(self, config: BacktestConfig):
        self.config = config
        self.initial_balance = to_decimal(config.initial_balance)
        self.fee_rate = to_decimal(config.fee_rate)
        self.maintenance_buffer = to_decimal(config.maintenance_margin_buffer)

        self._balance = self.initial_balance
        self._open: Dict[str, Position] = {}
        self._closed: List[CompletedTrade] = []
        self._closed_ids = set()
        self._marks: Dict[str, Decimal] = {}
        self._position_counter = 0
        self._total_fees = ZERO

    # =========================================================================
    # STATE ACCESS
    # =========================================================================

    @property
    def balance(self) -> Decimal:
        return self._balance

    @property
    def open_positions(self) -> Dict[str, Position]:
        return dict(self._open)

    @property
    def closed_trades(self) -> Tuple[CompletedTrade, ...]:
        return tuple(self._closed)

    @property
    def total_fees(self) -> Decimal:
        return self._total_fees

    @property
    def marks(self) -> Dict[str, float]:
        return {k: float(v) for k, v in self._marks.items()}

    def get_position(self, instrument: str) -> Optional[Position]:
        return self._open.get(instrument)

    def mark_price(self, instrument: str) -> Optional[Decimal]:
        return self._marks.get(instrument)

    def gross_unrealized_pnl(self) -> Decimal:
        total = ZERO
        for instrument, position in self._open.items():
            total += position.gross_pnl_at(self._marks.get(instrument, position.entry_price))
        return total

    def unrealized_pnl(self) -> Decimal:
        """Net unrealized PnL: gross minus entry fees already charged."""
        return self.gross_unrealized_pnl() - sum((p.entry_fee for p in self._open.values()), ZERO)

    def realized_pnl(self) -> Decimal:
        return sum((t.realized_pnl for t in self._closed), ZERO)

    def equity(self) -> Decimal:
        return self._balance + self.gross_unrealized_pnl()

    def reserved_margin(self) -> Decimal:
        return sum((p.notional for p in self._open.values()), ZERO)

    def available_margin(self) -> Decimal:
        return max(ZERO, self.equity() - self.reserved_margin())

    def account_state(self, timestamp: datetime) -> AccountState:
        return AccountState(
            timestamp=timestamp,
            initial_balance=self.initial_balance,
            balance=self._balance,
            equity=self.equity(),
            unrealized_pnl=self.unrealized_pnl(),
            available_margin=self.available_margin(),
            positions=tuple(self._copy(p) for p in self._open.values()),
        )

    @staticmethod
    def _copy(position: Position) -> Position:
        return Position(**position.__dict__)

    # =========================================================================
    # MARK-TO-MARKET AND EXIT TRIGGERS
    # =========================================================================

    def update_mark(self, instrument: str, price) -> None:
        price = to_decimal(price)
        if price <= 0:
            raise ValueError(f"{instrument}: mark price must be positive, got {price}")
        self._marks[instrument] = price

    def evaluate_exits(
        self,
        timestamp: datetime,
        ranges: Optional[Mapping[str, PriceRange]] = None,
    ) -> List[CompletedTrade]:
        """
        Close every open position whose trigger was touched.

        Priority within one range: LIQUIDATED > STOPPED > TP_HIT.

        Args:
            timestamp: Step time
            ranges: instrument -> (low, high) seen since the previous step.
                Instruments without a range use their mark price.

        Returns:
            Trades closed by triggers, in instrument order
        """
        ranges = ranges or {}
        closed: List[CompletedTrade] = []

        for instrument, position in list(self._open.items()):
            if instrument in ranges:
                low, high = (to_decimal(v) for v in ranges[instrument])
            elif instrument in self._marks:
                low = high = self._marks[instrument]
            else:
                continue

            reason = self._check_trigger(position, low, high)
            if reason is not None:
                closed.append(self._close(position, timestamp, reason))

        return closed

    @staticmethod
    def _check_trigger(position: Position, low: Decimal, high: Decimal) -> Optional[PositionStatus]:
        if liquidation_touched(position.side, position.liquidation_price, low, high):
            return PositionStatus.LIQUIDATED
        if stop_touched(position.side, position.stop_loss, low, high):
            return PositionStatus.STOPPED
        if target_touched(position.side, position.take_profit, low, high):
            return PositionStatus.TP_HIT
        return None

    # =========================================================================
    # INTENTS
    # =========================================================================

    def apply_intents(
        self,
        timestamp: datetime,
        intents: List[TradeIntent],
    ) -> Tuple[List[CompletedTrade], List[Diagnostic]]:
        """
        Apply validated intents in order.

        Returns:
            Tuple of (trades closed by these intents, diagnostics)
        """
        closed: List[CompletedTrade] = []
        diagnostics: List[Diagnostic] = []

        for intent in intents:
            if intent.action is Action.OPEN:
                replaced, _, notes = self.open_position(timestamp, intent)
                if replaced is not None:
                    closed.append(replaced)
                diagnostics.extend(notes)
            elif intent.action is Action.CLOSE:
                trade = self.close_position(intent.instrument, timestamp)
                if trade is None:
                    diagnostics.append(self._note(timestamp, intent.instrument, "NO_POSITION",
                                                  "CLOSE with no open position"))
                else:
                    closed.append(trade)
            elif intent.action is Action.ADJUST:
                if not self.adjust_position(intent.instrument, intent.stop_loss, intent.take_profit):
                    diagnostics.append(self._note(timestamp, intent.instrument, "NO_POSITION",
                                                  "ADJUST with no open position"))
            else:
                raise ValueError(f"Unhandled action {intent.action!r}")

        return closed, diagnostics

    def open_position(
        self,
        timestamp: datetime,
        intent: TradeIntent,
    ) -> Tuple[Optional[CompletedTrade], Optional[Position], List[Diagnostic]]:
        """
        Open a position at the current mark price.

        Returns:
            Tuple of (trade closed by REPLACE or None, new position or None, diagnostics)
        """
        instrument = intent.instrument
        diagnostics: List[Diagnostic] = []
        replaced: Optional[CompletedTrade] = None

        entry_price = self._marks.get(instrument)
        if entry_price is None:
            diagnostics.append(self._note(timestamp, instrument, "NO_PRICE", "no mark price to open at"))
            return None, None, diagnostics

        if instrument in self._open:
            if self.config.open_policy is OpenPolicy.REJECT:
                diagnostics.append(self._note(
                    timestamp, instrument, "POSITION_EXISTS",
                    f"{self._open[instrument].position_id} already open; OPEN rejected",
                ))
                return None, None, diagnostics
            replaced = self._close(self._open[instrument], timestamp, PositionStatus.CLOSED)

        notional, clamped = clamp_notional(
            intent.notional, self.available_margin(), self.config.max_position_fraction
        )
        skip, reason = should_skip_trade(notional, self.config.min_order_notional)
        if skip:
            diagnostics.append(self._note(timestamp, instrument, "INSUFFICIENT_MARGIN", reason))
            return replaced, None, diagnostics
        if clamped:
            diagnostics.append(self._note(
                timestamp, instrument, "NOTIONAL_CLAMPED",
                f"requested {intent.notional}, clamped to {notional:.8f}",
            ))

        notional = quantize_money(notional)
        leverage = to_decimal(intent.leverage)
        entry_fee = quantize_money(calculate_fee(notional, self.fee_rate))
        self._position_counter += 1

        position = Position(
            position_id=f"POS-{self._position_counter:05d}",
            instrument=instrument,
            side=intent.side,
            entry_price=entry_price,
            notional=notional,
            leverage=leverage,
            opened_at=timestamp,
            entry_fee=entry_fee,
            liquidation_price=calculate_liquidation_price(
                entry_price, intent.side, leverage, self.maintenance_buffer
            ),
            stop_loss=to_decimal(intent.stop_loss) if intent.stop_loss is not None else None,
            take_profit=to_decimal(intent.take_profit) if intent.take_profit is not None else None,
            invalidation_note=intent.invalidation_note,
        )

        self._balance -= entry_fee
        self._total_fees += entry_fee
        self._open[instrument] = position

        logger.info(
            f"OPEN {position.position_id} {position.side.value} {instrument} @ {entry_price} "
            f"notional={notional:.2f} lev={leverage} liq={position.liquidation_price:.4f}"
        )
        return replaced, position, diagnostics

    def close_position(self, instrument: str, timestamp: datetime) -> Optional[CompletedTrade]:
        """Close at the mark price with reason CLOSED. None if nothing is open."""
        position = self._open.get(instrument)
        if position is None:
            return None
        return self._close(position, timestamp, PositionStatus.CLOSED)

    def adjust_position(
        self,
        instrument: str,
        stop_loss: Optional[float] = None,
        take_profit: Optional[float] = None,
    ) -> bool:
        """Update protective levels only. Returns False if nothing is open."""
        position = self._open.get(instrument)
        if position is None:
            return False
        if stop_loss is not None:
            position.stop_loss = to_decimal(stop_loss)
        if take_profit is not None:
            position.take_profit = to_decimal(take_profit)
        logger.debug(
            f"ADJUST {position.position_id}: stop={position.stop_loss} target={position.take_profit}"
        )
        return True

    def flatten(self, timestamp: datetime) -> List[CompletedTrade]:
        """Close every open position at mark."""
        return [
            self._close(position, timestamp, PositionStatus.CLOSED)
            for position in list(self._open.values())
        ]

    # =========================================================================
    # INTERNALS
    # =========================================================================

    def _exit_price(self, position: Position, reason: PositionStatus) -> Decimal:
        if reason is PositionStatus.LIQUIDATED:
            return position.liquidation_price
        elif reason is PositionStatus.STOPPED:
            return position.stop_loss
        elif reason is PositionStatus.TP_HIT:
            return position.take_profit
        elif reason is PositionStatus.CLOSED:
            return self._marks.get(position.instrument, position.entry_price)
        elif reason is PositionStatus.OPEN:
            raise ValueError("OPEN is not an exit reason")
        else:
            raise ValueError(f"Unhandled position status {reason!r}")

    def _close(self, position: Position, timestamp: datetime, reason: PositionStatus) -> CompletedTrade:
        exit_price = self._exit_price(position, reason)
        gross = position.gross_pnl_at(exit_price)
        exit_fee = quantize_money(calculate_fee(position.notional, self.fee_rate))
        realized = gross - position.entry_fee - exit_fee

        trade = CompletedTrade(
            position_id=position.position_id,
            instrument=position.instrument,
            side=position.side,
            entry_price=position.entry_price,
            exit_price=exit_price,
            notional=position.notional,
            leverage=position.leverage,
            opened_at=position.opened_at,
            closed_at=timestamp,
            realized_pnl=realized,
            realized_pnl_percent=realized / position.notional * HUNDRED,
            fees=position.entry_fee + exit_fee,
            exit_reason=reason,
        )

        self._balance += gross - exit_fee
        self._total_fees += exit_fee
        del self._open[position.instrument]
        position.status = reason
        self._closed.append(trade)
        self._closed_ids.add(trade.position_id)

        logger.info(
            f"{reason.value} {trade.position_id} {trade.instrument} @ {exit_price} "
            f"P&L: {realized:.4f} ({trade.realized_pnl_percent:.2f}%)"
        )
        return trade

    @staticmethod
    def _note(timestamp: datetime, instrument: str, code: str, message: str) -> Diagnostic:
        logger.info(f"{instrument}: {code} - {message}")
        return Diagnostic(timestamp=timestamp, code=code, message=message, instrument=instrument)

    def check_invariants(self) -> None:
        """
        Verify ledger accounting.

        Raises:
            LedgerInvariantError: If a position id is both open and closed, or
                realized PnL drifts from the equity identity
        """
        open_ids = {p.position_id for p in self._open.values()}
        both = open_ids & self._closed_ids
        if both:
            raise LedgerInvariantError(f"positions both open and closed: {sorted(both)}")
        lhs = self.realized_pnl()
        rhs = self.equity() - self.initial_balance - self.unrealized_pnl()
        if lhs != rhs:
            raise LedgerInvariantError(f"realized {lhs} != equity identity {rhs}")
