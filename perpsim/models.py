"""
Data models for the perpsim simulation engine.

Defines candles, snapshots, trade intents, position states, equity points,
run configuration and the final BacktestResult. Money fields on ledger
types are Decimal; to_dict() emits plain floats for serialization.
"""

import hashlib
import json
import math
from dataclasses import dataclass, field, fields
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from perpsim import config


# =============================================================================
# EXCEPTIONS
# =============================================================================


class BacktestConfigError(ValueError):
    """Raised when a BacktestConfig is invalid. Fatal: no run starts."""


class DataImportError(RuntimeError):
    """Raised when no instrument could be imported for a run."""


class LedgerInvariantError(RuntimeError):
    """Raised when the ledger's accounting identities no longer hold."""


# =============================================================================
# HELPERS
# =============================================================================


def to_decimal(value: Any) -> Decimal:
    """Convert a number to Decimal via its string form to avoid binary float noise."""
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


# Ledger money is held at a fixed scale so sums never hit context rounding
MONEY_QUANTUM = Decimal("1e-10")


def quantize_money(value: Decimal) -> Decimal:
    return value.quantize(MONEY_QUANTUM)


def ensure_utc(ts: datetime) -> datetime:
    """Treat naive datetimes as UTC."""
    if ts.tzinfo is None:
        return ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc)


def _enum_text(value: Any) -> str:
    """Upper-cased text of an enum member or a raw string."""
    return str(getattr(value, "value", value)).upper()


def _parse_float(value: Any, name: str) -> float:
    if isinstance(value, bool):
        raise TypeError(f"{name} must be a number, got bool")
    return float(value)


def _num(value: Optional[Decimal]) -> Optional[float]:
    return float(value) if value is not None else None


# =============================================================================
# ENUMS
# =============================================================================


class Side(str, Enum):
    LONG = "LONG"
    SHORT = "SHORT"

    @property
    def direction(self) -> int:
        """+1 for LONG, -1 for SHORT."""
        return 1 if self is Side.LONG else -1


class Action(str, Enum):
    OPEN = "OPEN"
    CLOSE = "CLOSE"
    ADJUST = "ADJUST"


class PositionStatus(str, Enum):
    """
    Position lifecycle states.

    OPEN is carried by Position; the four terminal states are carried by
    CompletedTrade.exit_reason.
    """

    OPEN = "OPEN"
    CLOSED = "CLOSED"
    STOPPED = "STOPPED"
    TP_HIT = "TP_HIT"
    LIQUIDATED = "LIQUIDATED"

    @property
    def is_terminal(self) -> bool:
        return self is not PositionStatus.OPEN


class Regime(str, Enum):
    UPTREND = "UPTREND"
    DOWNTREND = "DOWNTREND"
    RANGING = "RANGING"
    CHOPPY = "CHOPPY"
    LOW_VOL = "LOW_VOL"


class OpenPolicy(str, Enum):
    """What an OPEN does when the instrument already has an open position."""

    REJECT = "REJECT"
    REPLACE = "REPLACE"


# =============================================================================
# MARKET DATA
# =============================================================================


@dataclass(frozen=True)
class Candle:
    """One OHLCV bar. Timestamp is the bar open time in UTC."""

    timestamp: datetime
    open: float
    high: float
    low: float
    close: float
    volume: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp.isoformat(),
            "open": self.open,
            "high": self.high,
            "low": self.low,
            "close": self.close,
            "volume": self.volume,
        }


@dataclass(frozen=True)
class MarketSnapshot:
    """Indicator view of one instrument at one step."""

    instrument: str
    timestamp: datetime
    price: float
    indicators: Dict[str, Optional[float]] = field(default_factory=dict, hash=False)
    regime: Regime = Regime.RANGING
    is_complete: bool = False

    def get(self, name: str) -> Optional[float]:
        return self.indicators.get(name)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "instrument": self.instrument,
            "timestamp": self.timestamp.isoformat(),
            "price": self.price,
            "indicators": dict(self.indicators),
            "regime": self.regime.value,
            "is_complete": self.is_complete,
        }


# =============================================================================
# INTENTS AND POSITIONS
# =============================================================================


@dataclass(frozen=True)
class TradeIntent:
    """A request from the decision function to change exposure."""

    instrument: str
    action: Action
    side: Optional[Side] = None
    notional: float = 0.0
    leverage: float = 1.0
    stop_loss: Optional[float] = None
    take_profit: Optional[float] = None
    invalidation_note: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TradeIntent":
        """
        Parse a loosely-typed intent mapping.

        Raises:
            ValueError: If a required field is missing or not parsable
        """
        try:
            instrument = str(data["instrument"])
            action = Action(_enum_text(data["action"]))
        except KeyError as e:
            raise ValueError(f"Intent missing field {e}") from e

        side_raw = data.get("side")
        side = Side(_enum_text(side_raw)) if side_raw is not None else None

        def _opt(key: str) -> Optional[float]:
            value = data.get(key)
            return _parse_float(value, key) if value is not None else None

        return cls(
            instrument=instrument,
            action=action,
            side=side,
            notional=_parse_float(data.get("notional", 0.0), "notional"),
            leverage=_parse_float(data.get("leverage", 1.0), "leverage"),
            stop_loss=_opt("stop_loss"),
            take_profit=_opt("take_profit"),
            invalidation_note=data.get("invalidation_note"),
        )

    def normalized(self) -> "TradeIntent":
        """
        Re-parse this intent's fields so enum and numeric types are guaranteed.

        Accepts string action/side values on a directly constructed intent.

        Raises:
            ValueError, TypeError: If a field cannot be coerced
        """
        return TradeIntent.from_dict({f.name: getattr(self, f.name) for f in fields(self)})

    def to_dict(self) -> Dict[str, Any]:
        return {
            "instrument": self.instrument,
            "action": self.action.value,
            "side": self.side.value if self.side else None,
            "notional": self.notional,
            "leverage": self.leverage,
            "stop_loss": self.stop_loss,
            "take_profit": self.take_profit,
            "invalidation_note": self.invalidation_note,
        }


@dataclass
class Position:
    """An open position. Owned and mutated only by PositionLedger."""

    position_id: str
    instrument: str
    side: Side
    entry_price: Decimal
    notional: Decimal
    leverage: Decimal
    opened_at: datetime
    entry_fee: Decimal
    liquidation_price: Decimal
    stop_loss: Optional[Decimal] = None
    take_profit: Optional[Decimal] = None
    status: PositionStatus = PositionStatus.OPEN
    invalidation_note: Optional[str] = None

    def gross_pnl_at(self, price: Decimal) -> Decimal:
        """Price-move PnL before fees."""
        move = (price - self.entry_price) * self.side.direction
        return quantize_money(move * (self.notional / self.entry_price) * self.leverage)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "position_id": self.position_id,
            "instrument": self.instrument,
            "side": self.side.value,
            "entry_price": float(self.entry_price),
            "notional": float(self.notional),
            "leverage": float(self.leverage),
            "opened_at": self.opened_at.isoformat(),
            "entry_fee": float(self.entry_fee),
            "liquidation_price": float(self.liquidation_price),
            "stop_loss": _num(self.stop_loss),
            "take_profit": _num(self.take_profit),
            "status": self.status.value,
        }


@dataclass(frozen=True)
class CompletedTrade:
    """A closed position. Append-only in the ledger's trade log."""

    position_id: str
    instrument: str
    side: Side
    entry_price: Decimal
    exit_price: Decimal
    notional: Decimal
    leverage: Decimal
    opened_at: datetime
    closed_at: datetime
    realized_pnl: Decimal
    realized_pnl_percent: Decimal
    fees: Decimal
    exit_reason: PositionStatus

    def __post_init__(self):
        if not self.exit_reason.is_terminal:
            raise ValueError(f"CompletedTrade cannot have exit_reason {self.exit_reason.value}")

    @property
    def holding_seconds(self) -> float:
        return (self.closed_at - self.opened_at).total_seconds()

    @property
    def is_win(self) -> bool:
        return self.realized_pnl > 0

    @property
    def is_loss(self) -> bool:
        return self.realized_pnl < 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "position_id": self.position_id,
            "instrument": self.instrument,
            "side": self.side.value,
            "entry_price": float(self.entry_price),
            "exit_price": float(self.exit_price),
            "notional": float(self.notional),
            "leverage": float(self.leverage),
            "opened_at": self.opened_at.isoformat(),
            "closed_at": self.closed_at.isoformat(),
            "realized_pnl": float(self.realized_pnl),
            "realized_pnl_percent": float(self.realized_pnl_percent),
            "fees": float(self.fees),
            "exit_reason": self.exit_reason.value,
            "holding_seconds": self.holding_seconds,
        }


# =============================================================================
# ACCOUNT AND EQUITY
# =============================================================================


@dataclass(frozen=True)
class EquityPoint:
    timestamp: datetime
    equity: Decimal
    high_water_mark: Decimal
    drawdown_percent: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp.isoformat(),
            "equity": float(self.equity),
            "high_water_mark": float(self.high_water_mark),
            "drawdown_percent": self.drawdown_percent,
        }


@dataclass(frozen=True)
class AccountState:
    """Read-only account view handed to the decision function."""

    timestamp: datetime
    initial_balance: Decimal
    balance: Decimal
    equity: Decimal
    unrealized_pnl: Decimal
    available_margin: Decimal
    positions: Tuple[Position, ...] = ()

    def position_for(self, instrument: str) -> Optional[Position]:
        for position in self.positions:
            if position.instrument == instrument:
                return position
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp.isoformat(),
            "initial_balance": float(self.initial_balance),
            "balance": float(self.balance),
            "equity": float(self.equity),
            "unrealized_pnl": float(self.unrealized_pnl),
            "available_margin": float(self.available_margin),
            "positions": [p.to_dict() for p in self.positions],
        }


@dataclass(frozen=True)
class Diagnostic:
    """A recoverable problem recorded during a run."""

    timestamp: Optional[datetime]
    code: str
    message: str
    instrument: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
            "code": self.code,
            "message": self.message,
            "instrument": self.instrument,
        }


@dataclass(frozen=True)
class StepEvent:
    """Everything that happened during one clock step."""

    timestamp: datetime
    marks: Dict[str, float]
    exits: Tuple[CompletedTrade, ...]
    snapshots: Dict[str, MarketSnapshot]
    decision_invoked: bool
    accepted_intents: Tuple[TradeIntent, ...]
    closed_by_intents: Tuple[CompletedTrade, ...]
    diagnostics: Tuple[Diagnostic, ...]
    equity_point: EquityPoint
    flattened: Tuple[CompletedTrade, ...] = ()

    @property
    def closed_trades(self) -> Tuple[CompletedTrade, ...]:
        return self.exits + self.closed_by_intents + self.flattened


# =============================================================================
# RUN CONFIGURATION
# =============================================================================


@dataclass
class BacktestConfig:
    """
    Parameters for one simulation run. Validated on construction.

    Raises:
        BacktestConfigError: On any invalid field
    """

    instruments: Tuple[str, ...]
    start_time: datetime
    end_time: datetime
    initial_balance: float = 1000.0
    max_leverage: float = 10.0
    trading_interval_seconds: int = 3600
    interval: str = "1h"
    fee_rate: float = config.TAKER_FEE_RATE
    maintenance_margin_buffer: float = config.MAINTENANCE_MARGIN_BUFFER
    max_position_fraction: float = config.MAX_POSITION_FRACTION
    min_order_notional: float = config.MIN_ORDER_NOTIONAL
    open_policy: OpenPolicy = OpenPolicy.REJECT
    decision_timeout_seconds: float = config.DECISION_TIMEOUT_SECONDS
    snapshot_window: int = config.SNAPSHOT_WINDOW
    min_snapshot_bars: int = config.MIN_SNAPSHOT_BARS
    recent_history_size: int = config.RECENT_HISTORY_SIZE
    close_positions_at_end: bool = True

    def __post_init__(self):
        if isinstance(self.instruments, str):
            self.instruments = (self.instruments,)
        self.instruments = tuple(dict.fromkeys(self.instruments))
        if isinstance(self.open_policy, str):
            self.open_policy = OpenPolicy(self.open_policy.upper())
        self.start_time = ensure_utc(self.start_time)
        self.end_time = ensure_utc(self.end_time)
        self._validate()

    def _validate(self) -> None:
        if not self.instruments:
            raise BacktestConfigError("At least one instrument is required")
        if self.start_time >= self.end_time:
            raise BacktestConfigError(
                f"start_time {self.start_time.isoformat()} must be before "
                f"end_time {self.end_time.isoformat()}"
            )
        if not math.isfinite(self.initial_balance) or self.initial_balance <= 0:
            raise BacktestConfigError(f"initial_balance must be positive, got {self.initial_balance}")
        if not 1 <= self.max_leverage <= config.ABSOLUTE_MAX_LEVERAGE:
            raise BacktestConfigError(
                f"max_leverage must be within [1, {config.ABSOLUTE_MAX_LEVERAGE}], got {self.max_leverage}"
            )
        if self.trading_interval_seconds <= 0:
            raise BacktestConfigError("trading_interval_seconds must be positive")
        if self.interval not in config.INTERVAL_SECONDS:
            raise BacktestConfigError(
                f"Unknown interval {self.interval!r}; expected one of {list(config.INTERVAL_SECONDS)}"
            )
        if self.fee_rate < 0:
            raise BacktestConfigError("fee_rate cannot be negative")
        if not 0 <= self.maintenance_margin_buffer < 1:
            raise BacktestConfigError("maintenance_margin_buffer must be within [0, 1)")
        if not 0 < self.max_position_fraction <= 1:
            raise BacktestConfigError("max_position_fraction must be within (0, 1]")
        if self.min_order_notional < 0:
            raise BacktestConfigError("min_order_notional cannot be negative")
        if self.decision_timeout_seconds <= 0:
            raise BacktestConfigError("decision_timeout_seconds must be positive")
        if self.min_snapshot_bars < 1 or self.snapshot_window < self.min_snapshot_bars:
            raise BacktestConfigError("snapshot_window must be >= min_snapshot_bars >= 1")

    @property
    def candle_seconds(self) -> int:
        return config.INTERVAL_SECONDS[self.interval]

    @property
    def step_seconds(self) -> int:
        """Effective spacing between steps; never finer than the candles."""
        return max(self.trading_interval_seconds, self.candle_seconds)

    @classmethod
    def from_settings(cls, **kwargs) -> "BacktestConfig":
        """Build a config using PERPSIM_* environment defaults for unset fields."""
        from perpsim.settings import get_engine_defaults

        params = get_engine_defaults()
        params.update(kwargs)
        return cls(**params)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "instruments": list(self.instruments),
            "start_time": self.start_time.isoformat(),
            "end_time": self.end_time.isoformat(),
            "initial_balance": self.initial_balance,
            "max_leverage": self.max_leverage,
            "trading_interval_seconds": self.trading_interval_seconds,
            "interval": self.interval,
            "fee_rate": self.fee_rate,
            "maintenance_margin_buffer": self.maintenance_margin_buffer,
            "max_position_fraction": self.max_position_fraction,
            "min_order_notional": self.min_order_notional,
            "open_policy": self.open_policy.value,
            "close_positions_at_end": self.close_positions_at_end,
        }


# =============================================================================
# RESULT
# =============================================================================


def _json_float(value: float) -> Any:
    # JSON has no infinity; keep it readable
    if math.isinf(value):
        return "inf" if value > 0 else "-inf"
    return value


@dataclass(frozen=True)
class BacktestResult:
    """Final output of a replay run."""

    config: BacktestConfig
    initial_balance: float
    final_balance: float
    total_pnl: float
    total_pnl_percent: float
    total_fees: float
    total_trades: int
    winning_trades: int
    losing_trades: int
    win_rate: float
    average_win: float
    average_loss: float
    profit_factor: float
    max_drawdown: float
    max_drawdown_percent: float
    sharpe_ratio: float
    sortino_ratio: float
    max_consecutive_wins: int
    max_consecutive_losses: int
    average_holding_time_seconds: float
    max_holding_time_seconds: float
    min_holding_time_seconds: float
    trades: Tuple[CompletedTrade, ...]
    equity_curve: Tuple[EquityPoint, ...]
    daily_returns: Tuple[Tuple[str, float], ...]
    diagnostics: Tuple[Diagnostic, ...] = ()
    execution_time_ms: float = 0.0

    def to_dict(self, include_timing: bool = True) -> Dict[str, Any]:
        data = {
            "config": self.config.to_dict(),
            "initial_balance": self.initial_balance,
            "final_balance": self.final_balance,
            "total_pnl": self.total_pnl,
            "total_pnl_percent": self.total_pnl_percent,
            "total_fees": self.total_fees,
            "total_trades": self.total_trades,
            "winning_trades": self.winning_trades,
            "losing_trades": self.losing_trades,
            "win_rate": self.win_rate,
            "average_win": self.average_win,
            "average_loss": self.average_loss,
            "profit_factor": _json_float(self.profit_factor),
            "max_drawdown": self.max_drawdown,
            "max_drawdown_percent": self.max_drawdown_percent,
            "sharpe_ratio": self.sharpe_ratio,
            "sortino_ratio": self.sortino_ratio,
            "max_consecutive_wins": self.max_consecutive_wins,
            "max_consecutive_losses": self.max_consecutive_losses,
            "average_holding_time_seconds": self.average_holding_time_seconds,
            "max_holding_time_seconds": self.max_holding_time_seconds,
            "min_holding_time_seconds": self.min_holding_time_seconds,
            "trades": [t.to_dict() for t in self.trades],
            "equity_curve": [p.to_dict() for p in self.equity_curve],
            "daily_returns": [{"date": d, "return_percent": r} for d, r in self.daily_returns],
            "diagnostics": [d.to_dict() for d in self.diagnostics],
        }
        if include_timing:
            data["execution_time_ms"] = self.execution_time_ms
        return data

    def fingerprint(self) -> str:
        """Stable hash of everything except wall-clock timing."""
        payload = json.dumps(self.to_dict(include_timing=False), sort_keys=True, default=str)
        return hashlib.sha256(payload.encode("utf-8")).hexdigest()
