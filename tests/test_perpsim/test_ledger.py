"""
Tests for perpsim/simulation/ledger.py - PositionLedger.

Tests cover:
- OPEN at mark price with entry fee and liquidation price
- CLOSE realizes PnL net of both commissions (100 -> 110 at 2x = 19.89)
- Exit priority: LIQUIDATED > STOPPED > TP_HIT
- One open position per instrument (REJECT / REPLACE policies)
- Notional clamping is recorded, not silent
- ADJUST changes only protective levels
- Accounting identity and id disjointness, with LedgerInvariantError
  raised when either breaks
"""

from datetime import timedelta
from decimal import Decimal

import pytest

from perpsim.models import Action, LedgerInvariantError, PositionStatus, Side, TradeIntent
from perpsim.simulation.ledger import PositionLedger


def _open(instrument="BTC", side=Side.LONG, notional=100.0, leverage=2.0, **kwargs):
    return TradeIntent(instrument, Action.OPEN, side, notional, leverage, **kwargs)


@pytest.fixture
def ledger(base_config):
    return PositionLedger(base_config)


# =============================================================================
# OPEN / CLOSE
# =============================================================================


class TestOpenClose:
    """Tests for opening and closing positions."""

    def test_open_charges_entry_fee(self, ledger, t0):
        ledger.update_mark("BTC", 100)
        _, position, notes = ledger.open_position(t0, _open())
        assert notes == []
        assert position.position_id == "POS-00001"
        assert position.entry_price == Decimal("100")
        assert position.entry_fee == Decimal("0.055")
        assert position.liquidation_price == Decimal("50")
        assert ledger.balance == Decimal("999.945")

    def test_long_scenario_realizes_19_89(self, ledger, t0):
        """OPEN LONG 100 notional 2x at 100, CLOSE at 110 -> realized 19.89."""
        ledger.update_mark("BTC", 100)
        ledger.open_position(t0, _open())
        ledger.update_mark("BTC", 110)
        trade = ledger.close_position("BTC", t0 + timedelta(hours=1))

        assert trade.exit_reason is PositionStatus.CLOSED
        assert trade.exit_price == Decimal("110")
        assert trade.fees == Decimal("0.110")
        assert trade.realized_pnl == Decimal("19.89")
        assert float(trade.realized_pnl_percent) == pytest.approx(19.89)
        assert ledger.equity() == Decimal("1019.89")
        assert ledger.open_positions == {}

    def test_short_profit(self, ledger, t0):
        ledger.update_mark("BTC", 100)
        ledger.open_position(t0, _open(side=Side.SHORT, leverage=1.0))
        ledger.update_mark("BTC", 90)
        trade = ledger.close_position("BTC", t0 + timedelta(hours=1))
        assert trade.realized_pnl == Decimal("10") - Decimal("0.110")

    def test_no_mark_price(self, ledger, t0):
        _, position, notes = ledger.open_position(t0, _open())
        assert position is None
        assert notes[0].code == "NO_PRICE"

    def test_close_without_position(self, ledger, t0):
        ledger.update_mark("BTC", 100)
        closed, notes = ledger.apply_intents(t0, [TradeIntent("BTC", Action.CLOSE)])
        assert closed == []
        assert notes[0].code == "NO_POSITION"


# =============================================================================
# EXIT TRIGGERS
# =============================================================================


class TestExitTriggers:
    """Tests for evaluate_exits() priority and exit prices."""

    def test_liquidation_beats_stop(self, ledger, t0):
        """5x LONG at 100: a drop to 80 liquidates even with a stop at 85."""
        ledger.update_mark("BTC", 100)
        _, position, _ = ledger.open_position(t0, _open(leverage=5.0, stop_loss=85.0))
        assert position.liquidation_price == Decimal("80")

        ledger.update_mark("BTC", 82)
        closed = ledger.evaluate_exits(t0 + timedelta(hours=1), {"BTC": (Decimal("80"), Decimal("100"))})

        assert len(closed) == 1
        assert closed[0].exit_reason is PositionStatus.LIQUIDATED
        assert closed[0].exit_price == Decimal("80")
        # Whole margin lost plus both fees
        assert closed[0].realized_pnl == Decimal("-100") - Decimal("0.110")

    def test_stop_beats_target(self, ledger, t0):
        """A bar spanning both stop and target exits at the stop."""
        ledger.update_mark("BTC", 100)
        ledger.open_position(t0, _open(stop_loss=95.0, take_profit=105.0))
        closed = ledger.evaluate_exits(t0 + timedelta(hours=1), {"BTC": (Decimal("94"), Decimal("106"))})
        assert closed[0].exit_reason is PositionStatus.STOPPED
        assert closed[0].exit_price == Decimal("95.0")

    def test_take_profit(self, ledger, t0):
        ledger.update_mark("BTC", 100)
        ledger.open_position(t0, _open(take_profit=105.0))
        closed = ledger.evaluate_exits(t0 + timedelta(hours=1), {"BTC": (Decimal("99"), Decimal("106"))})
        assert closed[0].exit_reason is PositionStatus.TP_HIT
        assert closed[0].exit_price == Decimal("105.0")

    def test_short_stop(self, ledger, t0):
        ledger.update_mark("BTC", 100)
        ledger.open_position(t0, _open(side=Side.SHORT, stop_loss=103.0))
        closed = ledger.evaluate_exits(t0 + timedelta(hours=1), {"BTC": (Decimal("99"), Decimal("104"))})
        assert closed[0].exit_reason is PositionStatus.STOPPED

    def test_untouched_stays_open(self, ledger, t0):
        ledger.update_mark("BTC", 100)
        ledger.open_position(t0, _open(stop_loss=90.0, take_profit=120.0))
        closed = ledger.evaluate_exits(t0 + timedelta(hours=1), {"BTC": (Decimal("95"), Decimal("110"))})
        assert closed == []
        assert "BTC" in ledger.open_positions

    def test_falls_back_to_mark(self, ledger, t0):
        ledger.update_mark("BTC", 100)
        ledger.open_position(t0, _open(stop_loss=95.0))
        ledger.update_mark("BTC", 94)
        closed = ledger.evaluate_exits(t0 + timedelta(hours=1))
        assert closed[0].exit_reason is PositionStatus.STOPPED


# =============================================================================
# OPEN POLICY AND SIZING
# =============================================================================


class TestOpenPolicy:
    """Tests for the one-position-per-instrument rule."""

    def test_second_open_rejected(self, ledger, t0):
        ledger.update_mark("BTC", 100)
        ledger.open_position(t0, _open())
        _, position, notes = ledger.open_position(t0, _open(side=Side.SHORT))
        assert position is None
        assert notes[0].code == "POSITION_EXISTS"
        assert ledger.get_position("BTC").side is Side.LONG

    def test_replace_policy(self, config_factory, t0):
        ledger = PositionLedger(config_factory(open_policy="REPLACE"))
        ledger.update_mark("BTC", 100)
        ledger.open_position(t0, _open())
        replaced, position, _ = ledger.open_position(t0, _open(side=Side.SHORT))
        assert replaced.exit_reason is PositionStatus.CLOSED
        assert position.side is Side.SHORT
        assert position.position_id == "POS-00002"

    def test_clamp_recorded(self, ledger, t0):
        """Oversized notional is clamped to 95% of available margin with a diagnostic."""
        ledger.update_mark("BTC", 100)
        _, position, notes = ledger.open_position(t0, _open(notional=5000.0))
        assert position.notional == Decimal("950")
        assert [n.code for n in notes] == ["NOTIONAL_CLAMPED"]

    def test_insufficient_margin(self, config_factory, t0):
        ledger = PositionLedger(config_factory(max_position_fraction=1.0, fee_rate=0.0))
        ledger.update_mark("BTC", 100)
        ledger.update_mark("ETH", 10)
        ledger.open_position(t0, _open(notional=1000.0))
        _, position, notes = ledger.open_position(t0, _open(instrument="ETH", notional=10.0))
        assert position is None
        assert notes[0].code == "INSUFFICIENT_MARGIN"


class TestAdjust:
    """Tests for ADJUST intents."""

    def test_adjust_changes_only_levels(self, ledger, t0):
        ledger.update_mark("BTC", 100)
        ledger.open_position(t0, _open(stop_loss=90.0))
        closed, notes = ledger.apply_intents(
            t0, [TradeIntent("BTC", Action.ADJUST, stop_loss=97.0, take_profit=120.0)]
        )
        position = ledger.get_position("BTC")
        assert closed == [] and notes == []
        assert position.stop_loss == Decimal("97.0")
        assert position.take_profit == Decimal("120.0")
        assert position.notional == Decimal("100")
        assert position.entry_price == Decimal("100")

    def test_adjust_without_position(self, ledger, t0):
        ledger.update_mark("BTC", 100)
        _, notes = ledger.apply_intents(t0, [TradeIntent("BTC", Action.ADJUST, stop_loss=90.0)])
        assert notes[0].code == "NO_POSITION"


# =============================================================================
# INVARIANTS
# =============================================================================


class TestLedgerInvariants:
    """Tests for the accounting identity and state exclusivity."""

    def test_identity_through_lifecycle(self, config_factory, t0):
        ledger = PositionLedger(config_factory(instruments=("BTC", "ETH"), open_policy="REPLACE"))
        ledger.update_mark("BTC", 100)
        ledger.update_mark("ETH", 2000)
        ledger.check_invariants()

        ledger.open_position(t0, _open(notional=123.45, leverage=3.0))
        ledger.open_position(t0, _open(instrument="ETH", side=Side.SHORT, notional=77.7, leverage=7.0))
        ledger.check_invariants()

        ledger.update_mark("BTC", 103.37)
        ledger.update_mark("ETH", 1987.13)
        ledger.check_invariants()

        ledger.open_position(t0, _open(side=Side.SHORT, notional=50.0, leverage=1.5))
        ledger.update_mark("BTC", 99.91)
        ledger.check_invariants()

        ledger.flatten(t0 + timedelta(hours=3))
        ledger.check_invariants()
        assert ledger.open_positions == {}
        assert ledger.equity() == ledger.initial_balance + ledger.realized_pnl()

    def test_ids_never_reused(self, ledger, t0):
        ledger.update_mark("BTC", 100)
        ledger.open_position(t0, _open())
        ledger.close_position("BTC", t0)
        ledger.open_position(t0, _open())
        ids = [t.position_id for t in ledger.closed_trades] + [ledger.get_position("BTC").position_id]
        assert len(set(ids)) == len(ids)

    def test_balance_drift_raises(self, ledger, t0):
        ledger.update_mark("BTC", 100)
        ledger.open_position(t0, _open())
        ledger._balance += Decimal("0.01")
        with pytest.raises(LedgerInvariantError, match="equity identity"):
            ledger.check_invariants()

    def test_open_and_closed_id_raises(self, ledger, t0):
        ledger.update_mark("BTC", 100)
        ledger.open_position(t0, _open())
        ledger._closed_ids.add(ledger.get_position("BTC").position_id)
        with pytest.raises(LedgerInvariantError, match="both open and closed"):
            ledger.check_invariants()

    def test_account_state_is_a_copy(self, ledger, t0):
        ledger.update_mark("BTC", 100)
        ledger.open_position(t0, _open(stop_loss=90.0))
        state = ledger.account_state(t0)
        state.positions[0].stop_loss = Decimal("1")
        assert ledger.get_position("BTC").stop_loss == Decimal("90.0")
