"""
SimulationClock - drives the per-step loop.

Each step runs, in order:
    (a) advance mark prices from the bars that arrived since the last step
    (b) mark-to-market and exit triggers on the ledger
    (c) build snapshots
    (d) one DecisionPort call (skipped when no snapshot is complete)
    (e) validate and apply intents
    (f) append one EquityPoint

step() is shared by replay (iter_replay / run) and live mode
(perpsim.simulation.live.LiveRunner). Steps are strictly sequential.
"""

import logging
import time
from datetime import datetime
from decimal import Decimal
from typing import Dict, Iterator, List, Mapping, Optional, Sequence

from perpsim.analytics.performance import PerformanceAnalyzer, drawdown_percent
from perpsim.data.series import CandleSeries
from perpsim.decision.port import DecisionGuard, DecisionPort
from perpsim.decision.validation import validate_intents
from perpsim.market.snapshot import SnapshotBuilder
from perpsim.models import (
    BacktestConfig,
    BacktestResult,
    Candle,
    CompletedTrade,
    Diagnostic,
    EquityPoint,
    MarketSnapshot,
    StepEvent,
    to_decimal,
)
from perpsim.simulation.ledger import PositionLedger

logger = logging.getLogger(__name__)


def replay_timestamps(series: Mapping[str, CandleSeries], config: BacktestConfig) -> List[datetime]:
    """
    Step times for a replay.

    The union of all candle timestamps within [start, end], thinned so
    consecutive steps are at least trading_interval_seconds apart.
    """
    stamps = sorted({
        ts
        for s in series.values()
        for ts in s.timestamps
        if config.start_time <= ts <= config.end_time
    })

    steps: List[datetime] = []
    for ts in stamps:
        if not steps or (ts - steps[-1]).total_seconds() >= config.trading_interval_seconds:
            steps.append(ts)
    return steps


class SimulationClock:
    """
    Owns one PositionLedger and advances it step by step.

    Create a new clock per run; a clock never resets.
    """

    def __init__(
        self,
        config: BacktestConfig,
        decision_port: DecisionPort,
        ledger: Optional[PositionLedger] = None,
        snapshot_builder: Optional[SnapshotBuilder] = None,
    ):
        self.config = config
        self.ledger = ledger or PositionLedger(config)
        self.snapshot_builder = snapshot_builder or SnapshotBuilder(config.min_snapshot_bars)
        self.guard = DecisionGuard(decision_port, config.decision_timeout_seconds)

        self._equity_curve: List[EquityPoint] = []
        self._diagnostics: List[Diagnostic] = []
        self._high_water_mark: Decimal = to_decimal(config.initial_balance)
        self._step_count = 0
        self._last_timestamp: Optional[datetime] = None

    # =========================================================================
    # STATE
    # =========================================================================

    @property
    def equity_curve(self) -> List[EquityPoint]:
        return list(self._equity_curve)

    @property
    def diagnostics(self) -> List[Diagnostic]:
        return list(self._diagnostics)

    @property
    def step_count(self) -> int:
        return self._step_count

    def add_diagnostics(self, diagnostics: Sequence[Diagnostic]) -> None:
        """Record diagnostics raised outside the step loop (e.g. data import)."""
        self._diagnostics.extend(diagnostics)

    # =========================================================================
    # SHARED STEP
    # =========================================================================

    def step(
        self,
        timestamp: datetime,
        new_bars: Mapping[str, Sequence[Candle]],
        windows: Mapping[str, Sequence[Candle]],
        final: bool = False,
    ) -> StepEvent:
        """
        Run one step.

        Args:
            timestamp: Step time; must be later than the previous step
            new_bars: instrument -> candles that closed since the previous step
            windows: instrument -> recent candles for snapshots (oldest first)
            final: Flatten open positions after intents (replay end)

        Returns:
            StepEvent describing everything that happened
        """
        if self._last_timestamp is not None and timestamp <= self._last_timestamp:
            raise ValueError(
                f"Step {timestamp.isoformat()} is not after {self._last_timestamp.isoformat()}"
            )
        diagnostics: List[Diagnostic] = []

        # (a) marks and the price range each instrument covered
        ranges = {}
        for instrument, bars in new_bars.items():
            if not bars:
                continue
            self.ledger.update_mark(instrument, bars[-1].close)
            ranges[instrument] = (
                to_decimal(min(b.low for b in bars)),
                to_decimal(max(b.high for b in bars)),
            )

        # (b) exits before the strategy sees the account
        exits = self.ledger.evaluate_exits(timestamp, ranges)

        # (c) snapshots
        snapshots = self._build_snapshots(timestamp, windows, diagnostics)
        complete = {k: s for k, s in snapshots.items() if s.is_complete}

        # (d) decision
        accepted = []
        decision_invoked = False
        if complete:
            decision_invoked = True
            recent = self.ledger.closed_trades[-self.config.recent_history_size:] \
                if self.config.recent_history_size > 0 else ()
            intents, notes = self.guard.call(
                timestamp, complete, self.ledger.account_state(timestamp), recent
            )
            diagnostics.extend(notes)

            # (e) validate and apply
            accepted, notes = validate_intents(
                intents, self.config, self.ledger.marks, timestamp, self.ledger.open_positions
            )
            diagnostics.extend(notes)
        else:
            logger.debug(f"{timestamp.isoformat()}: no complete snapshot, decision skipped")

        closed_by_intents, notes = self.ledger.apply_intents(timestamp, accepted)
        diagnostics.extend(notes)

        flattened: List[CompletedTrade] = []
        if final and self.config.close_positions_at_end:
            flattened = self.ledger.flatten(timestamp)

        # (f) equity
        point = self._record_equity(timestamp)

        self._diagnostics.extend(diagnostics)
        self._step_count += 1
        self._last_timestamp = timestamp

        return StepEvent(
            timestamp=timestamp,
            marks=self.ledger.marks,
            exits=tuple(exits),
            snapshots=snapshots,
            decision_invoked=decision_invoked,
            accepted_intents=tuple(accepted),
            closed_by_intents=tuple(closed_by_intents),
            diagnostics=tuple(diagnostics),
            equity_point=point,
            flattened=tuple(flattened),
        )

    def _build_snapshots(
        self,
        timestamp: datetime,
        windows: Mapping[str, Sequence[Candle]],
        diagnostics: List[Diagnostic],
    ) -> Dict[str, MarketSnapshot]:
        snapshots: Dict[str, MarketSnapshot] = {}
        for instrument, window in windows.items():
            if not window:
                continue
            try:
                snapshots[instrument] = self.snapshot_builder.build(instrument, window, timestamp)
            except Exception as e:
                logger.warning(f"Snapshot failed for {instrument} at {timestamp.isoformat()}: {e}")
                diagnostics.append(
                    Diagnostic(timestamp=timestamp, code="SNAPSHOT_FAILED",
                               message=str(e), instrument=instrument)
                )
        return snapshots

    def _record_equity(self, timestamp: datetime) -> EquityPoint:
        equity = self.ledger.equity()
        self._high_water_mark = max(self._high_water_mark, equity)
        point = EquityPoint(
            timestamp=timestamp,
            equity=equity,
            high_water_mark=self._high_water_mark,
            drawdown_percent=drawdown_percent(self._high_water_mark, equity),
        )
        self._equity_curve.append(point)
        return point

    # =========================================================================
    # REPLAY
    # =========================================================================

    def iter_replay(self, series: Mapping[str, CandleSeries]) -> Iterator[StepEvent]:
        """
        Replay candle history, yielding one StepEvent per step.

        Candles before start_time are used only as indicator warm-up.
        """
        if self._step_count:
            raise RuntimeError("SimulationClock already advanced; create a new clock per run")

        timestamps = replay_timestamps(series, self.config)
        if not timestamps:
            logger.warning("No candles inside the configured time range; nothing to replay")
            return

        logger.info(
            f"Replaying {len(timestamps)} steps across {len(series)} instruments "
            f"({timestamps[0].isoformat()} -> {timestamps[-1].isoformat()})"
        )

        previous: Optional[datetime] = None
        last_index = len(timestamps) - 1
        for index, ts in enumerate(timestamps):
            new_bars = {}
            windows = {}
            for instrument, candles in series.items():
                if previous is None:
                    latest = candles.latest(ts)
                    new_bars[instrument] = [latest] if latest is not None else []
                else:
                    new_bars[instrument] = candles.bars_between(previous, ts)
                windows[instrument] = candles.window(ts, self.config.snapshot_window)

            yield self.step(ts, new_bars, windows, final=index == last_index)
            previous = ts

    def run(self, series: Mapping[str, CandleSeries]) -> BacktestResult:
        """Replay to completion and analyze."""
        started = time.perf_counter()
        for _ in self.iter_replay(series):
            pass
        elapsed_ms = (time.perf_counter() - started) * 1000

        return PerformanceAnalyzer(self.config).analyze(
            self._equity_curve,
            self.ledger.closed_trades,
            total_fees=self.ledger.total_fees,
            diagnostics=self._diagnostics,
            execution_time_ms=elapsed_ms,
        )
