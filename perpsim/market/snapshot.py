"""
SnapshotBuilder - turns a candle window into a MarketSnapshot.

A snapshot is complete only when the window holds at least
min_bars candles. Incomplete snapshots still carry whatever indicators
could be computed; the clock does not hand them to the decision function.
"""

import logging
from datetime import datetime
from typing import Optional, Sequence

from perpsim import config
from perpsim.market.indicators import compute_indicators
from perpsim.market.regime import classify_regime
from perpsim.models import Candle, MarketSnapshot, Regime

logger = logging.getLogger(__name__)


class SnapshotBuilder:
    """Builds MarketSnapshots from candle windows."""

    def __init__(self, min_bars: int = config.MIN_SNAPSHOT_BARS):
        if min_bars < 1:
            raise ValueError(f"min_bars must be >= 1, got {min_bars}")
        self.min_bars = min_bars

    def build(
        self,
        instrument: str,
        window: Sequence[Candle],
        timestamp: Optional[datetime] = None,
    ) -> MarketSnapshot:
        """
        Build a snapshot from the most recent candles.

        Args:
            instrument: Instrument identifier
            window: Candles, oldest first; the last one is the current bar
            timestamp: Step time (defaults to the last candle's timestamp)

        Raises:
            ValueError: If the window is empty
        """
        if not window:
            raise ValueError(f"{instrument}: cannot build a snapshot from an empty window")

        indicators = compute_indicators(window)
        complete = len(window) >= self.min_bars

        if not complete:
            logger.debug(
                f"{instrument}: {len(window)} bars < {self.min_bars}, snapshot incomplete"
            )

        return MarketSnapshot(
            instrument=instrument,
            timestamp=timestamp or window[-1].timestamp,
            price=window[-1].close,
            indicators=indicators,
            regime=classify_regime(indicators) if complete else Regime.RANGING,
            is_complete=complete,
        )
