"""Indicators, regime classification and snapshot construction."""

from perpsim.market.indicators import compute_indicators
from perpsim.market.regime import classify_regime
from perpsim.market.snapshot import SnapshotBuilder

__all__ = ["SnapshotBuilder", "classify_regime", "compute_indicators"]
