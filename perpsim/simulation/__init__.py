"""Position ledger, simulation clock and live runner."""

from perpsim.simulation.clock import SimulationClock, replay_timestamps
from perpsim.simulation.ledger import PositionLedger
from perpsim.simulation.live import LiveMarketFeed, LiveRunner

__all__ = [
    "LiveMarketFeed",
    "LiveRunner",
    "PositionLedger",
    "SimulationClock",
    "replay_timestamps",
]
