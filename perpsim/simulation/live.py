"""
Live mode - wall-clock driver for SimulationClock.

Same per-step logic as replay; time advances from a timer thread instead
of a timestamp list.
- Overlapping ticks are suppressed (non-blocking tick lock)
- stop() sets a shutdown event checked at the top of each tick; a tick
  already in flight finishes before the loop exits
- Each StepEvent is published to a bounded events queue; when no one
  drains it the oldest event is dropped and counted
- Accepted intents are forwarded to an optional ExecutionSink
"""

import logging
import queue
import threading
from collections import deque
from datetime import datetime, timezone
from typing import Any, Callable, Deque, Dict, List, Optional, Protocol

from perpsim.config import LIVE_EVENT_QUEUE_SIZE, LIVE_TICK_SECONDS
from perpsim.data.series import price_problem
from perpsim.decision.port import ExecutionSink
from perpsim.models import Candle, StepEvent
from perpsim.simulation.clock import SimulationClock

logger = logging.getLogger(__name__)


class LiveMarketFeed(Protocol):
    """Source of fresh candles for live mode."""

    def poll(self, since: Optional[datetime]) -> Dict[str, List[Candle]]:
        """
        Return candles per instrument that closed after `since`.

        `since` is None on the first tick.
        """
        ...


class LiveRunner:
    """
    Runs a SimulationClock on a timer until stopped.

    Usage:
        runner = LiveRunner(clock, feed, period_seconds=60)
        runner.start()
        event = runner.events.get()
        runner.stop()
    """

    def __init__(
        self,
        clock: SimulationClock,
        feed: LiveMarketFeed,
        period_seconds: float = LIVE_TICK_SECONDS,
        sink: Optional[ExecutionSink] = None,
        now_fn: Optional[Callable[[], datetime]] = None,
        events_maxsize: int = LIVE_EVENT_QUEUE_SIZE,
    ):
        if period_seconds <= 0:
            raise ValueError(f"period_seconds must be positive, got {period_seconds}")
        if events_maxsize < 1:
            raise ValueError(f"events_maxsize must be >= 1, got {events_maxsize}")
        self.clock = clock
        self.feed = feed
        self.period_seconds = period_seconds
        self.sink = sink
        self._now = now_fn or (lambda: datetime.now(timezone.utc))

        self.events: "queue.Queue[StepEvent]" = queue.Queue(maxsize=events_maxsize)

        window = clock.config.snapshot_window
        self._buffers: Dict[str, Deque[Candle]] = {
            instrument: deque(maxlen=window) for instrument in clock.config.instruments
        }
        self._tick_lock = threading.Lock()
        self._shutdown_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._last_tick: Optional[datetime] = None

        self._tick_count = 0
        self._skipped_ticks = 0
        self._error_count = 0
        self._submitted_count = 0
        self._dropped_events = 0
        self._rejected_candles = 0

    # =========================================================================
    # TICK
    # =========================================================================

    def tick(self) -> Optional[StepEvent]:
        """
        Run one step now.

        Returns:
            The StepEvent, or None if stopped or another tick is in flight
        """
        if not self._tick_lock.acquire(blocking=False):
            self._skipped_ticks += 1
            logger.debug("Tick skipped: previous tick still running")
            return None

        try:
            if self._shutdown_event.is_set():
                return None

            now = self._now()
            incoming = self.feed.poll(self._last_tick) or {}
            new_bars = {instrument: self._ingest(instrument, candles)
                        for instrument, candles in incoming.items()
                        if instrument in self._buffers}
            windows = {instrument: list(buf) for instrument, buf in self._buffers.items()}

            event = self.clock.step(now, new_bars, windows)
            self._last_tick = now
            self._tick_count += 1

            self._forward(event)
            self._publish(event)
            return event
        finally:
            self._tick_lock.release()

    def _publish(self, event: StepEvent) -> None:
        """Enqueue without blocking, evicting the oldest unread event if full."""
        while True:
            try:
                self.events.put_nowait(event)
                return
            except queue.Full:
                try:
                    self.events.get_nowait()
                    self._dropped_events += 1
                except queue.Empty:
                    # A consumer drained it first; retry the put
                    continue

    def _ingest(self, instrument: str, candles: List[Candle]) -> List[Candle]:
        """Append valid candles newer than the buffer's last bar; return the ones added."""
        buffer = self._buffers[instrument]
        added = []
        for candle in sorted(candles, key=lambda c: c.timestamp):
            if buffer and candle.timestamp <= buffer[-1].timestamp:
                continue
            problem = price_problem(candle)
            if problem:
                logger.warning(f"Skipping {instrument} candle at {candle.timestamp.isoformat()}: {problem}")
                self._rejected_candles += 1
                continue
            buffer.append(candle)
            added.append(candle)
        return added

    def _forward(self, event: StepEvent) -> None:
        if self.sink is None:
            return
        for intent in event.accepted_intents:
            try:
                self.sink.submit(intent)
                self._submitted_count += 1
            except Exception as e:
                logger.error(f"Execution sink rejected {intent.action.value} {intent.instrument}: {e}")
                self._error_count += 1

    # =========================================================================
    # LOOP CONTROL
    # =========================================================================

    def _loop(self) -> None:
        logger.info("Live loop started")
        while not self._shutdown_event.is_set():
            try:
                self.tick()
            except Exception as e:
                logger.error(f"Live tick error: {e}")
                self._error_count += 1

            # Wait for next tick (interruptible)
            self._shutdown_event.wait(timeout=self.period_seconds)
        logger.info("Live loop stopped")

    def start(self) -> None:
        if self.is_running:
            logger.warning("Live runner already running")
            return
        self._shutdown_event.clear()
        self._thread = threading.Thread(target=self._loop, daemon=True, name="PerpsimLiveLoop")
        self._thread.start()
        logger.info(f"Live runner started (period: {self.period_seconds}s)")

    def stop(self, timeout: Optional[float] = 10.0) -> None:
        """Signal shutdown and wait for the in-flight tick to finish."""
        self._shutdown_event.set()
        if self._thread and self._thread.is_alive():
            self._thread.join(timeout=timeout)
        logger.info(f"Live runner stopped: {self.get_status()}")

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def get_status(self) -> Dict[str, Any]:
        return {
            "running": self.is_running,
            "tick_count": self._tick_count,
            "skipped_ticks": self._skipped_ticks,
            "error_count": self._error_count,
            "submitted_count": self._submitted_count,
            "dropped_events": self._dropped_events,
            "rejected_candles": self._rejected_candles,
            "last_tick": self._last_tick.isoformat() if self._last_tick else None,
            "equity": float(self.clock.ledger.equity()),
            "open_positions": len(self.clock.ledger.open_positions),
        }
