"""
DecisionPort - the pluggable strategy boundary.

The decision function receives per-instrument snapshots, the account state
and recent closed trades, and returns a list of TradeIntents. It may be
slow (network round trip to an external model) or broken, so every call
goes through DecisionGuard:
- The call runs on a worker thread with a time budget
- Timeout, exception or a non-list response yield no intents for the step
- Each failure is logged and recorded as a Diagnostic; the run continues
"""

import logging
import threading
from datetime import datetime
from typing import Any, Dict, List, Mapping, Protocol, Sequence, Tuple

from perpsim.config import DECISION_TIMEOUT_SECONDS
from perpsim.models import (
    AccountState,
    CompletedTrade,
    Diagnostic,
    MarketSnapshot,
    TradeIntent,
)

logger = logging.getLogger(__name__)


class DecisionPort(Protocol):
    """Protocol for strategy implementations."""

    def decide(
        self,
        snapshots: Mapping[str, MarketSnapshot],
        account_state: AccountState,
        recent_history: Sequence[CompletedTrade],
    ) -> List[TradeIntent]:
        """
        Return trade intents for this step.

        Elements may be TradeIntent instances or mappings accepted by
        TradeIntent.from_dict().
        """
        ...


class ExecutionSink(Protocol):
    """Live-mode collaborator that places real orders for accepted intents."""

    def submit(self, intent: TradeIntent) -> Any:
        ...


class HoldDecisionPort:
    """Decision function that never trades."""

    def decide(self, snapshots, account_state, recent_history) -> List[TradeIntent]:
        return []


class DecisionGuard:
    """
    Calls a DecisionPort under a timeout and normalizes its output.

    Every element of the response is re-parsed, TradeIntent instances
    included, so a wrongly typed field becomes an INTENT_UNPARSABLE
    diagnostic rather than an error further down the step.

    A timed-out worker thread cannot be killed. It is a daemon thread and
    its eventual result is discarded, but it stays alive until decide()
    returns: a port that hangs forever leaks one thread per step, so a
    live loop should stop once failure_count keeps climbing.
    """

    def __init__(self, port: DecisionPort, timeout_seconds: float = DECISION_TIMEOUT_SECONDS):
        self.port = port
        self.timeout_seconds = timeout_seconds
        self._call_count = 0
        self._failure_count = 0

    @property
    def call_count(self) -> int:
        return self._call_count

    @property
    def failure_count(self) -> int:
        return self._failure_count

    def call(
        self,
        timestamp: datetime,
        snapshots: Mapping[str, MarketSnapshot],
        account_state: AccountState,
        recent_history: Sequence[CompletedTrade],
    ) -> Tuple[List[TradeIntent], List[Diagnostic]]:
        """
        Invoke the port once.

        Returns:
            Tuple of (parsed_intents, diagnostics)
        """
        self._call_count += 1
        outcome: Dict[str, Any] = {}

        def _invoke() -> None:
            try:
                outcome["value"] = self.port.decide(dict(snapshots), account_state, list(recent_history))
            except Exception as e:
                outcome["error"] = e

        worker = threading.Thread(target=_invoke, daemon=True, name="DecisionPortCall")
        worker.start()
        worker.join(timeout=self.timeout_seconds)

        if worker.is_alive():
            return [], [self._fail(timestamp, "DECISION_TIMEOUT",
                                   f"decide() exceeded {self.timeout_seconds}s")]
        if "error" in outcome:
            error = outcome["error"]
            return [], [self._fail(timestamp, "DECISION_ERROR",
                                   f"{type(error).__name__}: {error}")]

        raw = outcome.get("value")
        if not isinstance(raw, (list, tuple)):
            return [], [self._fail(timestamp, "DECISION_MALFORMED",
                                   f"expected a list of intents, got {type(raw).__name__}")]

        intents: List[TradeIntent] = []
        diagnostics: List[Diagnostic] = []
        for item in raw:
            try:
                if isinstance(item, TradeIntent):
                    intents.append(item.normalized())
                elif isinstance(item, Mapping):
                    intents.append(TradeIntent.from_dict(item))
                else:
                    raise ValueError(f"unsupported intent type {type(item).__name__}")
            except (ValueError, TypeError) as e:
                logger.info(f"Dropping unparsable intent {item!r}: {e}")
                diagnostics.append(
                    Diagnostic(timestamp=timestamp, code="INTENT_UNPARSABLE", message=str(e))
                )
        return intents, diagnostics

    def _fail(self, timestamp: datetime, code: str, message: str) -> Diagnostic:
        self._failure_count += 1
        logger.warning(f"Decision call failed at {timestamp.isoformat()} ({code}): {message}")
        return Diagnostic(timestamp=timestamp, code=code, message=message)


def as_decision_port(func) -> DecisionPort:
    """Adapt a plain callable decide(snapshots, account_state, recent_history) to a DecisionPort."""

    class _FunctionPort:
        def decide(self, snapshots, account_state, recent_history):
            return func(snapshots, account_state, recent_history)

        def __repr__(self) -> str:
            return f"DecisionPort({getattr(func, '__name__', func)!r})"

    return _FunctionPort()
