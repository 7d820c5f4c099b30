"""Decision function boundary: protocol, timeout guard and intent validation."""

from perpsim.decision.port import (
    DecisionGuard,
    DecisionPort,
    ExecutionSink,
    HoldDecisionPort,
    as_decision_port,
)
from perpsim.decision.validation import check_intent, validate_intents

__all__ = [
    "DecisionGuard",
    "DecisionPort",
    "ExecutionSink",
    "HoldDecisionPort",
    "as_decision_port",
    "check_intent",
    "validate_intents",
]
