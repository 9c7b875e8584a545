"""autopilot.execution

Execution layer: the position ledger, the executor boundary, and the engine
that wires ticks through them.

Only ``paper`` execution ships here. Real venues plug in behind
``RebalanceExecutor``.
"""

from __future__ import annotations

from autopilot.execution.engine import AutopilotEngine, TickOutcome
from autopilot.execution.executor import RebalanceExecutor
from autopilot.execution.ledger import PositionLedger
from autopilot.execution.paper import PaperExecutor
from autopilot.execution.queries import PoolStats, PositionQueries, PositionView

__all__ = [
    "AutopilotEngine",
    "TickOutcome",
    "RebalanceExecutor",
    "PositionLedger",
    "PaperExecutor",
    "PoolStats",
    "PositionQueries",
    "PositionView",
]
