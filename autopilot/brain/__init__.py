"""autopilot.brain

Decision layer: allocation targets, the floor ratchet, rebalance triggers,
data-quality gates, and health scoring. Pure logic; no capital moves here.
"""

from __future__ import annotations

from autopilot.brain.allocation import AllocationTarget, compute_target, ratchet, target
from autopilot.brain.health import HealthScore, HealthScorer, HealthStatus
from autopilot.brain.position_sm import PositionStateMachine
from autopilot.brain.trigger import RebalanceTrigger, TriggerDecision

__all__ = [
    "AllocationTarget",
    "compute_target",
    "ratchet",
    "target",
    "HealthScore",
    "HealthScorer",
    "HealthStatus",
    "PositionStateMachine",
    "RebalanceTrigger",
    "TriggerDecision",
]
