"""autopilot.brain.health

Health bands for monitoring and alerting.

Read only. Nothing in allocation or trigger logic may consult a health score;
display must never steer control.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from enum import StrEnum

from autopilot.core.types import Position, PositionState


class HealthStatus(StrEnum):
    EXCELLENT = "Excellent"
    GOOD = "Good"
    FAIR = "Fair"
    AT_RISK = "At Risk"


HEALTH_SCORES: dict[HealthStatus, int] = {
    HealthStatus.EXCELLENT: 95,
    HealthStatus.GOOD: 80,
    HealthStatus.FAIR: 65,
    HealthStatus.AT_RISK: 40,
}


@dataclass(frozen=True, slots=True)
class HealthScore:
    status: HealthStatus
    score: int
    floor_distance: Decimal | None  # None when the floor is zero
    cushion_ratio: Decimal


class HealthScorer:
    # (min floor distance, min cushion ratio), both exclusive
    EXCELLENT = (Decimal("0.30"), Decimal("0.20"))
    GOOD = (Decimal("0.15"), Decimal("0.10"))
    FAIR = Decimal("0.05")

    def score(self, position: Position) -> HealthScore:
        floor = position.guaranteed_floor
        distance = (position.current_value - floor) / floor if floor > 0 else None
        cushion_ratio = position.cushion / position.principal

        def above(limit: Decimal) -> bool:
            return distance is None or distance > limit

        if position.state == PositionState.HALTED:
            status = HealthStatus.AT_RISK
        elif above(self.EXCELLENT[0]) and cushion_ratio > self.EXCELLENT[1]:
            status = HealthStatus.EXCELLENT
        elif above(self.GOOD[0]) and cushion_ratio > self.GOOD[1]:
            status = HealthStatus.GOOD
        elif above(self.FAIR):
            status = HealthStatus.FAIR
        else:
            status = HealthStatus.AT_RISK

        return HealthScore(
            status=status,
            score=HEALTH_SCORES[status],
            floor_distance=distance,
            cushion_ratio=cushion_ratio,
        )
