"""autopilot.execution.queries

Read models over the ledger. Everything here works on copies; nothing here
can move capital.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Any

from autopilot.brain.allocation import target
from autopilot.brain.health import HealthScore, HealthScorer
from autopilot.brain.position_sm import PositionStateMachine
from autopilot.core.types import ZERO, Position, RebalanceEvent
from autopilot.execution.ledger import PositionLedger


@dataclass(frozen=True, slots=True)
class PositionView:
    position: Position
    health: HealthScore
    risk_level: str
    allowed_actions: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        p = self.position
        return {
            "id": p.id,
            "strategy_id": p.strategy_id,
            "risk_level": self.risk_level,
            "owner": p.owner,
            "state": str(p.state),
            "principal": str(p.principal),
            "guaranteed_floor": str(p.guaranteed_floor),
            "current_value": str(p.current_value),
            "safe_exposure": str(p.safe_exposure),
            "risky_exposure": str(p.risky_exposure),
            "cushion": str(p.cushion),
            "peak_value": str(p.peak_value),
            "total_return": str(p.total_return),
            "max_drawdown": str(p.max_drawdown),
            "rebalance_count": p.rebalance_count,
            "auto_rebalance_enabled": p.auto_rebalance_enabled,
            "maturity_date": p.maturity_date.isoformat() if p.maturity_date else None,
            "last_rebalanced_at": p.last_rebalanced_at.isoformat() if p.last_rebalanced_at else None,
            "last_valuation_at": p.last_valuation_at.isoformat() if p.last_valuation_at else None,
            "halt_reason": p.halt_reason,
            "rebalance_in_flight": p.in_flight is not None,
            "allowed_actions": list(self.allowed_actions),
            "health": {
                "status": str(self.health.status),
                "score": self.health.score,
                "floor_distance": None if self.health.floor_distance is None else str(self.health.floor_distance),
                "cushion_ratio": str(self.health.cushion_ratio),
            },
        }


@dataclass(frozen=True, slots=True)
class PoolStats:
    total_aum: Decimal
    total_positions: int
    average_multiplier: Decimal
    average_floor_protection: Decimal  # mean floor / principal
    success_rate: Decimal  # share of positions above their floor
    total_rebalances: int
    risk_budget_utilization: Decimal  # risky held / risky allowed

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_aum": str(self.total_aum),
            "total_positions": self.total_positions,
            "average_multiplier": str(self.average_multiplier),
            "average_floor_protection": str(self.average_floor_protection),
            "success_rate": str(self.success_rate),
            "total_rebalances": self.total_rebalances,
            "risk_budget_utilization": str(self.risk_budget_utilization),
        }


class PositionQueries:
    def __init__(self, ledger: PositionLedger, *, scorer: HealthScorer | None = None) -> None:
        self.ledger = ledger
        self.scorer = scorer or HealthScorer()
        self.sm = PositionStateMachine()

    def _view(self, p: Position) -> PositionView:
        strategy = self.ledger.catalog.require(p.strategy_id)
        return PositionView(
            position=p,
            health=self.scorer.score(p),
            risk_level=strategy.risk_level,
            allowed_actions=tuple(sorted(self.sm.allowed_actions(state=p.state))),
        )

    def position(self, position_id: str) -> PositionView:
        return self._view(self.ledger.get(position_id))

    def positions_by_owner(self, owner: str | None = None) -> list[PositionView]:
        return [self._view(p) for p in self.ledger.positions(owner=owner)]

    def history(self, position_id: str | None = None, *, limit: int | None = None) -> list[RebalanceEvent]:
        """Rebalance log, most recent first."""

        if position_id is not None:
            # Unknown ids raise; closed positions keep their history.
            if self.ledger.settlement(position_id) is None:
                self.ledger.get(position_id)
        n = self.ledger.config.ledger.history_limit if limit is None else int(limit)
        events = list(reversed(self.ledger.history(position_id)))
        return events[: max(0, n)]

    def pool_stats(self) -> PoolStats:
        positions = self.ledger.positions()
        n = len(positions)
        if n == 0:
            return PoolStats(
                total_aum=ZERO,
                total_positions=0,
                average_multiplier=ZERO,
                average_floor_protection=ZERO,
                success_rate=ZERO,
                total_rebalances=0,
                risk_budget_utilization=ZERO,
            )

        count = Decimal(n)
        total_aum = sum((p.current_value for p in positions), ZERO)
        multipliers = ZERO
        floor_protection = ZERO
        held = ZERO
        allowed = ZERO
        above = 0
        for p in positions:
            strategy = self.ledger.catalog.require(p.strategy_id)
            multipliers += strategy.multiplier
            floor_protection += p.guaranteed_floor / p.principal
            if p.current_value > p.guaranteed_floor:
                above += 1
            held += p.risky_exposure
            allowed += target(p, strategy).risky

        return PoolStats(
            total_aum=total_aum,
            total_positions=n,
            average_multiplier=multipliers / count,
            average_floor_protection=floor_protection / count,
            success_rate=Decimal(above) / count,
            total_rebalances=sum(p.rebalance_count for p in positions),
            risk_budget_utilization=(held / allowed) if allowed > 0 else ZERO,
        )
