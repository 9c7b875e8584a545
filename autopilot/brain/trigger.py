"""autopilot.brain.trigger

Rebalance decision policy. First match wins:

1. floor breach   -> DRIFT, never suppressed
2. drift          -> DRIFT
3. volatility     -> VOLATILITY (pre-emptive de-risking)
4. schedule       -> SCHEDULED
5. manual request -> MANUAL, never suppressed

Auto-rebalance off (or a halted position) suppresses 2-4 only.

The trigger only decides. It does not move capital and it does not mutate the
position; the ledger owns both.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal

from autopilot.brain.allocation import AllocationTarget, target
from autopilot.core.catalog import Strategy
from autopilot.core.types import (
    ZERO,
    Position,
    PositionState,
    TriggerReason,
    VolatilityRegime,
    VolatilitySignal,
)


@dataclass(frozen=True, slots=True)
class TriggerDecision:
    reason: TriggerReason
    target: AllocationTarget
    floor_breach: bool = False
    drift: Decimal = ZERO
    detail: str = ""


def is_floor_breach(position: Position) -> bool:
    return position.current_value <= position.guaranteed_floor


def is_volatility_spike(signal: VolatilitySignal | None, *, spike_threshold: float) -> bool:
    if signal is None:
        return False
    if signal.regime == VolatilityRegime.HIGH:
        return True
    return float(signal.value) > float(spike_threshold)


class RebalanceTrigger:
    def __init__(self, *, spike_threshold: float = 0.80) -> None:
        self.spike_threshold = float(spike_threshold)

    def evaluate(
        self,
        position: Position,
        strategy: Strategy,
        *,
        volatility: VolatilitySignal | None,
        now: datetime,
        manual: bool = False,
    ) -> TriggerDecision | None:
        tgt = target(position, strategy)
        drift = abs(position.risky_ratio - tgt.risky_ratio)

        if is_floor_breach(position):
            # Nothing left to de-risk once the risky leg is empty.
            if position.risky_exposure > 0:
                return TriggerDecision(
                    reason=TriggerReason.DRIFT,
                    target=tgt,
                    floor_breach=True,
                    drift=drift,
                    detail="floor_breach",
                )

        automatic = position.auto_rebalance_enabled and position.state == PositionState.ACTIVE
        if automatic:
            if drift > strategy.rebalance_threshold:
                return TriggerDecision(
                    reason=TriggerReason.DRIFT,
                    target=tgt,
                    drift=drift,
                    detail=f"drift={drift:.4f}>{strategy.rebalance_threshold}",
                )

            if is_volatility_spike(volatility, spike_threshold=self.spike_threshold):
                assert volatility is not None
                return TriggerDecision(
                    reason=TriggerReason.VOLATILITY,
                    target=tgt,
                    drift=drift,
                    detail=f"volatility={volatility.value:.4f} regime={volatility.regime}",
                )

            interval = strategy.scheduled_interval
            if interval is not None:
                anchor = position.last_rebalanced_at or position.created_at
                if now - anchor >= interval:
                    return TriggerDecision(
                        reason=TriggerReason.SCHEDULED,
                        target=tgt,
                        drift=drift,
                        detail=f"interval={int(interval.total_seconds())}s",
                    )

        if manual:
            return TriggerDecision(reason=TriggerReason.MANUAL, target=tgt, drift=drift, detail="manual")

        return None

    def should_rebalance(
        self,
        position: Position,
        strategy: Strategy,
        volatility: VolatilitySignal | None,
        now: datetime,
        *,
        manual: bool = False,
    ) -> TriggerReason | None:
        decision = self.evaluate(position, strategy, volatility=volatility, now=now, manual=manual)
        return None if decision is None else decision.reason
