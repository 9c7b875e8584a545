"""autopilot.core.types

Lightweight dataclasses for hot-path objects.

Pydantic models own IO boundaries; dataclasses keep runtime lean.
Money is always ``Decimal``.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import StrEnum

Money = Decimal

ZERO = Decimal("0")
ONE = Decimal("1")
BPS = Decimal("10000")


def to_decimal(value: Decimal | int | float | str) -> Decimal:
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


class TriggerReason(StrEnum):
    DRIFT = "drift"
    VOLATILITY = "volatility"
    SCHEDULED = "scheduled"
    MANUAL = "manual"


class PositionState(StrEnum):
    ACTIVE = "active"
    HALTED = "halted"
    CLOSED = "closed"
    MATURED = "matured"


class VolatilityRegime(StrEnum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"


@dataclass(frozen=True, slots=True)
class VolatilitySignal:
    value: float  # annualized, 0.20 == 20%
    observed_at: datetime
    regime: VolatilityRegime = VolatilityRegime.NORMAL


@dataclass(frozen=True, slots=True)
class ValuationTick:
    position_id: str
    value: Money
    as_of: datetime
    safe_value: Money | None = None
    risky_value: Money | None = None


@dataclass(frozen=True, slots=True)
class RebalanceInstruction:
    instruction_id: str
    position_id: str
    reason: TriggerReason
    target_safe_exposure: Money
    target_risky_exposure: Money
    max_slippage_bps: int
    issued_at: datetime
    deadline: datetime
    before_safe: Money
    before_risky: Money
    value_at_issue: Money
    floor_breach: bool = False


@dataclass(frozen=True, slots=True)
class RebalanceResult:
    position_id: str
    instruction_id: str
    achieved_safe: Money
    achieved_risky: Money
    slippage_bps: Decimal
    cost: Money
    success: bool
    timestamp: datetime
    error: str | None = None


@dataclass(frozen=True, slots=True)
class RebalanceEvent:
    position_id: str
    sequence: int
    trigger: TriggerReason
    before_safe_allocation: Decimal
    after_safe_allocation: Decimal
    before_risky_allocation: Decimal
    after_risky_allocation: Decimal
    timestamp: datetime
    slippage: Decimal
    cost_paid: Money


@dataclass(slots=True)
class Position:
    """Mutable aggregate. Only the ledger writes to it; readers get copies."""

    id: str
    strategy_id: str
    owner: str
    principal: Money
    guaranteed_floor: Money
    current_value: Money
    safe_exposure: Money
    risky_exposure: Money
    cushion: Money
    peak_value: Money
    created_at: datetime
    max_drawdown: Decimal = ZERO
    rebalance_count: int = 0
    auto_rebalance_enabled: bool = True
    maturity_date: datetime | None = None
    last_rebalanced_at: datetime | None = None
    last_valuation_at: datetime | None = None
    last_valuation_value: Money | None = None
    state: PositionState = PositionState.ACTIVE
    halt_reason: str | None = None
    in_flight: RebalanceInstruction | None = None

    @property
    def risky_ratio(self) -> Decimal:
        if self.current_value <= 0:
            return ZERO
        return self.risky_exposure / self.current_value

    @property
    def safe_ratio(self) -> Decimal:
        if self.current_value <= 0:
            return ZERO
        return self.safe_exposure / self.current_value

    @property
    def total_return(self) -> Decimal:
        return (self.current_value - self.principal) / self.principal

    @property
    def is_open(self) -> bool:
        return self.state in {PositionState.ACTIVE, PositionState.HALTED}


@dataclass(frozen=True, slots=True)
class FinalSettlement:
    position_id: str
    owner: str
    strategy_id: str
    principal: Money
    final_value: Money
    total_return: Decimal
    guaranteed_floor: Money
    rebalance_count: int
    max_drawdown: Decimal
    closed_at: datetime
    reason: str  # closed|matured
