from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Literal

from pydantic import BaseModel, Field


class HealthScoreResponse(BaseModel):
    status: str
    score: int
    floor_distance: str | None = None
    cushion_ratio: str


class PositionResponse(BaseModel):
    id: str
    strategy_id: str
    risk_level: str
    owner: str
    state: str
    principal: str
    guaranteed_floor: str
    current_value: str
    safe_exposure: str
    risky_exposure: str
    cushion: str
    peak_value: str
    total_return: str
    max_drawdown: str
    rebalance_count: int
    auto_rebalance_enabled: bool
    maturity_date: datetime | None = None
    last_rebalanced_at: datetime | None = None
    last_valuation_at: datetime | None = None
    halt_reason: str | None = None
    rebalance_in_flight: bool = False
    allowed_actions: list[str] = Field(default_factory=list)
    health: HealthScoreResponse


class OpenPositionRequest(BaseModel):
    strategy_id: str
    principal: Decimal = Field(..., gt=0)
    custom_floor: Decimal | None = Field(default=None, ge=0)
    auto_rebalance: bool = True
    owner: str = "anonymous"
    maturity_date: datetime | None = None


class OpenPositionResponse(BaseModel):
    position_id: str


class RevalueRequest(BaseModel):
    value: Decimal = Field(..., ge=0)
    as_of: datetime | None = None
    safe_value: Decimal | None = Field(default=None, ge=0)
    risky_value: Decimal | None = Field(default=None, ge=0)
    volatility: float | None = Field(default=None, ge=0)
    volatility_observed_at: datetime | None = None
    regime: Literal["low", "normal", "high"] | None = None


class InstructionResponse(BaseModel):
    instruction_id: str
    position_id: str
    reason: str
    target_safe_exposure: str
    target_risky_exposure: str
    max_slippage_bps: int
    issued_at: datetime
    deadline: datetime
    floor_breach: bool


class RevalueResponse(BaseModel):
    position_id: str
    status: str
    instruction: InstructionResponse | None = None
    error_code: str | None = None


class RebalanceResultRequest(BaseModel):
    instruction_id: str
    achieved_safe: Decimal = Field(..., ge=0)
    achieved_risky: Decimal = Field(..., ge=0)
    slippage_bps: Decimal = Field(default=Decimal("0"), ge=0)
    cost: Decimal = Field(default=Decimal("0"), ge=0)
    success: bool = True
    timestamp: datetime | None = None
    error: str | None = None


class RebalanceEventResponse(BaseModel):
    position_id: str
    sequence: int
    trigger: str
    before_safe_allocation: str
    after_safe_allocation: str
    before_risky_allocation: str
    after_risky_allocation: str
    timestamp: datetime
    slippage: str
    cost_paid: str


class SettlementResponse(BaseModel):
    position_id: str
    owner: str
    strategy_id: str
    principal: str
    final_value: str
    total_return: str
    guaranteed_floor: str
    rebalance_count: int
    max_drawdown: str
    closed_at: datetime
    reason: str


class ToggleAutoRequest(BaseModel):
    enabled: bool | None = None


class RaiseFloorRequest(BaseModel):
    new_floor: Decimal = Field(..., ge=0)


class EmergencyStopRequest(BaseModel):
    reason: str = Field("emergency_stop", description="Human readable reason")
