from __future__ import annotations

from pydantic import BaseModel


class StrategyResponse(BaseModel):
    id: str
    name: str
    multiplier: str
    floor_ratio: str
    rebalance_threshold: str
    cap: str | None = None
    ratchet_enabled: bool = False
    scheduled_interval_seconds: int | None = None
    risk_level: str
    description: str = ""


class PoolStatsResponse(BaseModel):
    total_aum: str
    total_positions: int
    average_multiplier: str
    average_floor_protection: str
    success_rate: str
    total_rebalances: int
    risk_budget_utilization: str
