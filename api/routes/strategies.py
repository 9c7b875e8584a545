from __future__ import annotations

from fastapi import APIRouter, Depends, Path

from api.auth import AuthDep
from api.deps import get_engine
from api.schemas.pool import StrategyResponse
from autopilot.execution.engine import AutopilotEngine

router = APIRouter(prefix="/strategies", dependencies=[AuthDep])


@router.get("", response_model=list[StrategyResponse])
def list_strategies(engine: AutopilotEngine = Depends(get_engine)) -> list[StrategyResponse]:
    return [StrategyResponse(**s.to_dict()) for s in engine.ledger.catalog.values()]


@router.get("/{strategy_id}", response_model=StrategyResponse)
def get_strategy(
    strategy_id: str = Path(..., description="Strategy id"),
    engine: AutopilotEngine = Depends(get_engine),
) -> StrategyResponse:
    return StrategyResponse(**engine.ledger.catalog.require(strategy_id).to_dict())
